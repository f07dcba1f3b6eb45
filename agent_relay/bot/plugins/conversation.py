"""Channel conversation listener.

Turns every human guild message into an ``InboundMessage`` and hands it to
the message router, which decides whether an agent answers.
"""

from __future__ import annotations

import logging
from typing import Optional, TYPE_CHECKING

import hikari
import lightbulb

from agent_relay.bot.services.models import Attachment
from agent_relay.bot.services.router import InboundMessage

if TYPE_CHECKING:
    from agent_relay.bot.services.router import MessageRouter

logger = logging.getLogger(__name__)

# Create plugin
plugin = lightbulb.Plugin("conversation")


async def _replied_webhook_id(message: hikari.Message) -> Optional[str]:
    """Webhook that posted the message being replied to, if any."""
    referenced = message.referenced_message
    if referenced is None and message.message_reference and message.message_reference.id:
        try:
            referenced = await plugin.bot.rest.fetch_message(message.channel_id, message.message_reference.id)
        except hikari.HTTPError as e:
            logger.debug(f"Could not fetch replied message {message.message_reference.id}: {e}")
            return None
    if referenced is None or referenced.webhook_id is None:
        return None
    return str(referenced.webhook_id)


def to_inbound_message(message: hikari.Message, replied_webhook_id: Optional[str] = None) -> InboundMessage:
    """Convert a Discord message into the router's view of it."""
    attachments = tuple(
        Attachment(
            name=attachment.filename,
            url=attachment.url,
            content_type=attachment.media_type,
            id=str(attachment.id),
        )
        for attachment in message.attachments
    )
    return InboundMessage(
        guild_id=str(message.guild_id),
        channel_id=str(message.channel_id),
        author=message.author.username,
        text=message.content or "",
        attachments=attachments,
        replied_webhook_id=replied_webhook_id,
    )


@plugin.listener(hikari.GuildMessageCreateEvent)
async def on_message_create(event: hikari.GuildMessageCreateEvent) -> None:
    """Route human messages to agents."""
    # Agent webhooks and other bots never trigger turns
    if event.is_bot or event.is_webhook:
        return

    router: MessageRouter = getattr(plugin.bot, 'd', {}).get('router')
    if not router:
        logger.warning("Message router not initialized, ignoring message")
        return

    try:
        replied_webhook_id = await _replied_webhook_id(event.message)
        await router.handle(to_inbound_message(event.message, replied_webhook_id))
    except Exception as e:
        logger.error(f"Error routing message {event.message_id} in channel {event.channel_id}: {e}", exc_info=True)


def load(bot: lightbulb.BotApp) -> None:
    """Load the conversation plugin."""
    bot.add_plugin(plugin)
    logger.info("Conversation plugin loaded")


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the conversation plugin."""
    bot.remove_plugin(plugin)
    logger.info("Conversation plugin unloaded")
