"""Agent management commands.

This module implements the ``/agent`` slash command group: creating agents
with their webhooks, listing, editing (with propagation to linked clones),
refreshing webhooks, cloning into other channels and deleting agents.
"""

from __future__ import annotations

import base64
import logging
import os
from typing import Any, Dict, Optional, Tuple

import hikari
import httpx
import lightbulb

from agent_relay.bot.services.attachments import AttachmentFetcher
from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.utils.webhooks import avatar_resource
from agent_relay.bot.utils.webhooks import create_agent_webhook
from agent_relay.bot.utils.webhooks import delete_agent_webhook
from agent_relay.bot.utils.webhooks import edit_agent_webhook
from agent_relay.bot.utils.webhooks import is_missing_permissions
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import AgentOperations
from agent_relay.storage.crud import ConflictError
from agent_relay.storage.crud import DatabaseOperationError
from agent_relay.storage.crud import NotFoundError
from agent_relay.storage.crud import ProviderOperations

logger = logging.getLogger(__name__)

# Create plugin
plugin = lightbulb.Plugin("agents")

agent_ops = AgentOperations()
provider_ops = ProviderOperations()

SYSTEM_PROMPT_EXTENSIONS = (".md", ".txt")


def _attachment_filename(attachment: hikari.Attachment) -> str:
    return attachment.filename or attachment.url.split("?")[0].split("/")[-1]


def _option_channel_id(ctx: lightbulb.Context, option: str = "channel") -> str:
    channel = ctx.raw_options.get(option)
    return str(channel.id) if channel else str(ctx.channel_id)


async def _respond(ctx: lightbulb.Context, content: str) -> None:
    await ctx.edit_last_response(content)


async def fetch_system_prompt(
    fetcher: AttachmentFetcher,
    attachment: hikari.Attachment,
    label: str = "system prompt"
) -> Tuple[Optional[str], Optional[str]]:
    """Download a system prompt attachment.

    Returns:
        ``(prompt, None)`` on success or ``(None, error_message)``
    """
    extension = os.path.splitext(_attachment_filename(attachment))[1].lower()
    if extension not in SYSTEM_PROMPT_EXTENSIONS:
        return None, "System prompt must be a .md or .txt file."

    try:
        data = await fetcher.fetch_bytes(attachment.url)
    except httpx.HTTPStatusError as e:
        response = e.response
        return None, (
            f"Failed to fetch {label} from {attachment.url}: "
            f"{response.status_code} {response.reason_phrase}"
        )
    except httpx.HTTPError as e:
        logger.error(f"Error fetching {label}: {e}")
        return None, (
            f"Error fetching {label}. Please ensure the link is accessible. ({e})"
        )
    return data.decode("utf-8", errors="replace"), None


async def fetch_avatar(
    fetcher: AttachmentFetcher,
    attachment: Optional[hikari.Attachment]
) -> Tuple[Optional[str], Optional[str]]:
    """Download an avatar image.

    Returns:
        ``(mime_type, base64_data)``, or ``(None, None)`` when the avatar is
        missing, unreachable or not an image
    """
    if attachment is None:
        return None, None

    try:
        data = await fetcher.fetch_bytes(attachment.url)
    except httpx.HTTPError as e:
        logger.warning(f"Failed to fetch avatar image from {attachment.url}: {e}")
        return None, None

    mime_type = attachment.media_type
    if not mime_type or not mime_type.startswith("image/"):
        logger.warning(f"Invalid avatar MIME type: {mime_type}")
        return None, None
    return mime_type, base64.b64encode(data).decode("ascii")


def _webhook_error_message(error: hikari.HTTPError, name: str, channel_id: str) -> str:
    if is_missing_permissions(error):
        return (
            f"Failed to create webhook for \"{name}\": I'm missing permissions in <#{channel_id}>. "
            "Please ensure I have 'Manage Webhooks' permission there."
        )
    return f"Failed to create webhook for \"{name}\". Discord Error: {getattr(error, 'message', error)}"


@plugin.command
@lightbulb.command("agent", "Manage AI agents")
@lightbulb.implements(lightbulb.SlashCommandGroup)
async def agent_group(ctx: lightbulb.Context) -> None:
    """Base agent command group."""
    pass


@agent_group.child
@lightbulb.option("channel", "Target channel", type=hikari.TextableGuildChannel, required=False)
@lightbulb.option("avatar", "Avatar image", type=hikari.Attachment, required=False)
@lightbulb.option("sysprompt", "System prompt (.md/.txt)", type=hikari.Attachment)
@lightbulb.option("multimodal", "Vision enabled?", type=bool)
@lightbulb.option("provider", "Provider name")
@lightbulb.option("model", "Model ID")
@lightbulb.option("name", "Agent name")
@lightbulb.command("create", "Create an AI agent")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def create_command(ctx: lightbulb.Context) -> None:
    """Create an agent and the webhook it speaks through."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    fetcher: AttachmentFetcher = ctx.bot.d['attachment_fetcher']
    session_maker = ctx.bot.d['session_maker']
    guild_id = str(ctx.guild_id)
    channel_id = _option_channel_id(ctx)
    name = ctx.options.name
    provider_name = ctx.options.provider

    async with session_scope(session_maker) as session:
        try:
            await provider_ops.get_provider(session, guild_id, provider_name)
        except NotFoundError:
            await _respond(ctx, f"Provider \"{provider_name}\" not found. Please add it using `/provider add`.")
            return

    system_prompt, error = await fetch_system_prompt(fetcher, ctx.options.sysprompt)
    if error:
        await _respond(ctx, error)
        return

    avatar_mime_type, avatar_data = await fetch_avatar(fetcher, ctx.options.avatar)

    try:
        webhook = await create_agent_webhook(
            ctx.bot.rest,
            channel_id,
            name,
            avatar=avatar_resource(avatar_data, avatar_mime_type),
        )
    except hikari.HTTPError as e:
        logger.error(f"Failed to create webhook: {e}")
        await _respond(ctx, _webhook_error_message(e, name, channel_id))
        return

    try:
        async with session_scope(session_maker) as session:
            await agent_ops.create_agent(
                session,
                guild_id=guild_id,
                channel_id=channel_id,
                name=name,
                model=ctx.options.model,
                provider_name=provider_name,
                multimodal=bool(ctx.options.multimodal),
                system_prompt=system_prompt,
                avatar_mime_type=avatar_mime_type,
                avatar_data=avatar_data,
                webhook_id=str(webhook.id),
                webhook_token=webhook.token,
            )
    except ConflictError:
        await delete_agent_webhook(ctx.bot.rest, webhook.id, webhook.token)
        await _respond(
            ctx,
            f"An agent named \"{name}\" already exists in <#{channel_id}>. "
            "Please choose a different name or channel."
        )
        return
    except DatabaseOperationError:
        await delete_agent_webhook(ctx.bot.rest, webhook.id, webhook.token)
        raise

    logger.info(f"Created agent {name} in channel {channel_id} of guild {guild_id}")
    await _respond(ctx, f"Agent **{name}** created in <#{channel_id}>!")


@agent_group.child
@lightbulb.option("channel", "Target channel", type=hikari.TextableGuildChannel, required=False)
@lightbulb.command("list", "List agents in a channel")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def list_command(ctx: lightbulb.Context) -> None:
    """List the agents configured in a channel."""
    channel_id = _option_channel_id(ctx)

    async with session_scope(ctx.bot.d['session_maker']) as session:
        agents = await agent_ops.list_channel_agents(session, str(ctx.guild_id), channel_id)
        names = [agent.name for agent in agents]

    if names:
        text = f"Agents in <#{channel_id}>:\n" + "\n".join(f"- {name}" for name in names)
    else:
        text = f"No agents found in <#{channel_id}>."
    await ctx.respond(text, flags=hikari.MessageFlag.EPHEMERAL)


@agent_group.child
@lightbulb.option("channel", "Target channel", type=hikari.TextableGuildChannel, required=False)
@lightbulb.option("name", "Agent name")
@lightbulb.command("delete", "Delete an AI agent")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def delete_command(ctx: lightbulb.Context) -> None:
    """Delete an agent, its webhook and its conversation history."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    channel_id = _option_channel_id(ctx)
    name = ctx.options.name

    async with session_scope(ctx.bot.d['session_maker']) as session:
        try:
            agent = await agent_ops.get_channel_agent(session, str(ctx.guild_id), channel_id, name)
        except NotFoundError:
            await _respond(ctx, f"Agent \"{name}\" not found in <#{channel_id}>.")
            return

        await delete_agent_webhook(ctx.bot.rest, agent.webhook_id, agent.webhook_token)
        await agent_ops.delete_agent(session, agent.id)

    logger.info(f"Deleted agent {name} from channel {channel_id}")
    await _respond(ctx, f"Agent **{name}** deleted from <#{channel_id}>.")


@agent_group.child
@lightbulb.option("avatar", "Avatar image", type=hikari.Attachment, required=False)
@lightbulb.option("sysprompt", "System prompt (.md/.txt)", type=hikari.Attachment, required=False)
@lightbulb.option("multimodal", "Vision enabled?", type=bool, required=False)
@lightbulb.option("provider", "New provider", required=False)
@lightbulb.option("model", "New model", required=False)
@lightbulb.option("name", "Agent name")
@lightbulb.command("edit", "Edit an AI agent in the current channel by name")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def edit_command(ctx: lightbulb.Context) -> None:
    """Update the given fields of an agent and propagate them to linked clones."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    fetcher: AttachmentFetcher = ctx.bot.d['attachment_fetcher']
    session_maker = ctx.bot.d['session_maker']
    guild_id = str(ctx.guild_id)
    channel_id = str(ctx.channel_id)
    name = ctx.options.name

    async with session_scope(session_maker) as session:
        try:
            agent = AgentProfile.from_model(
                await agent_ops.get_channel_agent(session, guild_id, channel_id, name)
            )
        except NotFoundError:
            await _respond(
                ctx,
                f"Agent \"{name}\" not found in this channel (<#{channel_id}>). "
                "Note: Agent name is case-sensitive."
            )
            return

        updates: Dict[str, Any] = {}
        if ctx.options.model is not None:
            updates["model"] = ctx.options.model
        if ctx.options.provider is not None:
            try:
                await provider_ops.get_provider(session, guild_id, ctx.options.provider)
            except NotFoundError:
                await _respond(ctx, f"Provider \"{ctx.options.provider}\" not found.")
                return
            updates["provider_name"] = ctx.options.provider
        if ctx.options.multimodal is not None:
            updates["multimodal"] = bool(ctx.options.multimodal)

    if ctx.options.sysprompt is not None:
        system_prompt, error = await fetch_system_prompt(fetcher, ctx.options.sysprompt, "new system prompt")
        if error:
            await _respond(ctx, error)
            return
        updates["system_prompt"] = system_prompt

    if ctx.options.avatar is not None:
        avatar_mime_type, avatar_data = await fetch_avatar(fetcher, ctx.options.avatar)
        if avatar_data:
            updates["avatar_mime_type"] = avatar_mime_type
            updates["avatar_data"] = avatar_data
        else:
            logger.warning(f"Keeping old avatar for agent {name}")

    async with session_scope(session_maker) as session:
        changed = [
            AgentProfile.from_model(row)
            for row in await agent_ops.update_agent(session, agent.id, updates)
        ]

    updated, clones = changed[0], changed[1:]
    await edit_agent_webhook(
        ctx.bot.rest,
        updated.webhook_id,
        updated.webhook_token,
        updated.name,
        avatar_resource(updated.avatar_data, updated.avatar_mime_type),
    )
    for clone in clones:
        await edit_agent_webhook(
            ctx.bot.rest,
            clone.webhook_id,
            clone.webhook_token,
            clone.name,
            avatar_resource(clone.avatar_data, clone.avatar_mime_type),
        )

    message = f"Agent **{updated.name}** in <#{channel_id}> updated."
    if clones:
        message += f"\nChanges also propagated to {len(clones)} linked clone(s)."
    await _respond(ctx, message)


@agent_group.child
@lightbulb.option("name", "Agent name")
@lightbulb.command("refresh", "Recreate the webhook for an agent in this channel")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def refresh_command(ctx: lightbulb.Context) -> None:
    """Replace an agent's webhook with a fresh one."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    session_maker = ctx.bot.d['session_maker']
    channel_id = str(ctx.channel_id)
    name = ctx.options.name

    async with session_scope(session_maker) as session:
        try:
            agent = AgentProfile.from_model(
                await agent_ops.get_channel_agent(session, str(ctx.guild_id), channel_id, name)
            )
        except NotFoundError:
            await _respond(ctx, f"Agent \"{name}\" not found in this channel.")
            return

    await delete_agent_webhook(ctx.bot.rest, agent.webhook_id, agent.webhook_token)

    try:
        webhook = await create_agent_webhook(
            ctx.bot.rest,
            channel_id,
            agent.name,
            avatar=avatar_resource(agent.avatar_data, agent.avatar_mime_type),
            reason="Agent webhook refresh",
        )
    except hikari.HTTPError as e:
        logger.error(f"Failed to create new webhook for agent {agent.name} during refresh: {e}")
        await _respond(ctx, _webhook_error_message(e, agent.name, channel_id))
        return

    async with session_scope(session_maker) as session:
        await agent_ops.update_agent(
            session,
            agent.id,
            {"webhook_id": str(webhook.id), "webhook_token": webhook.token},
        )

    await _respond(ctx, f"Agent **{name}** webhook refreshed successfully in this channel.")


@agent_group.child
@lightbulb.option(
    "linked",
    "Link this clone to the original? (Edits to original will propagate, default: false)",
    type=bool,
    required=False
)
@lightbulb.option(
    "new-agent-name",
    "Optional new name for the cloned agent in the target channel",
    required=False
)
@lightbulb.option("target-channel", "Channel to clone the agent to", type=hikari.TextableGuildChannel)
@lightbulb.option("original-agent-name", "Name of the agent to clone")
@lightbulb.command("clone", "Clone an existing agent's settings to another channel")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def clone_command(ctx: lightbulb.Context) -> None:
    """Copy an agent into another channel, optionally linked to the original."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    session_maker = ctx.bot.d['session_maker']
    guild_id = str(ctx.guild_id)
    original_name = ctx.raw_options.get("original-agent-name")
    target_channel_id = str(ctx.raw_options["target-channel"].id)
    linked = bool(ctx.raw_options.get("linked") or False)

    async with session_scope(session_maker) as session:
        original_row = await agent_ops.find_agent_by_name(session, guild_id, original_name)
        if original_row is None:
            await _respond(ctx, f"Original agent \"{original_name}\" not found in this server.")
            return
        original = AgentProfile.from_model(original_row)
        new_name = ctx.raw_options.get("new-agent-name") or original.name

        try:
            await agent_ops.get_channel_agent(session, guild_id, target_channel_id, new_name)
        except NotFoundError:
            pass
        else:
            await _respond(
                ctx,
                f"An agent named \"{new_name}\" already exists in <#{target_channel_id}>. "
                "Please choose a different name or channel."
            )
            return

        try:
            await provider_ops.get_provider(session, guild_id, original.provider_name)
        except NotFoundError:
            await _respond(
                ctx,
                f"Provider \"{original.provider_name}\" used by the original agent no longer exists. "
                "Please add it using `/provider add` or edit the original agent."
            )
            return

    try:
        webhook = await create_agent_webhook(
            ctx.bot.rest,
            target_channel_id,
            new_name,
            avatar=avatar_resource(original.avatar_data, original.avatar_mime_type),
            reason="Agent clone",
        )
    except hikari.HTTPError as e:
        logger.error(f"Failed to create webhook for cloned agent: {e}")
        await _respond(ctx, _webhook_error_message(e, new_name, target_channel_id))
        return

    try:
        async with session_scope(session_maker) as session:
            await agent_ops.create_agent(
                session,
                guild_id=guild_id,
                channel_id=target_channel_id,
                name=new_name,
                model=original.model,
                provider_name=original.provider_name,
                multimodal=original.multimodal,
                system_prompt=original.system_prompt,
                avatar_mime_type=original.avatar_mime_type,
                avatar_data=original.avatar_data,
                webhook_id=str(webhook.id),
                webhook_token=webhook.token,
                linked_to_agent_id=original.id if linked else None,
            )
            if linked:
                await agent_ops.update_agent(session, original.id, {"is_source_for_link": True})
    except DatabaseOperationError as e:
        await delete_agent_webhook(ctx.bot.rest, webhook.id, webhook.token)
        logger.error(f"Database error during agent cloning: {e}")
        await _respond(ctx, f"An unexpected database error occurred while cloning the agent. ({e})")
        return

    suffix = " and linked to the original" if linked else ""
    await _respond(
        ctx,
        f"Agent **{original_name}** successfully cloned as **{new_name}** in <#{target_channel_id}>{suffix}."
    )


def load(bot: lightbulb.BotApp) -> None:
    """Load the agents plugin."""
    bot.add_plugin(plugin)
    logger.info("Agents plugin loaded")


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the agents plugin."""
    bot.remove_plugin(plugin)
    logger.info("Agents plugin unloaded")
