"""Discord bot client setup and configuration."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import hikari
import lightbulb

from agent_relay.bot.services.attachments import AttachmentFetcher
from agent_relay.bot.services.completion_client import CompletionClient
from agent_relay.bot.services.credentials import ProviderResolver
from agent_relay.bot.services.dispatch import WebhookDispatcher
from agent_relay.bot.services.models import GuildLimits
from agent_relay.bot.services.router import MessageRouter
from agent_relay.bot.services.store import TurnStore
from agent_relay.bot.services.turn_orchestrator import TurnOrchestrator
from agent_relay.bot.services.yap import YapCoordinator
from agent_relay.shared.config import Settings
from agent_relay.shared.config import get_settings
from agent_relay.shared.crypto import CredentialCipher
from agent_relay.shared.database import close_database
from agent_relay.shared.database import get_session_maker
from agent_relay.shared.database import init_database

logger = logging.getLogger(__name__)

PLUGINS = (
    "agent_relay.bot.plugins.conversation",
    "agent_relay.bot.plugins.agents",
    "agent_relay.bot.plugins.providers",
    "agent_relay.bot.plugins.settings",
)

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


def create_bot(settings: Optional[Settings] = None) -> lightbulb.BotApp:
    """Create and configure the Discord bot with Lightbulb v2 syntax.

    Returns:
        BotApp instance for v2 compatibility
    """
    if settings is None:
        settings = get_settings()

    # Configure bot intents
    intents = (
        hikari.Intents.GUILDS
        | hikari.Intents.GUILD_MESSAGES  # For routing channel messages to agents
        | hikari.Intents.MESSAGE_CONTENT  # For mentions and @Name prefixes
    )

    bot = lightbulb.BotApp(
        token=settings.discord_bot_token,
        intents=intents,
        logs={
            "version": 1,
            "incremental": True,
            "loggers": {
                "hikari": {"level": "INFO"},
                "lightbulb": {"level": "INFO"},
            },
        },
        banner=None,  # Disable banner for cleaner logs
    )

    return bot


async def setup_bot_services(bot: lightbulb.BotApp) -> None:
    """Set up bot services and dependencies.

    Everything plugins need is stored in ``bot.d``. The message router and
    the yap coordinator reference each other, so the router is created
    first and receives the coordinator afterwards.
    """
    logger.info("Setting up bot services...")

    settings = get_settings()

    await init_database()
    session_maker = get_session_maker()
    logger.info("✓ Database initialized")

    cipher = CredentialCipher.from_hex(settings.encryption_key)

    store = TurnStore(
        session_maker,
        default_limits=GuildLimits(
            context_window=settings.default_context_window,
            max_loop_depth=settings.default_loop_depth,
        ),
    )
    resolver = ProviderResolver(session_maker, cipher)
    completion_client = CompletionClient(
        timeout=settings.completion_timeout,
        error_body_limit=settings.provider_error_max_chars,
        verbose=settings.verbose_llm_logging,
    )
    attachment_fetcher = AttachmentFetcher()
    dispatcher = WebhookDispatcher(bot.rest)

    orchestrator = TurnOrchestrator(
        store,
        resolver,
        completion_client,
        dispatcher,
        attachment_fetcher,
    )

    router = MessageRouter(store, orchestrator, None)
    yap_coordinator = YapCoordinator(
        router.trigger_yap,
        delay=settings.yap_delay_seconds,
        max_attachments=settings.yap_max_attachments,
    )
    router.yap = yap_coordinator

    bot.d['settings'] = settings
    bot.d['session_maker'] = session_maker
    bot.d['cipher'] = cipher
    bot.d['store'] = store
    bot.d['resolver'] = resolver
    bot.d['completion_client'] = completion_client
    bot.d['attachment_fetcher'] = attachment_fetcher
    bot.d['dispatcher'] = dispatcher
    bot.d['orchestrator'] = orchestrator
    bot.d['yap_coordinator'] = yap_coordinator
    bot.d['router'] = router

    logger.info("✓ Bot services setup complete")
    logger.info(f"Services available: {list(bot.d.keys())}")


async def cleanup_bot_services(bot: lightbulb.BotApp) -> None:
    """Clean up bot services and connections."""
    logger.info("Cleaning up bot services...")

    try:
        if 'yap_coordinator' in bot.d:
            await bot.d['yap_coordinator'].close()

        if 'dispatcher' in bot.d:
            await bot.d['dispatcher'].drain()

        if 'completion_client' in bot.d:
            await bot.d['completion_client'].close()

        if 'attachment_fetcher' in bot.d:
            await bot.d['attachment_fetcher'].close()

        await close_database()

        logger.info("Bot services cleanup complete")

    except Exception as e:
        logger.error(f"Error cleaning up bot services: {e}")


def load_plugins(bot: lightbulb.BotApp) -> None:
    """Load bot plugins using Lightbulb v2 syntax."""
    for extension in PLUGINS:
        logger.info(f"Loading {extension}...")
        bot.load_extensions(extension)
        logger.info(f"✓ Loaded {extension}")

    logger.info("✓ All plugins loaded successfully")


async def run_bot() -> None:
    """Run the Discord bot with Lightbulb v2 syntax."""
    settings = get_settings()

    if not settings.discord_bot_token:
        logger.error("Discord bot token not provided")
        return

    if not settings.discord_application_id:
        logger.error("Discord application ID not provided")
        return

    if not settings.encryption_key:
        logger.error("Encryption key not provided")
        return

    # Create bot
    bot = create_bot(settings)

    @bot.listen()
    async def on_starting(event: hikari.StartingEvent) -> None:
        """Handle bot starting event."""
        logger.info("Bot is starting...")

    @bot.listen()
    async def on_started(event: hikari.StartedEvent) -> None:
        """Handle bot started event."""
        bot_user = event.app.get_me()
        if bot_user:
            logger.info(f"Bot started as {bot_user.username}")
        else:
            logger.info("Bot started")

    @bot.listen()
    async def on_stopping(event: hikari.StoppingEvent) -> None:
        """Handle bot stopping event."""
        logger.info("Bot is stopping...")
        await cleanup_bot_services(bot)

    @bot.listen(lightbulb.CommandErrorEvent)
    async def on_command_error(event: lightbulb.CommandErrorEvent) -> bool:
        """Report unhandled command errors to the invoking user."""
        logger.error(f"Unhandled error in command {event.context.command.name}: {event.exception}", exc_info=event.exception)
        try:
            await event.context.respond(UNEXPECTED_ERROR_MESSAGE, flags=hikari.MessageFlag.EPHEMERAL)
        except hikari.HTTPError as e:
            logger.error(f"Failed to send error reply to interaction: {e}")
        return True

    # Set up services before loading plugins
    await setup_bot_services(bot)

    # Load plugins after services are ready
    logger.info("Loading bot plugins...")
    load_plugins(bot)

    try:
        await bot.start()

        logger.info("Bot is now running. Press Ctrl+C to stop.")

        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Bot shutdown requested")

    except KeyboardInterrupt:
        logger.info("Bot shutdown requested via keyboard interrupt")
    except Exception as e:
        logger.error(f"Bot crashed: {e}")
        raise
    finally:
        logger.info("Shutting down bot...")
        await bot.close()
