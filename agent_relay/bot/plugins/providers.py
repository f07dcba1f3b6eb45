"""Provider management commands.

Implements the ``/provider`` slash command group and ``/models``. API keys
are encrypted before they reach the database and are only decrypted to
call the provider.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import hikari
import lightbulb

from agent_relay.bot.services.credentials import decrypt_provider
from agent_relay.bot.services.exceptions import CredentialDecryptionError
from agent_relay.bot.services.exceptions import ServiceError
from agent_relay.bot.utils.messages import split_message
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import ConflictError
from agent_relay.storage.crud import NotFoundError
from agent_relay.storage.crud import ProviderOperations

if TYPE_CHECKING:
    from agent_relay.bot.services.completion_client import CompletionClient
    from agent_relay.shared.crypto import CredentialCipher

logger = logging.getLogger(__name__)

# Create plugin
plugin = lightbulb.Plugin("providers")

provider_ops = ProviderOperations()


@plugin.command
@lightbulb.command("provider", "Manage LLM providers")
@lightbulb.implements(lightbulb.SlashCommandGroup)
async def provider_group(ctx: lightbulb.Context) -> None:
    """Base provider command group."""
    pass


@provider_group.child
@lightbulb.option("key", "API key")
@lightbulb.option("url", "Chat completions URL")
@lightbulb.option("name", "Provider name")
@lightbulb.command("add", "Add a provider")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def add_command(ctx: lightbulb.Context) -> None:
    """Store a provider with its encrypted API key."""
    cipher: CredentialCipher = ctx.bot.d['cipher']
    name = ctx.options.name
    secret = cipher.encrypt(ctx.options.key)

    try:
        async with session_scope(ctx.bot.d['session_maker']) as session:
            await provider_ops.create_provider(session, str(ctx.guild_id), name, ctx.options.url, secret)
    except ConflictError:
        await ctx.respond(
            f"Provider \"{name}\" already exists in this server.",
            flags=hikari.MessageFlag.EPHEMERAL
        )
        return

    logger.info(f"Added provider {name} in guild {ctx.guild_id}")
    await ctx.respond(f"Provider **{name}** added.", flags=hikari.MessageFlag.EPHEMERAL)


@provider_group.child
@lightbulb.option("name", "Provider name")
@lightbulb.command("delete", "Delete a provider")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def delete_command(ctx: lightbulb.Context) -> None:
    """Remove a provider."""
    name = ctx.options.name

    try:
        async with session_scope(ctx.bot.d['session_maker']) as session:
            await provider_ops.delete_provider(session, str(ctx.guild_id), name)
    except NotFoundError:
        await ctx.respond(
            f"Provider \"{name}\" not found in this server.",
            flags=hikari.MessageFlag.EPHEMERAL
        )
        return

    await ctx.respond(f"Provider **{name}** deleted.", flags=hikari.MessageFlag.EPHEMERAL)


@provider_group.child
@lightbulb.command("list", "List all configured providers for this server")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def list_command(ctx: lightbulb.Context) -> None:
    """List providers with their URLs."""
    async with session_scope(ctx.bot.d['session_maker']) as session:
        providers = await provider_ops.list_providers(session, str(ctx.guild_id))
        lines = [f"- **{provider.name}**: {provider.url}" for provider in providers]

    if not lines:
        await ctx.respond(
            "No providers configured for this server. Add one with `/provider add`.",
            flags=hikari.MessageFlag.EPHEMERAL
        )
        return

    await ctx.respond(
        "Configured providers for this server:\n" + "\n".join(lines),
        flags=hikari.MessageFlag.EPHEMERAL
    )


@plugin.command
@lightbulb.option("provider", "Provider name", required=False)
@lightbulb.command("models", "List available models")
@lightbulb.implements(lightbulb.SlashCommand)
async def models_command(ctx: lightbulb.Context) -> None:
    """List the models a provider offers, split into message-sized chunks."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    cipher: CredentialCipher = ctx.bot.d['cipher']
    client: CompletionClient = ctx.bot.d['completion_client']
    guild_id = str(ctx.guild_id)
    requested = ctx.options.provider

    async with session_scope(ctx.bot.d['session_maker']) as session:
        if requested:
            provider = await provider_ops.find_provider_ignoring_case(session, guild_id, requested)
            if provider is None:
                await ctx.edit_last_response(f"Provider \"{requested}\" not found.")
                return
        else:
            provider = await provider_ops.first_provider(session, guild_id)
            if provider is None:
                await ctx.edit_last_response(
                    "No providers configured for this server. Add one with `/provider add`."
                )
                return

        try:
            credential = decrypt_provider(cipher, provider)
        except CredentialDecryptionError:
            await ctx.edit_last_response(
                f"Could not decrypt API key for provider \"{provider.name}\". Please re-add the provider."
            )
            return

    try:
        models = await client.list_models(credential)
    except ServiceError as e:
        logger.error(f"Failed to list models from {credential.name}: {e}")
        await ctx.edit_last_response(e.get_user_message())
        return

    listing = "\n".join(models) if models else "(No models listed by provider)"
    chunks = split_message(f"Models from **{credential.name}**:\n{listing}")

    await ctx.edit_last_response(chunks[0])
    for chunk in chunks[1:]:
        await ctx.respond(chunk, flags=hikari.MessageFlag.EPHEMERAL)


def load(bot: lightbulb.BotApp) -> None:
    """Load the providers plugin."""
    bot.add_plugin(plugin)
    logger.info("Providers plugin loaded")


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the providers plugin."""
    bot.remove_plugin(plugin)
    logger.info("Providers plugin unloaded")
