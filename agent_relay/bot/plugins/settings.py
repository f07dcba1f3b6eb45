"""Guild conversation settings and help commands.

Provides ``/contextwindow``, ``/loopdepth``, ``/clearcontext``, ``/yap`` and
``/help``.
"""

from __future__ import annotations

import logging

import hikari
import lightbulb

from agent_relay.shared.config import get_settings
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import AgentOperations
from agent_relay.storage.crud import GuildSettingsOperations
from agent_relay.storage.crud import TurnOperations
from agent_relay.storage.crud import YapSettingOperations

logger = logging.getLogger(__name__)

# Create plugin
plugin = lightbulb.Plugin("settings")

agent_ops = AgentOperations()
guild_settings_ops = GuildSettingsOperations()
turn_ops = TurnOperations()
yap_ops = YapSettingOperations()

HELP_TEXT = """
**🤖 Bot Help**

`/agent create` [Name] [Model] [Provider] [Multimodal Y/N] [SysPrompt .md/.txt] [Avatar] [Channel]
Create a new AI agent (webhook). Avatar & channel are optional (channel defaults to current).

`/agent list` [Channel]
List agents in a channel (default: current).

`/agent delete` [Name] [Channel]
Delete an agent by name in a channel (default: current).

`/agent edit` [Name] [Model?] [Provider?] [Multimodal Y/N?] [SysPrompt .md/.txt?] [Avatar?]
Modify an existing agent's settings in the **current channel**. Optional fields will retain their current value if not provided.
If this agent is a source for linked clones, changes to model, provider, system prompt, and avatar will propagate to its clones.

`/agent refresh` [Name]
Recreate the webhook for an agent in this channel.

`/agent clone` [Original Agent Name] [Target Channel] [New Agent Name?]
Clone an existing agent's settings from any channel in this server to the target channel. If New Agent Name is not provided, the original name is used.
If `linked` is true, some edits to the original agent (like model, provider, system prompt, avatar) will also apply to this clone.

`/provider add` [Name] [Chat Completions URL] [API Key]
Add a new LLM provider (per-server).

`/provider delete` [Name]
Remove a provider.

`/provider list`
List all configured providers for this server.

`/models` [Provider]
List available models from a provider.

`/contextwindow` [Size]
Set how many messages to include in context.

`/loopdepth` [Depth]
Set how many agent-to-agent reply turns are allowed per message.

`/clearcontext` [Channel]
Clear stored messages for all agents in a channel (default: current).

`/yap` [Agent] [Enabled] [Channel]
Let an agent answer every message in a channel, batching bursts of messages into one reply.

---

To talk to an agent:
• Reply to one of its messages,
• Prefix your message with `@AgentName`, or
• Mention the agent's name as a word in your message.

All LLM replies will be broken into <msg>…</msg> chunks automatically and sent as separate messages.
"""


@plugin.command
@lightbulb.option("size", "Number of messages", type=int)
@lightbulb.command("contextwindow", "Set context window size")
@lightbulb.implements(lightbulb.SlashCommand)
async def context_window_command(ctx: lightbulb.Context) -> None:
    """Set how many turns are read back into each transcript."""
    size = ctx.options.size
    async with session_scope(ctx.bot.d['session_maker']) as session:
        await guild_settings_ops.set_context_window(
            session, str(ctx.guild_id), size, default_loop_depth=get_settings().default_loop_depth
        )

    await ctx.respond(f"Context window set to {size} messages.", flags=hikari.MessageFlag.EPHEMERAL)


@plugin.command
@lightbulb.option("depth", "Max agent reply turns per message", type=int)
@lightbulb.command("loopdepth", "Set agent-to-agent reply loop depth")
@lightbulb.implements(lightbulb.SlashCommand)
async def loop_depth_command(ctx: lightbulb.Context) -> None:
    """Set how deep agents may reply to each other."""
    depth = ctx.options.depth
    async with session_scope(ctx.bot.d['session_maker']) as session:
        await guild_settings_ops.set_loop_depth(
            session, str(ctx.guild_id), depth, default_context_window=get_settings().default_context_window
        )

    await ctx.respond(f"Agent-to-agent reply loop depth set to {depth}", flags=hikari.MessageFlag.EPHEMERAL)


@plugin.command
@lightbulb.option("channel", "Target channel", type=hikari.TextableGuildChannel, required=False)
@lightbulb.command("clearcontext", "Clear conversation context")
@lightbulb.implements(lightbulb.SlashCommand)
async def clear_context_command(ctx: lightbulb.Context) -> None:
    """Delete the stored turns of every agent in a channel."""
    channel_id = ctx.options.channel.id if ctx.options.channel else ctx.channel_id

    async with session_scope(ctx.bot.d['session_maker']) as session:
        cleared = await turn_ops.clear_channel_turns(session, str(channel_id))

    logger.info(f"Cleared {cleared} turns in channel {channel_id}")
    await ctx.respond(
        f"Cleared {cleared} messages from context in <#{channel_id}>.",
        flags=hikari.MessageFlag.EPHEMERAL
    )


@plugin.command
@lightbulb.option("channel", "The channel where this agent will auto-reply.", type=hikari.TextableGuildChannel)
@lightbulb.option("enabled", "Enable or disable auto-reply for this agent.", type=bool)
@lightbulb.option("agent", "Name of the agent to configure.")
@lightbulb.command("yap", "Configure channel auto-reply for an agent.")
@lightbulb.implements(lightbulb.SlashCommand)
async def yap_command(ctx: lightbulb.Context) -> None:
    """Turn auto-reply on or off for an agent in a channel."""
    await ctx.respond(hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL)

    agent_name = ctx.options.agent
    enabled = ctx.options.enabled
    channel_id = ctx.options.channel.id

    async with session_scope(ctx.bot.d['session_maker']) as session:
        agent = await agent_ops.find_agent_by_name(session, str(ctx.guild_id), agent_name)
        if agent is None:
            await ctx.edit_last_response(
                f"Agent \"{agent_name}\" not found in this server. Agent names are case-sensitive."
            )
            return

        await yap_ops.set_yap(session, agent.id, str(channel_id), enabled)

    status = "enabled" if enabled else "disabled"
    logger.info(f"Auto-reply {status} for agent {agent_name} in channel {channel_id}")
    await ctx.edit_last_response(
        f"Auto-reply for agent **{agent_name}** in <#{channel_id}> has been **{status}**."
    )


@plugin.command
@lightbulb.command("help", "Show help for all commands")
@lightbulb.implements(lightbulb.SlashCommand)
async def help_command(ctx: lightbulb.Context) -> None:
    await ctx.respond(HELP_TEXT, flags=hikari.MessageFlag.EPHEMERAL)


def load(bot: lightbulb.BotApp) -> None:
    """Load the settings plugin."""
    bot.add_plugin(plugin)
    logger.info("Settings plugin loaded")


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the settings plugin."""
    bot.remove_plugin(plugin)
    logger.info("Settings plugin unloaded")
