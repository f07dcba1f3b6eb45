"""Tests for slash command handlers.

Command callbacks are invoked directly with a mocked lightbulb context whose
``bot.d`` holds real services backed by the test database.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import hikari
import pytest

from agent_relay.bot.plugins import agents as agents_plugin
from agent_relay.bot.plugins import providers as providers_plugin
from agent_relay.bot.plugins import settings as settings_plugin
from agent_relay.bot.services.exceptions import ProviderResponseError
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import AgentOperations
from agent_relay.storage.crud import GuildSettingsOperations
from agent_relay.storage.crud import ProviderOperations
from agent_relay.storage.crud import TurnOperations
from agent_relay.storage.crud import YapSettingOperations


@pytest.fixture
def mock_context(session_maker, cipher):
    """Create a mock lightbulb context."""
    ctx = Mock()
    ctx.guild_id = 111
    ctx.channel_id = 222
    ctx.respond = AsyncMock()
    ctx.edit_last_response = AsyncMock()
    ctx.options = Mock()
    ctx.raw_options = {}

    ctx.bot = Mock()
    ctx.bot.rest = Mock()
    ctx.bot.d = {
        'session_maker': session_maker,
        'cipher': cipher,
        'completion_client': Mock(list_models=AsyncMock(return_value=[])),
        'attachment_fetcher': Mock(fetch_bytes=AsyncMock(return_value=b"Be helpful.")),
    }
    return ctx


def last_reply(ctx) -> str:
    if ctx.edit_last_response.await_args:
        return ctx.edit_last_response.await_args.args[0]
    return ctx.respond.await_args.args[0]


async def add_provider(session_maker, cipher, name="openai", url="https://llm.test/v1"):
    async with session_scope(session_maker) as session:
        await ProviderOperations().create_provider(session, "111", name, url, cipher.encrypt("sk-test"))


async def add_agent(session_maker, name="Alice", channel_id="222"):
    async with session_scope(session_maker) as session:
        agent = await AgentOperations().create_agent(
            session, "111", channel_id, name,
            model="gpt-test", provider_name="openai", webhook_id="900", webhook_token="tok",
        )
        return agent.id


class TestProviderCommands:
    """Test /provider and /models."""

    async def test_add_provider(self, mock_context, session_maker, cipher):
        mock_context.options.name = "openai"
        mock_context.options.url = "https://llm.test/v1"
        mock_context.options.key = "sk-secret"

        await providers_plugin.add_command.callback(mock_context)

        assert last_reply(mock_context) == "Provider **openai** added."
        mock_context.respond.assert_awaited_with(
            "Provider **openai** added.", flags=hikari.MessageFlag.EPHEMERAL
        )
        async with session_scope(session_maker) as session:
            provider = await ProviderOperations().get_provider(session, "111", "openai")
            assert cipher.decrypt(provider.encrypted_key, provider.iv, provider.auth_tag) == "sk-secret"

    async def test_add_duplicate_provider(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher)
        mock_context.options.name = "openai"
        mock_context.options.url = "https://other.test"
        mock_context.options.key = "sk"

        await providers_plugin.add_command.callback(mock_context)

        assert last_reply(mock_context) == 'Provider "openai" already exists in this server.'

    async def test_list_and_delete(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher)

        await providers_plugin.list_command.callback(mock_context)
        assert last_reply(mock_context) == (
            "Configured providers for this server:\n- **openai**: https://llm.test/v1"
        )

        mock_context.options.name = "openai"
        await providers_plugin.delete_command.callback(mock_context)
        assert last_reply(mock_context) == "Provider **openai** deleted."

        await providers_plugin.delete_command.callback(mock_context)
        assert last_reply(mock_context) == 'Provider "openai" not found in this server.'

    async def test_list_without_providers(self, mock_context):
        await providers_plugin.list_command.callback(mock_context)

        assert last_reply(mock_context) == (
            "No providers configured for this server. Add one with `/provider add`."
        )

    async def test_models_defaults_to_first_provider(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher, name="Groq")
        await add_provider(session_maker, cipher, name="Other")
        client = mock_context.bot.d['completion_client']
        client.list_models.return_value = ["llama-a", "llama-b"]
        mock_context.options.provider = None

        await providers_plugin.models_command.callback(mock_context)

        credential = client.list_models.await_args.args[0]
        assert credential.name == "Groq"
        assert credential.api_key == "sk-test"
        assert last_reply(mock_context) == "Models from **Groq**:\nllama-a\nllama-b"

    async def test_models_provider_lookup_ignores_case(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher, name="Groq")
        mock_context.options.provider = "groq"

        await providers_plugin.models_command.callback(mock_context)

        assert last_reply(mock_context) == "Models from **Groq**:\n(No models listed by provider)"

    async def test_models_unknown_provider(self, mock_context):
        mock_context.options.provider = "nope"

        await providers_plugin.models_command.callback(mock_context)

        assert last_reply(mock_context) == 'Provider "nope" not found.'

    async def test_models_provider_error(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher)
        mock_context.options.provider = None
        mock_context.bot.d['completion_client'].list_models.side_effect = ProviderResponseError(
            "openai", 404, "Not Found",
            user_message='Provider "openai" does not have a /models endpoint (received 404 Not Found).',
        )

        await providers_plugin.models_command.callback(mock_context)

        assert last_reply(mock_context) == (
            'Provider "openai" does not have a /models endpoint (received 404 Not Found).'
        )

    async def test_models_long_listing_is_chunked(self, mock_context, session_maker, cipher):
        await add_provider(session_maker, cipher)
        mock_context.options.provider = None
        mock_context.bot.d['completion_client'].list_models.return_value = [
            f"model-{i:04d}-" + "x" * 40 for i in range(100)
        ]

        await providers_plugin.models_command.callback(mock_context)

        first = mock_context.edit_last_response.await_args.args[0]
        followups = [call.args[0] for call in mock_context.respond.await_args_list[1:]]
        assert first.startswith("Models from **openai**:")
        assert followups
        assert all(len(chunk) <= 1900 for chunk in [first, *followups])


class TestSettingsCommands:
    """Test guild settings commands."""

    async def test_context_window(self, mock_context, session_maker):
        mock_context.options.size = 25

        await settings_plugin.context_window_command.callback(mock_context)

        assert last_reply(mock_context) == "Context window set to 25 messages."
        async with session_scope(session_maker) as session:
            guild_settings = await GuildSettingsOperations().get_settings(session, "111")
            assert guild_settings.context_window == 25

    async def test_loop_depth(self, mock_context, session_maker):
        mock_context.options.depth = 4

        await settings_plugin.loop_depth_command.callback(mock_context)

        assert last_reply(mock_context) == "Agent-to-agent reply loop depth set to 4"
        async with session_scope(session_maker) as session:
            guild_settings = await GuildSettingsOperations().get_settings(session, "111")
            assert guild_settings.loop_depth == 4

    async def test_clear_context_defaults_to_current_channel(self, mock_context, session_maker):
        agent_id = await add_agent(session_maker)
        async with session_scope(session_maker) as session:
            await TurnOperations().add_turn(session, agent_id, "user", "one")
            await TurnOperations().add_turn(session, agent_id, "user", "two")
        mock_context.options.channel = None

        await settings_plugin.clear_context_command.callback(mock_context)

        assert last_reply(mock_context) == "Cleared 2 messages from context in <#222>."

    async def test_yap_enable(self, mock_context, session_maker):
        agent_id = await add_agent(session_maker)
        mock_context.options.agent = "Alice"
        mock_context.options.enabled = True
        mock_context.options.channel = Mock(id=333)

        await settings_plugin.yap_command.callback(mock_context)

        assert last_reply(mock_context) == "Auto-reply for agent **Alice** in <#333> has been **enabled**."
        async with session_scope(session_maker) as session:
            assert await YapSettingOperations().enabled_agent_ids(session, "333") == [agent_id]

    async def test_yap_unknown_agent(self, mock_context):
        mock_context.options.agent = "alice"
        mock_context.options.enabled = True
        mock_context.options.channel = Mock(id=333)

        await settings_plugin.yap_command.callback(mock_context)

        assert last_reply(mock_context) == (
            'Agent "alice" not found in this server. Agent names are case-sensitive.'
        )

    async def test_help(self, mock_context):
        await settings_plugin.help_command.callback(mock_context)

        assert "/agent create" in last_reply(mock_context)
        assert "<msg>" in last_reply(mock_context)


class TestAgentCreateCommand:
    """Test /agent create."""

    @pytest.fixture
    def create_context(self, mock_context):
        mock_context.options.name = "Alice"
        mock_context.options.model = "gpt-test"
        mock_context.options.provider = "openai"
        mock_context.options.multimodal = True
        mock_context.options.sysprompt = Mock(filename="prompt.md", url="https://cdn/prompt.md")
        mock_context.options.avatar = None
        mock_context.bot.rest.create_webhook = AsyncMock(return_value=Mock(id=777, token="hook-token"))
        mock_context.bot.rest.delete_webhook = AsyncMock()
        return mock_context

    async def test_creates_agent_with_webhook(self, create_context, session_maker, cipher):
        await add_provider(session_maker, cipher)

        await agents_plugin.create_command.callback(create_context)

        assert last_reply(create_context) == "Agent **Alice** created in <#222>!"
        create_context.bot.rest.create_webhook.assert_awaited_once()
        async with session_scope(session_maker) as session:
            agent = await AgentOperations().get_channel_agent(session, "111", "222", "Alice")
            assert agent.webhook_id == "777"
            assert agent.system_prompt == "Be helpful."
            assert agent.multimodal is True

    async def test_unknown_provider(self, create_context):
        await agents_plugin.create_command.callback(create_context)

        assert last_reply(create_context) == (
            'Provider "openai" not found. Please add it using `/provider add`.'
        )
        create_context.bot.rest.create_webhook.assert_not_called()

    async def test_rejects_non_text_prompt(self, create_context, session_maker, cipher):
        await add_provider(session_maker, cipher)
        create_context.options.sysprompt = Mock(filename="prompt.pdf", url="https://cdn/prompt.pdf")

        await agents_plugin.create_command.callback(create_context)

        assert last_reply(create_context) == "System prompt must be a .md or .txt file."

    async def test_duplicate_name_removes_new_webhook(self, create_context, session_maker, cipher):
        await add_provider(session_maker, cipher)
        await add_agent(session_maker)

        await agents_plugin.create_command.callback(create_context)

        assert last_reply(create_context) == (
            'An agent named "Alice" already exists in <#222>. Please choose a different name or channel.'
        )
        create_context.bot.rest.delete_webhook.assert_awaited_once()
