"""Tests for database CRUD operations."""

from __future__ import annotations

import pytest

from agent_relay.storage.crud import AgentOperations
from agent_relay.storage.crud import ConflictError
from agent_relay.storage.crud import GuildSettingsOperations
from agent_relay.storage.crud import NotFoundError
from agent_relay.storage.crud import ProviderOperations
from agent_relay.storage.crud import TurnOperations
from agent_relay.storage.crud import YapSettingOperations


def agent_data(**overrides):
    data = dict(
        model="gpt-test",
        provider_name="openai",
        webhook_id="111",
        webhook_token="token",
    )
    data.update(overrides)
    return data


class TestProviderOperations:
    """Test provider CRUD."""

    async def test_create_and_get(self, db_session, cipher):
        ops = ProviderOperations()
        await ops.create_provider(db_session, "g1", "OpenAI", "https://api.openai.com/v1", cipher.encrypt("sk"))

        provider = await ops.get_provider(db_session, "g1", "OpenAI")

        assert provider.url == "https://api.openai.com/v1"
        assert cipher.decrypt(provider.encrypted_key, provider.iv, provider.auth_tag) == "sk"

    async def test_duplicate_name_conflicts(self, db_session, cipher):
        ops = ProviderOperations()
        await ops.create_provider(db_session, "g1", "OpenAI", "https://a", cipher.encrypt("sk"))
        await db_session.commit()

        with pytest.raises(ConflictError):
            await ops.create_provider(db_session, "g1", "OpenAI", "https://b", cipher.encrypt("sk"))

    async def test_same_name_in_other_guild(self, db_session, cipher):
        ops = ProviderOperations()
        await ops.create_provider(db_session, "g1", "OpenAI", "https://a", cipher.encrypt("sk"))
        await ops.create_provider(db_session, "g2", "OpenAI", "https://b", cipher.encrypt("sk"))

        assert len(await ops.list_providers(db_session, "g2")) == 1

    async def test_lookup_helpers(self, db_session, cipher):
        ops = ProviderOperations()
        await ops.create_provider(db_session, "g1", "Groq", "https://a", cipher.encrypt("sk"))
        await ops.create_provider(db_session, "g1", "Anthropic", "https://b", cipher.encrypt("sk"))

        assert (await ops.find_provider_ignoring_case(db_session, "g1", "groq")).name == "Groq"
        assert await ops.find_provider_ignoring_case(db_session, "g1", "missing") is None
        assert (await ops.first_provider(db_session, "g1")).name == "Groq"
        assert [p.name for p in await ops.list_providers(db_session, "g1")] == ["Anthropic", "Groq"]

    async def test_delete(self, db_session, cipher):
        ops = ProviderOperations()
        await ops.create_provider(db_session, "g1", "OpenAI", "https://a", cipher.encrypt("sk"))

        await ops.delete_provider(db_session, "g1", "OpenAI")

        with pytest.raises(NotFoundError):
            await ops.get_provider(db_session, "g1", "OpenAI")
        with pytest.raises(NotFoundError):
            await ops.delete_provider(db_session, "g1", "OpenAI")


class TestAgentOperations:
    """Test agent CRUD and linked clones."""

    async def test_name_unique_per_channel(self, db_session):
        ops = AgentOperations()
        await ops.create_agent(db_session, "g1", "c1", "Alice", **agent_data())
        await ops.create_agent(db_session, "g1", "c2", "Alice", **agent_data(webhook_id="222"))
        await db_session.commit()

        with pytest.raises(ConflictError):
            await ops.create_agent(db_session, "g1", "c1", "Alice", **agent_data(webhook_id="333"))

    async def test_channel_listing_in_creation_order(self, db_session):
        ops = AgentOperations()
        await ops.create_agent(db_session, "g1", "c1", "Zed", **agent_data())
        await ops.create_agent(db_session, "g1", "c1", "Amy", **agent_data(webhook_id="222"))
        await ops.create_agent(db_session, "g1", "c2", "Bob", **agent_data(webhook_id="333"))

        agents = await ops.list_channel_agents(db_session, "g1", "c1")

        assert [a.name for a in agents] == ["Zed", "Amy"]

    async def test_find_agent_by_name_is_case_sensitive(self, db_session):
        ops = AgentOperations()
        await ops.create_agent(db_session, "g1", "c1", "Alice", **agent_data())

        assert (await ops.find_agent_by_name(db_session, "g1", "Alice")).channel_id == "c1"
        assert await ops.find_agent_by_name(db_session, "g1", "alice") is None

    async def test_update_propagates_to_linked_clones(self, db_session):
        ops = AgentOperations()
        source = await ops.create_agent(
            db_session, "g1", "c1", "Alice", is_source_for_link=True, **agent_data()
        )
        clone = await ops.create_agent(
            db_session, "g1", "c2", "Alice", linked_to_agent_id=source.id, **agent_data(webhook_id="222")
        )
        loose = await ops.create_agent(db_session, "g1", "c3", "Alice", **agent_data(webhook_id="333"))

        changed = await ops.update_agent(
            db_session, source.id, {"model": "gpt-new", "multimodal": True, "name": "Alicia"}
        )

        assert [a.id for a in changed] == [source.id, clone.id]
        assert clone.model == "gpt-new"
        assert clone.multimodal is True
        # Names are not shared between linked agents
        assert clone.name == "Alice"
        assert loose.model == "gpt-test"

    async def test_update_of_unlinked_agent_touches_only_itself(self, db_session):
        ops = AgentOperations()
        agent = await ops.create_agent(db_session, "g1", "c1", "Alice", **agent_data())

        changed = await ops.update_agent(db_session, agent.id, {"system_prompt": "new"})

        assert changed == [agent]
        assert agent.system_prompt == "new"

    async def test_delete_removes_turns_and_yap(self, db_session):
        ops = AgentOperations()
        turn_ops = TurnOperations()
        yap_ops = YapSettingOperations()
        agent = await ops.create_agent(db_session, "g1", "c1", "Alice", **agent_data())
        await turn_ops.add_turn(db_session, agent.id, "user", "<msg>hi</msg>")
        await yap_ops.set_yap(db_session, agent.id, "c1", True)

        await ops.delete_agent(db_session, agent.id)

        assert await turn_ops.count_agent_turns(db_session, agent.id) == 0
        assert await yap_ops.enabled_agent_ids(db_session, "c1") == []
        with pytest.raises(NotFoundError):
            await ops.delete_agent(db_session, agent.id)


class TestTurnOperations:
    """Test turn persistence and history windows."""

    async def test_recent_turns_span_channel_agents(self, db_session):
        agents = AgentOperations()
        turns = TurnOperations()
        alice = await agents.create_agent(db_session, "g1", "c1", "Alice", **agent_data())
        botty = await agents.create_agent(db_session, "g1", "c1", "Botty", **agent_data(webhook_id="222"))
        other = await agents.create_agent(db_session, "g1", "c2", "Carl", **agent_data(webhook_id="333"))

        await turns.add_turn(db_session, alice.id, "user", "one")
        await turns.add_turn(db_session, alice.id, "assistant", "two", speaker_agent_id=alice.id)
        await turns.add_turn(db_session, botty.id, "user", "three")
        await turns.add_turn(db_session, other.id, "user", "elsewhere")

        recent = await turns.recent_channel_turns(db_session, "c1", 2)

        assert [t.content for t in recent] == ["two", "three"]

    async def test_non_positive_limit(self, db_session):
        assert await TurnOperations().recent_channel_turns(db_session, "c1", 0) == []

    async def test_invalid_role(self, db_session):
        with pytest.raises(ValueError):
            await TurnOperations().add_turn(db_session, 1, "system", "nope")

    async def test_clear_channel(self, db_session):
        agents = AgentOperations()
        turns = TurnOperations()
        alice = await agents.create_agent(db_session, "g1", "c1", "Alice", **agent_data())
        other = await agents.create_agent(db_session, "g1", "c2", "Carl", **agent_data(webhook_id="222"))
        await turns.add_turn(db_session, alice.id, "user", "one")
        await turns.add_turn(db_session, alice.id, "user", "two")
        await turns.add_turn(db_session, other.id, "user", "kept")

        assert await turns.clear_channel_turns(db_session, "c1") == 2
        assert await turns.count_agent_turns(db_session, other.id) == 1


class TestSettingsOperations:
    """Test guild settings and yap switches."""

    async def test_guild_settings_upsert(self, db_session):
        ops = GuildSettingsOperations()

        assert await ops.get_settings(db_session, "g1") is None

        await ops.set_context_window(db_session, "g1", 25, default_loop_depth=2)
        await ops.set_loop_depth(db_session, "g1", 4)

        settings = await ops.get_settings(db_session, "g1")
        assert (settings.context_window, settings.loop_depth) == (25, 4)

    async def test_loop_depth_first_uses_default_window(self, db_session):
        ops = GuildSettingsOperations()

        settings = await ops.set_loop_depth(db_session, "g1", 5, default_context_window=12)

        assert (settings.context_window, settings.loop_depth) == (12, 5)

    async def test_yap_toggle(self, db_session):
        agents = AgentOperations()
        yap = YapSettingOperations()
        alice = await agents.create_agent(db_session, "g1", "c1", "Alice", **agent_data())

        await yap.set_yap(db_session, alice.id, "c9", True)
        assert await yap.enabled_agent_ids(db_session, "c9") == [alice.id]

        await yap.set_yap(db_session, alice.id, "c9", False)
        assert await yap.enabled_agent_ids(db_session, "c9") == []
