"""Database operations for agent-relay.

This module provides CRUD operations for all models. All operations are
async, use SQLAlchemy 2.0 syntax and leave transaction control (commit or
rollback) to the caller.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agent_relay.shared.crypto import EncryptedSecret
from agent_relay.storage.models import (
    Agent,
    ConversationTurn,
    GuildSettings,
    Provider,
    YapSetting,
)

# Fields an edit on a link source pushes to every linked clone
LINKED_FIELDS = (
    "model",
    "provider_name",
    "multimodal",
    "system_prompt",
    "avatar_mime_type",
    "avatar_data",
)


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when a database constraint is violated."""
    pass


class ProviderOperations:
    """Database operations for completion providers."""

    async def create_provider(
        self,
        session: AsyncSession,
        guild_id: str,
        name: str,
        url: str,
        secret: EncryptedSecret
    ) -> Provider:
        """Create a provider with an encrypted API key.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            name: Provider name, unique within the guild
            url: Completions URL as entered by the user
            secret: Encrypted API key

        Returns:
            Provider: Created provider

        Raises:
            ConflictError: If the guild already has a provider with this name
            DatabaseOperationError: If creation fails
        """
        try:
            provider = Provider(
                guild_id=guild_id,
                name=name,
                url=url,
                encrypted_key=secret.ciphertext,
                iv=secret.iv,
                auth_tag=secret.auth_tag,
            )
            session.add(provider)
            await session.flush()
            return provider

        except IntegrityError as e:
            raise ConflictError(f"Provider '{name}' already exists in this server") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create provider: {e}") from e

    async def get_provider(
        self,
        session: AsyncSession,
        guild_id: str,
        name: str
    ) -> Provider:
        """Get a provider by name.

        Raises:
            NotFoundError: If the provider doesn't exist
        """
        stmt = select(Provider).where(
            Provider.guild_id == guild_id,
            Provider.name == name,
        )
        result = await session.execute(stmt)
        provider = result.scalar_one_or_none()
        if provider is None:
            raise NotFoundError(f"Provider not found: {name}")
        return provider

    async def find_provider_ignoring_case(
        self,
        session: AsyncSession,
        guild_id: str,
        name: str
    ) -> Optional[Provider]:
        """Find a provider by case-insensitive name."""
        stmt = select(Provider).where(
            Provider.guild_id == guild_id,
            func.lower(Provider.name) == name.lower(),
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def first_provider(
        self,
        session: AsyncSession,
        guild_id: str
    ) -> Optional[Provider]:
        """Get the provider that was added first in a guild."""
        stmt = select(Provider).where(Provider.guild_id == guild_id).order_by(Provider.id).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_providers(
        self,
        session: AsyncSession,
        guild_id: str
    ) -> List[Provider]:
        """List all providers of a guild ordered by name."""
        stmt = select(Provider).where(Provider.guild_id == guild_id).order_by(Provider.name)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def delete_provider(
        self,
        session: AsyncSession,
        guild_id: str,
        name: str
    ) -> None:
        """Delete a provider.

        Raises:
            NotFoundError: If the provider doesn't exist
        """
        stmt = delete(Provider).where(
            Provider.guild_id == guild_id,
            Provider.name == name,
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError(f"Provider not found: {name}")


class AgentOperations:
    """Database operations for agents.

    Handles agent creation, lookup, edits (including propagation to linked
    clones) and deletion.
    """

    async def create_agent(
        self,
        session: AsyncSession,
        guild_id: str,
        channel_id: str,
        name: str,
        **agent_data
    ) -> Agent:
        """Create a new agent.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            channel_id: Channel the agent speaks in
            name: Agent name, unique within the channel
            **agent_data: Remaining columns (model, provider_name, webhook ...)

        Returns:
            Agent: Created agent

        Raises:
            ConflictError: If an agent with this name exists in the channel
            DatabaseOperationError: If creation fails
        """
        try:
            agent = Agent(
                guild_id=guild_id,
                channel_id=channel_id,
                name=name,
                **agent_data
            )
            session.add(agent)
            await session.flush()
            return agent

        except IntegrityError as e:
            raise ConflictError(f"Agent '{name}' already exists in this channel") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create agent: {e}") from e

    async def get_agent(
        self,
        session: AsyncSession,
        agent_id: int
    ) -> Agent:
        """Get an agent by ID.

        Raises:
            NotFoundError: If the agent doesn't exist
        """
        agent = await session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    async def get_channel_agent(
        self,
        session: AsyncSession,
        guild_id: str,
        channel_id: str,
        name: str
    ) -> Agent:
        """Get an agent by name within a channel.

        Raises:
            NotFoundError: If the agent doesn't exist
        """
        stmt = select(Agent).where(
            Agent.guild_id == guild_id,
            Agent.channel_id == channel_id,
            Agent.name == name,
        )
        result = await session.execute(stmt)
        agent = result.scalar_one_or_none()
        if agent is None:
            raise NotFoundError(f"Agent '{name}' not found in this channel")
        return agent

    async def find_agent_by_name(
        self,
        session: AsyncSession,
        guild_id: str,
        name: str
    ) -> Optional[Agent]:
        """Find the first agent with a name anywhere in a guild."""
        stmt = (
            select(Agent)
            .where(Agent.guild_id == guild_id, Agent.name == name)
            .order_by(Agent.id)
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_channel_agents(
        self,
        session: AsyncSession,
        guild_id: str,
        channel_id: str
    ) -> List[Agent]:
        """List the agents of a channel in creation order."""
        stmt = (
            select(Agent)
            .where(Agent.guild_id == guild_id, Agent.channel_id == channel_id)
            .order_by(Agent.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_guild_agents(
        self,
        session: AsyncSession,
        guild_id: str
    ) -> List[Agent]:
        """List every agent of a guild ordered by channel then name."""
        stmt = (
            select(Agent)
            .where(Agent.guild_id == guild_id)
            .order_by(Agent.channel_id, Agent.name)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_linked_clones(
        self,
        session: AsyncSession,
        source_agent_id: int
    ) -> List[Agent]:
        """List the clones that follow a source agent."""
        stmt = select(Agent).where(Agent.linked_to_agent_id == source_agent_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def update_agent(
        self,
        session: AsyncSession,
        agent_id: int,
        updates: Dict[str, Any]
    ) -> List[Agent]:
        """Update an agent and propagate shared fields to linked clones.

        Args:
            session: Database session
            agent_id: Agent ID
            updates: Dictionary of fields to update

        Returns:
            List[Agent]: The updated agent followed by every clone that
            received propagated changes

        Raises:
            NotFoundError: If the agent doesn't exist
            DatabaseOperationError: If the update fails
        """
        try:
            agent = await self.get_agent(session, agent_id)

            for field, value in updates.items():
                if hasattr(agent, field):
                    setattr(agent, field, value)

            changed = [agent]
            shared = {k: v for k, v in updates.items() if k in LINKED_FIELDS}
            if agent.is_source_for_link and shared:
                for clone in await self.list_linked_clones(session, agent.id):
                    for field, value in shared.items():
                        setattr(clone, field, value)
                    changed.append(clone)

            await session.flush()
            return changed

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update agent: {e}") from e

    async def delete_agent(
        self,
        session: AsyncSession,
        agent_id: int
    ) -> None:
        """Delete an agent with its turn records and yap settings.

        Raises:
            NotFoundError: If the agent doesn't exist
        """
        try:
            await session.execute(delete(ConversationTurn).where(ConversationTurn.agent_id == agent_id))
            await session.execute(delete(YapSetting).where(YapSetting.agent_id == agent_id))
            result = await session.execute(delete(Agent).where(Agent.id == agent_id))

            if result.rowcount == 0:
                raise NotFoundError(f"Agent not found: {agent_id}")

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete agent: {e}") from e


class TurnOperations:
    """Database operations for persisted conversation turns."""

    async def add_turn(
        self,
        session: AsyncSession,
        agent_id: int,
        role: str,
        content: str,
        author: Optional[str] = None,
        speaker_agent_id: Optional[int] = None
    ) -> ConversationTurn:
        """Append a turn to an agent's history."""
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {role}")

        turn = ConversationTurn(
            agent_id=agent_id,
            role=role,
            content=content,
            author=author,
            speaker_agent_id=speaker_agent_id,
        )
        session.add(turn)
        await session.flush()
        return turn

    async def recent_channel_turns(
        self,
        session: AsyncSession,
        channel_id: str,
        limit: int
    ) -> List[ConversationTurn]:
        """Get the most recent turns of every agent in a channel.

        Returns:
            List[ConversationTurn]: At most ``limit`` turns, oldest first
        """
        if limit <= 0:
            return []

        stmt = (
            select(ConversationTurn)
            .join(Agent, Agent.id == ConversationTurn.agent_id)
            .where(Agent.channel_id == channel_id)
            .order_by(desc(ConversationTurn.created_at), desc(ConversationTurn.id))
            .limit(limit)
        )
        result = await session.execute(stmt)
        turns = list(result.scalars().all())
        turns.reverse()
        return turns

    async def clear_channel_turns(
        self,
        session: AsyncSession,
        channel_id: str
    ) -> int:
        """Delete the turns of every agent in a channel.

        Returns:
            int: Number of deleted turns
        """
        agent_ids = select(Agent.id).where(Agent.channel_id == channel_id)
        stmt = delete(ConversationTurn).where(ConversationTurn.agent_id.in_(agent_ids))
        result = await session.execute(stmt)
        return result.rowcount or 0

    async def count_agent_turns(
        self,
        session: AsyncSession,
        agent_id: int
    ) -> int:
        """Count the turns owned by an agent."""
        stmt = select(func.count()).select_from(ConversationTurn).where(
            ConversationTurn.agent_id == agent_id
        )
        result = await session.execute(stmt)
        return result.scalar_one()


class GuildSettingsOperations:
    """Database operations for per-guild conversation limits."""

    async def get_settings(
        self,
        session: AsyncSession,
        guild_id: str
    ) -> Optional[GuildSettings]:
        """Get guild settings, or None when the guild never changed them."""
        return await session.get(GuildSettings, guild_id)

    async def _get_or_create(
        self,
        session: AsyncSession,
        guild_id: str,
        defaults: Dict[str, int]
    ) -> GuildSettings:
        guild_settings = await session.get(GuildSettings, guild_id)
        if guild_settings is None:
            guild_settings = GuildSettings(guild_id=guild_id, **defaults)
            session.add(guild_settings)
        return guild_settings

    async def set_context_window(
        self,
        session: AsyncSession,
        guild_id: str,
        context_window: int,
        default_loop_depth: int = 2
    ) -> GuildSettings:
        """Set the number of turns included in context."""
        guild_settings = await self._get_or_create(
            session, guild_id, {"context_window": context_window, "loop_depth": default_loop_depth}
        )
        guild_settings.context_window = context_window
        await session.flush()
        return guild_settings

    async def set_loop_depth(
        self,
        session: AsyncSession,
        guild_id: str,
        loop_depth: int,
        default_context_window: int = 10
    ) -> GuildSettings:
        """Set the maximum agent-to-agent reply depth."""
        guild_settings = await self._get_or_create(
            session, guild_id, {"context_window": default_context_window, "loop_depth": loop_depth}
        )
        guild_settings.loop_depth = loop_depth
        await session.flush()
        return guild_settings


class YapSettingOperations:
    """Database operations for auto-reply switches."""

    async def set_yap(
        self,
        session: AsyncSession,
        agent_id: int,
        channel_id: str,
        enabled: bool
    ) -> YapSetting:
        """Enable or disable auto-reply for an agent in a channel."""
        yap_setting = await session.get(YapSetting, (agent_id, channel_id))
        if yap_setting is None:
            yap_setting = YapSetting(agent_id=agent_id, channel_id=channel_id, is_enabled=enabled)
            session.add(yap_setting)
        else:
            yap_setting.is_enabled = enabled
        await session.flush()
        return yap_setting

    async def enabled_agent_ids(
        self,
        session: AsyncSession,
        channel_id: str
    ) -> List[int]:
        """List the agents with auto-reply enabled in a channel."""
        stmt = select(YapSetting.agent_id).where(
            YapSetting.channel_id == channel_id,
            YapSetting.is_enabled.is_(True),
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
