"""Persistence facade used by the turn orchestrator and router.

Each call opens its own short session so a turn never holds a database
transaction across a remote call.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.services.models import GuildLimits
from agent_relay.bot.services.models import TurnRecord
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import AgentOperations
from agent_relay.storage.crud import GuildSettingsOperations
from agent_relay.storage.crud import NotFoundError
from agent_relay.storage.crud import TurnOperations
from agent_relay.storage.crud import YapSettingOperations

logger = logging.getLogger(__name__)


class TurnStore:
    """Reads and writes conversation state through the CRUD layer."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        default_limits: Optional[GuildLimits] = None
    ):
        self._session_maker = session_maker
        self._default_limits = default_limits or GuildLimits()
        self._agent_ops = AgentOperations()
        self._turn_ops = TurnOperations()
        self._guild_ops = GuildSettingsOperations()
        self._yap_ops = YapSettingOperations()

    async def insert_turn(
        self,
        agent_id: int,
        role: str,
        content: str,
        author: Optional[str] = None,
        speaker_agent_id: Optional[int] = None
    ) -> TurnRecord:
        """Persist one turn owned by ``agent_id``."""
        async with session_scope(self._session_maker) as session:
            turn = await self._turn_ops.add_turn(
                session,
                agent_id=agent_id,
                role=role,
                content=content,
                author=author,
                speaker_agent_id=speaker_agent_id,
            )
            # created_at is filled by the database and not loaded after flush
            return TurnRecord(
                id=turn.id,
                agent_id=agent_id,
                role=role,
                content=content,
                author=author,
                speaker_agent_id=speaker_agent_id,
            )

    async def recent_turns(self, channel_id: str, limit: int) -> list[TurnRecord]:
        """Most recent turns of every agent in a channel, oldest first."""
        async with session_scope(self._session_maker) as session:
            turns = await self._turn_ops.recent_channel_turns(session, str(channel_id), limit)
            return [TurnRecord.from_model(turn) for turn in turns]

    async def guild_limits(self, guild_id: str) -> GuildLimits:
        """Conversation limits of a guild, falling back to the defaults."""
        async with session_scope(self._session_maker) as session:
            guild_settings = await self._guild_ops.get_settings(session, str(guild_id))
            if guild_settings is None:
                return self._default_limits
            return GuildLimits(
                context_window=guild_settings.context_window,
                max_loop_depth=guild_settings.loop_depth,
            )

    async def get_agent(self, agent_id: int) -> Optional[AgentProfile]:
        """Load one agent, or None if it was deleted."""
        async with session_scope(self._session_maker) as session:
            try:
                agent = await self._agent_ops.get_agent(session, agent_id)
            except NotFoundError:
                logger.warning(f"Agent {agent_id} not found")
                return None
            return AgentProfile.from_model(agent)

    async def channel_agents(self, guild_id: str, channel_id: str) -> tuple[AgentProfile, ...]:
        """All agents configured in a channel, in creation order."""
        async with session_scope(self._session_maker) as session:
            agents = await self._agent_ops.list_channel_agents(session, str(guild_id), str(channel_id))
            return tuple(AgentProfile.from_model(agent) for agent in agents)

    async def yap_agent_ids(self, channel_id: str) -> list[int]:
        """Agents with auto-reply enabled in a channel."""
        async with session_scope(self._session_maker) as session:
            return await self._yap_ops.enabled_agent_ids(session, str(channel_id))
