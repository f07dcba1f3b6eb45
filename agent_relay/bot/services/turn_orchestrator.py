"""Recursive turn orchestration for channel agents.

A turn takes one input addressed to an agent, streams the agent's reply
from its provider, delivers and persists every ``<msg>`` segment, and then
starts a follow-up turn for each other agent in the channel whose name the
reply mentions. Follow-ups run one level deeper; a turn deeper than the
guild's loop depth ends immediately without side effects.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

from agent_relay.bot.agents.segmenter import Segment
from agent_relay.bot.agents.segmenter import StreamSegmenter
from agent_relay.bot.agents.transcript import AttachmentSource
from agent_relay.bot.agents.transcript import TranscriptBuilder
from agent_relay.bot.agents.transcript import prepare_input
from agent_relay.bot.services.exceptions import ConfigurationError
from agent_relay.bot.services.exceptions import ProviderError
from agent_relay.bot.services.exceptions import StreamInterruptedError
from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.services.models import InputEvent
from agent_relay.bot.services.models import TurnOutcome
from agent_relay.bot.services.models import TurnStatus
from agent_relay.bot.utils.messages import mentions_name

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    """Outbound side of a turn."""

    def dispatch(self, agent: AgentProfile, text: str): ...

    async def report(self, channel_id: str, text: str) -> None: ...

    def trigger_typing(self, channel_id: str) -> None: ...


class TurnOrchestrator:
    """Runs agent turns and the agent-to-agent replies they trigger."""

    def __init__(
        self,
        store,
        resolver,
        completion_client,
        dispatcher: Dispatcher,
        fetcher: AttachmentSource,
        builder: Optional[TranscriptBuilder] = None
    ):
        """Initialize the orchestrator.

        Args:
            store: ``TurnStore``-like persistence facade
            resolver: ``ProviderResolver``-like credential lookup
            completion_client: ``CompletionClient``-like streaming client
            dispatcher: Delivers segments and error reports
            fetcher: Downloads text attachments for multimodal agents
            builder: Transcript builder, a default one is created when omitted
        """
        self.store = store
        self.resolver = resolver
        self.completion_client = completion_client
        self.dispatcher = dispatcher
        self.fetcher = fetcher
        self.builder = builder or TranscriptBuilder()

    async def run(
        self,
        event: InputEvent,
        agent: AgentProfile,
        peers: Sequence[AgentProfile],
        depth: int = 0
    ) -> TurnOutcome:
        """Run one turn for ``agent`` and any follow-up turns it triggers.

        Args:
            event: Input addressed to the agent
            agent: Agent taking the turn
            peers: Agents sharing the channel, used for mention resolution
            depth: Number of agent-to-agent hops that led to this turn

        Returns:
            TurnOutcome: How this turn ended, including nested follow-ups
        """
        limits = await self.store.guild_limits(agent.guild_id)
        if depth > limits.max_loop_depth:
            logger.info(
                f"Max loop depth ({limits.max_loop_depth}) reached for agent {agent.name}. Stopping."
            )
            return TurnOutcome(agent_id=agent.id, depth=depth, status=TurnStatus.DEPTH_EXCEEDED)

        prepared = await prepare_input(agent, event, self.fetcher)
        await self.store.insert_turn(agent.id, "user", prepared.persisted, author=event.author)

        history = await self.store.recent_turns(agent.channel_id, limits.context_window * 2)

        try:
            credential = await self.resolver.resolve(agent.guild_id, agent.provider_name, agent.name)
        except ConfigurationError as e:
            await self.dispatcher.report(agent.channel_id, e.get_user_message())
            return TurnOutcome(
                agent_id=agent.id,
                depth=depth,
                status=TurnStatus.CONFIGURATION_ERROR,
                error=e.get_user_message(),
            )

        transcript = self.builder.build(agent, prepared.content, history)

        self.dispatcher.trigger_typing(agent.channel_id)

        segmenter = StreamSegmenter()
        replies: list[str] = []
        try:
            async for delta in self.completion_client.stream_completion(
                credential, agent.model, transcript, agent_name=agent.name
            ):
                for segment in segmenter.feed(delta):
                    replies.append(await self._deliver(agent, segment))
            for segment in segmenter.finish():
                replies.append(await self._deliver(agent, segment))

        except StreamInterruptedError as e:
            await self.dispatcher.report(agent.channel_id, e.get_user_message())
            return TurnOutcome(
                agent_id=agent.id,
                depth=depth,
                status=TurnStatus.STREAM_ERROR,
                segments=tuple(replies),
                error=e.get_user_message(),
            )
        except ProviderError as e:
            await self.dispatcher.report(agent.channel_id, e.get_user_message())
            return TurnOutcome(
                agent_id=agent.id,
                depth=depth,
                status=TurnStatus.PROVIDER_ERROR,
                error=e.get_user_message(),
            )

        combined_reply = " ".join(replies)
        followups = []
        for peer in peers:
            if peer.id == agent.id or not mentions_name(combined_reply, peer.name):
                continue
            logger.info(
                f"Agent {agent.name} mentioned agent {peer.name}. Triggering loop (depth {depth + 1})."
            )
            relayed = InputEvent(author=agent.name, text=combined_reply, origin_agent_id=agent.id)
            followups.append(await self.run(relayed, peer, peers, depth + 1))

        return TurnOutcome(
            agent_id=agent.id,
            depth=depth,
            status=TurnStatus.COMPLETED,
            segments=tuple(replies),
            followups=tuple(followups),
        )

    async def _deliver(self, agent: AgentProfile, segment: Segment) -> str:
        """Dispatch a segment, persist it and return the text relayed to peers."""
        self.dispatcher.dispatch(agent, segment.text)
        await self.store.insert_turn(
            agent.id,
            "assistant",
            segment.persisted,
            speaker_agent_id=agent.id,
        )
        return segment.reply_text
