"""Inbound message routing.

Decides which agent, if any, answers a human message in a channel, and
feeds channels with yap-enabled agents into the yap coordinator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.services.models import Attachment
from agent_relay.bot.services.models import InputEvent
from agent_relay.bot.utils.messages import mentions_name
from agent_relay.bot.utils.messages import parse_agent_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundMessage:
    """A human message as seen by the router.

    ``replied_webhook_id`` is the webhook that posted the message this one
    replies to, when it replies to a webhook message.
    """

    guild_id: str
    channel_id: str
    author: str
    text: str
    attachments: tuple[Attachment, ...] = ()
    replied_webhook_id: Optional[str] = None


def resolve_target(
    message: InboundMessage,
    agents: Sequence[AgentProfile]
) -> tuple[Optional[AgentProfile], str]:
    """Pick the agent a message is addressed to.

    A reply to an agent's webhook message wins, then a leading ``@Name``
    prefix (which is removed from the text), then the first agent whose
    name appears in the text as a whole word.

    Returns:
        The target agent (or None) and the text to hand to it
    """
    if message.replied_webhook_id:
        for agent in agents:
            if str(agent.webhook_id) == str(message.replied_webhook_id):
                return agent, message.text

    prefix = parse_agent_prefix(message.text)
    if prefix:
        candidate, remainder = prefix
        for agent in agents:
            if agent.name.lower() == candidate.lower():
                return agent, remainder

    for agent in agents:
        if mentions_name(message.text, agent.name):
            return agent, message.text

    return None, message.text


class MessageRouter:
    """Routes inbound messages to the yap coordinator and the orchestrator."""

    def __init__(self, store, orchestrator, yap_coordinator):
        self.store = store
        self.orchestrator = orchestrator
        self.yap = yap_coordinator

    async def handle(self, message: InboundMessage):
        """Route one inbound human message.

        Returns:
            The ``TurnOutcome`` of the triggered turn, or None when no turn ran
        """
        event = InputEvent(
            author=message.author,
            text=message.text,
            attachments=message.attachments,
        )

        yap_agent_ids = set(await self.store.yap_agent_ids(message.channel_id))
        for agent_id in yap_agent_ids:
            self.yap.buffer_event(agent_id, message.channel_id, event)

        agents = await self.store.channel_agents(message.guild_id, message.channel_id)
        if not agents:
            return None

        agent, text = resolve_target(message, agents)
        if agent is None:
            return None

        if agent.id in yap_agent_ids:
            logger.info(
                f"Agent {agent.name} is being handled by YAP for this message. Skipping standard mention/reply."
            )
            return None

        if not text.strip() and not message.attachments:
            return None

        event = InputEvent(author=message.author, text=text, attachments=message.attachments)
        return await self.orchestrator.run(event, agent, agents, 0)

    async def trigger_yap(self, agent_id: int, channel_id: str, event: InputEvent):
        """Run the coalesced turn of a yap-enabled agent."""
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            logger.error(f"[YAP] Agent with ID {agent_id} not found for auto-reply.")
            return None

        peers = await self.store.channel_agents(agent.guild_id, channel_id)
        return await self.orchestrator.run(event, agent, peers, 0)
