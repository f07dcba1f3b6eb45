"""Outbound delivery of agent messages and error reports."""

from __future__ import annotations

import asyncio
import logging
from typing import Set

import hikari

from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.utils.webhooks import send_webhook_message

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Posts agent segments through webhooks and plain text to channels.

    Segment delivery runs as a background task per segment so the stream
    reader never waits on Discord. Delivery order between segments is
    therefore not guaranteed.
    """

    def __init__(self, rest: hikari.api.RESTClient):
        self._rest = rest
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def dispatch(self, agent: AgentProfile, text: str) -> asyncio.Task:
        """Schedule delivery of one segment through the agent's webhook."""
        task = asyncio.create_task(self._deliver(agent, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, agent: AgentProfile, text: str) -> None:
        sent = await send_webhook_message(self._rest, agent.webhook_id, agent.webhook_token, text)
        if not sent:
            logger.error(f"Webhook send failed for agent {agent.name}")

    async def report(self, channel_id: int | str, text: str) -> None:
        """Post a plain-text message to a channel, logging any failure."""
        try:
            await self._rest.create_message(int(channel_id), text)
        except hikari.HTTPError as e:
            logger.error(f"Failed to report to channel {channel_id}: {e}")

    def trigger_typing(self, channel_id: int | str) -> None:
        """Show the typing indicator in a channel without waiting for it."""
        task = asyncio.create_task(self._typing(channel_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _typing(self, channel_id: int | str) -> None:
        try:
            await self._rest.trigger_typing(int(channel_id))
        except hikari.HTTPError as e:
            logger.warning(f"Failed to trigger typing in channel {channel_id}: {e}")

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
