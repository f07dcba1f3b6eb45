"""Auto-reply ("yap") coordination.

When yap is enabled for an agent in a channel, every message in that
channel is buffered instead of answered. Once the channel has been quiet
for the configured delay, the buffered messages are coalesced into a single
input event and the agent takes one turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from agent_relay.bot.services.models import Attachment
from agent_relay.bot.services.models import InputEvent

logger = logging.getLogger(__name__)

YapKey = Tuple[int, str]
YapTrigger = Callable[[int, str, InputEvent], Awaitable[object]]


@dataclass
class YapState:
    """Pending input and idle timer for one (agent, channel) pair."""

    buffer: List[InputEvent] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None


def coalesce_events(events: List[InputEvent], max_attachments: int = 10) -> InputEvent:
    """Merge buffered events into one input event.

    The author of the first event is kept, texts are joined with blank lines
    and attachments are concatenated up to ``max_attachments``.
    """
    attachments: List[Attachment] = []
    for event in events:
        for attachment in event.attachments:
            if len(attachments) >= max_attachments:
                break
            attachments.append(attachment)

    return InputEvent(
        author=events[0].author,
        text="\n\n".join(event.text for event in events).strip(),
        attachments=tuple(attachments),
        origin_agent_id=None,
    )


class YapCoordinator:
    """Keyed registry of yap buffers and their idle timers.

    A state is created by the first buffered event for a key, replaced timer
    by timer while events keep arriving, and removed when its timer fires.
    """

    def __init__(
        self,
        trigger: YapTrigger,
        delay: float = 3.0,
        max_attachments: int = 10
    ):
        """Initialize the coordinator.

        Args:
            trigger: Called with (agent_id, channel_id, coalesced_event) when a timer fires
            delay: Quiet period in seconds before a buffered key fires
            max_attachments: Attachment cap of a coalesced event
        """
        self._trigger = trigger
        self._delay = delay
        self._max_attachments = max_attachments
        self._states: Dict[YapKey, YapState] = {}
        self._tasks: Set[asyncio.Task] = set()

    def is_pending(self, agent_id: int, channel_id: str) -> bool:
        """Check if a key has buffered input waiting for its timer."""
        return (agent_id, str(channel_id)) in self._states

    def buffered_count(self, agent_id: int, channel_id: str) -> int:
        """Number of events buffered for a key."""
        state = self._states.get((agent_id, str(channel_id)))
        return len(state.buffer) if state else 0

    def buffer_event(self, agent_id: int, channel_id: str, event: InputEvent) -> None:
        """Buffer an event and restart the key's idle timer."""
        key = (agent_id, str(channel_id))
        state = self._states.get(key)
        if state is None:
            state = YapState()
            self._states[key] = state
        elif state.timer is not None:
            state.timer.cancel()

        state.buffer.append(event)
        task = asyncio.create_task(self._fire_after_delay(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        state.timer = task

    async def _fire_after_delay(self, key: YapKey) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            return

        state = self._states.pop(key, None)
        if state is None or not state.buffer:
            return

        agent_id, channel_id = key
        event = coalesce_events(state.buffer, self._max_attachments)
        logger.info(
            f"[YAP] Triggering auto-reply for agent {agent_id} in channel {channel_id} "
            f"with {len(state.buffer)} buffered message(s)."
        )
        try:
            await self._trigger(agent_id, channel_id, event)
        except Exception as e:
            logger.error(f"[YAP] Auto-reply for agent {agent_id} in channel {channel_id} failed: {e}")

    async def close(self) -> None:
        """Cancel every pending timer and wait for turns already triggered.

        Buffered input that has not fired yet is dropped.
        """
        timers = [state.timer for state in self._states.values() if state.timer is not None]
        self._states.clear()
        for timer in timers:
            timer.cancel()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
