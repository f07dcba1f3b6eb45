"""Tests for yap (auto-reply) debouncing."""

from __future__ import annotations

import asyncio

from agent_relay.bot.services.models import Attachment
from agent_relay.bot.services.models import InputEvent
from agent_relay.bot.services.yap import YapCoordinator
from agent_relay.bot.services.yap import coalesce_events

DELAY = 0.05


class RecordingTrigger:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def __call__(self, agent_id, channel_id, event):
        self.calls.append((agent_id, channel_id, event))
        if self.error:
            raise self.error


def attachment(n):
    return Attachment(name=f"f{n}.png", url=f"https://cdn/f{n}.png", content_type="image/png")


class TestCoalesceEvents:
    """Test merging buffered events."""

    def test_texts_join_with_blank_lines(self):
        events = [InputEvent("bob", "one"), InputEvent("carol", "two"), InputEvent("bob", "three")]

        event = coalesce_events(events)

        assert event.author == "bob"
        assert event.text == "one\n\ntwo\n\nthree"
        assert event.origin_agent_id is None

    def test_attachments_are_capped(self):
        events = [
            InputEvent("bob", "a", attachments=tuple(attachment(i) for i in range(3))),
            InputEvent("bob", "b", attachments=tuple(attachment(i) for i in range(3, 6))),
        ]

        event = coalesce_events(events, max_attachments=4)

        assert [a.name for a in event.attachments] == ["f0.png", "f1.png", "f2.png", "f3.png"]


class TestYapCoordinator:
    """Test timer restarts and firing."""

    async def test_burst_fires_once(self):
        """Test events inside the quiet period coalesce into one trigger."""
        trigger = RecordingTrigger()
        yap = YapCoordinator(trigger, delay=DELAY)

        for text in ("one", "two", "three"):
            yap.buffer_event(1, "channel-1", InputEvent("bob", text))
            await asyncio.sleep(DELAY / 5)

        assert yap.buffered_count(1, "channel-1") == 3
        await asyncio.sleep(DELAY * 3)

        assert len(trigger.calls) == 1
        agent_id, channel_id, event = trigger.calls[0]
        assert (agent_id, channel_id) == (1, "channel-1")
        assert event.text == "one\n\ntwo\n\nthree"
        assert not yap.is_pending(1, "channel-1")

    async def test_keys_are_independent(self):
        """Test different agents and channels get their own buffers."""
        trigger = RecordingTrigger()
        yap = YapCoordinator(trigger, delay=DELAY)

        yap.buffer_event(1, "channel-1", InputEvent("bob", "a"))
        yap.buffer_event(2, "channel-1", InputEvent("bob", "b"))
        yap.buffer_event(1, "channel-2", InputEvent("bob", "c"))
        await asyncio.sleep(DELAY * 3)

        fired = sorted((agent_id, channel_id, event.text) for agent_id, channel_id, event in trigger.calls)
        assert fired == [(1, "channel-1", "a"), (1, "channel-2", "c"), (2, "channel-1", "b")]

    async def test_quiet_gap_starts_new_buffer(self):
        """Test input after a firing is buffered afresh."""
        trigger = RecordingTrigger()
        yap = YapCoordinator(trigger, delay=DELAY)

        yap.buffer_event(1, "channel-1", InputEvent("bob", "first"))
        await asyncio.sleep(DELAY * 3)
        yap.buffer_event(1, "channel-1", InputEvent("bob", "second"))
        await asyncio.sleep(DELAY * 3)

        assert [event.text for _, _, event in trigger.calls] == ["first", "second"]

    async def test_trigger_failure_is_contained(self):
        """Test an exception in the triggered turn does not break the coordinator."""
        trigger = RecordingTrigger(error=RuntimeError("boom"))
        yap = YapCoordinator(trigger, delay=DELAY)

        yap.buffer_event(1, "channel-1", InputEvent("bob", "hi"))
        await asyncio.sleep(DELAY * 3)

        assert len(trigger.calls) == 1
        assert not yap.is_pending(1, "channel-1")

    async def test_close_cancels_pending_timers(self):
        """Test shutdown drops buffered input without firing."""
        trigger = RecordingTrigger()
        yap = YapCoordinator(trigger, delay=DELAY)

        yap.buffer_event(1, "channel-1", InputEvent("bob", "hi"))
        await yap.close()
        await asyncio.sleep(DELAY * 2)

        assert trigger.calls == []
        assert not yap.is_pending(1, "channel-1")

    async def test_close_waits_for_triggered_turn(self):
        """Test shutdown lets a turn that already fired run to completion."""
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def slow_trigger(agent_id, channel_id, event):
            started.set()
            await release.wait()
            finished.append(event.text)

        yap = YapCoordinator(slow_trigger, delay=DELAY)
        yap.buffer_event(1, "channel-1", InputEvent("bob", "hi"))
        await asyncio.wait_for(started.wait(), timeout=1)

        closing = asyncio.create_task(yap.close())
        await asyncio.sleep(DELAY)
        assert not closing.done()

        release.set()
        await asyncio.wait_for(closing, timeout=1)

        assert finished == ["hi"]
