"""Service layer models for the agent-relay bot.

This module defines immutable dataclasses passed between the router, the
turn orchestrator and their collaborators. Database rows are converted into
these models at the storage boundary so no ORM object escapes a session.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from typing import Union

IMAGE_NAME_PATTERN = re.compile(r"\.(png|jpe?g|gif|bmp|webp|tiff)$", re.IGNORECASE)
TEXT_NAME_PATTERN = re.compile(r"\.(txt|md)$", re.IGNORECASE)


@dataclass(frozen=True)
class AgentProfile:
    """Read-only view of a configured agent."""

    id: int
    guild_id: str
    name: str
    channel_id: str
    webhook_id: str
    webhook_token: str
    model: str
    provider_name: str
    multimodal: bool = False
    system_prompt: str = ""
    avatar_mime_type: str | None = None
    avatar_data: str | None = None
    linked_to_agent_id: int | None = None
    is_source_for_link: bool = False

    @classmethod
    def from_model(cls, agent) -> AgentProfile:
        """Build a profile from an ``Agent`` database row."""
        return cls(
            id=agent.id,
            guild_id=agent.guild_id,
            name=agent.name,
            channel_id=agent.channel_id,
            webhook_id=agent.webhook_id,
            webhook_token=agent.webhook_token,
            model=agent.model,
            provider_name=agent.provider_name,
            multimodal=agent.multimodal,
            system_prompt=agent.system_prompt or "",
            avatar_mime_type=agent.avatar_mime_type,
            avatar_data=agent.avatar_data,
            linked_to_agent_id=agent.linked_to_agent_id,
            is_source_for_link=agent.is_source_for_link,
        )

    @property
    def avatar_data_uri(self) -> str | None:
        """Avatar as a data URI, or None when the agent has no avatar."""
        if not self.avatar_data or not self.avatar_mime_type:
            return None
        return f"data:{self.avatar_mime_type};base64,{self.avatar_data}"


@dataclass(frozen=True)
class Attachment:
    """A file attached to an inbound message."""

    name: str
    url: str
    content_type: str | None = None
    id: str | None = None

    @property
    def is_image(self) -> bool:
        """Check if the attachment should be sent to the model as an image."""
        if not self.content_type:
            return False
        return self.content_type.startswith("image/") or bool(
            IMAGE_NAME_PATTERN.search(self.name or self.url)
        )

    @property
    def is_text(self) -> bool:
        """Check if the attachment is a plain text or markdown document."""
        if self.content_type in ("text/plain", "text/markdown"):
            return True
        return bool(TEXT_NAME_PATTERN.search(self.name or self.url))


@dataclass(frozen=True)
class InputEvent:
    """One unit of input addressed to an agent.

    ``origin_agent_id`` is set when the input is another agent's reply being
    relayed, and None for human (or coalesced channel) input.
    """

    author: str
    text: str
    attachments: tuple[Attachment, ...] = ()
    origin_agent_id: int | None = None

    @property
    def is_empty(self) -> bool:
        """Check if the event carries neither text nor attachments."""
        return not self.text.strip() and not self.attachments


@dataclass(frozen=True)
class HumanSpeaker:
    """Origin of a turn written by a human (or relayed as user input)."""


@dataclass(frozen=True)
class AgentSpeaker:
    """Origin of a turn produced by an agent."""

    agent_id: int


Speaker = Union[HumanSpeaker, AgentSpeaker]


@dataclass(frozen=True)
class Human:
    """A turn that came from a human, seen from the reading agent."""


@dataclass(frozen=True)
class SelfAgent:
    """A turn the reading agent produced itself."""


@dataclass(frozen=True)
class PeerAgent:
    """A turn produced by another agent in the channel."""

    agent_id: int


Perspective = Union[Human, SelfAgent, PeerAgent]


@dataclass(frozen=True)
class TurnRecord:
    """A persisted conversation turn."""

    agent_id: int
    role: str
    content: str
    author: str | None = None
    speaker_agent_id: int | None = None
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, turn) -> TurnRecord:
        """Build a record from a ``ConversationTurn`` database row."""
        return cls(
            id=turn.id,
            agent_id=turn.agent_id,
            role=turn.role,
            content=turn.content,
            author=turn.author,
            speaker_agent_id=turn.speaker_agent_id,
            created_at=turn.created_at,
        )

    @property
    def speaker(self) -> Speaker:
        """Who produced this turn."""
        if self.role == "assistant":
            # Rows written before the speaker column existed fall back to the owner
            speaker_id = self.speaker_agent_id if self.speaker_agent_id is not None else self.agent_id
            return AgentSpeaker(speaker_id)
        return HumanSpeaker()

    def perspective(self, reader_agent_id: int) -> Perspective:
        """Resolve the speaker relative to the agent reading the history."""
        speaker = self.speaker
        if isinstance(speaker, AgentSpeaker):
            if speaker.agent_id == reader_agent_id:
                return SelfAgent()
            return PeerAgent(speaker.agent_id)
        return Human()


@dataclass(frozen=True)
class GuildLimits:
    """Per-guild conversation limits."""

    context_window: int = 10
    max_loop_depth: int = 2


@dataclass(frozen=True)
class ProviderCredential:
    """A decrypted provider credential."""

    name: str
    endpoint_url: str
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class PreparedInput:
    """Input ready for a transcript and for persistence.

    ``content`` is what the model sees as the final user entry (plain text or
    a list of content parts); ``persisted`` is the ``<msg from=...>`` form
    stored as the turn record.
    """

    content: str | list
    persisted: str


class TurnStatus(Enum):
    """How a turn ended."""

    COMPLETED = "completed"
    DEPTH_EXCEEDED = "depth_exceeded"
    CONFIGURATION_ERROR = "configuration_error"
    PROVIDER_ERROR = "provider_error"
    STREAM_ERROR = "stream_error"


@dataclass(frozen=True)
class TurnOutcome:
    """Result of one orchestrated turn and the branches it triggered."""

    agent_id: int
    depth: int
    status: TurnStatus
    segments: tuple[str, ...] = ()
    followups: tuple[TurnOutcome, ...] = ()
    error: str | None = None

    @property
    def combined_reply(self) -> str:
        """Delivered segment texts joined with single spaces."""
        return " ".join(self.segments)
