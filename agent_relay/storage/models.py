"""Database models for agent-relay."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean
from sqlalchemy import ForeignKey
from sqlalchemy import Index, UniqueConstraint
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column

from agent_relay.shared.database import Base


class Provider(Base):
    """An OpenAI-compatible completion provider configured for a guild.

    The API key is stored encrypted with AES-256-GCM; ciphertext, IV and
    authentication tag are kept as separate hex columns.
    """

    __tablename__ = "providers"
    __table_args__ = (
        UniqueConstraint("guild_id", "name", name="uq_providers_guild_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="Discord guild (server) snowflake ID"
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="Chat completions URL (or a base URL it can be derived from)"
    )
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    auth_tag: Mapped[str] = mapped_column(String(64), nullable=False)


class Agent(Base):
    """An AI agent speaking through a channel webhook.

    Agents are unique per (guild, name, channel). A clone may be linked to
    its source so that edits to the source propagate to the clone.
    """

    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("guild_id", "name", "channel_id", name="uq_agents_guild_name_channel"),
        Index("ix_agents_guild_channel", "guild_id", "channel_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_name: Mapped[str] = mapped_column(String(100), nullable=False)
    multimodal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    avatar_mime_type: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="MIME type of the avatar, e.g. image/png"
    )
    avatar_data: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Base64 encoded avatar image"
    )
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    webhook_id: Mapped[str] = mapped_column(String, nullable=False)
    webhook_token: Mapped[str] = mapped_column(String, nullable=False)
    linked_to_agent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True,
        doc="Source agent this clone follows"
    )
    is_source_for_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __init__(self, **kwargs):
        """Initialize Agent with default values."""
        kwargs.setdefault("multimodal", False)
        kwargs.setdefault("system_prompt", "")
        kwargs.setdefault("is_source_for_link", False)
        super().__init__(**kwargs)


class ConversationTurn(Base):
    """One persisted conversation turn owned by an agent.

    Role "user" rows hold input addressed to the owning agent (from a human or
    relayed from another agent). Role "assistant" rows hold one ``<msg>`` unit
    written by the agent named in ``speaker_agent_id``.
    """

    __tablename__ = "turn_records"
    __table_args__ = (
        Index("ix_turn_records_agent_created", "agent_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        doc="Agent whose context this turn belongs to"
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    speaker_agent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Agent that produced this text; NULL for human or relayed input"
    )


class GuildSettings(Base):
    """Per-guild conversation limits."""

    __tablename__ = "guild_settings"

    guild_id: Mapped[str] = mapped_column(String, primary_key=True)
    context_window: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    loop_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=2)


class YapSetting(Base):
    """Auto-reply ("yap") switch for an agent in a channel."""

    __tablename__ = "yap_settings"

    agent_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("agents.id", ondelete="CASCADE"),
        primary_key=True
    )
    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
