"""Transcript assembly for agent turns.

Persisted turn records plus the new input are turned into the ordered,
role-tagged message list sent to a chat/completions provider. Every agent in
a channel shares one history; each agent reads it from its own perspective:
its own replies become ``assistant`` entries, everything else is ``user``
input still wrapped in ``<msg from="...">`` tags so speakers stay
distinguishable.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Protocol

from agent_relay.bot.agents.models import ChatMessage
from agent_relay.bot.agents.models import ImagePart
from agent_relay.bot.agents.models import TextPart
from agent_relay.bot.services.models import AgentProfile
from agent_relay.bot.services.models import InputEvent
from agent_relay.bot.services.models import PreparedInput
from agent_relay.bot.services.models import SelfAgent
from agent_relay.bot.services.models import TurnRecord

logger = logging.getLogger(__name__)

MULTI_MSG_INSTRUCTIONS = (
    "**Multi-Message Formatting Instructions:**\n\n"
    "Please format your responses using the following guidelines:\n\n"
    "1. Wrap your message responses in `<msg>content</msg>` tags.\n"
    "2. Instead of using new lines to separate thoughts, paragraphs, or ideas, use multiple `<msg>` tags.\n"
    "3. Each `<msg>` tag will be displayed as a separate message in Discord.\n"
    "4. You may use Discord markdown formatting within your replies (bold, italic, code blocks, etc.).\n\n"
    "Example:\n"
    "```\n"
    "<msg>Hello! I've analyzed your request.</msg>\n"
    "<msg>Here's what I found:\n- Point 1\n- Point 2</msg>\n"
    "<msg>Let me know if you need anything else!</msg>\n"
    "```\n\n"
    "This will appear as three separate messages in Discord."
)

OWN_WRAPPER_PATTERN = re.compile(r"<msg(?:[^>]*)?>([\s\S]*?)</msg>")


class AttachmentSource(Protocol):
    """Anything that can download a text attachment."""

    async def fetch_text(self, url: str) -> str | None:
        ...


def effective_system_prompt(agent_prompt: str, instructions: str = MULTI_MSG_INSTRUCTIONS) -> str:
    """Join the agent prompt and the formatting instructions, skipping empty halves."""
    halves = [part for part in (agent_prompt, instructions) if part and part.strip()]
    return "\n\n".join(halves)


def strip_own_wrapper(content: str) -> str:
    """Remove exactly one ``<msg ...>...</msg>`` wrapping the whole string."""
    match = OWN_WRAPPER_PATTERN.fullmatch(content)
    if match:
        return match.group(1).strip()
    return content.strip()


def persisted_input(author: str, text: str) -> str:
    """Stored form of an input addressed to an agent."""
    return f'<msg from="{author}">{text.strip()}</msg>'


async def prepare_input(
    agent: AgentProfile,
    event: InputEvent,
    fetcher: AttachmentSource,
) -> PreparedInput:
    """Resolve an input event into transcript content and its persisted form.

    Only multimodal agents see attachments. Images are passed by URL; text
    and markdown files are downloaded and inlined. A download that returns a
    non-success status, or that fails outright, is replaced by a short
    bracketed notice so the model knows something was attached.

    Args:
        agent: Agent the input is addressed to
        event: Input to prepare
        fetcher: Downloads text attachments

    Returns:
        PreparedInput: Content for the final transcript entry and the text to persist
    """
    if not (agent.multimodal and event.attachments):
        return PreparedInput(content=event.text, persisted=persisted_input(event.author, event.text))

    parts: list = []
    all_text = event.text
    if event.text.strip():
        parts.append(TextPart(text=event.text))

    for attachment in event.attachments:
        if attachment.is_image:
            parts.append(ImagePart.from_url(attachment.url))
            continue
        if not attachment.is_text:
            continue

        try:
            file_text = await fetcher.fetch_text(attachment.url)
        except Exception as e:
            logger.error(f"Error fetching attachment {attachment.name}: {e}")
            inlined = f"[Error loading attachment: {attachment.name}]"
        else:
            if file_text is None:
                logger.warning(f"Failed to fetch attachment {attachment.name}")
                inlined = f"[Failed to load attachment: {attachment.name}]"
            else:
                inlined = f'Content from attachment "{attachment.name}":\n{file_text}'

        parts.append(TextPart(text=inlined))
        all_text += f"\n\n{inlined}"

    content = parts if parts else event.text
    return PreparedInput(content=content, persisted=persisted_input(event.author, all_text))


class TranscriptBuilder:
    """Builds provider-ready transcripts from persisted history."""

    def __init__(self, instructions: str = MULTI_MSG_INSTRUCTIONS):
        self.instructions = instructions

    def build(
        self,
        agent: AgentProfile,
        current_input: str | list,
        history: Iterable[TurnRecord],
        system_prompt: str | None = None,
    ) -> list[ChatMessage]:
        """Assemble the transcript for one turn.

        Args:
            agent: Agent the transcript is built for
            current_input: Final user entry, plain text or content parts
            history: Persisted turns of the channel, oldest first
            system_prompt: Agent prompt; defaults to ``agent.system_prompt``

        Returns:
            list[ChatMessage]: Optional system entry, merged history, then the input
        """
        prompt = agent.system_prompt if system_prompt is None else system_prompt
        transcript: list[ChatMessage] = []

        system_content = effective_system_prompt(prompt, self.instructions)
        if system_content.strip():
            transcript.append(ChatMessage(role="system", content=system_content))

        for record in history:
            if isinstance(record.perspective(agent.id), SelfAgent):
                role = "assistant"
                content = strip_own_wrapper(record.content)
            else:
                role = "user"
                content = record.content

            if not content or not content.strip():
                continue

            last = transcript[-1] if transcript else None
            if last is not None and last.role == role and role != "system" and last.is_plain:
                last.content = f"{last.content}\n{content}".strip()
            else:
                transcript.append(ChatMessage(role=role, content=content))

        if isinstance(current_input, list):
            if current_input:
                transcript.append(ChatMessage(role="user", content=current_input))
        elif current_input and current_input.strip():
            transcript.append(ChatMessage(role="user", content=current_input))

        return transcript
