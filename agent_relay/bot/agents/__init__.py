"""Agent conversation building blocks.

- TranscriptBuilder: Turns stored channel history into an agent's chat transcript
- StreamSegmenter: Splits streamed completions into ``<msg>`` delivery segments
"""

from agent_relay.bot.agents.segmenter import Segment, StreamSegmenter
from agent_relay.bot.agents.transcript import MULTI_MSG_INSTRUCTIONS, TranscriptBuilder

__all__ = [
    "MULTI_MSG_INSTRUCTIONS",
    "Segment",
    "StreamSegmenter",
    "TranscriptBuilder",
]
