############################################################
#
# tinychat - Streaming LLM Chat Service
#
# thinking.py: Split legacy "thinking / answer" message content
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Reasoning/answer separation for message content.

New messages keep reasoning in its own column. Older rows carry both parts
in one string using the two-section template produced by :meth:`ModelResponse.render`::

    **thinking**:
    ...

    **answer**:
    ...

This module re-splits such strings for display.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

THINKING_MARKER = "**thinking**:"
ANSWER_MARKER = "**answer**:"

# (thinking, answer) marker pairs, current first. The Chinese pair appears in
# rows written by the first version of the web client.
MARKER_PAIRS: List[Tuple[str, str]] = [
    (THINKING_MARKER, ANSWER_MARKER),
    ("**思考过程**:", "**答案**:"),
]


@dataclass(frozen=True)
class ThinkingParts:
    """Reasoning and answer regions of a message. ``reasoning`` is None when absent."""
    reasoning: Optional[str]
    answer: str

    @property
    def regions(self) -> List[str]:
        if self.reasoning is None:
            return [self.answer]
        return [self.reasoning, self.answer]


def format_thinking(reasoning: str, answer: str) -> str:
    """Flatten reasoning and answer into the two-section template."""
    return f"{THINKING_MARKER}\n{reasoning}\n\n{ANSWER_MARKER}\n{answer}"


def split_thinking(content: str) -> ThinkingParts:
    """Split flattened content into reasoning and answer.

    Content carrying both markers yields two non-overlapping regions: the
    text between the thinking marker and the first answer marker, and
    everything after that answer marker. Anything else is one answer region.
    """
    for thinking_marker, answer_marker in MARKER_PAIRS:
        if thinking_marker not in content or answer_marker not in content:
            continue
        head, answer = content.split(answer_marker, 1)
        reasoning = head.replace(thinking_marker, "", 1)
        return ThinkingParts(reasoning=reasoning.strip(), answer=answer.strip())
    return ThinkingParts(reasoning=None, answer=content)


def render_regions(content: str, reasoning: Optional[str] = None) -> ThinkingParts:
    """Display regions for a stored message.

    A structured reasoning value wins; marker scanning is only used for
    legacy rows that have none.
    """
    if reasoning:
        return ThinkingParts(reasoning=reasoning, answer=content)
    return split_thinking(content)
