"""
Separation of model "thinking" from the visible answer.

Reasoning models wrap their chain of thought in <think>...</think>.
ThinkingSplitter consumes a token stream and routes text inside the
tags to a thinking callback and everything else to the caller. Tags may
arrive split across fragments ("<thi" + "nk>"), so a trailing partial
tag is held back until the next fragment disambiguates it.
"""
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"

# Partial thinking is re-emitted once the buffer grows past this size
PARTIAL_EMIT_THRESHOLD = 100


class StreamMode(str, Enum):
    NORMAL = "normal"
    THINKING = "thinking"


ThinkingCallback = Callable[[str], None]


def _partial_tag_length(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for length in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:length]):
            return length
    return 0


class ThinkingSplitter:
    """
    Two-state machine splitting a token stream into answer and thinking.

    Args:
        on_thinking: Called once per closed thinking block with its full text
        on_thinking_partial: Called with the growing thinking buffer while a
            block is still open (on newline or past PARTIAL_EMIT_THRESHOLD).
            Advisory only; the authoritative text comes through on_thinking.

    Use one instance per generation call.
    """

    def __init__(
        self,
        on_thinking: Optional[ThinkingCallback] = None,
        on_thinking_partial: Optional[ThinkingCallback] = None,
    ):
        self.on_thinking = on_thinking
        self.on_thinking_partial = on_thinking_partial
        self.reset()

    def reset(self) -> None:
        """Return to a fresh NORMAL state with empty buffers."""
        self.mode = StreamMode.NORMAL
        self.thinking_buffer = ""
        self.answer_buffer = ""
        self.thoughts: List[str] = []
        self._pending = ""

    @property
    def answer(self) -> str:
        return self.answer_buffer

    @property
    def thinking(self) -> List[str]:
        """Closed thinking blocks, in order."""
        return list(self.thoughts)

    @property
    def is_thinking(self) -> bool:
        return self.mode is StreamMode.THINKING

    def feed(self, fragment: str) -> str:
        """
        Process one incoming fragment.

        Returns:
            The newly visible (non-thinking) text of this fragment
        """
        data = self._pending + fragment
        self._pending = ""
        visible = []

        while data:
            if self.mode is StreamMode.NORMAL:
                start = data.find(OPEN_TAG)
                if start == -1:
                    held = _partial_tag_length(data, OPEN_TAG)
                    visible.append(data[:len(data) - held])
                    self._pending = data[len(data) - held:]
                    break

                visible.append(data[:start])
                self.mode = StreamMode.THINKING
                data = data[start + len(OPEN_TAG):]
            else:
                end = data.find(CLOSE_TAG)
                if end == -1:
                    held = _partial_tag_length(data, CLOSE_TAG)
                    consumed = data[:len(data) - held]
                    self._pending = data[len(data) - held:]
                    self.thinking_buffer += consumed
                    if '\n' in consumed or len(self.thinking_buffer) > PARTIAL_EMIT_THRESHOLD:
                        self._emit_partial()
                    break

                self.thinking_buffer += data[:end]
                self._close_thinking()
                data = data[end + len(CLOSE_TAG):]

        text = "".join(visible)
        self.answer_buffer += text
        return text

    def flush(self) -> str:
        """
        Finish the stream.

        Held-back text is released; an unterminated thinking block is
        emitted as if it had been closed.

        Returns:
            Any visible text that was still held back
        """
        pending = self._pending
        self._pending = ""

        if self.mode is StreamMode.THINKING:
            self.thinking_buffer += pending
            if self.thinking_buffer:
                logger.debug("Stream ended inside a thinking block")
            self._close_thinking()
            return ""

        self.answer_buffer += pending
        return pending

    def _close_thinking(self) -> None:
        if self.thinking_buffer:
            self.thoughts.append(self.thinking_buffer)
            if self.on_thinking:
                self.on_thinking(self.thinking_buffer)
        self.thinking_buffer = ""
        self.mode = StreamMode.NORMAL

    def _emit_partial(self) -> None:
        if self.on_thinking_partial and self.thinking_buffer:
            self.on_thinking_partial(self.thinking_buffer)


def split_thinking(text: str) -> Tuple[str, List[str]]:
    """
    Split a complete response into (answer, thinking blocks).

    Convenience wrapper for non-streaming responses.
    """
    splitter = ThinkingSplitter()
    splitter.feed(text)
    splitter.flush()
    return splitter.answer, list(splitter.thoughts)
