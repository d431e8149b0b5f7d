"""Events yielded by ``LLMProvider.stream``.

The tool-call loop only forwards text deltas to the block's stream channel;
usage arrives once in ``FinishEvent`` and is folded into the block's token
totals. A stream that fails ends with a single ``StreamErrorEvent`` and
yields nothing after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class TextDeltaEvent:
    """A chunk of generated text."""

    type: Literal["text_delta"] = "text_delta"
    content: str = ""
    snapshot: str = ""  # text so far, including this chunk


@dataclass(frozen=True)
class TextEndEvent:
    type: Literal["text_end"] = "text_end"
    full_text: str = ""


@dataclass(frozen=True)
class ToolCallEvent:
    """A complete tool call, emitted after its argument fragments were joined."""

    type: Literal["tool_call"] = "tool_call"
    call_id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishEvent:
    """Last event of a successful stream."""

    type: Literal["finish"] = "finish"
    stop_reason: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class StreamErrorEvent:
    """The provider failed before or during the stream.

    ``kind`` is a ``ProviderErrorKind`` value.
    """

    type: Literal["error"] = "error"
    error: str = ""
    kind: str = "unknown"


StreamEvent = TextDeltaEvent | TextEndEvent | ToolCallEvent | FinishEvent | StreamErrorEvent
