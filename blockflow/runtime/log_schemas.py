"""Pydantic models for execution logging.

Three granularities, finest first:

- TOOL LOOP:  ToolCall and TimeSegment records built inside one agent block
- BLOCK:      BlockLog, one per executed block (per iteration inside subflows)
- RUN:        ExecutionRecord, the durable record keyed by execution_id,
              carrying the TraceSpan tree built from the block logs
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Tool loop records
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Prompt/completion/total token counts."""

    prompt: int = 0
    completion: int = 0
    total: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt=self.prompt + other.prompt,
            completion=self.completion + other.completion,
            total=self.total + other.total,
        )


class ToolCall(BaseModel):
    """One tool invocation inside a tool-call loop. Never mutated after append."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    start_time: str
    end_time: str
    duration_ms: int = 0
    result: Any = None
    success: bool = True
    error: str | None = None


class TimeSegment(BaseModel):
    """One provider round-trip or tool invocation, in order of occurrence."""

    type: Literal["model", "tool"]
    name: str
    start_time: str
    end_time: str
    duration_ms: int = 0


class ProviderTiming(BaseModel):
    """Timing breakdown of one agent block's provider work."""

    start_time: str
    end_time: str
    duration_ms: int = 0
    model_time_ms: int = 0
    tools_time_ms: int = 0
    first_response_time_ms: int = 0
    iterations: int = 0
    time_segments: list[TimeSegment] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Block level
# ---------------------------------------------------------------------------


class BlockLog(BaseModel):
    """Outcome of one block execution (one per iteration inside subflows)."""

    block_id: str
    block_name: str = ""
    block_type: str = ""
    started_at: str = ""
    ended_at: str = ""
    duration_ms: int = 0
    success: bool = True
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    iteration_index: int | None = None
    container_id: str | None = None
    # Agent blocks only:
    tool_calls: list[ToolCall] = Field(default_factory=list)
    timing: ProviderTiming | None = None
    tokens: TokenUsage | None = None
    model: str | None = None


# ---------------------------------------------------------------------------
# Run level
# ---------------------------------------------------------------------------


class TraceSpan(BaseModel):
    """Node of the hierarchical timing tree (workflow -> block -> segments)."""

    id: str
    name: str
    type: str
    block_id: str | None = None
    status: Literal["success", "error"] = "success"
    start_time: str = ""
    end_time: str = ""
    duration_ms: int = 0
    model: str | None = None
    tokens: TokenUsage | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    children: list[TraceSpan] = Field(default_factory=list)


class ExecutionLogEntry(BaseModel):
    """One append-only line of an execution's log."""

    execution_id: str
    kind: Literal["start", "block", "complete", "error", "cancelled", "final_output"]
    timestamp: str = Field(default_factory=now_iso)
    data: dict[str, Any] = Field(default_factory=dict)


class ExecutionRecord(BaseModel):
    """Durable record of one run, folded from its log entries."""

    execution_id: str
    workflow_id: str = ""
    workspace_id: str = ""
    user_id: str = ""
    trigger_type: str = ""
    status: Literal["running", "completed", "failed", "cancelled"] = "running"
    started_at: str = ""
    ended_at: str | None = None
    total_duration_ms: int | None = None
    initial_input: Any = None
    variables: dict[str, Any] = Field(default_factory=dict)
    block_count: int = 0
    final_output: Any = None
    final_chat_output: str | None = None
    error: dict[str, Any] | None = None
    trace_spans: list[TraceSpan] = Field(default_factory=list)
