"""
Execution context and results.

``ExecutionContext`` is the per-run mutable state threaded through the
executor, block handlers and tool-call loop. Only the executor and the
tool-call loop mutate it. ``ExecutionResult`` is its durable residue.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from blockflow.graph.workflow import SerializedWorkflow
from blockflow.runtime.log_schemas import BlockLog

if TYPE_CHECKING:
    from blockflow.runtime.streaming import StreamChannel


def selects_block(output_id: str, block_id: str) -> bool:
    """True if an output id (``<id>``, ``<id>_<path>``, ``<id>.<path>``) names the block."""
    return output_id == block_id or output_id.startswith((f"{block_id}_", f"{block_id}."))


@dataclass
class IterationScope:
    """
    One loop iteration or parallel branch.

    Member blocks write their outputs into ``outputs`` instead of the run's
    ``block_states``, so iteration ``i`` never sees iteration ``j``'s values.
    Scopes chain to their enclosing scope for nested subflows.
    """

    container_id: str
    kind: Literal["loop", "parallel"]
    index: int
    item: Any = None
    items: Any = None
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    parent: IterationScope | None = None

    def nearest(self, kind: str) -> IterationScope | None:
        scope: IterationScope | None = self
        while scope is not None:
            if scope.kind == kind:
                return scope
            scope = scope.parent
        return None


@dataclass
class ExecutionContext:
    """Per-run state."""

    workflow: SerializedWorkflow
    workflow_id: str = ""
    execution_id: str = ""
    workspace_id: str = ""
    user_id: str = ""
    trigger_type: str = "manual"
    block_states: dict[str, dict[str, Any]] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    workflow_variables: dict[str, Any] = field(default_factory=dict)
    workflow_input: Any = None
    selected_output_ids: list[str] = field(default_factory=list)
    streaming: bool = False
    stream: StreamChannel | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    logs: list[BlockLog] = field(default_factory=list)
    scope: IterationScope | None = None

    # -- outputs --------------------------------------------------------------

    def get_block_output(self, block_id: str) -> dict[str, Any] | None:
        scope = self.scope
        while scope is not None:
            if block_id in scope.outputs:
                return scope.outputs[block_id]
            scope = scope.parent
        return self.block_states.get(block_id)

    def set_block_output(self, block_id: str, output: dict[str, Any]) -> None:
        if self.scope is not None:
            self.scope.outputs[block_id] = output
        else:
            self.block_states[block_id] = output

    def for_iteration(self, scope: IterationScope) -> ExecutionContext:
        """View of this context inside an iteration; logs, stream and cancellation are shared."""
        return dataclasses.replace(self, scope=scope)

    # -- selected outputs -----------------------------------------------------

    def is_block_selected(self, block_id: str) -> bool:
        return any(selects_block(o, block_id) for o in self.selected_output_ids)

    @property
    def should_stream(self) -> bool:
        return self.streaming and self.stream is not None

    # -- cancellation ---------------------------------------------------------

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ExecutionMetadata(BaseModel):
    start_time: str
    end_time: str
    duration_ms: int = 0


class ExecutionResult(BaseModel):
    """Terminal record of one run. Immutable once returned."""

    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    logs: list[BlockLog] = Field(default_factory=list)
    metadata: ExecutionMetadata
    status: Literal["completed", "failed", "cancelled"] = "completed"

    model_config = ConfigDict(frozen=True)

    def block_output(self, block_id: str) -> dict[str, Any] | None:
        """Output of the last top-level log for a block."""
        for log in reversed(self.logs):
            if log.block_id == block_id and log.iteration_index is None:
                return log.output
        return None


__all__ = [
    "BlockLog",
    "ExecutionContext",
    "ExecutionMetadata",
    "ExecutionResult",
    "IterationScope",
    "selects_block",
]
