"""
Edge manager - readiness bookkeeping for one scope of a run.

A scope is the top level of the workflow or one iteration of a subflow.
Only edges whose endpoints both live directly in the scope count; container
start handles are entry markers, not dependencies.

Each edge is resolved exactly once, when its source finishes:

- activated: the source's outcome selects it (see ``is_edge_active``)
- deactivated: anything else, including every edge of a skipped block

A block is ready once all of its incoming edges are resolved and at least
one was activated. If all were deactivated the block is skipped, and the
skip cascades to its own outgoing edges.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from blockflow.graph.blocks import BlockType
from blockflow.graph.edge import Edge
from blockflow.graph.workflow import SerializedWorkflow


def is_edge_active(
    edge: Edge, source_type: BlockType, output: dict[str, Any] | None, failed: bool
) -> bool:
    """Whether a finished block's outcome activates one of its outgoing edges."""
    if edge.is_error_path:
        return failed
    if failed:
        return False
    output = output or {}
    condition_id = edge.condition_id
    if condition_id is not None:
        return output.get("selected_condition") == condition_id
    if source_type == BlockType.ROUTER:
        return edge.target == output.get("selected_route")
    return True


@dataclass
class ScopeProgress:
    """What resolving a block's edges made runnable, and what it pruned."""

    ready: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class EdgeManager:
    """Tracks incoming-edge resolution for the members of one scope."""

    def __init__(self, workflow: SerializedWorkflow, members: Iterable[str]):
        self.workflow = workflow
        self.members = list(members)
        member_set = set(self.members)

        self._incoming: dict[str, list[Edge]] = {}
        self._outgoing: dict[str, list[Edge]] = {}
        for block_id in self.members:
            self._incoming[block_id] = [
                e
                for e in workflow.incoming(block_id)
                if e.source in member_set and not e.is_subflow_start
            ]
            self._outgoing[block_id] = [
                e
                for e in workflow.outgoing(block_id)
                if e.target in member_set and not e.is_subflow_start
            ]

        self._resolved: dict[str, int] = {block_id: 0 for block_id in self.members}
        self._activated: dict[str, int] = {block_id: 0 for block_id in self.members}
        self.skipped: set[str] = set()

    def entry_blocks(self) -> list[str]:
        """Members with no in-scope dependencies, in declaration order."""
        return [block_id for block_id in self.members if not self._incoming[block_id]]

    def complete(
        self, block_id: str, output: dict[str, Any] | None, failed: bool = False
    ) -> ScopeProgress:
        """Resolve the outgoing edges of a finished (completed or failed) block."""
        source_type = self.workflow.get_block(block_id).type
        progress = ScopeProgress()
        for edge in self._outgoing.get(block_id, []):
            active = is_edge_active(edge, source_type, output, failed)
            self._resolve(edge, active, progress)
        return progress

    def skip(self, block_id: str) -> ScopeProgress:
        """Mark a block skipped and deactivate everything downstream of it."""
        progress = ScopeProgress()
        self._skip(block_id, progress)
        return progress

    # -- internals ------------------------------------------------------------

    def _resolve(self, edge: Edge, active: bool, progress: ScopeProgress) -> None:
        target = edge.target
        self._resolved[target] += 1
        if active:
            self._activated[target] += 1
        if self._resolved[target] < len(self._incoming[target]):
            return
        if self._activated[target] > 0:
            progress.ready.append(target)
        else:
            self._skip(target, progress)

    def _skip(self, block_id: str, progress: ScopeProgress) -> None:
        if block_id in self.skipped:
            return
        self.skipped.add(block_id)
        progress.skipped.append(block_id)
        for edge in self._outgoing.get(block_id, []):
            self._resolve(edge, False, progress)
