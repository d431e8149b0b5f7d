"""
SerializedWorkflow - the compiled, immutable snapshot one run executes.

Blocks live in an arena keyed by id. Subflow membership is held only as id
lists on the loop/parallel specs; the reverse lookup (block -> containing
subflow) is an index derived once at construction, never a back-pointer.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from blockflow.graph.blocks import BlockType, SerializedBlock
from blockflow.graph.edge import Edge
from blockflow.graph.subflow import LoopSpec, ParallelSpec, SubflowSpec


def normalize_block_name(name: str) -> str:
    """Reference-friendly form of a block name: lower case, no spaces."""
    return name.replace(" ", "").lower()


class SerializedWorkflow(BaseModel):
    """Compiled workflow graph."""

    version: str = "1.0"
    blocks: dict[str, SerializedBlock] = Field(default_factory=dict)
    edges: list[Edge] = Field(default_factory=list)
    loops: dict[str, LoopSpec] = Field(default_factory=dict)
    parallels: dict[str, ParallelSpec] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    _scope_index: dict[str, str] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)
    _names: dict[str, str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for subflow in (*self.loops.values(), *self.parallels.values()):
            for node_id in subflow.nodes:
                self._scope_index[node_id] = subflow.id
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)
        for block in self.blocks.values():
            if block.name:
                self._names.setdefault(normalize_block_name(block.name), block.id)

    # -- lookups ------------------------------------------------------------

    def get_block(self, block_id: str) -> SerializedBlock:
        return self.blocks[block_id]

    def find_block(self, ref: str) -> SerializedBlock | None:
        """Find a block by id or by normalized name."""
        if ref in self.blocks:
            return self.blocks[ref]
        block_id = self._names.get(normalize_block_name(ref))
        return self.blocks.get(block_id) if block_id else None

    def starter_block(self) -> SerializedBlock | None:
        for block in self.blocks.values():
            if block.type == BlockType.STARTER:
                return block
        return None

    def outgoing(self, block_id: str) -> list[Edge]:
        return self._outgoing.get(block_id, [])

    def incoming(self, block_id: str) -> list[Edge]:
        return self._incoming.get(block_id, [])

    # -- subflow structure --------------------------------------------------

    def subflow(self, container_id: str) -> SubflowSpec | None:
        return self.loops.get(container_id) or self.parallels.get(container_id)

    def scope_of(self, block_id: str) -> str | None:
        """Id of the innermost subflow containing the block, or None at top level."""
        return self._scope_index.get(block_id)

    def members_of(self, scope_id: str | None) -> list[str]:
        """Direct members of a subflow, or the top-level blocks for None."""
        if scope_id is None:
            return [block_id for block_id in self.blocks if block_id not in self._scope_index]
        subflow = self.subflow(scope_id)
        return list(subflow.nodes) if subflow else []

    def top_level_ancestor(self, block_id: str, scope_id: str | None = None) -> str:
        """Walk up containers until reaching a block that lives directly in ``scope_id``."""
        current = block_id
        while self.scope_of(current) is not None and self.scope_of(current) != scope_id:
            current = self.scope_of(current)
        return current

    def ancestors_of(self, block_ids: set[str]) -> set[str]:
        """All blocks with a path into any of ``block_ids`` (inclusive), lifted to top level."""
        pending = [self.top_level_ancestor(b) for b in block_ids if b in self.blocks]
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            for edge in self.incoming(current):
                if not edge.is_subflow_start:
                    pending.append(self.top_level_ancestor(edge.source))
        return seen
