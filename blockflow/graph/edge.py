"""
Edges - directed connections between blocks.

Handles tag the output an edge hangs off:

- ``source`` (or no handle): taken when the source block succeeds
- ``error``: taken only when the source block fails
- ``condition-<branchId>``: taken when a condition block selects that branch
- ``router-<targetId>``: taken when a router selects that target
- ``loop-start-source`` / ``parallel-start-source``: a container's entry
  marker into its own members; not a dependency
- ``loop-end-source`` / ``parallel-end-source``: taken after the container
  finishes, like ``source``
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EdgeHandle:
    """Known source handle values."""

    SOURCE = "source"
    ERROR = "error"
    CONDITION_PREFIX = "condition-"
    ROUTER_PREFIX = "router-"
    LOOP_START = "loop-start-source"
    LOOP_END = "loop-end-source"
    PARALLEL_START = "parallel-start-source"
    PARALLEL_END = "parallel-end-source"


SUBFLOW_START_HANDLES = frozenset({EdgeHandle.LOOP_START, EdgeHandle.PARALLEL_START})


class Edge(BaseModel):
    """
    A directed connection between two blocks.

    Examples:
        Edge(source="agent1", target="agent2")

        # Branch of a condition block
        Edge(source="check", target="escalate", source_handle="condition-check-if")
    """

    id: str = ""
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @property
    def is_subflow_start(self) -> bool:
        return self.source_handle in SUBFLOW_START_HANDLES

    @property
    def is_error_path(self) -> bool:
        return self.source_handle == EdgeHandle.ERROR

    @property
    def condition_id(self) -> str | None:
        handle = self.source_handle or ""
        if handle.startswith(EdgeHandle.CONDITION_PREFIX):
            return handle[len(EdgeHandle.CONDITION_PREFIX) :]
        return None

    @property
    def route_target(self) -> str | None:
        handle = self.source_handle or ""
        if handle.startswith(EdgeHandle.ROUTER_PREFIX):
            return handle[len(EdgeHandle.ROUTER_PREFIX) :]
        return None

    def with_endpoints(self, source: str, target: str) -> "Edge":
        """Copy with new endpoints and a stable id."""
        edge_id = self.id or f"{source}->{target}"
        if self.source_handle and not self.id:
            edge_id = f"{edge_id}:{self.source_handle}"
        return self.model_copy(update={"id": edge_id, "source": source, "target": target})
