"""
Workflow compiler.

Turns the mutable authoring description (blocks, edges, loop and parallel
configs) into an immutable ``SerializedWorkflow``:

1. Blocks without a type are layout artifacts and are dropped.
2. For manual/chat runs, trigger blocks and every edge touching them are dropped.
3. An optional id map (from duplicating a workflow) is applied to block ids,
   parent pointers, subflow ids, subflow node lists and edge endpoints in
   the same pass.
4. Each block's active sub-block values are validated into its config variant.
5. Subflow membership is resolved, edges are checked against scopes, and the
   graph is checked for cycles.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from blockflow.errors import CompilationError
from blockflow.graph.blocks import (
    Block,
    BlockType,
    SerializedBlock,
    SubBlockState,
    build_block_config,
)
from blockflow.graph.edge import Edge
from blockflow.graph.subflow import LoopSpec, ParallelSpec
from blockflow.graph.workflow import SerializedWorkflow, normalize_block_name


class WorkflowCompiler:
    """Compiles authoring-side graphs into SerializedWorkflow snapshots."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    def compile(
        self,
        blocks: Iterable[Block | dict[str, Any]],
        edges: Iterable[Edge | dict[str, Any]] = (),
        loops: Mapping[str, LoopSpec | dict[str, Any]] | None = None,
        parallels: Mapping[str, ParallelSpec | dict[str, Any]] | None = None,
        *,
        for_manual_execution: bool = False,
        id_map: Mapping[str, str] | None = None,
    ) -> SerializedWorkflow:
        """
        Compile a workflow.

        Raises:
            CompilationError: unknown block type, invalid block config, an edge
                naming an undeclared block, a subflow bound to a block of the
                wrong type, a block in two subflows, or a cycle.
        """
        id_map = id_map or {}

        def remap(block_id: str) -> str:
            return id_map.get(block_id, block_id)

        source_blocks = [b if isinstance(b, Block) else Block.model_validate(b) for b in blocks]
        declared_ids = {remap(b.id) for b in source_blocks}

        compiled = self._compile_blocks(source_blocks, remap, for_manual_execution)

        compiled_loops = self._compile_subflows(
            loops or {}, LoopSpec, BlockType.LOOP, compiled, declared_ids, remap
        )
        compiled_parallels = self._compile_subflows(
            parallels or {}, ParallelSpec, BlockType.PARALLEL, compiled, declared_ids, remap
        )
        scope_index = self._build_scope_index(compiled_loops, compiled_parallels)

        compiled_edges = self._compile_edges(edges, compiled, declared_ids, scope_index, remap)
        self._check_acyclic(compiled, compiled_edges)

        workflow = SerializedWorkflow(
            blocks=compiled,
            edges=compiled_edges,
            loops=compiled_loops,
            parallels=compiled_parallels,
        )
        self.logger.info(
            "Compiled workflow: %d blocks, %d edges, %d loops, %d parallels",
            len(compiled),
            len(compiled_edges),
            len(compiled_loops),
            len(compiled_parallels),
        )
        return workflow

    # -------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------

    def _compile_blocks(
        self,
        blocks: list[Block],
        remap: Any,
        for_manual_execution: bool,
    ) -> dict[str, SerializedBlock]:
        compiled: dict[str, SerializedBlock] = {}
        for block in blocks:
            block_id = remap(block.id)
            if not block.type:
                self.logger.info("Skipping block '%s': no type", block_id)
                continue
            if for_manual_execution and block.is_trigger:
                self.logger.debug("Skipping trigger block '%s' for manual execution", block_id)
                continue
            if block_id in compiled:
                raise CompilationError(f"Duplicate block id '{block_id}'")

            config = build_block_config(block_id, block.type, block.active_params())
            compiled[block_id] = SerializedBlock(
                id=block_id,
                type=BlockType(block.type),
                name=block.name,
                config=config,
                parent_id=remap(block.parent_id) if block.parent_id else None,
                enabled=block.enabled,
            )
        return compiled

    # -------------------------------------------------------------------
    # Subflows
    # -------------------------------------------------------------------

    def _compile_subflows(
        self,
        specs: Mapping[str, Any],
        spec_cls: type[LoopSpec] | type[ParallelSpec],
        container_type: BlockType,
        compiled: dict[str, SerializedBlock],
        declared_ids: set[str],
        remap: Any,
    ) -> dict[str, Any]:
        result: dict[str, Any] = {}

        for key, raw in specs.items():
            spec = raw if isinstance(raw, spec_cls) else spec_cls.model_validate(
                {"id": key, **raw} if isinstance(raw, dict) else raw
            )
            subflow_id = remap(spec.id or key)

            if subflow_id not in declared_ids:
                self.logger.warning(
                    "Dropping orphaned %s subflow '%s': no matching block",
                    container_type.value,
                    subflow_id,
                )
                continue
            block = compiled.get(subflow_id)
            if block is None:
                self.logger.debug("Dropping subflow '%s': its block was filtered", subflow_id)
                continue
            if block.type != container_type:
                raise CompilationError(
                    f"Subflow '{subflow_id}' is a {container_type.value} but its block "
                    f"has type '{block.type}'"
                )

            nodes = self._resolve_members(subflow_id, [remap(n) for n in spec.nodes], compiled)
            result[subflow_id] = spec.model_copy(update={"id": subflow_id, "nodes": nodes})

        # Container blocks without an explicit config get the defaults
        for block in compiled.values():
            if block.type == container_type and block.id not in result:
                nodes = self._resolve_members(block.id, [], compiled)
                result[block.id] = spec_cls(id=block.id, nodes=nodes)

        return result

    def _resolve_members(
        self,
        subflow_id: str,
        declared_nodes: list[str],
        compiled: dict[str, SerializedBlock],
    ) -> list[str]:
        children = [b.id for b in compiled.values() if b.parent_id == subflow_id]
        nodes: list[str] = []
        for node_id in [*declared_nodes, *children]:
            if node_id == subflow_id or node_id not in compiled or node_id in nodes:
                continue
            nodes.append(node_id)
        return nodes

    def _build_scope_index(
        self,
        loops: dict[str, LoopSpec],
        parallels: dict[str, ParallelSpec],
    ) -> dict[str, str]:
        scope_index: dict[str, str] = {}
        for subflow in (*loops.values(), *parallels.values()):
            for node_id in subflow.nodes:
                owner = scope_index.get(node_id)
                if owner is not None and owner != subflow.id:
                    raise CompilationError(
                        f"Block '{node_id}' belongs to both subflow '{owner}' and '{subflow.id}'"
                    )
                scope_index[node_id] = subflow.id

        for start in scope_index:
            seen = {start}
            current = scope_index.get(start)
            while current is not None:
                if current in seen:
                    raise CompilationError(f"Subflow containment cycle through '{current}'")
                seen.add(current)
                current = scope_index.get(current)
        return scope_index

    # -------------------------------------------------------------------
    # Edges
    # -------------------------------------------------------------------

    def _compile_edges(
        self,
        edges: Iterable[Edge | dict[str, Any]],
        compiled: dict[str, SerializedBlock],
        declared_ids: set[str],
        scope_index: dict[str, str],
        remap: Any,
    ) -> list[Edge]:
        result: list[Edge] = []
        for raw in edges:
            edge = raw if isinstance(raw, Edge) else Edge.model_validate(raw)
            source, target = remap(edge.source), remap(edge.target)

            for endpoint in (source, target):
                if endpoint not in declared_ids:
                    raise CompilationError(
                        f"Edge {edge.source} -> {edge.target} references unknown block '{endpoint}'"
                    )
            if source not in compiled or target not in compiled:
                continue

            if edge.is_subflow_start:
                if scope_index.get(target) != source:
                    self.logger.warning(
                        "Dropping edge %s -> %s: start handle does not enter the subflow",
                        source,
                        target,
                    )
                    continue
            elif scope_index.get(source) != scope_index.get(target):
                self.logger.warning(
                    "Dropping edge %s -> %s: crosses a subflow boundary", source, target
                )
                continue

            result.append(edge.with_endpoints(source, target))
        return result

    def _check_acyclic(self, compiled: dict[str, SerializedBlock], edges: list[Edge]) -> None:
        in_degree = dict.fromkeys(compiled, 0)
        adjacency: dict[str, list[str]] = {block_id: [] for block_id in compiled}
        for edge in edges:
            if edge.is_subflow_start:
                continue
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        queue = [block_id for block_id, degree in in_degree.items() if degree == 0]
        visited = 0
        while queue:
            current = queue.pop()
            visited += 1
            for target in adjacency[current]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if visited != len(compiled):
            stuck = sorted(block_id for block_id, degree in in_degree.items() if degree > 0)
            raise CompilationError(f"Workflow contains a cycle through {stuck}")


# ---------------------------------------------------------------------------
# Input preparation helpers
# ---------------------------------------------------------------------------


def merge_subblock_values(
    blocks: Iterable[Block | dict[str, Any]],
    live_values: Mapping[str, Mapping[str, Any]] | None = None,
) -> list[Block]:
    """Overlay live (unsaved) sub-block values onto the stored blocks."""
    live_values = live_values or {}
    merged = []
    for raw in blocks:
        block = raw if isinstance(raw, Block) else Block.model_validate(raw)
        overrides = live_values.get(block.id)
        if overrides:
            sub_blocks = dict(block.sub_blocks)
            for sub_id, value in overrides.items():
                existing = sub_blocks.get(sub_id)
                if existing is None:
                    sub_blocks[sub_id] = SubBlockState(id=sub_id, value=value)
                else:
                    sub_blocks[sub_id] = existing.model_copy(update={"value": value})
            block = block.model_copy(update={"sub_blocks": sub_blocks})
        merged.append(block)
    return merged


def parse_variable_value_by_type(value: Any, var_type: str) -> Any:
    """Coerce a stored workflow variable into its declared type, with safe defaults."""
    if var_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip() if value is not None else ""
        for cast in (int, float):
            try:
                return cast(text)
            except ValueError:
                continue
        return 0

    if var_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    if var_type in ("array", "object"):
        expected = list if var_type == "array" else dict
        if isinstance(value, expected):
            return value
        if isinstance(value, str) and value.strip():
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                return expected()
            return decoded if isinstance(decoded, expected) else expected()
        return expected()

    if var_type == "string":
        return "" if value is None else str(value)

    return value


def normalize_workflow_variables(raw: Mapping[str, Mapping[str, Any]] | None) -> dict[str, Any]:
    """Map ``{id: {name, type, value}}`` to ``{normalized_name: typed_value}``."""
    variables: dict[str, Any] = {}
    for key, variable in (raw or {}).items():
        name = normalize_block_name(variable.get("name") or key)
        variables[name] = parse_variable_value_by_type(
            variable.get("value"), variable.get("type", "plain")
        )
    return variables
