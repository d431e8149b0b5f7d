"""Shared builders for workflow tests."""

import os
from typing import Any

# Use litellm's bundled model cost map; its background remote fetch races the
# main-thread import when offline and can deadlock test collection.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest

from blockflow.config import EngineConfig
from blockflow.graph.compiler import WorkflowCompiler
from blockflow.graph.workflow import SerializedWorkflow


def block(block_id: str, block_type: str | None, name: str = "", **params: Any) -> dict:
    """Authoring-side block dict with each keyword as a sub-block value."""
    data: dict[str, Any] = {
        "id": block_id,
        "type": block_type,
        "name": name or block_id,
        "subBlocks": {key: {"value": value} for key, value in params.items()},
    }
    return data


def edge(source: str, target: str, handle: str | None = None) -> dict:
    data = {"source": source, "target": target}
    if handle:
        data["sourceHandle"] = handle
    return data


def compile_workflow(
    blocks: list[dict],
    edges: list[dict] | None = None,
    loops: dict | None = None,
    parallels: dict | None = None,
    **kwargs: Any,
) -> SerializedWorkflow:
    return WorkflowCompiler().compile(blocks, edges or [], loops, parallels, **kwargs)


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        model="openai/gpt-4o-mini",
        temperature=0.5,
        max_tokens=256,
        api_key=None,
        max_tool_iterations=3,
        max_loop_iterations=10,
        max_foreach_items=10,
        max_parallel_branches=4,
        parallel_failure_policy="collect_all",
        log_dir=tmp_path / "executions",
    )
