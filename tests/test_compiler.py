"""Tests for WorkflowCompiler and the input preparation helpers."""

import pytest

from blockflow.errors import CompilationError
from blockflow.graph.blocks import AgentConfig, BlockType, StarterConfig
from blockflow.graph.compiler import (
    merge_subblock_values,
    normalize_workflow_variables,
    parse_variable_value_by_type,
)
from tests.conftest import block, compile_workflow, edge


class TestCompileBlocks:
    def test_compiles_typed_configs(self):
        workflow = compile_workflow(
            [
                block("start", "starter"),
                block("agent1", "agent", model="gpt-4o", userPrompt="hi"),
            ],
            [edge("start", "agent1")],
        )

        assert set(workflow.blocks) == {"start", "agent1"}
        assert isinstance(workflow.blocks["start"].config, StarterConfig)
        config = workflow.blocks["agent1"].config
        assert isinstance(config, AgentConfig)
        assert config.model == "gpt-4o"
        assert config.user_prompt == "hi"

    def test_drops_blocks_without_type(self):
        workflow = compile_workflow([block("start", "starter"), block("note", None)])
        assert list(workflow.blocks) == ["start"]

    def test_unknown_type_fails(self):
        with pytest.raises(CompilationError, match="unknown type 'teleport'"):
            compile_workflow([block("x", "teleport")])

    def test_invalid_config_fails(self):
        # Tool blocks require a tool name
        with pytest.raises(CompilationError, match="invalid configuration"):
            compile_workflow([block("t", "tool")])

    def test_duplicate_block_id_fails(self):
        with pytest.raises(CompilationError, match="Duplicate"):
            compile_workflow([block("a", "starter"), block("a", "agent")])

    def test_advanced_mode_filters_sub_blocks(self):
        raw = block("agent1", "agent")
        raw["subBlocks"] = {
            "model": {"value": "basic-model", "mode": "basic"},
            "systemPrompt": {"value": "advanced prompt", "mode": "advanced"},
        }
        config = compile_workflow([raw]).blocks["agent1"].config
        assert config.model == "basic-model"
        assert config.system_prompt == ""

    def test_json_string_params_are_decoded(self):
        workflow = compile_workflow(
            [block("t", "tool", tool="http_get", params='{"url": "https://x"}')]
        )
        assert workflow.blocks["t"].config.params == {"url": "https://x"}


class TestTriggers:
    def test_manual_execution_drops_triggers_and_their_edges(self):
        blocks = [
            block("hook", "webhook"),
            block("start", "starter"),
            block("agent1", "agent"),
        ]
        edges = [edge("hook", "agent1"), edge("start", "agent1")]

        workflow = compile_workflow(blocks, edges, for_manual_execution=True)

        assert "hook" not in workflow.blocks
        assert [(e.source, e.target) for e in workflow.edges] == [("start", "agent1")]

    def test_triggers_kept_for_trigger_runs(self):
        workflow = compile_workflow([block("hook", "webhook")])
        assert workflow.blocks["hook"].type == BlockType.WEBHOOK

    def test_trigger_mode_block_is_dropped_for_manual(self):
        raw = block("agent1", "agent")
        raw["triggerMode"] = True
        workflow = compile_workflow([raw, block("start", "starter")], for_manual_execution=True)
        assert list(workflow.blocks) == ["start"]


class TestEdges:
    def test_unknown_endpoint_fails(self):
        with pytest.raises(CompilationError, match="unknown block 'ghost'"):
            compile_workflow([block("start", "starter")], [edge("start", "ghost")])

    def test_cycle_fails(self):
        with pytest.raises(CompilationError, match="cycle"):
            compile_workflow(
                [block("a", "agent"), block("b", "agent")],
                [edge("a", "b"), edge("b", "a")],
            )

    def test_edge_crossing_subflow_boundary_is_dropped(self):
        blocks = [
            block("start", "starter"),
            block("loop1", "loop"),
            block("inner", "agent"),
        ]
        workflow = compile_workflow(
            blocks,
            [edge("start", "inner"), edge("loop1", "inner", "loop-start-source")],
            loops={"loop1": {"nodes": ["inner"]}},
        )
        assert [(e.source, e.target) for e in workflow.edges] == [("loop1", "inner")]

    def test_edge_ids_are_stable(self):
        workflow = compile_workflow(
            [block("a", "condition"), block("b", "agent")],
            [edge("a", "b", "condition-a-if")],
        )
        assert workflow.edges[0].id == "a->b:condition-a-if"


class TestSubflows:
    def test_members_from_parent_id(self):
        inner = block("inner", "agent")
        inner["parentId"] = "loop1"
        workflow = compile_workflow([block("loop1", "loop"), inner])

        assert workflow.loops["loop1"].nodes == ["inner"]
        assert workflow.scope_of("inner") == "loop1"
        assert workflow.members_of(None) == ["loop1"]

    def test_container_without_config_gets_defaults(self):
        workflow = compile_workflow([block("par", "parallel")])
        spec = workflow.parallels["par"]
        assert spec.parallel_type == "count"
        assert spec.count == 2

    def test_subflow_bound_to_wrong_block_type_fails(self):
        with pytest.raises(CompilationError, match="is a loop"):
            compile_workflow([block("a", "agent")], loops={"a": {"nodes": []}})

    def test_orphaned_subflow_is_dropped(self):
        workflow = compile_workflow([block("start", "starter")], loops={"gone": {"nodes": []}})
        assert workflow.loops == {}

    def test_block_in_two_subflows_fails(self):
        with pytest.raises(CompilationError, match="belongs to both"):
            compile_workflow(
                [block("l1", "loop"), block("l2", "loop"), block("x", "agent")],
                loops={"l1": {"nodes": ["x"]}, "l2": {"nodes": ["x"]}},
            )

    def test_loop_config_aliases(self):
        workflow = compile_workflow(
            [block("l1", "loop")],
            loops={"l1": {"loopType": "forEach", "forEachItems": "[1, 2]"}},
        )
        spec = workflow.loops["l1"]
        assert spec.loop_type == "forEach"
        assert spec.for_each_items == "[1, 2]"


class TestIdMap:
    def test_id_map_applies_everywhere(self):
        inner = block("inner", "agent")
        inner["parentId"] = "loop1"
        workflow = compile_workflow(
            [block("start", "starter"), block("loop1", "loop"), inner],
            [edge("start", "loop1"), edge("loop1", "inner", "loop-start-source")],
            loops={"loop1": {"nodes": ["inner"]}},
            id_map={"start": "s2", "loop1": "l2", "inner": "i2"},
        )

        assert set(workflow.blocks) == {"s2", "l2", "i2"}
        assert workflow.blocks["i2"].parent_id == "l2"
        assert workflow.loops["l2"].nodes == ["i2"]
        assert {(e.source, e.target) for e in workflow.edges} == {("s2", "l2"), ("l2", "i2")}


class TestInputHelpers:
    def test_merge_subblock_values_overrides_and_adds(self):
        blocks = [block("agent1", "agent", model="old")]
        merged = merge_subblock_values(blocks, {"agent1": {"model": "new", "temperature": 0.2}})

        assert merged[0].sub_blocks["model"].value == "new"
        assert merged[0].sub_blocks["temperature"].value == 0.2

    def test_merge_subblock_values_leaves_other_blocks(self):
        merged = merge_subblock_values([block("a", "agent", model="m")], {"b": {"model": "x"}})
        assert merged[0].sub_blocks["model"].value == "m"

    @pytest.mark.parametrize(
        ("value", "var_type", "expected"),
        [
            ("42", "number", 42),
            ("2.5", "number", 2.5),
            ("abc", "number", 0),
            ("TRUE", "boolean", True),
            ("no", "boolean", False),
            ('["a"]', "array", ["a"]),
            ('{"a": 1}', "array", []),
            ("not json", "object", {}),
            (None, "string", ""),
            (7, "string", "7"),
            ("raw", "plain", "raw"),
        ],
    )
    def test_parse_variable_value_by_type(self, value, var_type, expected):
        assert parse_variable_value_by_type(value, var_type) == expected

    def test_normalize_workflow_variables(self):
        variables = normalize_workflow_variables(
            {
                "v1": {"name": "Max Retries", "type": "number", "value": "3"},
                "v2": {"name": "tags", "type": "array", "value": '["x"]'},
            }
        )
        assert variables == {"maxretries": 3, "tags": ["x"]}
