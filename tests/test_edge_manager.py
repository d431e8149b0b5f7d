"""Tests for edge activation and scope readiness."""

from blockflow.graph.blocks import BlockType
from blockflow.graph.edge import Edge
from blockflow.graph.edge_manager import EdgeManager, is_edge_active
from tests.conftest import block, compile_workflow, edge


class TestIsEdgeActive:
    def test_plain_edge_follows_success(self):
        e = Edge(source="a", target="b")
        assert is_edge_active(e, BlockType.AGENT, {}, failed=False) is True
        assert is_edge_active(e, BlockType.AGENT, {}, failed=True) is False

    def test_error_edge_follows_failure(self):
        e = Edge(source="a", target="b", source_handle="error")
        assert is_edge_active(e, BlockType.AGENT, {}, failed=True) is True
        assert is_edge_active(e, BlockType.AGENT, {}, failed=False) is False

    def test_condition_edge(self):
        e = Edge(source="c", target="b", source_handle="condition-c-if")
        assert is_edge_active(e, BlockType.CONDITION, {"selected_condition": "c-if"}, False)
        assert not is_edge_active(e, BlockType.CONDITION, {"selected_condition": "c-else"}, False)
        assert not is_edge_active(e, BlockType.CONDITION, None, False)

    def test_router_edge(self):
        e = Edge(source="r", target="b")
        assert is_edge_active(e, BlockType.ROUTER, {"selected_route": "b"}, False)
        assert not is_edge_active(e, BlockType.ROUTER, {"selected_route": "other"}, False)


def _diamond():
    return compile_workflow(
        [
            block("start", "starter"),
            block(
                "check",
                "condition",
                conditions=[
                    {"id": "check-if", "title": "if", "value": "true"},
                    {"id": "check-else", "title": "else"},
                ],
            ),
            block("yes", "agent"),
            block("no", "agent"),
            block("after_no", "agent"),
            block("join", "agent"),
        ],
        [
            edge("start", "check"),
            edge("check", "yes", "condition-check-if"),
            edge("check", "no", "condition-check-else"),
            edge("no", "after_no"),
            edge("yes", "join"),
            edge("after_no", "join"),
        ],
    )


class TestEdgeManager:
    def test_entry_blocks(self):
        workflow = _diamond()
        manager = EdgeManager(workflow, workflow.members_of(None))
        assert manager.entry_blocks() == ["start"]

    def test_unselected_branch_is_skipped_and_join_still_runs(self):
        workflow = _diamond()
        manager = EdgeManager(workflow, workflow.members_of(None))

        assert manager.complete("start", {}).ready == ["check"]

        progress = manager.complete("check", {"selected_condition": "check-if"})
        assert progress.ready == ["yes"]
        assert progress.skipped == ["no", "after_no"]
        assert manager.skipped == {"no", "after_no"}

        assert manager.complete("yes", {"content": "ok"}).ready == ["join"]

    def test_join_waits_for_all_incoming(self):
        workflow = compile_workflow(
            [block("a", "agent"), block("b", "agent"), block("join", "agent")],
            [edge("a", "join"), edge("b", "join")],
        )
        manager = EdgeManager(workflow, workflow.members_of(None))

        assert manager.entry_blocks() == ["a", "b"]
        assert manager.complete("a", {}).ready == []
        assert manager.complete("b", {}).ready == ["join"]

    def test_failure_takes_error_path_only(self):
        workflow = compile_workflow(
            [block("a", "agent"), block("ok", "agent"), block("handler", "agent")],
            [edge("a", "ok"), edge("a", "handler", "error")],
        )
        manager = EdgeManager(workflow, workflow.members_of(None))

        progress = manager.complete("a", {"error": "boom"}, failed=True)
        assert progress.ready == ["handler"]
        assert progress.skipped == ["ok"]

    def test_skip_cascades(self):
        workflow = compile_workflow(
            [block("a", "agent"), block("b", "agent"), block("c", "agent")],
            [edge("a", "b"), edge("b", "c")],
        )
        manager = EdgeManager(workflow, workflow.members_of(None))

        assert manager.skip("a").skipped == ["a", "b", "c"]

    def test_subflow_start_edges_are_not_dependencies(self):
        inner_a = block("inner_a", "agent")
        inner_a["parentId"] = "loop1"
        inner_b = block("inner_b", "agent")
        inner_b["parentId"] = "loop1"
        workflow = compile_workflow(
            [block("loop1", "loop"), inner_a, inner_b],
            [edge("loop1", "inner_a", "loop-start-source"), edge("inner_a", "inner_b")],
        )
        manager = EdgeManager(workflow, workflow.members_of("loop1"))

        assert manager.entry_blocks() == ["inner_a"]
        assert manager.complete("inner_a", {}).ready == ["inner_b"]
