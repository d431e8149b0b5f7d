"""Tests for ReferenceResolver."""

import pytest

from blockflow.graph.context import ExecutionContext, IterationScope
from blockflow.graph.references import ReferenceResolver, navigate, split_path
from tests.conftest import block, compile_workflow, edge


@pytest.fixture
def ctx() -> ExecutionContext:
    inner = block("inner", "agent")
    inner["parentId"] = "loop1"
    workflow = compile_workflow(
        [
            block("start", "starter"),
            block("agent1", "agent", name="My Agent"),
            block("loop1", "loop", name="Outer Loop"),
            inner,
        ],
        [edge("start", "agent1"), edge("agent1", "loop1")],
    )
    context = ExecutionContext(
        workflow=workflow,
        env_vars={"API_KEY": "secret"},
        workflow_variables={"maxretries": 3},
    )
    context.set_block_output("start", {"input": "hello"})
    context.set_block_output(
        "agent1", {"content": "answer", "score": 0.9, "items": [{"id": 1}], "flag": True}
    )
    return context


def test_split_path_and_navigate():
    assert split_path("a.b[0].c") == ["a", "b", "0", "c"]
    assert navigate({"b": [{"c": 5}]}, ["b", "0", "c"]) == 5
    assert navigate({"b": [1]}, ["b", "3"]) is None
    assert navigate("text", ["x"]) is None


class TestResolveString:
    def test_whole_reference_keeps_type(self, ctx):
        resolver = ReferenceResolver(ctx)
        assert resolver.resolve_string("<agent1.score>") == 0.9
        assert resolver.resolve_string("<agent1.items>") == [{"id": 1}]
        assert resolver.resolve_string("<agent1.items[0].id>") == 1

    def test_embedded_reference_is_interpolated(self, ctx):
        resolver = ReferenceResolver(ctx)
        assert resolver.resolve_string("Said: <agent1.content>!") == "Said: answer!"
        assert resolver.resolve_string("Data <agent1.items>") == 'Data [{"id": 1}]'
        assert resolver.resolve_string("Flag <agent1.flag>") == "Flag true"

    def test_block_by_normalized_name(self, ctx):
        assert ReferenceResolver(ctx).resolve_string("<myagent.content>") == "answer"

    def test_unknown_reference_left_verbatim(self, ctx):
        assert ReferenceResolver(ctx).resolve_string("<b>bold</b>") == "<b>bold</b>"

    def test_block_without_output_resolves_to_none(self, ctx):
        resolver = ReferenceResolver(ctx)
        assert resolver.resolve_string("<inner.content>") is None
        assert resolver.resolve_string("x<inner.content>y") == "xy"

    def test_start_and_variables(self, ctx):
        resolver = ReferenceResolver(ctx)
        assert resolver.resolve_string("<start.input>") == "hello"
        assert resolver.resolve_string("<variable.maxRetries>") == 3
        assert resolver.resolve_string("<variable.unknown>") == "<variable.unknown>"

    def test_env_vars(self, ctx):
        resolver = ReferenceResolver(ctx)
        assert resolver.resolve_string("Bearer {{API_KEY}}") == "Bearer secret"
        assert resolver.resolve_string("{{ MISSING }}") == "{{ MISSING }}"

    def test_deep_resolve(self, ctx):
        resolved = ReferenceResolver(ctx).resolve(
            {"q": "<agent1.content>", "list": ["<agent1.score>", 5], "n": None}
        )
        assert resolved == {"q": "answer", "list": [0.9, 5], "n": None}


class TestIterationScope:
    def test_loop_references(self, ctx):
        scope = IterationScope(
            container_id="loop1", kind="loop", index=2, item={"name": "x"}, items=["a"]
        )
        resolver = ReferenceResolver(ctx.for_iteration(scope))

        assert resolver.resolve_string("<loop.index>") == 2
        assert resolver.resolve_string("<loop.item.name>") == "x"
        assert resolver.resolve_string("<loop.items>") == ["a"]
        assert resolver.resolve_string("<outerloop.index>") == 2

    def test_loop_reference_outside_loop(self, ctx):
        assert ReferenceResolver(ctx).resolve_string("<loop.index>") == "<loop.index>"

    def test_parallel_current_item_through_nested_loop(self, ctx):
        outer = IterationScope(container_id="par", kind="parallel", index=1, item="branch-b")
        inner = IterationScope(container_id="loop1", kind="loop", index=0, parent=outer)
        resolver = ReferenceResolver(ctx.for_iteration(inner))

        assert resolver.resolve_string("<parallel.currentItem>") == "branch-b"
        assert resolver.resolve_string("<parallel.index>") == 1

    def test_iteration_outputs_shadow_block_states(self, ctx):
        scope = IterationScope(container_id="loop1", kind="loop", index=0)
        iteration_ctx = ctx.for_iteration(scope)
        iteration_ctx.set_block_output("inner", {"content": "iteration value"})

        assert ReferenceResolver(iteration_ctx).resolve_string("<inner.content>") == (
            "iteration value"
        )
        assert ctx.get_block_output("inner") is None


def test_resolve_expression_binds_values(ctx):
    source, bindings = ReferenceResolver(ctx).resolve_expression(
        "<agent1.score> > 0.5 and {{API_KEY}} == 'secret' and <ghost.x>"
    )
    assert source == "ref_1 > 0.5 and ref_0 == 'secret' and <ghost.x>"
    assert bindings == {"ref_0": "secret", "ref_1": 0.9}
