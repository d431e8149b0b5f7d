"""
Subflow runners for loop and parallel containers.

Both re-enter the container's member sub-graph through a scope runner
supplied by the executor. Every iteration (or branch) gets its own
IterationScope, so member outputs never leak between iterations.

Output shape for both: ``{"results": [...]}``, one entry per iteration or
branch, each entry the list of member outputs in completion order.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import ExecutionCancelled, SubflowError
from blockflow.graph.blocks import SerializedBlock
from blockflow.graph.context import ExecutionContext, IterationScope
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.safe_eval import safe_eval
from blockflow.graph.subflow import LoopSpec, ParallelSpec


@dataclass
class ScopeOutcome:
    """Result of running one scope (the top level, or one iteration)."""

    outputs: list[dict[str, Any]] = field(default_factory=list)
    last_output: dict[str, Any] | None = None
    error: str | None = None
    failed_block_id: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


ScopeRunner = Callable[[ExecutionContext, str], Awaitable[ScopeOutcome]]


def resolve_collection(container_id: str, value: Any, ctx: ExecutionContext) -> list[Any]:
    """
    Turn a forEach/distribution value into a list.

    Accepts a list, a dict (as ``[key, value]`` pairs), a JSON string, or a
    reference that resolves to any of those.
    """
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = ReferenceResolver(ctx).resolve(value)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise SubflowError(container_id, f"Cannot iterate over {value!r}") from e
    if isinstance(value, dict):
        return [[key, item] for key, item in value.items()]
    if isinstance(value, (list, tuple)):
        return list(value)
    if value is None:
        return []
    raise SubflowError(container_id, f"Cannot iterate over value of type {type(value).__name__}")


def _check_cancelled(ctx: ExecutionContext) -> None:
    if ctx.is_cancelled:
        raise ExecutionCancelled("Execution cancelled")


# ---------------------------------------------------------------------------
# Loops
# ---------------------------------------------------------------------------


class LoopRunner:
    """Runs a loop container's iterations sequentially."""

    def __init__(
        self,
        run_scope: ScopeRunner,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.run_scope = run_scope
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)

    async def run(self, block: SerializedBlock, ctx: ExecutionContext) -> dict[str, Any]:
        spec = ctx.workflow.loops.get(block.id)
        if spec is None:
            raise SubflowError(block.id, "Loop block has no loop configuration")

        if spec.loop_type in ("while", "doWhile"):
            results = await self._run_conditional(block, spec, ctx)
        else:
            items = self._iteration_items(spec, ctx)
            bound = items if spec.loop_type == "forEach" else None
            results = []
            for index, item in enumerate(items):
                results.append(await self._iteration(block, ctx, index, item, bound))

        self.logger.info(
            "Loop '%s' finished after %d iterations",
            block.display_name,
            len(results),
            extra={"iteration": len(results)},
        )
        return {"results": results}

    def _iteration_items(self, spec: LoopSpec, ctx: ExecutionContext) -> list[Any]:
        if spec.loop_type == "forEach":
            items = resolve_collection(spec.id, spec.for_each_items, ctx)
            if len(items) > self.config.max_foreach_items:
                raise SubflowError(
                    spec.id,
                    f"forEach over {len(items)} items exceeds the limit of "
                    f"{self.config.max_foreach_items}",
                )
            return items

        if spec.iterations > self.config.max_loop_iterations:
            raise SubflowError(
                spec.id,
                f"Loop of {spec.iterations} iterations exceeds the limit of "
                f"{self.config.max_loop_iterations}",
            )
        return [None] * max(spec.iterations, 0)

    async def _run_conditional(
        self, block: SerializedBlock, spec: LoopSpec, ctx: ExecutionContext
    ) -> list[list[dict[str, Any]]]:
        if not (spec.while_condition or "").strip():
            raise SubflowError(spec.id, f"{spec.loop_type} loop has no condition")

        results: list[list[dict[str, Any]]] = []
        previous: dict[str, dict[str, Any]] = {}
        check_first = spec.loop_type == "while"

        while len(results) < self.config.max_loop_iterations:
            index = len(results)
            if check_first and not self._condition_holds(spec, ctx, index, previous):
                return results
            scope_outputs: dict[str, dict[str, Any]] = {}
            results.append(await self._iteration(block, ctx, index, None, None, scope_outputs))
            previous = scope_outputs
            if not check_first and not self._condition_holds(spec, ctx, index + 1, previous):
                return results

        self.logger.warning(
            "Loop '%s' stopped at the iteration limit (%d)",
            block.display_name,
            self.config.max_loop_iterations,
        )
        return results

    def _condition_holds(
        self,
        spec: LoopSpec,
        ctx: ExecutionContext,
        index: int,
        previous: dict[str, dict[str, Any]],
    ) -> bool:
        scope = IterationScope(
            container_id=spec.id, kind="loop", index=index, outputs=previous, parent=ctx.scope
        )
        resolver = ReferenceResolver(ctx.for_iteration(scope), logger=self.logger)
        expr, bindings = resolver.resolve_expression(spec.while_condition or "")
        try:
            return bool(safe_eval(expr, bindings))
        except ValueError as e:
            raise SubflowError(spec.id, f"Invalid loop condition: {e}") from e

    async def _iteration(
        self,
        block: SerializedBlock,
        ctx: ExecutionContext,
        index: int,
        item: Any,
        items: list[Any] | None,
        outputs: dict[str, dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        _check_cancelled(ctx)
        scope = IterationScope(
            container_id=block.id,
            kind="loop",
            index=index,
            item=item,
            items=items,
            outputs=outputs if outputs is not None else {},
            parent=ctx.scope,
        )
        outcome = await self.run_scope(ctx.for_iteration(scope), block.id)
        if outcome.failed:
            raise SubflowError(block.id, f"Iteration {index} failed: {outcome.error}")
        return outcome.outputs


# ---------------------------------------------------------------------------
# Parallels
# ---------------------------------------------------------------------------


class ParallelRunner:
    """
    Runs a parallel container's branches concurrently.

    Concurrency is bounded by ``max_parallel_branches``. The join follows
    ``parallel_failure_policy``:

    - ``collect_all``: every branch runs to completion; failed branches
      leave ``{"error": ...}`` in their slot and are listed in ``errors``.
      The container fails only if every branch failed.
    - ``fail_fast``: the first failure cancels the remaining branches and
      fails the container.
    """

    def __init__(
        self,
        run_scope: ScopeRunner,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.run_scope = run_scope
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)

    async def run(self, block: SerializedBlock, ctx: ExecutionContext) -> dict[str, Any]:
        spec = ctx.workflow.parallels.get(block.id)
        if spec is None:
            raise SubflowError(block.id, "Parallel block has no parallel configuration")

        items = self._branch_items(spec, ctx)
        count = len(items) if items is not None else max(spec.count, 0)
        if count == 0:
            return {"results": []}

        semaphore = asyncio.Semaphore(self.config.max_parallel_branches)

        async def branch(index: int) -> list[dict[str, Any]]:
            async with semaphore:
                _check_cancelled(ctx)
                scope = IterationScope(
                    container_id=block.id,
                    kind="parallel",
                    index=index,
                    item=items[index] if items is not None else None,
                    items=items,
                    parent=ctx.scope,
                )
                outcome = await self.run_scope(ctx.for_iteration(scope), block.id)
                if outcome.failed:
                    raise SubflowError(block.id, f"Branch {index} failed: {outcome.error}")
                return outcome.outputs

        self.logger.info("Parallel '%s' dispatching %d branches", block.display_name, count)
        tasks = [asyncio.create_task(branch(i)) for i in range(count)]
        try:
            if self.config.parallel_failure_policy == "fail_fast":
                return await self._join_fail_fast(tasks)
            return await self._join_collect_all(block, tasks)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

    def _branch_items(self, spec: ParallelSpec, ctx: ExecutionContext) -> list[Any] | None:
        if spec.parallel_type == "collection":
            items = resolve_collection(spec.id, spec.distribution, ctx)
        elif spec.count > self.config.max_foreach_items:
            raise SubflowError(spec.id, f"Parallel count {spec.count} is too large")
        else:
            return None
        if len(items) > self.config.max_foreach_items:
            raise SubflowError(
                spec.id,
                f"Parallel over {len(items)} items exceeds the limit of "
                f"{self.config.max_foreach_items}",
            )
        return items

    async def _join_collect_all(
        self, block: SerializedBlock, tasks: list[asyncio.Task]
    ) -> dict[str, Any]:
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[Any] = []
        errors: list[dict[str, Any]] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, ExecutionCancelled):
                raise outcome
            if isinstance(outcome, BaseException):
                self.logger.warning("Branch %d of '%s' failed: %s", index, block.id, outcome)
                results.append({"error": str(outcome)})
                errors.append({"index": index, "error": str(outcome)})
            else:
                results.append(outcome)

        if errors and len(errors) == len(outcomes):
            raise SubflowError(
                block.id, f"All {len(outcomes)} branches failed: {errors[0]['error']}"
            )
        output: dict[str, Any] = {"results": results}
        if errors:
            output["errors"] = errors
        return output

    async def _join_fail_fast(self, tasks: list[asyncio.Task]) -> dict[str, Any]:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failed = [t for t in tasks if t in done and not t.cancelled() and t.exception()]
        if failed:
            await _cancel_all(list(pending))
            raise failed[0].exception()
        return {"results": [t.result() for t in tasks]}


async def _cancel_all(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
