"""
Graph Executor - Runs compiled workflows.

The executor:
1. Starts from the blocks with no dependencies in the top-level scope
2. Resolves each block's config references against the run's outputs
3. Dispatches the block to its handler (or to a subflow runner)
4. Resolves the block's outgoing edges and queues blocks that became ready
5. Contains failures to the block where a handler says so, or ends the run
6. Returns the final ExecutionResult with every BlockLog produced

Subflows re-enter the same scope loop with an IterationScope, so a member
block runs exactly like a top-level one but writes into its iteration's
namespace.
"""

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, assert_never

from pydantic import ValidationError

from blockflow.config import EngineConfig
from blockflow.errors import BlockExecutionError, ExecutionCancelled
from blockflow.graph.blocks import (
    AgentConfig,
    BlockConfig,
    BlockType,
    ConditionConfig,
    LoopBlockConfig,
    ParallelBlockConfig,
    RouterConfig,
    SerializedBlock,
    StarterConfig,
    ToolConfig,
    TriggerConfig,
)
from blockflow.graph.context import ExecutionContext, ExecutionMetadata, ExecutionResult
from blockflow.graph.edge_manager import EdgeManager
from blockflow.graph.handlers import (
    AgentBlockHandler,
    BlockHandler,
    ConditionBlockHandler,
    RouterBlockHandler,
    StarterBlockHandler,
    ToolBlockHandler,
    TriggerBlockHandler,
)
from blockflow.graph.memory import AgentMemory, MemoryStore
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.subflows import LoopRunner, ParallelRunner, ScopeOutcome
from blockflow.llm.registry import ProviderRegistry
from blockflow.observability import trace_scope
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.log_schemas import (
    BlockLog,
    ProviderTiming,
    TokenUsage,
    ToolCall,
    now_iso,
)

BlockCompleteHook = Callable[[BlockLog], Awaitable[None]]


def default_handlers(
    providers: ProviderRegistry,
    tool_registry: ToolRegistry,
    config: EngineConfig,
    logger: logging.Logger | None = None,
    memory_store: MemoryStore | None = None,
) -> dict[BlockType, BlockHandler]:
    """One handler per executable block type."""
    trigger = TriggerBlockHandler()
    memory = AgentMemory(memory_store, logger=logger) if memory_store is not None else None
    return {
        BlockType.STARTER: StarterBlockHandler(),
        BlockType.WEBHOOK: trigger,
        BlockType.SCHEDULE: trigger,
        BlockType.AGENT: AgentBlockHandler(
            providers, tool_registry, config, logger=logger, memory=memory
        ),
        BlockType.ROUTER: RouterBlockHandler(providers, config, logger=logger),
        BlockType.CONDITION: ConditionBlockHandler(logger=logger),
        BlockType.TOOL: ToolBlockHandler(tool_registry, logger=logger),
    }


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class GraphExecutor:
    """
    Executes compiled workflows.

    Example:
        executor = GraphExecutor(providers=ProviderRegistry(MockLLMProvider(["hi"])))
        result = await executor.execute(ExecutionContext(workflow=workflow))
    """

    def __init__(
        self,
        handlers: dict[BlockType, BlockHandler] | None = None,
        *,
        providers: ProviderRegistry | None = None,
        tool_registry: ToolRegistry | None = None,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
        on_block_complete: BlockCompleteHook | None = None,
        memory_store: MemoryStore | None = None,
    ):
        """
        Initialize the executor.

        Args:
            handlers: Overrides for the default per-type block handlers
            providers: Provider registry used by agent and router blocks
            tool_registry: Tools available to tool blocks and agent tool calls
            config: Engine limits and model defaults
            logger: Logger for this executor and the handlers it builds
            on_block_complete: Awaited after every BlockLog is recorded
            memory_store: Conversation memory for agent blocks; memory is off without one
        """
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.providers = providers or ProviderRegistry.from_config(self.config)
        self.tool_registry = tool_registry or ToolRegistry(logger=self.logger)
        self.handlers = {
            **default_handlers(
                self.providers,
                self.tool_registry,
                self.config,
                self.logger,
                memory_store=memory_store,
            ),
            **(handlers or {}),
        }
        self.on_block_complete = on_block_complete
        self.loop_runner = LoopRunner(self.run_scope, self.config, logger=self.logger)
        self.parallel_runner = ParallelRunner(self.run_scope, self.config, logger=self.logger)

    async def execute(self, ctx: ExecutionContext) -> ExecutionResult:
        """
        Run the workflow in ``ctx`` to completion.

        Block failures never raise out of here; they end up in the result.
        Task cancellation (asyncio.CancelledError) propagates to the caller.
        """
        start_time = now_iso()
        started = time.perf_counter()
        status = "completed"
        error: str | None = None
        output: dict[str, Any] = {}

        with trace_scope(execution_id=ctx.execution_id, workflow_id=ctx.workflow_id):
            self.logger.info(
                f"🚀 Starting execution: {ctx.workflow_id or 'workflow'} "
                f"({len(ctx.workflow.blocks)} blocks)"
            )
            try:
                outcome = await self.run_scope(ctx, None)
            except ExecutionCancelled:
                self.logger.info("⏹ Execution cancelled")
                status, error = "cancelled", "Execution cancelled"
            else:
                if outcome.failed:
                    status, error = "failed", outcome.error
                    self.logger.error(f"❌ Execution failed: {outcome.error}")
                else:
                    output = outcome.last_output or {}
                    self.logger.info(f"✓ Execution complete ({len(ctx.logs)} block logs)")

        if error is not None:
            output = {"error": error}
        return ExecutionResult(
            success=status == "completed",
            output=output,
            error=error,
            logs=list(ctx.logs),
            metadata=ExecutionMetadata(
                start_time=start_time,
                end_time=now_iso(),
                duration_ms=_elapsed_ms(started),
            ),
            status=status,
        )

    # -------------------------------------------------------------------
    # Scopes
    # -------------------------------------------------------------------

    async def run_scope(self, ctx: ExecutionContext, scope_id: str | None) -> ScopeOutcome:
        """
        Run every reachable member of a scope in FIFO ready order.

        Returns early with ``error`` set when a block fails and nothing
        handles the failure.
        """
        workflow = ctx.workflow
        manager = EdgeManager(workflow, workflow.members_of(scope_id))
        queue = deque(manager.entry_blocks())
        outcome = ScopeOutcome()

        while queue:
            if ctx.is_cancelled:
                raise ExecutionCancelled("Execution cancelled")
            block = workflow.get_block(queue.popleft())

            if not block.enabled:
                self.logger.info(f"   ⏭ Skipping disabled block: {block.display_name}")
                progress = manager.skip(block.id)
                queue.extend(progress.ready)
                continue

            output, error = await self._execute_block(block, ctx)
            progress = manager.complete(block.id, output, failed=error is not None)
            queue.extend(progress.ready)
            if progress.skipped:
                self.logger.debug(f"   Pruned branches: {progress.skipped}")

            if error is None:
                outcome.outputs.append(output)
                outcome.last_output = output
            elif not self._is_failure_handled(block, ctx, scope_id):
                outcome.error = error
                outcome.failed_block_id = block.id
                return outcome
            else:
                self.logger.warning(f"   ⚠ Continuing past failed block: {block.display_name}")

        return outcome

    def _is_failure_handled(
        self, block: SerializedBlock, ctx: ExecutionContext, scope_id: str | None
    ) -> bool:
        """
        A failure is handled when the block has an error edge, or (at top
        level) it has no dependents and no selected output depends on it.
        With nothing selected, every such leaf is contained.
        """
        workflow = ctx.workflow
        outgoing = [e for e in workflow.outgoing(block.id) if not e.is_subflow_start]
        if any(e.is_error_path for e in outgoing):
            return True
        if scope_id is not None or outgoing:
            return False
        selected = {block_id for block_id in workflow.blocks if ctx.is_block_selected(block_id)}
        return block.id not in workflow.ancestors_of(selected)

    # -------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------

    async def _execute_block(
        self, block: SerializedBlock, ctx: ExecutionContext
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Run one block and record its BlockLog. Returns (output, error)."""
        started_at = now_iso()
        started = time.perf_counter()
        output: dict[str, Any] | None = None
        error: str | None = None

        with trace_scope(block_id=block.id):
            self.logger.info(f"▶ {block.display_name} ({block.type})")
            try:
                output = await self._dispatch(block, ctx)
            except ExecutionCancelled:
                await self._record(block, ctx, started_at, started, None, "Execution cancelled")
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                self.logger.error(f"   ✗ Block '{block.display_name}' failed: {error}")
                ctx.set_block_output(block.id, {"error": error})
            else:
                ctx.set_block_output(block.id, output)

            await self._record(block, ctx, started_at, started, output, error)
        return output, error

    async def _dispatch(self, block: SerializedBlock, ctx: ExecutionContext) -> dict[str, Any]:
        config = self._resolve_config(block, ctx)
        match config:
            case LoopBlockConfig():
                return await self.loop_runner.run(block, ctx)
            case ParallelBlockConfig():
                return await self.parallel_runner.run(block, ctx)
            case (
                StarterConfig()
                | TriggerConfig()
                | AgentConfig()
                | ConditionConfig()
                | RouterConfig()
                | ToolConfig()
            ):
                handler = self.handlers.get(block.type)
                if handler is None:
                    raise BlockExecutionError(
                        block.id, f"No handler registered for block type '{block.type}'"
                    )
                return await handler.execute(block, config, ctx)
            case _:
                assert_never(config)

    def _resolve_config(self, block: SerializedBlock, ctx: ExecutionContext) -> BlockConfig:
        """Substitute references in the config. Condition expressions are bound at evaluation."""
        config = block.config
        if isinstance(config, (ConditionConfig, LoopBlockConfig, ParallelBlockConfig)):
            return config
        resolver = ReferenceResolver(ctx, logger=self.logger)
        resolved = resolver.resolve(config.model_dump())
        try:
            return type(config).model_validate(resolved)
        except ValidationError as e:
            raise BlockExecutionError(
                block.id, f"Resolved configuration is invalid: {e.errors()[0]['msg']}"
            ) from e

    async def _record(
        self,
        block: SerializedBlock,
        ctx: ExecutionContext,
        started_at: str,
        started: float,
        output: dict[str, Any] | None,
        error: str | None,
    ) -> None:
        log = BlockLog(
            block_id=block.id,
            block_name=block.display_name,
            block_type=str(block.type),
            started_at=started_at,
            ended_at=now_iso(),
            duration_ms=_elapsed_ms(started),
            success=error is None,
            output=output if output is not None else {"error": error},
            error=error,
            iteration_index=ctx.scope.index if ctx.scope else None,
            container_id=ctx.scope.container_id if ctx.scope else None,
            **_provider_details(output),
        )
        ctx.logs.append(log)

        if self.on_block_complete is not None:
            try:
                await self.on_block_complete(log)
            except Exception:
                self.logger.exception("on_block_complete hook failed (non-fatal)")


def _provider_details(output: dict[str, Any] | None) -> dict[str, Any]:
    """Tool calls, timing, tokens and model carried by agent/router outputs."""
    if not output:
        return {}
    details: dict[str, Any] = {}
    if isinstance(output.get("tokens"), dict):
        details["tokens"] = TokenUsage.model_validate(output["tokens"])
    if isinstance(output.get("model"), str):
        details["model"] = output["model"]
    if isinstance(output.get("provider_timing"), dict):
        details["timing"] = ProviderTiming.model_validate(output["provider_timing"])
    tool_calls = output.get("tool_calls")
    if isinstance(tool_calls, dict) and isinstance(tool_calls.get("list"), list):
        details["tool_calls"] = [ToolCall.model_validate(c) for c in tool_calls["list"]]
    return details
