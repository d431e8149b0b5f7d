"""
Execution core - the one path every run takes.

Brackets a run with its logging session:

1. Merge live sub-block values and normalize workflow variables
2. Start the session (before anything can fail)
3. Compile (trigger blocks are dropped for manual and chat runs)
4. Build the ExecutionContext and execute
5. Complete the session as cancelled, completed or failed

Compilation errors and other exceptions complete the session with the error
and are re-raised. Task cancellation completes the session as cancelled
(shielded, so the write survives the cancellation) and is re-raised.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from blockflow.graph.compiler import (
    WorkflowCompiler,
    merge_subblock_values,
    normalize_workflow_variables,
)
from blockflow.graph.context import ExecutionContext, ExecutionResult
from blockflow.graph.executor import GraphExecutor
from blockflow.runtime.logging_session import LoggingSession
from blockflow.runtime.streaming import StreamChannel

logger = logging.getLogger(__name__)

MANUAL_TRIGGER_TYPES = frozenset({"manual", "chat"})


@dataclass
class WorkflowSnapshot:
    """Everything one run needs: the stored graph plus per-run metadata."""

    blocks: list[Any] = field(default_factory=list)
    edges: list[Any] = field(default_factory=list)
    loops: dict[str, Any] = field(default_factory=dict)
    parallels: dict[str, Any] = field(default_factory=dict)
    workflow_id: str = ""
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    workspace_id: str = ""
    user_id: str = ""
    trigger_type: str = "manual"
    input: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    selected_outputs: list[str] = field(default_factory=list)
    live_values: dict[str, dict[str, Any]] = field(default_factory=dict)
    id_map: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], **overrides: Any) -> "WorkflowSnapshot":
        """
        Build a snapshot from a workflow document.

        ``blocks`` may be a list or a dict keyed by block id; keys of the
        document that are not snapshot fields are ignored.
        """
        blocks = data.get("blocks") or []
        if isinstance(blocks, dict):
            blocks = [{"id": block_id, **block} for block_id, block in blocks.items()]
        values = {
            "blocks": blocks,
            "edges": data.get("edges") or [],
            "loops": data.get("loops") or {},
            "parallels": data.get("parallels") or {},
            "variables": data.get("variables") or {},
        }
        if data.get("id"):
            values["workflow_id"] = data["id"]
        return cls(**{**values, **overrides})


def final_chat_output(result: ExecutionResult) -> str:
    return json.dumps(result.output, default=str)


async def execute_workflow_core(
    snapshot: WorkflowSnapshot,
    executor: GraphExecutor,
    session: LoggingSession,
    *,
    stream: StreamChannel | None = None,
    cancel_event: asyncio.Event | None = None,
    compiler: WorkflowCompiler | None = None,
) -> ExecutionResult:
    """
    Run one workflow and persist its lifecycle through ``session``.

    The executor's block hook is pointed at the session for the duration of
    the run, so one executor must not serve concurrent runs.
    """
    result: ExecutionResult | None = None
    previous_hook = executor.on_block_complete
    executor.on_block_complete = session.safe_on_block_complete
    try:
        blocks = merge_subblock_values(snapshot.blocks, snapshot.live_values)
        variables = normalize_workflow_variables(snapshot.variables)

        await session.safe_start(
            user_id=snapshot.user_id,
            workspace_id=snapshot.workspace_id,
            variables=variables,
            initial_input=snapshot.input,
        )

        workflow = (compiler or WorkflowCompiler()).compile(
            blocks,
            snapshot.edges,
            snapshot.loops,
            snapshot.parallels,
            for_manual_execution=snapshot.trigger_type in MANUAL_TRIGGER_TYPES,
            id_map=snapshot.id_map,
        )

        ctx = ExecutionContext(
            workflow=workflow,
            workflow_id=snapshot.workflow_id,
            execution_id=snapshot.execution_id,
            workspace_id=snapshot.workspace_id,
            user_id=snapshot.user_id,
            trigger_type=snapshot.trigger_type,
            env_vars=dict(snapshot.env_vars),
            workflow_variables=variables,
            workflow_input=snapshot.input,
            selected_output_ids=list(snapshot.selected_outputs),
            streaming=stream is not None,
            stream=stream,
            cancel_event=cancel_event or asyncio.Event(),
        )
        result = await executor.execute(ctx)

        if result.status == "cancelled":
            await session.safe_complete_with_cancellation(result)
            logger.info("Workflow execution %s cancelled", snapshot.execution_id)
        elif result.success:
            await session.safe_complete(
                result,
                workflow_input=snapshot.input,
                final_chat_output=(
                    final_chat_output(result) if snapshot.trigger_type == "chat" else None
                ),
            )
            logger.info(
                "Workflow execution %s completed in %dms",
                snapshot.execution_id,
                result.metadata.duration_ms,
            )
        else:
            await session.safe_complete_with_error(result.error or "Execution failed", result)
            logger.info("Workflow execution %s failed: %s", snapshot.execution_id, result.error)
        return result

    except asyncio.CancelledError:
        await asyncio.shield(session.safe_complete_with_cancellation(result))
        raise
    except Exception as e:
        logger.error("Workflow execution %s failed: %s", snapshot.execution_id, e)
        await session.safe_complete_with_error(e, result)
        raise
    finally:
        executor.on_block_complete = previous_hook
