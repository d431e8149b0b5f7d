"""LoggingSession: brackets one workflow run in the execution log store.

Usage::

    session = LoggingSession(store, workflow_id="wf", execution_id="exec-1")
    await session.safe_start(user_id="u1", workspace_id="ws1")
    executor = GraphExecutor(..., on_block_complete=session.safe_on_block_complete)
    result = await executor.execute(ctx)
    await session.safe_complete(result)

Safety: every ``safe_*`` method catches all exceptions internally and logs
them via the Python logger. Logging failure must never kill a run. A run is
completed at most once; later completion calls are ignored.
"""

from __future__ import annotations

import logging
from typing import Any

from blockflow.graph.context import ExecutionResult
from blockflow.runtime.log_schemas import BlockLog, ExecutionLogEntry, now_iso
from blockflow.runtime.log_store import ExecutionLogStore
from blockflow.runtime.trace_spans import build_trace_spans


class LoggingSession:
    """Persists the lifecycle of one execution: start, block logs, completion."""

    def __init__(
        self,
        store: ExecutionLogStore,
        workflow_id: str,
        execution_id: str,
        trigger_type: str = "manual",
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.workflow_id = workflow_id
        self.execution_id = execution_id
        self.trigger_type = trigger_type
        self.logger = logger or logging.getLogger(__name__)
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    async def _append(self, kind: str, data: dict[str, Any]) -> None:
        entry = ExecutionLogEntry(execution_id=self.execution_id, kind=kind, data=data)
        await self.store.append_execution_log(self.execution_id, entry)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def start(
        self,
        user_id: str = "",
        workspace_id: str = "",
        variables: dict[str, Any] | None = None,
        initial_input: Any = None,
    ) -> None:
        """Record run metadata before any block executes."""
        await self._append(
            "start",
            {
                "workflow_id": self.workflow_id,
                "workspace_id": workspace_id,
                "user_id": user_id,
                "trigger_type": self.trigger_type,
                "started_at": now_iso(),
                "initial_input": initial_input,
                "variables": variables or {},
            },
        )
        self.logger.debug("Started logging for execution %s", self.execution_id)

    async def on_block_complete(self, log: BlockLog) -> None:
        await self._append("block", log.model_dump(mode="json"))

    async def complete(
        self,
        result: ExecutionResult,
        workflow_input: Any = None,
        final_chat_output: str | None = None,
    ) -> None:
        """Record a finished run with its final output and trace spans."""
        if not self._claim_completion("complete"):
            return
        data = self._completion_data(result)
        data["final_output"] = result.output
        data["workflow_input"] = workflow_input
        if final_chat_output is not None:
            data["final_chat_output"] = final_chat_output
        await self._append("complete", data)

    async def complete_with_error(
        self, error: BaseException | str, result: ExecutionResult | None = None
    ) -> None:
        """Record a failed run. ``result`` is the partial result, when one exists."""
        if not self._claim_completion("complete_with_error"):
            return
        data = self._completion_data(result)
        if isinstance(error, BaseException):
            data["error"] = {
                "message": str(error) or type(error).__name__,
                "type": type(error).__name__,
            }
        else:
            data["error"] = {"message": error}
        if result is not None:
            data["final_output"] = result.output
        await self._append("error", data)

    async def complete_with_cancellation(self, result: ExecutionResult | None = None) -> None:
        if not self._claim_completion("complete_with_cancellation"):
            return
        await self._append("cancelled", self._completion_data(result))

    # -------------------------------------------------------------------
    # Safe wrappers
    # -------------------------------------------------------------------

    async def safe_start(self, **kwargs: Any) -> None:
        try:
            await self.start(**kwargs)
        except Exception:
            self.logger.exception("Failed to start execution log %s (non-fatal)", self.execution_id)

    async def safe_on_block_complete(self, log: BlockLog) -> None:
        try:
            await self.on_block_complete(log)
        except Exception:
            self.logger.exception("Failed to log block %s (non-fatal)", log.block_id)

    async def safe_complete(self, result: ExecutionResult, **kwargs: Any) -> None:
        try:
            await self.complete(result, **kwargs)
        except Exception:
            self.logger.exception(
                "Failed to complete execution log %s (non-fatal)", self.execution_id
            )

    async def safe_complete_with_error(
        self, error: BaseException | str, result: ExecutionResult | None = None
    ) -> None:
        try:
            await self.complete_with_error(error, result)
        except Exception:
            self.logger.exception(
                "Failed to record error for execution %s (non-fatal)", self.execution_id
            )

    async def safe_complete_with_cancellation(self, result: ExecutionResult | None = None) -> None:
        try:
            await self.complete_with_cancellation(result)
        except Exception:
            self.logger.exception(
                "Failed to record cancellation for execution %s (non-fatal)", self.execution_id
            )

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _claim_completion(self, operation: str) -> bool:
        if self._completed:
            self.logger.debug(
                "Execution %s already completed; ignoring %s", self.execution_id, operation
            )
            return False
        self._completed = True
        return True

    @staticmethod
    def _completion_data(result: ExecutionResult | None) -> dict[str, Any]:
        data: dict[str, Any] = {"ended_at": now_iso()}
        if result is None:
            data["total_duration_ms"] = 0
            data["trace_spans"] = []
            return data
        spans, total_ms = build_trace_spans(result)
        data["total_duration_ms"] = total_ms
        data["trace_spans"] = [span.model_dump(mode="json") for span in spans]
        return data
