"""
Streaming channel and SSE producer.

Agent blocks push content chunks into a StreamChannel; ``stream_execution``
drains it while the run is in flight and turns it into Server-Sent Events::

    data: {"blockId": "agent1", "chunk": "Hel"}
    data: {"blockId": "agent1", "chunk": "lo"}
    data: {"blockId": "agent1", "event": "end"}
    data: {"event": "final", "data": {"success": true, "output": {...}}}
    data: [DONE]

Every record ends with a blank line.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from blockflow.graph.context import ExecutionResult, selects_block

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class StreamChunk:
    block_id: str
    content: str = ""
    end: bool = False


class StreamChannel:
    """
    Cancellable async iterator of StreamChunks.

    Producers call ``send`` and ``end_block``; the run's driver calls
    ``close`` when the run finishes. ``cancel`` stops iteration early and
    makes further sends no-ops.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, block_id: str, content: str) -> None:
        if self._closed or not content:
            return
        await self._queue.put(StreamChunk(block_id=block_id, content=content))

    async def end_block(self, block_id: str) -> None:
        if self._closed:
            return
        await self._queue.put(StreamChunk(block_id=block_id, end=True))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def cancel(self) -> None:
        """Stop iteration now, dropping anything still queued."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self.close()

    def __aiter__(self) -> "StreamChannel":
        return self

    async def __anext__(self) -> StreamChunk:
        chunk = await self._queue.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


def encode_sse(payload: Any) -> bytes:
    """One SSE ``data:`` record."""
    body = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return f"data: {body}\n\n".encode()


def selected_block_outputs(
    result: ExecutionResult, selected_output_ids: list[str]
) -> dict[str, dict[str, Any]]:
    """Top-level outputs of the blocks named by selected output ids, keyed by block id."""
    outputs: dict[str, dict[str, Any]] = {}
    for log in result.logs:
        if log.iteration_index is None and any(
            selects_block(o, log.block_id) for o in selected_output_ids
        ):
            outputs[log.block_id] = log.output
    return outputs


async def stream_execution(
    run: Callable[[StreamChannel], Awaitable[ExecutionResult]],
    selected_output_ids: list[str],
    *,
    cancel_event: asyncio.Event | None = None,
) -> AsyncIterator[bytes]:
    """
    Run a workflow and yield its SSE byte stream.

    ``run`` receives the channel to stream into and returns the run's
    result. If the consumer stops reading early, the run is cancelled
    (through ``cancel_event`` when given, otherwise by cancelling its task)
    and awaited, so its persistence can finish.
    """
    channel = StreamChannel()

    async def _drive() -> ExecutionResult:
        try:
            return await run(channel)
        finally:
            channel.close()

    task = asyncio.create_task(_drive())
    finished = False
    try:
        current_block: str | None = None
        async for chunk in channel:
            if chunk.end:
                yield encode_sse({"blockId": chunk.block_id, "event": "end"})
                continue
            if current_block is not None and chunk.block_id != current_block:
                yield encode_sse({"blockId": chunk.block_id, "chunk": BLOCK_SEPARATOR})
            current_block = chunk.block_id
            yield encode_sse({"blockId": chunk.block_id, "chunk": chunk.content})

        data: dict[str, Any]
        try:
            result = await task
        except Exception as e:
            logger.error("Streamed run failed: %s", e)
            data = {"success": False, "output": {}, "error": str(e) or type(e).__name__}
        else:
            data = {
                "success": result.success,
                "output": selected_block_outputs(result, selected_output_ids),
            }
            if result.error:
                data["error"] = result.error
        yield encode_sse({"event": "final", "data": data})
        yield encode_sse("[DONE]")
        finished = True
    finally:
        if not finished and not task.done():
            logger.info("Stream consumer went away; cancelling the run")
            channel.cancel()
            if cancel_event is not None:
                cancel_event.set()
            else:
                task.cancel()
            outcome = (await asyncio.gather(task, return_exceptions=True))[0]
            if isinstance(outcome, Exception):
                logger.warning("Run ended with an error after stream close: %s", outcome)
