"""Tests for the stream channel and SSE producer."""

import asyncio
import json

import pytest

from blockflow.graph.context import ExecutionMetadata, ExecutionResult
from blockflow.runtime.log_schemas import BlockLog
from blockflow.runtime.streaming import (
    StreamChannel,
    StreamChunk,
    encode_sse,
    selected_block_outputs,
    stream_execution,
)


def decode(records: list[bytes]) -> list:
    payloads = []
    for record in records:
        text = record.decode()
        assert text.startswith("data: ") and text.endswith("\n\n")
        body = text[len("data: ") : -2]
        payloads.append(body if body == "[DONE]" else json.loads(body))
    return payloads


def result_with(outputs: dict[str, dict], success: bool = True, error: str | None = None):
    return ExecutionResult(
        success=success,
        error=error,
        logs=[BlockLog(block_id=block_id, output=output) for block_id, output in outputs.items()],
        metadata=ExecutionMetadata(start_time="", end_time=""),
        status="completed" if success else "failed",
    )


class TestStreamChannel:
    @pytest.mark.asyncio
    async def test_chunks_in_order_until_close(self):
        channel = StreamChannel()
        await channel.send("a", "one")
        await channel.send("a", "")
        await channel.end_block("a")
        channel.close()

        chunks = [chunk async for chunk in channel]

        assert chunks == [StreamChunk("a", "one"), StreamChunk("a", end=True)]

    @pytest.mark.asyncio
    async def test_sends_after_close_are_dropped(self):
        channel = StreamChannel()
        channel.close()
        channel.close()
        await channel.send("a", "late")

        assert [chunk async for chunk in channel] == []
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_cancel_drops_queued_chunks(self):
        channel = StreamChannel()
        await channel.send("a", "queued")
        channel.cancel()

        assert [chunk async for chunk in channel] == []


def test_encode_sse():
    assert encode_sse({"a": 1}) == b'data: {"a": 1}\n\n'
    assert encode_sse("[DONE]") == b"data: [DONE]\n\n"


def test_selected_block_outputs_skips_iterations():
    result = ExecutionResult(
        success=True,
        logs=[
            BlockLog(block_id="agent1", output={"content": "inner"}, iteration_index=0),
            BlockLog(block_id="agent1", output={"content": "outer"}),
            BlockLog(block_id="other", output={"content": "x"}),
        ],
        metadata=ExecutionMetadata(start_time="", end_time=""),
    )

    assert selected_block_outputs(result, ["agent1_content"]) == {
        "agent1": {"content": "outer"}
    }


class TestStreamExecution:
    @pytest.mark.asyncio
    async def test_full_stream(self):
        async def run(channel: StreamChannel) -> ExecutionResult:
            await channel.send("agent1", "Hel")
            await channel.send("agent1", "lo")
            await channel.end_block("agent1")
            await channel.send("agent2", "Bye")
            await channel.end_block("agent2")
            return result_with({"agent1": {"content": "Hello"}, "agent2": {"content": "Bye"}})

        records = [r async for r in stream_execution(run, ["agent1", "agent2"])]

        assert decode(records) == [
            {"blockId": "agent1", "chunk": "Hel"},
            {"blockId": "agent1", "chunk": "lo"},
            {"blockId": "agent1", "event": "end"},
            {"blockId": "agent2", "chunk": "\n\n"},
            {"blockId": "agent2", "chunk": "Bye"},
            {"blockId": "agent2", "event": "end"},
            {
                "event": "final",
                "data": {
                    "success": True,
                    "output": {"agent1": {"content": "Hello"}, "agent2": {"content": "Bye"}},
                },
            },
            "[DONE]",
        ]

    @pytest.mark.asyncio
    async def test_failed_run_reports_error(self):
        async def run(channel: StreamChannel) -> ExecutionResult:
            return result_with({}, success=False, error="boom")

        payloads = decode([r async for r in stream_execution(run, [])])

        assert payloads[0] == {
            "event": "final",
            "data": {"success": False, "output": {}, "error": "boom"},
        }

    @pytest.mark.asyncio
    async def test_raising_run_still_ends_stream(self):
        async def run(channel: StreamChannel) -> ExecutionResult:
            await channel.send("a", "partial")
            raise RuntimeError("crashed")

        payloads = decode([r async for r in stream_execution(run, ["a"])])

        assert payloads[-2]["data"] == {"success": False, "output": {}, "error": "crashed"}
        assert payloads[-1] == "[DONE]"

    @pytest.mark.asyncio
    async def test_consumer_leaving_cancels_run(self):
        cancel_event = asyncio.Event()
        finished = asyncio.Event()

        async def run(channel: StreamChannel) -> ExecutionResult:
            await channel.send("a", "first")
            await cancel_event.wait()
            finished.set()
            return result_with({}, success=False)

        stream = stream_execution(run, ["a"], cancel_event=cancel_event)
        first = await stream.__anext__()
        await stream.aclose()

        assert decode([first]) == [{"blockId": "a", "chunk": "first"}]
        assert cancel_event.is_set()
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_consumer_leaving_without_cancel_event_cancels_task(self):
        work: list[int] = []
        cancelled = asyncio.Event()

        async def run(channel: StreamChannel) -> ExecutionResult:
            await channel.send("a", "first")
            try:
                for step in range(5):
                    await asyncio.sleep(0)
                    work.append(step)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return result_with({"a": {"content": "first"}})

        stream = stream_execution(run, ["a"])
        first = await stream.__anext__()
        await stream.aclose()

        assert decode([first]) == [{"blockId": "a", "chunk": "first"}]
        assert work == []
        assert cancelled.is_set()
