"""Tests for the streaming reconciler."""

import json
from unittest.mock import AsyncMock

import pytest

from blockflow.runtime.reconciler import (
    OutputConfig,
    StreamingReconciler,
    format_value,
    get_output_value,
    parse_output_ids,
)
from blockflow.runtime.streaming import encode_sse


async def feed(*pieces: bytes):
    for piece in pieces:
        yield piece


async def drain(reconciler: StreamingReconciler, *pieces: bytes) -> bytes:
    return b"".join([record async for record in reconciler.reconcile(feed(*pieces))])


def final(output: dict) -> bytes:
    return encode_sse({"event": "final", "data": {"success": True, "output": output}})


class TestHelpers:
    def test_parse_output_ids_prefers_longest_block_id(self):
        configs = parse_output_ids(
            ["agent", "agent_1_content", "agent_1.tokens.total", "unknown"],
            ["agent", "agent_1"],
        )
        assert configs == [
            OutputConfig("agent"),
            OutputConfig("agent_1", "content"),
            OutputConfig("agent_1", "tokens.total"),
        ]

    def test_get_output_value(self):
        outputs = {"content": "hi", "tokens": {"total": 3}, "result": 1}
        assert get_output_value(outputs, None) == "hi"
        assert get_output_value({"result": 5}, "content") == 5
        assert get_output_value({"x": 1}, "content") == {"x": 1}
        assert get_output_value(outputs, "tokens.total") == 3
        assert get_output_value(outputs, "tokens.missing") is None
        assert get_output_value(outputs, "nope") is None

    def test_format_value(self):
        assert format_value(None) is None
        assert format_value("text") == "text"
        assert format_value(3) == "3"
        assert format_value({"a": 1}) == '```json\n{\n  "a": 1\n}\n```'


class TestReconcile:
    @pytest.mark.asyncio
    async def test_records_pass_through_unchanged(self):
        store = AsyncMock()
        reconciler = StreamingReconciler(store, "exec-1", [OutputConfig("agent1")])
        records = [
            encode_sse({"blockId": "agent1", "chunk": "Hel"}),
            encode_sse({"blockId": "agent1", "chunk": "lo"}),
            encode_sse({"blockId": "agent1", "event": "end"}),
            final({"agent1": {"content": "Hello"}}),
            encode_sse("[DONE]"),
        ]
        raw = b"".join(records)

        # Reads split records at arbitrary points
        emitted = await drain(reconciler, raw[:7], raw[7:40], raw[40:])

        assert emitted == raw
        assert reconciler.accumulated == "Hello"
        assert reconciler.final_text == "Hello"
        store.patch_final_output.assert_awaited_once_with("exec-1", "Hello")

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_across_reads(self):
        reconciler = StreamingReconciler(AsyncMock(), "exec-1")
        record = f'data: {json.dumps({"blockId": "a", "chunk": "héllo"}, ensure_ascii=False)}\n\n'
        raw = record.encode()
        split = raw.index("é".encode()) + 1

        emitted = await drain(reconciler, raw[:split], raw[split:])

        assert emitted == raw
        assert reconciler.accumulated == "héllo"

    @pytest.mark.asyncio
    async def test_non_streamed_outputs_are_appended(self):
        store = AsyncMock()
        reconciler = StreamingReconciler(
            store,
            "exec-1",
            [OutputConfig("agent1"), OutputConfig("tool1", "data"), OutputConfig("agent2")],
        )

        await drain(
            reconciler,
            encode_sse({"blockId": "agent1", "chunk": "Streamed"}),
            final(
                {
                    "agent1": {"content": "Streamed"},
                    "tool1": {"data": {"rows": 2}},
                    "agent2": {"content": "Second"},
                }
            ),
        )

        assert reconciler.final_text == (
            'Streamed\n\n```json\n{\n  "rows": 2\n}\n```\n\nSecond'
        )

    @pytest.mark.asyncio
    async def test_duplicate_outputs_are_dropped(self):
        reconciler = StreamingReconciler(
            AsyncMock(), "exec-1", [OutputConfig("a"), OutputConfig("b")]
        )

        await drain(reconciler, final({"a": {"content": "same"}, "b": {"content": "same "}}))

        assert reconciler.final_text == "same"

    @pytest.mark.asyncio
    async def test_nothing_to_persist(self):
        store = AsyncMock()
        reconciler = StreamingReconciler(store, "exec-1", [OutputConfig("a")])

        await drain(reconciler, final({}), encode_sse("[DONE]"))

        assert reconciler.final_text == ""
        store.patch_final_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persist_failure_is_not_fatal(self):
        store = AsyncMock()
        store.patch_final_output.side_effect = OSError("read-only")
        reconciler = StreamingReconciler(store, "exec-1", [OutputConfig("a")])
        done = encode_sse("[DONE]")

        emitted = await drain(reconciler, final({"a": {"content": "x"}}), done)

        assert emitted.endswith(done)

    @pytest.mark.asyncio
    async def test_trailing_partial_record_is_flushed(self):
        reconciler = StreamingReconciler(AsyncMock(), "exec-1")

        emitted = await drain(reconciler, b"data: partial")

        assert emitted == b"data: partial"
