"""
Streaming reconciler.

Sits between the SSE producer and the client. Every record is passed
through unchanged; on the way, chunk content is accumulated, and when the
final event arrives the selected block outputs are folded into one final
chat text which is persisted as the execution's ``final_chat_output``.

Final text = streamed content, then each selected output that adds
something new (formatted; dicts and lists as fenced JSON), joined by blank
lines.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any

from blockflow.runtime.log_store import ExecutionLogStore

RECORD_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class OutputConfig:
    """A block output to surface in the final chat text."""

    block_id: str
    path: str = "content"


def parse_output_ids(output_ids: Iterable[str], block_ids: Iterable[str]) -> list[OutputConfig]:
    """
    Split selected output ids (``<blockId>``, ``<blockId>_<path>``, ``<blockId>.<path>``)
    into OutputConfigs. The longest matching block id wins, so ids containing
    underscores still work.
    """
    known = sorted(block_ids, key=len, reverse=True)
    configs = []
    for output_id in output_ids:
        for block_id in known:
            if output_id == block_id:
                configs.append(OutputConfig(block_id))
                break
            if output_id.startswith((f"{block_id}_", f"{block_id}.")):
                configs.append(OutputConfig(block_id, output_id[len(block_id) + 1 :]))
                break
    return configs


def get_output_value(block_outputs: dict[str, Any], path: str | None) -> Any:
    """Pick a value out of one block's outputs."""
    if not path or path == "content":
        if block_outputs.get("content") is not None:
            return block_outputs["content"]
        if block_outputs.get("result") is not None:
            return block_outputs["result"]
        return block_outputs
    if path in block_outputs:
        return block_outputs[path]
    if "." in path:
        current: Any = block_outputs
        for segment in path.split("."):
            if isinstance(current, dict) and segment in current:
                current = current[segment]
            else:
                return None
        return current
    return None


def format_value(value: Any) -> str | None:
    """Render an output value for chat; None means nothing to show."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        try:
            return f"```json\n{json.dumps(value, indent=2, ensure_ascii=False)}\n```"
        except (TypeError, ValueError):
            return str(value)
    return str(value)


class StreamingReconciler:
    """
    Pass-through SSE transformer that persists the final chat output.

    Example:
        reconciler = StreamingReconciler(store, execution_id, [OutputConfig("agent1")])
        async for record in reconciler.reconcile(stream_execution(...)):
            send(record)
        reconciler.final_text  # what was persisted
    """

    def __init__(
        self,
        store: ExecutionLogStore,
        execution_id: str,
        output_configs: list[OutputConfig] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.execution_id = execution_id
        self.output_configs = list(output_configs or [])
        self.logger = logger or logging.getLogger(__name__)
        self.accumulated = ""
        self.final_text: str | None = None

    async def reconcile(self, source: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """Re-emit every complete SSE record of ``source`` as soon as it is seen."""
        decoder = codecs.getincrementaldecoder("utf-8")()
        buffer = ""

        async for data in source:
            buffer += decoder.decode(data)
            *records, buffer = buffer.split(RECORD_SEPARATOR)
            for record in records:
                await self._inspect(record)
                yield f"{record}{RECORD_SEPARATOR}".encode()

        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            yield buffer.encode()

    async def _inspect(self, record: str) -> None:
        if not record.startswith("data: "):
            return
        payload = record[len("data: ") :].strip()
        if payload == "[DONE]":
            return
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            return
        if not isinstance(message, dict):
            return

        chunk = message.get("chunk")
        if isinstance(chunk, str) and chunk:
            self.accumulated += chunk

        if message.get("event") == "final" and isinstance(message.get("data"), dict):
            self.final_text = self.build_final_text(message["data"].get("output") or {})
            if self.final_text:
                await self._persist(self.final_text)

    def build_final_text(self, outputs: dict[str, Any]) -> str:
        """Streamed content plus every selected output that is not a duplicate."""
        streamed = self.accumulated.strip()
        kept: list[str] = []
        for config in self.output_configs:
            block_outputs = outputs.get(config.block_id)
            if not isinstance(block_outputs, dict):
                continue
            formatted = format_value(get_output_value(block_outputs, config.path))
            if formatted is None:
                continue
            trimmed = formatted.strip()
            if not trimmed or trimmed == streamed:
                continue
            if any(trimmed == previous.strip() for previous in kept):
                continue
            kept.append(formatted)

        if not kept:
            return streamed
        combined = RECORD_SEPARATOR.join(kept)
        return f"{streamed}{RECORD_SEPARATOR}{combined}" if streamed else combined

    async def _persist(self, final_text: str) -> None:
        try:
            await self.store.patch_final_output(self.execution_id, final_text)
            self.logger.debug("Updated final chat output for execution %s", self.execution_id)
        except Exception:
            self.logger.exception(
                "Failed to persist final chat output for %s (non-fatal)", self.execution_id
            )
