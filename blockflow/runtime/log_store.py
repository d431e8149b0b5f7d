"""File-based storage for execution logs.

Each execution gets its own directory. Entries are appended to a JSONL log
as they happen (crash resilient: data is on disk as soon as it's logged),
and folded into a record.json snapshot that always reflects the latest
state of the run.

Storage layout::

    {base_path}/
      {execution_id}/
        log.jsonl      # appended per entry
        record.json    # rewritten atomically per entry

Folding is serialised per execution, so concurrent writers (the logging
session and the streaming reconciler) never lose each other's fields. A
field written twice keeps the last value.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from pathlib import Path
from typing import Any, Protocol

from blockflow.runtime.log_schemas import ExecutionLogEntry, ExecutionRecord

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "start": "running",
    "complete": "completed",
    "error": "failed",
    "cancelled": "cancelled",
}


class ExecutionLogStore(Protocol):
    """Persistence used by the logging session and the streaming reconciler."""

    async def append_execution_log(self, execution_id: str, entry: ExecutionLogEntry) -> None:
        ...

    async def patch_final_output(self, execution_id: str, final_output: str) -> None:
        ...

    async def load_record(self, execution_id: str) -> ExecutionRecord | None:
        ...

    async def load_entries(self, execution_id: str) -> list[ExecutionLogEntry]:
        ...


def fold_entry(record: ExecutionRecord | None, entry: ExecutionLogEntry) -> ExecutionRecord:
    """Apply one log entry to the record snapshot."""
    current = record.model_dump() if record else {"execution_id": entry.execution_id}
    if entry.kind == "block":
        current["block_count"] = current.get("block_count", 0) + 1
        return ExecutionRecord.model_validate(current)

    updates: dict[str, Any] = {
        key: value for key, value in entry.data.items() if key in ExecutionRecord.model_fields
    }
    if entry.kind in _STATUS_BY_KIND:
        updates["status"] = _STATUS_BY_KIND[entry.kind]
    return ExecutionRecord.model_validate({**current, **updates})


class FileExecutionLogStore:
    """Persists execution logs under one directory per execution."""

    def __init__(self, base_path: Path) -> None:
        self._base_path = Path(base_path)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _get_execution_dir(self, execution_id: str) -> Path:
        return self._base_path / execution_id

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        return self._locks.setdefault(execution_id, asyncio.Lock())

    # -------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------

    async def append_execution_log(self, execution_id: str, entry: ExecutionLogEntry) -> None:
        """Append the entry to log.jsonl and fold it into record.json."""
        execution_dir = self._get_execution_dir(execution_id)
        line = json.dumps(entry.model_dump(), ensure_ascii=False, default=str) + "\n"

        def _append() -> None:
            execution_dir.mkdir(parents=True, exist_ok=True)
            with open(execution_dir / "log.jsonl", "a", encoding="utf-8") as f:
                f.write(line)

        async with self._lock_for(execution_id):
            await asyncio.to_thread(_append)
            record = await self.load_record(execution_id)
            record = fold_entry(record, entry)
            await self._write_json(
                execution_dir / "record.json", record.model_dump(mode="json")
            )

    async def patch_final_output(self, execution_id: str, final_output: str) -> None:
        """Overwrite the record's final chat output."""
        await self.append_execution_log(
            execution_id,
            ExecutionLogEntry(
                execution_id=execution_id,
                kind="final_output",
                data={"final_chat_output": final_output},
            ),
        )

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_record(self, execution_id: str) -> ExecutionRecord | None:
        data = await self._read_json(self._get_execution_dir(execution_id) / "record.json")
        return ExecutionRecord.model_validate(data) if data is not None else None

    async def load_entries(self, execution_id: str) -> list[ExecutionLogEntry]:
        """Every entry of an execution in append order. Skips corrupt lines."""
        path = self._get_execution_dir(execution_id) / "log.jsonl"
        return await asyncio.to_thread(_read_jsonl_as_models, path, ExecutionLogEntry)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    @staticmethod
    async def _write_json(path: Path, data: dict) -> None:
        """Write JSON atomically: write to .tmp then rename."""
        tmp = path.with_suffix(".tmp")
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        def _write() -> None:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    @staticmethod
    async def _read_json(path: Path) -> dict | None:
        """Read and parse a JSON file. Returns None if missing or corrupt."""

        def _read() -> dict | None:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)


def _read_jsonl_as_models(path: Path, model_cls: type) -> list:
    """Parse a JSONL file into a list of Pydantic model instances.

    Skips blank lines and corrupt JSON lines (partial writes from crashes).
    """
    results = []
    if not path.exists():
        return results
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(model_cls.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results
