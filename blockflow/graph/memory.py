"""
Conversation memory for agent blocks.

An agent block with ``memoryType`` set (anything but "none") remembers the
turns of a chat conversation across runs:

- before the provider call, stored facts are appended to the system prompt
  and earlier turns are appended to the user prompt, newest first until the
  memory token budget is spent
- the user message is stored before the call and the assistant response
  after it, streamed or not

Memory is only used for chat-triggered runs. Store failures are logged and
never fail the block.

Storage layout of the file store::

    {base_path}/
      {conversation_id}.jsonl   # one MemoryMessage per line
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

import litellm

logger = logging.getLogger(__name__)

MemoryType = Literal["conversation", "fact"]

MEMORY_TOKEN_BUFFER_RATIO = 0.6
DEFAULT_MEMORY_TOKEN_LIMIT = 32000
MAX_CONVERSATION_ID_LENGTH = 255
MAX_MESSAGE_CONTENT_BYTES = 100 * 1024

FACTS_HEADER = "Consider these user preferences when you are giving user response -"
HISTORY_HEADER = "Previous conversation:"


@dataclass
class MemoryMessage:
    role: Literal["user", "assistant", "system"]
    content: str
    memory_type: MemoryType = "conversation"
    block_id: str = ""

    def to_llm_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


class MemoryStore(Protocol):
    """Persistence backend for agent memory."""

    async def search(
        self, conversation_id: str, query: str, memory_type: MemoryType
    ) -> list[MemoryMessage]:
        """Memories of one type for a conversation, oldest first."""
        ...

    async def append(self, conversation_id: str, messages: list[MemoryMessage]) -> None: ...


class FileMemoryStore:
    """
    One JSONL file per conversation.

    There is no semantic index: ``search`` ignores the query and returns
    every memory of the requested type in the order it was stored.
    """

    def __init__(self, base_path: Path) -> None:
        self._base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def _path_for(self, conversation_id: str) -> Path:
        return self._base_path / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', conversation_id)}.jsonl"

    async def append(self, conversation_id: str, messages: list[MemoryMessage]) -> None:
        if not messages:
            return
        path = self._path_for(conversation_id)
        lines = "".join(json.dumps(asdict(m), ensure_ascii=False) + "\n" for m in messages)

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(lines)

        async with self._lock:
            await asyncio.to_thread(_append)

    async def search(
        self, conversation_id: str, query: str, memory_type: MemoryType
    ) -> list[MemoryMessage]:
        path = self._path_for(conversation_id)

        def _read() -> list[MemoryMessage]:
            if not path.exists():
                return []
            found = []
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        message = MemoryMessage(**json.loads(line))
                    except (json.JSONDecodeError, TypeError) as e:
                        logger.warning("Skipping corrupt memory line in %s: %s", path, e)
                        continue
                    if message.memory_type == memory_type:
                        found.append(message)
            return found

        return await asyncio.to_thread(_read)


def estimate_tokens(text: str) -> int:
    """Rough ``chars / 4`` token estimate."""
    return len(text) // 4


def get_memory_token_limit(model: str | None) -> int:
    """Share of the model's context window that memory may fill."""
    if not model:
        return DEFAULT_MEMORY_TOKEN_LIMIT
    try:
        context_window = litellm.get_model_info(model).get("max_input_tokens")
    except Exception as e:
        logger.debug("No context window known for %s: %s", model, e)
        return DEFAULT_MEMORY_TOKEN_LIMIT
    if not context_window:
        return DEFAULT_MEMORY_TOKEN_LIMIT
    return int(context_window * MEMORY_TOKEN_BUFFER_RATIO)


def memory_enabled(memory_type: str | None) -> bool:
    return bool(memory_type) and memory_type != "none"


class AgentMemory:
    """Reads and writes the memory of agent blocks through a MemoryStore."""

    def __init__(
        self,
        store: MemoryStore,
        token_limit: int | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.token_limit = token_limit
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def conversation_key(conversation_id: str, fallback: str) -> str:
        if len(conversation_id) > MAX_CONVERSATION_ID_LENGTH:
            raise ValueError(
                f"Conversation ID too long (max {MAX_CONVERSATION_ID_LENGTH} characters)"
            )
        return conversation_id or fallback

    async def facts_prompt(self, key: str, query: str) -> str:
        """The stored facts as a system prompt addendum, or ""."""
        facts = await self._search(key, query, "fact")
        if not facts:
            return ""
        return FACTS_HEADER + "\n" + "\n".join(f"- {fact.content}" for fact in facts)

    async def history(self, key: str, query: str, model: str | None) -> list[MemoryMessage]:
        """Earlier turns that fit the token budget, oldest first."""
        turns = await self._search(key, query, "conversation")
        limit = self.token_limit if self.token_limit is not None else get_memory_token_limit(model)
        used = estimate_tokens(query)
        kept: list[MemoryMessage] = []
        for turn in reversed(turns):
            tokens = estimate_tokens(_history_line(turn))
            if used + tokens > limit:
                self.logger.debug(
                    "Memory token limit reached (%d); kept %d of %d turns",
                    limit,
                    len(kept),
                    len(turns),
                )
                break
            kept.append(turn)
            used += tokens
        kept.reverse()
        return kept

    async def remember(self, key: str, block_id: str, role: str, content: str) -> None:
        """Store one conversation turn. Never raises."""
        if not content.strip():
            return
        size = len(content.encode("utf-8"))
        if size > MAX_MESSAGE_CONTENT_BYTES:
            self.logger.warning(
                "Not storing %s message of %d bytes (max %d)",
                role,
                size,
                MAX_MESSAGE_CONTENT_BYTES,
            )
            return
        try:
            await self.store.append(
                key, [MemoryMessage(role=role, content=content, block_id=block_id)]
            )
        except Exception as e:
            self.logger.warning("Failed to store %s message in memory: %s", role, e)

    async def _search(self, key: str, query: str, memory_type: MemoryType) -> list[MemoryMessage]:
        try:
            return await self.store.search(key, query, memory_type)
        except Exception as e:
            self.logger.error("Failed to search %s memories: %s", memory_type, e)
            return []


def render_history(turns: list[MemoryMessage]) -> str:
    """History as text appended to the user prompt."""
    if not turns:
        return ""
    return f"\n\n{HISTORY_HEADER}\n" + "\n".join(_history_line(turn) for turn in turns)


def _history_line(turn: MemoryMessage) -> str:
    speaker = "User" if turn.role == "user" else "Assistant"
    return f"{speaker}: {turn.content}"
