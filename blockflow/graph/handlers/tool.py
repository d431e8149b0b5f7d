"""Tool blocks: a single configured tool call."""

import logging
from typing import Any

from blockflow.errors import BlockExecutionError
from blockflow.graph.blocks import SerializedBlock, ToolConfig
from blockflow.graph.context import ExecutionContext
from blockflow.graph.handlers.base import BlockHandler
from blockflow.runner.tool_registry import ToolRegistry


class ToolBlockHandler(BlockHandler):
    def __init__(self, tool_registry: ToolRegistry, logger: logging.Logger | None = None):
        self.tool_registry = tool_registry
        self.logger = logger or logging.getLogger(__name__)

    async def execute(
        self, block: SerializedBlock, config: ToolConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        # Author-supplied params are checked against the tool schema
        result = await self.tool_registry.execute_tool(config.tool, config.params, trusted=False)
        if not result.success:
            raise BlockExecutionError(block.id, result.error or f"Tool '{config.tool}' failed")
        if isinstance(result.output, dict):
            return result.output
        return {"result": result.output}
