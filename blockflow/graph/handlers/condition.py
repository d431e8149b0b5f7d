"""Condition blocks: pick the first branch whose expression holds."""

import logging
from typing import Any

from blockflow.errors import BlockExecutionError
from blockflow.graph.blocks import ConditionBranch, ConditionConfig, SerializedBlock
from blockflow.graph.context import ExecutionContext
from blockflow.graph.handlers.base import BlockHandler
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.safe_eval import safe_eval


def selected_path(ctx: ExecutionContext, target_id: str | None) -> dict | None:
    """Describe the block a branching block chose, as shown in block outputs."""
    if target_id is None or target_id not in ctx.workflow.blocks:
        return None
    target = ctx.workflow.get_block(target_id)
    return {
        "block_id": target.id,
        "block_type": str(target.type),
        "block_title": target.display_name,
    }


class ConditionBlockHandler(BlockHandler):
    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    async def execute(
        self, block: SerializedBlock, config: ConditionConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        resolver = ReferenceResolver(ctx, logger=self.logger)

        for branch in config.conditions:
            if self._matches(block, branch, resolver):
                target = next(
                    (
                        e.target
                        for e in ctx.workflow.outgoing(block.id)
                        if e.condition_id == branch.id
                    ),
                    None,
                )
                return {
                    "condition_result": True,
                    "selected_condition": branch.id,
                    "selected_path": selected_path(ctx, target),
                }

        self.logger.info("No branch of condition '%s' matched", block.display_name)
        return {"condition_result": False, "selected_condition": None, "selected_path": None}

    def _matches(
        self, block: SerializedBlock, branch: ConditionBranch, resolver: ReferenceResolver
    ) -> bool:
        if branch.is_else:
            return True
        if not branch.value.strip():
            return False
        expr, bindings = resolver.resolve_expression(branch.value)
        try:
            return bool(safe_eval(expr, bindings))
        except ValueError as e:
            raise BlockExecutionError(
                block.id, f"Invalid condition '{branch.value}': {e}"
            ) from e
