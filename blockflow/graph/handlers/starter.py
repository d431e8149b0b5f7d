"""Entry-point blocks: the starter and external triggers."""

from typing import Any

from blockflow.graph.blocks import SerializedBlock, StarterConfig, TriggerConfig
from blockflow.graph.compiler import parse_variable_value_by_type
from blockflow.graph.context import ExecutionContext
from blockflow.graph.handlers.base import BlockHandler


class StarterBlockHandler(BlockHandler):
    """Exposes the workflow input, with declared input-format defaults filled in."""

    async def execute(
        self, block: SerializedBlock, config: StarterConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        output: dict[str, Any] = {}
        for field in config.input_format:
            if field.value is not None:
                output[field.name] = parse_variable_value_by_type(field.value, field.type)

        workflow_input = ctx.workflow_input
        if isinstance(workflow_input, dict):
            output.update(workflow_input)
        output["input"] = workflow_input
        return output


class TriggerBlockHandler(BlockHandler):
    """Webhook and schedule triggers pass their payload through."""

    async def execute(
        self, block: SerializedBlock, config: TriggerConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        payload = ctx.workflow_input
        if isinstance(payload, dict):
            return {**payload, "input": payload}
        return {"input": payload}
