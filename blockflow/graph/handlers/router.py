"""Router blocks: let the model pick which downstream block runs next."""

import logging
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import BlockExecutionError, ProviderCallError
from blockflow.graph.blocks import RouterConfig, SerializedBlock
from blockflow.graph.context import ExecutionContext
from blockflow.graph.handlers.base import BlockHandler
from blockflow.graph.handlers.condition import selected_path
from blockflow.graph.references import stringify
from blockflow.graph.tool_loop import call_with_reduced_retry
from blockflow.graph.workflow import normalize_block_name
from blockflow.llm.provider import ProviderError, ProviderRequest
from blockflow.llm.registry import ProviderRegistry
from blockflow.runtime.log_schemas import TokenUsage

ROUTER_SYSTEM_PROMPT = """You are a routing agent. Pick the single best next step for the request.

Available targets:
{targets}

Respond with ONLY the id of the chosen target, nothing else."""


class RouterBlockHandler(BlockHandler):
    def __init__(
        self,
        providers: ProviderRegistry,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.providers = providers
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)

    async def execute(
        self, block: SerializedBlock, config: RouterConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        targets = [
            ctx.workflow.get_block(edge.target)
            for edge in ctx.workflow.outgoing(block.id)
            if not edge.is_error_path and edge.target in ctx.workflow.blocks
        ]
        if not targets:
            raise BlockExecutionError(block.id, "Router has no outgoing targets")

        target_lines = "\n".join(
            f"- id: {t.id}, name: {t.display_name}, type: {t.type}" for t in targets
        )
        prompt = stringify(config.prompt)
        request = ProviderRequest(
            model=config.model or self.config.model,
            system_prompt=ROUTER_SYSTEM_PROMPT.format(targets=target_lines),
            messages=[{"role": "user", "content": prompt}],
            temperature=config.temperature if config.temperature is not None else 0.1,
            api_key=config.api_key or self.config.api_key,
        )

        result = await call_with_reduced_retry(
            self.providers, config.provider, request, self.logger
        )
        if isinstance(result, ProviderError):
            raise ProviderCallError(result)

        choice = result.content.strip().strip("`\"'").strip()
        chosen = next(
            (
                t
                for t in targets
                if choice == t.id
                or (t.name and normalize_block_name(choice) == normalize_block_name(t.name))
            ),
            None,
        )
        if chosen is None:
            raise BlockExecutionError(block.id, f"Invalid routing decision: {choice!r}")

        self.logger.info("Router '%s' chose '%s'", block.display_name, chosen.display_name)
        return {
            "prompt": prompt,
            "model": result.model or request.model,
            "tokens": TokenUsage(
                prompt=result.input_tokens,
                completion=result.output_tokens,
                total=result.total_tokens,
            ).model_dump(),
            "selected_route": chosen.id,
            "selected_path": selected_path(ctx, chosen.id),
        }
