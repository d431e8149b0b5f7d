"""Block handler protocol."""

from abc import ABC, abstractmethod
from typing import Any

from blockflow.graph.blocks import BlockConfig, SerializedBlock
from blockflow.graph.context import ExecutionContext


class BlockHandler(ABC):
    """
    Executes one kind of block.

    Handlers receive the block's config with references already resolved
    (condition expressions excepted) and return the block's output dict.
    Raising marks the block failed; the executor decides whether the run
    survives it.
    """

    @abstractmethod
    async def execute(
        self,
        block: SerializedBlock,
        config: BlockConfig,
        ctx: ExecutionContext,
    ) -> dict[str, Any]:
        """Run the block and return its output."""
