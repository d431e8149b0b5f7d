"""Exception hierarchy for the execution engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blockflow.llm.provider import ProviderError


class BlockflowError(Exception):
    """Base class for engine errors."""


class CompilationError(BlockflowError):
    """The workflow graph could not be compiled. Raised before any block runs."""


class BlockExecutionError(BlockflowError):
    """A block handler failed. Contained to the block unless a required output depends on it."""

    def __init__(self, block_id: str, message: str):
        super().__init__(message)
        self.block_id = block_id
        self.message = message


class SubflowError(BlockflowError):
    """A loop or parallel subflow failed validation or one of its iterations failed."""

    def __init__(self, container_id: str, message: str):
        super().__init__(message)
        self.container_id = container_id
        self.message = message


class ProviderCallError(BlockflowError):
    """The provider kept rejecting a request after the reduced-payload retry."""

    def __init__(self, error: ProviderError):
        super().__init__(f"Provider error ({error.kind}): {error.message}")
        self.error = error


class ExecutionCancelled(BlockflowError):
    """The run was cancelled by its caller."""
