"""
Blockflow - a workflow execution engine.

Compiles block/edge/subflow graphs into immutable workflows and runs them
against LLM providers and tools, streaming results and persisting a
replayable execution trace.
"""

from blockflow.errors import (
    BlockExecutionError,
    BlockflowError,
    CompilationError,
    ExecutionCancelled,
    ProviderCallError,
    SubflowError,
)
from blockflow.graph.compiler import WorkflowCompiler
from blockflow.graph.context import BlockLog, ExecutionContext, ExecutionResult
from blockflow.graph.executor import GraphExecutor
from blockflow.graph.workflow import SerializedWorkflow

__all__ = [
    "BlockExecutionError",
    "BlockLog",
    "BlockflowError",
    "CompilationError",
    "ExecutionCancelled",
    "ExecutionContext",
    "ExecutionResult",
    "GraphExecutor",
    "ProviderCallError",
    "SerializedWorkflow",
    "SubflowError",
    "WorkflowCompiler",
]
