"""Workflow graph: data model, compiler, execution context and executor."""

from blockflow.graph.blocks import (
    AgentConfig,
    AgentTool,
    Block,
    BlockConfig,
    BlockType,
    ConditionConfig,
    RouterConfig,
    SerializedBlock,
    StarterConfig,
    SubBlockState,
    ToolConfig,
)
from blockflow.graph.compiler import (
    WorkflowCompiler,
    merge_subblock_values,
    normalize_workflow_variables,
    parse_variable_value_by_type,
)
from blockflow.graph.context import (
    ExecutionContext,
    ExecutionMetadata,
    ExecutionResult,
    IterationScope,
)
from blockflow.graph.edge import Edge, EdgeHandle
from blockflow.graph.executor import GraphExecutor
from blockflow.graph.references import ReferenceResolver
from blockflow.graph.safe_eval import safe_eval
from blockflow.graph.subflow import LoopSpec, ParallelSpec
from blockflow.graph.tool_loop import ToolCallLoop, ToolLoopResult
from blockflow.graph.workflow import SerializedWorkflow

__all__ = [
    # Data model
    "AgentConfig",
    "AgentTool",
    "Block",
    "BlockConfig",
    "BlockType",
    "ConditionConfig",
    "Edge",
    "EdgeHandle",
    "LoopSpec",
    "ParallelSpec",
    "RouterConfig",
    "SerializedBlock",
    "SerializedWorkflow",
    "StarterConfig",
    "SubBlockState",
    "ToolConfig",
    # Compilation
    "WorkflowCompiler",
    "merge_subblock_values",
    "normalize_workflow_variables",
    "parse_variable_value_by_type",
    # Execution
    "ExecutionContext",
    "ExecutionMetadata",
    "ExecutionResult",
    "GraphExecutor",
    "IterationScope",
    "ReferenceResolver",
    "ToolCallLoop",
    "ToolLoopResult",
    "safe_eval",
]
