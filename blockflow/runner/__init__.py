"""Tool runtime: registration, discovery and execution of tools."""

from blockflow.runner.tool_registry import ToolExecutionResult, ToolRegistry, tool

__all__ = ["ToolExecutionResult", "ToolRegistry", "tool"]
