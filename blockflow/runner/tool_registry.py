"""Tool discovery, registration and execution."""

import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from blockflow.llm.provider import Tool
from blockflow.runner.http_tool import HttpToolExecutor, HttpToolSpec


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: Tool
    executor: Callable[[dict], Any]


@dataclass
class ToolExecutionResult:
    """Outcome of one tool execution. The registry never raises for tool failures."""

    success: bool
    output: Any = None
    error: str | None = None


def validate_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> list[str]:
    """Validate tool arguments against a JSON schema. Returns error messages."""
    if not schema:
        return []
    try:
        validator = Draft7Validator(schema)
    except SchemaError as e:
        return [f"Invalid tool schema: {e.message}"]
    errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
    messages = []
    for error in errors:
        location = ".".join(str(p) for p in error.path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages


class ToolRegistry:
    """
    Manages tool registration and execution.

    Tool sources:
    1. Manually registered tools and plain functions
    2. HTTP endpoints
    3. tools.py modules (TOOLS dict or @tool functions)

    The registry is a read-only lookup during a run; concurrent parallel
    branches share it.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._tools: dict[str, RegisteredTool] = {}
        self.logger = logger or logging.getLogger(__name__)

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Sync or async callable taking the input dict
        """
        self._tools[name] = RegisteredTool(tool=tool, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, generating the schema from its signature.

        Args:
            func: Function to register (sync or async)
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties = {}
        required = []

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue

            param_type = "string"
            if param.annotation != inspect.Parameter.empty:
                if param.annotation is int:
                    param_type = "integer"
                elif param.annotation is float:
                    param_type = "number"
                elif param.annotation is bool:
                    param_type = "boolean"
                elif param.annotation is dict:
                    param_type = "object"
                elif param.annotation is list:
                    param_type = "array"

            properties[param_name] = {"type": param_type}

            if param.default == inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc,
            parameters={
                "type": "object",
                "properties": properties,
                "required": required,
            },
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor)

    def register_http_tool(
        self,
        name: str,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        description: str = "",
        parameters: dict[str, Any] | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        """Register a tool that calls an HTTP endpoint."""
        spec = HttpToolSpec(url=url, method=method, headers=headers or {})
        tool = Tool(
            name=name,
            description=description or f"{method.upper()} {url}",
            parameters=parameters or {"type": "object", "properties": {}},
        )
        self.register(name, tool, HttpToolExecutor(spec, client_factory=client_factory))

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load tools from a Python module file.

        Looks for:
        - TOOLS: dict[str, Tool] - tool definitions
        - tool_executor(name, inputs) - unified executor for TOOLS
        - Functions decorated with @tool

        Returns:
            Number of tools discovered
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("workflow_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0

        if hasattr(module, "TOOLS"):
            executor_func = getattr(module, "tool_executor", None)
            for name, tool in module.TOOLS.items():
                if executor_func is None:
                    self.logger.warning("Tool '%s' has no tool_executor; skipping", name)
                    continue

                def make_executor(tool_name: str) -> Callable[[dict], Any]:
                    def executor(inputs: dict) -> Any:
                        return executor_func(tool_name, inputs)

                    return executor

                self.register(name, tool, make_executor(name))
                count += 1

        for name in dir(module):
            obj = getattr(module, name)
            if callable(obj) and hasattr(obj, "_tool_metadata"):
                metadata = obj._tool_metadata
                self.register_function(
                    obj,
                    name=metadata.get("name", name),
                    description=metadata.get("description"),
                )
                count += 1

        return count

    def get_tools(self) -> dict[str, Tool]:
        """Get all registered Tool objects."""
        return {name: rt.tool for name, rt in self._tools.items()}

    def get_tool(self, name: str) -> Tool | None:
        registered = self._tools.get(name)
        return registered.tool if registered else None

    def get_registered_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    async def execute_tool(
        self,
        name: str,
        args: dict[str, Any],
        trusted: bool = False,
    ) -> ToolExecutionResult:
        """
        Execute a registered tool.

        Untrusted calls (tool blocks configured by a workflow author) have
        their arguments validated against the tool's schema first. Calls
        issued by the tool-call loop are trusted: the model's arguments go
        straight to the tool, which reports its own errors.
        """
        registered = self._tools.get(name)
        if registered is None:
            return ToolExecutionResult(success=False, error=f"Unknown tool: {name}")

        if not trusted:
            problems = validate_arguments(registered.tool.parameters, args)
            if problems:
                return ToolExecutionResult(
                    success=False,
                    error=f"Invalid arguments for tool '{name}': {'; '.join(problems)}",
                )

        try:
            result = registered.executor(args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.logger.warning("Tool '%s' failed: %s", name, e)
            return ToolExecutionResult(success=False, error=str(e))

        if isinstance(result, ToolExecutionResult):
            return result
        return ToolExecutionResult(success=True, output=result)


def tool(
    description: str | None = None,
    name: str | None = None,
) -> Callable:
    """
    Decorator to mark a function as a tool for module discovery.

    Usage:
        @tool(description="Look up an order by id")
        def lookup_order(order_id: str) -> dict:
            return {"status": "shipped"}
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
