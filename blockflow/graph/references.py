"""
Reference resolution for block configs.

Syntax inside any string value:

- ``<block.path.to[0].value>``: output of a block, by id or normalized name
- ``<loop.index>``, ``<loop.item>``, ``<loop.items>``: innermost loop iteration
- ``<parallel.index>``, ``<parallel.currentItem>``, ``<parallel.items>``
- ``<variable.name>``: workflow variable
- ``<start.input>``: output of the starter block
- ``{{ENV_VAR}}``: environment variable

A string that is exactly one reference resolves to the raw value (keeping
its type); references embedded in text are interpolated. Anything that does
not resolve is left verbatim, so literal text like ``<b>`` survives.
"""

import json
import logging
import re
from typing import Any

from blockflow.graph.context import ExecutionContext, IterationScope
from blockflow.graph.workflow import normalize_block_name

REFERENCE_PATTERN = re.compile(r"<([A-Za-z_][\w\-]*(?:\.[\w\-]+|\[\d+\])*)>")
ENV_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_MISSING = object()

_SCOPE_KEYS = {
    "index": "index",
    "iteration": "index",
    "item": "item",
    "currentitem": "item",
    "items": "items",
}


def split_path(reference: str) -> list[str]:
    """``a.b[0].c`` -> ``['a', 'b', '0', 'c']``."""
    return [part for part in reference.replace("[", ".").replace("]", "").split(".") if part]


def navigate(value: Any, path: list[str]) -> Any:
    """Follow dict keys and list indices; None when the path does not exist."""
    current = value
    for part in path:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value)
    return str(value)


class ReferenceResolver:
    """Resolves references against one ExecutionContext (and its iteration scope)."""

    def __init__(self, ctx: ExecutionContext, logger: logging.Logger | None = None):
        self.ctx = ctx
        self.logger = logger or logging.getLogger(__name__)

    # -- public API -----------------------------------------------------------

    def resolve(self, value: Any) -> Any:
        """Deep-resolve references in strings inside dicts and lists."""
        if isinstance(value, str):
            return self.resolve_string(value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def resolve_string(self, text: str) -> Any:
        text = self._resolve_env(text)

        whole = REFERENCE_PATTERN.fullmatch(text.strip())
        if whole:
            value = self.lookup(whole.group(1))
            if value is not _MISSING:
                return value

        def _sub(match: re.Match) -> str:
            value = self.lookup(match.group(1))
            return match.group(0) if value is _MISSING else stringify(value)

        return REFERENCE_PATTERN.sub(_sub, text)

    def resolve_expression(self, expr: str) -> tuple[str, dict[str, Any]]:
        """
        Prepare an expression for safe_eval.

        Each resolvable reference is replaced by a generated name bound to the
        referenced value, so values never get spliced into source text.
        """
        bindings: dict[str, Any] = {}

        def _bind(value: Any) -> str:
            name = f"ref_{len(bindings)}"
            bindings[name] = value
            return name

        def _sub_ref(match: re.Match) -> str:
            value = self.lookup(match.group(1))
            return match.group(0) if value is _MISSING else _bind(value)

        def _sub_env(match: re.Match) -> str:
            name = match.group(1)
            if name not in self.ctx.env_vars:
                return match.group(0)
            return _bind(self.ctx.env_vars[name])

        expr = ENV_PATTERN.sub(_sub_env, expr)
        return REFERENCE_PATTERN.sub(_sub_ref, expr), bindings

    def lookup(self, reference: str) -> Any:
        """Resolve one reference body (without angle brackets). Returns _MISSING if unknown."""
        head, *path = split_path(reference)
        lowered = head.lower()

        if lowered in ("loop", "parallel"):
            scope = self.ctx.scope.nearest(lowered) if self.ctx.scope else None
            if scope is None:
                return _MISSING
            return self._scope_value(scope, path)

        if lowered in ("variable", "variables"):
            if not path:
                return dict(self.ctx.workflow_variables)
            name = normalize_block_name(path[0])
            if name not in self.ctx.workflow_variables:
                return _MISSING
            return navigate(self.ctx.workflow_variables[name], path[1:])

        if lowered == "start":
            starter = self.ctx.workflow.starter_block()
            if starter is None:
                return _MISSING
            return navigate(self.ctx.get_block_output(starter.id), path)

        block = self.ctx.workflow.find_block(head)
        if block is None:
            return _MISSING

        # <myLoop.index> names a specific enclosing container
        if block.is_container and self.ctx.scope is not None and path:
            scope: IterationScope | None = self.ctx.scope
            while scope is not None and scope.container_id != block.id:
                scope = scope.parent
            if scope is not None and path[0].lower() in _SCOPE_KEYS:
                return self._scope_value(scope, path)

        output = self.ctx.get_block_output(block.id)
        if output is None:
            self.logger.debug("Reference <%s> points at block with no output yet", reference)
            return None
        return navigate(output, path)

    # -- helpers --------------------------------------------------------------

    def _scope_value(self, scope: IterationScope, path: list[str]) -> Any:
        key = _SCOPE_KEYS.get(path[0].lower()) if path else "index"
        if key is None:
            return _MISSING
        value = getattr(scope, key)
        return navigate(value, path[1:])

    def _resolve_env(self, text: str) -> str:
        def _sub(match: re.Match) -> str:
            name = match.group(1)
            if name in self.ctx.env_vars:
                return self.ctx.env_vars[name]
            self.logger.warning("Environment variable '%s' is not set", name)
            return match.group(0)

        return ENV_PATTERN.sub(_sub, text)
