"""
Safe expression evaluation for condition blocks and while-loops.

Expressions are parsed with ``ast`` and walked against an allowlist:
literals, names bound in the context, boolean logic, comparisons,
arithmetic, indexing, attribute access (dict keys or a handful of string
methods), and calls to a fixed set of builtins. Anything else is rejected
with ValueError before evaluation. Exponents and repeated strings or lists
are capped so a single expression cannot exhaust memory or CPU.

The common JavaScript spellings authors paste from the editor (``===``,
``!==``, ``&&``, ``||``, ``!``, ``true``/``false``/``null``) are accepted.
"""

import ast
import operator
import re
from collections.abc import Mapping, Sequence
from typing import Any

MAX_EXPONENT = 100
MAX_INT_BITS = 10_000
MAX_SEQUENCE_LENGTH = 10_000


def _safe_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise ValueError(f"Exponent too large (max {MAX_EXPONENT})")
    if (
        isinstance(base, int)
        and isinstance(exponent, int)
        and base.bit_length() * exponent > MAX_INT_BITS
    ):
        raise ValueError("Result of exponentiation too large")
    try:
        return operator.pow(base, exponent)
    except OverflowError as e:
        raise ValueError(f"Result of exponentiation too large: {e}") from e


def _safe_mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if (
            isinstance(seq, (str, list, tuple))
            and isinstance(count, int)
            and len(seq) * count > MAX_SEQUENCE_LENGTH
        ):
            raise ValueError(f"Repeated sequence too long (max {MAX_SEQUENCE_LENGTH})")
    return operator.mul(left, right)


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: _safe_pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}

SAFE_METHODS = frozenset(
    {
        "lower",
        "upper",
        "strip",
        "startswith",
        "endswith",
        "includes",
        "get",
        "keys",
        "values",
    }
)

LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

_MAX_DEPTH = 100

_JS_TOKENS = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')|(===|!==|&&|\|\||!(?!=))")
_JS_REPLACEMENTS = {"===": "==", "!==": "!=", "&&": " and ", "||": " or ", "!": " not "}


def normalize_expression(expr: str) -> str:
    """Rewrite JavaScript operators into Python, leaving string literals alone."""

    def _sub(match: re.Match) -> str:
        if match.group(1):
            return match.group(1)
        return _JS_REPLACEMENTS[match.group(2)]

    return _JS_TOKENS.sub(_sub, expr).strip()


def _call_method(target: Any, name: str, args: list[Any]) -> Any:
    if name == "includes":
        return args[0] in target
    if name == "get" and isinstance(target, Mapping):
        return target.get(*args)
    if name in ("keys", "values") and isinstance(target, Mapping):
        return list(getattr(target, name)())
    if isinstance(target, str) and name in ("lower", "upper", "strip", "startswith", "endswith"):
        return getattr(target, name)(*args)
    raise ValueError(f"Method '{name}' is not permitted on {type(target).__name__}")


class _Evaluator:
    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def eval(self, node: ast.AST, depth: int = 0) -> Any:
        if depth > _MAX_DEPTH:
            raise ValueError("Expression too deeply nested")
        d = depth + 1

        if isinstance(node, ast.Expression):
            return self.eval(node.body, d)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in self.names:
                return self.names[node.id]
            if node.id in LITERALS:
                return LITERALS[node.id]
            raise ValueError(f"Unknown name '{node.id}'")

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self.eval(value, d)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.eval(value, d)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand, d)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            raise ValueError("Unsupported unary operator")

        if isinstance(node, ast.BinOp):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise ValueError("Unsupported binary operator")
            return op(self.eval(node.left, d), self.eval(node.right, d))

        if isinstance(node, ast.Compare):
            left = self.eval(node.left, d)
            for op_node, comparator in zip(node.ops, node.comparators, strict=True):
                op = _CMP_OPS.get(type(op_node))
                if op is None:
                    raise ValueError("Unsupported comparison")
                right = self.eval(comparator, d)
                try:
                    if not op(left, right):
                        return False
                except TypeError as e:
                    raise ValueError(f"Cannot compare: {e}") from e
                left = right
            return True

        if isinstance(node, ast.IfExp):
            return self.eval(node.body, d) if self.eval(node.test, d) else self.eval(node.orelse, d)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ValueError(f"Access to '{node.attr}' is not permitted")
            target = self.eval(node.value, d)
            if isinstance(target, Mapping):
                return target.get(node.attr)
            if node.attr == "length" and isinstance(target, (Sequence, str)):
                return len(target)
            raise ValueError(f"Attribute access '{node.attr}' is not permitted")

        if isinstance(node, ast.Call):
            if node.keywords:
                raise ValueError("Keyword arguments are not permitted")
            args = [self.eval(arg, d) for arg in node.args]
            if isinstance(node.func, ast.Name):
                func = SAFE_FUNCTIONS.get(node.func.id)
                if func is None:
                    raise ValueError(f"Function '{node.func.id}' is not permitted")
                return func(*args)
            if isinstance(node.func, ast.Attribute) and node.func.attr in SAFE_METHODS:
                return _call_method(self.eval(node.func.value, d), node.func.attr, args)
            raise ValueError("Call target is not permitted")

        if isinstance(node, ast.Subscript):
            target = self.eval(node.value, d)
            index = self.eval(node.slice, d)
            if not isinstance(target, (Mapping, Sequence, str)):
                raise ValueError("Subscript targets must be sequences or mappings")
            try:
                return target[index]
            except (KeyError, IndexError, TypeError) as e:
                raise ValueError(f"Invalid subscript access: {e}") from e

        if isinstance(node, (ast.List, ast.Tuple)):
            values = [self.eval(elt, d) for elt in node.elts]
            return values if isinstance(node, ast.List) else tuple(values)

        if isinstance(node, ast.Dict):
            return {
                self.eval(k, d): self.eval(v, d)
                for k, v in zip(node.keys, node.values, strict=True)
                if k is not None
            }

        raise ValueError(f"Unsupported expression: {type(node).__name__}")


def safe_eval(expr: str, context: Mapping[str, Any] | None = None) -> Any:
    """
    Evaluate an expression against a context of names.

    Examples:
        safe_eval("output.score > 0.8", {"output": {"score": 0.9}})  # True
        safe_eval("status === 'done' && count > 2", {"status": "done", "count": 3})

    Raises:
        ValueError: the expression is malformed or uses a disallowed construct.
    """
    source = normalize_expression(expr)
    if not source:
        raise ValueError("Empty expression")
    try:
        parsed = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {e.msg}") from e
    return _Evaluator(context or {}).eval(parsed)
