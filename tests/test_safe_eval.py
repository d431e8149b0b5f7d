"""Tests for the allowlisted expression evaluator."""

import pytest

from blockflow.graph.safe_eval import normalize_expression, safe_eval


class TestSafeEval:
    @pytest.mark.parametrize(
        ("expr", "context", "expected"),
        [
            ("1 + 2 * 3", {}, 7),
            ("x > 5 and x < 10", {"x": 7}, True),
            ("output.score >= 0.8", {"output": {"score": 0.9}}, True),
            ("items[1]", {"items": ["a", "b"]}, "b"),
            ("len(items) == 2", {"items": [1, 2]}, True),
            ("name.lower() == 'bob'", {"name": "BOB"}, True),
            ("'x' if flag else 'y'", {"flag": False}, "y"),
            ("data.missing", {"data": {}}, None),
            ("items.length", {"items": [1, 2, 3]}, 3),
            ("tags.includes('urgent')", {"tags": ["urgent"]}, True),
        ],
    )
    def test_evaluates(self, expr, context, expected):
        assert safe_eval(expr, context) == expected

    def test_javascript_operators(self):
        context = {"status": "done", "count": 3, "blocked": False}
        assert safe_eval("status === 'done' && count > 2", context) is True
        assert safe_eval("status !== 'done' || !blocked", context) is True
        assert safe_eval("value === null", {"value": None}) is True
        assert safe_eval("true && false") is False

    def test_operators_inside_strings_are_untouched(self):
        assert normalize_expression("a == '&&' && b") == "a == '&&'  and  b"

    @pytest.mark.parametrize(
        "expr",
        [
            "__import__('os')",
            "x.__class__",
            "open('f')",
            "lambda: 1",
            "[i for i in range(3)]",
            "max(1, key=abs)",
        ],
    )
    def test_rejects_disallowed_constructs(self, expr):
        with pytest.raises(ValueError):
            safe_eval(expr, {"x": 1})

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown name 'nope'"):
            safe_eval("nope > 1")

    def test_empty_expression(self):
        with pytest.raises(ValueError, match="Empty"):
            safe_eval("   ")

    def test_syntax_error(self):
        with pytest.raises(ValueError, match="Invalid expression"):
            safe_eval("1 +")

    def test_incomparable_types(self):
        with pytest.raises(ValueError, match="Cannot compare"):
            safe_eval("a > 1", {"a": "text"})

    def test_small_powers_and_repeats_are_allowed(self):
        assert safe_eval("2 ** 10") == 1024
        assert safe_eval("'ab' * 3") == "ababab"
        assert safe_eval("3 * [0]") == [0, 0, 0]

    @pytest.mark.parametrize(
        "expr",
        [
            "10 ** 1000000",
            "2 ** 101",
            "(10 ** 99) ** 99",
            "9 ** 9 ** 9",
            "2.5 ** 500",
        ],
    )
    def test_huge_powers_are_rejected(self, expr):
        with pytest.raises(ValueError, match="too large"):
            safe_eval(expr)

    @pytest.mark.parametrize("expr", ["'x' * 100000", "100000 * 'x'", "[1, 2] * 6000", "s * n"])
    def test_huge_repeats_are_rejected(self, expr):
        with pytest.raises(ValueError, match="too long"):
            safe_eval(expr, {"s": "abc", "n": 10**9})
