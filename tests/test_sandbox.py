import pytest

from nodeflow.service.sandbox import MAX_EXPRESSION_LENGTH, safe_eval_expr


def test_safe_eval_expr_allows_basic_operations():
    names = {"x": 2, "y": 3}
    expr = "(x + y) == 5 and not (y < x)"

    result = safe_eval_expr(expr, names)

    assert result is True


def test_whitelisted_helpers_are_callable():
    names = {"input": "Hello World"}

    assert safe_eval_expr("contains(lower(input), 'world')", names) is True
    assert safe_eval_expr("len(input) if input else 0", names) == 11


def test_subscripts_and_slices():
    names = {"inputs": ["a", "b", "c"], "data": {"score": 0.9}}

    assert safe_eval_expr("inputs[-1]", names) == "c"
    assert safe_eval_expr("inputs[:2]", names) == ["a", "b"]
    assert safe_eval_expr("data['score'] >= 0.5", names) is True


def test_custom_callables_replace_defaults():
    names = {"x": 2}

    assert safe_eval_expr("double(x)", names, {"double": lambda v: v * 2}) == 4
    with pytest.raises(ValueError):
        safe_eval_expr("len('abc')", names, {"double": lambda v: v * 2})


@pytest.mark.parametrize(
    "expr",
    [
        "(lambda z: z)(1)",
        "__import__('os').system('echo hi')",
        "x.__class__",
        "[i for i in range(3)]",
        "open('/etc/passwd')",
        "(y := 1)",
    ],
)
def test_safe_eval_expr_blocks_disallowed_syntax(expr):
    with pytest.raises(ValueError):
        safe_eval_expr(expr, {"x": 1})


def test_unknown_names_and_bad_operands_raise_value_error():
    with pytest.raises(ValueError, match="unknown name"):
        safe_eval_expr("missing > 1", {})
    with pytest.raises(ValueError):
        safe_eval_expr("x / 0", {"x": 1})
    with pytest.raises(ValueError):
        safe_eval_expr("x < 'a'", {"x": 1})


def test_rejects_empty_and_oversized_expressions():
    with pytest.raises(ValueError):
        safe_eval_expr("   ", {})
    with pytest.raises(ValueError, match="too long"):
        safe_eval_expr("1" * (MAX_EXPRESSION_LENGTH + 1), {})
    with pytest.raises(ValueError, match="invalid expression"):
        safe_eval_expr("1 +", {})
