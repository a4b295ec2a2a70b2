"""Tests for the placeholder expression evaluator."""

from __future__ import annotations

import pytest

from pa_generator.template.expression import (
    ExpressionError,
    Value,
    coerce,
    evaluate,
    format_number,
    tokenize,
)

VARIABLES: dict[str, list[Value]] = {
    "layer_height": [0.2],
    "nozzle_diameter": [0.4, 0.6],
    "gcode_flavor": ["klipper"],
    "count": [3.0],
}


def lookup(name: str, index: int | None) -> Value:
    if name not in VARIABLES:
        raise ExpressionError(f"Unknown variable '{name}'")
    values = VARIABLES[name]
    i = 0 if index is None else index
    return values[i] if i < len(values) else 0.0


def ev(text: str) -> Value:
    return evaluate(text, lookup)


# ---------------------------------------------------------------------------
# Formatting and coercion
# ---------------------------------------------------------------------------


class TestFormatNumber:
    def test_integral(self) -> None:
        assert format_number(3.0) == "3"
        assert format_number(-0.0) == "0"

    def test_fractional(self) -> None:
        assert format_number(0.2) == "0.2"
        assert format_number(1.0 / 3.0) == "0.333333"

    def test_tiny_negative_rounds_to_zero(self) -> None:
        assert format_number(-1e-9) == "0"

    def test_string_passthrough(self) -> None:
        assert format_number("abc") == "abc"


class TestCoerce:
    def test_numeric_string(self) -> None:
        assert coerce("0.25") == 0.25

    def test_booleans(self) -> None:
        assert coerce("true") == 1.0
        assert coerce("False") == 0.0
        assert coerce(True) == 1.0

    def test_text_kept(self) -> None:
        assert coerce("marlin2") == "marlin2"


# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------


class TestArithmetic:
    def test_precedence(self) -> None:
        assert ev("1 + 2 * 3") == 7.0
        assert ev("(1 + 2) * 3") == 9.0
        assert ev("-2 * -3") == 6.0

    def test_variables(self) -> None:
        assert ev("layer_height * 2") == pytest.approx(0.4)
        assert ev("nozzle_diameter[1] + 0.2") == pytest.approx(0.8)

    def test_out_of_range_index_uses_lookup_rule(self) -> None:
        assert ev("nozzle_diameter[5]") == 0.0

    def test_modulo(self) -> None:
        assert ev("7 % 3") == 1.0

    def test_division_by_zero(self) -> None:
        with pytest.raises(ExpressionError):
            ev("1 / 0")
        with pytest.raises(ExpressionError):
            ev("1 % 0")

    def test_string_concatenation(self) -> None:
        assert ev("'T' + 1") == "T1"
        assert ev('"K=" + layer_height') == "K=0.2"

    def test_string_subtraction_rejected(self) -> None:
        with pytest.raises(ExpressionError):
            ev("'a' - 1")


class TestLogic:
    def test_comparisons(self) -> None:
        assert ev("count >= 3") == 1.0
        assert ev("count < 3") == 0.0
        assert ev("count != 2") == 1.0

    def test_string_comparison(self) -> None:
        assert ev('gcode_flavor == "klipper"') == 1.0
        assert ev("gcode_flavor == 'marlin2'") == 0.0

    def test_boolean_words_and_symbols(self) -> None:
        assert ev("count > 1 and count < 5") == 1.0
        assert ev("count > 5 || count == 3") == 1.0
        assert ev("!(count == 3)") == 0.0
        assert ev("not false") == 1.0

    def test_html_escapes(self) -> None:
        assert ev("count &lt; 5 &amp;&amp; count &gt; 1") == 1.0


class TestFunctions:
    def test_min_max(self) -> None:
        assert ev("max(1, count, 2)") == 3.0
        assert ev("min(layer_height, 1)") == pytest.approx(0.2)

    def test_rounding(self) -> None:
        assert ev("int(2.7)") == 2.0
        assert ev("round(2.345, 2)") == pytest.approx(2.35, abs=0.006)
        assert ev("abs(-4)") == 4.0

    def test_digits_zero_pads(self) -> None:
        assert ev("digits(7, 2, 0)") == "07"
        assert ev("digits(0.5, 5, 2)") == "00.50"

    def test_unknown_function(self) -> None:
        with pytest.raises(ExpressionError):
            ev("sqrt(4)")

    def test_wrong_arity(self) -> None:
        with pytest.raises(ExpressionError):
            ev("abs(1, 2)")

    def test_custom_function_table(self) -> None:
        table = {"twice": lambda args: args[0] * 2}
        assert evaluate("twice(21)", lookup, table) == 42.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    def test_empty(self) -> None:
        with pytest.raises(ExpressionError):
            ev("   ")

    def test_unknown_variable(self) -> None:
        with pytest.raises(ExpressionError):
            ev("missing + 1")

    def test_unbalanced(self) -> None:
        with pytest.raises(ExpressionError):
            ev("(1 + 2")

    def test_trailing_tokens(self) -> None:
        with pytest.raises(ExpressionError):
            ev("1 2")

    def test_bad_character(self) -> None:
        with pytest.raises(ExpressionError):
            tokenize("1 $ 2")

    def test_negative_index(self) -> None:
        with pytest.raises(ExpressionError):
            ev("nozzle_diameter[-1]")

    def test_no_host_eval(self) -> None:
        with pytest.raises(ExpressionError):
            ev("__import__('os')")

    @pytest.mark.parametrize(
        "text",
        [
            "int(1e400)",
            "int(1e400 - 1e400)",
            "1e400 % 2",
            "round(1, 1e400)",
            "round(1, 500)",
            "digits(1, 0, 1e12)",
            "digits(1, 1e9, 2)",
            "digits(1e400, 0, 2)",
        ],
    )
    def test_out_of_range_numbers(self, text: str) -> None:
        with pytest.raises(ExpressionError):
            ev(text)

    def test_limits_still_usable(self) -> None:
        assert ev("digits(1, 3, 12)") == "1.000000000000"
        assert ev("round(1234, -2)") == 1200.0
