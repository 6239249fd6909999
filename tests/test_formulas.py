"""Tests for the formula parser and tree-walking evaluator."""

from __future__ import annotations

from typing import Any

import pytest

from bomgrid.formulas import (
    FormulaDivisionError,
    FormulaFunctionError,
    FormulaParseError,
    evaluate_formula,
    extract_all_refs,
    extract_refs,
    is_formula,
    parse_formula,
    parse_row_ref,
)


class FakeResolver:
    """Dict-backed resolver: ``cells[(row_id, column)]`` plus a structure map."""

    def __init__(
        self,
        cells: dict[tuple[int, str], Any],
        structure: dict[tuple[int, str], list[int]] | None = None,
    ) -> None:
        self.cells = cells
        self.structure = structure or {}

    def resolve_field(self, row_id: int, column: str) -> Any:
        return self.cells.get((row_id, column))

    def resolve_structural(self, row_id: int, func: str, column: str) -> list[Any]:
        return [self.cells.get((c, column)) for c in self.structure.get((row_id, func), [])]


def _eval(text: str, cells: dict | None = None, structure: dict | None = None, row_id: int = 1) -> Any:
    return evaluate_formula(parse_formula(text), row_id, FakeResolver(cells or {}, structure))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_requires_leading_equals(self) -> None:
        with pytest.raises(FormulaParseError) as exc_info:
            parse_formula("quantity * 2")
        assert exc_info.value.position == 0

    def test_syntax_error(self) -> None:
        with pytest.raises(FormulaParseError):
            parse_formula("=1 +")

    def test_is_formula(self) -> None:
        assert is_formula("=a + b")
        assert is_formula("  =1")
        assert not is_formula("=")
        assert not is_formula("a + b")
        assert not is_formula(12)

    def test_parse_row_ref(self) -> None:
        assert parse_row_ref("#12!quantity") == (12, "quantity")

    def test_extract_all_refs(self) -> None:
        tree = parse_formula("=qty * #3!rate + SUM(CHILDREN(own_total)) + $extra")
        fields, rows, structural = extract_all_refs(tree)
        assert fields == {"qty", "extra"}
        assert rows == {(3, "rate")}
        assert structural == {("CHILDREN", "own_total")}

    def test_function_names_are_not_refs(self) -> None:
        assert extract_refs(parse_formula("=ROUND(subtotal * 0.18, 2)")) == {"subtotal"}

    def test_structural_string_argument(self) -> None:
        _, _, structural = extract_all_refs(parse_formula('=MAX(DESCENDANTS("quantity"))'))
        assert structural == {("DESCENDANTS", "quantity")}

    def test_structural_needs_a_column_name(self) -> None:
        with pytest.raises(FormulaParseError):
            extract_all_refs(parse_formula("=SUM(CHILDREN(1))"))


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TestArithmetic:
    def test_precedence(self) -> None:
        assert _eval("=1 + 2 * 3") == 7
        assert _eval("=(1 + 2) * 3") == 9
        assert _eval("=2 ^ 3") == 8
        assert _eval("=50%") == 0.5

    def test_same_row_references(self) -> None:
        cells = {(1, "quantity"): 4, (1, "productionCost"): 25}
        assert _eval("=productionCost * quantity", cells) == 100
        assert _eval("=-$quantity", cells) == -4

    def test_absent_and_text_operands_coerce_to_zero(self) -> None:
        assert _eval("=missing + 5") == 5
        assert _eval('=quantity * 3', {(1, "quantity"): "n/a"}) == 0

    def test_row_coordinate_reference(self) -> None:
        assert _eval("=#12!quantity * 2", {(12, "quantity"): 21}) == 42

    def test_division_by_zero(self) -> None:
        with pytest.raises(FormulaDivisionError):
            _eval("=1 / 0")

    def test_comparisons(self) -> None:
        assert _eval('="a" = "a"') is True
        assert _eval("=quantity > 3", {(1, "quantity"): 4}) is True
        assert _eval("=2 <> 2") is False


class TestFunctions:
    def test_aggregates(self) -> None:
        cells = {(1, "quantity"): 4}
        assert _eval("=SUM(1, 2, quantity)", cells) == 7
        assert _eval("=PRODUCT(2, 3, 4)") == 24
        assert _eval("=AVERAGE(2, 4)") == 3
        assert _eval("=MIN(5, 2, 9)") == 2
        assert _eval("=MAX()") == 0
        assert _eval('=COUNT(1, "x", quantity, missing)', cells) == 2

    def test_average_of_nothing_divides_by_zero(self) -> None:
        with pytest.raises(FormulaDivisionError):
            _eval("=AVERAGE()")

    def test_scalar_functions(self) -> None:
        assert _eval("=ABS(-3)") == 3
        assert _eval("=ROUND(3.14159, 2)") == 3.14
        assert _eval('=IF(quantity > 3, "big", "small")', {(1, "quantity"): 4}) == "big"
        assert _eval("=IF(FALSE, 1)") is False

    def test_iferror_catches_engine_errors(self) -> None:
        assert _eval("=IFERROR(1 / 0, -1)") == -1
        assert _eval("=IFERROR(2, -1)") == 2

    def test_unknown_function(self) -> None:
        with pytest.raises(FormulaFunctionError):
            _eval("=FOO(1)")

    def test_wrong_arity(self) -> None:
        with pytest.raises(FormulaFunctionError):
            _eval("=ABS(1, 2)")


class TestStructuralFunctions:
    def test_children_expand_inside_aggregates(self) -> None:
        cells = {(2, "own_total"): 360, (3, "own_total"): 880}
        structure = {(1, "CHILDREN"): [2, 3]}
        assert _eval("=SUM(CHILDREN(own_total))", cells, structure) == 1240
        assert _eval("=COUNT(CHILDREN(own_total))", cells, structure) == 2
        assert _eval("=MAX(CHILDREN(own_total)) - MIN(CHILDREN(own_total))", cells, structure) == 520

    def test_descendants(self) -> None:
        cells = {(2, "quantity"): 1, (3, "quantity"): 2, (4, "quantity"): 3}
        structure = {(1, "DESCENDANTS"): [2, 3, 4]}
        assert _eval("=AVERAGE(DESCENDANTS(quantity))", cells, structure) == 2

    def test_no_children(self) -> None:
        assert _eval("=SUM(CHILDREN(quantity))") == 0

    def test_outside_aggregate_is_an_error(self) -> None:
        with pytest.raises(FormulaFunctionError):
            _eval("=CHILDREN(quantity)")
