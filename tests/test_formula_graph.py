"""Tests for dependency-ordered formula recalculation."""

from __future__ import annotations

import pytest

from bomgrid.config import resolve_config
from bomgrid.errors import InvalidReference
from bomgrid.formula_graph import FormulaEngine, topological_order
from bomgrid.formulas import CircularDependency
from bomgrid.hierarchy import HierarchyResolver
from bomgrid.rows import Row
from bomgrid.service import GridService


def _bom_seed() -> list[dict]:
    """Pune(1) > Press(2) > [CRCA(3), HR(4)]; Paint(5) > [Primer(6), Topcoat(7)]."""
    return [
        {"level": "group", "plant": "Pune"},
        {"level": "subgroup", "plant": "Press"},
        {"level": "leaf", "plant": "CRCA", "quantity": 2, "productionCost": 180},
        {"level": "leaf", "plant": "HR", "quantity": 4, "productionCost": 220},
        {"level": "subgroup", "plant": "Paint"},
        {"level": "leaf", "plant": "Primer", "quantity": 1, "productionCost": 100},
        {"level": "leaf", "plant": "Topcoat", "quantity": 3, "productionCost": 50},
    ]


def _grid(formulas: dict, seed: list[dict] | None = None) -> GridService:
    grid = GridService({"column_formulas": formulas})
    grid.load_seed(seed if seed is not None else _bom_seed())
    return grid


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestTopologicalOrder:
    def test_dependencies_come_first(self) -> None:
        a, b, c = (1, "a"), (1, "b"), (2, "c")
        deps = {c: {b}, b: {a}, a: set()}
        assert topological_order({a, b, c}, deps) == [a, b, c]

    def test_edges_outside_the_set_are_ignored(self) -> None:
        a, b = (1, "a"), (1, "b")
        assert topological_order({b}, {b: {a}}) == [b]

    def test_cycle_raises_with_members(self) -> None:
        a, b, c = (1, "a"), (1, "b"), (1, "c")
        deps = {a: {b}, b: {a}, c: {a}}
        with pytest.raises(CircularDependency) as exc_info:
            topological_order({a, b, c}, deps)
        assert exc_info.value.cycle == [a, b]
        assert exc_info.value.marker == "#CIRC!"

    def test_self_reference_is_a_cycle(self) -> None:
        a = (1, "a")
        with pytest.raises(CircularDependency):
            topological_order({a}, {a: {a}})


# ---------------------------------------------------------------------------
# Scenario E: chained same-row formulas
# ---------------------------------------------------------------------------


class TestChainedFormulas:
    def test_scenario_e_order_and_values(self) -> None:
        """Editing subtotal recomputes tax, then total."""
        grid = _grid(
            {"tax": "=subtotal * 0.18", "total": "=subtotal + tax"},
            [{"level": "leaf", "subtotal": 100}],
        )
        assert grid.value_of(1, "tax") == pytest.approx(18)
        assert grid.value_of(1, "total") == pytest.approx(118)

        grid.set_cell_value(1, "subtotal", 200)
        cells = [cell for cell, _ in grid.last_recomputed]
        assert cells == [(1, "tax"), (1, "total")]
        assert grid.value_of(1, "tax") == pytest.approx(36)
        assert grid.value_of(1, "total") == pytest.approx(236)

    def test_unrelated_edit_recomputes_nothing(self) -> None:
        grid = _grid({"tax": "=subtotal * 0.18"}, [{"level": "leaf", "subtotal": 100}])
        grid.set_cell_value(1, "plant", "Chakan")
        assert grid.last_recomputed == []

    def test_column_formula_cells_are_not_writable(self) -> None:
        grid = _grid({"tax": "=subtotal * 0.18"}, [{"level": "leaf", "subtotal": 100}])
        before = grid.snapshot
        assert grid.set_cell_value(1, "tax", 5) is before
        assert isinstance(grid.last_error, InvalidReference)

    def test_formulas_see_rollup_inputs(self) -> None:
        grid = _grid({"totalCost": "=productionCost * quantity"})
        assert grid.value_of(3, "totalCost") == 360
        grid.set_cell_value(3, "productionCost", 200)
        assert grid.value_of(3, "totalCost") == 400
        assert grid.value_of(1, "totalCost") == 0


# ---------------------------------------------------------------------------
# Error markers
# ---------------------------------------------------------------------------


class TestErrorMarkers:
    def test_cycle_cells_report_circ(self) -> None:
        grid = _grid(
            {
                "a": "=b + 1",
                "b": "=a + 1",
                "c": "=a * 2",
                "d": "=quantity * 2",
                "e": "=IFERROR(a, -1)",
            },
            [{"level": "leaf", "quantity": 5}],
        )
        assert grid.value_of(1, "a") == "#CIRC!"
        assert grid.value_of(1, "b") == "#CIRC!"
        assert grid.value_of(1, "c") == "#CIRC!"
        assert grid.value_of(1, "d") == 10
        assert grid.value_of(1, "e") == -1

        errors = grid.snapshot.errors_for(1)
        assert errors["a"].code == "circular_dependency"
        assert errors["b"].code == "circular_dependency"
        assert errors["c"].code == "upstream_error"
        assert errors["c"].marker == "#CIRC!"
        assert "d" not in errors

    def test_self_reference(self) -> None:
        grid = _grid({"x": "=x + 1"}, [{"level": "leaf"}])
        assert grid.value_of(1, "x") == "#CIRC!"

    def test_per_cell_errors(self) -> None:
        grid = _grid({}, [{"level": "leaf"}])
        grid.set_cell_value(1, "bad", "=1 +")
        grid.set_cell_value(1, "ref", "=#99!quantity")
        grid.set_cell_value(1, "div", "=1 / 0")
        grid.set_cell_value(1, "down", "=div + 1")
        assert grid.value_of(1, "bad") == "#ERR!"
        assert grid.value_of(1, "ref") == "#REF!"
        assert grid.value_of(1, "div") == "#DIV/0!"
        assert grid.value_of(1, "down") == "#DIV/0!"
        assert grid.snapshot.errors_for(1)["bad"].code == "parse_error"

    def test_fixing_an_upstream_cell_clears_downstream(self) -> None:
        grid = _grid({}, [{"level": "leaf"}])
        grid.set_cell_value(1, "div", "=1 / 0")
        grid.set_cell_value(1, "down", "=div + 1")
        grid.set_cell_value(1, "div", "=1 / 4")
        assert grid.value_of(1, "down") == 1.25
        assert grid.snapshot.cell_errors == ()


# ---------------------------------------------------------------------------
# Row coordinates and per-cell formulas
# ---------------------------------------------------------------------------


class TestCellFormulas:
    def test_row_coordinate_tracks_rollups(self) -> None:
        grid = _grid({})
        grid.set_cell_value(6, "note", "=#1!rollup_total * 2")
        assert grid.value_of(6, "note") == 2980

        grid.set_cell_value(3, "quantity", 3)
        assert grid.value_of(6, "note") == 3340
        assert ((6, "note"), 3340) in grid.last_recomputed

    def test_replacing_formula_with_value(self) -> None:
        grid = _grid({})
        grid.set_cell_value(6, "note", "=#1!rollup_total")
        grid.set_cell_value(6, "note", "plain")
        assert grid.value_of(6, "note") == "plain"
        assert "note" not in grid.snapshot.get_row(6).computed

    def test_row_reference_survives_reordering(self) -> None:
        grid = _grid({})
        grid.set_cell_value(6, "note", "=#4!quantity")
        grid.insert_below(2)
        assert grid.value_of(6, "note") == 4


# ---------------------------------------------------------------------------
# Aggregate-of-descendants
# ---------------------------------------------------------------------------


_STRUCTURAL = {
    "childSum": {"formula": "=SUM(CHILDREN(own_total))", "applies_to": "group"},
    "descSum": {"formula": "=SUM(DESCENDANTS(own_total))", "applies_to": "group"},
}


class TestStructuralFormulas:
    def test_children_and_descendants(self) -> None:
        grid = _grid(_STRUCTURAL)
        assert grid.value_of(2, "childSum") == 1240
        assert grid.value_of(5, "childSum") == 250
        assert grid.value_of(1, "childSum") == 0
        assert grid.value_of(1, "descSum") == 1490
        assert grid.value_of(3, "childSum") is None

    def test_edit_recomputes_only_affected_groups(self) -> None:
        grid = _grid(_STRUCTURAL)
        grid.set_cell_value(3, "productionCost", 200)
        cells = {cell for cell, _ in grid.last_recomputed}
        assert {(2, "childSum"), (2, "descSum"), (1, "descSum")} <= cells
        assert (5, "childSum") not in cells
        assert grid.value_of(2, "childSum") == 1280
        assert grid.value_of(1, "descSum") == 1530

    def test_structure_changes_rebind_dependencies(self) -> None:
        grid = _grid(_STRUCTURAL)
        grid.delete_selected([4])
        assert grid.value_of(2, "childSum") == 360

        snap = grid.insert_below(3)
        new_id = snap.rows[3].id
        grid.set_cell_value(new_id, "quantity", 1)
        grid.set_cell_value(new_id, "productionCost", 10)
        assert grid.value_of(2, "childSum") == 370

    def test_leaf_only_formula(self) -> None:
        grid = _grid({"totalCost": {"formula": "=productionCost * quantity", "applies_to": "leaf"}})
        assert grid.value_of(3, "totalCost") == 360
        assert "totalCost" not in grid.snapshot.get_row(1).computed


# ---------------------------------------------------------------------------
# Engine used directly
# ---------------------------------------------------------------------------


class TestFormulaEngine:
    def test_rebuild_and_evaluate(self) -> None:
        engine = FormulaEngine(resolve_config({"column_formulas": {"tax": "=subtotal * 0.5"}}))
        rows = [Row(id=1, level="leaf", fields={"subtotal": 10})]
        resolver = HierarchyResolver(rows, ["group", "subgroup", "leaf"])

        new_rows, recomputed = engine.rebuild(rows, resolver)
        assert recomputed == [((1, "tax"), 5.0)]
        assert new_rows[0].computed == {"tax": 5.0}
        assert engine.evaluate((1, "tax")) == 5.0
        assert engine.dependencies_of((1, "tax")) == {(1, "subtotal")}
        assert engine.dependents_of((1, "subtotal")) == {(1, "tax")}

    def test_rows_are_not_retained_between_passes(self) -> None:
        engine = FormulaEngine(resolve_config())
        rows = [Row(id=1, level="leaf")]
        engine.rebuild(rows, HierarchyResolver(rows, ["leaf"]))
        assert engine._rows is None
        assert engine._resolver is None

    def test_evaluate_rejects_input_cells(self) -> None:
        engine = FormulaEngine(resolve_config())
        with pytest.raises(InvalidReference):
            engine.evaluate((1, "quantity"))


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    def _engine(self) -> FormulaEngine:
        return FormulaEngine(resolve_config({
            "column_formulas": {
                "a": "=b + 1",
                "b": "=a + 1",
                "c": "=a * 2",
                "tax": "=subtotal * 0.5",
            },
        }))

    def _rows(self) -> list[Row]:
        return [
            Row(id=1, level="leaf", fields={"subtotal": 10}),
            Row(id=2, level="leaf", fields={"subtotal": 4, "note": "=#1!tax + tax"}),
        ]

    def test_rebuild_twice_with_a_cycle(self) -> None:
        engine = self._engine()
        rows = self._rows()
        first, _ = engine.rebuild(rows, HierarchyResolver(rows, ["leaf"]))
        errors = engine.cell_errors()
        assert first[0].computed["a"] == "#CIRC!"
        assert first[1].computed["note"] == 7

        second, _ = engine.rebuild(first, HierarchyResolver(first, ["leaf"]))
        assert second == first
        assert engine.cell_errors() == errors

    def test_on_edit_without_changes(self) -> None:
        engine = self._engine()
        rows = self._rows()
        first, _ = engine.rebuild(rows, HierarchyResolver(rows, ["leaf"]))
        errors = engine.cell_errors()

        second, recomputed = engine.on_edit(first, HierarchyResolver(first, ["leaf"]), [])
        assert recomputed == []
        assert second == first
        assert engine.cell_errors() == errors

    def test_repeating_an_edit_changes_nothing(self) -> None:
        grid = _grid(
            {"a": "=b + 1", "b": "=a + 1", "tax": "=subtotal * 0.18"},
            [{"level": "leaf", "subtotal": 100}],
        )
        first = grid.set_cell_value(1, "subtotal", 200)
        second = grid.set_cell_value(1, "subtotal", 200)
        assert second.rows == first.rows
        assert second.cell_errors == first.cell_errors
        assert second.grand_total == first.grand_total
