"""Tests for snapshot verification reports."""

from __future__ import annotations

import pytest

from bomgrid.service import GridService
from bomgrid.verify import verify_snapshot


@pytest.fixture
def grid() -> GridService:
    g = GridService()
    g.load_seed([
        {"level": "group"},
        {"level": "leaf", "quantity": 2, "productionCost": 180},
        {"level": "leaf", "quantity": 4, "productionCost": 220},
    ])
    return g


class TestVerifySnapshot:
    def test_pass(self, grid: GridService) -> None:
        report = verify_snapshot(grid.snapshot, grid.config)
        assert report["status"] == "pass"
        assert report["failures"] == []
        assert report["row_count"] == 3
        assert report["version"] == 1

    def test_defaults_without_config(self, grid: GridService) -> None:
        assert verify_snapshot(grid.snapshot)["status"] == "pass"

    def test_tampered_rollup(self, grid: GridService) -> None:
        snap = grid.snapshot
        bad_group = snap.rows[0].model_copy(update={"rollup_total": 1})
        tampered = snap.model_copy(update={"rows": (bad_group,) + snap.rows[1:]})
        report = verify_snapshot(tampered, grid.config)
        assert report["status"] == "fail"
        assert any("rollup_total" in f for f in report["failures"])

    def test_tampered_own_total_and_grand_total(self, grid: GridService) -> None:
        snap = grid.snapshot
        leaf = snap.rows[1].model_copy(update={"own_total": 5})
        tampered = snap.model_copy(update={"rows": (snap.rows[0], leaf, snap.rows[2]), "grand_total": 0})
        failures = verify_snapshot(tampered, grid.config)["failures"]
        assert any("own_total" in f for f in failures)
        assert any(f.startswith("grand_total") for f in failures)

    def test_sequence_gap_and_duplicate_ids(self, grid: GridService) -> None:
        snap = grid.snapshot
        dup = snap.rows[2].model_copy(update={"id": snap.rows[1].id, "sequence": 9})
        tampered = snap.model_copy(update={"rows": snap.rows[:2] + (dup,)})
        failures = verify_snapshot(tampered, grid.config)["failures"]
        assert "Sequences are not contiguous 1..N in document order" in failures
        assert f"Duplicate row ids: [{snap.rows[1].id}]" in failures

    def test_counts_formula_errors(self) -> None:
        grid = GridService({"column_formulas": {"x": "=1 / 0"}})
        grid.load_seed([{"level": "leaf"}])
        report = verify_snapshot(grid.snapshot, grid.config)
        assert report["status"] == "pass"
        assert report["cell_errors"] == 1

    def test_formula_in_rollup_input_fails(self, grid: GridService) -> None:
        """A quantity holding formula text would be counted as 0 by own_total."""
        snap = grid.snapshot
        leaf = snap.rows[1].with_fields(quantity="=1+2")
        tampered = snap.model_copy(update={"rows": (snap.rows[0], leaf, snap.rows[2])})
        report = verify_snapshot(tampered, grid.config)
        assert report["status"] == "fail"
        assert "Row 2: rollup input 'quantity' holds a formula" in report["failures"]
