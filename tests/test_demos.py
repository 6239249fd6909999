"""Tests for the bundled plant BOM demo."""

from __future__ import annotations

import json
from pathlib import Path


class TestPlantBomDemo:
    def test_totals(self, tmp_path: Path) -> None:
        """Raising the CRCA rate 180 -> 200 adds 40 to the plant total."""
        from demos.plant_bom.run import run_demo

        summary = run_demo(output_dir=tmp_path)
        assert summary["grand_total_before"] == 1940
        assert summary["grand_total_after"] == 1980
        assert summary["press_shop_rollup_after"] == 1280
        assert summary["verify_status"] == "pass"
        assert summary["rows"] == 7

    def test_recomputes_only_dependent_cells(self, tmp_path: Path) -> None:
        from demos.plant_bom.run import run_demo

        summary = run_demo(output_dir=tmp_path)
        assert sorted(summary["recomputed_cells"]) == ["#1!gst", "#2!gst", "#3!totalCost"]

    def test_summary_stable_across_runs(self, tmp_path: Path) -> None:
        from demos.plant_bom.run import run_demo

        out1 = tmp_path / "r1"
        out1.mkdir()
        run_demo(output_dir=out1)
        out2 = tmp_path / "r2"
        out2.mkdir()
        run_demo(output_dir=out2)
        assert (out1 / "plant_bom_summary.json").read_bytes() == (out2 / "plant_bom_summary.json").read_bytes()
        assert json.loads((out1 / "plant_bom_summary.json").read_text())["demo"] == "plant_bom"
