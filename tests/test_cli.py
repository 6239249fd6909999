"""Tests for the bomgrid command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

import bomgrid.logging.events as events_mod
from bomgrid.cli import main

DEMO_DIR = Path(__file__).resolve().parent.parent / "demos" / "plant_bom"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def seed_dir(tmp_path: Path) -> Path:
    """A seed and config written as JSON + YAML into a scratch directory."""
    (tmp_path / "bomgrid.yaml").write_text("column_formulas:\n  totalCost: '=productionCost * quantity'\n")
    rows = [
        {"level": "group", "plant": "Nashik"},
        {"level": "leaf", "plant": "Bracket", "quantity": 2, "productionCost": 180},
        {"level": "leaf", "plant": "Bolt", "quantity": 4, "productionCost": 220},
    ]
    (tmp_path / "seed.json").write_text(json.dumps(rows))
    return tmp_path


@pytest.fixture(autouse=True)
def _restore_sink():
    old_sink = events_mod._sink
    yield
    events_mod._sink = old_sink


class TestShow:
    def test_show_demo(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["show", str(DEMO_DIR / "seed.yaml")])
        assert result.exit_code == 0, result.output
        assert "Pune Plant" in result.output
        assert "Grand total: 1940" in result.output

    def test_show_json(self, runner: CliRunner, seed_dir: Path) -> None:
        result = runner.invoke(main, ["show", str(seed_dir / "seed.json"), "--json"])
        assert result.exit_code == 0, result.output
        out = json.loads(result.output)
        assert out["grand_total"] == 1240
        assert out["rows"][1]["totalCost"] == 360
        assert out["cell_errors"] == []

    def test_missing_seed(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(main, ["show", str(tmp_path / "nope.yaml")])
        assert result.exit_code != 0

    def test_bad_seed_shape(self, runner: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "seed.yaml").write_text("plant: lonely\n")
        result = runner.invoke(main, ["show", str(tmp_path / "seed.yaml")])
        assert result.exit_code != 0
        assert "list of rows" in result.output

    def test_log_dir(self, runner: CliRunner, seed_dir: Path, tmp_path: Path) -> None:
        logs = tmp_path / "out"
        result = runner.invoke(main, ["show", str(seed_dir / "seed.json"), "--log-dir", str(logs)])
        assert result.exit_code == 0, result.output
        lines = (logs / "logs" / "events.ndjson").read_text().splitlines()
        assert json.loads(lines[0])["event_type"] == "seed_loaded"


class TestVerify:
    def test_verify_demo(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["verify", str(DEMO_DIR / "seed.yaml")])
        assert result.exit_code == 0, result.output
        assert "Verify: pass (7 rows)" in result.output

    def test_config_dir_option(self, runner: CliRunner, seed_dir: Path) -> None:
        result = runner.invoke(main, ["verify", str(seed_dir / "seed.json"), "--config-dir", str(DEMO_DIR)])
        assert result.exit_code == 0, result.output


class TestEdit:
    def test_edit_updates_rollups(self, runner: CliRunner, seed_dir: Path) -> None:
        result = runner.invoke(main, ["edit", str(seed_dir / "seed.json"), "--set", "2:productionCost=200", "--json"])
        assert result.exit_code == 0, result.output
        out = json.loads(result.output)
        assert out["grand_total"] == 1280
        assert out["rows"][1]["totalCost"] == 400
        assert out["version"] == 2

    def test_rejected_edit_warns(self, runner: CliRunner, seed_dir: Path) -> None:
        result = runner.invoke(main, ["edit", str(seed_dir / "seed.json"), "--set", "2:totalCost=1"])
        assert result.exit_code == 0
        assert "WARNING" in result.output

    @pytest.mark.parametrize("assignment", ["2=5", "x:quantity=5", "2:quantity"])
    def test_bad_assignment(self, runner: CliRunner, seed_dir: Path, assignment: str) -> None:
        result = runner.invoke(main, ["edit", str(seed_dir / "seed.json"), "--set", assignment])
        assert result.exit_code != 0
        assert "--set" in result.output


class TestVersion:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "bomgrid" in result.output
