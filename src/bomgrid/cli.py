"""Command-line interface for bomgrid (developer tooling around the engine)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
import polars as pl
import yaml

from bomgrid import __core_api_version__, __version__


@click.group()
@click.version_option(
    version=f"{__version__} (core_api={__core_api_version__})",
    prog_name="bomgrid",
)
def main() -> None:
    """bomgrid -- hierarchical BOM grid with rollups and cell formulas.

    Lifecycle: Load -> Edit -> Verify
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _load_seed_file(path: Path) -> list[dict[str, Any]]:
    """Read a YAML or JSON seed: a list of rows, or a mapping with ``rows``."""
    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if isinstance(data, dict):
        data = data.get("rows")
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must contain a list of rows (or a 'rows' list)")
    return data


def _open_grid(seed: str, config_dir: str | None, log_dir: str | None):
    from bomgrid.config import load_grid_config
    from bomgrid.logging.events import set_log_dir
    from bomgrid.service import GridService

    seed_path = Path(seed)
    cfg_dir = Path(config_dir) if config_dir else seed_path.parent
    try:
        config = load_grid_config(cfg_dir)
    except (ValueError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid config in {cfg_dir}: {e}")
    if log_dir:
        set_log_dir(Path(log_dir), config)

    grid = GridService(config)
    grid.load_seed(_load_seed_file(seed_path))
    return grid


def _parse_assignments(assignments: tuple[str, ...]) -> list[tuple[int, str, str]]:
    edits: list[tuple[int, str, str]] = []
    for item in assignments:
        target, sep, value = item.partition("=")
        row_part, colon, column = target.partition(":")
        if not sep or not colon or not column:
            raise click.ClickException(f"Invalid --set format: {item!r}. Use ID:COLUMN=VALUE.")
        try:
            row_id = int(row_part)
        except ValueError:
            raise click.ClickException(f"Invalid row id in --set: {row_part!r}")
        edits.append((row_id, column, value))
    return edits


def _display_frame(grid) -> pl.DataFrame:
    config = grid.config
    frame = grid.snapshot.to_frame()
    wanted = [
        "sequence", "id", "level", "path", config.get("label_field", "plant"),
        config["quantity_field"], config["rate_field"], config["extra_field"],
        *config["column_formulas"],
        "own_total", "rollup_total",
    ]
    columns = [c for c in dict.fromkeys(wanted) if c in frame.columns]
    return frame.select(columns)


def _echo_snapshot(grid, as_json: bool) -> None:
    snap = grid.snapshot
    if as_json:
        out = {
            "version": snap.version,
            "grand_total": snap.grand_total,
            "rows": snap.to_records(),
            "cell_errors": [e.model_dump() for e in snap.cell_errors],
        }
        click.echo(json.dumps(out, indent=2, default=str))
        return
    with pl.Config(tbl_rows=-1, tbl_cols=-1, tbl_width_chars=200):
        click.echo(str(_display_frame(grid)))
    click.echo(f"Grand total: {snap.grand_total}")
    for err in snap.cell_errors:
        click.echo(f"  {err.marker} at #{err.row_id}!{err.column}: {err.message}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


_seed_argument = click.argument("seed", type=click.Path(exists=True, dir_okay=False))
_config_option = click.option(
    "--config-dir", default=None, type=click.Path(exists=True, file_okay=False),
    help="Directory holding bomgrid.yaml (defaults to the seed's directory).",
)
_log_option = click.option(
    "--log-dir", default=None, type=click.Path(file_okay=False),
    help="Append structured events under LOG_DIR/logs/.",
)


@main.command()
@_seed_argument
@_config_option
@_log_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show(seed: str, config_dir: str | None, log_dir: str | None, as_json: bool) -> None:
    """Load SEED and print the recomputed grid."""
    grid = _open_grid(seed, config_dir, log_dir)
    _echo_snapshot(grid, as_json)


@main.command()
@_seed_argument
@_config_option
@_log_option
def verify(seed: str, config_dir: str | None, log_dir: str | None) -> None:
    """Load SEED and verify sequences, ids and totals."""
    from bomgrid.verify import verify_snapshot

    grid = _open_grid(seed, config_dir, log_dir)
    report = verify_snapshot(grid.snapshot, grid.config)
    click.echo(f"Verify: {report['status']} ({report['row_count']} rows)")
    for failure in report["failures"]:
        click.echo(f"  FAIL: {failure}")
    if report["cell_errors"]:
        click.echo(f"  {report['cell_errors']} formula cell(s) hold error markers")
    if report["status"] != "pass":
        raise SystemExit(1)


@main.command()
@_seed_argument
@_config_option
@_log_option
@click.option("--set", "assignments", multiple=True, required=True, help="Cell edit as ID:COLUMN=VALUE.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def edit(
    seed: str,
    config_dir: str | None,
    log_dir: str | None,
    assignments: tuple[str, ...],
    as_json: bool,
) -> None:
    """Load SEED, apply cell edits in order, and print the result."""
    edits = _parse_assignments(assignments)
    grid = _open_grid(seed, config_dir, log_dir)
    for row_id, column, value in edits:
        grid.set_cell_value(row_id, column, value)
        if grid.last_error is not None:
            click.echo(f"WARNING: {grid.last_error}", err=True)
    _echo_snapshot(grid, as_json)
