"""Plant BOM demo runner.

Loads the bundled plant seed, raises the CRCA sheet rate from 180 to 200,
verifies the result, and writes a deterministic summary JSON.  No
timestamps or row ids beyond the seed's own are printed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

_DEMO_DIR = Path(__file__).parent


def run_demo(output_dir: Path | None = None) -> dict[str, Any]:
    """Execute the plant BOM demo end-to-end.

    Args:
        output_dir: Directory to write output files. Defaults to the demo directory.

    Returns:
        Summary dict with the totals before and after the edit.
    """
    from bomgrid.config import load_grid_config
    from bomgrid.service import GridService
    from bomgrid.verify import verify_snapshot

    out = output_dir or _DEMO_DIR

    config = load_grid_config(_DEMO_DIR)
    seed = yaml.safe_load((_DEMO_DIR / "seed.yaml").read_text())["rows"]

    grid = GridService(config)
    before = grid.load_seed(seed)

    crca = next(r for r in before.rows if r.fields.get("plant") == "CRCA Sheet")
    press = grid.ancestors_of(crca.id)[-1]
    after = grid.set_cell_value(crca.id, "productionCost", 200)

    report = verify_snapshot(after, grid.config)

    summary = {
        "demo": "plant_bom",
        "grand_total_before": before.grand_total,
        "grand_total_after": after.grand_total,
        "press_shop_rollup_after": after.get_row(press.id).rollup_total,
        "recomputed_cells": [f"#{r}!{c}" for (r, c), _ in grid.last_recomputed],
        "rows": after.row_count,
        "verify_status": report["status"],
    }

    summary_path = out / "plant_bom_summary.json"
    summary_path.write_text(json.dumps(summary, indent=2, sort_keys=True) + "\n")

    print(f"Grand total: {before.grand_total} -> {after.grand_total}")
    print(f"Verify: {report['status'].upper()}")

    return summary
