"""Snapshot verification: recompute and validate every derived value.

The ``verify_snapshot`` function checks:
- ids are unique
- sequences are exactly 1..N in document order
- rollup input columns hold plain values (no formula text or formula result)
- every ``own_total`` matches ``quantity * unit_rate + extra``
- every group ``rollup_total`` equals the sum over its direct children,
  and every leaf's rollup equals its own total
- ``grand_total`` equals the sum of the top-level rollups
"""

from __future__ import annotations

import math
from typing import Any

from bomgrid.config import resolve_config, rollup_input_fields
from bomgrid.formulas.parser import is_formula
from bomgrid.hierarchy import HierarchyResolver
from bomgrid.rollup import RollupEngine
from bomgrid.rows import Snapshot
from bomgrid.sequencer import is_contiguous


def _close(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9)


def verify_snapshot(snapshot: Snapshot, config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Verify the internal consistency of a snapshot.

    Args:
        snapshot: The snapshot to check.
        config: Grid config (tiers and own-total fields); defaults apply
            when omitted.

    Returns:
        Report dict with status ("pass" or "fail"), sorted failures list,
        row count, and the number of formula cells holding errors.
    """
    config = resolve_config(config)
    failures: list[str] = []

    _check_ids(snapshot, failures)
    if not is_contiguous(snapshot.rows):
        failures.append("Sequences are not contiguous 1..N in document order")
    _check_rollup_inputs(snapshot, config, failures)
    _check_totals(snapshot, config, failures)

    return {
        "status": "pass" if not failures else "fail",
        "failures": sorted(failures),
        "row_count": snapshot.row_count,
        "version": snapshot.version,
        "cell_errors": len(snapshot.cell_errors),
    }


def _check_ids(snapshot: Snapshot, failures: list[str]) -> None:
    if not snapshot.rows:
        return
    ids = snapshot.to_frame()["id"]
    dupes = ids.filter(ids.is_duplicated()).unique().sort().to_list()
    if dupes:
        failures.append(f"Duplicate row ids: {dupes}")


def _check_rollup_inputs(snapshot: Snapshot, config: dict[str, Any], failures: list[str]) -> None:
    inputs = sorted(rollup_input_fields(config))
    for row in snapshot.rows:
        for column in inputs:
            if column in row.computed or is_formula(row.fields.get(column)):
                failures.append(f"Row {row.id}: rollup input {column!r} holds a formula")


def _check_totals(snapshot: Snapshot, config: dict[str, Any], failures: list[str]) -> None:
    engine = RollupEngine(config)
    rows = snapshot.rows
    resolver = HierarchyResolver(rows, config["tiers"], config.get("path_depth"))

    for idx, row in enumerate(rows):
        expected_own = engine.own_total(row)
        if not _close(row.own_total, expected_own):
            failures.append(
                f"Row {row.id}: own_total {row.own_total} != expected {expected_own}"
            )
        if resolver.is_group_index(idx):
            expected = sum(rows[c].rollup_total for c in resolver.child_indices(idx))
        else:
            expected = row.own_total
        if not _close(row.rollup_total, expected):
            failures.append(
                f"Row {row.id}: rollup_total {row.rollup_total} != expected {expected}"
            )

    expected_grand = RollupEngine.grand_total(rows, resolver)
    if not _close(snapshot.grand_total, expected_grand):
        failures.append(
            f"grand_total {snapshot.grand_total} != expected {expected_grand}"
        )
