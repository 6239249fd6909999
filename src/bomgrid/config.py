"""Grid-level configuration with defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "bomgrid.yaml"

DEFAULT_CONFIG = {
    "tiers": ["group", "subgroup", "leaf"],
    "path_depth": None,  # leaf depth for path rows; taken from the seed when unset
    "quantity_field": "quantity",
    "rate_field": "productionCost",
    "extra_field": "extraCost",
    "label_field": "plant",
    "numeric_columns": ["productionCost", "quantity", "extraCost"],
    "input_columns": ["plant", "productionCost", "quantity", "extraCost"],
    "blank_columns": 0,  # scratch columns col_1..col_N on every row
    "column_formulas": {},
    "delete_cascade": False,
    "working_set_size": None,  # pad seed to this many rows
    "max_seed_rows": None,
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

_APPLIES_TO = ("all", "leaf", "group")


def _normalize_formulas(raw: Any) -> dict[str, dict[str, str]]:
    """Normalize ``column_formulas`` to ``{column: {"formula": ..., "applies_to": ...}}``.

    Supports both the short form::

        column_formulas:
          totalCost: "=productionCost * quantity"

    and the long form::

        column_formulas:
          childQty:
            formula: "=SUM(CHILDREN(quantity))"
            applies_to: group
    """
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("column_formulas must be a mapping of column -> formula")
    out: dict[str, dict[str, str]] = {}
    for column, spec in raw.items():
        if isinstance(spec, str):
            spec = {"formula": spec}
        if not isinstance(spec, dict) or not isinstance(spec.get("formula"), str):
            raise ValueError(f"column_formulas[{column!r}] needs a formula string")
        applies_to = str(spec.get("applies_to", "all")).lower()
        if applies_to not in _APPLIES_TO:
            raise ValueError(
                f"column_formulas[{column!r}].applies_to must be one of {list(_APPLIES_TO)}"
            )
        formula = spec["formula"].strip()
        if not formula.startswith("="):
            formula = "=" + formula
        out[str(column)] = {"formula": formula, "applies_to": applies_to}
    return out


def resolve_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge *overrides* onto ``DEFAULT_CONFIG`` and validate the result.

    Args:
        overrides: User-supplied keys (e.g. parsed from ``bomgrid.yaml``).

    Returns:
        Merged configuration dict.

    Raises:
        ValueError: If ``tiers`` is empty or contains duplicates, or a
            column formula is malformed or targets a rollup input column.
    """
    config = dict(DEFAULT_CONFIG)
    if overrides:
        config.update(overrides)

    tiers = [str(t) for t in (config.get("tiers") or [])]
    if not tiers:
        raise ValueError("tiers must list at least one level tag")
    if len(set(tiers)) != len(tiers):
        raise ValueError(f"tiers contains duplicates: {tiers}")
    config["tiers"] = tiers

    if config.get("path_depth") is not None:
        config["path_depth"] = max(1, int(config["path_depth"]))

    config["column_formulas"] = _normalize_formulas(config.get("column_formulas"))
    rollup_inputs = rollup_input_fields(config)
    blocked = sorted(c for c in config["column_formulas"] if c in rollup_inputs)
    if blocked:
        raise ValueError(
            f"column_formulas cannot target rollup input columns: {blocked}"
        )

    blank = int(config.get("blank_columns") or 0)
    config["blank_columns"] = max(0, blank)
    numeric = list(config.get("numeric_columns") or [])
    for i in range(1, config["blank_columns"] + 1):
        if f"col_{i}" not in numeric:
            numeric.append(f"col_{i}")
    config["numeric_columns"] = numeric
    return config


def load_grid_config(config_dir: Path) -> dict[str, Any]:
    """Load grid configuration from ``bomgrid.yaml``, with defaults.

    Args:
        config_dir: Directory that may contain ``bomgrid.yaml``.

    Returns:
        Merged configuration dict.
    """
    config_path = config_dir / CONFIG_FILENAME
    user_config: dict[str, Any] = {}
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(user_config, dict):
            raise ValueError(f"{config_path} must contain a mapping")
    return resolve_config(user_config)


def scratch_columns(config: dict[str, Any]) -> list[str]:
    """Return the ``col_<i>`` scratch column names configured for new rows."""
    return [f"col_{i}" for i in range(1, config.get("blank_columns", 0) + 1)]


def rollup_input_fields(config: dict[str, Any]) -> frozenset[str]:
    """Columns read by ``own_total``; they only ever hold plain values."""
    return frozenset({config["quantity_field"], config["rate_field"], config["extra_field"]})
