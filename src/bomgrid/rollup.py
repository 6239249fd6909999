"""Per-row totals and bottom-up cost rollups.

``own_total = quantity * unit_rate + extra`` for every row, computed from
the row's own fields with the shared lenient coercion (absent or
non-numeric inputs count as ``0``).  ``rollup_total`` is the sum of the
direct children's ``rollup_total``; a leaf's rollup is its own total and
a group without children rolls up to ``0``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from bomgrid.hierarchy import HierarchyResolver
from bomgrid.numeric import coerce_number
from bomgrid.rows import Row


class RollupEngine:
    """Computes ``own_total`` and ``rollup_total`` over a row sequence.

    Args:
        config: Resolved grid config; reads ``quantity_field``,
            ``rate_field``, ``extra_field``, ``tiers`` and ``path_depth``.
    """

    def __init__(self, config: dict[str, Any]) -> None:
        self.quantity_field = config["quantity_field"]
        self.rate_field = config["rate_field"]
        self.extra_field = config["extra_field"]
        self.tiers = list(config["tiers"])
        self.path_depth = config.get("path_depth")

    @property
    def input_fields(self) -> frozenset[str]:
        return frozenset({self.quantity_field, self.rate_field, self.extra_field})

    def own_total(self, row: Row) -> float:
        fields = row.fields
        qty = coerce_number(fields.get(self.quantity_field))
        rate = coerce_number(fields.get(self.rate_field))
        extra = coerce_number(fields.get(self.extra_field))
        return qty * rate + extra

    def _rollup_at(
        self, idx: int, own: float, rows: Sequence[Row], resolver: HierarchyResolver
    ) -> float:
        if not resolver.is_group_index(idx):
            return own
        return sum(rows[c].rollup_total for c in resolver.child_indices(idx))

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    def propagate(
        self,
        rows: Sequence[Row],
        resolver: HierarchyResolver,
        seed_ids: Iterable[int],
    ) -> tuple[tuple[Row, ...], set[int]]:
        """Recompute the seed rows and every ancestor of them, deepest first.

        *resolver* must describe the structure of *rows* (same ids at the
        same positions); only field values may differ.

        Returns:
            ``(rows', changed_ids)`` where *changed_ids* are the rows whose
            own or rollup total actually changed.
        """
        out = list(rows)
        targets: set[int] = set()
        for row_id in seed_ids:
            if row_id not in resolver:
                continue
            idx = resolver.index(row_id)
            targets.add(idx)
            targets.update(resolver.iter_ancestor_indices(idx))

        changed: set[int] = set()
        # Children always follow their parent, so descending index order
        # finishes every child before its parent is summed.
        for idx in sorted(targets, reverse=True):
            row = out[idx]
            own = self.own_total(row)
            rollup = self._rollup_at(idx, own, out, resolver)
            if own != row.own_total or rollup != row.rollup_total:
                out[idx] = row.model_copy(update={"own_total": own, "rollup_total": rollup})
                changed.add(row.id)
        logging.getLogger(__name__).debug(
            "rollup propagate: %d targets, %d changed", len(targets), len(changed)
        )
        return tuple(out), changed

    def recompute(
        self,
        rows: Sequence[Row],
        changed_row_id: int,
        resolver: HierarchyResolver | None = None,
    ) -> tuple[Row, ...]:
        """Recompute one edited row and its ancestor chain."""
        if resolver is None:
            resolver = HierarchyResolver(rows, self.tiers, self.path_depth)
        new_rows, _ = self.propagate(rows, resolver, [changed_row_id])
        return new_rows

    # ------------------------------------------------------------------
    # Full pass
    # ------------------------------------------------------------------

    def recompute_all(
        self, rows: Sequence[Row], resolver: HierarchyResolver | None = None
    ) -> tuple[Row, ...]:
        """One bottom-up O(N) pass over the whole sequence."""
        if resolver is None:
            resolver = HierarchyResolver(rows, self.tiers, self.path_depth)
        out = list(rows)
        for idx in range(len(out) - 1, -1, -1):
            row = out[idx]
            own = self.own_total(row)
            rollup = self._rollup_at(idx, own, out, resolver)
            if own != row.own_total or rollup != row.rollup_total:
                out[idx] = row.model_copy(update={"own_total": own, "rollup_total": rollup})
        return tuple(out)

    @staticmethod
    def grand_total(rows: Sequence[Row], resolver: HierarchyResolver) -> float:
        """Sum of the top-level rollups (the grid's bottom total row)."""
        return sum(
            row.rollup_total for i, row in enumerate(rows) if resolver.parent_index(i) is None
        )
