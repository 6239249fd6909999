"""Mutation service: the single entry point that edits the grid.

Every public mutation runs the same pipeline to completion before it
returns:

    candidate rows -> renumber -> hierarchy index -> rollup -> formulas -> Snapshot

The committed rows are only replaced at the very end, so callers never
observe a half-renumbered or half-rolled-up grid.  Recoverable failures
(unknown ids, writes to computed columns, moves that would split a
subtree) leave the grid untouched: the previous snapshot is returned and
a warning event is emitted.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Sequence

from bomgrid.config import resolve_config, scratch_columns
from bomgrid.errors import GridError, InvalidReference, NonNumericInput, StructuralViolation
from bomgrid.formula_graph import CellRef, FormulaEngine
from bomgrid.formulas.errors import ERROR_MARKERS
from bomgrid.formulas.parser import is_formula
from bomgrid.hierarchy import HierarchyResolver, deepest_path
from bomgrid.logging.events import (
    EventLevel,
    EventType,
    emit,
    emit_warning,
    make_mutation_event,
)
from bomgrid.numeric import parse_clipboard_value, parse_number
from bomgrid.rollup import RollupEngine
from bomgrid.rows import COMPUTED_COLUMNS, OWN_TOTAL, ROLLUP_TOTAL, Row, Snapshot
from bomgrid.sequencer import renumber
from bomgrid.store import RowStore

log = logging.getLogger(__name__)

_SEED_META_KEYS = frozenset({"id", "sequence", "level", "path", "fields"})


class GridState(str, Enum):
    stable = "stable"
    mutating = "mutating"


class GridService:
    """Owns the row store and both recompute engines.

    Usage::

        grid = GridService({"tiers": ["group", "subgroup", "leaf"]})
        snap = grid.load_seed(rows)
        snap = grid.set_cell_value(snap.rows[2].id, "quantity", 4)

    Parameters
    ----------
    config : dict, optional
        Overrides merged onto ``DEFAULT_CONFIG`` (see ``bomgrid.config``).
    """

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.config = resolve_config(dict(config or {}))
        self.tiers: list[str] = self.config["tiers"]
        self._store = RowStore()
        self._rollup = RollupEngine(self.config)
        self._formulas = FormulaEngine(self.config)
        self._fixed_path_depth = self.config["path_depth"] is not None
        self._resolver = HierarchyResolver((), self.tiers)
        self._snapshot = Snapshot()
        self._state = GridState.stable
        self.last_recomputed: list[tuple[CellRef, Any]] = []
        self.last_error: GridError | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def state(self) -> GridState:
        return self._state

    @property
    def row_count(self) -> int:
        return self._snapshot.row_count

    def row_at(self, sequence: int) -> Row | None:
        return self._snapshot.row_at(sequence)

    def ancestors_of(self, row_id: int) -> list[Row]:
        """Ancestors of *row_id*, top-level row first.

        Raises:
            InvalidReference: If *row_id* is unknown.
        """
        return self._resolver.ancestors_of(row_id)

    def children_of(self, row_id: int) -> list[Row]:
        return self._resolver.children_of(row_id)

    def is_group(self, row_id: int) -> bool:
        return self._resolver.is_group(row_id)

    def value_of(self, row_id: int, column: str) -> Any:
        """Effective value of one cell (formula result, total or raw field)."""
        row = self._snapshot.get_row(row_id)
        if row is None:
            raise InvalidReference(row_id, column)
        return row.get(column)

    # ------------------------------------------------------------------
    # Seed load
    # ------------------------------------------------------------------

    def load_seed(self, base_rows: Iterable[Mapping[str, Any] | Row]) -> Snapshot:
        """Replace the grid with *base_rows* and compute every derived value.

        Each seed entry is a ``Row`` or a mapping with optional ``level``,
        ``path`` and ``fields`` keys; any other keys are taken as fields.
        Seed-provided ids are ignored.  The seed is truncated to
        ``max_seed_rows`` and padded with blank rows up to
        ``working_set_size`` when those are configured.
        """
        with self._mutating():
            seed = list(base_rows)
            max_rows = self.config.get("max_seed_rows")
            if max_rows is not None:
                seed = seed[: int(max_rows)]

            scratch = scratch_columns(self.config)
            rows: list[Row] = []
            for entry in seed:
                level, path, fields = self._seed_entry(entry)
                for col in scratch:
                    fields.setdefault(col, None)
                rows.append(self._store.new_row(level=level, path=path, fields=fields))

            target = self.config.get("working_set_size")
            if target is not None:
                for _ in range(int(target) - len(rows)):
                    rows.append(self._store.new_row(path=(), fields=self._blank_fields()))

            if not self._fixed_path_depth:
                self.config["path_depth"] = deepest_path(rows) or None
                self._rollup.path_depth = self.config["path_depth"]

            rows = renumber(rows)
            resolver = self._index(rows)
            rows = self._rollup.recompute_all(rows, resolver)
            rows, recomputed = self._formulas.rebuild(rows, resolver)
            snap = self._publish(rows, resolver, recomputed)
            emit(make_mutation_event(
                EventType.seed_loaded,
                EventLevel.info,
                f"Loaded {len(seed)} seed rows ({snap.row_count} total)",
                version=snap.version,
                extra={"row_count": snap.row_count, "seed_rows": len(seed)},
            ))
            return snap

    def _seed_entry(self, entry: Mapping[str, Any] | Row) -> tuple[str | None, tuple[str, ...] | None, dict[str, Any]]:
        if isinstance(entry, Row):
            level, path, fields = entry.level, entry.path, dict(entry.fields)
        else:
            level = entry.get("level")
            path = entry.get("path")
            if path is not None:
                path = tuple(str(p) for p in path)
            fields = dict(entry.get("fields") or {})
            for key, value in entry.items():
                if key not in _SEED_META_KEYS:
                    fields[key] = value
        for column, value in fields.items():
            fields[column] = self._coerce_input(column, value)
        return (None if level is None else str(level)), path, fields

    def _blank_fields(self) -> dict[str, Any]:
        columns = list(self.config["input_columns"]) + scratch_columns(self.config)
        return {col: None for col in columns}

    # ------------------------------------------------------------------
    # Structural mutations
    # ------------------------------------------------------------------

    def insert_below(self, anchor_id: int) -> Snapshot:
        """Insert a blank row that inherits the anchor's level/path.

        The new row lands right after the anchor, or after the anchor's
        whole subtree when the anchor is a group.
        """
        with self._mutating():
            try:
                anchor = self._store.get(anchor_id)
                _, end = self._resolver.subtree_bounds(anchor_id)
            except InvalidReference as exc:
                return self._reject(exc, "insert_below")

            row = self._store.new_row(level=anchor.level, path=anchor.path, fields=self._blank_fields())
            snap = self._commit_structure(self._store.inserted(end, [row]))
            emit(make_mutation_event(
                EventType.row_inserted,
                EventLevel.info,
                f"Inserted row {row.id} below {anchor_id}",
                version=snap.version,
                row_id=row.id,
                extra={"anchor_id": anchor_id, "sequence": end + 1},
            ))
            return snap

    def delete_selected(self, row_ids: Iterable[int]) -> Snapshot:
        """Remove the named rows.

        With ``delete_cascade`` off (the default) only the named rows go;
        their children re-attach to the nearest preceding open row.  With
        it on, each named row takes its whole subtree with it.  Any unknown
        id rejects the whole call.
        """
        with self._mutating():
            ids = list(dict.fromkeys(row_ids))
            try:
                for row_id in ids:
                    self._store.index_of(row_id)
            except InvalidReference as exc:
                return self._reject(exc, "delete_selected")
            if not ids:
                return self._snapshot

            doomed = set(ids)
            if self.config.get("delete_cascade"):
                for row_id in ids:
                    doomed.update(r.id for r in self._resolver.descendants_of(row_id))

            snap = self._commit_structure(self._store.removed(doomed))
            emit(make_mutation_event(
                EventType.rows_deleted,
                EventLevel.info,
                f"Deleted {len(doomed)} rows",
                version=snap.version,
                row_ids=sorted(doomed),
                extra={"cascade": bool(self.config.get("delete_cascade"))},
            ))
            return snap

    def move_subtree(self, row_ids: int | Sequence[int], target_anchor_id: int) -> Snapshot:
        """Move one or more whole subtrees to just after *target_anchor_id*.

        The moved rows stay in their current relative order.  Only the
        roots of the moved block may change parent; a move that would
        re-parent any other row, or whose target lies inside the block,
        is rejected with the previous snapshot.
        """
        with self._mutating():
            roots = [row_ids] if isinstance(row_ids, int) else list(dict.fromkeys(row_ids))
            try:
                self._store.index_of(target_anchor_id)
                block: set[int] = set()
                for root in roots:
                    start, end = self._resolver.subtree_bounds(root)
                    block.update(r.id for r in self._store.rows[start:end])
            except InvalidReference as exc:
                return self._reject(exc, "move_subtree")
            if not roots:
                return self._snapshot

            try:
                if target_anchor_id in block:
                    raise StructuralViolation(
                        f"Move target {target_anchor_id} is inside the moved block"
                    )
                candidate = self._store.moved(sorted(block, key=self._store.index_of), target_anchor_id)
                old_parents = self._resolver.parent_ids()
                new_parents = self._index(candidate).parent_ids()
                root_set = set(roots)
                split = sorted(
                    rid for rid, parent in new_parents.items()
                    if rid not in root_set and parent != old_parents[rid]
                )
                if split:
                    raise StructuralViolation(
                        f"Move would re-parent rows outside the moved block: {split}"
                    )
            except StructuralViolation as exc:
                return self._reject(exc, "move_subtree")

            snap = self._commit_structure(candidate)
            emit(make_mutation_event(
                EventType.subtree_moved,
                EventLevel.info,
                f"Moved {len(block)} rows below {target_anchor_id}",
                version=snap.version,
                row_ids=sorted(block),
                extra={"target_id": target_anchor_id, "roots": roots},
            ))
            return snap

    # ------------------------------------------------------------------
    # Cell edits
    # ------------------------------------------------------------------

    def set_cell_value(self, row_id: int, column: str, value: Any) -> Snapshot:
        """Write one input cell and recompute what depends on it.

        Numeric columns parse the value (blank becomes ``None``; text that
        does not parse is stored as ``None`` with a warning).  Formula
        text (``"=..."``) is stored as-is and makes the cell a formula
        cell.  No renumbering happens for cell edits.
        """
        with self._mutating():
            try:
                self._check_writable(row_id, column, value)
            except InvalidReference as exc:
                return self._reject(exc, "set_cell_value")
            snap = self._apply_edits([(row_id, column, self._coerce_input(column, value, row_id))])
            emit(make_mutation_event(
                EventType.cell_updated,
                EventLevel.info,
                f"Set #{row_id}!{column}",
                version=snap.version,
                row_id=row_id,
                extra={"column": column, "recomputed": len(self.last_recomputed)},
            ))
            return snap

    def paste_cells(self, edits: Iterable[tuple[int, str, Any]]) -> Snapshot:
        """Apply a clipboard block of ``(row_id, column, value)`` edits at once.

        Blank values become ``None``, thousands separators are stripped from
        numbers and other text passes through.  Edits naming unknown rows
        or computed columns are skipped with a warning; the rest are applied
        with a single recompute.
        """
        with self._mutating():
            accepted: list[tuple[int, str, Any]] = []
            skipped = 0
            for row_id, column, raw in edits:
                try:
                    self._check_writable(row_id, column, raw)
                except InvalidReference as exc:
                    self._warn(exc, "paste_cells")
                    skipped += 1
                    continue
                value = parse_clipboard_value(raw)
                accepted.append((row_id, column, self._coerce_input(column, value, row_id)))
            if not accepted:
                return self._snapshot

            snap = self._apply_edits(accepted)
            emit(make_mutation_event(
                EventType.cells_pasted,
                EventLevel.info,
                f"Pasted {len(accepted)} cells",
                version=snap.version,
                row_ids=sorted({e[0] for e in accepted}),
                extra={"cells": len(accepted), "skipped": skipped},
            ))
            return snap

    def _check_writable(self, row_id: int, column: str, value: Any = None) -> None:
        self._store.index_of(row_id)
        if column in COMPUTED_COLUMNS:
            raise InvalidReference(row_id, column, reason="computed column")
        if self._formulas.has_column_formula(column):
            raise InvalidReference(row_id, column, reason="column formula")
        if column in self._rollup.input_fields and is_formula(value):
            raise InvalidReference(row_id, column, reason="rollup inputs cannot hold formulas")

    def _coerce_input(self, column: str, value: Any, row_id: int | None = None) -> Any:
        rollup_input = column in self._rollup.input_fields
        if column not in self.config["numeric_columns"] and not rollup_input:
            return value
        if is_formula(value) and not rollup_input:
            return value
        try:
            return parse_number(value, column)
        except NonNumericInput as exc:
            emit_warning(
                EventType.non_numeric_input,
                str(exc),
                {"row_id": row_id, "column": column, "value": repr(value)},
                error_code=exc.code,
            )
            return None

    def _apply_edits(self, edits: Sequence[tuple[int, str, Any]]) -> Snapshot:
        rows = list(self._store.rows)
        resolver = self._resolver
        changed: list[CellRef] = []
        rollup_seeds: set[int] = set()
        for row_id, column, value in edits:
            idx = resolver.index(row_id)
            rows[idx] = rows[idx].with_fields(**{column: value})
            changed.append((row_id, column))
            if column in self._rollup.input_fields:
                rollup_seeds.add(row_id)

        # Cell edits never change structure, so the current index still applies.
        if rollup_seeds:
            new_rows, changed_ids = self._rollup.propagate(rows, resolver, rollup_seeds)
            rows = list(new_rows)
            for rid in sorted(changed_ids):
                changed.extend([(rid, OWN_TOTAL), (rid, ROLLUP_TOTAL)])
        new_rows, recomputed = self._formulas.on_edit(rows, resolver, changed)
        return self._publish(new_rows, resolver, recomputed)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @contextmanager
    def _mutating(self) -> Iterator[None]:
        if self._state is GridState.mutating:
            raise RuntimeError("GridService mutations cannot be nested")
        self._state = GridState.mutating
        self.last_error = None
        try:
            yield
        finally:
            self._state = GridState.stable

    def _index(self, rows: Sequence[Row]) -> HierarchyResolver:
        return HierarchyResolver(rows, self.tiers, self.config["path_depth"])

    def _commit_structure(self, candidate: Sequence[Row]) -> Snapshot:
        """Renumber, re-index and recompute after an insert/delete/move."""
        old_parents = self._resolver.parent_ids()
        rows = renumber(candidate)
        resolver = self._index(rows)
        new_parents = resolver.parent_ids()

        # Every row whose set of children changed needs a fresh rollup.
        seeds: set[int] = set()
        for rid, parent in new_parents.items():
            if rid not in old_parents:
                seeds.add(rid)
            elif old_parents[rid] != parent:
                seeds.add(rid)
                if old_parents[rid] is not None:
                    seeds.add(old_parents[rid])
        for rid, parent in old_parents.items():
            if rid not in new_parents and parent is not None:
                seeds.add(parent)

        rows, _ = self._rollup.propagate(rows, resolver, seeds)
        rows, recomputed = self._formulas.rebuild(rows, resolver)
        return self._publish(rows, resolver, recomputed)

    def _publish(
        self,
        rows: Sequence[Row],
        resolver: HierarchyResolver,
        recomputed: list[tuple[CellRef, Any]],
    ) -> Snapshot:
        snap = Snapshot(
            rows=tuple(rows),
            version=self._snapshot.version + 1,
            grand_total=RollupEngine.grand_total(rows, resolver),
            cell_errors=self._formulas.cell_errors(),
        )
        self._store.commit(snap.rows)
        self._resolver = resolver
        self._snapshot = snap
        self.last_recomputed = recomputed

        for cycle in self._formulas.last_cycles:
            emit_warning(
                EventType.circular_dependency,
                str(cycle),
                {"cells": [f"#{r}!{c}" for r, c in cycle.cycle]},
                error_code=cycle.code,
            )
        failed = [
            f"#{r}!{c}" for (r, c), value in recomputed
            if isinstance(value, str) and value in ERROR_MARKERS and value != "#CIRC!"
        ]
        if failed:
            emit_warning(
                EventType.formula_error,
                f"{len(failed)} formula cells hold errors",
                {"cells": failed[:50]},
            )
        log.debug("published snapshot v%d (%d rows)", snap.version, snap.row_count)
        return snap

    def _warn(self, exc: GridError, operation: str) -> None:
        self.last_error = exc
        event_type = (
            EventType.structural_violation
            if isinstance(exc, StructuralViolation)
            else EventType.invalid_reference
        )
        context: dict[str, Any] = {"operation": operation}
        if isinstance(exc, InvalidReference):
            context["row_id"] = exc.row_id
            if exc.column is not None:
                context["column"] = exc.column
        emit_warning(event_type, str(exc), context, error_code=exc.code)

    def _reject(self, exc: GridError, operation: str) -> Snapshot:
        """Record a recoverable failure and hand back the unchanged snapshot."""
        self._warn(exc, operation)
        log.debug("%s rejected: %s", operation, exc)
        return self._snapshot
