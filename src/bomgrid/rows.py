"""Row and snapshot models.

Rows are frozen pydantic models.  Nothing mutates a row in place: every
change produces a new row via ``model_copy(update=...)`` and every
mutation produces a new ``Snapshot``.  ``fields`` and ``computed`` are
read-only mappings, so rows shared between successive snapshots (and
the committed store) cannot be edited behind the engine's back.
Document order (the position of a row inside ``Snapshot.rows``) is the
only source of hierarchy; rows never carry a parent pointer.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

import polars as pl
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_serializer, field_validator


OWN_TOTAL = "own_total"
ROLLUP_TOTAL = "rollup_total"

# Columns owned by the engine; never written through ``set_cell_value``.
COMPUTED_COLUMNS = frozenset({OWN_TOTAL, ROLLUP_TOTAL, "id", "sequence"})


def read_only(values: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return a read-only copy of *values*."""
    return MappingProxyType(dict(values))


class Row(BaseModel):
    """One entry of the ordered dataset (a leaf fact or a group header)."""

    model_config = ConfigDict(frozen=True)

    id: int
    sequence: int = 0
    level: str | None = None
    path: tuple[str, ...] | None = None
    fields: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    own_total: float = 0
    rollup_total: float = 0
    computed: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("fields", "computed", mode="after")
    @classmethod
    def _freeze_mapping(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return read_only(value)

    @field_serializer("fields", "computed")
    def _dump_mapping(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    def get(self, column: str, default: Any = None) -> Any:
        """Return the effective value of *column*.

        Formula results shadow raw field values; ``own_total`` and
        ``rollup_total`` resolve to the engine-maintained totals.
        """
        if column == OWN_TOTAL:
            return self.own_total
        if column == ROLLUP_TOTAL:
            return self.rollup_total
        if column in self.computed:
            return self.computed[column]
        return self.fields.get(column, default)

    def with_fields(self, **updates: Any) -> "Row":
        """Return a copy with *updates* merged into ``fields``."""
        return self.model_copy(update={"fields": read_only({**self.fields, **updates})})

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": self.id,
            "sequence": self.sequence,
            "level": self.level,
            "path": " / ".join(self.path) if self.path else None,
        }
        record.update(self.fields)
        record.update(self.computed)
        record[OWN_TOTAL] = self.own_total
        record[ROLLUP_TOTAL] = self.rollup_total
        return record


class CellError(BaseModel):
    """A per-cell error marker reported alongside a snapshot."""

    model_config = ConfigDict(frozen=True)

    row_id: int
    column: str
    code: str
    marker: str
    message: str = ""


class Snapshot(BaseModel):
    """An immutable, fully recomputed view of the grid.

    Snapshots are only ever produced at the end of a mutation; callers
    never observe a partially renumbered or partially rolled-up state.
    """

    model_config = ConfigDict(frozen=True)

    rows: tuple[Row, ...] = ()
    version: int = 0
    grand_total: float = 0
    cell_errors: tuple[CellError, ...] = ()

    _id_index: dict[int, int] | None = PrivateAttr(default=None)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def index_of(self, row_id: int) -> int | None:
        """Return the document-order index of *row_id*, or ``None``."""
        if self._id_index is None:
            self._id_index = {row.id: i for i, row in enumerate(self.rows)}
        return self._id_index.get(row_id)

    def get_row(self, row_id: int) -> Row | None:
        idx = self.index_of(row_id)
        return None if idx is None else self.rows[idx]

    def row_at(self, sequence: int) -> Row | None:
        """Return the row displayed at 1-based *sequence*, or ``None``."""
        if 1 <= sequence <= len(self.rows):
            return self.rows[sequence - 1]
        return None

    def errors_for(self, row_id: int) -> dict[str, CellError]:
        return {e.column: e for e in self.cell_errors if e.row_id == row_id}

    def to_records(self) -> list[dict[str, Any]]:
        return [row.to_record() for row in self.rows]

    def to_frame(self) -> pl.DataFrame:
        """Materialize the snapshot as a Polars DataFrame (one row per grid row)."""
        records = self.to_records()
        columns: list[str] = []
        for rec in records:
            for key in rec:
                if key not in columns:
                    columns.append(key)
        return pl.DataFrame(
            [_column_series(col, [rec.get(col) for rec in records]) for col in columns]
        )


def _column_series(name: str, values: list[Any]) -> pl.Series:
    """Build a typed series; mixed text/number columns fall back to strings."""
    present = [v for v in values if v is not None]
    if present and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present):
        if any(isinstance(v, float) for v in present):
            return pl.Series(name, [None if v is None else float(v) for v in values], dtype=pl.Float64)
        return pl.Series(name, values, dtype=pl.Int64)
    return pl.Series(name, [None if v is None else str(v) for v in values], dtype=pl.Utf8)
