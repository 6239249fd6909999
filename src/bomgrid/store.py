"""Canonical ordered row sequence and monotonic identity assignment.

The store never edits its committed sequence in place.  Mutation helpers
(``inserted``, ``removed``, ``moved``) return *new* tuples; the caller
runs the recompute pipeline on the candidate and only then ``commit``s
it, so a half-applied mutation is never visible.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from bomgrid.errors import InvalidReference
from bomgrid.rows import Row


class RowStore:
    """Owns the committed rows and the id counter."""

    def __init__(self) -> None:
        self._rows: tuple[Row, ...] = ()
        self._index: dict[int, int] = {}
        self._next_id = 1

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        """Return a fresh id.  Ids are never reused, even after deletes."""
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def new_row(
        self,
        *,
        level: str | None = None,
        path: Sequence[str] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> Row:
        return Row(
            id=self.allocate_id(),
            level=level,
            path=tuple(path) if path is not None else None,
            fields=dict(fields or {}),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def rows(self) -> tuple[Row, ...]:
        return self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._index

    def index_of(self, row_id: int) -> int:
        """Return the document-order index of *row_id*.

        Raises:
            InvalidReference: If the id is not in the committed sequence.
        """
        try:
            return self._index[row_id]
        except (KeyError, TypeError):
            raise InvalidReference(row_id) from None

    def get(self, row_id: int) -> Row:
        return self._rows[self.index_of(row_id)]

    # ------------------------------------------------------------------
    # Candidate builders (pure)
    # ------------------------------------------------------------------

    def inserted(self, index: int, new_rows: Iterable[Row]) -> tuple[Row, ...]:
        """Return the committed rows with *new_rows* spliced in at *index*."""
        index = max(0, min(index, len(self._rows)))
        return self._rows[:index] + tuple(new_rows) + self._rows[index:]

    def removed(self, row_ids: Iterable[int]) -> tuple[Row, ...]:
        drop = set(row_ids)
        return tuple(row for row in self._rows if row.id not in drop)

    def moved(self, block_ids: Sequence[int], after_id: int) -> tuple[Row, ...]:
        """Extract *block_ids* (kept in document order) and reinsert them after *after_id*.

        *after_id* must not be part of the block.
        """
        block_set = set(block_ids)
        block = tuple(row for row in self._rows if row.id in block_set)
        rest = [row for row in self._rows if row.id not in block_set]
        for pos, row in enumerate(rest):
            if row.id == after_id:
                return tuple(rest[: pos + 1]) + block + tuple(rest[pos + 1:])
        raise InvalidReference(after_id, reason="move target is not outside the moved block")

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self, rows: Sequence[Row]) -> None:
        """Replace the committed sequence with a fully recomputed *rows*."""
        self._rows = tuple(rows)
        self._index = {row.id: i for i, row in enumerate(self._rows)}
        if self._rows:
            self._next_id = max(self._next_id, max(self._index) + 1)
