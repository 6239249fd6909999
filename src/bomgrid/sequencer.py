"""Display ordinals ("row numbers") in document order."""

from __future__ import annotations

from typing import Sequence

from bomgrid.rows import Row


def renumber(rows: Sequence[Row]) -> tuple[Row, ...]:
    """Return *rows* with ``sequence == position + 1``; nothing else changes.

    Rows whose sequence is already correct are passed through as-is.
    """
    return tuple(
        row if row.sequence == i else row.model_copy(update={"sequence": i})
        for i, row in enumerate(rows, start=1)
    )


def is_contiguous(rows: Sequence[Row]) -> bool:
    """True if sequences are exactly ``1..N`` in document order."""
    return all(row.sequence == i for i, row in enumerate(rows, start=1))
