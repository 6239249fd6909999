"""Derive parent/child/ancestor relationships from a flat ordered row list.

No row stores a parent pointer.  The tree is re-derived from document
order plus each row's depth descriptor:

- **level rows** carry a tier tag from the configured ordered ``tiers``
  list; a row's parent is the nearest preceding row of a strictly
  shallower tier.
- **path rows** carry the label chain from the root to themselves; a
  row's parent is the nearest preceding open row whose path is a proper
  prefix of its own (normally exactly one label shorter).
- **flat rows** (no level, empty path) are always top-level and never
  contain other rows.

A single forward scan with a stack of currently open ancestors builds the
whole index in O(N).  An ancestor stays open only until the first row that
is not its descendant, so every subtree is a contiguous block.  Point
queries are O(1) lookups into that index.  The index belongs to one
immutable row tuple and is discarded with it.
"""

from __future__ import annotations

from typing import Iterator, Sequence

from bomgrid.errors import InvalidReference
from bomgrid.rows import Row


RowRef = Row | int


class HierarchyResolver:
    """Hierarchy index over one immutable row sequence.

    Parameters
    ----------
    rows : Sequence[Row]
        Rows in document order.
    tiers : Sequence[str]
        Ordered level tags, shallowest first.  Unknown tags rank as the
        deepest tier.
    path_depth : int, optional
        Path length of a leaf row.  Path rows shorter than this are groups
        even without children.  Defaults to the deepest path in *rows*.
    """

    def __init__(
        self,
        rows: Sequence[Row],
        tiers: Sequence[str],
        path_depth: int | None = None,
    ) -> None:
        self._rows = tuple(rows)
        if path_depth is None:
            path_depth = deepest_path(self._rows)
        self._path_depth = path_depth
        self._tier_rank = {tier: i for i, tier in enumerate(tiers)}
        self._leaf_rank = max(len(tiers) - 1, 0)

        n = len(self._rows)
        self._ids = {row.id: i for i, row in enumerate(self._rows)}
        self._parent: list[int | None] = [None] * n
        self._end: list[int] = [n] * n
        self._children: list[list[int]] = [[] for _ in range(n)]
        self._build()

    # ------------------------------------------------------------------
    # Index construction
    # ------------------------------------------------------------------

    @staticmethod
    def _is_flat(row: Row) -> bool:
        return row.level is None and not row.path

    def tier_rank(self, row: Row) -> int:
        """Rank of a row's depth descriptor (0 = shallowest)."""
        if row.level is not None:
            return self._tier_rank.get(row.level, self._leaf_rank)
        if row.path:
            return len(row.path) - 1
        return 0

    def _opens(self, anc: Row, row: Row) -> bool:
        """True if *anc* can contain *row* (i.e. *row* is deeper in *anc*'s branch)."""
        if self._is_flat(anc) or self._is_flat(row):
            return False
        if anc.path and row.path and anc.level is None and row.level is None:
            k = len(anc.path)
            return k < len(row.path) and row.path[:k] == anc.path
        return self.tier_rank(anc) < self.tier_rank(row)

    def _build(self) -> None:
        rows = self._rows
        stack: list[int] = []
        for i, row in enumerate(rows):
            while stack and not self._opens(rows[stack[-1]], row):
                self._end[stack.pop()] = i
            if stack:
                parent = stack[-1]
                self._parent[i] = parent
                self._children[parent].append(i)
            stack.append(i)
        # Rows still open run to the end of the sequence (already defaulted to n).

    # ------------------------------------------------------------------
    # Index-level access (used by the engines)
    # ------------------------------------------------------------------

    @property
    def rows(self) -> tuple[Row, ...]:
        return self._rows

    def index(self, ref: RowRef) -> int:
        """Resolve a row or row id to its document-order index.

        Raises:
            InvalidReference: If the id is not part of this sequence.
        """
        row_id = ref.id if isinstance(ref, Row) else ref
        try:
            return self._ids[row_id]
        except (KeyError, TypeError):
            raise InvalidReference(row_id) from None

    def __contains__(self, ref: object) -> bool:
        row_id = ref.id if isinstance(ref, Row) else ref
        return row_id in self._ids

    def parent_index(self, idx: int) -> int | None:
        return self._parent[idx]

    def child_indices(self, idx: int) -> list[int]:
        return list(self._children[idx])

    def iter_ancestor_indices(self, idx: int) -> Iterator[int]:
        """Yield ancestor indices nearest first."""
        p = self._parent[idx]
        while p is not None:
            yield p
            p = self._parent[p]

    # ------------------------------------------------------------------
    # Public queries
    # ------------------------------------------------------------------

    def parent_of(self, ref: RowRef) -> Row | None:
        p = self._parent[self.index(ref)]
        return None if p is None else self._rows[p]

    def children_of(self, ref: RowRef) -> list[Row]:
        """Direct children, in document order."""
        return [self._rows[c] for c in self._children[self.index(ref)]]

    def subtree_bounds(self, ref: RowRef) -> tuple[int, int]:
        """Half-open ``[start, end)`` covering the row and all its descendants."""
        idx = self.index(ref)
        return idx, self._end[idx]

    def descendants_of(self, ref: RowRef) -> list[Row]:
        start, end = self.subtree_bounds(ref)
        return list(self._rows[start + 1:end])

    def ancestors_of(self, ref: RowRef) -> list[Row]:
        """Ancestors from the top-level row down to the immediate parent."""
        chain = [self._rows[a] for a in self.iter_ancestor_indices(self.index(ref))]
        chain.reverse()
        return chain

    def depth_of(self, ref: RowRef) -> int:
        """Number of ancestors (0 for top-level rows)."""
        return sum(1 for _ in self.iter_ancestor_indices(self.index(ref)))

    def is_group(self, ref: RowRef) -> bool:
        """A row is a group if it has children or sits above the deepest tier.

        For path rows the deepest tier is ``path_depth``, so a path header
        whose last child was deleted stays a group.
        """
        return self.is_group_index(self.index(ref))

    def is_group_index(self, idx: int) -> bool:
        if self._children[idx]:
            return True
        row = self._rows[idx]
        if row.level is not None:
            return self.tier_rank(row) < self._leaf_rank
        return bool(row.path) and len(row.path) < self._path_depth

    def top_level(self) -> list[Row]:
        return [row for i, row in enumerate(self._rows) if self._parent[i] is None]

    def parent_ids(self) -> dict[int, int | None]:
        """Map every row id to its parent id (``None`` for top-level rows)."""
        rows = self._rows
        return {
            row.id: (None if self._parent[i] is None else rows[self._parent[i]].id)
            for i, row in enumerate(rows)
        }


def deepest_path(rows: Sequence[Row]) -> int:
    """Length of the longest path among path-tagged rows (0 when there are none)."""
    return max((len(row.path) for row in rows if row.level is None and row.path), default=0)
