"""Dependency-tracked formula evaluation over grid cells.

A cell is addressed as ``(row_id, column)``.  A cell is a *formula cell*
when its raw field value is formula text (``"=..."``) or when a column
formula from the config applies to its row.  The engine keeps two maps:

- ``deps``: formula cell -> cells it reads
- ``dependents``: cell -> formula cells that read it

A full ``rebuild`` (after load or any structural mutation) re-derives the
graph and evaluates every formula cell in topological order.  ``on_edit``
re-evaluates only the formula cells transitively dependent on the edited
cells, again in topological order.  Cells that sit on a cycle report
``#CIRC!``; cells reading an errored cell inherit its marker; every other
cell evaluates normally.

Rows and the hierarchy index are borrowed for one pass only.  The graph
itself refers to rows by id and survives between passes.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Any, Iterable, Sequence

from lark import Tree

from bomgrid.errors import InvalidReference
from bomgrid.formulas.errors import (
    CellValueError,
    CircularDependency,
    FormulaError,
    FormulaParseError,
    FormulaRefError,
)
from bomgrid.formulas.evaluator import evaluate_formula
from bomgrid.formulas.parser import extract_all_refs, is_formula, parse_formula
from bomgrid.hierarchy import HierarchyResolver
from bomgrid.rows import CellError, Row, read_only

CellRef = tuple[int, str]


# ---------------------------------------------------------------------------
# Graph ordering
# ---------------------------------------------------------------------------


def _strongly_connected(
    nodes: set[CellRef], deps: dict[CellRef, set[CellRef]]
) -> list[list[CellRef]]:
    """Iterative Tarjan SCC over the subgraph induced by *nodes*."""
    index: dict[CellRef, int] = {}
    low: dict[CellRef, int] = {}
    on_stack: set[CellRef] = set()
    stack: list[CellRef] = []
    result: list[list[CellRef]] = []
    counter = 0

    def edges(node: CellRef):
        return iter(sorted(d for d in deps.get(node, ()) if d in nodes))

    for root in sorted(nodes):
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, edges(root))]
        while work:
            node, it = work[-1]
            advanced = False
            for nxt in it:
                if nxt not in index:
                    index[nxt] = low[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, edges(nxt)))
                    advanced = True
                    break
                if nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component: list[CellRef] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                result.append(sorted(component))
    return result


def topological_order(
    nodes: Iterable[CellRef], deps: dict[CellRef, set[CellRef]]
) -> list[CellRef]:
    """Order *nodes* so every cell follows the cells it reads.

    Only edges between members of *nodes* are considered; dependencies
    outside the set are treated as already up to date.

    Raises:
        CircularDependency: If no such order exists.  ``cycle`` holds the
            members of one strongly connected component.
    """
    pending = set(nodes)
    indegree = {n: 0 for n in pending}
    users: dict[CellRef, list[CellRef]] = defaultdict(list)
    for node in pending:
        for dep in deps.get(node, ()):
            if dep in pending:
                indegree[node] += 1
                users[dep].append(node)

    ready = [n for n, d in indegree.items() if d == 0]
    heapq.heapify(ready)
    order: list[CellRef] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for user in users.get(node, ()):
            indegree[user] -= 1
            if indegree[user] == 0:
                heapq.heappush(ready, user)

    if len(order) < len(pending):
        leftover = pending - set(order)
        for component in _strongly_connected(leftover, deps):
            if len(component) > 1 or component[0] in deps.get(component[0], ()):
                raise CircularDependency(component)
    return order


# ---------------------------------------------------------------------------
# FormulaEngine
# ---------------------------------------------------------------------------


class FormulaEngine:
    """Dependency graph plus evaluator for formula cells.

    Usage::

        engine = FormulaEngine(config)
        rows, recomputed = engine.rebuild(rows, resolver)
        rows, recomputed = engine.on_edit(rows, resolver, [(12, "subtotal")])

    Parameters
    ----------
    config : dict
        Resolved grid config; reads ``column_formulas``.
    """

    def __init__(self, config: dict[str, Any]) -> None:
        self._column_formulas: dict[str, dict[str, str]] = dict(config.get("column_formulas") or {})
        self._trees: dict[str, Tree | FormulaParseError] = {}
        self._formulas: dict[CellRef, str] = {}
        self._deps: dict[CellRef, set[CellRef]] = {}
        self._dependents: dict[CellRef, set[CellRef]] = defaultdict(set)
        self._values: dict[CellRef, Any] = {}
        self._errors: dict[CellRef, FormulaError] = {}
        self.last_cycles: list[CircularDependency] = []
        # Borrowed for the duration of one pass.
        self._rows: list[Row] | None = None
        self._resolver: HierarchyResolver | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def formula_cells(self) -> dict[CellRef, str]:
        return dict(self._formulas)

    def is_formula_cell(self, cell: CellRef) -> bool:
        return cell in self._formulas

    def has_column_formula(self, column: str) -> bool:
        return column in self._column_formulas

    def dependencies_of(self, cell: CellRef) -> set[CellRef]:
        return set(self._deps.get(cell, ()))

    def dependents_of(self, cell: CellRef) -> set[CellRef]:
        return set(self._dependents.get(cell, ()))

    def evaluate(self, cell: CellRef) -> Any:
        """Return the current value of a formula cell (its marker if errored).

        Raises:
            InvalidReference: If *cell* is not a formula cell.
        """
        if cell not in self._formulas:
            raise InvalidReference(cell[0], cell[1], reason="not a formula cell")
        if cell in self._errors:
            return self._errors[cell].marker
        return self._values.get(cell)

    @property
    def errors(self) -> dict[CellRef, FormulaError]:
        return dict(self._errors)

    def cell_errors(self) -> tuple[CellError, ...]:
        return tuple(
            CellError(
                row_id=cell[0],
                column=cell[1],
                code=exc.code,
                marker=exc.marker,
                message=str(exc),
            )
            for cell, exc in sorted(self._errors.items())
        )

    # ------------------------------------------------------------------
    # CellResolver protocol implementation
    # ------------------------------------------------------------------

    def resolve_field(self, row_id: int, column: str) -> Any:
        assert self._rows is not None and self._resolver is not None
        if row_id not in self._resolver:
            raise FormulaRefError(f"#{row_id}!{column}")
        cell = (row_id, column)
        if cell in self._errors:
            raise CellValueError(cell, self._errors[cell].marker)
        if cell in self._formulas:
            return self._values.get(cell)
        return self._rows[self._resolver.index(row_id)].get(column)

    def resolve_structural(self, row_id: int, func: str, column: str) -> list[Any]:
        assert self._rows is not None and self._resolver is not None
        return [self.resolve_field(self._rows[i].id, column) for i in self._related(row_id, func)]

    def _related(self, row_id: int, func: str) -> list[int]:
        assert self._resolver is not None
        idx = self._resolver.index(row_id)
        if func == "CHILDREN":
            return self._resolver.child_indices(idx)
        start, end = self._resolver.subtree_bounds(row_id)
        return list(range(start + 1, end))

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def _compile(self, text: str) -> Tree:
        cached = self._trees.get(text)
        if cached is None:
            try:
                cached = parse_formula(text)
            except FormulaParseError as exc:
                cached = exc
            self._trees[text] = cached
        if isinstance(cached, FormulaParseError):
            raise cached
        return cached

    def _formula_for(self, idx: int, column: str) -> str | None:
        assert self._rows is not None and self._resolver is not None
        raw = self._rows[idx].fields.get(column)
        if is_formula(raw):
            return raw.strip()
        spec = self._column_formulas.get(column)
        if spec is None:
            return None
        applies_to = spec["applies_to"]
        if applies_to == "all":
            return spec["formula"]
        is_group = self._resolver.is_group_index(idx)
        if (applies_to == "group") == is_group:
            return spec["formula"]
        return None

    def _cell_deps(self, cell: CellRef, text: str) -> set[CellRef]:
        try:
            tree = self._compile(text)
        except FormulaParseError:
            return set()
        field_refs, row_refs, structural_refs = extract_all_refs(tree)
        deps = {(cell[0], f) for f in field_refs}
        deps.update(row_refs)
        for func, column in structural_refs:
            assert self._rows is not None
            deps.update((self._rows[i].id, column) for i in self._related(cell[0], func))
        return deps

    def _bind(self, cell: CellRef, text: str) -> None:
        self._unbind(cell)
        deps = self._cell_deps(cell, text)
        self._formulas[cell] = text
        self._deps[cell] = deps
        for dep in deps:
            self._dependents[dep].add(cell)

    def _unbind(self, cell: CellRef) -> None:
        for dep in self._deps.pop(cell, ()):
            users = self._dependents.get(dep)
            if users is not None:
                users.discard(cell)
                if not users:
                    del self._dependents[dep]
        self._formulas.pop(cell, None)
        self._values.pop(cell, None)
        self._errors.pop(cell, None)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _evaluate_one(self, cell: CellRef) -> Any:
        self._errors.pop(cell, None)
        try:
            tree = self._compile(self._formulas[cell])
            value = evaluate_formula(tree, cell[0], self)
            if isinstance(value, complex):
                raise FormulaError("Formula produced a complex number")
        except FormulaError as exc:
            self._errors[cell] = exc
            self._values.pop(cell, None)
            return exc.marker
        except Exception as exc:
            wrapped = FormulaError(str(exc))
            self._errors[cell] = wrapped
            self._values.pop(cell, None)
            return wrapped.marker
        self._values[cell] = value
        return value

    def _evaluate_cells(self, cells: Iterable[CellRef]) -> list[tuple[CellRef, Any]]:
        pending = set(cells)
        recomputed: list[tuple[CellRef, Any]] = []
        self.last_cycles = []
        for cell in pending:
            self._errors.pop(cell, None)
        while True:
            try:
                order = topological_order(pending, self._deps)
                break
            except CircularDependency as exc:
                self.last_cycles.append(exc)
                for cell in exc.cycle:
                    self._errors[cell] = exc
                    self._values.pop(cell, None)
                    recomputed.append((cell, exc.marker))
                pending.difference_update(exc.cycle)
        for cell in order:
            recomputed.append((cell, self._evaluate_one(cell)))
        return recomputed

    def _transitive_dependents(self, changed: Iterable[CellRef]) -> set[CellRef]:
        seen: set[CellRef] = set()
        queue = list(changed)
        while queue:
            current = queue.pop()
            for user in self._dependents.get(current, ()):
                if user not in seen:
                    seen.add(user)
                    queue.append(user)
        return seen

    def _write_back(self, cells: Iterable[CellRef], *, full: bool = False) -> tuple[Row, ...]:
        assert self._rows is not None and self._resolver is not None
        by_row: dict[int, list[CellRef]] = defaultdict(list)
        for cell in cells:
            by_row[cell[0]].append(cell)
        if full:
            for row in self._rows:
                by_row.setdefault(row.id, [])
        out = self._rows
        for row_id, row_cells in by_row.items():
            if row_id not in self._resolver:
                continue
            idx = self._resolver.index(row_id)
            row = out[idx]
            computed = {} if full else dict(row.computed)
            for cell in row_cells:
                if cell in self._formulas:
                    computed[cell[1]] = self.evaluate(cell)
                else:
                    computed.pop(cell[1], None)
            if computed != row.computed:
                out[idx] = row.model_copy(update={"computed": read_only(computed)})
        return tuple(out)

    def _borrow(self, rows: Sequence[Row], resolver: HierarchyResolver) -> None:
        self._rows = list(rows)
        self._resolver = resolver

    def _release(self) -> None:
        self._rows = None
        self._resolver = None

    # ------------------------------------------------------------------
    # Public passes
    # ------------------------------------------------------------------

    def rebuild(
        self, rows: Sequence[Row], resolver: HierarchyResolver
    ) -> tuple[tuple[Row, ...], list[tuple[CellRef, Any]]]:
        """Re-derive the whole graph for *rows* and evaluate every formula cell.

        Returns:
            ``(rows', recomputed)`` where *recomputed* lists
            ``(cell, value)`` in evaluation order.
        """
        self._borrow(rows, resolver)
        try:
            self._formulas.clear()
            self._deps.clear()
            self._dependents.clear()
            self._values.clear()
            self._errors.clear()
            columns = set(self._column_formulas)
            for idx, row in enumerate(self._rows):
                for column in columns.union(row.fields):
                    text = self._formula_for(idx, column)
                    if text is not None:
                        self._bind((row.id, column), text)
            recomputed = self._evaluate_cells(self._formulas)
            logging.getLogger(__name__).debug(
                "formula rebuild: %d formula cells, %d cycles",
                len(self._formulas), len(self.last_cycles),
            )
            return self._write_back(self._formulas, full=True), recomputed
        finally:
            self._release()

    def on_edit(
        self,
        rows: Sequence[Row],
        resolver: HierarchyResolver,
        changed: Iterable[CellRef],
    ) -> tuple[tuple[Row, ...], list[tuple[CellRef, Any]]]:
        """Re-evaluate the formula cells affected by *changed* input cells.

        *resolver* must describe the structure of *rows*.  Edited cells
        whose raw value became (or stopped being) formula text are
        rebound first.

        Returns:
            ``(rows', recomputed)`` with *recomputed* in dependency order:
            a cell always appears after every cell it reads.
        """
        self._borrow(rows, resolver)
        try:
            changed = list(changed)
            targets: set[CellRef] = set()
            touched: set[CellRef] = set()
            for cell in changed:
                if cell[0] not in resolver:
                    continue
                text = self._formula_for(resolver.index(cell[0]), cell[1])
                if text is not None:
                    if self._formulas.get(cell) != text:
                        self._bind(cell, text)
                    targets.add(cell)
                elif cell in self._formulas:
                    self._unbind(cell)
                    touched.add(cell)
            targets.update(self._transitive_dependents(changed))
            recomputed = self._evaluate_cells(targets)
            logging.getLogger(__name__).debug(
                "formula on_edit: %d changed, %d recomputed", len(changed), len(recomputed)
            )
            return self._write_back(targets | touched), recomputed
        finally:
            self._release()
