"""Sheet engine: sparse grid, dependency graph and recalculation.

Every edit goes through SheetEngine.set_cells(). Edits are applied to
the grid first, then a single pass recomputes the edited cells and
their transitive dependents in dependency order. Cells on a cycle get
#CICLO! and are skipped until a later edit breaks the cycle.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sheetengine.evaluator import Evaluator
from sheetengine.formula import (
    CellAddress, CellContent, ErrorValue, FormulaError, Range, decode,
    display, extract_refs, in_bounds, parse_address, parse_input, parse_range,
)
from sheetengine.functions import FUNCTIONS, FunctionLibrary
from sheetengine.models import CellRecord, CellStyle, SheetData, StoredCell

logger = logging.getLogger(__name__)

DEFAULT_ROWS = 100
DEFAULT_COLS = 26  # A-Z

Edit = Tuple[CellAddress, str]


@dataclass
class EditResult:
    changed: List[CellAddress] = field(default_factory=list)


def _check_address(addr) -> CellAddress:
    if isinstance(addr, str):
        addr = parse_address(addr)
    addr = CellAddress(*addr)
    if not in_bounds(addr):
        raise ValueError(f"Address out of bounds: {tuple(addr)}")
    return addr


# ── Grid ──────────────────────────────────────────────────────────

class Grid:
    """Sparse map of address -> CellRecord. Absent cells are empty.

    num_rows / num_cols only size the UI; addressing is not bounded by them.
    """

    def __init__(self, num_rows: int = DEFAULT_ROWS, num_cols: int = DEFAULT_COLS):
        self.num_rows = num_rows
        self.num_cols = num_cols
        self._cells: Dict[CellAddress, CellRecord] = {}
        self._contents: Dict[CellAddress, CellContent] = {}

    def __contains__(self, addr: CellAddress) -> bool:
        return addr in self._cells

    def __len__(self) -> int:
        return len(self._cells)

    def addresses(self) -> List[CellAddress]:
        return sorted(self._cells)

    def get(self, addr: CellAddress) -> Optional[CellRecord]:
        return self._cells.get(addr)

    def content(self, addr: CellAddress) -> Optional[CellContent]:
        return self._contents.get(addr)

    def value(self, addr: CellAddress):
        """Computed value, or None for an empty cell."""
        record = self._cells.get(addr)
        return record.computed_value if record is not None else None

    def put(self, addr: CellAddress, raw: str, content: CellContent) -> CellRecord:
        record = self._cells.get(addr)
        if record is None:
            record = CellRecord()
            self._cells[addr] = record
        record.raw_input = raw
        self._contents[addr] = content
        return record

    def remove(self, addr: CellAddress) -> None:
        self._cells.pop(addr, None)
        self._contents.pop(addr, None)

    def members(self, rng: Range) -> List[CellAddress]:
        """Non-empty addresses inside *rng*, row-major.

        Walks the range or the populated cells, whichever is smaller.
        """
        if rng.size() <= len(self._cells):
            return [a for a in rng.cells() if a in self._cells]
        return sorted(a for a in self._cells if rng.covers(a))


# ── Dependency graph ──────────────────────────────────────────────

def _strongly_connected(nodes: Iterable, successors: Callable) -> List[list]:
    """Tarjan's algorithm without recursion.

    Components come out sinks first, i.e. reverse topological order.
    """
    index: Dict = {}
    low: Dict = {}
    stack: list = []
    on_stack: set = set()
    result: List[list] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(successors(root)))]
        while work:
            node, it = work[-1]
            descended = False
            for succ in it:
                if succ not in index:
                    index[succ] = low[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(successors(succ))))
                    descended = True
                    break
                if succ in on_stack:
                    low[node] = min(low[node], index[succ])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.append(w)
                    if w == node:
                        break
                result.append(component)
    return result


def _replace_edges(cell, old: set, new: set, reverse: Dict) -> None:
    for ref in old - new:
        readers = reverse.get(ref)
        if readers is None:
            raise RuntimeError(f"Dependency graph corrupted: no reverse edge {ref} -> {cell}")
        readers.discard(cell)
        if not readers:
            del reverse[ref]
    for ref in new - old:
        reverse.setdefault(ref, set()).add(cell)


class DependencyGraph:
    """Tracks which formulas read which cells.

    precedents:       formula cell -> single cells it reads
    dependents:       cell         -> formula cells that read it directly
    range_precedents: formula cell -> ranges it reads
    range_dependents: range        -> formula cells that read it

    Ranges are kept whole; a cell's range readers are found by scanning
    the distinct ranges in use.
    """

    def __init__(self) -> None:
        self.precedents: Dict[CellAddress, Set[CellAddress]] = {}
        self.dependents: Dict[CellAddress, Set[CellAddress]] = {}
        self.range_precedents: Dict[CellAddress, Set[Range]] = {}
        self.range_dependents: Dict[Range, Set[CellAddress]] = {}

    def set_refs(self, cell: CellAddress, refs: Set) -> None:
        """Replace *cell*'s references (addresses and ranges), touching only the edges that differ."""
        cells = {r for r in refs if isinstance(r, CellAddress)}
        ranges = {r.normalized() for r in refs if isinstance(r, Range)}
        for forward, reverse, new in ((self.precedents, self.dependents, cells),
                                      (self.range_precedents, self.range_dependents, ranges)):
            _replace_edges(cell, forward.get(cell, set()), new, reverse)
            if new:
                forward[cell] = new
            else:
                forward.pop(cell, None)

    def remove(self, cell: CellAddress) -> None:
        self.set_refs(cell, set())

    def has_refs(self, cell: CellAddress) -> bool:
        return cell in self.precedents or cell in self.range_precedents

    def readers(self, cell: CellAddress) -> Set[CellAddress]:
        """Formula cells that read *cell* directly or through a range."""
        found = set(self.dependents.get(cell, ()))
        for rng, cells in self.range_dependents.items():
            if rng.covers(cell):
                found.update(cells)
        return found

    def affected(self, roots: Iterable[CellAddress]) -> Set[CellAddress]:
        """*roots* plus every cell that transitively reads one of them."""
        seen = set(roots)
        queue = list(seen)
        while queue:
            cell = queue.pop()
            for dep in self.readers(cell):
                if dep not in seen:
                    seen.add(dep)
                    queue.append(dep)
        return seen

    def is_self_referencing(self, cell: CellAddress) -> bool:
        if cell in self.precedents.get(cell, ()):
            return True
        return any(rng.covers(cell) for rng in self.range_precedents.get(cell, ()))

    def schedule(self, cells: Set[CellAddress]) -> List[list]:
        """Group *cells* into components, dependencies before dependents.

        A component with more than one cell, or a single self-referencing
        cell, is a cycle.
        """
        def successors(cell):
            return sorted(d for d in self.readers(cell) if d in cells)

        components = _strongly_connected(sorted(cells), successors)
        components.reverse()
        return components


# ── Recalculation ─────────────────────────────────────────────────

class RecalcScheduler:
    """Applies edits and recomputes exactly the affected subgraph."""

    def __init__(self, grid: Grid, graph: DependencyGraph,
                 functions: Optional[FunctionLibrary] = None):
        self.grid = grid
        self.graph = graph
        self.functions = functions or FUNCTIONS
        self.evaluator = Evaluator(grid.value, self.functions, grid.members)

    def apply(self, edits: Iterable[Edit]) -> List[CellAddress]:
        """Write all edits to the grid, then run one recompute pass.

        Every address is checked before anything is written, so a bad
        batch leaves the sheet untouched.
        """
        checked = [(_check_address(addr), raw) for addr, raw in edits]
        before: Dict[CellAddress, str] = {}
        for addr, raw in checked:
            if addr not in before:
                before[addr] = display(self.grid.value(addr))
            self._write(addr, raw)
        return self.recompute(before.keys(), before)

    def _write(self, addr: CellAddress, raw: str) -> None:
        if raw is None or not raw.strip():
            self.grid.remove(addr)
            self.graph.remove(addr)
            return
        content = parse_input(raw, self.functions)
        self.grid.put(addr, raw, content)
        self.graph.set_refs(addr, extract_refs(content.formula))

    def recompute(self, roots: Iterable[CellAddress],
                  before: Optional[Dict[CellAddress, str]] = None) -> List[CellAddress]:
        """Recompute *roots* and their dependents; return cells whose display changed."""
        before = before or {}
        affected = self.graph.affected(roots)
        changed: List[CellAddress] = []

        for component in self.graph.schedule(affected):
            if len(component) > 1 or self.graph.is_self_referencing(component[0]):
                logger.warning("Circular reference: %s", ", ".join(str(c) for c in sorted(component)))
                for addr in sorted(component):
                    self._store(addr, ErrorValue.CYCLE, before, changed)
                continue
            addr = component[0]
            self._store(addr, self._compute(addr), before, changed)

        logger.debug("Recalculated %d cells, %d changed", len(affected), len(changed))
        return changed

    def _compute(self, addr: CellAddress):
        content = self.grid.content(addr)
        if content is None:
            if self.graph.has_refs(addr):
                raise RuntimeError(f"Dependency graph out of sync: {addr} has edges but no content")
            return None
        if not content.is_formula:
            return content.literal
        try:
            return self.evaluator.evaluate(content.formula)
        except FormulaError as e:
            return e.code
        except Exception:
            logger.warning("Unexpected error evaluating %s", addr, exc_info=True)
            return ErrorValue.ERROR

    def _store(self, addr: CellAddress, value, before: Dict[CellAddress, str],
               changed: List[CellAddress]) -> None:
        old = before.get(addr)
        if old is None:
            old = display(self.grid.value(addr))
        record = self.grid.get(addr)
        if record is not None:
            record.computed_value = value
        if display(value) != old:
            changed.append(addr)


# ── Public engine ─────────────────────────────────────────────────

class SheetEngine:
    """Single-sheet formula engine. Synchronous: every call returns fully recomputed."""

    def __init__(self, num_rows: int = DEFAULT_ROWS, num_cols: int = DEFAULT_COLS,
                 functions: Optional[FunctionLibrary] = None):
        self.grid = Grid(num_rows, num_cols)
        self.graph = DependencyGraph()
        self.scheduler = RecalcScheduler(self.grid, self.graph, functions)
        self._listeners: List[Callable[[List[CellAddress]], None]] = []

    # ── edits ────────────────────────────────────────────────────────

    def set_cell_input(self, address, raw: str) -> EditResult:
        return self.set_cells([(address, raw)])

    def set_cells(self, edits: Iterable[Edit]) -> EditResult:
        """Apply a batch of edits with a single recompute pass."""
        changed = self.scheduler.apply(edits)
        self._notify(changed)
        return EditResult(changed)

    def set_cell_style(self, address, style: CellStyle) -> CellRecord:
        addr = _check_address(address)
        record = self.grid.get(addr)
        if record is None:
            raise KeyError(str(addr))
        record.style = style.model_copy()
        return record.model_copy(deep=True)

    def recalculate_all(self) -> EditResult:
        changed = self.scheduler.recompute(self.grid.addresses())
        self._notify(changed)
        return EditResult(changed)

    # ── reads ────────────────────────────────────────────────────────

    def get_cell(self, address) -> CellRecord:
        record = self.grid.get(_check_address(address))
        if record is None:
            return CellRecord()
        return record.model_copy(deep=True)

    def evaluate_range_values(self, rng: Range) -> list:
        """Current values of every cell in *rng*, row-major; empty cells as ""."""
        values = []
        if isinstance(rng, str):
            rng = parse_range(rng)
        rng = Range(CellAddress(*rng[0]), CellAddress(*rng[1]))
        for addr in rng.cells():
            value = self.grid.value(addr)
            values.append("" if value is None else value)
        return values

    def cells(self) -> Iterator[Tuple[CellAddress, CellRecord]]:
        for addr in self.grid.addresses():
            yield addr, self.get_cell(addr)

    # ── notification ─────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[List[CellAddress]], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, changed: List[CellAddress]) -> None:
        if not changed:
            return
        for listener in list(self._listeners):
            listener(list(changed))

    # ── persistence ──────────────────────────────────────────────────

    def snapshot(self) -> SheetData:
        return SheetData(
            num_rows=self.grid.num_rows,
            num_cols=self.grid.num_cols,
            cells={
                str(addr): StoredCell(raw_input=record.raw_input, style=record.style.model_copy())
                for addr, record in ((a, self.grid.get(a)) for a in self.grid.addresses())
            },
        )

    @classmethod
    def from_snapshot(cls, data: SheetData, functions: Optional[FunctionLibrary] = None) -> "SheetEngine":
        """Rebuild an engine; computed values come from one full recompute pass."""
        engine = cls(data.num_rows, data.num_cols, functions)
        edits = []
        for key, stored in data.cells.items():
            addr = decode(key)
            if addr is None:
                raise ValueError(f"Bad cell address in sheet data: {key}")
            edits.append((addr, stored.raw_input))
        engine.scheduler.apply(edits)
        for key, stored in data.cells.items():
            record = engine.grid.get(decode(key))
            if record is not None:
                record.style = stored.style.model_copy()
        return engine
