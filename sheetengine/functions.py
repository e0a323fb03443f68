"""Function library for sheet formulas.

Each entry declares its arity and how it treats empty and non-numeric
operands. Eager functions receive evaluated operands, where a range
argument arrives as a RangeList of member values. A RangeList may leave
out empty members; its `size` is always the full area.
Lazy functions (IF) receive the raw argument nodes and an evaluate
callback so that untaken branches are never evaluated.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from sheetengine.formula import ValueTypeError, display, parse_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    impl: Callable
    min_args: int = 0
    max_args: Optional[int] = None
    lazy: bool = False
    description: str = ""
    example: str = ""


class FunctionLibrary:
    """Registry of named functions available to formulas."""

    def __init__(self) -> None:
        self._functions: Dict[str, FunctionSpec] = {}

    def register(self, spec: FunctionSpec, aliases: tuple = ()) -> None:
        for name in (spec.name, *aliases):
            self._functions[name.upper()] = spec
        logger.debug("Registered function %s", spec.name)

    def __contains__(self, name: str) -> bool:
        return name.upper() in self._functions

    def get(self, name: str) -> FunctionSpec:
        return self._functions[name.upper()]

    def names(self) -> List[str]:
        return sorted(self._functions)

    def check_arity(self, name: str, count: int) -> FunctionSpec:
        spec = self.get(name)
        if count < spec.min_args or (spec.max_args is not None and count > spec.max_args):
            raise ValueTypeError(f"{name} got {count} arguments")
        return spec

    def suggestions(self, query: str = "") -> List[dict]:
        """Entries whose name contains *query*, for the formula popup."""
        search = query.lstrip('=').strip().upper()
        return [
            {"name": name, "description": spec.description, "example": spec.example}
            for name, spec in sorted(self._functions.items())
            if search in name
        ]


# ── Coercion helpers ──────────────────────────────────────────────

class RangeList(list):
    """Values read from a range, row-major.

    Empty members may be omitted (a sparse read of a large area), so
    anything that counts operands uses `size` rather than len().
    """

    def __init__(self, values=(), size: Optional[int] = None):
        super().__init__(values)
        self.size = len(self) if size is None else size


def flatten(args) -> Iterator:
    """Yield scalar operands, expanding range arguments in order."""
    for arg in args:
        if isinstance(arg, list):
            yield from arg
        else:
            yield arg


def as_number(value) -> Optional[float]:
    """Number for numbers and numeric text, None for anything else."""
    if isinstance(value, float):
        return value
    if isinstance(value, str):
        return parse_number(value)
    return None


def as_text(value) -> str:
    if value is None:
        return ""
    return display(value)


def truthy(value) -> bool:
    if value is None:
        return False
    if isinstance(value, list):
        raise ValueTypeError("Range used as a condition")
    if isinstance(value, float):
        return value != 0
    text = value.strip().upper()
    if text in ("TRUE", "FALSE"):
        return text == "TRUE"
    if text == "":
        return False
    number = parse_number(text)
    if number is None:
        raise ValueTypeError(f"Not a condition: {value!r}")
    return number != 0


# ── Functions ─────────────────────────────────────────────────────

def fn_sum(args) -> float:
    return sum((as_number(v) or 0.0) for v in flatten(args))


def fn_avg(args) -> float:
    total = 0.0
    count = 0
    for arg in args:
        if isinstance(arg, RangeList):
            total += sum((as_number(v) or 0.0) for v in arg)
            count += arg.size
        else:
            total += as_number(arg) or 0.0
            count += 1
    return total / count if count else 0.0


def fn_count(args) -> float:
    return float(sum(1 for v in flatten(args) if v is not None and v != ""))


def fn_min(args) -> float:
    nums = [n for n in map(as_number, flatten(args)) if n is not None]
    return min(nums) if nums else 0.0


def fn_max(args) -> float:
    nums = [n for n in map(as_number, flatten(args)) if n is not None]
    return max(nums) if nums else 0.0


def fn_concat(args) -> str:
    return "".join(as_text(v) for v in flatten(args))


def fn_if(nodes, evaluate):
    cond = evaluate(nodes[0])
    return evaluate(nodes[1] if truthy(cond) else nodes[2])


def default_library() -> FunctionLibrary:
    lib = FunctionLibrary()
    lib.register(FunctionSpec("SUM", fn_sum,
                              description="Sums a range of cells.", example="=SUM(A1:A5)"))
    lib.register(FunctionSpec("AVG", fn_avg,
                              description="Arithmetic mean.", example="=AVG(B1:B10)"),
                 aliases=("MEDIA", "AVERAGE"))
    lib.register(FunctionSpec("MIN", fn_min, min_args=1,
                              description="Smallest numeric value.", example="=MIN(C1:C5)"))
    lib.register(FunctionSpec("MAX", fn_max, min_args=1,
                              description="Largest numeric value.", example="=MAX(D1:D5)"))
    lib.register(FunctionSpec("COUNT", fn_count,
                              description="Counts non-empty cells.", example="=COUNT(A1:A5)"))
    lib.register(FunctionSpec("IF", fn_if, min_args=3, max_args=3, lazy=True,
                              description="Logical condition.", example='=IF(A1>10, "High", "Low")'))
    lib.register(FunctionSpec("CONCAT", fn_concat, min_args=1,
                              description="Joins text.", example='=CONCAT("Hello ", A1)'))
    return lib


FUNCTIONS = default_library()
