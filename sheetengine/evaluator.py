"""Expression tree evaluation.

Reads referenced cells through a resolver callback and never recurses
into other cells' formulas: the recalc scheduler guarantees every
dependency was computed first.
"""

import math
from typing import Callable, Iterable, Optional

from sheetengine.formula import (
    Binary, Call, CellAddress, DivisionByZeroError, ErrorValue, EvalError,
    Failed, FormulaError, Node, Number, Range, RangeRef, Ref, Text, Unary,
    ValueTypeError, parse_number,
)
from sheetengine.functions import FUNCTIONS, FunctionLibrary, RangeList

# resolve(address) -> float | str | ErrorValue | None (empty)
Resolver = Callable[[CellAddress], object]
# members(range) -> addresses worth reading, row-major; may skip empty cells
Members = Callable[[Range], Iterable[CellAddress]]


def _finite(value: float) -> float:
    if not math.isfinite(value):
        raise DivisionByZeroError("Non-finite result")
    return value


def to_number(value) -> float:
    """Arithmetic coercion: empty is 0, numeric text is its number."""
    if value is None:
        return 0.0
    if isinstance(value, list):
        raise ValueTypeError("Range used as a number")
    if isinstance(value, float):
        return value
    if value == "":
        return 0.0
    number = parse_number(value)
    if number is None:
        raise ValueTypeError(f"Not a number: {value!r}")
    return number


def _compare(op: str, left, right) -> float:
    if isinstance(left, list) or isinstance(right, list):
        raise ValueTypeError("Range used in a comparison")
    if left is None:
        left = "" if isinstance(right, str) else 0.0
    if right is None:
        right = "" if isinstance(left, str) else 0.0
    if isinstance(left, str) and isinstance(right, str):
        left, right = left.upper(), right.upper()
    elif isinstance(left, str) or isinstance(right, str):
        a = parse_number(left) if isinstance(left, str) else left
        b = parse_number(right) if isinstance(right, str) else right
        if a is None or b is None:
            if op in ('=', '=='):
                return 0.0
            if op in ('<>', '!='):
                return 1.0
            raise ValueTypeError("Cannot order text against a number")
        left, right = a, b
    if op in ('=', '=='):
        result = left == right
    elif op in ('<>', '!='):
        result = left != right
    elif op == '<':
        result = left < right
    elif op == '>':
        result = left > right
    elif op == '<=':
        result = left <= right
    elif op == '>=':
        result = left >= right
    else:
        raise EvalError(f"Unknown operator: {op}")
    return 1.0 if result else 0.0


class Evaluator:
    """Walks an expression tree to a value, raising FormulaError on failure."""

    def __init__(self, resolve: Resolver, functions: Optional[FunctionLibrary] = None,
                 members: Optional[Members] = None):
        self.resolve = resolve
        self.functions = functions or FUNCTIONS
        self.members = members or Range.cells

    def _cell(self, addr: CellAddress):
        value = self.resolve(addr)
        if isinstance(value, ErrorValue):
            # Inherited as-is so dependents show the same marker
            raise FormulaError(f"Error in {addr}", code=value)
        return value

    def _range(self, rng: Range) -> RangeList:
        return RangeList((self._cell(addr) for addr in self.members(rng)), size=rng.size())

    def _call(self, node: Call):
        spec = self.functions.check_arity(node.name, len(node.args))
        if spec.lazy:
            return spec.impl(node.args, self.eval)
        result = spec.impl([self._arg(a) for a in node.args])
        return _finite(result) if isinstance(result, float) else result

    def _arg(self, node: Node):
        if isinstance(node, RangeRef):
            return self._range(node.range)
        return self.eval(node)

    def eval(self, node: Node):
        """Value of *node*: float, str, None (empty cell) or list (range)."""
        if isinstance(node, Number):
            return node.value
        if isinstance(node, Text):
            return node.value
        if isinstance(node, Ref):
            return self._cell(node.address)
        if isinstance(node, RangeRef):
            return self._range(node.range)
        if isinstance(node, Call):
            return self._call(node)
        if isinstance(node, Unary):
            value = to_number(self.eval(node.operand))
            return -value if node.op == '-' else value
        if isinstance(node, Binary):
            return self._binary(node)
        if isinstance(node, Failed):
            raise FormulaError(node.message, code=node.error)
        raise EvalError(f"Unknown node: {type(node).__name__}")

    def _binary(self, node: Binary):
        left = self.eval(node.left)
        right = self.eval(node.right)
        op = node.op
        if op in ('+', '-', '*', '/'):
            a, b = to_number(left), to_number(right)
            if op == '+':
                return _finite(a + b)
            if op == '-':
                return _finite(a - b)
            if op == '*':
                return _finite(a * b)
            if b == 0:
                raise DivisionByZeroError("Division by zero")
            return _finite(a / b)
        return _compare(op, left, right)

    def evaluate(self, node: Node):
        """Final cell value: empty becomes 0, ranges are rejected."""
        value = self.eval(node)
        if isinstance(value, list):
            raise ValueTypeError("Range used as a value")
        if value is None:
            return 0.0
        if isinstance(value, float):
            return _finite(value)
        return value
