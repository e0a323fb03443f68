"""Formula language for the sheet engine.

Supports: literals, =, + - * /, comparisons (= == <> != < > <= >=),
parentheses, cell refs (A1), ranges (A1:B3), quoted/bare strings and
function calls by name (see sheetengine.functions).

Error codes shown in cells:
  #ERRO   — syntax error, unknown function, or unexpected evaluation fault
  #REF!   — reference outside the addressable space
  #VALOR! — operand cannot be coerced to the required type
  #DIV/0! — division by zero or non-finite result
  #CICLO! — circular dependency detected
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, NamedTuple, Optional, Union


# ── Error types ───────────────────────────────────────────────────

class ErrorValue(str, Enum):
    """Error stored as a cell's computed value. The value is the display token."""
    ERROR = "#ERRO"
    REF = "#REF!"
    VALUE = "#VALOR!"
    DIV0 = "#DIV/0!"
    CYCLE = "#CICLO!"

    def __str__(self) -> str:
        return self.value


class FormulaError(Exception):
    """Base for all formula errors. `code` is the cell's error value."""
    code: ErrorValue = ErrorValue.ERROR

    def __init__(self, message: str = "", code: Optional[ErrorValue] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

class FormulaSyntaxError(FormulaError):
    code = ErrorValue.ERROR

class EvalError(FormulaError):
    code = ErrorValue.ERROR

class InvalidRefError(FormulaError):
    code = ErrorValue.REF

class ValueTypeError(FormulaError):
    code = ErrorValue.VALUE

class DivisionByZeroError(FormulaError):
    code = ErrorValue.DIV0

class CycleError(FormulaError):
    code = ErrorValue.CYCLE


# ── Addresses ─────────────────────────────────────────────────────

# Addressable space; references beyond it are #REF!
MAX_ROWS = 1_048_576
MAX_COLS = 16_384

# Row numbers have no leading zeros, so every address has one spelling
_ADDRESS_RE = re.compile(r'([A-Z]+)([1-9][0-9]*)')
# Letters then digits; used by the parser to tell bad refs from bare words
_REF_SHAPE_RE = re.compile(r'([A-Z]+)([0-9]+)')


class CellAddress(NamedTuple):
    row: int
    col: int

    def __str__(self) -> str:
        return encode(self.row, self.col)


class Range(NamedTuple):
    start: CellAddress
    end: CellAddress

    def normalized(self) -> "Range":
        return Range(
            CellAddress(min(self.start.row, self.end.row), min(self.start.col, self.end.col)),
            CellAddress(max(self.start.row, self.end.row), max(self.start.col, self.end.col)),
        )

    def cells(self) -> Iterator[CellAddress]:
        """Covered addresses, rows outer and columns inner."""
        lo, hi = self.normalized()
        for r in range(lo.row, hi.row + 1):
            for c in range(lo.col, hi.col + 1):
                yield CellAddress(r, c)

    def size(self) -> int:
        lo, hi = self.normalized()
        return (hi.row - lo.row + 1) * (hi.col - lo.col + 1)

    def covers(self, addr: CellAddress) -> bool:
        lo, hi = self.normalized()
        return lo.row <= addr.row <= hi.row and lo.col <= addr.col <= hi.col

    def __str__(self) -> str:
        return f"{self.start}:{self.end}"


def index_to_col(idx: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA."""
    if idx < 0:
        raise ValueError(f"Column index must be >= 0: {idx}")
    result = ""
    while idx >= 0:
        result = chr(idx % 26 + ord('A')) + result
        idx = idx // 26 - 1
    return result


def col_to_index(col_str: str) -> int:
    """A->0, B->1, ..., Z->25, AA->26."""
    n = 0
    for ch in col_str.upper():
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def encode(row: int, col: int) -> str:
    """(0, 0) -> 'A1'."""
    if row < 0:
        raise ValueError(f"Row index must be >= 0: {row}")
    return f"{index_to_col(col)}{row + 1}"


def decode(address: str) -> Optional[CellAddress]:
    """'A1' -> CellAddress(0, 0); None when the text is not an address.

    Case-insensitive. Row 0 and zero-padded rows ('A01') are not addresses.
    """
    m = _ADDRESS_RE.fullmatch(address.upper())
    if not m:
        return None
    return CellAddress(int(m.group(2)) - 1, col_to_index(m.group(1)))


def parse_address(address: str) -> CellAddress:
    """Like decode() but raises InvalidRefError on bad input."""
    addr = decode(address.strip())
    if addr is None:
        raise InvalidRefError(f"Bad cell reference: {address}")
    return addr


def parse_range(text: str) -> Range:
    """'A1:B3' -> Range. A single address is a one-cell range."""
    parts = text.split(':')
    if len(parts) == 1:
        addr = parse_address(parts[0])
        return Range(addr, addr)
    if len(parts) != 2:
        raise InvalidRefError(f"Bad range: {text}")
    return Range(parse_address(parts[0]), parse_address(parts[1]))


def in_bounds(addr: CellAddress) -> bool:
    return 0 <= addr.row < MAX_ROWS and 0 <= addr.col < MAX_COLS


# ── Values ────────────────────────────────────────────────────────

# A computed cell value. Empty cells resolve to None.
Value = Union[float, str, ErrorValue]

_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')


def parse_number(text: str) -> Optional[float]:
    """Return the float for entirely numeric text, else None."""
    text = text.strip()
    if not _NUMBER_RE.match(text):
        return None
    value = float(text)
    if not math.isfinite(value):
        return None
    return value


def format_result(value: float) -> str:
    """Format a numeric result for cell display."""
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return f"{value:.10g}"


def display(value) -> str:
    """Text shown in the grid for a computed value."""
    if value is None:
        return ""
    if isinstance(value, ErrorValue):
        return value.value
    if isinstance(value, float):
        return format_result(value)
    return str(value)


# ── AST ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Node:
    pass

@dataclass(frozen=True)
class Number(Node):
    value: float

@dataclass(frozen=True)
class Text(Node):
    value: str

@dataclass(frozen=True)
class Ref(Node):
    address: CellAddress

@dataclass(frozen=True)
class RangeRef(Node):
    range: Range

@dataclass(frozen=True)
class Call(Node):
    name: str
    args: tuple

@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node

@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

@dataclass(frozen=True)
class Failed(Node):
    """A formula that did not parse. Evaluates to its error."""
    error: ErrorValue
    message: str = ""


@dataclass(frozen=True)
class CellContent:
    """Parsed raw input: either a literal value or a formula tree."""
    literal: Optional[Value] = None
    formula: Optional[Node] = None

    @property
    def is_formula(self) -> bool:
        return self.formula is not None


# ── Tokenizer ─────────────────────────────────────────────────────

_TOKEN_RE = re.compile(r'''
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"]|"")*"|'(?:[^']|'')*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op><>|<=|>=|==|!=|[-+*/(),:<>=])
''', re.VERBOSE)

_COMPARISON_OPS = ('=', '==', '<>', '!=', '<', '>', '<=', '>=')
_BARE_WORD_RE = re.compile(r'^[A-Za-z_]+$')


class Token(NamedTuple):
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> list:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise FormulaSyntaxError(f"Unexpected '{text[pos]}' at pos {pos}")
        kind = m.lastgroup
        if kind != 'ws':
            tokens.append(Token(kind, m.group(0), pos))
        pos = m.end()
    return tokens


# ── Parser (recursive descent, no eval()) ─────────────────────────

class _Parser:
    """Builds an expression tree from the tokens of a formula body."""
    __slots__ = ('tokens', 'pos', 'functions')

    def __init__(self, text: str, functions):
        self.tokens = tokenize(text)
        self.pos = 0
        self.functions = functions

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _peek_op(self) -> Optional[str]:
        tok = self._peek()
        return tok.text if tok is not None and tok.kind == 'op' else None

    def _eat(self, expected: Optional[str] = None) -> Token:
        if self.pos >= len(self.tokens):
            raise FormulaSyntaxError("Unexpected end of expression")
        tok = self.tokens[self.pos]
        if expected and tok.text != expected:
            raise FormulaSyntaxError(f"Expected '{expected}', got '{tok.text}' at pos {tok.pos}")
        self.pos += 1
        return tok

    def _address(self, tok: Token) -> CellAddress:
        addr = decode(tok.text)
        if addr is None:
            if _REF_SHAPE_RE.fullmatch(tok.text.upper()):
                raise InvalidRefError(f"Bad row number: {tok.text}")
            raise FormulaSyntaxError(f"Malformed cell reference '{tok.text}' at pos {tok.pos}")
        if not in_bounds(addr):
            raise InvalidRefError(f"Reference out of bounds: {tok.text}")
        return addr

    def _call(self, tok: Token) -> Node:
        name = tok.text.upper()
        if name not in self.functions:
            raise FormulaSyntaxError(f"Unknown function: {name}")
        self._eat('(')
        args = []
        if self._peek_op() != ')':
            args.append(self._expr())
            while self._peek_op() == ',':
                self._eat(',')
                args.append(self._expr())
        self._eat(')')
        return Call(name, tuple(args))

    def _name(self, tok: Token) -> Node:
        if self._peek_op() == '(':
            return self._call(tok)
        upper = tok.text.upper()
        if _REF_SHAPE_RE.fullmatch(upper):
            start = self._address(tok)
            if self._peek_op() == ':':
                self._eat(':')
                end_tok = self._eat()
                if end_tok.kind != 'name':
                    raise FormulaSyntaxError(f"Expected cell reference after ':' at pos {end_tok.pos}")
                return RangeRef(Range(start, self._address(end_tok)))
            return Ref(start)
        if upper == 'TRUE':
            return Number(1.0)
        if upper == 'FALSE':
            return Number(0.0)
        if _BARE_WORD_RE.match(tok.text):
            return Text(tok.text)
        raise FormulaSyntaxError(f"Malformed cell reference '{tok.text}' at pos {tok.pos}")

    def _primary(self) -> Node:
        tok = self._eat()
        if tok.kind == 'number':
            value = float(tok.text)
            if not math.isfinite(value):
                raise DivisionByZeroError(f"Number out of range: {tok.text}")
            return Number(value)
        if tok.kind == 'string':
            quote = tok.text[0]
            return Text(tok.text[1:-1].replace(quote * 2, quote))
        if tok.kind == 'name':
            return self._name(tok)
        if tok.text == '(':
            node = self._expr()
            self._eat(')')
            return node
        raise FormulaSyntaxError(f"Unexpected '{tok.text}' at pos {tok.pos}")

    def _unary(self) -> Node:
        if self._peek_op() in ('-', '+'):
            op = self._eat().text
            return Unary(op, self._unary())
        return self._primary()

    def _term(self) -> Node:
        left = self._unary()
        while self._peek_op() in ('*', '/'):
            op = self._eat().text
            left = Binary(op, left, self._unary())
        return left

    def _additive(self) -> Node:
        left = self._term()
        while self._peek_op() in ('+', '-'):
            op = self._eat().text
            left = Binary(op, left, self._term())
        return left

    def _expr(self) -> Node:
        left = self._additive()
        while self._peek_op() in _COMPARISON_OPS:
            op = self._eat().text
            left = Binary(op, left, self._additive())
        return left

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaSyntaxError("Empty expression")
        node = self._expr()
        tok = self._peek()
        if tok is not None:
            raise FormulaSyntaxError(f"Unexpected '{tok.text}' at pos {tok.pos}")
        return node


def parse_formula(formula: str, functions=None) -> Node:
    """Parse a formula (with or without the leading '=') into a tree.

    Raises FormulaError on bad syntax or bad references.
    """
    if functions is None:
        from sheetengine.functions import FUNCTIONS as functions
    body = formula.strip()
    if body.startswith('='):
        body = body[1:]
    return _Parser(body, functions).parse()


def parse_input(raw: str, functions=None) -> CellContent:
    """Classify a cell's raw input. Never raises.

    Input starting with '=' is a formula; a formula that fails to parse
    becomes a Failed node carrying its error. Anything else is a number
    when entirely numeric, otherwise text.
    """
    stripped = raw.strip()
    if stripped.startswith('='):
        try:
            return CellContent(formula=parse_formula(stripped, functions))
        except FormulaError as e:
            return CellContent(formula=Failed(e.code, str(e)))
        except RecursionError:
            return CellContent(formula=Failed(ErrorValue.ERROR, "Formula nested too deeply"))
    number = parse_number(stripped)
    if number is not None:
        return CellContent(literal=number)
    return CellContent(literal=raw)


# ── Reference extraction ─────────────────────────────────────────

def iter_refs(node: Node) -> Iterator[Union[CellAddress, Range]]:
    """Yield every single address and range the tree mentions."""
    stack = [node]
    while stack:
        n = stack.pop()
        if isinstance(n, Ref):
            yield n.address
        elif isinstance(n, RangeRef):
            yield n.range
        elif isinstance(n, Call):
            stack.extend(reversed(n.args))
        elif isinstance(n, Unary):
            stack.append(n.operand)
        elif isinstance(n, Binary):
            stack.append(n.right)
            stack.append(n.left)


def extract_refs(node: Optional[Node]) -> set:
    """Return the addresses and normalized ranges a formula reads.

    Ranges stay whole so that a formula over a large area costs one
    graph edge, not one per covered cell.
    """
    refs: set = set()
    if node is None:
        return refs
    for ref in iter_refs(node):
        if isinstance(ref, Range):
            refs.add(ref.normalized())
        else:
            refs.add(ref)
    return refs
