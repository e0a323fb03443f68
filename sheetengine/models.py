from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from sheetengine.formula import ErrorValue, display


class CellStyle(BaseModel):
    bold: Optional[bool] = None
    italic: Optional[bool] = None
    underline: Optional[bool] = None
    align: Optional[Literal["left", "center", "right"]] = None
    bg: Optional[str] = None
    color: Optional[str] = None
    font_size: Optional[int] = None
    format: Optional[Literal["text", "number", "currency", "percent", "date"]] = None


class CellRecord(BaseModel):
    raw_input: str = ""  # e.g. "=SUM(A1:B1)" or "10.5"
    computed_value: Union[ErrorValue, float, str, None] = None
    style: CellStyle = Field(default_factory=CellStyle)

    @property
    def display(self) -> str:
        return display(self.computed_value)

    @property
    def error(self) -> Optional[ErrorValue]:
        return self.computed_value if isinstance(self.computed_value, ErrorValue) else None


# ── Persisted form (computed values are never stored) ─────────────

class StoredCell(BaseModel):
    raw_input: str
    style: CellStyle = Field(default_factory=CellStyle)


class SheetData(BaseModel):
    num_rows: int = 100
    num_cols: int = 26
    cells: Dict[str, StoredCell] = Field(default_factory=dict)


# ── HTTP bodies ───────────────────────────────────────────────────

class CellView(BaseModel):
    address: str
    raw_input: str = ""
    value: Union[float, str, None] = None
    display: str = ""
    error: Optional[str] = None
    style: CellStyle = Field(default_factory=CellStyle)


class Sheet(BaseModel):
    id: Optional[str] = Field(default=None)
    title: str = "Untitled Sheet"
    num_rows: int = 100
    num_cols: int = 26
    cells: Dict[str, CellView] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SheetSummary(BaseModel):
    id: str
    title: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SheetCreate(BaseModel):
    title: str = "Untitled Sheet"
    num_rows: Optional[int] = Field(default=None, gt=0)
    num_cols: Optional[int] = Field(default=None, gt=0)
    cells: Dict[str, str] = Field(default_factory=dict)  # address -> raw input


class SheetUpdateTitle(BaseModel):
    title: str


class SheetUpdateCell(BaseModel):
    address: str  # A1 notation
    value: str


class SheetBatchUpdate(BaseModel):
    edits: List[SheetUpdateCell]


class EditResponse(BaseModel):
    changed: List[str]
    cells: Dict[str, CellView] = Field(default_factory=dict)


class RangeValues(BaseModel):
    range: str
    values: List[Union[float, str]]


class FormulaSuggestion(BaseModel):
    name: str
    description: str = ""
    example: str = ""
