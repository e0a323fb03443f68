import sys
import os
import logging
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

def get_app_data_dir() -> str:
    """Return a user-writable data directory for the sheet engine (created if absent)."""
    override = os.environ.get("SHEETENGINE_DATA_DIR")
    if override:
        base_dir = override
    else:
        if sys.platform == "win32":
            base = os.environ.get("APPDATA") or os.path.expanduser("~")
        elif sys.platform == "darwin":
            base = os.path.expanduser("~/Library/Application Support")
        else:
            base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
        base_dir = os.path.join(base, "SheetEngine")
    os.makedirs(base_dir, exist_ok=True)
    return base_dir

# Load .env from app-data dir first, then fall back to CWD (dev)
load_dotenv(os.path.join(get_app_data_dir(), ".env"))
load_dotenv()

def get_resource_path(relative_path):
    if hasattr(sys, '_MEIPASS'):
        return os.path.join(sys._MEIPASS, relative_path)
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), relative_path)

from sheetengine.engine import SheetEngine
from sheetengine.formula import CellAddress, ErrorValue, FormulaError, Range, in_bounds, parse_address
from sheetengine.functions import FUNCTIONS
from sheetengine.models import (
    CellStyle, CellView, EditResponse, FormulaSuggestion, RangeValues, Sheet, SheetBatchUpdate,
    SheetCreate, SheetSummary, SheetUpdateCell, SheetUpdateTitle,
)
from sheetengine.storage import DatabaseManager, SheetRepository

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_ROWS = int(os.getenv("SHEET_DEFAULT_ROWS", "100"))
DEFAULT_COLS = int(os.getenv("SHEET_DEFAULT_COLS", "26"))

app = FastAPI(title="Sheet Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

db = DatabaseManager(os.path.join(get_app_data_dir(), "sheetengine.db"))
db.initialize_schema(get_resource_path("schema.sql"))

sheet_repo = SheetRepository(db)


# ── Helpers ──────────────────────────────────────────────────────────

def _engine_or_404(sheet_id: str) -> SheetEngine:
    engine = sheet_repo.get_engine(sheet_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return engine

def _address_or_422(address: str) -> CellAddress:
    try:
        addr = parse_address(address)
    except FormulaError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not in_bounds(addr):
        raise HTTPException(status_code=422, detail=f"Address out of bounds: {address}")
    return addr

def _cell_view(engine: SheetEngine, addr: CellAddress) -> CellView:
    record = engine.get_cell(addr)
    error = record.error
    return CellView(
        address=str(addr),
        raw_input=record.raw_input,
        value=None if error else record.computed_value,
        display=record.display,
        error=error.value if error else None,
        style=record.style,
    )

def _sheet_view(sheet_id: str, engine: SheetEngine) -> Sheet:
    meta = sheet_repo.get_meta(sheet_id)
    if meta is None:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return Sheet(
        id=sheet_id,
        title=meta.title,
        num_rows=engine.grid.num_rows,
        num_cols=engine.grid.num_cols,
        cells={str(addr): _cell_view(engine, addr) for addr in engine.grid.addresses()},
        created_at=meta.created_at,
        updated_at=meta.updated_at,
    )

def _apply_edits(sheet_id: str, edits: List[SheetUpdateCell]) -> EditResponse:
    engine = _engine_or_404(sheet_id)
    parsed = [(_address_or_422(e.address), e.value) for e in edits]
    try:
        result = engine.set_cells(parsed)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    sheet_repo.save(sheet_id)
    logger.debug("Sheet %s: %d edits, %d cells changed", sheet_id, len(parsed), len(result.changed))
    return EditResponse(
        changed=[str(a) for a in result.changed],
        cells={str(a): _cell_view(engine, a) for a in result.changed},
    )


# ── Sheets ───────────────────────────────────────────────────────────

@app.post("/sheets", response_model=Sheet)
async def create_sheet(req: SheetCreate):
    try:
        sheet_id = sheet_repo.create(
            title=req.title,
            num_rows=req.num_rows or DEFAULT_ROWS,
            num_cols=req.num_cols or DEFAULT_COLS,
            cells=req.cells,
        )
    except (ValueError, FormulaError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _sheet_view(sheet_id, _engine_or_404(sheet_id))

@app.get("/sheets", response_model=List[SheetSummary])
async def list_sheets():
    return sheet_repo.get_all()

@app.get("/sheets/{sheet_id}", response_model=Sheet)
async def get_sheet(sheet_id: str):
    return _sheet_view(sheet_id, _engine_or_404(sheet_id))

@app.delete("/sheets/{sheet_id}")
async def delete_sheet(sheet_id: str):
    if not sheet_repo.delete(sheet_id):
        raise HTTPException(status_code=404, detail="Sheet not found")
    return {"status": "deleted"}

@app.put("/sheets/{sheet_id}/title", response_model=SheetSummary)
async def update_sheet_title(sheet_id: str, req: SheetUpdateTitle):
    title = req.title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="Title must not be empty")
    meta = sheet_repo.update_title(sheet_id, title)
    if not meta:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return meta

@app.post("/sheets/{sheet_id}/recalculate", response_model=EditResponse)
async def recalculate_sheet(sheet_id: str):
    engine = _engine_or_404(sheet_id)
    result = engine.recalculate_all()
    return EditResponse(
        changed=[str(a) for a in result.changed],
        cells={str(a): _cell_view(engine, a) for a in result.changed},
    )


# ── Cells ────────────────────────────────────────────────────────────

@app.put("/sheets/{sheet_id}/cell", response_model=EditResponse)
async def update_sheet_cell(sheet_id: str, req: SheetUpdateCell):
    return _apply_edits(sheet_id, [req])

@app.put("/sheets/{sheet_id}/cells", response_model=EditResponse)
async def update_sheet_cells(sheet_id: str, req: SheetBatchUpdate):
    """Apply many edits (e.g. a paste) with a single recompute pass."""
    return _apply_edits(sheet_id, req.edits)

@app.get("/sheets/{sheet_id}/cells/{address}", response_model=CellView)
async def get_sheet_cell(sheet_id: str, address: str):
    engine = _engine_or_404(sheet_id)
    return _cell_view(engine, _address_or_422(address))

@app.put("/sheets/{sheet_id}/cells/{address}/style", response_model=CellView)
async def update_cell_style(sheet_id: str, address: str, style: CellStyle):
    engine = _engine_or_404(sheet_id)
    addr = _address_or_422(address)
    try:
        engine.set_cell_style(addr, style)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Cell {addr} is empty")
    sheet_repo.save(sheet_id)
    return _cell_view(engine, addr)

@app.get("/sheets/{sheet_id}/range", response_model=RangeValues)
async def get_range_values(sheet_id: str, start: str, end: Optional[str] = None):
    engine = _engine_or_404(sheet_id)
    rng = Range(_address_or_422(start), _address_or_422(end or start))
    values = [v.value if isinstance(v, ErrorValue) else v for v in engine.evaluate_range_values(rng)]
    return RangeValues(range=str(rng), values=values)


# ── Formula suggestions ──────────────────────────────────────────────

@app.get("/formulas", response_model=List[FormulaSuggestion])
async def list_formulas(query: str = Query(default="")):
    return [FormulaSuggestion(**s) for s in FUNCTIONS.suggestions(query)]


if __name__ == "__main__":
    import uvicorn
    host = os.getenv("SHEETENGINE_HOST", "127.0.0.1")
    port = int(os.getenv("SHEETENGINE_PORT", "8000"))
    logger.info("Starting sheet engine on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, timeout_keep_alive=5)
