import sqlite3
import json
import logging
import threading
from typing import Dict, List, Optional
import uuid
from sheetengine.engine import SheetEngine, DEFAULT_ROWS, DEFAULT_COLS
from sheetengine.models import SheetData, SheetSummary

logger = logging.getLogger(__name__)


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def initialize_schema(self, schema_path: str):
        with open(schema_path, 'r') as f:
            schema_script = f.read()
        with self.get_connection() as conn:
            conn.executescript(schema_script)
            # Migrations for existing databases
            self._migrate(conn)

    def _migrate(self, conn):
        """Add columns that may be missing from older databases."""
        cursor = conn.execute("PRAGMA table_info(sheets)")
        sheets_cols = {row["name"] for row in cursor.fetchall()}
        if "num_rows" not in sheets_cols:
            conn.execute(f"ALTER TABLE sheets ADD COLUMN num_rows INTEGER NOT NULL DEFAULT {DEFAULT_ROWS}")
        if "num_cols" not in sheets_cols:
            conn.execute(f"ALTER TABLE sheets ADD COLUMN num_cols INTEGER NOT NULL DEFAULT {DEFAULT_COLS}")
        conn.commit()


class SheetRepository:
    """Persists sheets and keeps one live SheetEngine per loaded sheet.

    Only raw inputs, styles and bounds are stored; computed values are
    rebuilt by a full recompute whenever a sheet is loaded.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._engines: Dict[str, SheetEngine] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _cells_json(data: SheetData) -> str:
        return json.dumps({k: v.model_dump(exclude_none=True) for k, v in data.cells.items()})

    @staticmethod
    def _row_to_data(row) -> SheetData:
        return SheetData(
            num_rows=row["num_rows"],
            num_cols=row["num_cols"],
            cells=json.loads(row["cells_json"] or "{}"),
        )

    def create(self, title: str = "Untitled Sheet", num_rows: int = DEFAULT_ROWS,
               num_cols: int = DEFAULT_COLS, cells: Dict[str, str] = None) -> str:
        engine = SheetEngine(num_rows, num_cols)
        if cells:
            engine.set_cells(list(cells.items()))
        sheet_id = str(uuid.uuid4())
        data = engine.snapshot()
        with self._lock, self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO sheets (id, title, num_rows, num_cols, cells_json) VALUES (?, ?, ?, ?, ?)",
                (sheet_id, title, data.num_rows, data.num_cols, self._cells_json(data)),
            )
            conn.commit()
            self._engines[sheet_id] = engine
        logger.info("Created sheet %s (%d cells)", sheet_id, len(data.cells))
        return sheet_id

    def get_engine(self, sheet_id: str) -> Optional[SheetEngine]:
        """Cached engine for *sheet_id*, loading and recomputing it on first use."""
        with self._lock:
            engine = self._engines.get(sheet_id)
            if engine is not None:
                return engine
            with self.db.get_connection() as conn:
                row = conn.execute("SELECT * FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
            if not row:
                return None
            engine = SheetEngine.from_snapshot(self._row_to_data(row))
            self._engines[sheet_id] = engine
            logger.info("Loaded sheet %s (%d cells)", sheet_id, len(engine.grid))
            return engine

    def get_meta(self, sheet_id: str) -> Optional[SheetSummary]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT id, title, created_at, updated_at FROM sheets WHERE id = ?", (sheet_id,)
            ).fetchone()
            return SheetSummary(**dict(row)) if row else None

    def get_all(self) -> List[SheetSummary]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT id, title, created_at, updated_at FROM sheets ORDER BY updated_at DESC"
            ).fetchall()
            return [SheetSummary(**dict(r)) for r in rows]

    def save(self, sheet_id: str) -> None:
        """Persist the live engine's raw inputs, styles and bounds."""
        with self._lock:
            engine = self._engines.get(sheet_id)
            if engine is None:
                return
            data = engine.snapshot()
            with self.db.get_connection() as conn:
                conn.execute(
                    "UPDATE sheets SET num_rows = ?, num_cols = ?, cells_json = ?, "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (data.num_rows, data.num_cols, self._cells_json(data), sheet_id),
                )
                conn.commit()

    def update_title(self, sheet_id: str, title: str) -> Optional[SheetSummary]:
        with self.db.get_connection() as conn:
            conn.execute("UPDATE sheets SET title = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?", (title, sheet_id))
            conn.commit()
        return self.get_meta(sheet_id)

    def evict(self, sheet_id: str) -> None:
        """Drop the cached engine; the next access reloads from the database."""
        with self._lock:
            self._engines.pop(sheet_id, None)

    def delete(self, sheet_id: str) -> bool:
        with self._lock, self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM sheets WHERE id = ?", (sheet_id,))
            conn.commit()
            self._engines.pop(sheet_id, None)
        logger.info("Deleted sheet %s", sheet_id)
        return cursor.rowcount > 0
