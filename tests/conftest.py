import os

import pytest

from sheetengine.storage import DatabaseManager, SheetRepository


@pytest.fixture
def repo(tmp_path):
    db = DatabaseManager(str(tmp_path / "sheets.db"))
    db.initialize_schema(os.path.join(os.path.dirname(__file__), "..", "sheetengine", "schema.sql"))
    return SheetRepository(db)


@pytest.fixture(scope="session")
def client(tmp_path_factory):
    # the app opens its database at import time
    os.environ["SHEETENGINE_DATA_DIR"] = str(tmp_path_factory.mktemp("appdata"))
    from fastapi.testclient import TestClient
    from sheetengine.app import app
    return TestClient(app)
