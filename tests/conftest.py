from pathlib import Path

import pytest

import database


@pytest.fixture
async def tmp_db(tmp_path) -> Path:
    """Returns path to an initialized temporary SQLite database file."""
    db_path = tmp_path / "test.db"
    await database.init_db(db_path)
    return db_path
