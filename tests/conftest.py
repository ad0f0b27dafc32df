# tests/conftest.py
"""
Shared test fixtures and configuration for pytest.
"""

import dataclasses
import os
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from dbstage.database import Database
from dbstage.etl.columns import EntityMap

TEST_KEY = '2YvTXI9DHQPy4d6-ZC9NxcypvLMsJ94OBdmoHyjmwbM='


@pytest.fixture(autouse=True)
def setup_test_config():
    """Automatically set test config file and encryption key for all tests."""
    from dbstage.config import set_config_file

    test_config = Path(__file__).parent / 'test.yml'
    set_config_file(str(test_config))

    with patch.dict(os.environ, {'DBSTAGE_ENCRYPTION_KEY': TEST_KEY}):
        yield


@dataclasses.dataclass
class TodoItem:
    name: Optional[str]
    complete: bool = False
    id: Optional[int] = None


@pytest.fixture
def sqlite_db():
    """In-memory SQLite database."""
    db = Database.create('sqlite', database=':memory:')
    yield db
    db.close()


@pytest.fixture
def cursor(sqlite_db):
    return sqlite_db.cursor()


@pytest.fixture
def todo_schema(sqlite_db):
    """Empty TodoItems table with an auto-increment key."""
    cur = sqlite_db.cursor()
    cur.execute("""
                CREATE TABLE TodoItems
                (
                    Id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    Name       TEXT    NOT NULL,
                    IsComplete INTEGER NOT NULL
                )
                """)
    sqlite_db.commit()
    return 'TodoItems'


@pytest.fixture
def todo_map():
    return EntityMap('TodoItems', {
        'Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
        'Name': {'attr': 'name', 'type': str},
        'IsComplete': {'attr': 'complete', 'type': bool},
    }, entity_type=TodoItem)


@pytest.fixture
def todo_rows(sqlite_db):
    """Read TodoItems back as {Id: (Name, IsComplete)}."""
    def read():
        cur = sqlite_db.cursor()
        cur.execute("SELECT Id, Name, IsComplete FROM TodoItems ORDER BY Id")
        return {row[0]: (row[1], bool(row[2])) for row in cur.fetchall()}
    return read


@pytest.fixture
def staging_tables(sqlite_db):
    """Names of staging tables left in the database."""
    def read():
        cur = sqlite_db.cursor()
        cur.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'Temp!_%' ESCAPE '!'")
        return [row[0] for row in cur.fetchall()]
    return read
