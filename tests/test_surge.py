# tests/test_surge.py
"""
Staged inserts and updates against SQLite.
"""
import logging
import sqlite3
import uuid
from unittest.mock import Mock

import pytest

from dbstage.database import Database
from dbstage.etl.columns import EntityMap, register_entity, unregister_entity
from dbstage.etl.surge import StagedSurge, bulk_insert, bulk_update, resolve_batch_size
from dbstage.exceptions import BulkCancelled, KeyConversionError, UnmappedEntityError, UnsupportedDialectError

from conftest import TodoItem


@pytest.fixture
def registered_todo(todo_map):
    register_entity(TodoItem, todo_map)
    yield todo_map
    unregister_entity(TodoItem)


@pytest.fixture
def seeded(sqlite_db, todo_schema, todo_map):
    """Two TodoItems already inserted."""
    todos = [TodoItem('Teste 1', True), TodoItem('Teste 2', False)]
    StagedSurge(sqlite_db, todo_map).insert(todos)
    sqlite_db.commit()
    return todos


class CancelAfterFirstBatch:
    calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > 1


class TestResolveBatchSize:

    def test_default_from_settings(self, monkeypatch):
        from dbstage.defaults import settings
        monkeypatch.setitem(settings, 'default_batch_size', 250)
        assert resolve_batch_size() == 250

    @pytest.mark.parametrize('batch_size', [0, -1, 2.5, True, '10'])
    def test_invalid(self, batch_size):
        with pytest.raises(ValueError, match="batch_size"):
            resolve_batch_size(batch_size)


class TestBulkInsert:
    """Test staged inserts with generated keys."""

    def test_keys_assigned_in_order(self, sqlite_db, todo_schema, registered_todo, todo_rows):
        todos = [TodoItem('Teste 1', True), TodoItem('Teste 2', False)]
        result = bulk_insert(sqlite_db, todos)
        sqlite_db.commit()

        assert [t.id for t in todos] == [1, 2]
        assert result.rows_affected == 2
        assert result.batches == 1
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}}
        assert todo_rows() == {1: ('Teste 1', True), 2: ('Teste 2', False)}

    def test_many_batches(self, sqlite_db, todo_schema, todo_map, todo_rows):
        todos = [TodoItem(f'Todo {i}', i % 3 == 0) for i in range(1, 2501)]
        result = StagedSurge(sqlite_db, todo_map, batch_size=1000).insert(todos)

        assert result.batches == 3
        assert result.loaded == 2500
        assert result.rows_affected == 2500
        rows = todo_rows()
        assert len(rows) == 2500
        for todo in todos:
            assert rows[todo.id] == (todo.name, todo.complete)

    def test_batch_smaller_than_input(self, sqlite_db, todo_schema, todo_map):
        todos = [TodoItem(f'Todo {i}') for i in range(7)]
        result = StagedSurge(sqlite_db, todo_map, batch_size=3).insert(todos)
        assert result.batches == 3
        assert [t.id for t in todos] == list(range(1, 8))

    def test_keys_not_applied_when_disabled(self, sqlite_db, todo_schema, todo_map):
        todos = [TodoItem('Appa'), TodoItem('Momo')]
        result = StagedSurge(sqlite_db, todo_map).insert(todos, apply_keys=False)
        assert [t.id for t in todos] == [None, None]
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}}
        result.apply_keys(todos)
        assert [t.id for t in todos] == [1, 2]

    def test_key_column_with_space(self, sqlite_db, cursor):
        cursor.execute('CREATE TABLE Items ("Item Id" INTEGER PRIMARY KEY AUTOINCREMENT, Name TEXT NOT NULL)')
        items_map = EntityMap('Items', {
            'Item Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
            'Name': {'attr': 'name', 'type': str},
        })
        items = [TodoItem('Aang'), TodoItem('Katara')]
        result = StagedSurge(sqlite_db, items_map).insert(items)
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}}
        assert [i.id for i in items] == [1, 2]

    def test_dict_cursor_default(self, sqlite_db, todo_schema, todo_map, monkeypatch):
        from dbstage.defaults import settings
        monkeypatch.setitem(settings, 'default_cursor_type', 'dict')
        todos = [TodoItem('Appa'), TodoItem('Momo')]
        StagedSurge(sqlite_db, todo_map).insert(todos)
        assert [t.id for t in todos] == [1, 2]

    def test_dict_entities(self, sqlite_db, todo_schema, todo_map, todo_rows):
        records = [{'name': 'Aang', 'complete': False}, {'name': 'Katara', 'complete': True}]
        bulk_insert(sqlite_db, records, entity_map=todo_map)
        assert [r['id'] for r in records] == [1, 2]
        assert todo_rows()[2] == ('Katara', True)

    def test_keep_identity(self, sqlite_db, todo_schema, todo_map, todo_rows):
        todos = [TodoItem('Ba Sing Se', id=10), TodoItem('Omashu', id=20)]
        result = StagedSurge(sqlite_db, todo_map).insert(todos, keep_identity=True)
        assert result.keys == {}
        assert result.rows_affected == 2
        assert set(todo_rows()) == {10, 20}

    def test_staging_dropped(self, sqlite_db, todo_schema, todo_map, staging_tables):
        result = StagedSurge(sqlite_db, todo_map).insert([TodoItem('Appa')])
        assert result.staging_table.startswith('Temp_')
        assert staging_tables() == []

    def test_staging_dropped_on_failure(self, sqlite_db, todo_schema, todo_map, staging_tables, caplog):
        surge = StagedSurge(sqlite_db, todo_map)
        with caplog.at_level(logging.ERROR, logger='dbstage.etl.surge'):
            with pytest.raises(sqlite3.IntegrityError):
                surge.insert([TodoItem('Appa'), TodoItem(None)])
        assert staging_tables() == []
        assert "Bulk insert into TodoItems failed" in caplog.text
        assert surge.last_result.staging_table is not None

    def test_key_conversion_error(self, sqlite_db, todo_schema, staging_tables):
        uuid_map = EntityMap('TodoItems', {
            'Id': {'attr': 'id', 'type': uuid.UUID, 'primary_key': True, 'identity': True},
            'Name': {'attr': 'name', 'type': str},
            'IsComplete': {'attr': 'complete', 'type': bool},
        })
        todos = [TodoItem('Appa'), TodoItem('Momo')]
        with pytest.raises(KeyConversionError, match="Cannot convert key Id=1") as exc_info:
            StagedSurge(sqlite_db, uuid_map).insert(todos)
        assert exc_info.value.result.batches == 1
        assert todos[0].id is None
        assert staging_tables() == []

    def test_cancel_between_batches(self, sqlite_db, todo_schema, todo_map, staging_tables):
        todos = [TodoItem(f'Todo {i}') for i in range(5)]
        with pytest.raises(BulkCancelled) as exc_info:
            StagedSurge(sqlite_db, todo_map, batch_size=2).insert(todos, cancel=CancelAfterFirstBatch())
        result = exc_info.value.result
        assert result.batches == 1
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}}
        assert todos[0].id is None
        assert staging_tables() == []

    def test_use_transaction_commits(self, sqlite_db, todo_schema, todo_map):
        StagedSurge(sqlite_db, todo_map, use_transaction=True).insert([TodoItem('Appa')])
        assert not sqlite_db.in_transaction

    def test_use_transaction_rolls_back(self, sqlite_db, todo_schema, todo_map, todo_rows, staging_tables):
        with pytest.raises(sqlite3.IntegrityError):
            bulk_insert(sqlite_db, [TodoItem('Appa'), TodoItem(None)], batch_size=1,
                        entity_map=todo_map, use_transaction=True)
        assert todo_rows() == {}
        assert staging_tables() == []

    def test_reopens_closed_connection(self, tmp_path, todo_map):
        db = Database.create('sqlite', database=str(tmp_path / 'todo.db'))
        db.cursor().execute(
            "CREATE TABLE TodoItems (Id INTEGER PRIMARY KEY AUTOINCREMENT, Name TEXT NOT NULL, "
            "IsComplete INTEGER NOT NULL)")
        db.commit()
        surge = StagedSurge(db, todo_map)
        db.close()

        todos = [TodoItem('Appa')]
        surge.insert(todos)
        db.commit()
        assert not db.closed
        assert todos[0].id == 1
        db.close()


class TestBulkUpdate:
    """Test staged updates by primary key."""

    def test_update_all_columns(self, sqlite_db, seeded, registered_todo, todo_rows):
        seeded[0].name = 'Teste 1 - Updated'
        seeded[1].name = 'Teste 2 - Updated'
        result = bulk_update(sqlite_db, seeded)

        assert result.rows_affected == 2
        assert result.not_matched == 0
        assert todo_rows() == {1: ('Teste 1 - Updated', True), 2: ('Teste 2 - Updated', False)}

    def test_update_allow_list(self, sqlite_db, seeded, todo_map, todo_rows):
        seeded[0].name = 'Ignored'
        seeded[0].complete = False
        StagedSurge(sqlite_db, todo_map).update(seeded, columns=['complete'])
        assert todo_rows()[1] == ('Teste 1', False)

    def test_update_is_idempotent(self, sqlite_db, seeded, todo_map, todo_rows):
        seeded[1].complete = True
        surge = StagedSurge(sqlite_db, todo_map)
        surge.update(seeded)
        first = todo_rows()
        surge.update(seeded)
        assert todo_rows() == first

    def test_not_matched(self, sqlite_db, seeded, todo_map, todo_rows, caplog):
        ghost = TodoItem('Koh', id=99)
        with caplog.at_level(logging.WARNING, logger='dbstage.etl.surge'):
            result = StagedSurge(sqlite_db, todo_map).update(seeded + [ghost])
        assert result.rows_affected == 2
        assert result.not_matched == 1
        assert "1 of 3 entities matched no row in TodoItems" in caplog.text
        assert 99 not in todo_rows()

    def test_many_batches(self, sqlite_db, todo_schema, todo_map, todo_rows):
        todos = [TodoItem(f'Todo {i}') for i in range(25)]
        surge = StagedSurge(sqlite_db, todo_map, batch_size=10)
        surge.insert(todos)
        for todo in todos:
            todo.name = f'Done {todo.id}'
            todo.complete = True
        result = surge.update(todos)
        assert result.batches == 3
        assert all(name == f'Done {key}' and done for key, (name, done) in todo_rows().items())

    def test_row_count_unchanged(self, sqlite_db, seeded, todo_map, todo_rows):
        StagedSurge(sqlite_db, todo_map).update(seeded)
        assert len(todo_rows()) == 2

    def test_unknown_column(self, sqlite_db, seeded, todo_map):
        with pytest.raises(ValueError, match="Unknown column"):
            StagedSurge(sqlite_db, todo_map).update(seeded, columns=['Bison'])

    def test_staging_dropped(self, sqlite_db, seeded, todo_map, staging_tables):
        StagedSurge(sqlite_db, todo_map).update(seeded)
        assert staging_tables() == []


class TestSkipped:
    """Test operations with nothing to do."""

    def test_empty_insert(self, sqlite_db, todo_schema, todo_map, staging_tables, caplog):
        with caplog.at_level(logging.WARNING, logger='dbstage.etl.surge'):
            result = StagedSurge(sqlite_db, todo_map).insert([])
        assert result.skipped
        assert result.staging_table is None
        assert "no entities" in caplog.text

    def test_empty_without_map(self, sqlite_db):
        assert bulk_insert(sqlite_db, []).skipped
        assert bulk_update(sqlite_db, []).skipped

    def test_insert_with_only_generated_columns(self, sqlite_db, todo_schema):
        keys_only = EntityMap('TodoItems', {'Id': {'attr': 'id', 'primary_key': True, 'identity': True}})
        result = StagedSurge(sqlite_db, keys_only).insert([TodoItem('Appa')])
        assert result.skipped_reason == "every column is generated or computed"

    def test_update_without_key(self, sqlite_db, todo_schema):
        no_key = EntityMap('TodoItems', {'Name': {'attr': 'name'}})
        result = StagedSurge(sqlite_db, no_key).update([TodoItem('Appa')])
        assert result.skipped_reason == "no primary key defined"

    def test_update_without_set_columns(self, sqlite_db, todo_schema):
        key_only = EntityMap('TodoItems', {'Id': {'attr': 'id', 'primary_key': True}})
        result = StagedSurge(sqlite_db, key_only).update([TodoItem('Appa', id=1)])
        assert result.skipped_reason == "no columns to set"


class TestSurgeSetup:
    """Test configuration errors raised before any SQL runs."""

    def test_unsupported_dialect(self, todo_map):
        db = Mock(server_type='oracle')
        with pytest.raises(UnsupportedDialectError, match="oracle"):
            StagedSurge(db, todo_map)
        assert not db.cursor.called

    def test_unmapped_entity(self, sqlite_db):
        with pytest.raises(UnmappedEntityError):
            bulk_insert(sqlite_db, [TodoItem('Appa')])

    def test_registered_type(self, sqlite_db, registered_todo):
        assert StagedSurge(sqlite_db, TodoItem).entity_map is registered_todo

    def test_invalid_batch_size(self, sqlite_db, todo_map):
        with pytest.raises(ValueError):
            StagedSurge(sqlite_db, todo_map, batch_size=0)


class TestSummary:
    """Test logged summaries."""

    def test_operation_and_exit_summary(self, sqlite_db, todo_schema, todo_map, caplog):
        with caplog.at_level(logging.INFO, logger='dbstage.etl.surge'):
            with StagedSurge(sqlite_db, todo_map) as surge:
                todos = [TodoItem('Teste 1', True), TodoItem('Teste 2')]
                surge.insert(todos)
                surge.update(todos)
        assert "Staged `TodoItems` <inserts: 2; batches: 1; keys: 2; not matched: 0>" in caplog.text
        assert "StagedSurge: 2 inserted, 2 updated, 0 not matched, 0 skipped → TodoItems" in caplog.text
        assert surge.last_result.operation == 'update'
