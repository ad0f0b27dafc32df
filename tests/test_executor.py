# tests/test_executor.py
import decimal
import threading
import uuid
from unittest.mock import Mock

import pytest

from dbstage.etl.columns import ColumnDefinition
from dbstage.etl.dialects import APPLY, DRAIN, BatchCommand, SqlServerDialect, Statement
from dbstage.etl.executor import BatchExecutor, BulkResult, convert_key
from dbstage.exceptions import BulkCancelled, BulkOperationError, KeyConversionError, KeyResolutionError

from conftest import TodoItem

KEY_COMMAND = BatchCommand('insert', (
    Statement('INSERT ... RETURNING "Id"', APPLY, fetch=True, sort_keys=True),
    Statement('DELETE ...', DRAIN),
))
PLAIN_COMMAND = BatchCommand('update', (
    Statement('UPDATE ...', APPLY),
    Statement('DELETE ...', DRAIN),
))
ID_COLUMN = ColumnDefinition('Id', 'id', int, primary_key=True, identity=True)


def scripted_cursor(batches):
    """
    Cursor replaying ``batches``. Each batch is (fetched rows, drained) for
    key commands or (applied, drained) for plain commands.
    """
    cur = Mock()
    rowcounts = []
    fetches = []
    for first, drained in batches:
        if isinstance(first, list):
            fetches.append(first)
            rowcounts.append(-1)
        else:
            rowcounts.append(first)
        rowcounts.append(drained)
    counts = iter(rowcounts)

    def execute(sql):
        cur.rowcount = next(counts)
    cur.execute.side_effect = execute
    cur.fetchall.side_effect = [list(rows) for rows in fetches]
    return cur


class TestConvertKey:
    """Test generated key conversion."""

    def test_int(self):
        assert convert_key(7, int) == 7
        assert convert_key(decimal.Decimal('12'), int) == 12
        assert convert_key(3.0, int) == 3

    def test_fractional_int_rejected(self):
        with pytest.raises(ValueError, match="whole number"):
            convert_key(decimal.Decimal('1.5'), int)

    def test_null_rejected(self):
        with pytest.raises(ValueError, match="NULL"):
            convert_key(None, int)

    def test_uuid_from_str_and_bytes(self):
        key = uuid.uuid4()
        assert convert_key(str(key), uuid.UUID) == key
        assert convert_key(key.bytes, uuid.UUID) == key
        assert convert_key(key, uuid.UUID) is key

    def test_uuid_from_int_rejected(self):
        with pytest.raises(ValueError):
            convert_key(1, uuid.UUID)

    def test_bool(self):
        assert convert_key(1, bool) is True
        with pytest.raises(TypeError):
            convert_key('yes', bool)

    def test_object_passes_through(self):
        marker = object()
        assert convert_key(marker, object) is marker

    def test_str(self):
        assert convert_key(42, str) == '42'


class TestBulkResult:
    """Test result bookkeeping."""

    def test_apply_keys_objects_and_mappings(self):
        todos = [TodoItem('Find the Avatar'), {'name': 'Capture the Avatar'}]
        result = BulkResult('insert', 'TodoItems', keys={1: {'id': 11}, 2: {'id': 12}})
        assert result.apply_keys(todos) == 2
        assert todos[0].id == 11
        assert todos[1]['id'] == 12

    def test_not_matched_for_updates(self):
        result = BulkResult('update', 'TodoItems', rows_affected=8, rows_drained=10)
        assert result.not_matched == 2

    def test_not_matched_is_zero_for_inserts(self):
        result = BulkResult('insert', 'TodoItems', rows_affected=8, rows_drained=10)
        assert result.not_matched == 0

    def test_skipped(self):
        assert BulkResult('insert', 'TodoItems', skipped_reason='no entities').skipped
        assert not BulkResult('insert', 'TodoItems').skipped


class TestDrain:
    """Test plain batch loops."""

    def test_runs_until_nothing_drained(self):
        cur = scripted_cursor([(2, 2), (1, 2), (0, 0)])
        result = BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems')).drain()
        assert result.batches == 2
        assert result.rows_affected == 3
        assert result.rows_drained == 4
        assert result.not_matched == 1
        assert cur.execute.call_count == 6

    def test_empty_staging(self):
        cur = scripted_cursor([(0, 0)])
        result = BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems')).drain()
        assert result.batches == 0

    def test_negative_rowcount_counts_as_zero(self):
        cur = scripted_cursor([(-1, 3), (0, 0)])
        result = BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems')).drain()
        assert result.rows_affected == 0
        assert result.rows_drained == 3

    def test_unknown_drain_count_raises(self):
        cur = scripted_cursor([(2, -1)])
        with pytest.raises(BulkOperationError, match="no row count for the drain of batch 1"):
            BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems')).drain()


class TestDrainKeys:
    """Test key capture by position."""

    def test_keys_by_position_across_batches(self):
        todos = [TodoItem(f'Todo {i}') for i in range(5)]
        cur = scripted_cursor([
            ([[2], [1]], 2),
            ([[3], [4]], 2),
            ([[5]], 1),
            ([], 0),
        ])
        result = BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'TodoItems')).drain_keys(todos, [ID_COLUMN])
        assert result.batches == 3
        assert result.rows_affected == 5
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}, 3: {'id': 3}, 4: {'id': 4}, 5: {'id': 5}}
        # keys are recorded, not applied
        assert todos[0].id is None

    def test_keys_read_by_position(self):
        # returned column labels are never consulted
        cur = scripted_cursor([([(9,)], 1), ([], 0)])
        item_id = ColumnDefinition('Item Id', 'id', int, primary_key=True, identity=True)
        result = BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'Items')).drain_keys(
            [TodoItem('Momo')], [item_id])
        assert result.keys == {1: {'id': 9}}

    def test_key_row_width_mismatch(self):
        cur = scripted_cursor([([(1, 'extra')], 1)])
        with pytest.raises(KeyResolutionError, match="has 2 values for 1 key columns") as exc_info:
            BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'TodoItems')).drain_keys(
                [TodoItem('Momo')], [ID_COLUMN])
        assert exc_info.value.result.batches == 1

    def test_row_count_mismatch(self):
        cur = scripted_cursor([([[1]], 2)])
        with pytest.raises(KeyResolutionError, match="returned 1 keys for 2 staged rows") as exc_info:
            BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'TodoItems')).drain_keys(
                [TodoItem('Appa'), TodoItem('Momo')], [ID_COLUMN])
        assert exc_info.value.result.batches == 1

    def test_more_keys_than_entities(self):
        cur = scripted_cursor([([[1], [2]], 2)])
        with pytest.raises(KeyResolutionError):
            BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'TodoItems')).drain_keys(
                [TodoItem('Appa')], [ID_COLUMN])

    def test_conversion_failure_keeps_partial_result(self):
        todos = [TodoItem('Appa'), TodoItem('Momo'), TodoItem('Hei Bai')]
        cur = scripted_cursor([([[1], [2]], 2), ([['spirit']], 1)])
        with pytest.raises(KeyConversionError, match="entity 3") as exc_info:
            BatchExecutor(cur, KEY_COMMAND, BulkResult('insert', 'TodoItems')).drain_keys(todos, [ID_COLUMN])
        result = exc_info.value.result
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}}
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_composite_generated_keys(self):
        cols = [ColumnDefinition('Region', 'region', str, primary_key=True, identity=True),
                ColumnDefinition('Seq', 'seq', int, primary_key=True, identity=True)]
        command = BatchCommand('insert', (
            Statement('INSERT', APPLY, fetch=True, sort_keys=True),
            Statement('DELETE', DRAIN),
        ))
        cur = scripted_cursor([([('b', 1), ('a', 2)], 2), ([], 0)])
        result = BatchExecutor(cur, command, BulkResult('insert', 'Temples')).drain_keys([{}, {}], cols)
        assert result.keys == {1: {'region': 'a', 'seq': 2}, 2: {'region': 'b', 'seq': 1}}


class TestCancel:
    """Test cancellation between batches."""

    def test_cancelled_before_first_batch(self):
        cancel = threading.Event()
        cancel.set()
        cur = Mock()
        with pytest.raises(BulkCancelled) as exc_info:
            BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems'), cancel=cancel).drain()
        assert not cur.execute.called
        assert exc_info.value.result.batches == 0

    def test_cancelled_after_first_batch(self):
        class CancelAfterFirst:
            calls = 0

            def is_set(self):
                self.calls += 1
                return self.calls > 1

        cur = scripted_cursor([(2, 2), (2, 2), (0, 0)])
        with pytest.raises(BulkCancelled, match="after 1 batches") as exc_info:
            BatchExecutor(cur, PLAIN_COMMAND, BulkResult('update', 'TodoItems'),
                          cancel=CancelAfterFirst()).drain()
        assert exc_info.value.result.rows_affected == 2


class SqlServerSession:
    """
    Cursor over one SQL Server session holding ``staged`` rows. As with pyodbc
    and pymssql, ``rowcount`` is -1 while ``SET NOCOUNT ON`` is in effect, and
    the option carries over to later statements.
    """

    def __init__(self, staged, limit):
        self.staged = staged
        self.limit = limit
        self.nocount = False
        self.rowcount = -1
        self.next_id = 1
        self._rows = []

    def execute(self, sql):
        batch = min(self.staged, self.limit)
        count = -1
        for line in sql.splitlines():
            if line.startswith('SET NOCOUNT'):
                self.nocount = line.startswith('SET NOCOUNT ON')
            elif line.startswith(('INSERT INTO', 'UPDATE')):
                count = batch
            elif line.startswith('DELETE FROM'):
                self.staged -= batch
                count = batch
        if 'OUTPUT INSERTED' in sql:
            self._rows = [[self.next_id + i] for i in range(batch)]
            self.next_id += batch
            count = -1
        self.rowcount = -1 if self.nocount else count

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows


class TestSqlServerSession:
    """Test SQL Server commands on a session that keeps its SET options."""

    def test_insert_keys_across_batches(self, todo_map):
        command = SqlServerDialect().insert_batch('TodoItems', 'Temp_abc123', todo_map.insert_columns(), 2,
                                                  generated_keys=todo_map.generated_keys)
        session = SqlServerSession(staged=3, limit=2)
        todos = [TodoItem('Teste 1'), TodoItem('Teste 2'), TodoItem('Teste 3')]
        result = BatchExecutor(session, command, BulkResult('insert', 'TodoItems')).drain_keys(
            todos, todo_map.generated_keys)
        assert result.batches == 2
        assert result.rows_drained == 3
        assert result.keys == {1: {'id': 1}, 2: {'id': 2}, 3: {'id': 3}}
        assert session.staged == 0
        assert not session.nocount

    def test_update_after_key_insert_drains_everything(self, todo_map):
        dialect = SqlServerDialect()
        session = SqlServerSession(staged=2, limit=2)
        insert = dialect.insert_batch('TodoItems', 'Temp_abc123', todo_map.insert_columns(), 2,
                                      generated_keys=todo_map.generated_keys)
        BatchExecutor(session, insert, BulkResult('insert', 'TodoItems')).drain_keys(
            [TodoItem('Teste 1'), TodoItem('Teste 2')], todo_map.generated_keys)

        session.staged = 3
        update = dialect.update_batch('TodoItems', 'Temp_def456', todo_map.settable_columns(),
                                      todo_map.key_columns, 2)
        result = BatchExecutor(session, update, BulkResult('update', 'TodoItems')).drain()
        assert result.batches == 2
        assert result.rows_affected == 3
        assert result.rows_drained == 3
        assert session.staged == 0
