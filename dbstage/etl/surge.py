# dbstage/etl/surge.py

import logging
from contextlib import nullcontext
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union

from ..defaults import settings
from ..exceptions import BulkCancelled
from .columns import ColumnDefinition, EntityMap, get_entity_map, resolve_entity_map
from .dialects import BatchCommand, get_dialect
from .executor import BatchExecutor, BulkResult
from .loader import BulkLoader, build_frame
from .staging import staging_table

logger = logging.getLogger(__name__)


def resolve_batch_size(batch_size: Optional[int] = None) -> int:
    """Use the configured default when None. Must be a positive integer."""
    if batch_size is None:
        batch_size = settings.get('default_batch_size', 1000)
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
    return batch_size


class StagedSurge:
    """
    Staged bulk insert and update for one entity mapping.

    Each operation creates its own staging table, bulk loads the entities
    into it, then moves them into the target table ``batch_size`` rows at a
    time. The staging table is dropped before the operation returns or
    raises.

    Inserts into tables with generated primary keys capture the new keys in
    ``BulkResult.keys`` and, unless ``apply_keys=False``, write them onto the
    entities in input order.

    Note: The connection is not committed. Either commit it yourself or pass
    ``use_transaction=True``.

    Example
    -------
    ::

        with StagedSurge(db, todo_map, batch_size=5000) as surge:
            result = surge.insert(todos)
            print(result.rows_affected, todos[0].id)
            surge.update(todos, columns=['IsComplete'])
    """

    def __init__(self, db, entity_map: Union[EntityMap, type], batch_size: Optional[int] = None,
                 use_transaction: bool = False):
        """
        Initialize StagedSurge.

        Args:
            db: Database instance
            entity_map: EntityMap, or a registered entity type
            batch_size: Rows per batch, defaults to settings['default_batch_size']
            use_transaction: Run each operation in db.transaction()

        Raises:
            UnsupportedDialectError: no dialect for db.server_type
            UnmappedEntityError: entity type is not registered
        """
        if not isinstance(entity_map, EntityMap):
            entity_map = get_entity_map(entity_map)
        self.db = db
        self.entity_map = entity_map
        self.batch_size = resolve_batch_size(batch_size)
        self.use_transaction = use_transaction
        self.dialect = get_dialect(db)
        self.dialect.check_server(db)
        self.last_result: Optional[BulkResult] = None
        self.counts = {'insert': 0, 'update': 0, 'not_matched': 0, 'skipped': 0}

    def __repr__(self) -> str:
        return f"StagedSurge({self.db}, {self.entity_map!r}, batch_size={self.batch_size})"

    def insert(self, entities: Iterable[Any], keep_identity: bool = False, apply_keys: bool = True,
               cancel=None) -> BulkResult:
        """
        Insert all entities.

        Args:
            entities: Objects or mappings carrying the mapped attributes
            keep_identity: Insert the entities' own values into generated key
                columns instead of letting the server assign them
            apply_keys: Write generated keys back onto the entities
            cancel: Optional threading.Event, checked between batches

        Returns:
            BulkResult with ``keys`` holding generated keys by 1-based position
        """
        entities = list(entities)
        table = self.entity_map.table
        result = BulkResult('insert', table, submitted=len(entities))
        columns = self.entity_map.insert_columns(keep_identity)
        if not entities:
            return self._skip(result, "no entities")
        if not columns:
            return self._skip(result, "every column is generated or computed")

        key_columns = [] if keep_identity else self.entity_map.generated_keys

        def command(staging: str) -> BatchCommand:
            return self.dialect.insert_batch(table, staging, columns, self.batch_size,
                                             generated_keys=key_columns, keep_identity=keep_identity)

        self._run(result, entities, columns, command, key_columns, cancel)
        if apply_keys and result.keys:
            result.apply_keys(entities)
        return self._finish(result)

    def update(self, entities: Iterable[Any], columns: Optional[Iterable[str]] = None,
               cancel=None) -> BulkResult:
        """
        Update rows matching the entities' primary keys.

        Args:
            entities: Objects or mappings carrying the mapped attributes
            columns: Column or attribute names to set. None sets every
                non-key, non-computed column.
            cancel: Optional threading.Event, checked between batches

        Returns:
            BulkResult; ``not_matched`` counts entities with no matching row

        Raises:
            ValueError: ``columns`` names an unknown or key column
        """
        entities = list(entities)
        table = self.entity_map.table
        result = BulkResult('update', table, submitted=len(entities))
        set_columns = self.entity_map.settable_columns(columns)
        key_columns = self.entity_map.key_columns
        if not entities:
            return self._skip(result, "no entities")
        if not key_columns:
            return self._skip(result, "no primary key defined")
        if not set_columns:
            return self._skip(result, "no columns to set")

        staged = self.entity_map.update_columns()

        def command(staging: str) -> BatchCommand:
            return self.dialect.update_batch(table, staging, set_columns, key_columns, self.batch_size)

        self._run(result, entities, staged, command, [], cancel)
        if result.not_matched:
            logger.warning(f"{result.not_matched:,} of {result.submitted:,} entities matched no row in {table}")
        return self._finish(result)

    def _transaction(self):
        if self.use_transaction:
            return self.db.transaction()
        return nullcontext()

    def _run(self, result: BulkResult, entities: Sequence[Any], columns: List[ColumnDefinition],
             command: Callable[[str], BatchCommand], key_columns: List[ColumnDefinition], cancel) -> None:
        self.db.ensure_open()
        frame = build_frame(entities, columns, self.dialect.row_index_column)
        cursor = self.db.cursor('list')
        try:
            with self._transaction():
                with staging_table(cursor, self.dialect, columns) as staging:
                    result.staging_table = staging.name
                    loader = BulkLoader(cursor, self.dialect, self.batch_size)
                    result.loaded = loader.load(staging, frame)
                    executor = BatchExecutor(cursor, command(staging.name), result, cancel=cancel)
                    if key_columns:
                        executor.drain_keys(entities, key_columns)
                    else:
                        executor.drain()
        except BulkCancelled:
            self.last_result = result
            raise
        except Exception as e:
            self.last_result = result
            logger.error(f"Bulk {result.operation} into {result.table} failed after "
                         f"{result.batches:,} batches: {e}")
            raise
        finally:
            cursor.close()

    def _skip(self, result: BulkResult, reason: str) -> BulkResult:
        result.skipped_reason = reason
        logger.warning(f"Skipped bulk {result.operation} into {result.table}: {reason}")
        self.counts['skipped'] += 1
        self.last_result = result
        return result

    def _finish(self, result: BulkResult) -> BulkResult:
        self.counts[result.operation] += result.rows_affected
        self.counts['not_matched'] += result.not_matched
        self.last_result = result
        logger.info(
            f"Staged `{result.table}` <{result.operation}s: {result.rows_affected:,}; "
            f"batches: {result.batches:,}; keys: {len(result.keys):,}; not matched: {result.not_matched:,}>")
        return result

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            logger.info(
                f"{self.__class__.__name__}: {self.counts['insert']:,} inserted, "
                f"{self.counts['update']:,} updated, {self.counts['not_matched']:,} not matched, "
                f"{self.counts['skipped']:,} skipped → {self.entity_map.table}"
            )
        return None


def bulk_insert(db, entities: Iterable[Any], batch_size: Optional[int] = None,
                entity_map: Optional[EntityMap] = None, **kwargs) -> BulkResult:
    """
    Insert entities through a staging table.

    The mapping is looked up from the first entity's type unless given.
    Extra keyword arguments go to StagedSurge (use_transaction) or to
    StagedSurge.insert (keep_identity, apply_keys, cancel).

    Example
    -------
    ::

        todos = [TodoItem(name='Teste 1', complete=True), TodoItem(name='Teste 2', complete=False)]
        bulk_insert(db, todos)
        db.commit()
        [t.id for t in todos]   # [1, 2]
    """
    entities = list(entities)
    if not entities and entity_map is None:
        result = BulkResult('insert', '', submitted=0, skipped_reason="no entities")
        logger.warning("Skipped bulk insert: no entities")
        return result
    surge = StagedSurge(db, resolve_entity_map(entities, entity_map), batch_size=batch_size,
                        use_transaction=kwargs.pop('use_transaction', False))
    return surge.insert(entities, **kwargs)


def bulk_update(db, entities: Iterable[Any], batch_size: Optional[int] = None,
                columns: Optional[Iterable[str]] = None, entity_map: Optional[EntityMap] = None,
                **kwargs) -> BulkResult:
    """
    Update entities by primary key through a staging table.

    ``columns`` limits the updated columns (column or attribute names).
    """
    entities = list(entities)
    if not entities and entity_map is None:
        result = BulkResult('update', '', submitted=0, skipped_reason="no entities")
        logger.warning("Skipped bulk update: no entities")
        return result
    surge = StagedSurge(db, resolve_entity_map(entities, entity_map), batch_size=batch_size,
                        use_transaction=kwargs.pop('use_transaction', False))
    return surge.update(entities, columns=columns, **kwargs)
