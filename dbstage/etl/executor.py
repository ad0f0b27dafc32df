# dbstage/etl/executor.py

"""
Runs a batch command against staging until it is drained, and resolves
generated keys back to entities by position.

Key rows come back in staging order (the dialect sorts them by key, which the
server assigns in ``RowIndex`` order), and entities are staged in input order,
so row N of batch B belongs to entity ``offset + N``. Nothing else ties a key
to its entity.
"""

import decimal
import logging
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import BulkCancelled, BulkOperationError, KeyConversionError, KeyResolutionError
from .columns import ColumnDefinition
from .dialects import APPLY, BatchCommand, Statement

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """
    Outcome of one staged bulk operation.

    Attributes:
        operation: 'insert' or 'update'
        table: Target table
        submitted: Number of entities passed in
        staging_table: Name of the staging table used, None when skipped
        loaded: Rows loaded into staging
        batches: Batches applied
        rows_affected: Target rows inserted or updated
        rows_drained: Staging rows processed
        keys: Generated keys by 1-based entity position, ``{attr: value}``
        skipped_reason: Why nothing was done, None when the operation ran
    """
    operation: str
    table: str
    submitted: int = 0
    staging_table: Optional[str] = None
    loaded: int = 0
    batches: int = 0
    rows_affected: int = 0
    rows_drained: int = 0
    keys: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def not_matched(self) -> int:
        """Staged update rows whose primary key matched no target row."""
        if self.operation != 'update':
            return 0
        return max(self.rows_drained - self.rows_affected, 0)

    def apply_keys(self, entities: Sequence[Any]) -> int:
        """Write captured keys onto ``entities`` by position. Returns entities updated."""
        for position, values in self.keys.items():
            entity = entities[position - 1]
            for attr, value in values.items():
                if isinstance(entity, MutableMapping):
                    entity[attr] = value
                else:
                    setattr(entity, attr, value)
        return len(self.keys)


def convert_key(value: Any, python_type: type) -> Any:
    """
    Convert a raw key value from the driver to the entity attribute's type.

    Raises:
        ValueError, TypeError: when the value cannot be converted
    """
    if value is None:
        raise ValueError("generated key is NULL")
    if python_type is object:
        return value
    if python_type is bool:
        if isinstance(value, (bool, int)):
            return bool(value)
        raise TypeError(f"cannot convert {type(value).__name__} to bool")
    if isinstance(value, python_type) and not isinstance(value, bool):
        return value
    if python_type is uuid.UUID:
        return uuid.UUID(bytes=value) if isinstance(value, bytes) else uuid.UUID(str(value))
    if python_type is int and isinstance(value, (float, decimal.Decimal)) and value != int(value):
        raise ValueError(f"{value!r} is not a whole number")
    return python_type(value)


class BatchExecutor:
    """
    Executes a BatchCommand repeatedly until a batch drains no staging rows.

    Key rows are read by position, one value per generated key column in
    mapping order, so the cursor must return sequence rows (the list
    ``Cursor``). ``cancel`` is an optional ``threading.Event`` checked before
    each batch, never during one.
    """

    def __init__(self, cursor, command: BatchCommand, result: BulkResult, cancel=None):
        self.cursor = cursor
        self.command = command
        self.result = result
        self.cancel = cancel

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            logger.warning(f"{self.command.operation.capitalize()} into {self.result.table} cancelled "
                           f"after {self.result.batches:,} batches")
            raise BulkCancelled(f"Cancelled after {self.result.batches} batches", self.result)

    def _fetch(self, statement: Statement) -> List[tuple]:
        rows = [tuple(row) for row in self.cursor.fetchall()]
        if statement.sort_keys:
            rows.sort()
        return rows

    def _run_batch(self) -> Tuple[int, int, List[tuple]]:
        applied = drained = 0
        rows = []
        for statement in self.command.statements:
            self.cursor.execute(statement.sql)
            if statement.fetch:
                fetched = self._fetch(statement)
                rows.extend(fetched)
                applied += len(fetched)
            elif statement.role == APPLY:
                applied += max(self.cursor.rowcount, 0)
            elif self.cursor.rowcount < 0:
                raise BulkOperationError(
                    f"Driver reported no row count for the drain of batch {self.result.batches + 1} "
                    f"from {self.result.staging_table}", self.result)
            else:
                drained += self.cursor.rowcount
        return applied, drained, rows

    def drain(self) -> BulkResult:
        """Plain mode: run batches until staging is empty."""
        while True:
            self._check_cancel()
            applied, drained, _ = self._run_batch()
            if drained == 0:
                break
            self.result.batches += 1
            self.result.rows_affected += applied
            self.result.rows_drained += drained
            logger.debug(f"Batch {self.result.batches}: {applied:,} applied, {drained:,} drained "
                         f"from {self.result.staging_table}")
        return self.result

    def drain_keys(self, entities: Sequence[Any], key_columns: Sequence[ColumnDefinition]) -> BulkResult:
        """
        Key-resolving mode: run batches, capturing each batch's generated keys
        for the next N entities of ``entities`` (N = rows returned).

        Raises:
            KeyResolutionError: returned key rows do not match the drained rows
            KeyConversionError: a key cannot be converted to its attribute type
        """
        offset = 0
        while True:
            self._check_cancel()
            applied, drained, rows = self._run_batch()
            if not rows and drained == 0:
                break
            self.result.batches += 1
            self.result.rows_affected += applied
            self.result.rows_drained += drained
            if len(rows) != drained or offset + len(rows) > len(entities):
                raise KeyResolutionError(
                    f"Batch {self.result.batches} returned {len(rows)} keys for {drained} staged rows "
                    f"({len(entities) - offset} entities left)", self.result)

            for position, row in enumerate(rows, start=offset + 1):
                if len(row) != len(key_columns):
                    raise KeyResolutionError(
                        f"Key row for entity {position} has {len(row)} values for "
                        f"{len(key_columns)} key columns", self.result)
                values = {}
                for col, raw in zip(key_columns, row):
                    try:
                        values[col.attr] = convert_key(raw, col.python_type)
                    except (TypeError, ValueError, ArithmeticError) as e:
                        raise KeyConversionError(
                            f"Cannot convert key {col.name}={raw!r} for entity {position} "
                            f"to {col.python_type.__name__}: {e}", self.result) from e
                self.result.keys[position] = values
            offset += len(rows)
            logger.debug(f"Batch {self.result.batches}: captured {len(rows):,} keys "
                         f"(entities {offset - len(rows) + 1}-{offset})")
        return self.result
