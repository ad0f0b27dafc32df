# dbstage/etl/dialects.py

"""
Dialect specific SQL for staged bulk operations.

A Dialect knows how to create and drop a staging table and how to build the
batch commands that move rows from staging into the target table. Only
identifiers and the integer batch size are ever written into the SQL text;
row values travel through the bulk transfer channel.

Dialects are looked up by ``Database.server_type``. Additional dialects can
be plugged in with ``register_dialect``.
"""

import datetime as dt
import decimal
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Type, Union

from ..defaults import settings
from ..exceptions import UnsupportedDialectError
from ..utils import quote_identifier, wrap_at_comma
from .columns import ColumnDefinition

logger = logging.getLogger(__name__)

APPLY = 'apply'
DRAIN = 'drain'


@dataclass(frozen=True)
class Statement:
    """
    One SQL statement of a batch command.

    Attributes:
        sql: Statement text
        role: APPLY (writes the target table) or DRAIN (removes the batch from staging)
        fetch: Statement returns generated key rows
        sort_keys: Returned key rows need sorting by their key values
    """
    sql: str
    role: str
    fetch: bool = False
    sort_keys: bool = False


@dataclass(frozen=True)
class BatchCommand:
    """Statements executed, in order, once per batch."""
    operation: str
    statements: Tuple[Statement, ...]

    @property
    def returns_keys(self) -> bool:
        return any(s.fetch for s in self.statements)

    @property
    def sql(self) -> str:
        return ';\n\n'.join(s.sql for s in self.statements)


class Dialect(ABC):
    """
    Capability interface for a database backend.

    Subclasses set the identifier quote characters and the default storage
    types, and build the insert, update and drain statements.
    """

    name: str = None
    open_quote = '"'
    close_quote = '"'
    ROW_INDEX_TYPE = 'BIGINT'
    TYPE_MAP: Dict[type, str] = {}

    def __init__(self, row_index_column: Optional[str] = None):
        self.row_index_column = row_index_column or settings.get('row_index_column', 'RowIndex')

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def check_server(self, db) -> None:
        """Raise UnsupportedDialectError if the connected server lacks required features."""

    def quote(self, identifier: str) -> str:
        """Validate and quote an identifier."""
        return quote_identifier(identifier, self.open_quote, self.close_quote)

    def column_type(self, column: ColumnDefinition) -> str:
        """Storage type for a staging column."""
        if column.db_type:
            return column.db_type
        for klass in getattr(column.python_type, '__mro__', ()):
            if klass in self.TYPE_MAP:
                return self.TYPE_MAP[klass]
        raise ValueError(
            f"Column '{column.name}' has no db_type and {self.name} has no default "
            f"storage type for {column.python_type.__name__}")

    @staticmethod
    def _limit(batch_size: int) -> int:
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
        return batch_size

    @staticmethod
    def _join(items: Sequence[str]) -> str:
        text = ', '.join(items)
        return wrap_at_comma(text) if len(items) > 4 else text

    def create_staging(self, staging: str, columns: Sequence[ColumnDefinition]) -> str:
        """CREATE TABLE for a staging table holding ``columns`` plus the ordering column."""
        names = {c.name.lower() for c in columns}
        if self.row_index_column.lower() in names:
            raise ValueError(
                f"Column name '{self.row_index_column}' is reserved for the staging ordering column")
        lines = [f"{self.quote(c.name)} {self.column_type(c)} NULL" for c in columns]
        lines.append(f"{self.quote(self.row_index_column)} {self.ROW_INDEX_TYPE} NOT NULL PRIMARY KEY")
        body = ',\n    '.join(lines)
        return f"CREATE TABLE {self.quote(staging)} (\n    {body}\n)"

    def drop_staging(self, staging: str) -> str:
        return f"DROP TABLE IF EXISTS {self.quote(staging)}"

    def insert_batch(self, target: str, staging: str, columns: Sequence[ColumnDefinition],
                     batch_size: int, generated_keys: Sequence[ColumnDefinition] = (),
                     keep_identity: bool = False) -> BatchCommand:
        """
        Command moving the next ``batch_size`` staging rows into ``target``.

        When ``generated_keys`` is given the apply statement returns the new
        key values ordered the same way the rows were staged.
        """
        if not columns:
            raise ValueError(f"No insertable columns for {target}")
        limit = self._limit(batch_size)
        apply = self._insert_statement(target, staging, list(columns), limit,
                                       list(generated_keys), keep_identity)
        logger.debug(f"Generated insert batch SQL for {target}:\n{apply.sql}")
        return BatchCommand('insert', (apply, self._drain_statement(staging, limit)))

    def update_batch(self, target: str, staging: str, set_columns: Sequence[ColumnDefinition],
                     key_columns: Sequence[ColumnDefinition], batch_size: int) -> BatchCommand:
        """Command updating ``target`` from the next ``batch_size`` staging rows, joined on key."""
        if not key_columns:
            raise ValueError(f"Cannot update {target}: no primary key columns defined")
        if not set_columns:
            raise ValueError(f"Cannot update {target}: no columns to set")
        limit = self._limit(batch_size)
        apply = Statement(self._update_sql(target, staging, list(set_columns), list(key_columns), limit), APPLY)
        logger.debug(f"Generated update batch SQL for {target}:\n{apply.sql}")
        return BatchCommand('update', (apply, self._drain_statement(staging, limit)))

    @abstractmethod
    def _insert_statement(self, target: str, staging: str, columns: List[ColumnDefinition],
                          limit: int, generated_keys: List[ColumnDefinition],
                          keep_identity: bool) -> Statement:
        ...

    @abstractmethod
    def _update_sql(self, target: str, staging: str, set_columns: List[ColumnDefinition],
                    key_columns: List[ColumnDefinition], limit: int) -> str:
        ...

    @abstractmethod
    def _drain_statement(self, staging: str, limit: int) -> Statement:
        ...


class SqlServerDialect(Dialect):
    """
    SQL Server (2016+). Generated keys come back through ``OUTPUT INSERTED``
    into a table variable, selected in key order. Identity values follow the
    ``ORDER BY`` of an ``INSERT ... SELECT``, so key order is staging order.
    """

    name = 'sqlserver'
    open_quote = '['
    close_quote = ']'
    TYPE_MAP = {
        bool: 'BIT',
        int: 'BIGINT',
        float: 'FLOAT',
        decimal.Decimal: 'DECIMAL(38, 10)',
        str: 'NVARCHAR(MAX)',
        dt.datetime: 'DATETIME2',
        dt.date: 'DATE',
        dt.time: 'TIME',
        bytes: 'VARBINARY(MAX)',
        uuid.UUID: 'UNIQUEIDENTIFIER',
    }

    def _batch_source(self, staging: str, limit: int) -> str:
        return f"SELECT TOP ({limit}) * FROM {self.quote(staging)} ORDER BY {self.quote(self.row_index_column)}"

    def _insert_statement(self, target, staging, columns, limit, generated_keys, keep_identity):
        table = self.quote(target)
        cols = self._join([self.quote(c.name) for c in columns])
        insert = [
            f"INSERT INTO {table} ({cols})",
            f"SELECT TOP ({limit}) {cols}",
            f"FROM {self.quote(staging)}",
            f"ORDER BY {self.quote(self.row_index_column)}",
        ]

        if keep_identity:
            lines = [f"SET IDENTITY_INSERT {table} ON;"] + insert
            lines[-1] += ';'
            lines.append(f"SET IDENTITY_INSERT {table} OFF")
            return Statement('\n'.join(lines), APPLY)

        if not generated_keys:
            return Statement('\n'.join(insert), APPLY)

        key_names = [self.quote(k.name) for k in generated_keys]
        key_defs = ', '.join(f"{self.quote(k.name)} {self.column_type(k)}" for k in generated_keys)
        key_list = ', '.join(key_names)
        output = ', '.join(f"INSERTED.{name}" for name in key_names)
        lines = [
            "SET NOCOUNT ON;",
            f"DECLARE @keys TABLE ({key_defs});",
            insert[0],
            f"OUTPUT {output} INTO @keys ({key_list})",
        ] + insert[1:]
        lines[-1] += ';'
        lines.append(f"SELECT {key_list} FROM @keys ORDER BY {key_list};")
        # NOCOUNT is session-wide; the drain that follows needs its rowcount
        lines.append("SET NOCOUNT OFF")
        return Statement('\n'.join(lines), APPLY, fetch=True, sort_keys=True)

    def _update_sql(self, target, staging, set_columns, key_columns, limit):
        assignments = self._join([f"target.{self.quote(c.name)} = batch.{self.quote(c.name)}"
                                  for c in set_columns])
        conditions = '\n    AND '.join(f"target.{self.quote(c.name)} = batch.{self.quote(c.name)}"
                                       for c in key_columns)
        return '\n'.join([
            "UPDATE target",
            f"SET {assignments}",
            f"FROM {self.quote(target)} AS target",
            f"JOIN ({self._batch_source(staging, limit)}) AS batch",
            f"    ON {conditions}",
        ])

    def _drain_statement(self, staging, limit):
        sql = f"WITH batch AS ({self._batch_source(staging, limit)})\nDELETE FROM batch"
        return Statement(sql, DRAIN)


class LimitDialect(Dialect):
    """Shared SQL for backends using ``LIMIT``, ``UPDATE ... FROM`` and ``RETURNING``."""

    overriding_identity = ''

    def _insert_statement(self, target, staging, columns, limit, generated_keys, keep_identity):
        cols = self._join([self.quote(c.name) for c in columns])
        lines = [f"INSERT INTO {self.quote(target)} ({cols})"]
        if keep_identity and self.overriding_identity:
            lines.append(self.overriding_identity)
        lines += [
            f"SELECT {cols}",
            f"FROM {self.quote(staging)}",
            f"ORDER BY {self.quote(self.row_index_column)}",
            f"LIMIT {limit}",
        ]
        if keep_identity or not generated_keys:
            return Statement('\n'.join(lines), APPLY)
        lines.append(f"RETURNING {', '.join(self.quote(k.name) for k in generated_keys)}")
        return Statement('\n'.join(lines), APPLY, fetch=True, sort_keys=True)

    def _update_sql(self, target, staging, set_columns, key_columns, limit):
        assignments = self._join([f"{self.quote(c.name)} = batch.{self.quote(c.name)}" for c in set_columns])
        conditions = '\n    AND '.join(f"target.{self.quote(c.name)} = batch.{self.quote(c.name)}"
                                       for c in key_columns)
        row_index = self.quote(self.row_index_column)
        return '\n'.join([
            f"UPDATE {self.quote(target)} AS target",
            f"SET {assignments}",
            f"FROM (SELECT * FROM {self.quote(staging)} ORDER BY {row_index} LIMIT {limit}) AS batch",
            f"WHERE {conditions}",
        ])

    def _drain_statement(self, staging, limit):
        table = self.quote(staging)
        row_index = self.quote(self.row_index_column)
        sql = (f"DELETE FROM {table}\n"
               f"WHERE {row_index} IN (SELECT {row_index} FROM {table} ORDER BY {row_index} LIMIT {limit})")
        return Statement(sql, DRAIN)


class PostgresDialect(LimitDialect):
    """PostgreSQL. ``RETURNING`` order is not guaranteed, so key rows are sorted by key."""

    name = 'postgres'
    overriding_identity = 'OVERRIDING SYSTEM VALUE'
    TYPE_MAP = {
        bool: 'BOOLEAN',
        int: 'BIGINT',
        float: 'DOUBLE PRECISION',
        decimal.Decimal: 'NUMERIC',
        str: 'TEXT',
        dt.datetime: 'TIMESTAMP',
        dt.date: 'DATE',
        dt.time: 'TIME',
        bytes: 'BYTEA',
        uuid.UUID: 'UUID',
    }


class SqliteDialect(LimitDialect):
    """SQLite 3.35+ (``UPDATE ... FROM`` and ``RETURNING``)."""

    name = 'sqlite'
    ROW_INDEX_TYPE = 'INTEGER'
    MIN_VERSION = (3, 35, 0)
    TYPE_MAP = {
        bool: 'INTEGER',
        int: 'INTEGER',
        float: 'REAL',
        decimal.Decimal: 'NUMERIC',
        str: 'TEXT',
        dt.datetime: 'TEXT',
        dt.date: 'TEXT',
        dt.time: 'TEXT',
        bytes: 'BLOB',
        uuid.UUID: 'TEXT',
    }

    def check_server(self, db) -> None:
        version = getattr(getattr(db, 'interface', None), 'sqlite_version_info', None)
        if version is not None and tuple(version) < self.MIN_VERSION:
            required = '.'.join(str(v) for v in self.MIN_VERSION)
            found = '.'.join(str(v) for v in version)
            raise UnsupportedDialectError(
                self.name, f"SQLite {required}+ is required for UPDATE ... FROM and RETURNING, found {found}")


DIALECTS: Dict[str, Type[Dialect]] = {
    'sqlserver': SqlServerDialect,
    'postgres': PostgresDialect,
    'sqlite': SqliteDialect,
}


def register_dialect(server_type: str, dialect_class: Type[Dialect]) -> None:
    """Register a Dialect subclass for a ``Database.server_type``."""
    if not (isinstance(dialect_class, type) and issubclass(dialect_class, Dialect)):
        raise TypeError(f"{dialect_class!r} is not a Dialect subclass")
    DIALECTS[server_type] = dialect_class


def get_dialect(db_or_type: Union[str, object], row_index_column: Optional[str] = None) -> Dialect:
    """
    Dialect instance for a Database (by its ``server_type``) or a server type name.

    Raises:
        UnsupportedDialectError: if no dialect is registered for the server type
    """
    server_type = db_or_type if isinstance(db_or_type, str) else getattr(db_or_type, 'server_type', None)
    dialect_class = DIALECTS.get(server_type)
    if dialect_class is None:
        raise UnsupportedDialectError(str(server_type))
    return dialect_class(row_index_column=row_index_column)
