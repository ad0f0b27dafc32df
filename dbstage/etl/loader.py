# dbstage/etl/loader.py

"""
Bulk transfer of entities into a staging table.

Entities are first laid out in a polars DataFrame, one column per staged
ColumnDefinition plus the 1-based ordering column, then streamed into the
staging table in ``batch_size`` chunks over the fastest channel the driver
offers.
"""

import datetime as dt
import decimal
import io
import logging
from typing import Any, List, Optional, Sequence

import polars as pl

from ..defaults import settings
from ..utils import ParamStyle
from .columns import ColumnDefinition
from .dialects import Dialect
from .staging import StagingTable

logger = logging.getLogger(__name__)

POLARS_TYPES = {
    bool: pl.Boolean,
    int: pl.Int64,
    float: pl.Float64,
    str: pl.Utf8,
    dt.datetime: pl.Datetime,
    dt.date: pl.Date,
    dt.time: pl.Time,
    bytes: pl.Binary,
}

COPY_NULL = r'\N'


def copy_field(value: Any) -> str:
    """
    One field of COPY CSV input. NULL and numbers are written bare and
    everything else is quoted, so a string equal to the NULL marker still
    arrives as a string. Binary values use bytea hex format.
    """
    if value is None:
        return COPY_NULL
    if isinstance(value, (int, float, decimal.Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = '\\x' + bytes(value).hex()
    elif not isinstance(value, str):
        value = str(value)
    return '"' + value.replace('"', '""') + '"'


def polars_dtype(python_type: type):
    """Polars dtype for a column's Python type. Anything else is kept as Object."""
    for klass in getattr(python_type, '__mro__', ()):
        if klass in POLARS_TYPES:
            return POLARS_TYPES[klass]
    return pl.Object


def build_frame(entities: Sequence[Any], columns: Sequence[ColumnDefinition],
                row_index_column: Optional[str] = None) -> pl.DataFrame:
    """
    Tabular buffer for ``entities``: one row per entity, one column per
    ColumnDefinition (by name) and the ordering column holding each entity's
    1-based position. Missing attribute values are null.

    Example
    -------
    ::

        >>> frame = build_frame(todos, todo_map.insert_columns())
        >>> frame.columns
        ['Name', 'IsComplete', 'RowIndex']
    """
    row_index_column = row_index_column or settings.get('row_index_column', 'RowIndex')
    series = [
        pl.Series(col.name, [col.get(entity) for entity in entities], dtype=polars_dtype(col.python_type))
        for col in columns
    ]
    series.append(pl.Series(row_index_column, list(range(1, len(entities) + 1)), dtype=pl.Int64))
    return pl.DataFrame(series)


class BulkLoader:
    """
    Streams a DataFrame into a staging table.

    PostgreSQL connections through psycopg2 or psycopg use ``COPY ... FROM
    STDIN``. Everything else goes through ``Cursor.executemany``, which
    switches pyodbc to ``fast_executemany`` and psycopg2 to ``execute_batch``.
    """

    COPY_DRIVERS = ('psycopg2', 'psycopg')

    def __init__(self, cursor, dialect: Dialect, batch_size: int):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.cursor = cursor
        self.dialect = dialect
        self.batch_size = batch_size
        self.total_loaded = 0

    def load(self, staging: StagingTable, frame: pl.DataFrame) -> int:
        """Load every row of ``frame`` into ``staging``. Returns rows loaded."""
        names = list(staging.column_names)
        missing = [name for name in names if name not in frame.columns]
        if missing:
            raise ValueError(f"Buffer is missing staging columns: {', '.join(missing)}")
        # select by name so buffer column order never matters
        data = frame.select(names)

        connection = self.cursor.connection
        driver = connection.interface.__name__
        if connection.server_type == 'postgres' and driver in self.COPY_DRIVERS:
            loaded = self._copy_postgres(staging, names, data, driver)
        else:
            loaded = self._insert_many(staging, names, data)
        self.total_loaded += loaded
        logger.debug(f"Loaded {loaded:,} rows into {staging.name}")
        return loaded

    def _chunks(self, data: pl.DataFrame):
        for offset in range(0, data.height, self.batch_size):
            yield data.slice(offset, self.batch_size)

    def _insert_many(self, staging: StagingTable, names: List[str], data: pl.DataFrame) -> int:
        cols = ', '.join(self.dialect.quote(name) for name in names)
        placeholders = ParamStyle.placeholders(self.cursor.paramstyle, len(names))
        sql = f"INSERT INTO {self.dialect.quote(staging.name)} ({cols}) VALUES ({placeholders})"
        loaded = 0
        for chunk in self._chunks(data):
            self.cursor.executemany(sql, chunk.rows())
            loaded += chunk.height
        return loaded

    @staticmethod
    def _csv_chunk(chunk: pl.DataFrame) -> str:
        return ''.join(','.join(copy_field(value) for value in row) + '\n' for row in chunk.iter_rows())

    def _copy_postgres(self, staging: StagingTable, names: List[str], data: pl.DataFrame, driver: str) -> int:
        cols = ', '.join(self.dialect.quote(name) for name in names)
        sql = f"COPY {self.dialect.quote(staging.name)} ({cols}) FROM STDIN WITH (FORMAT csv, NULL '{COPY_NULL}')"
        loaded = 0
        for chunk in self._chunks(data):
            text = self._csv_chunk(chunk)
            if driver == 'psycopg2':
                self.cursor.copy_expert(sql, io.StringIO(text))
            else:
                with self.cursor.copy(sql) as copy:
                    copy.write(text)
            loaded += chunk.height
        return loaded
