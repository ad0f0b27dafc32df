# dbstage/cursors.py
"""
Cursor wrappers. Rows come back as lists (``Cursor``) or as dicts keyed by
the column names the server reports (``DictCursor``). Everything not
defined here is delegated to the driver cursor stored in ``_cursor``.
"""

import logging
from typing import List, Any, Optional, Iterator, Callable, Sequence

from .defaults import settings

logger = logging.getLogger(__name__)
__all__ = ['Cursor', 'DictCursor']


class Cursor:
    """
    Cursor returning rows as lists.

    Adds statement logging when ``debug`` is set and picks the fastest
    ``executemany`` the driver has the first time it is called: pyodbc gets
    ``fast_executemany`` and psycopg2 goes through ``execute_batch`` with
    ``batch_size`` rows per page.

    Example
    -------
    ::

        cursor = db.cursor()
        cursor.execute("SELECT Id, Name FROM TodoItems")
        for todo_id, name in cursor:
            ...
    """
    _local_attrs = ['connection', 'debug', 'record_factory', 'batch_size', 'paramstyle', '_cursor', '_bulk_method']
    WRAPPER_SETTINGS = ('batch_size', 'debug', 'type')

    def __init__(self, connection, batch_size: Optional[int] = None, debug: bool = False, **kwargs):
        self.connection = connection
        self.debug = debug
        self.record_factory = None
        self.batch_size = batch_size or settings.get('default_batch_size', 1000)
        self._bulk_method = None
        driver_kwargs = {key: val for key, val in kwargs.items() if key not in self.WRAPPER_SETTINGS}
        self._cursor = connection._connection.cursor(**driver_kwargs)
        self.paramstyle = connection.interface.paramstyle

    def __getattr__(self, key: str) -> Any:
        return getattr(self._cursor, key)

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._cursor, key, value)

    def __iter__(self) -> Iterator:
        return self

    def __next__(self) -> Any:
        row = self.fetchone()
        if row is None:
            raise StopIteration
        return row

    def _detect_bulk_method(self) -> Callable:
        driver = self.connection.interface.__name__
        if driver == 'psycopg2':
            from psycopg2.extras import execute_batch
            logger.debug("executemany -> psycopg2.extras.execute_batch")
            return lambda cur, sql, rows: execute_batch(cur, sql, rows, page_size=self.batch_size)
        if driver == 'pyodbc' and not getattr(self._cursor, 'fast_executemany', True):
            self._cursor.fast_executemany = True
            logger.debug("pyodbc: fast_executemany enabled")
        return lambda cur, sql, rows: cur.executemany(sql, rows)

    def _make_record_factory(self) -> Callable:
        return lambda *values: list(values)

    def columns(self) -> List[str]:
        """Column names of the current result set, as reported by the server."""
        return [c[0] for c in self._cursor.description or ()]

    def _check_result(self) -> None:
        if self._cursor.description is None:
            raise self.connection.interface.ProgrammingError('Statement did not return rows.')
        self.record_factory = self._make_record_factory()

    def execute(self, query: str, bind_vars: Sequence = ()) -> 'Cursor':
        if self.debug:
            logger.debug(f'Query:\n{query}\nBind vars: {bind_vars}')
        if bind_vars:
            self._cursor.execute(query, bind_vars)
        else:
            self._cursor.execute(query)
        return self

    def executemany(self, query: str, bind_vars: List[Sequence]) -> 'Cursor':
        if not bind_vars:
            return self
        if self.debug:
            logger.debug(f'Executemany:\n{query}\nFirst row: {bind_vars[0]}')
        if self._bulk_method is None:
            self._bulk_method = self._detect_bulk_method()
        self._bulk_method(self._cursor, query, bind_vars)
        return self

    def fetchone(self) -> Optional[Any]:
        self._check_result()
        row = self._cursor.fetchone()
        return None if row is None else self.record_factory(*row)

    def fetchall(self) -> List[Any]:
        self._check_result()
        return [self.record_factory(*row) for row in self._cursor.fetchall()]


class DictCursor(Cursor):
    """Cursor returning rows as dicts keyed by column name."""

    def _make_record_factory(self) -> Callable:
        columns = self.columns()
        return lambda *values: dict(zip(columns, values))
