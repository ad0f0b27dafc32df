# dbstage/etl/staging.py

"""
Staging table lifecycle.

Every bulk operation gets its own randomly named staging table. The
``staging_table`` context manager creates it and drops it on every exit
path, including a failed CREATE.
"""

import logging
import secrets
import string
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple

from ..defaults import settings
from .columns import ColumnDefinition
from .dialects import Dialect

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_letters + string.digits


def staging_table_name(prefix: Optional[str] = None, length: Optional[int] = None) -> str:
    """
    Random staging table name, e.g. ``Temp_q3ZbV0xkR7pLm2Ws``.

    Characters come from ``secrets`` over the 62 letters and digits so names
    from concurrent operations do not collide.
    """
    if prefix is None:
        prefix = settings.get('staging_prefix', 'Temp_')
    if length is None:
        length = settings.get('staging_name_length', 16)
    if length < 1:
        raise ValueError(f"Staging name length must be positive, got {length}")
    return prefix + ''.join(secrets.choice(ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class StagingTable:
    """A created staging table and the columns it holds (ordering column excluded)."""
    name: str
    columns: Tuple[ColumnDefinition, ...]
    row_index_column: str

    @property
    def column_names(self) -> Tuple[str, ...]:
        """Staging column names in table order, ordering column last."""
        return tuple(c.name for c in self.columns) + (self.row_index_column,)


def _drop(cursor, dialect: Dialect, name: str) -> None:
    sql = dialect.drop_staging(name)
    logger.debug(f"Dropping staging table {name}")
    cursor.execute(sql)


@contextmanager
def staging_table(cursor, dialect: Dialect, columns: Sequence[ColumnDefinition],
                  name: Optional[str] = None) -> Iterator[StagingTable]:
    """
    Create a staging table for ``columns`` and drop it when the block exits.

    The drop runs whether the block succeeds, raises, or the CREATE itself
    fails. When the block is already raising, a failed drop is logged and the
    original error propagates.

    Example
    -------
    ::

        with staging_table(cursor, dialect, entity_map.insert_columns()) as staging:
            loader.load(staging, frame)
            ...
    """
    staging = StagingTable(name or staging_table_name(), tuple(columns), dialect.row_index_column)
    create_sql = dialect.create_staging(staging.name, staging.columns)
    try:
        logger.debug(f"Creating staging table {staging.name}:\n{create_sql}")
        cursor.execute(create_sql)
        yield staging
    except BaseException:
        try:
            _drop(cursor, dialect, staging.name)
        except Exception as e:
            logger.warning(f"Failed to drop staging table {staging.name}: {e}")
        raise
    else:
        _drop(cursor, dialect, staging.name)
