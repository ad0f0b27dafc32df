# dbstage/etl/config_generators.py
"""
Generate EntityMap column definitions from database schema.

Reads table metadata (column order, primary key, identity and computed
columns) and returns the column dict EntityMap takes, or formats it as
Python code that can be pasted into an EntityMap() call.
"""

import re
from typing import Any, Dict, Optional

from ..cursors import DictCursor
from ..utils import quote_identifier
from .columns import EntityMap

# database type name prefixes -> type names understood by EntityMap
_TYPE_PATTERNS = [
    (r'^(tinyint|bit|bool)', 'bool'),
    (r'^(bigint|int|smallint|integer|serial|bigserial)', 'int'),
    (r'^(real|float|double)', 'float'),
    (r'^(decimal|numeric|money|smallmoney)', 'decimal'),
    (r'^(datetime|timestamp|smalldatetime)', 'datetime'),
    (r'^date', 'date'),
    (r'^time', 'time'),
    (r'^(uuid|uniqueidentifier)', 'uuid'),
    (r'^(bytea|blob|binary|varbinary|image)', 'bytes'),
    (r'^(char|varchar|nchar|nvarchar|text|ntext|character|clob|citext|string)', 'str'),
]


def python_type_name(data_type: str) -> Optional[str]:
    """Type name for a database column type, None when unknown."""
    data_type = (data_type or '').strip().lower()
    if data_type == 'tinyint':
        return 'int'
    for pattern, name in _TYPE_PATTERNS:
        if re.match(pattern, data_type):
            return name
    return None


def column_defs_from_db(cursor, table_name: str) -> Dict[str, Dict[str, Any]]:
    """
    Column definitions for an existing table, in table column order.

    Args:
        cursor: Database cursor (any cursor type)
        table_name: Name of table to analyze (supports schema.table format)

    Returns:
        Dict of column name -> EntityMap column options

    Example:
        >>> column_defs_from_db(cursor, 'TodoItems')
        {'Id': {'type': 'int', 'primary_key': True, 'identity': True},
         'Name': {'type': 'str'},
         'IsComplete': {'type': 'bool'}}
    """
    # metadata queries read rows positionally
    if isinstance(cursor, DictCursor):
        cursor = cursor.connection.cursor('list')

    db_type = cursor.connection.server_type
    if db_type == 'sqlite':
        rows = _get_sqlite_metadata(cursor, table_name)
    elif db_type == 'postgres':
        rows = _get_postgres_metadata(cursor, table_name)
    elif db_type == 'sqlserver':
        rows = _get_sqlserver_metadata(cursor, table_name)
    else:
        raise ValueError(f"Column generation not supported for database type: {db_type}")
    if not rows:
        raise ValueError(f"Table {table_name} not found or has no columns")

    columns = {}
    for name, data_type, is_key, is_identity, is_computed in rows:
        options = {}
        type_name = python_type_name(data_type)
        if type_name:
            options['type'] = type_name
        if is_key:
            options['primary_key'] = True
        if is_identity:
            options['identity'] = True
        if is_computed:
            options['computed'] = True
        columns[name] = options
    return columns


def entity_map_from_db(cursor, table_name: str, entity_type: Optional[type] = None) -> EntityMap:
    """EntityMap built from the table's schema. Attribute names equal column names."""
    return EntityMap(table_name, column_defs_from_db(cursor, table_name), entity_type=entity_type)


def format_column_defs(columns: Dict[str, Dict[str, Any]]) -> str:
    """Format column definitions as Python code."""
    lines = ["{"]
    for col_name, options in columns.items():
        parts = []
        for key, value in options.items():
            if isinstance(value, str):
                parts.append(f"'{key}': '{value}'")
            else:
                parts.append(f"'{key}': {value}")
        lines.append(f"    '{col_name}': {{{', '.join(parts)}}},")
    lines.append("}")
    return "\n".join(lines)


def _get_sqlite_metadata(cursor, table_name: str):
    """table_xinfo rows; a lone INTEGER PRIMARY KEY is the rowid and so generated."""
    schema, _, table = table_name.rpartition('.')
    prefix = f"{quote_identifier(schema)}." if schema else ''
    cursor.execute(f"PRAGMA {prefix}table_xinfo({quote_identifier(table)})")
    info = cursor.fetchall()
    key_count = sum(1 for row in info if row[5])
    rows = []
    for cid, name, data_type, notnull, default, pk, hidden in info:
        if hidden == 1:
            continue
        is_identity = bool(pk) and key_count == 1 and (data_type or '').upper() == 'INTEGER'
        rows.append((name, data_type, bool(pk), is_identity, hidden in (2, 3)))
    return rows


def _get_postgres_metadata(cursor, table_name: str):
    tab_info = table_name.split('.')
    schema = None
    if len(tab_info) == 2:
        schema, table_name = tab_info

    col_query = '''
        SELECT
            c.column_name,
            c.data_type,
            CASE WHEN kcu.column_name IS NOT NULL THEN 'Y' ELSE 'N' END AS key_column,
            CASE WHEN c.is_identity = 'YES' OR c.column_default LIKE 'nextval(%%' THEN 'Y' ELSE 'N' END AS identity_column,
            CASE WHEN c.is_generated = 'ALWAYS' THEN 'Y' ELSE 'N' END AS computed_column
        FROM information_schema.columns c
        LEFT JOIN information_schema.table_constraints tc
            ON c.table_name = tc.table_name
            AND c.table_schema = tc.table_schema
            AND tc.constraint_type = 'PRIMARY KEY'
        LEFT JOIN information_schema.key_column_usage kcu
            ON c.column_name = kcu.column_name
            AND c.table_name = kcu.table_name
            AND tc.constraint_name = kcu.constraint_name
        WHERE c.table_name = %s
          AND c.table_schema = COALESCE(%s::varchar, current_schema())
        ORDER BY c.ordinal_position
    '''
    cursor.execute(col_query, (table_name, schema))
    return [(row[0], row[1], row[2] == 'Y', row[3] == 'Y', row[4] == 'Y') for row in cursor.fetchall()]


def _get_sqlserver_metadata(cursor, table_name: str):
    placeholder = '%s' if cursor.paramstyle in ('format', 'pyformat') else '?'
    col_query = f'''
        SELECT
            sc.name,
            TYPE_NAME(sc.user_type_id),
            CASE WHEN ic.column_id IS NOT NULL THEN 'Y' ELSE 'N' END AS key_column,
            CASE WHEN sc.is_identity = 1 THEN 'Y' ELSE 'N' END AS identity_column,
            CASE WHEN sc.is_computed = 1 OR TYPE_NAME(sc.user_type_id) = 'timestamp' THEN 'Y' ELSE 'N' END AS computed_column
        FROM sys.columns sc
        LEFT JOIN sys.indexes i
            ON i.object_id = sc.object_id AND i.is_primary_key = 1
        LEFT JOIN sys.index_columns ic
            ON ic.object_id = i.object_id AND ic.index_id = i.index_id AND ic.column_id = sc.column_id
        WHERE sc.object_id = OBJECT_ID({placeholder})
        ORDER BY sc.column_id
    '''
    cursor.execute(col_query, (table_name,))
    return [(row[0], row[1], row[2] == 'Y', row[3] == 'Y', row[4] == 'Y') for row in cursor.fetchall()]
