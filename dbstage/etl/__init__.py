# dbstage/etl/__init__.py
"""
Staged bulk insert and update.

- EntityMap / register_entity: explicit column mapping for entity types
- StagedSurge: bulk operations through a per-operation staging table
- bulk_insert / bulk_update: one-call wrappers that look the mapping up
- Dialect / register_dialect: SQL for each supported server type

Example
-------
::

    from dbstage.etl import EntityMap, register_entity, bulk_insert, bulk_update

    register_entity(TodoItem, 'TodoItems', {
        'Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
        'Name': {'attr': 'name', 'type': str},
        'IsComplete': {'attr': 'complete', 'type': bool},
    })

    result = bulk_insert(db, todos, batch_size=1000)   # todos[i].id now set
    bulk_update(db, todos, columns=['IsComplete'])
"""

from .columns import ColumnDefinition, EntityMap, register_entity, unregister_entity, get_entity_map, columns
from .dialects import Dialect, SqlServerDialect, PostgresDialect, SqliteDialect, register_dialect, get_dialect
from .executor import BulkResult
from .surge import StagedSurge, bulk_insert, bulk_update
from .config_generators import column_defs_from_db, entity_map_from_db

__all__ = [
    'ColumnDefinition', 'EntityMap', 'register_entity', 'unregister_entity', 'get_entity_map', 'columns',
    'Dialect', 'SqlServerDialect', 'PostgresDialect', 'SqliteDialect', 'register_dialect', 'get_dialect',
    'BulkResult', 'StagedSurge', 'bulk_insert', 'bulk_update',
    'column_defs_from_db', 'entity_map_from_db',
]
