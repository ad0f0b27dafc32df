# dbstage/__init__.py
"""
dbstage - staged bulk loading with generated-key round-trip

Inserts or updates large sets of in-memory entities through a staging table:

- Entities are bulk copied into a randomly named staging table
- Rows move into the target table in ordered batches
- Keys generated by the server are written back onto the entities in order
- The staging table is always dropped, also when the load fails

Basic usage::

    import dbstage
    from dbstage.etl import register_entity

    register_entity(TodoItem, 'TodoItems', {
        'Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
        'Name': {'attr': 'name', 'type': str},
        'IsComplete': {'attr': 'complete', 'type': bool},
    })

    with dbstage.connect('todo_db') as db:
        dbstage.bulk_insert(db, todos)
        db.commit()

Direct connections:
    from dbstage.database import sqlserver, sqlite

    db = sqlite('todos.db')
"""

__version__ = '0.1.0'

from .database import Database
from .config import connect, set_config_file
from .cursors import Cursor, DictCursor
from .logging_utils import setup_logging, errors_logged, cleanup_old_logs
from .exceptions import (DbstageError, UnmappedEntityError, UnsupportedDialectError, BulkOperationError,
                         KeyConversionError, KeyResolutionError, BulkCancelled)
from .etl import BulkResult, EntityMap, StagedSurge, bulk_insert, bulk_update, register_entity
from . import etl

__all__ = [
    'connect',
    'set_config_file',
    'Database',
    'Cursor',
    'DictCursor',
    'etl',
    'EntityMap',
    'register_entity',
    'StagedSurge',
    'BulkResult',
    'bulk_insert',
    'bulk_update',
    'setup_logging',
    'errors_logged',
    'cleanup_old_logs',
    'DbstageError',
    'UnmappedEntityError',
    'UnsupportedDialectError',
    'BulkOperationError',
    'KeyConversionError',
    'KeyResolutionError',
    'BulkCancelled',
]
