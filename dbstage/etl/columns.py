# dbstage/etl/columns.py

"""
Explicit column mapping between entity types and database tables.

An EntityMap declares, in order, which entity attribute feeds which column
and what role the column plays (primary key, generated identity, computed).
Declared order is the column order used for staging tables and the bulk
transfer buffer.
"""

import datetime as dt
import decimal
import logging
import uuid
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..exceptions import UnmappedEntityError
from ..utils import validate_identifier

logger = logging.getLogger(__name__)

TYPE_NAMES = {
    'int': int,
    'integer': int,
    'bigint': int,
    'str': str,
    'string': str,
    'text': str,
    'bool': bool,
    'boolean': bool,
    'float': float,
    'decimal': decimal.Decimal,
    'numeric': decimal.Decimal,
    'date': dt.date,
    'datetime': dt.datetime,
    'timestamp': dt.datetime,
    'time': dt.time,
    'bytes': bytes,
    'binary': bytes,
    'uuid': uuid.UUID,
}

# Column options accepted in an EntityMap definition
COLUMN_OPTIONS = ('attr', 'type', 'db_type', 'primary_key', 'identity', 'computed')

_MISSING = object()


def resolve_type(value: Any) -> type:
    """Turn a type or a type name ('int', 'uuid', ...) into a Python type."""
    if value is None:
        return object
    if isinstance(value, type):
        return value
    if isinstance(value, str) and value.lower() in TYPE_NAMES:
        return TYPE_NAMES[value.lower()]
    raise ValueError(f"Unknown column type '{value}'. Use a Python type or one of {sorted(TYPE_NAMES)}")


@dataclass(frozen=True)
class ColumnDefinition:
    """
    One persisted column and the entity attribute that feeds it.

    Attributes:
        name: Column name in the database
        attr: Attribute (or mapping key) on the entity
        python_type: Type values are converted to when written back to entities
        db_type: Storage type used for staging columns. None lets the dialect
            pick one from python_type.
        primary_key: Part of the primary key
        identity: Value is generated by the server on insert
        computed: Value is computed by the server and never written
    """
    name: str
    attr: str
    python_type: type = object
    db_type: Optional[str] = None
    primary_key: bool = False
    identity: bool = False
    computed: bool = False

    @property
    def generated_key(self) -> bool:
        return self.primary_key and self.identity

    def get(self, entity: Any) -> Any:
        """Read the column value from an entity. Missing attributes read as None."""
        if isinstance(entity, Mapping):
            return entity.get(self.attr)
        value = getattr(entity, self.attr, _MISSING)
        return None if value is _MISSING else value

    def set(self, entity: Any, value: Any) -> None:
        """Write a value onto an entity."""
        if isinstance(entity, MutableMapping):
            entity[self.attr] = value
        else:
            setattr(entity, self.attr, value)


class EntityMap:
    """
    Declared mapping of an entity type onto a table.

    Columns are configured as a dict of column name to option dict. Options:

        * **attr** (str): entity attribute, defaults to the column name
        * **type** (type or str): Python type of the attribute
        * **db_type** (str): storage type for staging columns
        * **primary_key** (bool)
        * **identity** (bool): generated by the server on insert
        * **computed** (bool): computed by the server, never written

    Example
    -------
    ::

        todo_map = EntityMap('TodoItems', {
            'Id': {'attr': 'id', 'type': int, 'primary_key': True, 'identity': True},
            'Name': {'attr': 'name', 'type': str, 'db_type': 'nvarchar(200)'},
            'IsComplete': {'attr': 'complete', 'type': bool},
        }, entity_type=TodoItem)
    """

    def __init__(self, table: str, columns: Dict[str, Dict[str, Any]], entity_type: Optional[type] = None):
        validate_identifier(table)
        if not columns:
            raise ValueError(f"EntityMap for {table} must declare at least one column")
        self._table = table
        self.entity_type = entity_type

        definitions = []
        for name, options in columns.items():
            validate_identifier(name)
            options = options or {}
            unknown = set(options) - set(COLUMN_OPTIONS)
            if unknown:
                raise ValueError(f"Unknown options for column {table}.{name}: {sorted(unknown)}")
            definitions.append(ColumnDefinition(
                name=name,
                attr=options.get('attr', name),
                python_type=resolve_type(options.get('type')),
                db_type=options.get('db_type'),
                primary_key=bool(options.get('primary_key', False)),
                identity=bool(options.get('identity', False)),
                computed=bool(options.get('computed', False)),
            ))
        self._columns = tuple(definitions)

    def __repr__(self) -> str:
        return f"EntityMap('{self._table}', {len(self._columns)} columns)"

    @property
    def table(self) -> str:
        """Target table name."""
        return self._table

    @property
    def columns(self) -> List[ColumnDefinition]:
        """All mapped columns in declared order."""
        return list(self._columns)

    @property
    def key_columns(self) -> List[ColumnDefinition]:
        return [c for c in self._columns if c.primary_key]

    @property
    def generated_keys(self) -> List[ColumnDefinition]:
        """Primary key columns whose values the server generates."""
        return [c for c in self._columns if c.generated_key]

    def insert_columns(self, keep_identity: bool = False) -> List[ColumnDefinition]:
        """Columns written by an insert. Generated keys only when keep_identity."""
        return [c for c in self._columns
                if (not c.identity and not c.computed) or (keep_identity and c.generated_key)]

    def update_columns(self) -> List[ColumnDefinition]:
        """Columns staged for an update: everything not computed."""
        return [c for c in self._columns if not c.computed]

    def settable_columns(self, allow: Optional[Iterable[str]] = None) -> List[ColumnDefinition]:
        """
        Non-key columns an update may set, optionally limited to ``allow``.

        ``allow`` entries may be column names or attribute names.

        Raises:
            ValueError: for unknown names or names of key/computed columns
        """
        candidates = [c for c in self.update_columns() if not c.primary_key and not c.identity]
        if allow is None:
            return candidates
        allow = list(allow)
        if not allow:
            return candidates

        lookup = {}
        for col in self._columns:
            lookup[col.name] = col
            lookup.setdefault(col.attr, col)
        chosen = set()
        for name in allow:
            col = lookup.get(name)
            if col is None:
                raise ValueError(f"Unknown column '{name}' for {self._table}")
            if col not in candidates:
                raise ValueError(f"Column '{name}' of {self._table} is a key or server-managed column and cannot be updated")
            chosen.add(col.name)
        return [c for c in candidates if c.name in chosen]

    @classmethod
    def from_config(cls, name: str, entity_type: Optional[type] = None,
                    config_file: Optional[str] = None) -> 'EntityMap':
        """
        Build an EntityMap from the ``entities`` section of the YAML config.

        Example config::

            entities:
              todo_items:
                table: TodoItems
                columns:
                  Id: {attr: id, type: int, primary_key: true, identity: true}
                  Name: {attr: name, type: str, db_type: nvarchar(200)}
        """
        from ..config import get_entity_config

        entry = get_entity_config(name, config_file=config_file)
        return cls(entry['table'], entry['columns'], entity_type=entity_type)


_registry: Dict[type, EntityMap] = {}


def register_entity(entity_type: type, table_or_map, columns: Optional[Dict[str, Dict[str, Any]]] = None) -> EntityMap:
    """
    Register the column mapping for an entity type.

    Accepts either an EntityMap or a table name plus column definitions.
    """
    if isinstance(table_or_map, EntityMap):
        entity_map = table_or_map
        if entity_map.entity_type is None:
            entity_map.entity_type = entity_type
    else:
        entity_map = EntityMap(table_or_map, columns, entity_type=entity_type)
    _registry[entity_type] = entity_map
    logger.debug(f"Registered {entity_map!r} for {entity_type.__qualname__}")
    return entity_map


def unregister_entity(entity_type: type) -> None:
    _registry.pop(entity_type, None)


def get_entity_map(entity_type: type) -> EntityMap:
    """
    Look up the mapping for an entity type, falling back to its base classes.

    Raises:
        UnmappedEntityError: if neither the type nor any base class is registered
    """
    for klass in getattr(entity_type, '__mro__', (entity_type,)):
        if klass in _registry:
            return _registry[klass]
    raise UnmappedEntityError(entity_type)


def columns(entity_type: type) -> List[ColumnDefinition]:
    """Column definitions for a registered entity type, in declared order."""
    return get_entity_map(entity_type).columns


def resolve_entity_map(entities: Sequence[Any], entity_map: Optional[EntityMap] = None) -> EntityMap:
    """Use the given map, or look one up from the type of the first entity."""
    if entity_map is not None:
        return entity_map
    if not entities:
        raise ValueError("An entity_map is required when there are no entities to infer it from")
    return get_entity_map(type(entities[0]))
