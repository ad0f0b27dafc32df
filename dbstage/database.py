# dbstage/database.py
"""
Database connection wrapper that provides a uniform interface
to different database adapters.
"""

import importlib
import importlib.util
import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, List, Optional, Type, Union

from .cursors import Cursor, DictCursor
from .defaults import settings

logger = logging.getLogger(__name__)

# drivers from the config file drivers: section
_user_drivers = {}


DRIVERS = {
    # PostgreSQL Drivers
    'psycopg2': {
        'database_type': 'postgres',
        'priority': 11,
        'param_map': {'database': 'dbname'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'sslmode', 'connect_timeout', 'application_name',
                            'options', 'sslcert', 'sslkey', 'sslrootcert'},
        'connection_method': 'connection_string',
        'default_port': 5432,
    },
    'psycopg': {  # psycopg3
        'database_type': 'postgres',
        'priority': 12,
        'param_map': {'database': 'dbname'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'sslmode', 'connect_timeout', 'application_name',
                            'options', 'sslcert', 'sslkey', 'sslrootcert'},
        'connection_method': 'connection_string',
        'default_port': 5432,
    },

    # SQL Server Drivers
    'pyodbc_sqlserver': {
        'module': 'pyodbc',
        'database_type': 'sqlserver',
        'priority': 11,
        'param_map': {'database': 'DATABASE', 'user': 'UID', 'password': 'PWD'},
        'required_params': [{'host', 'database', 'user'}, {'host', 'database', 'trusted_connection'}],
        'optional_params': {'password', 'port', 'encrypt', 'trustservercertificate'},
        'connection_method': 'odbc_string',
        'odbc_driver_name': 'ODBC Driver 18 for SQL Server',
        'default_port': 1433
    },
    'pymssql': {
        'database_type': 'sqlserver',
        'priority': 12,
        'param_map': {'host': 'server'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'timeout', 'login_timeout', 'charset', 'appname'},
        'connection_method': 'kwargs',
        'default_port': 1433
    },

    # SQLite Driver
    'sqlite3': {
        'database_type': 'sqlite',
        'priority': 1,
        'param_map': {},
        'required_params': [{'database'}],
        'optional_params': {'timeout', 'detect_types', 'isolation_level', 'check_same_thread',
                            'cached_statements', 'uri'},
        'connection_method': 'kwargs'
    }
}


def register_user_drivers(drivers_config: dict) -> None:
    """Register drivers from config file."""
    _user_drivers.update(drivers_config)


def get_all_drivers() -> dict:
    """Get combined built-in and user drivers."""
    return {**DRIVERS, **_user_drivers}


def _driver_module(driver_name: str) -> str:
    return get_all_drivers()[driver_name].get('module', driver_name)


def get_drivers_for_database(db_type: str) -> List[str]:
    """Importable drivers for ``db_type``, best priority first. User drivers win ties."""
    all_drivers = get_all_drivers()
    candidates = [name for name, info in all_drivers.items()
                  if info['database_type'] == db_type and importlib.util.find_spec(_driver_module(name))]
    return sorted(candidates, key=lambda name: all_drivers[name]['priority'] - (0.5 if name in _user_drivers else 0))


def get_params_for_database(db_type: str, driver: str = None) -> set:
    """Every parameter any driver for ``db_type`` (or just ``driver``) accepts."""
    valid_params = set()
    for driver_name, driver_info in get_all_drivers().items():
        if driver_info['database_type'] != db_type or (driver and driver_name != driver):
            continue
        valid_params.update(*driver_info['required_params'])
        valid_params.update(driver_info.get('optional_params', set()))
    return valid_params


def validate_connection_params(driver_name: str, **params) -> dict:
    """
    Check ``params`` against a driver's requirements.

    Returns the accepted parameters renamed through the driver's
    ``param_map``, with unknown and None values dropped and the default port
    filled in.

    Raises:
        ValueError: If the driver is unknown or required parameters are missing
    """
    all_drivers = get_all_drivers()
    if driver_name not in all_drivers:
        raise ValueError(f"Unknown driver: {driver_name}")

    driver_info = all_drivers[driver_name]
    params = {key: val for key, val in params.items() if val is not None}
    if 'port' not in params and driver_info.get('default_port'):
        params['port'] = driver_info['default_port']

    required = driver_info['required_params']
    if not any(required_set.issubset(params) for required_set in required):
        raise ValueError(f"Missing required parameters. Need one of: {required}")

    accepted = set(driver_info.get('optional_params', set())).union(*required)
    param_map = driver_info.get('param_map', {})
    return {param_map.get(key, key): value for key, value in params.items() if key in accepted}


def get_connection_string(**kwargs) -> str:
    """Get libpq style connection string from keyword arguments."""
    return " ".join(f"{key}={value}" for key, value in kwargs.items())


def get_odbc_connection_string(odbc_driver_name: Optional[str] = None, **kwargs) -> str:
    """Get connection string for ODBC from keyword arguments."""
    host = kwargs.pop('host', 'localhost')
    port = kwargs.pop('port', None)
    params = {'SERVER': f'{host},{port}' if port else host}
    params.update({key.upper(): value for key, value in kwargs.items()})
    body = ";".join(f"{key}={value}" for key, value in params.items())
    if odbc_driver_name:
        return f"DRIVER={{{odbc_driver_name}}};{body}"
    return body


class Database:
    """
    Database connection wrapper that provides uniform interface
    across different database adapters.

    The wrapper remembers how it was opened, so a connection closed through
    ``close()`` can be reopened with ``ensure_open()``. Bulk operations call
    ``ensure_open()`` and never close the connection themselves.
    """

    _local_attrs = [
        '_connection', '_reconnect', '_closed', 'server_type', 'database_name',
        'interface', 'name', 'cursor_settings'
    ]

    CURSOR_TYPES = {'list': Cursor, 'dict': DictCursor}

    def __init__(self, connection, interface, database_name: Optional[str] = None,
                 server_type: Optional[str] = None,
                 reconnect: Optional[Callable[[], Any]] = None,
                 cursor_settings: Optional[dict] = None):
        """
        Initialize Database wrapper.

        Args:
            connection: Underlying DB-API connection object
            interface: Database adapter module (psycopg2, pyodbc, sqlite3, ...)
            database_name: Name of the database
            server_type: 'postgres', 'sqlserver', 'sqlite'... Looked up from
                the interface name when omitted.
            reconnect: Callable returning a new DB-API connection, used by
                ensure_open() after the connection was closed
            cursor_settings: Default keyword arguments for cursor()
        """
        self._connection = connection
        self.interface = interface
        self.database_name = database_name
        self.name = None
        self._reconnect = reconnect
        self._closed = False
        self.cursor_settings = cursor_settings or {}
        if server_type is None:
            server_type = get_all_drivers().get(interface.__name__, {}).get('database_type', 'unknown')
        self.server_type = server_type

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying connection."""
        return getattr(self._connection, key)

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._connection, key, value)

    def __str__(self) -> str:
        if self.database_name:
            return f'Database({self.database_name}:{self.server_type})'
        return f'Database({self.server_type})'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the underlying connection."""
        if not self._closed:
            self._connection.close()
            self._closed = True

    def ensure_open(self) -> 'Database':
        """Reopen the connection if it was closed through this wrapper."""
        if self._closed:
            if self._reconnect is None:
                raise self.interface.InterfaceError(
                    f"{self} is closed and was not created with reconnect information")
            logger.info(f"Reopening connection to {self}")
            self._connection = self._reconnect()
            self._closed = False
        return self

    def cursor(self, cursor_type: Union[str, Type] = None, **kwargs) -> Cursor:
        """
        Create a cursor of the specified type.

        Args:
            cursor_type: 'list', 'dict' or a Cursor subclass
            **kwargs: Additional arguments passed to cursor

        Examples:
            cursor = db.cursor()        # list rows
            cursor = db.cursor('dict')  # dict rows keyed by column name
        """
        if cursor_type is None:
            cursor_type = self.cursor_settings.get('type') or settings.get('default_cursor_type', 'list')
        if isinstance(cursor_type, str):
            if cursor_type not in self.CURSOR_TYPES:
                raise ValueError(f"Invalid cursor type '{cursor_type}'. Must be one of: {list(self.CURSOR_TYPES)}")
            cursor_class = self.CURSOR_TYPES[cursor_type]
        elif isinstance(cursor_type, type) and issubclass(cursor_type, Cursor):
            cursor_class = cursor_type
        else:
            raise ValueError(f"Invalid cursor type: {cursor_type}")

        options = {key: val for key, val in self.cursor_settings.items() if key != 'type'}
        options.update(kwargs)
        return cursor_class(self, **options)

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Example:
            with db.transaction():
                bulk_insert(db, todos)
                # Auto-commit on success, rollback on exception
        """
        # sqlite3 only begins implicitly before DML, so DDL would escape the rollback
        if self.server_type == 'sqlite' and not self._connection.in_transaction:
            self._connection.execute('BEGIN')
        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise

    @classmethod
    def create(cls, db_type: str, driver: str = None, cursor_settings: Optional[dict] = None,
               **kwargs) -> 'Database':
        """
        Factory method to create database connections.

        Args:
            db_type: Database type ('postgres', 'sqlserver', 'sqlite')
            driver: Specific driver name from DRIVERS, else the best available
            cursor_settings: Default keyword arguments for cursor()
            **kwargs: Connection parameters

        Returns:
            Database instance
        """
        all_drivers = get_all_drivers()
        db_driver = None
        driver_name = None
        if driver:
            if driver not in all_drivers:
                raise ValueError(f"Unknown driver: {driver}")
            if all_drivers[driver]['database_type'] != db_type:
                raise ValueError(f"Driver '{driver}' is not compatible with database type '{db_type}'")
            try:
                db_driver = importlib.import_module(_driver_module(driver))
                driver_name = driver
            except ImportError:
                logger.warning(f"Driver '{driver}' not available, falling back to default")

        if db_driver is None:
            for candidate in get_drivers_for_database(db_type):
                try:
                    db_driver = importlib.import_module(_driver_module(candidate))
                    driver_name = candidate
                    break
                except ImportError:
                    pass

        if db_driver is None:
            raise ImportError(f"No database driver found for database type '{db_type}'")

        params = validate_connection_params(driver_name, **kwargs)
        if not params:
            raise ValueError("The connection parameters were not valid.")

        driver_conf = all_drivers[driver_name]
        method = driver_conf['connection_method']

        def connect():
            if method == 'kwargs':
                return db_driver.connect(**params)
            elif method == 'connection_string':
                return db_driver.connect(get_connection_string(**params))
            elif method == 'odbc_string':
                return db_driver.connect(get_odbc_connection_string(
                    odbc_driver_name=driver_conf.get('odbc_driver_name'), **params))
            raise ValueError(f"Unknown connection method '{method}' for driver {driver_name}")

        database_name = params.get('database') or params.get('dbname') or params.get('DATABASE')
        if db_type == 'sqlite' and database_name:
            database_name = os.path.basename(database_name)
        logger.debug(f"Connecting to {db_type} database {database_name} with {driver_name}")
        return cls(connect(), db_driver, database_name, server_type=db_type,
                   reconnect=connect, cursor_settings=cursor_settings)


def postgres(user: str, password: Optional[str] = None, database: str = 'postgres',
             host: str = 'localhost', port: int = 5432, driver: str = None, **kwargs) -> Database:
    """Create PostgreSQL connection."""
    return Database.create('postgres', user=user, password=password, database=database,
                           host=host, port=port, driver=driver, **kwargs)


def sqlserver(user: Optional[str] = None, password: Optional[str] = None, database: str = None,
              host: str = 'localhost', port: int = 1433, driver: str = None, **kwargs) -> Database:
    """Create SQL Server connection."""
    return Database.create('sqlserver', user=user, password=password, database=database,
                           host=host, port=port, driver=driver, **kwargs)


def sqlite(database: str, **kwargs) -> Database:
    """Create SQLite connection."""
    return Database.create('sqlite', database=database, **kwargs)
