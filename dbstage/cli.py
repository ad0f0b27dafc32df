# dbstage/cli.py

import argparse
import importlib.metadata
import importlib.util
import sys
from typing import List, Optional

import yaml

from .database import get_all_drivers
from . import config

RECOMMENDED_FALLBACK = ['keyring', 'pyodbc', 'psycopg2-binary']


def _name_cleanup(name):
    """Cleanup module names for search and display"""
    return name.lower().replace('-', '_')


def _get_optional_deps(extra_name='recommended'):
    """Optional dependencies declared for an extra, falling back to the usual set when not installed."""
    try:
        reqs = importlib.metadata.requires('dbstage') or []
    except importlib.metadata.PackageNotFoundError:
        return list(RECOMMENDED_FALLBACK)
    deps = []
    # Parse requirements like: 'psycopg2-binary>=2.8; extra == "recommended"'
    for req in reqs:
        req = req.replace("'", '"')
        if f'extra == "{extra_name}"' in req:
            pkg = req.split(';')[0].strip()
            deps.append(pkg.split('>=')[0].split('==')[0].split('<')[0].strip())
    return deps


def _is_installed(pkg: str) -> bool:
    pkg = _name_cleanup(pkg)
    if pkg.endswith('_binary'):
        pkg = pkg[:-len('_binary')]
    return importlib.util.find_spec(pkg) is not None or pkg in sys.modules


def checkup(config_file: Optional[str] = None):
    """Check which optional dependencies and drivers are installed."""
    installed = {_name_cleanup(d.metadata['Name']): d.version for d in importlib.metadata.distributions()}

    print(f"{'Package':<20} {'Status':<8} {'Version'}")
    print("-" * 40)
    for dep in _get_optional_deps('recommended'):
        status = "✓" if _is_installed(dep) else "✗"
        version = installed.get(_name_cleanup(dep), '-')
        print(f"{dep:<20} {status:<8} {version}")

    print("\nDB Drivers           Priority* Status   Version")
    print("-" * 56)
    by_type = {}
    for name, info in get_all_drivers().items():
        by_type.setdefault(info['database_type'], []).append((info['priority'], name, info))

    odbc_drivers = []
    if _is_installed('pyodbc'):
        import pyodbc
        odbc_drivers = pyodbc.drivers()

    for db_type in sorted(by_type):
        print(f"{db_type}")
        for pri, name, info in sorted(by_type[db_type], key=lambda x: x[0]):
            module_name = info.get('module', name)
            status = "✓" if importlib.util.find_spec(module_name) else "✗"
            version = installed.get(_name_cleanup(module_name), '--')
            odbc_driver_name = info.get("odbc_driver_name")
            note = ''
            if odbc_driver_name:
                odbc_status = "✓" if odbc_driver_name in odbc_drivers else "✗"
                note = f'({odbc_status} {odbc_driver_name})'
            print(f"  {name:<18} {pri:<9} {status:<8} {version} {note}")

    print("\n* Lower priority = preferred")

    print("\nConfig Health")
    print("-" * 40)
    for status, msg in config.diagnose_config(config_file):
        print(f"{status} {msg}")


def show_sql(entity: str, db_type: str, operation: str = 'insert', batch_size: Optional[int] = None,
             columns: Optional[List[str]] = None, keep_identity: bool = False,
             config_file: Optional[str] = None) -> str:
    """SQL a staged operation would run for a config-declared entity."""
    from .etl.columns import EntityMap
    from .etl.dialects import get_dialect
    from .etl.staging import staging_table_name
    from .etl.surge import resolve_batch_size

    entity_map = EntityMap.from_config(entity, config_file=config_file)
    dialect = get_dialect(db_type)
    batch_size = resolve_batch_size(batch_size)
    staging = staging_table_name()

    if operation == 'insert':
        staged = entity_map.insert_columns(keep_identity)
        generated = [] if keep_identity else entity_map.generated_keys
        command = dialect.insert_batch(entity_map.table, staging, staged, batch_size,
                                       generated_keys=generated, keep_identity=keep_identity)
    else:
        staged = entity_map.update_columns()
        command = dialect.update_batch(entity_map.table, staging, entity_map.settable_columns(columns),
                                       entity_map.key_columns, batch_size)

    sections = [
        "-- create staging",
        dialect.create_staging(staging, staged) + ';',
        "-- repeat until a batch drains no rows",
        command.sql + ';',
        "-- cleanup",
        dialect.drop_staging(staging) + ';',
    ]
    text = '\n\n'.join(sections)
    print(text)
    return text


def generate_map(table: str, connection: str, name: Optional[str] = None,
                 config_file: Optional[str] = None) -> str:
    """YAML ``entities`` entry generated from an existing table."""
    from .etl.config_generators import column_defs_from_db

    with config.connect(connection, config_file=config_file) as db:
        cursor = db.cursor()
        columns = column_defs_from_db(cursor, table)
    entry = {'entities': {name or table.split('.')[-1].lower(): {'table': table, 'columns': columns}}}
    text = yaml.safe_dump(entry, default_flow_style=None, sort_keys=False)
    print(text)
    return text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='dbstage', description='dbstage command-line utilities')
    parser.add_argument('--config', dest='config_file', help='Config file path')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('checkup', help='Check for dependencies and configuration issues')

    subparsers.add_parser('generate-key', help='Generate encryption key')

    key_parser = subparsers.add_parser('store-key',
                                       help='Store encryption key in system keyring (generate if not provided)')
    key_parser.add_argument('key', nargs='?', default=None,
                            help='Encryption key to store. If omitted, a new key is generated and stored.')
    key_parser.add_argument('--force', action='store_true',
                            help='Overwrite existing encryption key in system keyring')

    pwd_parser = subparsers.add_parser('encrypt-password', help='Encrypt a password')
    pwd_parser.add_argument('password', nargs='?', help='Password to encrypt')

    sql_parser = subparsers.add_parser('show-sql', help='Print the SQL of a staged operation for a config entity')
    sql_parser.add_argument('entity', help='Entity name from the entities section')
    sql_parser.add_argument('--db-type', required=True, choices=['sqlserver', 'postgres', 'sqlite'])
    sql_parser.add_argument('--operation', choices=['insert', 'update'], default='insert')
    sql_parser.add_argument('--batch-size', type=int, default=None)
    sql_parser.add_argument('--columns', nargs='+', default=None, help='Update allow-list')
    sql_parser.add_argument('--keep-identity', action='store_true',
                            help='Insert entity values into generated key columns')

    map_parser = subparsers.add_parser('generate-map', help='Generate an entities entry from a table')
    map_parser.add_argument('table', help='Table name (schema.table allowed)')
    map_parser.add_argument('--connection', required=True, help='Connection name from config')
    map_parser.add_argument('--name', help='Entity name (defaults to lower-cased table name)')
    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    if args.command == 'checkup':
        return checkup(args.config_file)
    elif args.command == 'generate-key':
        return config.generate_encryption_key()
    elif args.command == 'store-key':
        return config.store_key(args.key, force=args.force)
    elif args.command == 'encrypt-password':
        return config.encrypt_password(args.password)
    elif args.command == 'show-sql':
        return show_sql(args.entity, args.db_type, operation=args.operation, batch_size=args.batch_size,
                        columns=args.columns, keep_identity=args.keep_identity,
                        config_file=args.config_file)
    elif args.command == 'generate-map':
        return generate_map(args.table, args.connection, name=args.name, config_file=args.config_file)


if __name__ == '__main__':
    main()
