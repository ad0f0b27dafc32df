# dbstage/utils.py
"""
Utility functions for dbstage.
"""

import re


class ParamStyle:
    """
    SQL parameter placeholder styles for different database drivers.

    - QMARK: Question mark placeholders (?, ?) - SQLite, pyodbc
    - NUMERIC: Numeric placeholders (:1, :2) - Oracle
    - NAMED: Named placeholders (:name) - also accepts :1 for positional
    - FORMAT: Printf-style (%s, %s) - pymssql, MySQLdb
    - PYFORMAT: Python format (%(name)s) - psycopg2, also accepts %s

    Example
    -------
    ::
        >>> ParamStyle.placeholders('qmark', 3)
        '?, ?, ?'
        >>> ParamStyle.placeholders('numeric', 2)
        ':1, :2'
    """
    QMARK = 'qmark'
    NUMERIC = 'numeric'
    NAMED = 'named'
    FORMAT = 'format'
    PYFORMAT = 'pyformat'
    DEFAULT = NAMED

    @classmethod
    def values(cls):
        return [cls.QMARK, cls.NUMERIC, cls.NAMED, cls.FORMAT, cls.PYFORMAT]

    @classmethod
    def get_placeholder(cls, paramstyle: str, position: int = 1) -> str:
        """Positional placeholder for the 1-based ``position``."""
        if paramstyle == cls.QMARK:
            return '?'
        elif paramstyle in (cls.FORMAT, cls.PYFORMAT):
            return '%s'
        elif paramstyle in (cls.NUMERIC, cls.NAMED):
            return f':{position}'
        raise ValueError(f"Unsupported paramstyle: {paramstyle}")

    @classmethod
    def placeholders(cls, paramstyle: str, count: int) -> str:
        """Comma separated positional placeholders for ``count`` parameters."""
        return ', '.join(cls.get_placeholder(paramstyle, i) for i in range(1, count + 1))


def wrap_at_comma(text: str) -> str:
    """Wrap text at commas, avoiding breaks inside parentheses."""
    parts = re.split(r'(\([^)]*\))', text)

    wrapped_parts = []
    for i, part in enumerate(parts):
        if i % 2 == 0:  # Outside parentheses
            wrapped = re.sub(r'(.{70}[^,]*), ', r'\1,\n    ', part)
            wrapped_parts.append(wrapped)
        else:
            wrapped_parts.append(part)

    return ''.join(wrapped_parts)


def validate_identifier(identifier: str, max_length: int = 128) -> str:
    """
    Validate that an identifier is safe for use (even if it needs quoting).
    Returns the identifier if valid, raises ValueError if invalid.

    Qualified names (``schema.table``) are validated part by part.
    """
    if not isinstance(identifier, str):
        raise ValueError(f"Invalid identifier: expected a string, got {type(identifier).__name__}")
    if '.' in identifier:
        return '.'.join(validate_identifier(part, max_length) for part in identifier.split('.'))

    if not identifier:
        raise ValueError("Invalid identifier: cannot be empty")
    if not (identifier[0].isalpha() or identifier[0] == '_'):
        raise ValueError(f"Invalid identifier: must start with a letter or underscore: {identifier}")
    if len(identifier) > max_length:
        raise ValueError(f"Invalid identifier: exceeds max length of {max_length}")

    # Characters/sequences that could enable injection or break quoting
    dangerous_patterns = ['\x00', '\n', '\r', '"', '[', ']', ';', '\x1a', '--', '/*', '*/']
    for pattern in dangerous_patterns:
        if pattern in identifier:
            raise ValueError(f"Invalid identifier: contains dangerous pattern '{pattern}': {identifier}")

    if identifier.startswith(' ') or identifier.endswith(' '):
        raise ValueError(f"Invalid identifier: has leading/trailing spaces: {identifier}")

    return identifier


def quote_identifier(identifier: str, open_quote: str = '"', close_quote: str = '"') -> str:
    """
    Validate and quote an identifier, quoting each part of a qualified name.

    Example
    -------
    ::
        >>> quote_identifier('dbo.TodoItems', '[', ']')
        '[dbo].[TodoItems]'
    """
    validate_identifier(identifier)
    return '.'.join(f'{open_quote}{part}{close_quote}' for part in identifier.split('.'))

