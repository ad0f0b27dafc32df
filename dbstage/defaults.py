# dbstage/defaults.py
"""Default settings - no imports to avoid circular dependencies."""

settings = {
    'default_batch_size': 1000,
    'default_cursor_type': 'list',
    'staging_prefix': 'Temp_',        # prepended to every staging table name
    'staging_name_length': 16,        # random characters after the prefix
    'row_index_column': 'RowIndex',   # ordering column added to staging tables
    'logging': {
        'directory': './logs',
        'level': 'INFO',
        'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        'timestamp_format': '%Y-%m-%d %H:%M:%S',
        'filename_format': '%Y%m%d_%H%M%S',  # Set to '' for single log file (no timestamp)
        'split_errors': True,
        'console': True,
        'retention_days': 30,
    }
}
