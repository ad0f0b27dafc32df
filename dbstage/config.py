# dbstage/config.py
"""
Configuration management for database connections and entity mappings.
Supports YAML configuration files with optional password encryption and global settings.
"""

import os
import logging
import re
from pathlib import Path
from textwrap import dedent
from typing import Dict, Any, Optional, List, Tuple

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .cursors import Cursor
from .database import Database, get_params_for_database, register_user_drivers
from .defaults import settings

try:
    import keyring
    HAS_KEYRING = True
except ImportError:
    HAS_KEYRING = False

logger = logging.getLogger(__name__)

KEY_ENV_VAR = 'DBSTAGE_ENCRYPTION_KEY'
KEYRING_SERVICE = 'dbstage'
KEYRING_USER = 'encryption_key'

_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$')


def _substitute_env(value: Any) -> Any:
    """Replace a whole-value ``${VAR}`` reference with the environment variable."""
    if not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value)
    if not match:
        return value
    env_value = os.environ.get(match.group(1))
    if env_value is None:
        raise ValueError(f"Environment variable {match.group(1)} not set")
    return env_value


def _valid_fernet(key: str) -> bool:
    try:
        Fernet(key.encode())
        return True
    except (ValueError, TypeError):
        return False


def diagnose_config(config_file: Optional[str] = None) -> List[Tuple[str, str]]:
    """Config health check. Returns (status, message) tuples for the CLI checkup."""
    results = []

    try:
        mgr = ConfigManager(config_file)
        results.append(('✓', f"Config loaded: {mgr.config_file}"))
    except (FileNotFoundError, ValueError) as e:
        results.append(('✗', f"Config failed: {e}"))
        return results

    results.append(('✓', "keyring ready") if HAS_KEYRING else ('?', "keyring optional"))

    env_key = os.getenv(KEY_ENV_VAR)
    keyring_key = None
    if HAS_KEYRING:
        try:
            keyring_key = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
        except Exception as e:
            results.append(('?', f"Keyring unavailable: {e}"))

    if env_key:
        results.append(('✓', f"{KEY_ENV_VAR} set"))
        results.append(('✓', "Env key valid") if _valid_fernet(env_key) else ('✗', "Env key invalid"))
    else:
        results.append(('?', "No env key"))

    if keyring_key:
        results.append(('✓', "Keyring key set"))
        results.append(('✓', "Keyring key valid") if _valid_fernet(keyring_key) else ('✗', "Keyring key invalid"))

    if env_key and keyring_key:
        results.append(('✓', "Keys match") if env_key == keyring_key else ('✗', "KEYS MISMATCH"))

    sections = [mgr.config.get('connections', {}), mgr.config.get('passwords', {})]
    enc_count = sum(1 for section in sections for entry in section.values() if 'encrypted_password' in entry)
    results.append(('✓', f"{enc_count} encrypted passwords") if enc_count else ('✓', "No encrypted passwords"))

    uenc_count = sum(
        1 for section in sections for entry in section.values()
        if 'password' in entry and not _ENV_PATTERN.match(str(entry.get('password', '')))
    )
    results.append(("✗", f"{uenc_count} unencrypted passwords!") if uenc_count else ('✓', "No unencrypted passwords"))

    entities = mgr.config.get('entities', {})
    results.append(('✓', f"{len(entities)} entity mappings") if entities else ('?', "No entity mappings"))
    return results


class ConfigManager:
    """
    Manage dbstage configuration from YAML files.

    Configuration File Structure
    ----------------------------
    ::

        # dbstage.yml
        settings:
          default_batch_size: 5000
          staging_prefix: Temp_

        connections:
          orders_db:
            type: sqlserver
            host: sql01
            database: orders
            user: loader
            encrypted_password: gAAAAABh...

        passwords:
          api_key:
            encrypted_password: gAAAAABh...

        drivers:
          sqlite_uri:
            module: sqlite3
            database_type: sqlite
            priority: 0
            required_params: [[database]]
            optional_params: [uri]
            connection_method: kwargs

        entities:
          todo_items:
            table: TodoItems
            columns:
              Id: {attr: id, type: int, primary_key: true, identity: true}
              Name: {attr: name, type: str, db_type: nvarchar(200)}
              IsComplete: {attr: complete, type: bool}

    Configuration Locations
    -----------------------
    1. File specified in config_file parameter
    2. ``./dbstage.yml``
    3. ``./dbstage.yaml``
    4. ``~/.config/dbstage.yml``
    5. ``~/.config/dbstage.yaml``

    Notes
    -----
    * Connections require a 'type' or 'driver' field
    * Encrypted passwords need DBSTAGE_ENCRYPTION_KEY or a key in the system keyring
    * Connection values may be ``${VAR_NAME}`` environment references
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._fernet = None

        self._apply_settings()
        self._register_drivers()

    @staticmethod
    def _candidates() -> List[Path]:
        return [
            Path("dbstage.yml"),
            Path("dbstage.yaml"),
            Path.home() / ".config" / "dbstage.yml",
            Path.home() / ".config" / "dbstage.yaml",
        ]

    def _find_config_file(self, config_file: Optional[str]) -> Path:
        """Find the configuration file."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            return path

        candidates = self._candidates()
        for candidate in candidates:
            if candidate.exists():
                return candidate

        raise FileNotFoundError(
            "No config file found. Looked in: " +
            ", ".join(str(c) for c in candidates)
        )

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration file."""
        try:
            with open(self.config_file, 'r') as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load config file {self.config_file}: {e}") from e

        if not isinstance(config, dict):
            raise ValueError(f"Invalid config file {self.config_file}.")

        for section in ('settings', 'drivers', 'connections', 'passwords', 'entities'):
            if section in config and not isinstance(config[section], dict):
                raise ValueError(f"Invalid config file {self.config_file}: '{section}' must be a dictionary")

        for name, driver in config.get('drivers', {}).items():
            missing = {'database_type', 'priority', 'required_params', 'connection_method'} - set(driver or {})
            if missing:
                raise ValueError(f"Invalid driver '{name}' in {self.config_file}: missing {sorted(missing)}")

        for name, conn in config.get('connections', {}).items():
            if not isinstance(conn, dict) or ('type' not in conn and 'driver' not in conn):
                raise ValueError(
                    f"Invalid connection '{name}' in {self.config_file}: 'type' or 'driver' is required")

        for name, password_data in config.get('passwords', {}).items():
            if not isinstance(password_data, dict):
                raise ValueError(f"Invalid password entry '{name}' in {self.config_file}: must be a dictionary")
            if 'password' not in password_data and 'encrypted_password' not in password_data:
                raise ValueError(
                    f"Invalid password entry '{name}' in {self.config_file}: "
                    f"'password' or 'encrypted_password' is required")

        for name, entity in config.get('entities', {}).items():
            if not isinstance(entity, dict) or 'table' not in entity:
                raise ValueError(f"Invalid entity '{name}' in {self.config_file}: 'table' is required")
            if not isinstance(entity.get('columns'), dict) or not entity['columns']:
                raise ValueError(f"Invalid entity '{name}' in {self.config_file}: 'columns' must be a dictionary")

        logger.info(f"Loaded config from {self.config_file}")
        return config

    def _apply_settings(self) -> None:
        """Merge the settings section into the global settings."""
        config_settings = self.config.get('settings', {})
        for key, value in config_settings.items():
            if isinstance(value, dict) and isinstance(settings.get(key), dict):
                settings[key].update(value)
            else:
                settings[key] = value

    def _register_drivers(self) -> None:
        """Register the drivers section. YAML lists become the sets DRIVERS uses."""
        drivers = {}
        for name, info in self.config.get('drivers', {}).items():
            info = dict(info)
            info['required_params'] = [set(params) for params in info['required_params']]
            info['optional_params'] = set(info.get('optional_params', []))
            drivers[name] = info
        if drivers:
            register_user_drivers(drivers)

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value from the config.

        Args:
            key: Setting key (supports dot notation like 'logging.level')
            default: Default value if key not found
        """
        value = self.config.get('settings', {})
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def _get_encryption_key(self) -> bytes:
        """Get encryption key from environment variable or keyring."""
        # environment variable takes precedence
        key_str = os.environ.get(KEY_ENV_VAR)
        if key_str:
            logger.debug(f"Using {KEY_ENV_VAR} from environment")
            return key_str.encode()

        if HAS_KEYRING:
            try:
                key_str = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
            except Exception as e:
                logger.warning(f"Keyring access failed: {e}")
                key_str = None
            if key_str:
                logger.debug("Using encryption key from keyring")
                return key_str.encode()
            msg = dedent("""\
            Encryption key not found in environment or keyring.
            Run: `dbstage store-key` to generate and store a new encryption key in the keyring.""")
        else:
            msg = dedent(f"""\
            Encryption key not found in environment.
            Run `dbstage generate-key` to generate a new encryption key
            then set it in the {KEY_ENV_VAR} environment variable.""")
        raise ValueError(msg)

    def _get_fernet(self) -> 'Fernet':
        if self._fernet is None:
            self._fernet = Fernet(self._get_encryption_key())
        return self._fernet

    def decrypt_password(self, encrypted_password: str) -> str:
        """Decrypt an encrypted password."""
        try:
            return self._get_fernet().decrypt(encrypted_password.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Failed to decrypt password: invalid token or wrong key") from e

    def encrypt_password(self, password: str) -> str:
        """Encrypt a password for storage."""
        return self._get_fernet().encrypt(password.encode()).decode()

    def get_connection_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a named connection with passwords resolved."""
        connections = self.config.get('connections', {})
        if name not in connections:
            raise ValueError(
                f"Connection '{name}' not found in config. "
                f"Available connections: {list(connections.keys())}"
            )

        config = {key: _substitute_env(val) for key, val in connections[name].items()}
        if 'encrypted_password' in config:
            config['password'] = self.decrypt_password(config.pop('encrypted_password'))
        return config

    def list_connections(self) -> list:
        return list(self.config.get('connections', {}).keys())

    def get_password(self, name: str) -> str:
        """
        Get a stored password by name.

        Raises:
            ValueError: If password not found or decryption fails
        """
        passwords = self.config.get('passwords', {})
        if name not in passwords:
            raise ValueError(
                f"Password '{name}' not found in config. "
                f"Available passwords: {list(passwords.keys())}"
            )
        entry = passwords[name]
        if 'encrypted_password' in entry:
            return self.decrypt_password(entry['encrypted_password'])
        return _substitute_env(entry['password'])

    def get_entity_config(self, name: str) -> Dict[str, Any]:
        """Entity mapping entry: ``{'table': ..., 'columns': {...}}``."""
        entities = self.config.get('entities', {})
        if name not in entities:
            raise ValueError(
                f"Entity '{name}' not found in config. "
                f"Available entities: {list(entities.keys())}"
            )
        return entities[name]

    def list_entities(self) -> list:
        return list(self.config.get('entities', {}).keys())


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def _get_manager(config_file: Optional[str] = None) -> ConfigManager:
    global _config_manager
    if config_file:
        return ConfigManager(config_file)
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_file(config_file: str) -> None:
    """Set the configuration file to use globally."""
    global _config_manager
    _config_manager = ConfigManager(config_file)


def connect(name: str, password: str = None, config_file: Optional[str] = None) -> Database:
    """
    Connect to a named database from configuration.

    Example:
        db = connect('orders_db')
        bulk_insert(db, orders)
        db.commit()
    """
    config = _get_manager(config_file).get_connection_config(name)
    if password:
        config['password'] = password
    info = {key: val for key, val in config.items() if key != 'password'}
    logger.debug(f"Connecting to database {name} with config: {info}")

    db_type = config.pop('type', None)
    driver = config.pop('driver', None)
    if not db_type:
        from .database import get_all_drivers
        db_type = get_all_drivers().get(driver, {}).get('database_type')
        if not db_type:
            raise ValueError(f"Connection '{name}': unknown driver '{driver}'")
    cursor_settings = config.pop('cursor', None)
    if cursor_settings is not None:
        unknown = set(cursor_settings.keys()) - set(Cursor.WRAPPER_SETTINGS)
        if unknown:
            logger.warning(f"Unknown cursor settings (ignored): {unknown}")
            cursor_settings = {k: v for k, v in cursor_settings.items() if k in Cursor.WRAPPER_SETTINGS}

    # remove any params that are not allowed for the database type
    allowed_params = get_params_for_database(db_type, driver)
    dropped = set(config) - allowed_params
    if dropped:
        logger.debug(f"Ignoring connection params not used by {db_type}: {sorted(dropped)}")
    config = {key: val for key, val in config.items() if key in allowed_params}

    db = Database.create(db_type, driver=driver, cursor_settings=cursor_settings, **config)
    db.name = name
    return db


def get_password(name: str, config_file: Optional[str] = None) -> str:
    """Get a stored password from configuration."""
    return _get_manager(config_file).get_password(name)


def get_setting(key: str, default: Any = None, config_file: Optional[str] = None) -> Any:
    """Get a setting value from configuration."""
    return _get_manager(config_file).get_setting(key, default)


def get_entity_config(name: str, config_file: Optional[str] = None) -> Dict[str, Any]:
    """Get an entity mapping entry from configuration."""
    return _get_manager(config_file).get_entity_config(name)


def _generate_encryption_key() -> str:
    return Fernet.generate_key().decode()


def generate_encryption_key() -> str:
    """
    Generate a random encryption key.

    Store it in the DBSTAGE_ENCRYPTION_KEY environment variable or in the
    keyring with ``dbstage store-key [your key]``.
    """
    key = _generate_encryption_key()
    if HAS_KEYRING:
        msg = "Key generated.  Store in system keyring with `dbstage store-key [your key]`"
    else:
        msg = f"Key generated.  Store in {KEY_ENV_VAR} environment variable"
    print(msg)
    return key


def store_key(key: Optional[str] = None, force: bool = False) -> None:
    """CLI utility to store encryption key in system keyring."""
    if not HAS_KEYRING:
        raise ValueError("Keyring not available. Install keyring package to store key in system keyring.")

    try:
        current_key = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
    except Exception as e:
        logger.debug(f"Could not read keyring: {e}")
        current_key = None

    if current_key:
        if force:
            msg = "Encryption key already stored in system keyring. Overwriting!"
        else:
            msg = "Encryption key already stored in system keyring. Use --force to overwrite."
        logger.warning(msg)
        print(msg)
        if not force:
            return

    if key is None:
        key = _generate_encryption_key()
    elif not _valid_fernet(key):
        raise ValueError("Invalid encryption key. Must be 32 url-safe base64-encoded bytes.")

    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USER, key)
    except Exception as e:
        msg = f"Failed to store encryption key in system keyring: {e}"
        logger.error(msg)
        raise ValueError(msg) from e
    msg = "Stored encryption key in system keyring"
    logger.info(msg)
    print(msg)


def encrypt_password(password: str = None, encryption_key: str = None) -> str:
    """
    CLI utility function to encrypt a password.

    Args:
        password: Password to encrypt (if None, prompts for input)
        encryption_key: Optional encryption key. If None, uses the environment or keyring key
    """
    if password is None:
        import getpass
        password = getpass.getpass("Enter password to encrypt: ")

    if encryption_key:
        encrypted = Fernet(encryption_key.encode()).encrypt(password.encode()).decode()
    else:
        temp_config = ConfigManager.__new__(ConfigManager)
        temp_config._fernet = None
        encrypted = temp_config.encrypt_password(password)

    print(encrypted)
    return encrypted
