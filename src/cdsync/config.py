#!/usr/bin/env python3
"""Configuration management for cdsync.

Config File Structure
=====================

config.json contains:

{
  "accounts": [
    // One entry per account; at most one main account per provider
    {
      "provider": "Microsoft",
      "account_id": "me@outlook.com",
      "is_main": true,
      "credentials_handle": "Microsoft:me@outlook.com"
    }
  ],
  "sync_folder_name": "synched-cloud-drives",
  "max_workers": 4,              // Parallel per-account operations
  "retry_attempts": 5,
  "deadline_hours": 6,           // Budget for balance-storage / free-main (0 = none)
  "log_level": "INFO",
  "max_object_size": {"Telegram": 2097152000},
  "database_path": "~/.config/cdsync/metadata.db"
}

Credentials handles are opaque names. The token behind each handle is
written by the (external) authentication flow through ``save_token`` and
stored Fernet-encrypted under ``tokens/``; the encryption key lives in the
system keyring. The reconciliation core never reads tokens, only the
client factories do.
"""

import base64
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
import keyring

from .errors import ConfigError
from .models import SYNC_ROOT_NAME, Account
from .validators import validate_config_value, ValidationError

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


class Config:
    """Manages cdsync configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "cdsync"
    CONFIG_FILE = "config.json"
    TOKEN_DIR = "tokens"
    DATABASE_FILE = "metadata.db"
    LOG_FILE = "cdsync.log"
    KEYRING_SERVICE = "cdsync"
    KEYRING_KEY_NAME = "token_encryption_key"

    DEFAULTS: Dict[str, Any] = {
        'accounts': [],
        'sync_folder_name': SYNC_ROOT_NAME,
        'max_workers': 4,
        'retry_attempts': 5,
        'deadline_hours': 6,
        'log_level': 'INFO',
        'max_object_size': {'Telegram': 2000 * MIB},
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """Open (and create on first use) the configuration in ``config_dir``.

        Raises:
            ConfigError: If config.json exists but is not valid JSON
        """
        self.config_dir = Path(config_dir) if config_dir else self.DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / self.CONFIG_FILE
        self.token_dir = self.config_dir / self.TOKEN_DIR
        self.log_path = self.config_dir / self.LOG_FILE

        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Read config.json, writing the defaults when it does not exist yet."""
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    self._config = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Config file {self.config_path} is not valid JSON: {e}", cause=e)
            logger.debug(f"Loaded config from {self.config_path}")
        else:
            self._config = json.loads(json.dumps(self.DEFAULTS))
            self.save()
            logger.debug(f"Created default config at {self.config_path}")

    def save(self) -> None:
        """Write config.json, readable by the owner only."""
        with open(self.config_path, 'w') as f:
            json.dump(self._config, f, indent=2)
        self.config_path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a stored value, falling back to the built-in default."""
        if key in self._config:
            return self._config[key]
        return self.DEFAULTS.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Validate, store and persist one value.

        Raises:
            ValueError: If the validator for ``key`` rejects ``value``
        """
        try:
            validated_value = validate_config_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))
        self._config[key] = validated_value
        self.save()

    def as_dict(self) -> Dict[str, Any]:
        merged = dict(self.DEFAULTS)
        merged.update(self._config)
        return merged

    @property
    def accounts(self) -> List[Account]:
        """Get configured accounts (validated)."""
        try:
            entries = validate_config_value('accounts', self.get('accounts', []))
        except ValidationError as e:
            raise ConfigError(f"Invalid accounts configuration: {e}", cause=e)
        return [Account(**entry) for entry in entries]

    def add_account(self, provider: str, account_id: str, is_main: bool = False,
                    credentials_handle: Optional[str] = None) -> Account:
        """Add an account entry, replacing an existing one with the same key."""
        entries = [
            entry for entry in self.get('accounts', [])
            if (entry.get('provider'), entry.get('account_id')) != (provider, account_id)
        ]
        entries.append({
            'provider': provider,
            'account_id': account_id,
            'is_main': is_main,
            'credentials_handle': credentials_handle or f"{provider}:{account_id}",
        })
        self.set('accounts', entries)
        return next(a for a in self.accounts if a.key == (provider, account_id))

    def main_account(self, provider: str) -> Optional[Account]:
        for account in self.accounts:
            if account.provider == provider and account.is_main:
                return account
        return None

    @property
    def sync_folder_name(self) -> str:
        return self.get('sync_folder_name', SYNC_ROOT_NAME)

    @property
    def max_workers(self) -> int:
        return int(self.get('max_workers', 4))

    @property
    def retry_attempts(self) -> int:
        return int(self.get('retry_attempts', 5))

    @property
    def deadline_hours(self) -> int:
        return int(self.get('deadline_hours', 6))

    @property
    def log_level(self) -> str:
        return str(self.get('log_level', 'INFO')).upper()

    @property
    def database_path(self) -> Path:
        value = self.get('database_path')
        if value:
            return Path(value).expanduser()
        return self.config_dir / self.DATABASE_FILE

    def max_object_size_for(self, provider: str) -> Optional[int]:
        """Largest object size accepted by a provider, None for no limit."""
        sizes = self.get('max_object_size', {}) or {}
        value = sizes.get(provider)
        return int(value) if value else None

    def _get_encryption_key(self) -> bytes:
        """Fernet key for the token files, created in the system keyring on first use."""
        key_str = keyring.get_password(self.KEYRING_SERVICE, self.KEYRING_KEY_NAME)

        if key_str:
            return base64.b64decode(key_str.encode())

        key = Fernet.generate_key()
        key_str = base64.b64encode(key).decode()
        keyring.set_password(self.KEYRING_SERVICE, self.KEYRING_KEY_NAME, key_str)

        logger.info("Generated new encryption key")
        return key

    def _token_path(self, handle: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9@._-]', '_', handle)
        return self.token_dir / f"{safe}.token"

    def save_token(self, handle: str, token_data: Dict[str, Any]) -> None:
        """Save encrypted credentials under a handle.

        Args:
            handle: Credentials handle of an account
            token_data: Token data dictionary
        """
        fernet = Fernet(self._get_encryption_key())
        encrypted = fernet.encrypt(json.dumps(token_data).encode())

        self.token_dir.mkdir(parents=True, exist_ok=True)
        path = self._token_path(handle)
        path.write_bytes(encrypted)
        # Secure file permissions (owner read/write only)
        path.chmod(0o600)

        logger.debug(f"Token saved with encryption for {handle}")

    def load_token(self, handle: str) -> Optional[Dict[str, Any]]:
        """Load and decrypt credentials for a handle.

        Returns:
            Token data or None if not found or unreadable
        """
        path = self._token_path(handle)
        if not path.exists():
            return None

        try:
            fernet = Fernet(self._get_encryption_key())
            return json.loads(fernet.decrypt(path.read_bytes()).decode())
        except InvalidToken:
            logger.warning(f"Could not decrypt token for {handle}; please re-authenticate")
            return None
        except ValueError as e:
            logger.warning(f"Token for {handle} is corrupted: {e}")
            return None

    def delete_token(self, handle: str) -> None:
        self._token_path(handle).unlink(missing_ok=True)
