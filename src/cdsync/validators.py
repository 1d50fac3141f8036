"""Configuration validators for cdsync.

Each known key of ``config.json`` has a validator that normalizes the
raw value or raises :class:`ValidationError`. Keys without a validator
are stored as given.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import uuid

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base class for configuration validators."""

    def validate(self, value: Any) -> Any:
        """Return the normalized value.

        Raises:
            ValidationError: If the value is unusable
        """
        raise NotImplementedError


class ChoiceValidator(ConfigValidator):
    """Accepts one of a fixed set of names, case-insensitively."""

    def __init__(self, label: str, choices: Iterable[str]):
        self.label = label
        self.choices = {choice.upper() for choice in choices}

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"{self.label} must be text, got: {value!r}")
        choice = value.strip().upper()
        if choice not in self.choices:
            raise ValidationError(
                f"Unknown {self.label.lower()} '{value}' (choose from {', '.join(sorted(self.choices))})"
            )
        return choice


class UUIDValidator(ConfigValidator):
    """Accepts an application ID in UUID form (the Graph client ID)."""

    def validate(self, value: Any) -> str:
        text = value.strip() if isinstance(value, str) else ''
        try:
            return str(uuid.UUID(text))
        except ValueError:
            raise ValidationError(f"Expected an ID like 00000000-0000-0000-0000-000000000000, got: {value!r}")


class IntegerValidator(ConfigValidator):
    """Accepts whole numbers (or their text form) within optional bounds."""

    def __init__(self, min_value: Optional[int] = None, max_value: Optional[int] = None):
        self.min_value = min_value
        self.max_value = max_value

    def validate(self, value: Any) -> int:
        # bool is an int subclass; 'true' in a config file is a mistake
        if isinstance(value, bool):
            raise ValidationError(f"Expected a number, got: {value!r}")
        try:
            number = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"Expected a number, got: {value!r}")

        low_ok = self.min_value is None or number >= self.min_value
        high_ok = self.max_value is None or number <= self.max_value
        if not (low_ok and high_ok):
            raise ValidationError(
                f"{number} is outside the allowed range "
                f"[{self.min_value if self.min_value is not None else '-'}, "
                f"{self.max_value if self.max_value is not None else '-'}]"
            )
        return number


class FolderNameValidator(ConfigValidator):
    """Validates a single remote folder name (no separators)."""

    MAX_LENGTH = 255

    def validate(self, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Folder name must be non-empty text, got: {value!r}")
        name = value.strip()
        if len(name) > self.MAX_LENGTH:
            raise ValidationError(f"Folder name is longer than {self.MAX_LENGTH} characters")
        if '/' in name or '\\' in name or name in ('.', '..'):
            raise ValidationError(f"Folder name must not contain path separators: {name}")
        return name


class DatabasePathValidator(ConfigValidator):
    """Validates the metadata database location."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, (str, Path)):
            raise ValidationError(f"Database path must be a string or Path, got: {type(value)}")

        path = Path(value).expanduser().resolve()

        if path.exists() and path.is_dir():
            raise ValidationError(f"Database path is a directory: {path}")

        if not path.parent.exists():
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created database directory: {path.parent}")
            except OSError as e:
                raise ValidationError(f"Failed to create database directory {path.parent}: {e}")

        return str(path)


class MaxObjectSizeValidator(ConfigValidator):
    """Validates the per-provider maximum object size mapping (bytes)."""

    def validate(self, value: Any) -> Dict[str, int]:
        if not isinstance(value, dict):
            raise ValidationError(f"max_object_size must be a mapping of provider to bytes, got: {type(value)}")

        sizes = {}
        size_validator = IntegerValidator(min_value=1)
        for provider, size in value.items():
            try:
                sizes[str(provider)] = size_validator.validate(size)
            except ValidationError as e:
                raise ValidationError(f"max_object_size for {provider}: {e}")
        return sizes


class AccountsValidator(ConfigValidator):
    """Validates the configured accounts list.

    Each entry needs ``provider`` and ``account_id``; ``is_main`` and
    ``credentials_handle`` are optional. A provider has at most one main
    account and an account appears only once.
    """

    def validate(self, value: Any) -> List[Dict[str, Any]]:
        if not isinstance(value, list):
            raise ValidationError(f"Accounts must be a list, got: {type(value)}")

        accounts = []
        seen = set()
        mains = set()
        for entry in value:
            if not isinstance(entry, dict):
                raise ValidationError(f"Account entry must be a mapping, got: {entry!r}")

            provider = str(entry.get('provider', '')).strip()
            account_id = str(entry.get('account_id', '')).strip()
            if not provider or not account_id:
                raise ValidationError(f"Account entry needs provider and account_id: {entry!r}")

            key = (provider, account_id)
            if key in seen:
                raise ValidationError(f"Duplicate account: {provider}/{account_id}")
            seen.add(key)

            is_main = bool(entry.get('is_main', False))
            if is_main:
                if provider in mains:
                    raise ValidationError(f"More than one main account for {provider}")
                mains.add(provider)

            accounts.append({
                'provider': provider,
                'account_id': account_id,
                'is_main': is_main,
                'credentials_handle': str(entry.get('credentials_handle') or f"{provider}:{account_id}"),
            })

        return accounts


VALIDATORS: Dict[str, ConfigValidator] = {
    'accounts': AccountsValidator(),
    'sync_folder_name': FolderNameValidator(),
    'max_workers': IntegerValidator(min_value=1, max_value=64),
    'retry_attempts': IntegerValidator(min_value=1, max_value=20),
    'deadline_hours': IntegerValidator(min_value=0, max_value=24 * 7),
    'log_level': ChoiceValidator('Log level', ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')),
    'client_id': UUIDValidator(),
    'max_object_size': MaxObjectSizeValidator(),
    'database_path': DatabasePathValidator(),
}


def validate_config_value(key: str, value: Any) -> Any:
    """Normalize ``value`` for ``key``; keys without a validator are returned as is.

    Raises:
        ValidationError: If a registered validator rejects the value
    """
    validator = VALIDATORS.get(key)
    return validator.validate(value) if validator else value
