"""Reconciliation context shared by all engines."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .backends.base import MetadataStore
from .clients.base import CloudClient
from .errors import ConfigError, DeadlineExceededError
from .models import Account

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget for long-running commands.

    A budget of 0 hours never expires.
    """

    def __init__(self, hours: float = 0, clock: Callable[[], float] = time.monotonic):
        self.hours = hours
        self._clock = clock
        self._expires_at = clock() + hours * 3600 if hours > 0 else None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self) -> None:
        """Raise DeadlineExceededError once the budget is spent."""
        if self.expired():
            raise DeadlineExceededError(
                f"Deadline of {self.hours}h exceeded; committed progress is kept, re-run to resume"
            )


@dataclass
class SyncContext:
    """Everything an engine needs: store, clients and run mode.

    Attributes:
        store: Metadata store (None only for commands that do not need it)
        accounts: Configured accounts
        clients: Client per account key
        dry_run: Suppress every remote mutation and the store writes depending on it
        max_workers: Bound for per-account parallelism
        deadline: Budget for long-running commands
        unavailable: Accounts whose last scan failed; engines skip them
    """

    store: Optional[MetadataStore]
    accounts: List[Account]
    clients: Dict[tuple, CloudClient]
    dry_run: bool = False
    max_workers: int = 4
    deadline: Deadline = field(default_factory=Deadline)
    unavailable: Set[tuple] = field(default_factory=set)

    def client(self, account_key: tuple) -> CloudClient:
        try:
            return self.clients[account_key]
        except KeyError:
            raise ConfigError(f"No client configured for {account_key[0]}/{account_key[1]}")

    def account(self, account_key: tuple) -> Optional[Account]:
        for account in self.accounts:
            if account.key == account_key:
                return account
        return None

    @property
    def providers(self) -> List[str]:
        return sorted({account.provider for account in self.accounts})

    @property
    def mirrored_providers(self) -> List[str]:
        """Providers with a main account; each must hold a copy of every active file."""
        return sorted({account.provider for account in self.accounts if account.is_main})

    def main_account(self, provider: str) -> Optional[Account]:
        for account in self.accounts:
            if account.provider == provider and account.is_main:
                return account
        return None

    def accounts_for(self, provider: str) -> List[Account]:
        return [account for account in self.accounts if account.provider == provider]

    def backup_accounts(self, provider: str) -> List[Account]:
        return [account for account in self.accounts_for(provider) if not account.is_main]

    def is_available(self, account_key: tuple) -> bool:
        return account_key in self.clients and account_key not in self.unavailable
