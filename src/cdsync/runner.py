"""Command orchestration: builds the context and runs engines."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .backends.sqlite_backend import SqliteMetadataStore
from .balance import StorageBalancer
from .clients.base import CloudClient
from .clients.registry import ProviderRegistry, default_registry
from .config import Config
from .context import Deadline, SyncContext
from .dedup import Chooser, DeduplicationEngine, DuplicateGroup, oldest_wins
from .errors import CloudSyncError, ConfigError
from .logging_config import action_message
from .metadata_backup import backup_metadata, restore_metadata
from .models import Account, Quota
from .reconcile import ReconciliationEngine
from .report import BatchReport
from .scanner import scan_accounts

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs cdsync commands against the configured accounts.

    Clients and the store are created lazily; tests inject both.
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[ProviderRegistry] = None,
        dry_run: bool = False,
        clients: Optional[Dict[tuple, CloudClient]] = None,
        store: Optional[SqliteMetadataStore] = None,
    ):
        self.config = config
        self.registry = registry or default_registry()
        self.dry_run = dry_run
        self._clients = clients
        self._store = store
        self._context: Optional[SyncContext] = None

    @property
    def store(self) -> SqliteMetadataStore:
        if self._store is None:
            self._store = SqliteMetadataStore(self.config.database_path)
        return self._store

    def _build_clients(self, accounts: List[Account]) -> Dict[tuple, CloudClient]:
        clients = {}
        for account in accounts:
            token = self.config.load_token(account.credentials_handle)
            if token is None:
                logger.warning(f"No stored credentials for {account} ({account.credentials_handle})")
            clients[account.key] = self.registry.create(account, self.config, token)
        return clients

    def context(self, with_store: bool = True) -> SyncContext:
        """Build (once) the reconciliation context.

        Raises:
            ConfigError: If no account is configured or a provider is unknown
        """
        if self._context is None:
            accounts = self.config.accounts
            if not accounts:
                raise ConfigError("No accounts configured; add them with 'cdsync account add'")
            clients = self._clients if self._clients is not None else self._build_clients(accounts)
            self._context = SyncContext(
                store=self.store if with_store else None,
                accounts=accounts,
                clients=clients,
                dry_run=self.dry_run,
                max_workers=self.config.max_workers,
                deadline=Deadline(self.config.deadline_hours),
            )
        elif with_store and self._context.store is None:
            self._context.store = self.store
        return self._context

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None

    def _per_account(self, context: SyncContext, work: Callable[[Account, CloudClient], object],
                     report: BatchReport) -> Dict[tuple, object]:
        """Run ``work`` for every available account in the worker pool."""
        accounts = [account for account in context.accounts if context.is_available(account.key)]
        results = {}
        with ThreadPoolExecutor(max_workers=context.max_workers) as executor:
            futures = {
                executor.submit(work, account, context.client(account.key)): account
                for account in accounts
            }
            for future in as_completed(futures):
                account = futures[future]
                try:
                    results[account.key] = future.result()
                except CloudSyncError as e:
                    report.error(str(account), e)
        return results

    # Commands

    def get_metadata(self) -> BatchReport:
        context = self.context()
        report = BatchReport('get-metadata')
        for result in scan_accounts(context, context.accounts, report):
            report.action(f"{result.account_key[0]}/{result.account_key[1]}: {result}")
        return report

    def check_for_duplicates(self) -> Tuple[List[DuplicateGroup], BatchReport]:
        report = self.get_metadata()
        report.command = 'check-for-duplicates'
        groups = DeduplicationEngine(self.context()).find_duplicates(report)
        return groups, report

    def _refreshed(self, refresh: bool) -> BatchReport:
        return self.get_metadata() if refresh else BatchReport('get-metadata')

    def remove_duplicates(self, chooser: Optional[Chooser] = None, unsafe: bool = False,
                          refresh: bool = True) -> BatchReport:
        if not unsafe and chooser is None:
            raise ConfigError("Interactive duplicate removal needs a chooser")
        report = self._refreshed(refresh)
        engine = DeduplicationEngine(self.context(), oldest_wins if unsafe else chooser)
        command = 'remove-duplicates-unsafe' if unsafe else 'remove-duplicates'
        return engine.remove_duplicates(command).merge(report)

    def sync_providers(self, refresh: bool = True) -> BatchReport:
        report = self._refreshed(refresh)
        result = ReconciliationEngine(self.context()).run()
        return result.merge(report)

    def quota(self) -> Tuple[Dict[tuple, Quota], BatchReport]:
        context = self.context(with_store=False)
        report = BatchReport('quota')
        quotas = self._per_account(context, lambda account, client: client.get_quota(), report)
        return quotas, report

    def balance_storage(self, refresh: bool = True) -> BatchReport:
        report = self._refreshed(refresh)
        quotas, quota_report = self.quota()
        report.merge(quota_report)
        result = StorageBalancer(self.context(), quotas).balance_storage()
        return result.merge(report)

    def free_main(self, provider: str, refresh: bool = True) -> BatchReport:
        report = self._refreshed(refresh)
        quotas, quota_report = self.quota()
        report.merge(quota_report)
        result = StorageBalancer(self.context(), quotas).free_main(provider)
        return result.merge(report)

    def check_tokens(self) -> BatchReport:
        context = self.context(with_store=False)
        report = BatchReport('check-tokens')
        identities = self._per_account(context, lambda account, client: client.get_user_identity(), report)
        for account in context.accounts:
            if account.key not in identities:
                continue
            identity = identities[account.key] or ''
            if identity.lower() != account.account_id.lower():
                report.failure(f"{account}: credentials belong to '{identity}'")
            else:
                report.action(f"{account}: credentials valid")
        return report

    def share_with_main(self) -> BatchReport:
        """Share every backup account's sync root with its provider's main account."""
        context = self.context(with_store=False)
        report = BatchReport('share-with-main')
        for provider in context.mirrored_providers:
            main = context.main_account(provider)
            for backup in context.backup_accounts(provider):
                if not context.is_available(backup.key):
                    report.skip(f"{backup}: unavailable")
                    continue
                message = f"Share sync root of {backup} with {main.account_id}"
                try:
                    client = context.client(backup.key)
                    folder_id = client.get_sync_folder_id()
                    logger.info(action_message(message, self.dry_run))
                    if not self.dry_run:
                        client.share_folder(folder_id, main.account_id, 'writer')
                except CloudSyncError as e:
                    report.error(str(backup), e)
                    continue
                report.action(message)
        return report

    def delete_unsynced_files(self) -> BatchReport:
        """Delete everything in backup accounts' drive roots except the sync root.

        Backup accounts exist only to hold synced data; an account whose
        sync root cannot be identified is left untouched.
        """
        context = self.context(with_store=False)
        report = BatchReport('delete-unsynced-files')
        for account in context.accounts:
            if account.is_main:
                continue
            if not context.is_available(account.key):
                report.skip(f"{account}: unavailable")
                continue
            client = context.client(account.key)
            try:
                sync_root_id = client.get_sync_folder_id()
                folders, files = client.list_drive_root()
            except CloudSyncError as e:
                report.error(str(account), e)
                continue

            unsynced = [
                (f"folder {folder.name}", folder.id, client.delete_folder)
                for folder in folders if folder.id != sync_root_id
            ] + [
                (f"file {item.name}", item.native_id, client.delete_file)
                for item in files
            ]
            if not unsynced:
                logger.info(f"{account}: nothing outside the sync root")
            for label, native_id, delete in unsynced:
                message = f"Delete {label} from the drive root of {account}"
                logger.info(action_message(message, self.dry_run))
                if not self.dry_run:
                    try:
                        delete(native_id)
                    except CloudSyncError as e:
                        report.error(f"{account}: {label}", e)
                        continue
                report.action(message)
        return report

    def sync(self, free_main: Iterable[str] = (), chooser: Optional[Chooser] = None) -> BatchReport:
        """Run the full pipeline with a single metadata scan.

        Steps: quota, get-metadata, free-main (for the given providers only),
        duplicate removal (interactive when ``chooser`` is set, otherwise
        oldest wins), sync-providers, balance-storage.
        """
        report = BatchReport('sync')

        logger.info("[Step 1/6] Checking quota")
        quotas, quota_report = self.quota()
        report.merge(quota_report)
        for (provider, account_id), quota in sorted(quotas.items()):
            logger.info(f"{provider}/{account_id}: {quota.usage_ratio:.1%} used")

        logger.info("[Step 2/6] Updating metadata")
        report.merge(self.get_metadata())

        logger.info("[Step 3/6] Freeing main accounts")
        providers = list(free_main)
        if not providers:
            logger.info("No provider selected for free-main, skipping")
        for provider in providers:
            report.merge(self.free_main(provider, refresh=False))

        logger.info("[Step 4/6] Removing duplicates")
        report.merge(self.remove_duplicates(chooser=chooser, unsafe=chooser is None, refresh=False))

        logger.info("[Step 5/6] Syncing providers")
        report.merge(self.sync_providers(refresh=False))

        logger.info("[Step 6/6] Balancing storage")
        report.merge(self.balance_storage(refresh=False))
        return report

    def backup_metadata(self) -> BatchReport:
        context = self.context()
        return backup_metadata(context, self.store)

    def restore_metadata(self, force: bool = False) -> BatchReport:
        context = self.context(with_store=False)
        return restore_metadata(context, self.config.database_path, force=force)
