"""Quota-driven relocation between accounts of one provider.

``balance-storage`` drains accounts above 95% usage until they are below
90%; ``free-main`` empties a provider's main account into its backups.
Both prefer native ownership transfer and fall back to
download, upload (fragmented if needed) and delete.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .context import SyncContext
from .errors import (
    CloudSyncError,
    ConfigError,
    DeadlineExceededError,
    InsufficientSpaceError,
    UnsupportedOperationError,
)
from .folders import FolderResolver
from .fragments import FragmentManager
from .logging_config import action_message
from .models import Account, File, OwnershipTransferResult, Quota, Replica, Status
from .path_utils import parent_path
from .report import BatchReport

logger = logging.getLogger(__name__)

HIGH_WATERMARK = 0.95
LOW_WATERMARK = 0.90

TRANSFERRED = 'transferred'
PENDING = 'pending'
COPIED = 'copied'


class Relocator:
    """Moves one replica to another account of the same provider."""

    def __init__(self, context: SyncContext):
        self.context = context
        self.store = context.store
        self.dry_run = context.dry_run
        self.fragments = FragmentManager(context.store, context.dry_run)

    def relocate(self, replica: Replica, target: Account, report: BatchReport) -> str:
        """Relocate a replica.

        Returns:
            ``'transferred'``, ``'pending'`` (waiting for consent) or ``'copied'``
        """
        source = self.context.client(replica.account_key)
        where = f"{replica.path} from {replica.account_id} to {target.account_id} ({replica.provider})"

        if source.capabilities.ownership_transfer:
            if self.dry_run:
                message = f"Transfer ownership of {where}"
                logger.info(action_message(message, True))
                report.action(message)
                return TRANSFERRED
            try:
                result = self._transfer(replica, target)
            except UnsupportedOperationError as e:
                logger.info(f"Ownership transfer unavailable, copying instead: {e}")
            else:
                if result == OwnershipTransferResult.PENDING_CONSENT:
                    report.pending_transfer(f"{where}: {target.account_id} must accept ownership")
                    return PENDING
                report.action(f"Transferred ownership of {where}")
                return TRANSFERRED

        self._copy(replica, target, report, where)
        return COPIED

    def _transfer(self, replica: Replica, target: Account) -> OwnershipTransferResult:
        client = self.context.client(replica.account_key)
        results = [
            client.transfer_ownership(native_id, target.account_id)
            for native_id in self.fragments.native_ids(replica)
        ]
        if OwnershipTransferResult.PENDING_CONSENT in results:
            return OwnershipTransferResult.PENDING_CONSENT

        fragments = self.store.get_fragments(replica.id) if replica.fragmented else []
        with self.store.transaction():
            self.store.delete_replica(replica.id)
            replica.id = None
            replica.account_id = target.account_id
            for fragment in fragments:
                fragment.id = None
            replica.fragments = fragments
            self.fragments.record(replica)
        return OwnershipTransferResult.TRANSFERRED

    def _copy(self, replica: Replica, target: Account, report: BatchReport, where: str) -> None:
        source = self.context.client(replica.account_key)
        destination = self.context.client(target.key)
        folder_id = FolderResolver(self.store, destination, self.dry_run).ensure_folder(parent_path(replica.path))

        template = Replica(
            name=replica.name,
            size=replica.size,
            native_id='',
            path=replica.path,
            calculated_id=replica.calculated_id,
            mod_time=replica.mod_time,
            file_id=replica.file_id,
        )
        message = f"Move {where}"
        if self.dry_run:
            self.fragments.upload(destination, folder_id, template, None)
            logger.info(action_message(f"Would delete original {replica.path} on {replica.account_id}", True))
            report.action(message)
            return

        reader = self.fragments.open(replica, source)
        try:
            self.fragments.upload(destination, folder_id, template, reader)
        finally:
            reader.close()

        for native_id in self.fragments.native_ids(replica):
            source.delete_file(native_id)
        self.store.mark_missing(replica, Status.DELETED)
        report.action(message)


class StorageBalancer:
    """Implements ``balance-storage`` and ``free-main``."""

    def __init__(self, context: SyncContext, quotas: Optional[Dict[tuple, Quota]] = None):
        self.context = context
        self.store = context.store
        self.relocator = Relocator(context)
        self.quotas: Dict[tuple, Quota] = dict(quotas or {})

    def _quota(self, account: Account) -> Quota:
        if account.key not in self.quotas:
            self.quotas[account.key] = self.context.client(account.key).get_quota()
        return self.quotas[account.key]

    def _pick_target(self, candidates: List[Account], size: int) -> Optional[Account]:
        """Backup with the most free space that can hold ``size`` bytes."""
        fitting = [account for account in candidates if self._quota(account).free >= size]
        if not fitting:
            return None
        return max(fitting, key=lambda account: (self._quota(account).free, account.account_id))

    def _account_moved(self, source: Account, target: Account, size: int) -> None:
        # Simulated locally so dry-run and real runs take the same decisions
        source_quota = self._quota(source)
        source_quota.used = max(source_quota.used - size, 0)
        source_quota.free += size
        target_quota = self._quota(target)
        target_quota.used += size
        target_quota.free = max(target_quota.free - size, 0)

    def _move(self, replica: Replica, source: Account, target: Account,
              report: BatchReport) -> bool:
        """Relocate one file; returns True when the source quota was freed."""
        outcome = self.relocator.relocate(replica, target, report)
        if outcome == PENDING:
            return False
        self._account_moved(source, target, replica.size)
        return True

    def _usable(self, account: Account) -> bool:
        return self.context.is_available(account.key)

    def balance_storage(self) -> BatchReport:
        report = BatchReport('balance-storage')
        for account in sorted(self.context.accounts, key=lambda a: a.key):
            if not self._usable(account):
                report.skip(f"{account}: unavailable")
                continue
            try:
                quota = self._quota(account)
            except CloudSyncError as e:
                report.error(f"{account} quota", e)
                continue
            if quota.usage_ratio <= HIGH_WATERMARK:
                logger.debug(f"{account} at {quota.usage_ratio:.1%}, nothing to do")
                continue

            logger.info(f"{account} at {quota.usage_ratio:.1%}, balancing")
            try:
                self._drain(account, report)
            except DeadlineExceededError as e:
                report.error('balance-storage', e)
                break
        return report

    def _drain(self, account: Account, report: BatchReport) -> None:
        targets = [
            backup for backup in self.context.backup_accounts(account.provider)
            if backup.key != account.key and self._usable(backup)
        ]
        if not targets:
            report.failure(f"{account}: no backup account available to balance into")
            return

        quota = self._quota(account)
        for file, replica in self.store.get_largest_files_exclusive(account.provider, account.account_id):
            if quota.usage_ratio < LOW_WATERMARK:
                break
            self.context.deadline.check()

            target = self._pick_target(targets, replica.size)
            if target is None:
                logger.info(f"No backup can hold {replica.path} ({replica.size} bytes), trying smaller files")
                continue
            try:
                self._move(replica, account, target, report)
            except CloudSyncError as e:
                report.error(replica.path, e)

        if quota.usage_ratio >= LOW_WATERMARK:
            report.failure(
                f"{account}: still at {quota.usage_ratio:.1%} after balancing, "
                f"no more files can be moved to its backups"
            )
        else:
            logger.info(f"{account} balanced to {quota.usage_ratio:.1%}")

    def _main_replicas(self, main: Account) -> List[Tuple[File, Replica]]:
        pairs = []
        for replica in self.store.get_replicas_by_account(main.provider, main.account_id, Status.ACTIVE):
            file = self.store.get_file(replica.file_id) if replica.file_id is not None else None
            if file is not None and file.status == Status.ACTIVE:
                pairs.append((file, replica))
        return sorted(pairs, key=lambda pair: (-pair[1].size, pair[1].path))

    def _already_backed_up(self, file: File, main: Account) -> bool:
        return any(
            replica.provider == main.provider and replica.account_id != main.account_id
            for replica in self.store.get_replicas_for_file(file.id, Status.ACTIVE)
        )

    def free_main(self, provider: str) -> BatchReport:
        """Move every file of a provider's main account to its backups.

        Raises:
            ConfigError: If the provider has no main account
            InsufficientSpaceError: If the backups cannot hold everything
        """
        report = BatchReport('free-main')
        main = self.context.main_account(provider)
        if main is None:
            raise ConfigError(f"No main account configured for {provider}")
        if not self._usable(main):
            raise ConfigError(f"{main} is unavailable")

        backups = [backup for backup in self.context.backup_accounts(provider) if self._usable(backup)]
        if not backups:
            raise InsufficientSpaceError(f"{provider} has no available backup account")

        pairs = self._main_replicas(main)
        to_move = [(f, r) for f, r in pairs if not self._already_backed_up(f, main)]
        moving = {replica.id for _, replica in to_move}
        needed = sum(replica.size for _, replica in to_move)
        available = sum(self._quota(backup).free for backup in backups)
        if needed > available:
            raise InsufficientSpaceError(
                f"{provider} backups have {available} bytes free, {needed} needed to free {main}",
                details={'needed': needed, 'available': available},
            )
        logger.info(f"Freeing {main}: {len(pairs)} file(s), {needed} bytes to move")

        for file, replica in pairs:
            try:
                self.context.deadline.check()
            except DeadlineExceededError as e:
                report.error('free-main', e)
                break
            try:
                if replica.id not in moving:
                    self._drop_redundant(replica, report)
                    continue
                target = self._pick_target(backups, replica.size)
                if target is None:
                    report.failure(f"{replica.path}: no backup of {provider} can hold {replica.size} bytes")
                    continue
                self._move(replica, main, target, report)
            except CloudSyncError as e:
                report.error(replica.path, e)
        return report

    def _drop_redundant(self, replica: Replica, report: BatchReport) -> None:
        """Delete a main copy that a backup already holds."""
        message = f"Delete {replica.path} on {replica.account_id}, already on a backup"
        logger.info(action_message(message, self.context.dry_run))
        if not self.context.dry_run:
            client = self.context.client(replica.account_key)
            for native_id in self.relocator.fragments.native_ids(replica):
                client.delete_file(native_id)
            self.store.mark_missing(replica, Status.DELETED)
        report.action(message)
