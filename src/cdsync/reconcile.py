"""Cross-provider reconciliation (``sync-providers``).

Every provider with a main account mirrors the logical namespace: each
active file needs at least one active replica somewhere in that provider
(main or backup). Missing replicas are restored from the provider's trash
when possible, otherwise copied from another provider into the main
account. Soft-deleted files have their remaining copies moved to trash.
"""

import logging
import posixpath
from collections import defaultdict
from typing import Dict, List, Set, Tuple

from .context import SyncContext
from .errors import CloudSyncError, ConflictError, CorruptFragmentSetError, NotFoundError, TransientError
from .folders import FolderResolver
from .fragments import FragmentManager
from .logging_config import action_message
from .models import Account, File, Replica, Status, calculated_id
from .path_utils import conflict_name, join_path, parent_path, path_key
from .report import BatchReport
from .scanner import scan_accounts

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Brings every mirrored provider up to date with the logical namespace."""

    def __init__(self, context: SyncContext):
        self.context = context
        self.store = context.store
        self.dry_run = context.dry_run
        self.fragments = FragmentManager(context.store, context.dry_run)
        # provider -> path keys claimed by uploads planned in this pass
        self._claimed: Dict[str, Set[str]] = defaultdict(set)
        # (account key, path, file id) of every copy or restore done in this pass
        self._expected: List[Tuple[tuple, str, int]] = []

    def run(self) -> BatchReport:
        """Run one reconciliation pass and verify mutated accounts."""
        report = BatchReport('sync-providers')
        mutated: Set[tuple] = set()

        if not self.context.mirrored_providers:
            report.failure("No main account configured; nothing to mirror")
            return report

        for file in self.store.get_files(Status.ACTIVE):
            try:
                self.reconcile_file(file, report, mutated)
            except CloudSyncError as e:
                report.error(file.path, e)

        for file in self.store.get_files(Status.SOFT_DELETED):
            self.propagate_soft_delete(file, report, mutated)

        if mutated and not self.dry_run:
            accounts = [self.context.account(key) for key in sorted(mutated)]
            logger.info(f"Verifying {len(accounts)} mutated account(s)")
            scan_accounts(self.context, [account for account in accounts if account], report)
            self.verify(report)

        return report

    def verify(self, report: BatchReport) -> None:
        """Check that every copy and restore of this pass shows up in the rescan."""
        for account_key, path, file_id in self._expected:
            if not self.context.is_available(account_key):
                continue
            provider, account_id = account_key
            found = any(
                replica.file_id == file_id and replica.account_id == account_id
                for replica in self.store.get_replicas_by_path(provider, path, Status.ACTIVE)
            )
            if not found:
                report.failure(f"{path}: not found on {provider}/{account_id} after the pass")
        self._expected = []

    def reconcile_file(self, file: File, report: BatchReport, mutated: Set[tuple]) -> None:
        replicas = self.store.get_replicas_for_file(file.id)

        for provider in self.context.mirrored_providers:
            if any(r.provider == provider and r.status == Status.ACTIVE for r in replicas):
                continue

            main = self.context.main_account(provider)
            if not self.context.is_available(main.key):
                report.skip(f"{file.path}: {main} is unavailable")
                continue

            trashed = [
                r for r in replicas
                if r.provider == provider and r.status == Status.SOFT_DELETED
                and self.context.is_available(r.account_key)
            ]
            if trashed and self._restore_from_trash(file, trashed[0], report, mutated):
                continue

            self._copy_to_main(file, main, replicas, report, mutated)

    def _is_free(self, provider: str, path: str, file: File) -> bool:
        """A path is free when no other file has an active replica there."""
        if path_key(path) in self._claimed[provider]:
            return False
        return all(
            replica.file_id == file.id
            for replica in self.store.get_replicas_by_path(provider, path, Status.ACTIVE)
        )

    def _target_path(self, file: File, provider: str) -> str:
        """First free path for a file, adding ``_conflict_<n>`` when taken."""
        candidate = file.path
        counter = 0
        while not self._is_free(provider, candidate, file):
            counter += 1
            candidate = join_path(parent_path(file.path), conflict_name(file.name, counter))
        if counter:
            logger.info(f"{file.path} collides on {provider}, using {candidate}")
        return candidate

    def _restore_from_trash(self, file: File, replica: Replica, report: BatchReport,
                            mutated: Set[tuple]) -> bool:
        """Move a soft-deleted replica back to its folder.

        Returns:
            False if the original path is taken and a copy is needed instead
        """
        if not self._is_free(replica.provider, replica.path, file):
            return False

        client = self.context.client(replica.account_key)
        folder_id = FolderResolver(self.store, client, self.dry_run).ensure_folder(parent_path(replica.path))
        message = f"Restore {replica.path} from trash on {replica.provider}/{replica.account_id}"
        logger.info(action_message(message, self.dry_run))
        if self.dry_run:
            report.action(message)
            self._claimed[replica.provider].add(path_key(replica.path))
            return True

        try:
            for native_id in self.fragments.native_ids(replica):
                client.move_file(native_id, folder_id)
        except (ConflictError, NotFoundError) as e:
            logger.warning(f"Could not restore {replica.path} from trash: {e}")
            return False

        replica.status = Status.ACTIVE
        replica.parent_folder_id = folder_id
        self.store.upsert_replica(replica)
        self._claimed[replica.provider].add(path_key(replica.path))
        self._expected.append((replica.account_key, replica.path, file.id))
        report.action(message)
        mutated.add(replica.account_key)
        return True

    def _sources(self, replicas: List[Replica]) -> List[Replica]:
        """Active reachable replicas, whole ones before fragmented ones."""
        sources = [
            r for r in replicas
            if r.status == Status.ACTIVE and self.context.is_available(r.account_key)
        ]
        return sorted(sources, key=lambda r: (r.fragmented, r.provider, r.account_id))

    def _copy_to_main(self, file: File, main: Account, replicas: List[Replica],
                      report: BatchReport, mutated: Set[tuple]) -> None:
        sources = self._sources(replicas)
        if not sources:
            report.failure(f"{file.path}: no reachable copy to restore on {main.provider}")
            return

        target_path = self._target_path(file, main.provider)
        name = posixpath.basename(target_path)
        client = self.context.client(main.key)
        folder_id = FolderResolver(self.store, client, self.dry_run).ensure_folder(parent_path(target_path))

        for source in sources:
            template = Replica(
                name=name,
                size=file.size,
                native_id='',
                path=target_path,
                calculated_id=calculated_id(name, file.size),
                mod_time=file.mod_time,
                file_id=file.id,
            )
            reader = None
            try:
                if not self.dry_run:
                    reader = self.fragments.open(source, self.context.client(source.account_key))
                self.fragments.upload(client, folder_id, template, reader)
            except (CorruptFragmentSetError, NotFoundError, ConflictError, TransientError) as e:
                report.error(f"{file.path} from {source.provider}/{source.account_id}", e)
                continue
            finally:
                if reader is not None:
                    reader.close()

            message = (
                f"Copy {file.path} from {source.provider}/{source.account_id} "
                f"to {main.provider}/{main.account_id} as {target_path}"
            )
            report.action(message)
            self._claimed[main.provider].add(path_key(target_path))
            mutated.add(main.key)
            if not self.dry_run:
                self._expected.append((main.key, target_path, file.id))
            return

        report.failure(f"{file.path}: every copy failed, {main.provider} still has no replica")

    def propagate_soft_delete(self, file: File, report: BatchReport, mutated: Set[tuple]) -> None:
        """Move the remaining active copies of a soft-deleted file to trash."""
        for replica in self.store.get_replicas_for_file(file.id, Status.ACTIVE):
            if not self.context.is_available(replica.account_key):
                report.skip(f"{replica.path}: {replica.provider}/{replica.account_id} is unavailable")
                continue

            message = f"Move {replica.path} to trash on {replica.provider}/{replica.account_id}"
            try:
                client = self.context.client(replica.account_key)
                trash_id = FolderResolver(self.store, client, self.dry_run).trash_folder_id()
                logger.info(action_message(message, self.dry_run))
                if not self.dry_run:
                    for native_id in self.fragments.native_ids(replica):
                        client.move_file(native_id, trash_id)
                    self.store.mark_missing(replica, Status.SOFT_DELETED)
                    mutated.add(replica.account_key)
            except CloudSyncError as e:
                report.error(replica.path, e)
                continue
            report.action(message)
