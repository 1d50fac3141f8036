"""Duplicate detection and removal within one provider."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from .context import SyncContext
from .errors import CloudSyncError, NotFoundError, PermissionDeniedError
from .folders import FolderResolver
from .fragments import FragmentManager
from .logging_config import action_message
from .models import File, Replica, Status
from .report import BatchReport
from .scanner import refresh_file_status

logger = logging.getLogger(__name__)

_LATEST = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class DuplicateGroup:
    """Replicas of one provider with identical calculated ID and content hash.

    Attributes:
        files: Distinct files of the group, oldest first
    """

    provider: str
    calculated_id: str
    native_hash: str
    replicas: List[Replica]
    files: List[File] = field(default_factory=list)

    def replicas_of(self, file_id: int) -> List[Replica]:
        return [replica for replica in self.replicas if replica.file_id == file_id]


# Receives a group, returns the IDs of the files to delete
Chooser = Callable[[DuplicateGroup], List[int]]


def _age_key(file: File):
    mod_time = file.mod_time or _LATEST
    if mod_time.tzinfo is None:
        mod_time = mod_time.replace(tzinfo=timezone.utc)
    return (mod_time, file.id)


def oldest_wins(group: DuplicateGroup) -> List[int]:
    """Automatic policy: keep the file with the earliest mod time."""
    return [file.id for file in group.files[1:]]


class DeduplicationEngine:
    """Finds and removes duplicate files inside each provider.

    Identical content on different providers is intentional replication
    and never touched. Replicas without a content hash are never grouped.
    """

    SCAN_WAIT_SECONDS = 30.0

    def __init__(self, context: SyncContext, chooser: Optional[Chooser] = None):
        self.context = context
        self.store = context.store
        self.dry_run = context.dry_run
        self.chooser = chooser or oldest_wins
        self.fragments = FragmentManager(context.store, context.dry_run)

    def find_duplicates(self, report: Optional[BatchReport] = None) -> List[DuplicateGroup]:
        """List duplicate groups of every provider whose accounts are not being scanned."""
        groups = []
        for provider in self.context.providers:
            keys = [account.key for account in self.context.accounts_for(provider)]
            busy = self.store.wait_for_scans(keys, self.SCAN_WAIT_SECONDS)
            if busy:
                message = f"{provider}: scan still running for {', '.join(key[1] for key in busy)}"
                if report is not None:
                    report.skip(message)
                else:
                    logger.warning(f"Skipped: {message}")
                continue
            groups.extend(self._groups_for(provider))
        return groups

    def _groups_for(self, provider: str) -> List[DuplicateGroup]:
        groups = []
        for replicas in self.store.find_duplicate_groups(provider):
            files: Dict[int, File] = {}
            for replica in replicas:
                if replica.file_id is not None and replica.file_id not in files:
                    file = self.store.get_file(replica.file_id)
                    if file is not None:
                        files[file.id] = file
            groups.append(DuplicateGroup(
                provider=provider,
                calculated_id=replicas[0].calculated_id,
                native_hash=replicas[0].native_hash,
                replicas=replicas,
                files=sorted(files.values(), key=_age_key),
            ))
        return groups

    def remove_duplicates(self, command: str = 'remove-duplicates') -> BatchReport:
        """Apply the chooser to every duplicate group."""
        report = BatchReport(command)
        for group in self.find_duplicates(report):
            try:
                self._resolve(group, report)
            except CloudSyncError as e:
                report.error(f"{group.provider} {group.calculated_id}", e)
        return report

    def _resolve(self, group: DuplicateGroup, report: BatchReport) -> None:
        doomed: Set[int] = set(self.chooser(group))
        kept = [file for file in group.files if file.id not in doomed]
        logger.info(
            f"{group.provider}: {group.calculated_id} has {len(group.replicas)} copies, "
            f"deleting {len(doomed)} file(s)"
        )

        for file in group.files:
            if file.id in doomed:
                for replica in self.store.get_replicas_for_file(file.id, Status.ACTIVE):
                    self._delete_replica(replica, report)
                self._forget_if_gone(file, report)

        for file in kept:
            # Extra copies of a kept file in the same provider; the main
            # account's copy is preferred
            copies = sorted(
                group.replicas_of(file.id),
                key=lambda r: (not self._is_main(r), r.id),
            )
            for replica in copies[1:]:
                self._delete_replica(replica, report)
            if not self.dry_run:
                refresh_file_status(self.store, file.id)

    def _is_main(self, replica: Replica) -> bool:
        account = self.context.account(replica.account_key)
        return bool(account and account.is_main)

    def _delete_replica(self, replica: Replica, report: BatchReport) -> None:
        """Delete a replica, falling back to the trash folder when not permitted."""
        where = f"{replica.path} on {replica.provider}/{replica.account_id}"
        if not self.context.is_available(replica.account_key):
            report.skip(f"{where}: account unavailable")
            return

        client = self.context.client(replica.account_key)
        logger.info(action_message(f"Delete {where}", self.dry_run))
        if self.dry_run:
            report.action(f"Delete {where}")
            return

        try:
            for native_id in self.fragments.native_ids(replica):
                client.delete_file(native_id)
            self.store.mark_missing(replica, Status.DELETED)
            report.action(f"Delete {where}")
        except PermissionDeniedError:
            trash_id = FolderResolver(self.store, client).trash_folder_id()
            for native_id in self.fragments.native_ids(replica):
                client.move_file(native_id, trash_id)
            self.store.mark_missing(replica, Status.SOFT_DELETED)
            report.action(f"Move {where} to trash (delete not permitted)")
        except NotFoundError:
            self.store.mark_missing(replica, Status.DELETED)
            logger.info(f"{where} was already gone")

    def _forget_if_gone(self, file: File, report: BatchReport) -> None:
        """Drop the file row once none of its replicas is active."""
        if self.dry_run:
            return
        replicas = self.store.get_replicas_for_file(file.id)
        if all(r.status in (Status.DELETED, Status.SOFT_DELETED) for r in replicas):
            self.store.delete_file(file.id)
            logger.debug(f"Removed file row for {file.path}")
        else:
            refresh_file_status(self.store, file.id)
            report.failure(f"{file.path}: some copies could not be removed")
