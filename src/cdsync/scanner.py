"""Rebuild replica metadata from remote listings (``get-metadata``)."""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .backends.base import MetadataStore
from .clients.base import CloudClient
from .context import SyncContext
from .errors import CloudSyncError, NotFoundError
from .folders import AUX_PATH, TRASH_PATH
from .fragments import ConcatReader, parse_fragment_name
from .hashing import sha256_stream
from .logging_config import account_logger
from .models import (
    AUX_FOLDER_NAME,
    SOFT_DELETED_FOLDER_NAME,
    SYNC_ROOT_NAME,
    Account,
    File,
    Folder,
    Replica,
    ReplicaFragment,
    Status,
    calculated_id,
    hashes_compatible,
)
from .path_utils import join_path
from .report import BatchReport

logger = logging.getLogger(__name__)

TRASHED = 'trashed'
RESTORED = 'restored'


def derive_file_status(previous: Optional[Status], replica_statuses: Iterable[Status],
                       event: Optional[str] = None) -> Status:
    """Compute a file's status from its replicas.

    Args:
        previous: Status before this scan (None for a new file)
        replica_statuses: Statuses of all the file's replicas
        event: ``'trashed'`` when a replica moved from active to the trash
            during this scan, ``'restored'`` when one came back out of it

    Returns:
        New file status
    """
    live = [status for status in replica_statuses if status != Status.DELETED]
    if not live:
        return Status.DELETED
    if Status.ACTIVE not in live:
        return Status.SOFT_DELETED
    if event == RESTORED:
        return Status.ACTIVE
    if event == TRASHED:
        return Status.SOFT_DELETED
    if previous in (None, Status.DELETED):
        return Status.ACTIVE
    return previous


def refresh_file_status(store: MetadataStore, file_id: int, event: Optional[str] = None) -> Optional[File]:
    """Recompute and persist a file's status from its replicas."""
    file = store.get_file(file_id)
    if file is None:
        return None
    statuses = [replica.status for replica in store.get_replicas_for_file(file_id)]
    status = derive_file_status(file.status, statuses, event)
    if status != file.status:
        logger.debug(f"File {file.path} status {file.status.value} -> {status.value}")
        file.status = status
        store.upsert_file(file)
    return file


@dataclass
class ScanResult:
    """Counters of one account scan."""

    account_key: tuple
    folders: int = 0
    replicas: int = 0
    hashed: int = 0
    files_created: int = 0
    soft_deleted: int = 0
    deleted: int = 0

    def __str__(self) -> str:
        return (
            f"{self.folders} folders, {self.replicas} files ({self.hashed} hashed locally), "
            f"{self.files_created} new, {self.soft_deleted} soft-deleted, {self.deleted} deleted"
        )


class MetadataScanner:
    """Scans one account's sync root into the metadata store."""

    def __init__(self, store: MetadataStore, client: CloudClient):
        self.store = store
        self.client = client
        self.log = account_logger(logger, client.provider, client.account_id)

    @property
    def provider(self) -> str:
        return self.client.provider

    @property
    def account_id(self) -> str:
        return self.client.account_id

    def scan(self) -> ScanResult:
        """List the account and apply the result in one transaction.

        Raises:
            SyncRootNotFoundError: If the account has no sync root
            AmbiguousSyncRootError: If the account has several sync roots
        """
        result = ScanResult(self.client.account_key)
        with self.store.scan_marker(self.client.account_key):
            root_id = self.client.pre_flight_check()
            self.log.info("Scanning sync root")

            folders, items, trash_ids = self._list_tree(root_id)
            hashed_items = []
            for item in items:
                hashed = self._with_hash(item, result)
                if hashed is not None:
                    hashed_items.append(hashed)

            with self.store.transaction():
                self._apply(folders, hashed_items, trash_ids, result)

        self.log.info(f"Scan complete: {result}")
        return result

    def _folder(self, folder: Folder, path: str, parent_id: Optional[str]) -> Folder:
        folder.path = path
        folder.provider = self.provider
        folder.owner_account_id = self.account_id
        folder.parent_folder_id = parent_id
        return folder

    def _list_tree(self, root_id: str) -> Tuple[List[Folder], List[Replica], Set[str]]:
        folders = [Folder(id=root_id, name=SYNC_ROOT_NAME, path='/',
                          provider=self.provider, owner_account_id=self.account_id)]
        items: List[Replica] = []
        trash_ids: Set[str] = set()

        pending = [(root_id, '/')]
        while pending:
            folder_id, path = pending.pop()
            for folder in self.client.list_folders(folder_id):
                if path == '/' and folder.name == AUX_FOLDER_NAME:
                    folders.append(self._folder(folder, AUX_PATH, folder_id))
                    trash_ids |= self._list_trash(folder, folders)
                    continue
                sub_path = join_path(path, folder.name)
                folders.append(self._folder(folder, sub_path, folder_id))
                pending.append((folder.id, sub_path))

            items.extend(self._group_fragments(self.client.list_files(folder_id), path, folder_id))

        return folders, items, trash_ids

    def _list_trash(self, aux_folder: Folder, folders: List[Folder]) -> Set[str]:
        """Native IDs of everything in the soft-deleted folder."""
        trash_ids = set()
        for folder in self.client.list_folders(aux_folder.id):
            if folder.name != SOFT_DELETED_FOLDER_NAME:
                continue
            folders.append(self._folder(folder, TRASH_PATH, aux_folder.id))
            trash_ids |= {replica.native_id for replica in self.client.list_files(folder.id)}
        return trash_ids

    def _group_fragments(self, listed: List[Replica], path: str, folder_id: str) -> List[Replica]:
        """Turn fragment objects into one fragmented replica per original file."""
        items = []
        groups: Dict[Tuple[str, int], List[Tuple[int, Replica]]] = defaultdict(list)

        for replica in listed:
            parsed = parse_fragment_name(replica.name)
            if parsed:
                name, number, total = parsed
                groups[(name, total)].append((number, replica))
                continue
            replica.path = join_path(path, replica.name)
            replica.parent_folder_id = folder_id
            items.append(replica)

        for (name, total), parts in groups.items():
            parts.sort(key=lambda part: part[0])
            numbers = [number for number, _ in parts]
            if numbers != list(range(1, total + 1)):
                self.log.warning(f"Ignoring incomplete fragment set for {join_path(path, name)}: {numbers}")
                continue
            first = parts[0][1]
            mod_times = [part.mod_time for _, part in parts if part.mod_time]
            items.append(Replica(
                name=name,
                size=sum(part.size for _, part in parts),
                native_id=first.native_id,
                provider=self.provider,
                account_id=self.account_id,
                path=join_path(path, name),
                mod_time=max(mod_times) if mod_times else None,
                fragmented=True,
                parent_folder_id=folder_id,
                fragments=[
                    ReplicaFragment(
                        fragment_number=number,
                        fragments_total=total,
                        size=part.size,
                        native_fragment_id=part.native_id,
                    )
                    for number, part in parts
                ],
            ))
        return items

    def _with_hash(self, item: Replica, result: ScanResult) -> Optional[Replica]:
        """Fill in a content hash, streaming the content when the provider has none."""
        if item.native_hash:
            return item

        existing = self.store.get_replica(self.provider, self.account_id, item.native_id)
        if (existing and existing.native_hash and existing.size == item.size
                and (item.fragmented or existing.mod_time == item.mod_time)):
            item.native_hash = existing.native_hash
            return item

        if item.fragmented:
            reader = ConcatReader([
                (lambda native_id=fragment.native_fragment_id: self.client.download_file(native_id))
                for fragment in item.fragments
            ])
        else:
            reader = None
        try:
            if reader is None:
                reader = self.client.download_file(item.native_id)
            item.native_hash = sha256_stream(reader)
        except NotFoundError:
            self.log.warning(f"{item.path} disappeared while hashing, skipping")
            return None
        finally:
            close = getattr(reader, 'close', None)
            if close:
                close()

        result.hashed += 1
        return item

    def _hash_compatible(self, file: File, item: Replica) -> bool:
        return all(
            hashes_compatible(replica.native_hash, item.native_hash)
            for replica in self.store.get_replicas_for_file(file.id)
            if replica.status != Status.DELETED
        )

    def _link(self, item: Replica, existing: Optional[Replica], result: ScanResult) -> File:
        """Find or create the file a replica belongs to."""
        if existing and existing.file_id is not None and existing.calculated_id == item.calculated_id:
            file = self.store.get_file(existing.file_id)
            if file is not None:
                return file

        candidates = [
            file for file in self.store.get_files_by_path(item.path, include_deleted=True)
            if file.calculated_id == item.calculated_id and self._hash_compatible(file, item)
        ]
        candidates.sort(key=lambda file: (file.status == Status.DELETED, file.id))
        if candidates:
            return candidates[0]

        result.files_created += 1
        return self.store.upsert_file(File(
            path=item.path,
            name=item.name,
            size=item.size,
            calculated_id=item.calculated_id,
            mod_time=item.mod_time,
            status=Status.ACTIVE,
        ))

    def _store_fragments(self, item: Replica) -> None:
        def signature(fragments):
            return [
                (f.fragment_number, f.fragments_total, f.size, f.native_fragment_id)
                for f in fragments
            ]

        if signature(self.store.get_fragments(item.id)) == signature(item.fragments):
            return
        self.store.delete_fragments(item.id)
        for fragment in item.fragments:
            fragment.replica_id = item.id
            self.store.upsert_fragment(fragment)

    def _apply(self, folders: List[Folder], items: List[Replica], trash_ids: Set[str],
               result: ScanResult) -> None:
        for folder in folders:
            self.store.upsert_folder(folder)
        self.store.delete_folders(self.provider, self.account_id, [folder.id for folder in folders])
        result.folders = len(folders)

        touched: Set[int] = set()
        events: Dict[int, str] = {}
        observed: Set[str] = set()

        for item in items:
            observed.add(item.native_id)
            existing = self.store.get_replica(self.provider, self.account_id, item.native_id)
            item.provider = self.provider
            item.account_id = self.account_id
            item.calculated_id = calculated_id(item.name, item.size)

            file = self._link(item, existing, result)
            item.file_id = file.id
            item.status = Status.ACTIVE
            self.store.upsert_replica(item)
            if item.fragmented or (existing and existing.fragmented):
                self._store_fragments(item)

            touched.add(file.id)
            if existing and existing.file_id is not None and existing.file_id != file.id:
                touched.add(existing.file_id)
            if existing and existing.status == Status.SOFT_DELETED and existing.file_id == file.id:
                events[file.id] = RESTORED
            result.replicas += 1

        for replica in self.store.get_replicas_by_account(self.provider, self.account_id):
            if replica.native_id in observed or replica.status == Status.DELETED:
                continue
            status = Status.SOFT_DELETED if replica.native_id in trash_ids else Status.DELETED
            if status == replica.status:
                continue
            if replica.file_id is not None:
                if replica.status == Status.ACTIVE and status == Status.SOFT_DELETED:
                    events.setdefault(replica.file_id, TRASHED)
                touched.add(replica.file_id)
            self.store.mark_missing(replica, status)
            if status == Status.SOFT_DELETED:
                result.soft_deleted += 1
            else:
                result.deleted += 1

        for file_id in sorted(touched):
            refresh_file_status(self.store, file_id, events.get(file_id))


def scan_accounts(context: SyncContext, accounts: List[Account], report: BatchReport) -> List[ScanResult]:
    """Scan several accounts in parallel; failures are per account.

    Accounts that fail are added to ``context.unavailable`` so later steps
    skip them.
    """
    results = []
    keys = [account.key for account in accounts if account.key in context.clients]
    for account in accounts:
        if account.key not in context.clients:
            report.error(str(account), CloudSyncError("no client available"))
            context.unavailable.add(account.key)

    if not keys:
        return results

    with ThreadPoolExecutor(max_workers=context.max_workers) as executor:
        futures = {
            executor.submit(MetadataScanner(context.store, context.client(key)).scan): key
            for key in keys
        }
        for future in as_completed(futures):
            key = futures[future]
            try:
                results.append(future.result())
                context.unavailable.discard(key)
            except CloudSyncError as e:
                context.unavailable.add(key)
                report.error(f"{key[0]}/{key[1]}", e)

    results.sort(key=lambda scan: scan.account_key)
    return results
