"""Back up the metadata database to the main accounts' aux folder."""

import logging
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from .backends.sqlite_backend import SqliteMetadataStore
from .context import SyncContext
from .errors import CloudSyncError, ConfigError
from .folders import FolderResolver
from .logging_config import action_message
from .models import AUX_FOLDER_NAME, METADATA_FILE_NAME, Replica
from .report import BatchReport

logger = logging.getLogger(__name__)

BACKUP_PREFIX = 'metadata-'
BACKUP_SUFFIX = '.db'


def is_backup_name(name: str) -> bool:
    """True for backup snapshots, including the untimestamped legacy name."""
    return name == METADATA_FILE_NAME or (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX))


def backup_name(taken: Iterable[str] = (), now: Optional[datetime] = None) -> str:
    """Name for a new snapshot, ``metadata-<UTC timestamp>.db``.

    Timestamps sort lexically, so the newest snapshot has the largest name.
    """
    stamp = now or datetime.now(timezone.utc)
    taken = set(taken)
    while True:
        name = f"{BACKUP_PREFIX}{stamp:%Y%m%dT%H%M%S%f}Z{BACKUP_SUFFIX}"
        if name not in taken:
            return name
        stamp += timedelta(microseconds=1)


def _newest_first(items: Iterable[Replica]) -> List[Replica]:
    backups = [item for item in items if is_backup_name(item.name)]
    return sorted(backups, key=lambda item: (item.name != METADATA_FILE_NAME, item.name), reverse=True)


def backup_metadata(context: SyncContext, store: SqliteMetadataStore) -> BatchReport:
    """Upload a consistent copy of the database to every main account.

    The snapshot is uploaded under a new name; older snapshots in the aux
    folder are deleted only once the upload has succeeded.
    """
    report = BatchReport('backup-metadata')
    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot = Path(tmpdir) / METADATA_FILE_NAME
        store.backup_to(snapshot)
        size = snapshot.stat().st_size

        for provider in context.mirrored_providers:
            main = context.main_account(provider)
            if not context.is_available(main.key):
                report.skip(f"{main}: unavailable")
                continue
            client = context.client(main.key)
            message = f"Upload metadata snapshot ({size} bytes) to {main}"
            try:
                aux_id = FolderResolver(context.store, client, context.dry_run).aux_folder_id()
                logger.info(action_message(message, context.dry_run))
                if not context.dry_run:
                    previous = _newest_first(client.list_files(aux_id))
                    name = backup_name(item.name for item in previous)
                    with open(snapshot, 'rb') as f:
                        client.upload_file(aux_id, name, f, size)
                    logger.info(f"Uploaded {name} to {main}")
                    _delete_old(client, previous)
            except CloudSyncError as e:
                report.error(str(main), e)
                continue
            report.action(message)
    return report


def _delete_old(client, previous: List[Replica]) -> None:
    for item in previous:
        try:
            client.delete_file(item.native_id)
        except CloudSyncError as e:
            logger.warning(
                f"Could not delete old backup {item.name} from {client.provider}/{client.account_id}: {e}"
            )


def restore_metadata(context: SyncContext, db_path: Path, force: bool = False) -> BatchReport:
    """Download the newest database backup from the first main account that has one.

    Raises:
        ConfigError: If a local database exists and ``force`` is not set
    """
    report = BatchReport('restore-metadata')
    if db_path.exists() and not force:
        raise ConfigError(f"{db_path} already exists; use --force to overwrite it")

    for provider in context.mirrored_providers:
        main = context.main_account(provider)
        if not context.is_available(main.key):
            continue
        client = context.client(main.key)
        try:
            found = _find_backup(client)
            if found is None:
                logger.info(f"No metadata backup on {main}")
                continue
            message = f"Restore {found.name} from {main} to {db_path}"
            logger.info(action_message(message, context.dry_run))
            if not context.dry_run:
                _download(client, found.native_id, db_path)
            report.action(message)
            return report
        except CloudSyncError as e:
            report.error(str(main), e)

    report.failure("No metadata backup found on any main account")
    return report


def _find_backup(client) -> Optional[Replica]:
    aux = next(
        (folder for folder in client.list_folders(client.get_sync_folder_id())
         if folder.name == AUX_FOLDER_NAME),
        None,
    )
    if aux is None:
        return None
    backups = _newest_first(client.list_files(aux.id))
    return backups[0] if backups else None


def _download(client, native_id: str, db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    partial = db_path.with_suffix('.partial')
    reader = client.download_file(native_id)
    try:
        with open(partial, 'wb') as f:
            shutil.copyfileobj(reader, f)
    finally:
        close = getattr(reader, 'close', None)
        if close:
            close()
    partial.replace(db_path)
    db_path.chmod(0o600)
