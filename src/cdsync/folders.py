"""Resolve logical folder paths to native folder IDs for one account."""

import logging
from typing import Optional

from .backends.base import MetadataStore
from .clients.base import CloudClient
from .logging_config import action_message
from .models import AUX_FOLDER_NAME, SOFT_DELETED_FOLDER_NAME, Folder
from .path_utils import join_path, normalize_path, path_key, path_parts

logger = logging.getLogger(__name__)

AUX_PATH = f"/{AUX_FOLDER_NAME}"
TRASH_PATH = f"{AUX_PATH}/{SOFT_DELETED_FOLDER_NAME}"


class FolderResolver:
    """Finds or creates folders below an account's sync root.

    Known folders come from the store (recorded by the scanner); missing
    ones are looked up remotely and created if absent. In dry-run nothing
    is created and a placeholder ID is returned instead.
    """

    def __init__(self, store: Optional[MetadataStore], client: CloudClient, dry_run: bool = False):
        self.store = store
        self.client = client
        self.dry_run = dry_run

    def _known(self, path: str) -> Optional[Folder]:
        if self.store is None:
            return None
        return self.store.get_folder_by_path(self.client.provider, self.client.account_id, path)

    def ensure_folder(self, path: str) -> str:
        """Return the native ID of a logical folder, creating it if needed.

        Args:
            path: Logical folder path (``/`` is the sync root)
        """
        path = normalize_path(path)
        known = self._known(path)
        if known:
            return known.id

        folder_id = self.client.get_sync_folder_id()
        current = '/'
        for name in path_parts(path):
            current = join_path(current, name)
            known = self._known(current)
            if known:
                folder_id = known.id
                continue
            if folder_id.startswith('dry-run:'):
                folder_id = f"dry-run:{current}"
                continue

            existing = next(
                (folder for folder in self.client.list_folders(folder_id)
                 if path_key(folder.name) == path_key(name)),
                None,
            )
            if existing is None:
                if self.dry_run:
                    logger.info(action_message(
                        f"Would create folder {current} on {self.client.provider}/{self.client.account_id}",
                        True,
                    ))
                    folder_id = f"dry-run:{current}"
                    continue
                existing = self.client.create_folder(folder_id, name)
                logger.info(f"Created folder {current} on {self.client.provider}/{self.client.account_id}")

            existing.path = current
            existing.provider = self.client.provider
            existing.owner_account_id = self.client.account_id
            existing.parent_folder_id = existing.parent_folder_id or folder_id
            if self.store is not None and not self.dry_run:
                self.store.upsert_folder(existing)
            folder_id = existing.id

        return folder_id

    def aux_folder_id(self) -> str:
        return self.ensure_folder(AUX_PATH)

    def trash_folder_id(self) -> str:
        """Native ID of the account's soft-deleted folder."""
        return self.ensure_folder(TRASH_PATH)
