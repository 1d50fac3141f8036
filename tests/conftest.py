"""Shared fixtures: an in-memory cloud drive and a metadata store."""

import hashlib
import io
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from cdsync.backends.sqlite_backend import SqliteMetadataStore
from cdsync.clients.base import Capabilities, CloudClient
from cdsync.context import SyncContext
from cdsync.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    SyncRootNotFoundError,
)
from cdsync.folders import TRASH_PATH
from cdsync.models import SYNC_ROOT_NAME, Account, Folder, OwnershipTransferResult, Quota, Replica
from cdsync.path_utils import path_key, path_parts

MUTATING = (
    'upload_file', 'delete_file', 'delete_folder', 'move_file',
    'create_folder', 'share_folder', 'transfer_ownership',
)

_ids = itertools.count(1)
_ticks = itertools.count(1)
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCloudClient(CloudClient):
    """In-memory drive of one account.

    Objects keep their native ID for life, including across ownership
    transfers to a peer. The test helpers (``add_file``, ``trash``,
    ``remove``...) edit the drive directly, like a person would, and are
    not recorded in ``calls``.
    """

    def __init__(self, provider, account_id, is_main=False, max_object_size=None,
                 native_hash=True, ownership=None, total=10 ** 9, used=0, deny_delete=False):
        super().__init__(account_id, Capabilities(
            ownership_transfer=ownership is not None,
            max_object_size=max_object_size,
        ))
        self.provider = provider
        self.is_main = is_main
        self.with_native_hash = native_hash
        self.ownership = ownership
        self.total = total
        self.base_used = used
        self.deny_delete = deny_delete
        self.has_root = True
        self.identity = account_id
        self.calls = []
        self.peers = {}
        self.root_id = self._new_id()
        self.folders = {self.root_id: {'name': SYNC_ROOT_NAME, 'parent': None}}
        self.objects = {}
        # Items next to the sync root at the top of the drive
        self.drive_items = {}

    def _new_id(self):
        return f"{self.account_id}#{next(_ids)}"

    @property
    def mutations(self):
        return [call for call in self.calls if call[0] in MUTATING]

    def account(self):
        return Account(self.provider, self.account_id, is_main=self.is_main)

    # Tree helpers

    def folder_path(self, folder_id):
        parts = []
        while self.folders[folder_id]['parent'] is not None:
            parts.append(self.folders[folder_id]['name'])
            folder_id = self.folders[folder_id]['parent']
        return '/' + '/'.join(reversed(parts))

    def ensure_path(self, path):
        folder_id = self.root_id
        for name in path_parts(path):
            child = self._child_folder(folder_id, name)
            if child is None:
                child = self._new_id()
                self.folders[child] = {'name': name, 'parent': folder_id}
            folder_id = child
        return folder_id

    def _child_folder(self, parent_id, name):
        for folder_id, folder in self.folders.items():
            if folder['parent'] == parent_id and folder['name'].lower() == name.lower():
                return folder_id
        return None

    def _name_taken(self, folder_id, name):
        return any(
            obj['parent'] == folder_id and obj['name'].lower() == name.lower()
            for obj in self.objects.values()
        ) or self._child_folder(folder_id, name) is not None

    def object_path(self, native_id):
        obj = self.objects[native_id]
        parent = self.folder_path(obj['parent'])
        return parent.rstrip('/') + '/' + obj['name']

    def paths(self):
        return sorted(self.object_path(native_id) for native_id in self.objects)

    def find(self, path):
        for native_id in self.objects:
            if path_key(self.object_path(native_id)) == path_key(path):
                return native_id
        return None

    def content(self, path):
        return self.objects[self.find(path)]['content']

    def add_file(self, path, content):
        parts = path_parts(path)
        native_id = self._new_id()
        self.objects[native_id] = {
            'name': parts[-1],
            'parent': self.ensure_path('/'.join(parts[:-1])),
            'content': content,
            'mod_time': BASE_TIME + timedelta(minutes=next(_ticks)),
        }
        return native_id

    def trash(self, path):
        native_id = self.find(path)
        self.objects[native_id]['parent'] = self.ensure_path(TRASH_PATH)
        return native_id

    def untrash(self, name, folder='/'):
        native_id = self.find(f"{TRASH_PATH}/{name}")
        self.objects[native_id]['parent'] = self.ensure_path(folder)
        return native_id

    def remove(self, path):
        del self.objects[self.find(path)]

    def add_to_drive_root(self, name, folder=False):
        native_id = self._new_id()
        self.drive_items[native_id] = {'name': name, 'folder': folder}
        return native_id

    def _hash(self, content):
        if not self.with_native_hash:
            return None
        return f"md5:{hashlib.md5(content).hexdigest()}"

    def _replica(self, native_id):
        obj = self.objects[native_id]
        return Replica(
            name=obj['name'],
            size=len(obj['content']),
            native_id=native_id,
            provider=self.provider,
            account_id=self.account_id,
            native_hash=self._hash(obj['content']),
            mod_time=obj['mod_time'],
            parent_folder_id=obj['parent'],
        )

    # CloudClient

    def pre_flight_check(self):
        if not self.has_root:
            raise SyncRootNotFoundError(f"No sync root for {self.account_id}")
        return self.root_id

    def get_sync_folder_id(self):
        return self.pre_flight_check()

    def list_folders(self, parent_id):
        if parent_id not in self.folders:
            raise NotFoundError(f"No folder {parent_id}")
        return [
            Folder(id=folder_id, name=folder['name'], parent_folder_id=parent_id)
            for folder_id, folder in self.folders.items()
            if folder['parent'] == parent_id
        ]

    def list_files(self, folder_id):
        if folder_id not in self.folders:
            raise NotFoundError(f"No folder {folder_id}")
        return [
            self._replica(native_id)
            for native_id, obj in self.objects.items()
            if obj['parent'] == folder_id
        ]

    def upload_file(self, folder_id, name, reader, size):
        self.calls.append(('upload_file', folder_id, name, size))
        data = reader.read()
        if folder_id not in self.folders:
            raise NotFoundError(f"No folder {folder_id}")
        max_size = self.capabilities.max_object_size
        if max_size is not None and size > max_size:
            raise InvalidArgumentError(f"{name} is larger than {max_size} bytes")
        if len(data) != size:
            raise InvalidArgumentError(f"{name}: expected {size} bytes, got {len(data)}")
        if self._name_taken(folder_id, name):
            raise ConflictError(f"{name} already exists")
        native_id = self._new_id()
        self.objects[native_id] = {
            'name': name,
            'parent': folder_id,
            'content': data,
            'mod_time': BASE_TIME + timedelta(minutes=next(_ticks)),
        }
        return self._replica(native_id)

    def download_file(self, native_id):
        self.calls.append(('download_file', native_id))
        if native_id not in self.objects:
            raise NotFoundError(f"No object {native_id}")
        return io.BytesIO(self.objects[native_id]['content'])

    def delete_file(self, native_id):
        self.calls.append(('delete_file', native_id))
        if self.deny_delete:
            raise PermissionDeniedError(f"Deleting {native_id} is not permitted")
        if native_id in self.drive_items and not self.drive_items[native_id]['folder']:
            del self.drive_items[native_id]
            return
        if native_id not in self.objects:
            raise NotFoundError(f"No object {native_id}")
        del self.objects[native_id]

    def delete_folder(self, folder_id):
        self.calls.append(('delete_folder', folder_id))
        if self.deny_delete:
            raise PermissionDeniedError(f"Deleting {folder_id} is not permitted")
        if folder_id not in self.drive_items or not self.drive_items[folder_id]['folder']:
            raise NotFoundError(f"No folder {folder_id}")
        del self.drive_items[folder_id]

    def list_drive_root(self):
        drive_root = f"{self.account_id}#drive"
        folders = [Folder(id=self.root_id, name=SYNC_ROOT_NAME, parent_folder_id=drive_root)]
        files = []
        for native_id, item in self.drive_items.items():
            if item['folder']:
                folders.append(Folder(id=native_id, name=item['name'], parent_folder_id=drive_root))
            else:
                files.append(Replica(name=item['name'], size=0, native_id=native_id,
                                     provider=self.provider, account_id=self.account_id))
        return folders, files

    def move_file(self, native_id, target_folder_id):
        self.calls.append(('move_file', native_id, target_folder_id))
        if native_id not in self.objects:
            raise NotFoundError(f"No object {native_id}")
        if self._name_taken(target_folder_id, self.objects[native_id]['name']):
            raise ConflictError(f"{self.objects[native_id]['name']} already exists")
        self.objects[native_id]['parent'] = target_folder_id

    def create_folder(self, parent_id, name):
        self.calls.append(('create_folder', parent_id, name))
        folder_id = self._new_id()
        self.folders[folder_id] = {'name': name, 'parent': parent_id}
        return Folder(id=folder_id, name=name, parent_folder_id=parent_id)

    def share_folder(self, folder_id, account_id, role='writer'):
        self.calls.append(('share_folder', folder_id, account_id, role))

    def get_quota(self):
        used = self.base_used + sum(len(obj['content']) for obj in self.objects.values())
        return Quota(total=self.total, used=used)

    def transfer_ownership(self, native_id, target_account_id):
        self.calls.append(('transfer_ownership', native_id, target_account_id))
        if self.ownership is None:
            return super().transfer_ownership(native_id, target_account_id)
        if self.ownership == 'pending':
            return OwnershipTransferResult.PENDING_CONSENT

        target = self.peers[target_account_id]
        obj = self.objects.pop(native_id)
        obj['parent'] = target.ensure_path(self.folder_path(obj['parent']))
        target.objects[native_id] = obj
        return OwnershipTransferResult.TRANSFERRED

    def get_user_identity(self):
        return self.identity

    @staticmethod
    def link(*clients):
        """Let fake clients of one provider hand objects to each other."""
        for client in clients:
            client.peers = {other.account_id: other for other in clients if other is not client}


@pytest.fixture
def store():
    metadata_store = SqliteMetadataStore(':memory:')
    yield metadata_store
    metadata_store.close()


@pytest.fixture
def make_context(store):
    """Build a SyncContext over fake clients."""
    def build(*clients, dry_run=False):
        return SyncContext(
            store=store,
            accounts=[client.account() for client in clients],
            clients={client.account_key: client for client in clients},
            dry_run=dry_run,
            max_workers=2,
        )
    return build


@pytest.fixture
def fake():
    return FakeCloudClient
