"""Tests for the SQLite metadata store."""

import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cdsync.backends.sqlite_backend import SqliteMetadataStore
from cdsync.models import File, Folder, Replica, ReplicaFragment, Status, calculated_id


def _file(store, path, size=10, status=Status.ACTIVE):
    name = path.rsplit('/', 1)[-1]
    return store.upsert_file(File(
        path=path, name=name, size=size, calculated_id=calculated_id(name, size),
        mod_time=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc), status=status,
    ))


def _replica(store, file, account_id, native_id, provider='Google', native_hash='md5:aa',
             status=Status.ACTIVE):
    return store.upsert_replica(Replica(
        name=file.name, size=file.size, native_id=native_id, provider=provider,
        account_id=account_id, path=file.path, calculated_id=file.calculated_id,
        native_hash=native_hash, status=status, file_id=file.id,
    ))


def test_schema_version_recorded(store):
    assert store.get_metadata('schema_version') == '1'
    store.set_metadata('last_scan', 'now')
    assert store.get_metadata('last_scan') == 'now'


def test_file_round_trip(store):
    file = _file(store, 'Docs/Report.txt')
    loaded = store.get_file(file.id)

    assert loaded == file
    assert loaded.path == '/Docs/Report.txt'
    assert loaded.mod_time.tzinfo is not None
    assert store.get_file_by_path('/docs/report.TXT').id == file.id


def test_files_by_path_hides_deleted(store):
    _file(store, '/a.txt', status=Status.DELETED)
    live = _file(store, '/a.txt', size=20)

    assert [f.id for f in store.get_files_by_path('/a.txt')] == [live.id]
    assert len(store.get_files_by_path('/a.txt', include_deleted=True)) == 2
    assert [f.id for f in store.get_files(Status.ACTIVE)] == [live.id]


def test_replica_upsert_is_keyed_by_native_id(store):
    file = _file(store, '/a.txt')
    first = _replica(store, file, 'me@gmail.com', 'n1')
    again = _replica(store, file, 'me@gmail.com', 'n1', native_hash='md5:bb')

    assert first.id == again.id
    assert store.get_replica('Google', 'me@gmail.com', 'n1').native_hash == 'md5:bb'
    assert len(store.get_replicas_for_file(file.id)) == 1


def test_mark_missing_and_status_filters(store):
    file = _file(store, '/a.txt')
    replica = _replica(store, file, 'me@gmail.com', 'n1')
    store.mark_missing(replica, Status.SOFT_DELETED)

    assert store.get_replicas_for_file(file.id, Status.ACTIVE) == []
    assert store.get_replicas_by_account('Google', 'me@gmail.com', Status.SOFT_DELETED)[0].id == replica.id
    assert store.get_replicas_by_path('Google', '/A.TXT')[0].status == Status.SOFT_DELETED


def test_deleting_file_removes_replicas_and_fragments(store):
    file = _file(store, '/a.bin', size=20)
    replica = _replica(store, file, '+1', 'f1', provider='Telegram')
    store.upsert_fragment(ReplicaFragment(1, 2, 10, 'f1', replica_id=replica.id))
    store.upsert_fragment(ReplicaFragment(2, 2, 10, 'f2', replica_id=replica.id))

    store.delete_file(file.id)

    assert store.get_file(file.id) is None
    assert store.get_replica_by_id(replica.id) is None
    assert store.get_fragments(replica.id) == []


def test_fragments_ordered(store):
    file = _file(store, '/a.bin', size=30)
    replica = _replica(store, file, '+1', 'f1', provider='Telegram')
    for number in (3, 1, 2):
        store.upsert_fragment(ReplicaFragment(number, 3, 10, f"f{number}", replica_id=replica.id))

    assert [f.fragment_number for f in store.get_fragments(replica.id)] == [1, 2, 3]


def test_find_duplicate_groups(store):
    one = _file(store, '/a.txt')
    two = _file(store, '/copy/a.txt')
    three = _file(store, '/other/a.txt')
    _replica(store, one, 'me@gmail.com', 'n1')
    _replica(store, two, 'me@gmail.com', 'n2')
    _replica(store, three, 'me@gmail.com', 'n3', native_hash='md5:cc')
    # Same content on another provider is replication
    _replica(store, one, 'me@outlook.com', 'm1', provider='Microsoft')

    groups = store.find_duplicate_groups('Google')

    assert len(groups) == 1
    assert [r.native_id for r in groups[0]] == ['n1', 'n2']
    assert store.find_duplicate_groups('Microsoft') == []


def test_replicas_without_hash_never_grouped(store):
    one = _file(store, '/a.txt')
    two = _file(store, '/b/a.txt')
    _replica(store, one, 'me@gmail.com', 'n1', native_hash=None)
    _replica(store, two, 'me@gmail.com', 'n2', native_hash=None)

    assert store.find_duplicate_groups('Google') == []
    assert len(store.find_by_calculated_id('a.txt-10', 'Google')) == 2


def test_largest_files_exclusive(store):
    big = _file(store, '/big.bin', size=300)
    small = _file(store, '/small.bin', size=100)
    shared = _file(store, '/shared.bin', size=500)
    _replica(store, big, 'main@outlook.com', 'b', provider='Microsoft')
    _replica(store, small, 'main@outlook.com', 's', provider='Microsoft')
    _replica(store, shared, 'main@outlook.com', 'x1', provider='Microsoft')
    _replica(store, shared, 'backup@outlook.com', 'x2', provider='Microsoft')

    pairs = store.get_largest_files_exclusive('Microsoft', 'main@outlook.com')

    assert [(f.path, r.native_id) for f, r in pairs] == [('/big.bin', 'b'), ('/small.bin', 's')]


def test_folders(store):
    store.upsert_folder(Folder(id='root', name='synched-cloud-drives', path='/',
                               provider='Google', owner_account_id='me'))
    store.upsert_folder(Folder(id='d1', name='Docs', path='/Docs', provider='Google',
                               owner_account_id='me', parent_folder_id='root'))

    assert store.get_folder_by_path('Google', 'me', '/docs').id == 'd1'

    store.delete_folders('Google', 'me', keep_ids=['root'])
    assert [f.id for f in store.get_folders('Google', 'me')] == ['root']


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            _file(store, '/a.txt')
            with store.transaction():
                _file(store, '/b.txt')
            raise RuntimeError("scan interrupted")

    assert store.get_files() == []


def test_wait_for_scans_reports_busy_accounts(store):
    key = ('Google', 'me@gmail.com')
    with store.scan_marker(key):
        assert store.wait_for_scans([key, ('Google', 'other')], timeout=0) == [key]
    assert store.wait_for_scans([key], timeout=0) == []


def test_wait_for_scans_wakes_when_scan_ends(store):
    key = ('Google', 'me@gmail.com')
    started = threading.Event()
    finish = threading.Event()

    def scan():
        with store.scan_marker(key):
            started.set()
            finish.wait(5)

    worker = threading.Thread(target=scan)
    worker.start()
    started.wait(5)
    finish.set()
    assert store.wait_for_scans([key], timeout=5) == []
    worker.join()


def test_backup_to_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / 'metadata.db'
        source = SqliteMetadataStore(db_path)
        _file(source, '/a.txt')

        copy_path = Path(tmpdir) / 'copy.db'
        source.backup_to(copy_path)
        source.close()

        copy = SqliteMetadataStore(copy_path)
        assert [f.path for f in copy.get_files()] == ['/a.txt']
        copy.close()
