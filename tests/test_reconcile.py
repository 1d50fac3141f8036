"""Tests for cross-provider reconciliation (sync-providers)."""

import hashlib
import os

from cdsync.errors import ServiceUnavailableError
from cdsync.folders import TRASH_PATH
from cdsync.models import Status
from cdsync.reconcile import ReconciliationEngine
from cdsync.report import BatchReport
from cdsync.scanner import scan_accounts


def _refresh(context):
    report = BatchReport('get-metadata')
    scan_accounts(context, context.accounts, report)
    assert report.errors == []


def _sync(context):
    _refresh(context)
    return ReconciliationEngine(context).run()


def _uploads(*clients):
    return [call for client in clients for call in client.calls if call[0] == 'upload_file']


def test_missing_file_copied_to_other_provider(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True, native_hash=False)
    content = os.urandom(500)
    google.add_file('/report.txt', content)
    context = make_context(google, microsoft)

    report = _sync(context)

    assert report.ok
    assert microsoft.content('/report.txt') == content
    file = store.get_file_by_path('/report.txt')
    replica = store.get_replicas_by_path('Microsoft', '/report.txt', Status.ACTIVE)[0]
    assert replica.file_id == file.id
    assert replica.size == 500
    assert replica.native_hash == f"sha256:{hashlib.sha256(content).hexdigest()}"
    assert len(store.get_files()) == 1


def test_second_pass_is_a_no_op(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    google.add_file('/docs/b.txt', b'bbb')
    microsoft.add_file('/c.txt', b'ccc')
    context = make_context(google, microsoft)

    _sync(context)
    mutations = len(google.mutations) + len(microsoft.mutations)
    report = _sync(context)

    assert report.actions == []
    assert len(google.mutations) + len(microsoft.mutations) == mutations
    assert google.paths() == microsoft.paths() == ['/a.txt', '/c.txt', '/docs/b.txt']


def test_file_on_backup_satisfies_provider(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    microsoft_backup = fake('Microsoft', 'backup@outlook.com')
    google.add_file('/a.txt', b'aaa')
    microsoft_backup.add_file('/a.txt', b'aaa')
    context = make_context(google, microsoft, microsoft_backup)

    report = _sync(context)

    assert report.actions == []
    assert microsoft.paths() == []


def test_provider_without_main_is_not_mirrored(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    orphan_backup = fake('Microsoft', 'backup@outlook.com')
    google.add_file('/a.txt', b'aaa')
    context = make_context(google, orphan_backup)

    _sync(context)

    assert orphan_backup.mutations == []


def test_name_collision_renamed_never_overwritten(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True, native_hash=False)
    google.add_file('/report.txt', b'g' * 500)
    microsoft.add_file('/report.txt', b'm' * 600)
    context = make_context(google, microsoft)

    _sync(context)

    assert microsoft.content('/report.txt') == b'm' * 600
    assert microsoft.content('/report_conflict_1.txt') == b'g' * 500
    assert google.content('/report.txt') == b'g' * 500
    assert google.content('/report_conflict_1.txt') == b'm' * 600

    renamed = store.get_replicas_by_path('Microsoft', '/report_conflict_1.txt')[0]
    original = store.get_replicas_by_path('Google', '/report.txt')[0]
    assert renamed.file_id == original.file_id
    assert len(store.get_files()) == 2

    report = _sync(context)
    assert report.actions == []


def test_conflict_counter_skips_taken_names(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'1')
    microsoft.add_file('/a.txt', b'22')
    microsoft.add_file('/a_conflict_1.txt', b'333')
    context = make_context(google, microsoft)

    _sync(context)

    assert microsoft.content('/a_conflict_2.txt') == b'1'


def test_soft_delete_propagates_to_other_providers(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    microsoft.add_file('/a.txt', b'aaa')
    context = make_context(google, microsoft)
    _sync(context)

    google.trash('/a.txt')
    report = _sync(context)

    assert report.ok
    assert microsoft.find('/a.txt') is None
    assert microsoft.find(f"{TRASH_PATH}/a.txt") is not None
    assert _uploads(google, microsoft) == []
    assert store.get_file_by_path('/a.txt').status == Status.SOFT_DELETED

    report = _sync(context)
    assert report.actions == []


def test_restored_file_comes_back_from_trash(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    native_id = microsoft.add_file('/a.txt', b'aaa')
    context = make_context(google, microsoft)
    _sync(context)
    google.trash('/a.txt')
    _sync(context)

    google.untrash('a.txt')
    report = _sync(context)

    assert report.ok
    assert microsoft.find('/a.txt') == native_id
    assert _uploads(google, microsoft) == []
    assert store.get_file_by_path('/a.txt').status == Status.ACTIVE
    assert {r.status for r in store.get_replicas_for_file(store.get_file_by_path('/a.txt').id)} == {Status.ACTIVE}


def test_hard_deleted_copy_is_uploaded_again(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    context = make_context(google, microsoft)
    _sync(context)

    microsoft.remove('/a.txt')
    _sync(context)

    assert microsoft.content('/a.txt') == b'aaa'
    assert len(store.get_files()) == 1


def test_oversized_file_split_and_restored_from_fragments(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    telegram = fake('Telegram', '+100', is_main=True, max_object_size=100, native_hash=False)
    content = os.urandom(250)
    google.add_file('/video/big.bin', content)
    context = make_context(google, telegram)

    _sync(context)

    assert telegram.paths() == [
        '/video/big.bin.cdsync-part-001-of-003',
        '/video/big.bin.cdsync-part-002-of-003',
        '/video/big.bin.cdsync-part-003-of-003',
    ]
    replica = store.get_replicas_by_account('Telegram', '+100')[0]
    assert replica.fragmented
    assert replica.file_id == store.get_file_by_path('/video/big.bin').id

    google.remove('/video/big.bin')
    report = _sync(context)

    assert report.ok
    assert google.content('/video/big.bin') == content
    assert len(store.get_files()) == 1


def test_corrupt_fragment_source_reported(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    telegram = fake('Telegram', '+100', is_main=True, max_object_size=100)
    google.add_file('/big.bin', os.urandom(250))
    context = make_context(google, telegram)
    _sync(context)

    google.remove('/big.bin')
    _refresh(context)
    # A fragment vanishes between the scan and the copy
    del telegram.objects[telegram.find('/big.bin.cdsync-part-002-of-003')]
    report = ReconciliationEngine(context).run()

    assert not report.ok
    assert google.find('/big.bin') is None


def test_failed_fragmented_copy_leaves_no_parts(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    telegram = fake('Telegram', '+100', is_main=True, max_object_size=100)
    box = fake('Box', 'me@box.com', is_main=True, max_object_size=100)
    content = os.urandom(250)
    google.add_file('/big.bin', content)
    _sync(make_context(google, telegram))

    google.remove('/big.bin')
    context = make_context(google, telegram, box)
    _refresh(context)
    del telegram.objects[telegram.find('/big.bin.cdsync-part-003-of-003')]
    report = ReconciliationEngine(context).run()

    assert not report.ok
    assert box.paths() == []
    assert [call[0] for call in box.mutations].count('delete_file') == 2

    google.add_file('/big.bin', content)
    _sync(context)

    assert box.paths() == [
        '/big.bin.cdsync-part-001-of-003',
        '/big.bin.cdsync-part-002-of-003',
        '/big.bin.cdsync-part-003-of-003',
    ]
    assert b''.join(box.content(path) for path in box.paths()) == content


def test_unavailable_source_falls_through_to_next(store, fake, make_context, monkeypatch):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    box = fake('Box', 'me@box.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    microsoft.add_file('/a.txt', b'aaa')

    def unavailable(native_id):
        raise ServiceUnavailableError('try again later')

    monkeypatch.setattr(google, 'download_file', unavailable)
    report = _sync(make_context(google, microsoft, box))

    assert box.content('/a.txt') == b'aaa'
    assert len(report.errors) == 1
    assert report.failures == []
    assert any('from Microsoft' in action for action in report.actions)


def test_copy_missing_after_rescan_is_a_failure(store, fake, make_context, monkeypatch):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'aaa')
    upload = microsoft.upload_file

    def upload_and_lose(folder_id, name, reader, size):
        uploaded = upload(folder_id, name, reader, size)
        del microsoft.objects[uploaded.native_id]
        return uploaded

    monkeypatch.setattr(microsoft, 'upload_file', upload_and_lose)
    report = _sync(make_context(google, microsoft))

    assert len(report.actions) == 1
    assert any('/a.txt' in failure and 'Microsoft' in failure for failure in report.failures)
    assert store.get_replicas_by_path('Microsoft', '/a.txt', Status.ACTIVE) == []


def test_unavailable_account_is_skipped(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    microsoft.has_root = False
    google.add_file('/a.txt', b'aaa')
    context = make_context(google, microsoft)

    report_scan = BatchReport('get-metadata')
    scan_accounts(context, context.accounts, report_scan)
    report = ReconciliationEngine(context).run()

    assert microsoft.mutations == []
    assert len(report.skipped) == 1


def test_dry_run_changes_nothing(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    telegram = fake('Telegram', '+100', is_main=True, max_object_size=100)
    google.add_file('/new/report.txt', b'r' * 500)
    google.add_file('/gone.txt', b'g')
    microsoft.add_file('/gone.txt', b'g')
    telegram.add_file('/gone.txt', b'g')
    context = make_context(google, microsoft, telegram)
    _sync(context)
    before = [list(client.mutations) for client in (google, microsoft, telegram)]
    google.trash('/gone.txt')
    google.add_file('/late.txt', b'late')

    dry_context = make_context(google, microsoft, telegram, dry_run=True)
    _refresh(dry_context)
    replicas_before = [
        (r.provider, r.native_id, r.status) for f in store.get_files() for r in store.get_replicas_for_file(f.id)
    ]
    report = ReconciliationEngine(dry_context).run()

    assert [list(client.mutations) for client in (google, microsoft, telegram)] == before
    assert any('late.txt' in action for action in report.actions)
    assert any('gone.txt' in action for action in report.actions)
    assert [
        (r.provider, r.native_id, r.status) for f in store.get_files() for r in store.get_replicas_for_file(f.id)
    ] == replicas_before


def test_no_main_account_is_a_failure(store, fake, make_context):
    context = make_context(fake('Google', 'backup@gmail.com'))
    report = ReconciliationEngine(context).run()
    assert report.failures
