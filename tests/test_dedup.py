"""Tests for duplicate detection and removal."""

from cdsync.dedup import DeduplicationEngine, oldest_wins
from cdsync.folders import TRASH_PATH
from cdsync.models import Status
from cdsync.report import BatchReport
from cdsync.scanner import scan_accounts


def _scanned(make_context, *clients, dry_run=False):
    context = make_context(*clients, dry_run=dry_run)
    scan_accounts(context, context.accounts, BatchReport('get-metadata'))
    return context


def test_duplicates_found_within_provider(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    google.add_file('/other/a.txt', b'diff')
    context = _scanned(make_context, google)

    groups = DeduplicationEngine(context).find_duplicates()

    assert len(groups) == 1
    group = groups[0]
    assert group.calculated_id == 'a.txt-4'
    assert [f.path for f in group.files] == ['/a.txt', '/copy/a.txt']
    assert len(group.replicas) == 2


def test_same_content_on_two_providers_is_not_a_duplicate(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'same')
    microsoft.add_file('/a.txt', b'same')
    context = _scanned(make_context, google, microsoft)

    assert DeduplicationEngine(context).find_duplicates() == []


def test_unsafe_removal_keeps_oldest(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    microsoft = fake('Microsoft', 'me@outlook.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    microsoft.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google, microsoft)
    doomed = store.get_file_by_path('/copy/a.txt')

    report = DeduplicationEngine(context, oldest_wins).remove_duplicates('remove-duplicates-unsafe')

    assert report.ok
    assert google.paths() == ['/a.txt']
    # Every replica of a deleted file goes, on all providers
    assert microsoft.paths() == []
    assert store.get_file(doomed.id) is None
    assert store.get_file_by_path('/a.txt').status == Status.ACTIVE
    assert DeduplicationEngine(context).find_duplicates() == []


def test_extra_copy_of_kept_file_removed_keeping_main(store, fake, make_context):
    main = fake('Google', 'me@gmail.com', is_main=True)
    backup = fake('Google', 'backup@gmail.com')
    backup.add_file('/a.txt', b'same')
    main.add_file('/a.txt', b'same')
    context = _scanned(make_context, main, backup)

    DeduplicationEngine(context, oldest_wins).remove_duplicates()

    assert main.paths() == ['/a.txt']
    assert backup.paths() == []
    assert len(store.get_files()) == 1


def test_interactive_chooser_decides(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google)
    seen = []

    def keep_newest(group):
        seen.append(group)
        return [group.files[0].id]

    DeduplicationEngine(context, keep_newest).remove_duplicates()

    assert len(seen) == 1
    assert google.paths() == ['/copy/a.txt']


def test_chooser_keeping_everything_deletes_nothing(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google)

    report = DeduplicationEngine(context, lambda group: []).remove_duplicates()

    assert google.mutations == []
    assert report.actions == []


def test_delete_not_permitted_moves_to_trash(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True, deny_delete=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google)
    doomed = store.get_file_by_path('/copy/a.txt')

    report = DeduplicationEngine(context, oldest_wins).remove_duplicates()

    assert report.ok
    assert google.find(f"{TRASH_PATH}/a.txt") is not None
    assert google.find('/copy/a.txt') is None
    assert store.get_file(doomed.id) is None


def test_already_gone_replica_marked_deleted(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google)
    doomed = store.get_file_by_path('/copy/a.txt')
    google.remove('/copy/a.txt')

    report = DeduplicationEngine(context, oldest_wins).remove_duplicates()

    assert report.ok
    assert store.get_file(doomed.id) is None


def test_dry_run_deletes_nothing(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google, dry_run=True)

    report = DeduplicationEngine(context, oldest_wins).remove_duplicates()

    assert google.mutations == []
    assert len(report.actions) == 1
    assert len(store.get_files(Status.ACTIVE)) == 2


def test_provider_being_scanned_is_skipped(store, fake, make_context):
    google = fake('Google', 'me@gmail.com', is_main=True)
    google.add_file('/a.txt', b'same')
    google.add_file('/copy/a.txt', b'same')
    context = _scanned(make_context, google)
    engine = DeduplicationEngine(context)
    engine.SCAN_WAIT_SECONDS = 0
    report = BatchReport('check-for-duplicates')

    with store.scan_marker(google.account_key):
        groups = engine.find_duplicates(report)

    assert groups == []
    assert len(report.skipped) == 1
