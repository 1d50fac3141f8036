#!/usr/bin/env python3
"""Command-line utility for cdsync."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List

from cdsync.config import Config
from cdsync.dedup import DuplicateGroup
from cdsync.errors import CloudSyncError, ConfigError
from cdsync.logging_config import setup_logging
from cdsync.report import BatchReport
from cdsync.runner import TaskRunner

logger = logging.getLogger(__name__)


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 ** 3:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / 1024 ** 3:.2f} GB"


def _print_report(report: BatchReport) -> int:
    for line in report.summary_lines():
        print(line)
    if report.ok:
        print(f"✓ {report.command} finished")
    else:
        print(f"✗ {report.command} finished with problems")
    return report.exit_code


def _load_config(args) -> Config:
    return Config(Path(args.config_dir).expanduser() if args.config_dir else None)


def _runner(args, config: Config) -> TaskRunner:
    return TaskRunner(config, dry_run=args.safe)


def _print_groups(groups: List[DuplicateGroup]) -> None:
    if not groups:
        print("No duplicates found")
        return
    for index, group in enumerate(groups, 1):
        print(f"[{index}] {group.provider}: {group.calculated_id} ({group.native_hash})")
        for replica in group.replicas:
            print(f"      {replica.account_id:30s} {replica.path}  file #{replica.file_id}")


def prompt_chooser(group: DuplicateGroup) -> List[int]:
    """Ask which files of a duplicate group to delete."""
    print(f"\n{group.provider}: {group.calculated_id}")
    for file in group.files:
        copies = len(group.replicas_of(file.id))
        print(f"  #{file.id}  {file.path}  modified {file.mod_time}  ({copies} copies here)")
    answer = input("File ids to delete (space separated, empty to keep all): ").strip()
    chosen = []
    for token in answer.replace(',', ' ').split():
        token = token.lstrip('#')
        if token.isdigit():
            chosen.append(int(token))
        else:
            print(f"Ignoring '{token}'")
    return chosen


def cmd_get_metadata(args, runner: TaskRunner) -> int:
    return _print_report(runner.get_metadata())


def cmd_check_for_duplicates(args, runner: TaskRunner) -> int:
    groups, report = runner.check_for_duplicates()
    _print_groups(groups)
    return _print_report(report)


def cmd_remove_duplicates(args, runner: TaskRunner) -> int:
    return _print_report(runner.remove_duplicates(chooser=prompt_chooser))


def cmd_remove_duplicates_unsafe(args, runner: TaskRunner) -> int:
    return _print_report(runner.remove_duplicates(unsafe=True))


def cmd_sync_providers(args, runner: TaskRunner) -> int:
    return _print_report(runner.sync_providers())


def cmd_balance_storage(args, runner: TaskRunner) -> int:
    return _print_report(runner.balance_storage())


def cmd_free_main(args, runner: TaskRunner) -> int:
    return _print_report(runner.free_main(args.provider))


def cmd_share_with_main(args, runner: TaskRunner) -> int:
    return _print_report(runner.share_with_main())


def cmd_check_tokens(args, runner: TaskRunner) -> int:
    return _print_report(runner.check_tokens())


def cmd_quota(args, runner: TaskRunner) -> int:
    quotas, report = runner.quota()
    print(f"{'Account':45s} {'Used':>12s} {'Total':>12s} {'Free':>12s}  Usage")
    print("=" * 92)
    for (provider, account_id), quota in sorted(quotas.items()):
        print(
            f"{provider + '/' + account_id:45s} {_format_size(quota.used):>12s} "
            f"{_format_size(quota.total):>12s} {_format_size(quota.free):>12s}  {quota.usage_ratio:.1%}"
        )
    return _print_report(report)


def cmd_delete_unsynced_files(args, runner: TaskRunner) -> int:
    return _print_report(runner.delete_unsynced_files())


def cmd_sync(args, runner: TaskRunner) -> int:
    chooser = prompt_chooser if args.interactive else None
    return _print_report(runner.sync(free_main=args.free_main or [], chooser=chooser))


def cmd_backup_metadata(args, runner: TaskRunner) -> int:
    return _print_report(runner.backup_metadata())


def cmd_restore_metadata(args, runner: TaskRunner) -> int:
    return _print_report(runner.restore_metadata(force=args.force))


def cmd_config(args, config: Config) -> int:
    """Configure cdsync."""
    if args.list:
        print("Current Configuration:")
        print("=" * 40)
        for key, value in sorted(config.as_dict().items()):
            if key == 'accounts':
                continue
            print(f"{key} = {json.dumps(value)}")
        print("accounts:")
        for account in config.accounts:
            role = 'main' if account.is_main else 'backup'
            print(f"  {account} ({role}, credentials: {account.credentials_handle})")
        return 0

    if args.set:
        status = 0
        for item in args.set:
            if '=' not in item:
                print(f"✗ Invalid format '{item}'. Use key=value")
                status = 1
                continue

            key, value = item.split('=', 1)
            # JSON values for mappings and numbers, plain strings otherwise
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                pass

            try:
                config.set(key, value)
            except ValueError as e:
                print(f"✗ {key}: {e}")
                status = 1
                continue
            print(f"✓ Set {key} = {value}")
        return status

    print("Use --list to view config or --set key=value to change config")
    return 0


def cmd_account_add(args, config: Config) -> int:
    """Register an account and optionally import its credentials."""
    try:
        account = config.add_account(args.provider, args.account_id, args.main, args.credentials_handle)
    except ValueError as e:
        print(f"✗ {e}")
        return 1

    if args.token_file:
        with open(Path(args.token_file).expanduser(), 'r') as f:
            config.save_token(account.credentials_handle, json.load(f))
        print(f"✓ Stored credentials for {account.credentials_handle}")

    print(f"✓ Added {account} as {'main' if account.is_main else 'backup'} account")
    return 0


RUNNER_COMMANDS = {
    'sync': (cmd_sync, 'Run the whole pipeline, from quota to balance-storage'),
    'get-metadata': (cmd_get_metadata, 'Scan every account and refresh the metadata database'),
    'check-for-duplicates': (cmd_check_for_duplicates, 'List duplicate files within each provider'),
    'remove-duplicates': (cmd_remove_duplicates, 'Interactively choose duplicates to delete'),
    'remove-duplicates-unsafe': (cmd_remove_duplicates_unsafe, 'Delete duplicates, keeping the oldest file'),
    'sync-providers': (cmd_sync_providers, 'Copy missing files between providers'),
    'balance-storage': (cmd_balance_storage, 'Move files off accounts above 95%% usage'),
    'free-main': (cmd_free_main, 'Move every file of a main account to its backups'),
    'share-with-main': (cmd_share_with_main, 'Share backup sync roots with the main account'),
    'check-tokens': (cmd_check_tokens, 'Verify every account can authenticate'),
    'quota': (cmd_quota, 'Show storage usage of every account'),
    'delete-unsynced-files': (cmd_delete_unsynced_files, 'Delete items outside the sync root of backup accounts'),
    'backup-metadata': (cmd_backup_metadata, 'Upload the metadata database to main accounts'),
    'restore-metadata': (cmd_restore_metadata, 'Download the metadata database backup'),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='cdsync - keep files mirrored across cloud drive accounts'
    )
    parser.add_argument('--config-dir', help='Configuration directory (default: ~/.config/cdsync)')
    parser.add_argument('--log-level', help='Log level (DEBUG, INFO, WARNING, ERROR)')
    parser.add_argument('--safe', action='store_true',
                        help='Dry run: log every remote change instead of making it')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    for name, (func, help_text) in RUNNER_COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.set_defaults(func=func, needs_runner=True)
        if name == 'free-main':
            sub.add_argument('--provider', required=True, help='Provider whose main account to empty')
        if name == 'restore-metadata':
            sub.add_argument('--force', action='store_true', help='Overwrite an existing local database')
        if name == 'sync':
            sub.add_argument('--free-main', action='append', metavar='PROVIDER',
                             help='Empty this provider\'s main account first (repeatable)')
            sub.add_argument('--interactive', action='store_true',
                             help='Choose duplicates to delete instead of keeping the oldest')

    config_parser = subparsers.add_parser('config', help='Configure cdsync')
    config_parser.add_argument('--list', action='store_true', help='List configuration')
    config_parser.add_argument('--set', nargs='+', help='Set config (key=value)')
    config_parser.set_defaults(func=cmd_config, needs_runner=False)

    account_parser = subparsers.add_parser('account', help='Manage accounts')
    account_sub = account_parser.add_subparsers(dest='account_command')
    add_parser = account_sub.add_parser('add', help='Add an account')
    add_parser.add_argument('--provider', required=True, help='Provider name (e.g. Microsoft)')
    add_parser.add_argument('--account-id', required=True, help='Account email or phone')
    add_parser.add_argument('--main', action='store_true', help='Make this the main account of its provider')
    add_parser.add_argument('--credentials-handle', help='Name of the stored credentials')
    add_parser.add_argument('--token-file', help='JSON token file produced by the authentication flow')
    add_parser.set_defaults(func=cmd_account_add, needs_runner=False)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, 'func', None):
        parser.print_help()
        return 1

    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"✗ {e}")
        return 2

    level = args.log_level or os.environ.get('CDSYNC_LOG_LEVEL') or config.log_level
    setup_logging(level, config.log_path)

    if not args.needs_runner:
        try:
            return args.func(args, config)
        except ConfigError as e:
            print(f"✗ {e}")
            return 2

    runner = _runner(args, config)
    try:
        return args.func(args, runner)
    except ConfigError as e:
        logger.error(f"Fatal configuration error: {e}")
        print(f"✗ {e}")
        return 2
    except CloudSyncError as e:
        logger.error(f"{args.command} aborted: {e}")
        print(f"✗ {args.command} aborted: {e}")
        return 1
    finally:
        runner.close()


if __name__ == '__main__':
    sys.exit(main())
