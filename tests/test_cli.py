"""Tests for the command-line entry point."""

import json

import keyring
import pytest

from cdsync import cli
from cdsync.config import Config


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    monkeypatch.setattr(cli, 'setup_logging', lambda level, log_file=None: None)


def _run(tmp_path, *argv):
    return cli.main(['--config-dir', str(tmp_path), *argv])


def test_no_command_prints_help(tmp_path, capsys):
    assert _run(tmp_path) == 1
    assert 'usage' in capsys.readouterr().out


def test_config_list(tmp_path, capsys):
    assert _run(tmp_path, 'config', '--list') == 0
    out = capsys.readouterr().out
    assert 'sync_folder_name = "synched-cloud-drives"' in out
    assert 'accounts:' in out


def test_config_set(tmp_path):
    assert _run(tmp_path, 'config', '--set', 'max_workers=8', 'max_object_size={"Telegram": 100}') == 0
    config = Config(tmp_path)
    assert config.max_workers == 8
    assert config.max_object_size_for('Telegram') == 100

    assert _run(tmp_path, 'config', '--set', 'max_workers=0') == 1
    assert _run(tmp_path, 'config', '--set', 'max_workers') == 1
    assert Config(tmp_path).max_workers == 8


def test_account_add(tmp_path, monkeypatch):
    secrets = {}
    monkeypatch.setattr(keyring, 'get_password', lambda service, name: secrets.get((service, name)))
    monkeypatch.setattr(keyring, 'set_password',
                        lambda service, name, value: secrets.__setitem__((service, name), value))
    token_file = tmp_path / 'token.json'
    token_file.write_text(json.dumps({'access_token': 'abc', 'refresh_token': 'r'}))

    assert _run(tmp_path, 'account', 'add', '--provider', 'Microsoft', '--account-id', 'me@outlook.com',
                '--main', '--token-file', str(token_file)) == 0
    assert _run(tmp_path, 'account', 'add', '--provider', 'Microsoft', '--account-id', 'other@outlook.com',
                '--main') == 1

    config = Config(tmp_path)
    assert [str(a) for a in config.accounts] == ['Microsoft/me@outlook.com']
    assert config.load_token('Microsoft:me@outlook.com')['access_token'] == 'abc'


def test_runner_command_without_accounts(tmp_path, capsys):
    assert _run(tmp_path, '--safe', 'get-metadata') == 2
    assert 'No accounts configured' in capsys.readouterr().out


def test_broken_config_file(tmp_path, capsys):
    (tmp_path / 'config.json').write_text('{')
    assert _run(tmp_path, 'config', '--list') == 2


def test_free_main_requires_provider(tmp_path):
    with pytest.raises(SystemExit):
        _run(tmp_path, 'free-main')


def test_sync_options_parsed():
    args = cli.build_parser().parse_args(
        ['sync', '--free-main', 'Microsoft', '--free-main', 'Google', '--interactive']
    )
    assert args.func is cli.cmd_sync
    assert args.free_main == ['Microsoft', 'Google']
    assert args.interactive

    args = cli.build_parser().parse_args(['sync'])
    assert args.free_main is None
    assert not args.interactive


def test_delete_unsynced_files_without_accounts(tmp_path, capsys):
    assert _run(tmp_path, 'delete-unsynced-files') == 2
    assert 'No accounts configured' in capsys.readouterr().out
