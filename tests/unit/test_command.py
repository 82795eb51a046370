import sys
import argparse
from typing import List

import pytest

import commitsig
from commitsig import command, _load_commits


def run_command(monkeypatch: pytest.MonkeyPatch, argv: List[str]) -> int:
    monkeypatch.setattr(sys, 'argv', ['commitsig'] + argv)
    with pytest.raises(SystemExit) as exc:
        command()
    return exc.value.code


class TestCommand:

    def test_verify_overrides(self, monkeypatch: pytest.MonkeyPatch, base_config: dict) -> None:
        seen = dict()

        async def fake_verify_batch(data, config, client=None):
            seen['data'] = data
            seen['config'] = dict(config)
            return 0

        base_config['exceptions'] = ['aaaa']
        monkeypatch.setattr(commitsig, 'get_main_config', lambda section=None: base_config)
        monkeypatch.setattr(commitsig, '_load_commits', lambda cmdargs: b'log data')
        monkeypatch.setattr(commitsig, 'verify_batch', fake_verify_batch)

        ecode = run_command(monkeypatch, ['verify', '--max-fail-count', '2', '--ignore-from', 'cccc',
                                          '-x', 'bbbb'])

        assert ecode == 0
        assert seen['data'] == b'log data'
        assert seen['config']['maxfailcount'] == '2'
        assert seen['config']['ignorefrom'] == 'cccc'
        assert seen['config']['exceptions'] == ['aaaa', 'bbbb']

    def test_exit_status_passed_through(self, monkeypatch: pytest.MonkeyPatch, base_config: dict) -> None:
        async def fake_verify_batch(data, config, client=None):
            return 1

        monkeypatch.setattr(commitsig, 'get_main_config', lambda section=None: base_config)
        monkeypatch.setattr(commitsig, '_load_commits', lambda cmdargs: b'')
        monkeypatch.setattr(commitsig, 'verify_batch', fake_verify_batch)

        assert run_command(monkeypatch, ['verify']) == 1

    def test_configuration_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_verify_batch(data, config, client=None):
            raise commitsig.ConfigurationError('Key directory URL is not set')

        monkeypatch.setattr(commitsig, 'get_main_config', lambda section=None: dict())
        monkeypatch.setattr(commitsig, '_load_commits', lambda cmdargs: b'')
        monkeypatch.setattr(commitsig, 'verify_batch', fake_verify_batch)

        assert run_command(monkeypatch, ['verify']) == 1

    def test_no_subcommand(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert run_command(monkeypatch, []) == 1


class TestLoadCommits:

    def test_revrange_runs_git_log(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = list()

        def fake_git(gitdir, args, stdin=None, env=None):
            calls.append(args)
            return 0, b'commit aaaa\ntree 1111\n', b''

        monkeypatch.setattr(commitsig, 'git_run_command', fake_git)
        out = _load_commits(argparse.Namespace(revrange=['origin/main..HEAD']))

        assert out == b'commit aaaa\ntree 1111\n'
        assert calls == [['log', '--pretty=raw', 'origin/main..HEAD']]

    def test_git_log_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def fake_git(gitdir, args, stdin=None, env=None):
            return 128, b'', b'fatal: bad revision\n'

        monkeypatch.setattr(commitsig, 'git_run_command', fake_git)
        with pytest.raises(RuntimeError, match='bad revision'):
            _load_commits(argparse.Namespace(revrange=['nope']))
