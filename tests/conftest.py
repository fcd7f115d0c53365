"""
Shared pytest fixtures for autopush tests.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import subprocess
import tempfile
from typing import Dict, Iterable, List, Optional, Tuple
from unittest.mock import AsyncMock, patch

import pytest

from preoccupied.autopush.config import GitHubRepoConfig, GlobalConfig, RepoConfig, RootConfig


class FakeGit:
    """
    Stand-in for the run() and probe() helpers of the autopush module.

    Commands are keyed by their git subcommand, plus the following word
    for the subcommands that take one (eg. 'stash pop'). Probes answer
    from a dict of key to bool, or to a list of bools consumed in order.
    Runs whose key is in failing raise CalledProcessError. The stash is
    a counter moved by stash push and pop; with empty_stash set, stash
    push succeeds without saving anything.
    """

    OUTPUTS = {
        'rev-parse --abbrev-ref': 'main\n',
        'remote get-url': 'https://github.com/test/repo.git\n',
        'log': 'abc1234 - :zap: [auto-push] 2024-01-01 12:00:00 (1 second ago)',
    }

    PROBES = {
        'rev-parse --is-inside-work-tree': True,
        'ls-remote': True,
        'update-index': True,
        'diff-index': True,
    }


    def __init__(self,
                 probes: Optional[Dict[str, object]] = None,
                 failing: Iterable[str] = (),
                 outputs: Optional[Dict[str, str]] = None,
                 stashes: int = 0,
                 empty_stash: bool = False):

        self.probes = dict(self.PROBES, **(probes or {}))
        self.outputs = dict(self.OUTPUTS, **(outputs or {}))
        self.failing = set(failing)
        self.calls: List[Tuple[str, ...]] = []
        self.stashes = stashes
        self.empty_stash = empty_stash


    @staticmethod
    def key(args: Tuple[str, ...]) -> str:
        if args[1] in ('stash', 'remote', 'rev-parse'):
            return ' '.join(args[1:3])
        return args[1]


    async def run(self, *args: str, cwd: str = None) -> str:
        self.calls.append(args)
        key = self.key(args)
        if key in self.failing:
            raise subprocess.CalledProcessError(1, args, stderr=f'{key} failed'.encode())

        if key == 'rev-parse -q':
            if not self.stashes:
                raise subprocess.CalledProcessError(1, args)
            return f'stash{self.stashes}\n'
        if key == 'stash push' and not self.empty_stash:
            self.stashes += 1
        elif key == 'stash pop':
            self.stashes -= 1

        return self.outputs.get(key, '')


    async def probe(self, *args: str, cwd: str = None) -> bool:
        self.calls.append(args)
        answer = self.probes[self.key(args)]
        if isinstance(answer, list):
            return answer.pop(0)
        return answer


    def ran(self, key: str) -> List[Tuple[str, ...]]:
        return [call for call in self.calls if self.key(call) == key]


@pytest.fixture
def temp_dir():
    """
    Create a temporary directory for tests.
    """

    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def fake_git():
    """
    Patch the git helpers with a FakeGit. Call the fixture to configure
    and install one.
    """

    with patch('preoccupied.autopush.autopush.timestamp', return_value='2024-01-01 12:00:00'):
        patchers = []

        def install(**kwargs) -> FakeGit:
            git = FakeGit(**kwargs)
            for name in ('run', 'probe'):
                p = patch(f'preoccupied.autopush.autopush.{name}',
                          new=AsyncMock(side_effect=getattr(git, name)))
                p.start()
                patchers.append(p)
            return git

        try:
            yield install
        finally:
            for p in reversed(patchers):
                p.stop()


@pytest.fixture
def mock_config():
    """
    Create a mock RootConfig for testing.
    """

    global_config = GlobalConfig()
    repo_config = RepoConfig(
        name='test-repo',
        directory='/tmp/test-repo',
        branch='master'
    )
    return RootConfig(
        global_=global_config,
        repos={'test-repo': repo_config}
    )


@pytest.fixture
def mock_github_repo_config():
    """
    Create a mock GitHubRepoConfig for testing.
    """

    return GitHubRepoConfig(
        name='test-github-repo',
        directory='/tmp/test-github-repo',
        branch='main',
        provider='github',
        github_app_id='12345',
        github_installation_id='67890',
        github_keyfile='/tmp/test-key.pem'
    )


@pytest.fixture
def mock_env_vars(monkeypatch):
    """
    Clear and optionally set environment variables for testing.
    """

    env_vars_to_clear = [
        'CONFIG_PATH',
        'AUTOPUSH_GITHUB_APP_ID',
        'AUTOPUSH_GITHUB_INSTALLATION_ID',
        'AUTOPUSH_GITHUB_KEYFILE',
        'AUTOPUSH_WEBHOOK_SECRET',
        'AUTOPUSH_REMOTE',
        'AUTOPUSH_COMMIT_PREFIX',
        'AUTOPUSH_PUSH_ON_STARTUP',
        'AUTOPUSH_REPO_NAME',
        'AUTOPUSH_REPO_DIRECTORY',
        'AUTOPUSH_REPO_REMOTE',
        'AUTOPUSH_REPO_BRANCH',
        'AUTOPUSH_REPO_PROVIDER'
    ]

    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)

    return monkeypatch


@pytest.fixture
def reset_config():
    """
    Drop any cached configuration before and after a test.
    """

    import preoccupied.autopush.config as config_module
    config_module._config = None
    yield
    config_module._config = None


# The end.
