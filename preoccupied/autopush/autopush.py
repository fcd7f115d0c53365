"""
Pull, commit, and push workflow for the autopush application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import os
import re
import subprocess
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


logger = logging.getLogger(__name__)


DEFAULT_REMOTE = 'origin'
DEFAULT_COMMIT_PREFIX = ':zap: [auto-push]'

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
LAST_COMMIT_FORMAT = '--pretty=format:%h - %s (%cr)'

_CREDENTIALS = re.compile(r'(https?://)[^/@\s]+@')


class AutoPushError(Exception):
    """
    Base class for failures of the auto-push workflow.
    """


class NotARepositoryError(AutoPushError):

    def __init__(self, directory: str):
        super().__init__(f"Not a git repository in '{directory}'. Aborting.")
        self.directory = directory


class PullError(AutoPushError):

    def __init__(self, remote: str, branch: str, stashed: bool = False,
                 stderr: str = ''):
        msg = f'Failed to pull from {remote}/{branch}'
        if stderr:
            msg = f'{msg}: {stderr}'
        if stashed:
            msg = (f"{msg}\nYour changes are safely stashed."
                   " Use 'git stash pop' to restore them.")
        super().__init__(msg)
        self.remote = remote
        self.branch = branch
        self.stashed = stashed


class PushError(AutoPushError):

    def __init__(self, remote: str, branch: str, stderr: str = ''):
        msg = f'Failed to push to {remote}/{branch}'
        if stderr:
            msg = f'{msg}: {stderr}'
        super().__init__(msg)
        self.remote = remote
        self.branch = branch


class PushResult(BaseModel):
    """
    Outcome of a single auto-push run
    """

    directory: str
    branch: str
    remote: str = DEFAULT_REMOTE
    remote_url: Optional[str] = None
    pulled: bool = False
    stashed: bool = False
    stash_restored: Optional[bool] = None
    committed: bool = False
    commit_message: Optional[str] = None
    last_commit: Optional[str] = None


    def summary(self) -> str:
        """
        Human-readable summary of the run.
        """

        return '\n'.join((
            'Summary:',
            f'  - Branch: {self.branch}',
            f"  - Remote: {self.remote_url or 'No remote configured'}",
            f"  - Last commit: {self.last_commit or 'No commits'}",
        ))


def redact(text: str) -> str:
    """
    Strip any credentials embedded in URLs within text.
    """

    return _CREDENTIALS.sub(r'\1***@', text)


def timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


async def run(*args: str, cwd: str = None) -> str:
    logger.debug(f'Running {redact(" ".join(args))} in {cwd}')
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode, args, output=stdout, stderr=stderr)

    out = stdout.decode(errors='replace')
    if out.strip():
        logger.debug(redact(out.rstrip()))
    return out


async def probe(*args: str, cwd: str = None) -> bool:
    """
    Run a command for its exit status alone. True when it exits zero.
    """

    logger.debug(f'Probing {redact(" ".join(args))} in {cwd}')
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL
    )
    return await process.wait() == 0


def _stderr(err: subprocess.CalledProcessError) -> str:
    stderr = err.stderr or b''
    if isinstance(stderr, bytes):
        stderr = stderr.decode(errors='replace')
    return redact(stderr.strip())


def token_url(git_url: str, git_token: str) -> str:
    return git_url.replace('https://', f'https://x-access-token:{git_token}@')


async def current_branch(repo_dir: str) -> str:
    out = await run('git', 'rev-parse', '--abbrev-ref', 'HEAD', cwd=repo_dir)
    return out.strip()


async def remote_url(repo_dir: str, remote: str) -> Optional[str]:
    """
    The URL configured for remote, or None when there is no such remote.
    """

    try:
        out = await run('git', 'remote', 'get-url', remote, cwd=repo_dir)
    except subprocess.CalledProcessError:
        return None
    return out.strip() or None


async def last_commit(repo_dir: str) -> Optional[str]:
    try:
        out = await run('git', 'log', '-1', LAST_COMMIT_FORMAT, cwd=repo_dir)
    except subprocess.CalledProcessError:
        return None
    return out.strip() or None


async def has_changes(repo_dir: str) -> bool:
    """
    True when tracked files differ from HEAD, in the index or the
    working tree. The index is refreshed first so that files whose
    stat data changed but whose content did not are not counted.
    """

    # exit status only reports stale entries
    await probe('git', 'update-index', '-q', '--refresh', cwd=repo_dir)
    return not await probe('git', 'diff-index', '--quiet', 'HEAD', '--',
                           cwd=repo_dir)


async def stash_ref(repo_dir: str) -> Optional[str]:
    """
    The commit at the top of the stash, or None when the stash is empty.
    """

    try:
        out = await run('git', 'rev-parse', '-q', '--verify', 'refs/stash',
                        cwd=repo_dir)
    except subprocess.CalledProcessError:
        return None
    return out.strip() or None


async def pull_with_stash(
        result: PushResult,
        repo_dir: str,
        target: str) -> None:
    """
    Pull the remote branch into repo_dir, shelving local modifications
    around the pull. target is the remote name or URL to pull from.
    """

    remote, branch = result.remote, result.branch

    if not await probe('git', 'ls-remote', '--exit-code', '--heads',
                       target, branch, cwd=repo_dir):
        logger.info(f"Remote branch '{remote}/{branch}' does not exist. Skipping pull.")
        return

    logger.info(f'Pulling latest changes from {remote}/{branch}...')

    if await has_changes(repo_dir):
        logger.info('Stashing uncommitted changes...')
        before = await stash_ref(repo_dir)
        await run('git', 'stash', 'push', '-m',
                  f'Auto-stash before pull {timestamp()}', cwd=repo_dir)

        # stash push exits zero even when it saved nothing
        result.stashed = await stash_ref(repo_dir) != before
        if not result.stashed:
            logger.info('Nothing was stashed.')

    try:
        await run('git', 'pull', target, branch, cwd=repo_dir)
    except subprocess.CalledProcessError as e:
        raise PullError(remote, branch, stashed=result.stashed,
                        stderr=_stderr(e)) from None

    result.pulled = True
    logger.info(f'Successfully pulled from {remote}/{branch}')

    if not result.stashed:
        return

    logger.info('Restoring stashed changes...')
    try:
        await run('git', 'stash', 'pop', cwd=repo_dir)
    except subprocess.CalledProcessError:
        result.stash_restored = False
        logger.warning('Warning: Conflict while restoring stashed changes. Please resolve manually.')
        logger.warning("Use 'git stash list' to see stashed changes and"
                       " 'git stash apply' to retry.")
    else:
        result.stash_restored = True
        logger.info('Stashed changes restored successfully')


async def commit_all(
        result: PushResult,
        repo_dir: str,
        commit_prefix: str) -> None:
    """
    Stage everything under repo_dir and commit it, if anything changed.
    """

    logger.info('Adding all changes to git...')
    await run('git', 'add', '.', cwd=repo_dir)

    if not await has_changes(repo_dir):
        logger.info('No changes to commit. Working tree clean.')
        return

    message = f'{commit_prefix} {timestamp()}'
    logger.info('Committing changes...')
    await run('git', 'commit', '-m', message, cwd=repo_dir)
    result.committed = True
    result.commit_message = message


async def auto_push(
        repo_dir: str,
        remote: str = DEFAULT_REMOTE,
        branch: Optional[str] = None,
        commit_prefix: str = DEFAULT_COMMIT_PREFIX,
        git_token: Optional[str] = None) -> PushResult:
    """
    Pull, stage, commit, and push the working tree at repo_dir.

    The branch defaults to the currently checked out one. When git_token
    is given the remote's https URL is used with the token injected, and
    the repository's remote configuration is left untouched.
    """

    repo_dir = os.path.abspath(repo_dir)

    if not (os.path.isdir(repo_dir) and
            await probe('git', 'rev-parse', '--is-inside-work-tree', cwd=repo_dir)):
        raise NotARepositoryError(repo_dir)

    if not branch:
        branch = await current_branch(repo_dir)
    logger.info(f'Current branch: {branch}')

    result = PushResult(directory=repo_dir, branch=branch, remote=remote)
    result.remote_url = await remote_url(repo_dir, remote)

    target = remote
    if result.remote_url is None:
        logger.warning(f"Warning: No remote '{remote}' found. Skipping pull operation.")
    else:
        if git_token:
            target = token_url(result.remote_url, git_token)
        await pull_with_stash(result, repo_dir, target)

    await commit_all(result, repo_dir, commit_prefix)

    logger.info('Pushing to the remote repository...')
    try:
        await run('git', 'push', target, branch, cwd=repo_dir)
    except subprocess.CalledProcessError as e:
        raise PushError(remote, branch, stderr=_stderr(e)) from None
    logger.info(f'Successfully pushed to {remote}/{branch}')

    result.last_commit = await last_commit(repo_dir)
    if result.remote_url:
        result.remote_url = redact(result.remote_url)

    return result


# The end.
