"""
Command line entry point for the autopush application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import subprocess
import sys
from argparse import ArgumentParser
from typing import List, Optional

from .autopush import (
    DEFAULT_COMMIT_PREFIX, DEFAULT_REMOTE, AutoPushError, PushResult, auto_push, redact,
)
from .config import get_repo_config


logger = logging.getLogger(__name__)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog='autopush',
        description='Pull latest changes, stage everything, commit, and push.')

    parser.add_argument(
        'directory', nargs='?', default='.',
        help='Working tree to push (default: current directory)')

    parser.add_argument(
        '--repo', metavar='NAME', default=None,
        help='Push the named repository from the configuration file instead'
        ' of DIRECTORY. The remaining options are then taken from the'
        ' configuration.')

    parser.add_argument(
        '--remote', default=DEFAULT_REMOTE,
        help=f'Remote to pull from and push to (default: {DEFAULT_REMOTE})')

    parser.add_argument(
        '--branch', default=None,
        help='Branch to pull and push (default: the current branch)')

    parser.add_argument(
        '--prefix', default=DEFAULT_COMMIT_PREFIX,
        help='Commit message prefix, followed by a timestamp'
        f' (default: {DEFAULT_COMMIT_PREFIX!r})')

    parser.add_argument(
        '-v', '--verbose', action='store_true', default=False,
        help='Log every git invocation and its output')

    return parser


async def _push(options) -> PushResult:
    if options.repo:
        repo = get_repo_config(options.repo)
        if repo is None:
            raise AutoPushError(f"Repository '{options.repo}' not found in configuration")
        return await repo.push()

    return await auto_push(
        options.directory,
        remote=options.remote,
        branch=options.branch,
        commit_prefix=options.prefix)


def main(args: Optional[List[str]] = None) -> int:
    parser = build_parser()
    options = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.INFO,
        format='%(message)s',
        force=True)

    try:
        result = asyncio.run(_push(options))

    except AutoPushError as e:
        logger.error(f'Error: {e}')
        return 1

    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors='replace') if isinstance(e.stderr, bytes) else e.stderr
        logger.error(f'Error: {redact(str(e))}')
        if stderr:
            logger.error(redact(stderr.strip()))
        return 1

    print('Auto-push complete!')
    print(result.summary())
    return 0


if __name__ == '__main__':
    sys.exit(main())


# The end.
