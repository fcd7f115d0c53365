"""
Automated pull, commit, and push of git working trees, with webhook
support.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

from preoccupied.autopush.app import app
from preoccupied.autopush.autopush import (
    AutoPushError, NotARepositoryError, PullError, PushError, PushResult,
    auto_push,
)
from preoccupied.autopush.config import get_config, get_repo_config


__all__ = [
    'AutoPushError', 'NotARepositoryError', 'PullError', 'PushError',
    'PushResult', 'app', 'auto_push', 'get_config', 'get_repo_config',
]


# The end.
