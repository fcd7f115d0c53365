"""
FastAPI webhook application for the autopush service.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, Header, HTTPException

from .config import get_config


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# pushes of the same working tree must not interleave
_push_locks: Dict[str, asyncio.Lock] = {}


def repo_lock(name: str) -> asyncio.Lock:
    lock = _push_locks.get(name)
    if lock is None:
        lock = _push_locks[name] = asyncio.Lock()
    return lock


async def app_startup():
    """
    Startup event handler for the app
    """

    try:
        config = get_config()
    except Exception as e:
        logger.error(f'Failed to load configuration: {e}', exc_info=True)
        raise

    if not config.global_.push_on_startup:
        return

    for repo_name, repo in config.repos.items():
        try:
            logger.info(f"Pushing repository '{repo_name}' on startup...")
            async with repo_lock(repo_name):
                await repo.push()
            logger.info(f"Successfully pushed repository '{repo_name}'")
        except Exception as e:
            logger.error(f"Failed to push repository '{repo_name}' on startup: {e}", exc_info=True)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """
    Lifespan event handler for the app
    """

    logger.info('Starting up...')

    await app_startup()

    try:
        yield
    finally:
        logger.info('Shutting down...')


app = FastAPI(lifespan=app_lifespan)


@app.post('/push/{name}')
async def push(name: str = 'default', x_sync_token: str = Header(None)):
    """
    Pull, commit, and push a specific working tree by name
    """

    config = get_config()

    if name not in config.repos:
        raise HTTPException(status_code=404, detail=f"Repository '{name}' not found")

    repo = config.repos[name]
    webhook_secret = repo.webhook_secret

    if webhook_secret and x_sync_token != webhook_secret:
        raise HTTPException(status_code=401, detail='Bad secret')

    try:
        async with repo_lock(name):
            result = await repo.push()
    except Exception as e:
        logger.error(f"Error pushing repo '{name}': {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f'Push failed: {str(e)}')

    return {
        'status': 'ok',
        'repo': name,
        'committed': result.committed,
        'last_commit': result.last_commit,
    }


# The end.
