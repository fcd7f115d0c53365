"""
GitHub App credentials for pushing to GitHub remotes.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, NamedTuple, Optional, Tuple

import httpx
import jwt


logger = logging.getLogger(__name__)


GITHUB_API = 'https://api.github.com'

# refresh once fewer than this many seconds remain before expiry
CACHE_THRESHOLD = 50 * 60

# lifetime of the app JWT used to request an installation token
JWT_LIFETIME = 10 * 60


class InstallationToken(NamedTuple):
    token: str
    expires_at: datetime


_token_cache: Dict[Tuple[str, str], InstallationToken] = {}
_cache_lock = asyncio.Lock()


def app_jwt(private_key: str, github_app_id: str) -> str:
    """
    Sign a short-lived JWT identifying the GitHub App.
    """

    now = int(time.time())
    payload = {
        'iat': now - 60,
        'exp': now + JWT_LIFETIME,
        'iss': github_app_id,
    }
    return jwt.encode(payload, private_key, algorithm='RS256')


async def _cached_token(cache_key: Tuple[str, str]) -> Optional[str]:
    now = datetime.now(timezone.utc)

    async with _cache_lock:
        cached = _token_cache.get(cache_key)
        if cached is None:
            return None

        if now.timestamp() < cached.expires_at.timestamp() - CACHE_THRESHOLD:
            logger.debug(f'Using cached token for {cache_key[0]} / {cache_key[1]}')
            return cached.token

        logger.debug(f'Token for {cache_key[0]} / {cache_key[1]} is near expiry, dropping it')
        del _token_cache[cache_key]
        return None


async def _request_token(
        private_key: str,
        github_app_id: str,
        github_installation_id: str) -> InstallationToken:

    headers = {
        'Authorization': f'Bearer {app_jwt(private_key, github_app_id)}',
        'Accept': 'application/vnd.github+json',
    }
    url = f'{GITHUB_API}/app/installations/{github_installation_id}/access_tokens'

    async with httpx.AsyncClient() as client:
        r = await client.post(url, headers=headers)
        r.raise_for_status()
        data = r.json()

    # GitHub reports expiry as ISO 8601 with a trailing Z
    expires_at = datetime.fromisoformat(data['expires_at'].replace('Z', '+00:00'))
    return InstallationToken(data['token'], expires_at)


async def github_installation_token(
        github_keyfile: str,
        github_app_id: str,
        github_installation_id: str) -> str:
    """
    Get an installation access token for the given GitHub App
    installation, signing the request with the private key in
    github_keyfile.

    Tokens are cached per app and installation, and reused until
    fewer than fifty minutes of their lifetime remain.
    """

    if not (github_app_id and github_installation_id and github_keyfile):
        raise ValueError('github_app_id, github_installation_id, and github_keyfile must be set')

    cache_key = (github_app_id, github_installation_id)
    token = await _cached_token(cache_key)
    if token is not None:
        return token

    with open(github_keyfile, 'r') as fk:
        private_key = fk.read()

    fresh = await _request_token(private_key, github_app_id, github_installation_id)

    async with _cache_lock:
        _token_cache[cache_key] = fresh

    logger.debug(f'New token for {github_app_id} / {github_installation_id} expires at {fresh.expires_at}')
    return fresh.token


# The end.
