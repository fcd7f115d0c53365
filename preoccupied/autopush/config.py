"""
Configuration models and loading for the autopush application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import logging
import os
from typing import Annotated, Any, Dict, Literal, Optional, Union

import httpx
import jwt
import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .autopush import (
    DEFAULT_COMMIT_PREFIX, DEFAULT_REMOTE, AutoPushError, PushResult, auto_push,
)
from .github import github_installation_token


logger = logging.getLogger(__name__)


CONFIG_PATH = os.environ.get('CONFIG_PATH', '/config/config.yaml')


_config: Optional['RootConfig'] = None


class ConfigError(AutoPushError):
    """
    The configuration file or environment could not be loaded.
    """


class CredentialsError(AutoPushError):
    """
    A GitHub installation token could not be obtained.
    """


class GlobalConfig(BaseModel):
    """
    Global configuration settings
    """

    github_app_id: Optional[str] = None
    github_installation_id: Optional[str] = None
    github_keyfile: Optional[str] = None

    webhook_secret: Optional[str] = None

    remote: str = DEFAULT_REMOTE
    commit_prefix: str = DEFAULT_COMMIT_PREFIX
    push_on_startup: bool = False


class RepoConfig(BaseModel):
    """
    Working tree configuration
    """

    name: str
    directory: str
    remote: str = DEFAULT_REMOTE
    branch: Optional[str] = None
    commit_prefix: str = DEFAULT_COMMIT_PREFIX
    webhook_secret: Optional[str] = None
    provider: Literal['git'] = 'git'


    async def push(self) -> PushResult:
        """
        Pull, commit, and push the working tree.
        """

        return await auto_push(
            repo_dir=self.directory,
            remote=self.remote,
            branch=self.branch,
            commit_prefix=self.commit_prefix,
        )


class GitHubRepoConfig(RepoConfig):
    """
    Working tree configuration for GitHub remotes, authenticated as a
    GitHub App installation
    """

    provider: Literal['github']
    github_app_id: Optional[str] = None
    github_installation_id: Optional[str] = None
    github_keyfile: Optional[str] = None


    async def github_installation_token(self) -> Optional[str]:
        if not self.github_keyfile:
            return None

        try:
            return await github_installation_token(
                github_keyfile=self.github_keyfile,
                github_app_id=self.github_app_id,
                github_installation_id=self.github_installation_id
            )
        except (httpx.HTTPError, jwt.PyJWTError, OSError, KeyError, ValueError) as e:
            raise CredentialsError(
                f"Failed to get a GitHub installation token for '{self.name}': {e}") from e


    async def push(self) -> PushResult:
        """
        Pull, commit, and push the working tree using an installation
        token, when one is available.
        """

        return await auto_push(
            repo_dir=self.directory,
            remote=self.remote,
            branch=self.branch,
            commit_prefix=self.commit_prefix,
            git_token=await self.github_installation_token()
        )


RepoTypes = Union[RepoConfig, GitHubRepoConfig]


class RootConfig(BaseModel):
    """
    Root configuration model
    """

    global_: GlobalConfig = Field(alias='global', default_factory=GlobalConfig)
    repos: Dict[str, Annotated[RepoTypes, Field(discriminator='provider')]] = Field(
        default_factory=dict
    )

    model_config = {'populate_by_name': True}


    @model_validator(mode='before')
    def apply_global_defaults(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply global config defaults to repos that don't have them set.
        """

        if not isinstance(v, dict):
            return v

        fixed = {}
        glbl = v.get('global', v.get('global_', {}))
        if not isinstance(glbl, GlobalConfig):
            glbl = GlobalConfig.model_validate(glbl or {})
        fixed['global'] = glbl

        repos = fixed['repos'] = dict(v.get('repos') or {})
        for repo_name, repo in repos.items():
            if isinstance(repo, BaseModel):
                continue

            repo = repos[repo_name] = dict(repo)
            repo.setdefault('name', repo_name)
            provider = repo.setdefault('provider', 'git')

            if provider == 'github':
                repo.setdefault('github_keyfile', glbl.github_keyfile)
                repo.setdefault('github_app_id', glbl.github_app_id)
                repo.setdefault('github_installation_id', glbl.github_installation_id)

            repo.setdefault('webhook_secret', glbl.webhook_secret)
            repo.setdefault('remote', glbl.remote)
            repo.setdefault('commit_prefix', glbl.commit_prefix)

        return fixed


def _config_from_env() -> Dict[str, Any]:
    """
    Build configuration dictionary from AUTOPUSH_* environment variables.
    """

    # global settings apply to the ENV repository if one is configured, and
    # override the same settings from the config file (if any)
    global_config = {}
    pairs = (
        ('AUTOPUSH_GITHUB_APP_ID', 'github_app_id'),
        ('AUTOPUSH_GITHUB_INSTALLATION_ID', 'github_installation_id'),
        ('AUTOPUSH_GITHUB_KEYFILE', 'github_keyfile'),
        ('AUTOPUSH_WEBHOOK_SECRET', 'webhook_secret'),
        ('AUTOPUSH_REMOTE', 'remote'),
        ('AUTOPUSH_COMMIT_PREFIX', 'commit_prefix'),
        ('AUTOPUSH_PUSH_ON_STARTUP', 'push_on_startup'))

    for env_var, config_key in pairs:
        value = os.environ.get(env_var)
        if value is not None:
            global_config[config_key] = value

    repo_config = {}
    pairs = (
        ('AUTOPUSH_REPO_NAME', 'name'),
        ('AUTOPUSH_REPO_DIRECTORY', 'directory'),
        ('AUTOPUSH_REPO_REMOTE', 'remote'),
        ('AUTOPUSH_REPO_BRANCH', 'branch'),
        ('AUTOPUSH_REPO_PROVIDER', 'provider'))

    for env_var, config_key in pairs:
        value = os.environ.get(env_var)
        if value is not None:
            repo_config[config_key] = value

    if repo_config:
        repo_config.setdefault('name', 'default')

    result = {'global': global_config}
    if repo_config:
        result['repos'] = {repo_config['name']: repo_config}
    return result


def get_config() -> 'RootConfig':
    """
    Get the global config object, loading it on first use.
    """

    global _config

    if _config is None:
        env_config = _config_from_env()
        config_path = os.environ.get('CONFIG_PATH', CONFIG_PATH)

        if os.path.exists(config_path):
            try:
                with open(config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f'Failed to read {config_path}: {e}') from e

            if not isinstance(config_data, dict):
                raise ConfigError(f'Expected a mapping at the top of {config_path}')

            config_data.setdefault('global', {}).update(env_config.get('global', {}))
            config_data.setdefault('repos', {}).update(env_config.get('repos', {}))
        else:
            config_data = env_config

        try:
            _config = RootConfig.model_validate(config_data)
        except ValidationError as e:
            raise ConfigError(f'Invalid configuration: {e}') from e

        logger.info(f'Loaded configuration with {len(_config.repos)} repositories')

    return _config


def get_repo_config(repo_name: str) -> Optional[RepoTypes]:
    """
    Get the configuration for the named working tree.
    """

    return get_config().repos.get(repo_name)


# The end.
