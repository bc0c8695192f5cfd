from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

import yaml

from .errors import ConfigError
from .retry import RetryConfig

DEFAULT_DB = '~/githubissue.db'
DEFAULT_PROJECT = 'golang/go'
DEFAULT_API_URL = 'https://api.github.com'
DEFAULT_GRAPHQL_URL = 'https://api.github.com/graphql'
DEFAULT_TOKEN_FILE = '~/.github-issue-token'

SEARCH_PATHS = (
    Path('issuekit.yaml'),
    Path('~/.config/issuekit/config.yaml'),
)


@dataclass
class KitConfig:
    source_file: Path | None
    database_path: Path
    # GitHub
    api_url: str
    graphql_url: str
    default_project: str
    per_page: int
    token_file: Path
    timeout: float
    # Retry policy
    server_error_attempts: int
    backoff_step: float
    rate_limit_margin: float
    max_rate_limit_waits: int
    graphql_rate_limit_sleep: float
    graphql_throttle_sleep: float
    # Logging
    logging_json_enabled: bool
    logging_level: str
    # Editor
    wrap_width: int
    editor_command: str | None
    # Environment authentication
    env_auth_load_dotenv: bool
    env_auth_dotenv_path: str | None

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            server_error_attempts=self.server_error_attempts,
            backoff_step=self.backoff_step,
            rate_limit_margin=self.rate_limit_margin,
            max_rate_limit_waits=self.max_rate_limit_waits,
            graphql_rate_limit_sleep=self.graphql_rate_limit_sleep,
            graphql_throttle_sleep=self.graphql_throttle_sleep,
        )


def _resolve_env_var(value: Any, env_var_name: str | None = None) -> Any:
    """Resolve environment variable if value starts with $."""
    if isinstance(value, str) and value.startswith('$'):
        env_name = env_var_name or value[1:]
        return os.getenv(env_name, value)
    return value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {}) or {}
    if not isinstance(value, dict):
        raise ConfigError(f'config section {name!r} must be a mapping')
    return cast(dict[str, Any], value)


def _find_config() -> Path | None:
    for candidate in SEARCH_PATHS:
        p = candidate.expanduser()
        if p.exists():
            return p
    return None


def load_config(path: str | Path | None = None) -> KitConfig:
    """Load configuration from ``path`` or the default search locations.

    An explicit path that does not exist is an error; with no path and no
    file found the built-in defaults are used.
    """
    p: Path | None
    if path is not None:
        p = Path(path).expanduser()
        if not p.exists():
            raise ConfigError(f'Configuration file not found: {p}')
    else:
        p = _find_config()
    raw: dict[str, Any] = {}
    if p is not None:
        try:
            loaded = yaml.safe_load(p.read_text())
        except yaml.YAMLError as exc:
            raise ConfigError(f'invalid YAML in {p}: {exc}') from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f'{p}: top level must be a mapping')
        raw = cast(dict[str, Any], loaded or {})
    db = _section(raw, 'database')
    gh = _section(raw, 'github')
    retry = _section(raw, 'retry')
    logging_config = _section(raw, 'logging')
    editor = _section(raw, 'editor')
    env_auth = _section(raw, 'environment')

    db_path = os.environ.get('ISSUEKIT_DB') or _resolve_env_var(db.get('path', DEFAULT_DB))
    token_file = _resolve_env_var(gh.get('token_file')) or DEFAULT_TOKEN_FILE
    defaults = RetryConfig()

    try:
        return KitConfig(
            source_file=p,
            database_path=Path(str(db_path)).expanduser(),
            api_url=str(gh.get('api_url', DEFAULT_API_URL)).rstrip('/'),
            graphql_url=str(gh.get('graphql_url', DEFAULT_GRAPHQL_URL)),
            default_project=str(gh.get('default_project', DEFAULT_PROJECT)),
            per_page=int(gh.get('per_page', 100)),
            token_file=Path(str(token_file)).expanduser(),
            timeout=float(gh.get('timeout', 30)),
            server_error_attempts=int(
                retry.get('server_error_attempts', defaults.server_error_attempts)
            ),
            backoff_step=float(retry.get('backoff_step', defaults.backoff_step)),
            rate_limit_margin=float(retry.get('rate_limit_margin', 60)),
            max_rate_limit_waits=int(retry.get('max_rate_limit_waits', 10)),
            graphql_rate_limit_sleep=float(retry.get('graphql_rate_limit_sleep', 600)),
            graphql_throttle_sleep=float(retry.get('graphql_throttle_sleep', 5)),
            logging_json_enabled=bool(logging_config.get('json_enabled', False)),
            logging_level=str(logging_config.get('level', 'INFO')),
            wrap_width=int(editor.get('wrap_width', 70)),
            editor_command=editor.get('command'),
            env_auth_load_dotenv=bool(env_auth.get('load_dotenv', True)),
            env_auth_dotenv_path=env_auth.get('dotenv_path'),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f'invalid configuration value: {exc}') from exc


__all__ = ['ConfigError', 'KitConfig', 'load_config']
