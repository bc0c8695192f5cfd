"""Token discovery for issuekit.

Lookup order:

1. environment variables (``GITHUB_TOKEN`` then the usual alternatives),
   after loading a ``.env`` file with python-dotenv when one is present;
2. the token file (``~/.github-issue-token`` by default), which must not be
   readable by group or others;
3. a ``machine api.github.com`` entry in ``~/.netrc``.
"""

from __future__ import annotations

import netrc
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import AuthError
from .logging import get_logger

TOKEN_HELP = (
    "no GitHub token found; create one at https://github.com/settings/tokens "
    "and export GITHUB_TOKEN, or write it to {path} (chmod 600)"
)


@dataclass
class EnvAuthConfig:
    """Configuration for environment-based authentication."""

    load_dotenv: bool = True
    dotenv_path: str | None = None
    github_token_var: str = "GITHUB_TOKEN"
    alternatives: tuple[str, ...] = (
        "GH_TOKEN",
        "GITHUB_ACCESS_TOKEN",
        "GH_ACCESS_TOKEN",
        "GITHUB_PAT",
    )
    token_file: Path = field(default_factory=lambda: Path("~/.github-issue-token").expanduser())
    netrc_file: Path | None = None
    netrc_machine: str = "api.github.com"


class EnvironmentAuthManager:
    """Resolves the GitHub token from the configured sources."""

    def __init__(self, config: EnvAuthConfig):
        self.config = config
        self.logger = get_logger()
        self._dotenv_loaded = False
        if config.load_dotenv:
            self._load_dotenv()

    def _load_dotenv(self) -> None:
        """Load .env file if available."""
        candidates = [self.config.dotenv_path] if self.config.dotenv_path else [".env", ".env.local"]
        for location in candidates:
            env_path = Path(location)
            if env_path.exists():
                load_dotenv(str(env_path))
                self._dotenv_loaded = True
                self.logger.debug(f"Loaded environment variables from {env_path}")
                break

    def get_env_token(self) -> str | None:
        """Get GitHub token from environment variables."""
        for var in (self.config.github_token_var, *self.config.alternatives):
            token = os.getenv(var)
            if token:
                self.logger.debug(f"Found GitHub token in {var}")
                return token.strip()
        return None

    def get_file_token(self) -> str | None:
        path = self.config.token_file
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        if stat.S_IMODE(st.st_mode) & 0o077:
            raise AuthError(f"{path} is group/world accessible; run chmod 600 {path}")
        token = path.read_text().strip()
        if token:
            self.logger.debug(f"Found GitHub token in {path}")
        return token or None

    def get_netrc_token(self) -> str | None:
        try:
            rc = netrc.netrc(str(self.config.netrc_file) if self.config.netrc_file else None)
        except FileNotFoundError:
            return None
        except (netrc.NetrcParseError, OSError) as exc:
            self.logger.debug(f"Failed to read netrc: {exc}")
            return None
        entry = rc.authenticators(self.config.netrc_machine)
        if entry is None:
            return None
        token = entry[2]
        if token:
            self.logger.debug(f"Found GitHub token in netrc for {self.config.netrc_machine}")
        return token or None

    def get_github_token(self) -> str:
        """Return the first token found, or raise :class:`AuthError`."""
        token = self.get_env_token() or self.get_file_token() or self.get_netrc_token()
        if not token:
            raise AuthError(TOKEN_HELP.format(path=self.config.token_file))
        return token


def create_env_auth_manager(config: EnvAuthConfig | None = None) -> EnvironmentAuthManager:
    """Factory function to create environment authentication manager."""
    if config is None:
        config = EnvAuthConfig()
    return EnvironmentAuthManager(config)


__all__ = ["EnvAuthConfig", "EnvironmentAuthManager", "create_env_auth_manager"]
