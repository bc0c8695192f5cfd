import os

import pytest

from issuekit.env_auth import EnvAuthConfig, EnvironmentAuthManager, create_env_auth_manager
from issuekit.errors import AuthError

TOKEN_VARS = ('GITHUB_TOKEN', 'GH_TOKEN', 'GITHUB_ACCESS_TOKEN', 'GH_ACCESS_TOKEN', 'GITHUB_PAT')


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for var in TOKEN_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


def _config(tmp_path, **kw) -> EnvAuthConfig:
    kw.setdefault('load_dotenv', False)
    kw.setdefault('token_file', tmp_path / 'token')
    kw.setdefault('netrc_file', tmp_path / 'netrc')
    return EnvAuthConfig(**kw)


def test_env_auth_config_defaults():
    config = EnvAuthConfig()
    assert config.load_dotenv is True
    assert config.dotenv_path is None
    assert config.github_token_var == 'GITHUB_TOKEN'
    assert config.netrc_machine == 'api.github.com'
    assert config.token_file.name == '.github-issue-token'


def test_primary_variable_wins(monkeypatch, tmp_path):
    monkeypatch.setenv('GH_TOKEN', 'alt')
    monkeypatch.setenv('GITHUB_TOKEN', ' primary \n')
    manager = EnvironmentAuthManager(_config(tmp_path))
    assert manager.get_github_token() == 'primary'


def test_alternative_variable(monkeypatch, tmp_path):
    monkeypatch.setenv('GITHUB_PAT', 'pat')
    assert EnvironmentAuthManager(_config(tmp_path)).get_github_token() == 'pat'


def test_dotenv_file_is_loaded(monkeypatch, tmp_path):
    (tmp_path / '.env').write_text('GITHUB_TOKEN=from-dotenv\n')
    manager = create_env_auth_manager(_config(tmp_path, load_dotenv=True))
    try:
        assert manager.get_github_token() == 'from-dotenv'
    finally:
        os.environ.pop('GITHUB_TOKEN', None)


def test_token_file(tmp_path):
    token = tmp_path / 'token'
    token.write_text('file-token\n')
    token.chmod(0o600)
    assert EnvironmentAuthManager(_config(tmp_path)).get_github_token() == 'file-token'


def test_token_file_must_be_private(tmp_path):
    token = tmp_path / 'token'
    token.write_text('file-token\n')
    token.chmod(0o644)
    with pytest.raises(AuthError, match='chmod 600'):
        EnvironmentAuthManager(_config(tmp_path)).get_github_token()


def test_netrc_entry(tmp_path):
    rc = tmp_path / 'netrc'
    rc.write_text('machine api.github.com login me password netrc-token\n')
    rc.chmod(0o600)
    assert EnvironmentAuthManager(_config(tmp_path)).get_github_token() == 'netrc-token'


def test_missing_token_explains_how_to_fix(tmp_path):
    with pytest.raises(AuthError, match='GITHUB_TOKEN'):
        EnvironmentAuthManager(_config(tmp_path)).get_github_token()
