from __future__ import annotations

from pathlib import Path

import pytest

from issuekit.config import ConfigError, load_config

FULL_CONFIG = """
database:
  path: $ISSUEKIT_TEST_DB
github:
  api_url: https://ghe.example.com/api/v3/
  default_project: acme/widgets
  per_page: 50
  timeout: 10
retry:
  server_error_attempts: 5
  backoff_step: 1.5
  rate_limit_margin: 30
logging:
  json_enabled: true
  level: DEBUG
editor:
  wrap_width: 80
  command: vim
"""


def test_load_config_reads_sections(tmp_path, monkeypatch):
    monkeypatch.delenv('ISSUEKIT_DB', raising=False)
    monkeypatch.setenv('ISSUEKIT_TEST_DB', str(tmp_path / 'x.db'))
    path = tmp_path / 'issuekit.yaml'
    path.write_text(FULL_CONFIG)

    cfg = load_config(path)

    assert cfg.source_file == path
    assert cfg.database_path == tmp_path / 'x.db'
    assert cfg.api_url == 'https://ghe.example.com/api/v3'
    assert cfg.default_project == 'acme/widgets'
    assert cfg.per_page == 50
    assert cfg.timeout == 10.0
    assert cfg.logging_json_enabled is True
    assert cfg.logging_level == 'DEBUG'
    assert cfg.wrap_width == 80
    assert cfg.editor_command == 'vim'

    retry = cfg.retry_config()
    assert retry.server_error_attempts == 5
    assert retry.backoff_step == 1.5
    assert retry.rate_limit_margin == 30.0


def test_defaults_when_no_file_found(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('HOME', str(tmp_path))
    monkeypatch.delenv('ISSUEKIT_DB', raising=False)

    cfg = load_config()

    assert cfg.source_file is None
    assert cfg.default_project == 'golang/go'
    assert cfg.per_page == 100
    assert cfg.database_path == Path('~/githubissue.db').expanduser()
    assert cfg.token_file == Path('~/.github-issue-token').expanduser()
    assert cfg.wrap_width == 70
    assert cfg.editor_command is None


def test_env_db_override(tmp_path, monkeypatch):
    path = tmp_path / 'issuekit.yaml'
    path.write_text('database:\n  path: /nowhere/db\n')
    monkeypatch.setenv('ISSUEKIT_DB', str(tmp_path / 'env.db'))
    assert load_config(path).database_path == tmp_path / 'env.db'


def test_missing_explicit_file_is_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / 'missing.yaml')


def test_invalid_yaml_is_config_error(tmp_path):
    path = tmp_path / 'issuekit.yaml'
    path.write_text('github: [unclosed\n')
    with pytest.raises(ConfigError):
        load_config(path)


def test_bad_section_and_value(tmp_path):
    path = tmp_path / 'issuekit.yaml'
    path.write_text('github: just-a-string\n')
    with pytest.raises(ConfigError):
        load_config(path)

    path.write_text('github:\n  per_page: lots\n')
    with pytest.raises(ConfigError):
        load_config(path)
