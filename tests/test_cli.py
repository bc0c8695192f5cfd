"""End-to-end tests of the command line against a fake GitHub session."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from conftest import DummyResponse, DummySession
from issuekit import cli
from issuekit.github_rest import GitHubRestClient

API = "https://api.github.com/repos/o/r"

ISSUE = {
    "url": f"{API}/issues/1",
    "html_url": "https://github.com/o/r/issues/1",
    "number": 1,
    "title": "runtime: crash on exit",
    "state": "open",
    "labels": [],
    "user": {"login": "gopher"},
    "body": "Crashes.",
    "created_at": "2015-01-01T00:00:00Z",
    "updated_at": "2015-01-02T00:00:00Z",
}

LABELED = {
    "id": 5,
    "url": f"{API}/issues/events/5",
    "event": "labeled",
    "issue": {"number": 1},
    "actor": {"login": "rsc"},
    "label": {"name": "NeedsFix"},
    "created_at": "2015-01-01T01:00:00Z",
}


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("ISSUEKIT_DB", raising=False)
    session = DummySession()
    made: list[str] = []

    def make_client(cfg: Any, project: str, *, log_http: bool = False) -> GitHubRestClient:
        made.append(project)
        return GitHubRestClient(token="tkn", repo=project, session=session, clock=lambda: 1000.0)  # type: ignore[arg-type]

    monkeypatch.setattr(cli, "_make_client", make_client)
    return {"db": tmp_path / "issues.db", "session": session, "made": made}


def run(env: dict[str, Any], *args: str) -> int:
    return cli.main(["--db", str(env["db"]), "-q", *args])


def test_init_add_status(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    assert run(env, "init") == 0
    assert run(env, "add", "o/r", "o/s") == 0
    assert run(env, "add", "o/r") == 0
    err = capsys.readouterr().err
    assert "tracking o/r" in err
    assert "o/r is already tracked" in err

    assert run(env, "status") == 0
    out = capsys.readouterr().out
    assert "o/r\n" in out
    assert "raw events" in out


def test_add_rejects_bad_name(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    assert run(env, "add", "not-a-repo") == 1
    assert "invalid project name" in capsys.readouterr().err


def test_sync_unknown_project_is_usage_error(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    run(env, "add", "o/r")
    assert run(env, "sync", "x/y") == 2
    assert "unknown project x/y" in capsys.readouterr().err
    assert env["session"].request_log == []


def test_sync_refill_report(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    run(env, "add", "o/r")
    env["session"].queue(
        DummyResponse(200, [ISSUE]),
        DummyResponse(200, []),
        DummyResponse(200, [LABELED], {"ETag": 'W/"1"'}),
    )

    assert run(env, "sync") == 0
    assert "sync o/r: 2 new raw event(s)" in capsys.readouterr().err

    assert run(env, "refill") == 0
    assert "refill o/r: 2 action(s) from 2 raw event(s)" in capsys.readouterr().err

    assert run(env, "-p", "o/r", "report", "labels", "--label", "NeedsFix") == 0
    assert capsys.readouterr().out == "Date\tNeedsFix\n2015-01-01\t1\n"

    assert run(env, "-p", "o/r", "report", "activity", "--json") == 0
    assert json.loads(capsys.readouterr().out) == [{"Week": "2015-W01", "gopher": 1, "rsc": 1}]


def test_sync_failure_exits_nonzero(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    run(env, "add", "o/r")
    env["session"].queue(DummyResponse(404, {"message": "Not Found"}))
    assert run(env, "sync", "o/r") == 1
    assert "sync o/r: GitHub API GET" in capsys.readouterr().err


def test_show_json(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    env["session"].queue(
        DummyResponse(200, ISSUE),
        DummyResponse(200, [{"user": {"login": "adg"}, "body": "Same here.", "created_at": "2015-01-03T00:00:00Z"}]),
        DummyResponse(200, []),
    )
    assert run(env, "-p", "o/r", "show", "1", "--json") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["Ref"] == "o/r#1"
    assert data["Comments"][0]["Author"] == "adg"
    assert env["made"] == ["o/r"]


def test_show_text(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    env["session"].queue(DummyResponse(200, ISSUE), DummyResponse(200, []), DummyResponse(200, []))
    assert run(env, "-p", "o/r", "show", "1") == 0
    out = capsys.readouterr().out
    assert out.startswith("Title: runtime: crash on exit\n")
    assert "Reported by gopher" in out


def test_query_lists_issues(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    env["session"].queue(DummyResponse(200, [ISSUE, {**ISSUE, "number": 2, "title": "a first"}]))
    assert run(env, "-p", "o/r", "query", "state:open") == 0
    assert capsys.readouterr().out == "2\ta first\n1\truntime: crash on exit\n"


def test_edit_single_issue(env: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_edit(text: str, *, command: str | None = None, runner: Any = None) -> str:
        return text.replace("State: open", "State: closed")

    monkeypatch.setattr(cli, "edit_text", fake_edit)
    session = env["session"]
    session.queue(
        DummyResponse(200, ISSUE),
        DummyResponse(200, []),
        DummyResponse(200, []),
        DummyResponse(200, {**ISSUE, "state": "closed"}),
    )

    assert run(env, "-p", "o/r", "edit", "1") == 0
    method, url, kw = session.request_log[-1]
    assert (method, url, kw["json"]) == ("PATCH", f"{API}/issues/1", {"state": "closed"})


def test_edit_parse_error_exits_one(
    env: dict[str, Any], monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "edit_text", lambda text, **kw: "Bogus: line\n\n")
    env["session"].queue(DummyResponse(200, ISSUE), DummyResponse(200, []), DummyResponse(200, []))
    assert run(env, "-p", "o/r", "edit", "1") == 1
    assert "unknown summary line: Bogus: line" in capsys.readouterr().err


def test_edit_without_changes(env: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "edit_text", lambda text, **kw: None)
    env["session"].queue(DummyResponse(200, ISSUE), DummyResponse(200, []), DummyResponse(200, []))
    assert run(env, "-p", "o/r", "edit", "1") == 0
    assert len(env["session"].request_log) == 3


def test_missing_config_file_is_usage_error(env: dict[str, Any], capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--config", "nope.yaml", "status"]) == 2
    assert "Configuration file not found" in capsys.readouterr().err


def test_edit_unknown_milestone_is_a_warning(
    env: dict[str, Any], monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "edit_text", lambda text, **kw: text.replace("Milestone: ", "Milestone: Go9"))
    session = env["session"]
    session.queue(
        DummyResponse(200, ISSUE),
        DummyResponse(200, []),
        DummyResponse(200, []),
        DummyResponse(200, [{"number": 3, "title": "Go1.5"}]),
    )

    assert run(env, "-p", "o/r", "edit", "1") == 0
    assert "Unknown milestone: Go9" in capsys.readouterr().err
    assert session.request_log[-1][1] == f"{API}/milestones"
    assert all(method == "GET" for method, _, _ in session.request_log)


def test_make_client_reads_token_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for var in ("GH_TOKEN", "GITHUB_ACCESS_TOKEN", "GH_ACCESS_TOKEN", "GITHUB_PAT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("GITHUB_TOKEN", "abc")
    client = cli._make_client(cli.load_config(), "o/r")
    assert client.token == "abc"
    assert client.repo == "o/r"
    assert client._session.headers["Authorization"] == "Bearer abc"
