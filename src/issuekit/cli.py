"""issuekit command line.

Subcommands:
  init        create (or migrate) the local database
  add         start tracking owner/repo projects
  sync        incremental sync of tracked projects
  resync      sync, then walk every known issue's event list in full
  refill      rebuild the derived history table from raw events
  status      show per-project checkpoints
  retime      backfill missing observation times
  show        print one issue
  query       list issues matching a query
  edit        edit an issue, create one (``new``), or bulk-edit a query
  milestones  list open milestones
  report      activity / milestone / label reports over history

Exit codes: 0 ok, 1 failure, 2 usage error.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import KitConfig, load_config
from .editor import edit_text, run_editor
from .env_auth import EnvAuthConfig, create_env_auth_manager
from .errors import ConfigError, EditParseError, classify_error, redact
from .github_rest import GitHubRestClient
from .logging import configure_logging
from .models import Action, IssueState, format_time
from .query import format_issue_list, issues_to_json, search_issues, sort_issues
from .refill import refill
from .report import (
    daily_label_counts,
    daily_open_by_milestone,
    render_json,
    render_table,
    weekly_activity,
)
from .store import EventStore
from .sync import Synchronizer, sync_all
from .textform import (
    CREATE_TEMPLATE,
    bulk_apply,
    bulk_edit_start,
    create_from_text,
    issue_to_json,
    render_issue,
    write_issue,
)
from .ux import (
    print_error,
    print_info,
    print_success,
    print_summary_box,
    print_sync_report,
    print_warning,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

_MAX_HELP_WIDTH = 100


class _HelpFormatter(argparse.HelpFormatter):
    def __init__(self, prog: str) -> None:
        super().__init__(prog, max_help_position=30, width=_MAX_HELP_WIDTH)


class _FormatterArgumentParser(argparse.ArgumentParser):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("formatter_class", _HelpFormatter)
        super().__init__(*args, **kwargs)


def _build_parser() -> argparse.ArgumentParser:
    p = _FormatterArgumentParser(prog="issuekit", description="Local GitHub issue cache and editor")
    p.add_argument("--config", help="Configuration file (default: issuekit.yaml if present)")
    p.add_argument("--db", help="Database path (overrides config and ISSUEKIT_DB)")
    p.add_argument("-p", "--project", help="owner/repo for show/query/edit/milestones/report")
    p.add_argument("--json-logs", action="store_true", help="Emit log records as JSON")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging, including HTTP")
    sub = p.add_subparsers(
        dest="cmd", required=True, parser_class=_FormatterArgumentParser, metavar="<command>"
    )

    sub.add_parser("init", help="Create or migrate the local database")

    pa = sub.add_parser("add", help="Track one or more projects")
    pa.add_argument("projects", nargs="+", metavar="owner/repo")

    for name, text in (("sync", "Incremental sync"), ("resync", "Full event resync")):
        ps = sub.add_parser(name, help=text)
        ps.add_argument("projects", nargs="*", metavar="owner/repo", help="Default: all tracked")

    pr = sub.add_parser("refill", help="Rebuild history from raw events")
    pr.add_argument("--full", action="store_true", help="Drop history and replay everything")
    pr.add_argument("projects", nargs="*", metavar="owner/repo")

    sub.add_parser("status", help="Show sync checkpoints")
    sub.add_parser("retime", help="Backfill missing observation times")

    psh = sub.add_parser("show", help="Print one issue")
    psh.add_argument("number", type=int)
    psh.add_argument("--json", action="store_true")
    psh.add_argument("--raw", action="store_true", help="Do not wrap text")

    pq = sub.add_parser("query", help="List issues matching a query")
    pq.add_argument("terms", nargs="+")
    pq.add_argument("--json", action="store_true")
    pq.add_argument("--by-number", action="store_true", help="Sort by decreasing number")

    pe = sub.add_parser("edit", help="Edit issue N, 'new', or bulk-edit a query")
    pe.add_argument("target", nargs="+", help="Issue number, 'new', or query terms")

    pm = sub.add_parser("milestones", help="List open milestones")
    pm.add_argument("--json", action="store_true")

    prep = sub.add_parser("report", help="Reports over history")
    prep.add_argument("kind", choices=("activity", "milestones", "labels"))
    prep.add_argument("--milestone", action="append", default=[], dest="milestones")
    prep.add_argument("--label", action="append", default=[], dest="labels")
    prep.add_argument("--action", help="Only count this action (activity report)")
    prep.add_argument("--since", help="YYYY-MM-DD")
    prep.add_argument("--top", type=int, default=40)
    prep.add_argument("--json", action="store_true")
    return p


# ---- wiring -----------------------------------------------------------------


def _make_client(cfg: KitConfig, project: str, *, log_http: bool = False) -> GitHubRestClient:
    auth = create_env_auth_manager(
        EnvAuthConfig(
            load_dotenv=cfg.env_auth_load_dotenv,
            dotenv_path=cfg.env_auth_dotenv_path,
            token_file=cfg.token_file,
        )
    )
    return GitHubRestClient(
        token=auth.get_github_token(),
        repo=project,
        base_url=cfg.api_url,
        graphql_url=cfg.graphql_url,
        per_page=cfg.per_page,
        timeout=cfg.timeout,
        retry=cfg.retry_config(),
        log_http=log_http,
    )


def _open_store(cfg: KitConfig) -> EventStore:
    return EventStore(cfg.database_path)


def _project(cfg: KitConfig, args: argparse.Namespace) -> str:
    return args.project or cfg.default_project


def _select_projects(store: EventStore, wanted: list[str]) -> list[str] | None:
    tracked = [p.name for p in store.list_projects()]
    if not wanted:
        return tracked
    unknown = [w for w in wanted if w not in tracked]
    for name in unknown:
        print_error(f"unknown project {name}; run 'issuekit add {name}' first")
    return None if unknown else wanted


# ---- commands ---------------------------------------------------------------


def _cmd_init(cfg: KitConfig, args: argparse.Namespace) -> int:
    store = _open_store(cfg)
    try:
        version = store.initialize()
    finally:
        store.close()
    print_success(f"database ready at {cfg.database_path} (schema v{version})")
    return EXIT_OK


def _cmd_add(cfg: KitConfig, args: argparse.Namespace) -> int:
    with _open_store(cfg) as store:
        for name in args.projects:
            if store.add_project(name):
                print_success(f"tracking {name}")
            else:
                print_info(f"{name} is already tracked")
    return EXIT_OK


def _cmd_sync(cfg: KitConfig, args: argparse.Namespace) -> int:
    resync = args.cmd == "resync"
    with _open_store(cfg) as store:
        names = _select_projects(store, args.projects)
        if names is None:
            return EXIT_USAGE
        if not names:
            print_warning("no projects tracked; use 'issuekit add owner/repo'")
            return EXIT_OK
        client = _make_client(cfg, names[0], log_http=args.verbose)
        syncer = Synchronizer(store, client)
        results = sync_all(
            syncer,
            names,
            resync=resync,
            on_error=lambda name, exc: print_error(
                redact(f"{args.cmd} {name}: {classify_error(exc).message}")
            ),
        )
        failed = False
        for outcome in results.values():
            if isinstance(outcome, Exception):
                failed = True
            else:
                print_sync_report(outcome)
    return EXIT_FAILURE if failed else EXIT_OK


def _cmd_refill(cfg: KitConfig, args: argparse.Namespace) -> int:
    with _open_store(cfg) as store:
        names = _select_projects(store, args.projects)
        if names is None:
            return EXIT_USAGE
        for name in names:
            result = refill(store, name, full=args.full)
            print_success(
                f"refill {name}: {result.actions} action(s) from {result.events} raw event(s)"
            )
    return EXIT_OK


def _cmd_status(cfg: KitConfig, args: argparse.Namespace) -> int:
    with _open_store(cfg) as store:
        projects = store.list_projects()
        if not projects:
            print_info("no projects tracked")
        for proj in projects:
            print_summary_box(
                proj.name,
                [
                    ("issues since", format_time(proj.issue_date) or "-"),
                    ("comments since", format_time(proj.comment_date) or "-"),
                    ("last event id", proj.event_id or "-"),
                    ("event etag", proj.event_etag or "-"),
                    ("refilled through", proj.refill_seq or "-"),
                    ("raw events", store.count_raw(proj.name)),
                ],
            )
    return EXIT_OK


def _cmd_retime(cfg: KitConfig, args: argparse.Namespace) -> int:
    with _open_store(cfg) as store:
        updated = store.retime()
    print_success(f"retimed {updated} raw event(s)")
    return EXIT_OK


def _load_issue(
    client: GitHubRestClient, number: int
) -> tuple[IssueState, list[dict[str, Any]], list[dict[str, Any]]]:
    issue = IssueState.from_api(client.get_issue(number))
    return issue, client.list_comments(number), client.list_issue_events(number)


def _cmd_show(cfg: KitConfig, args: argparse.Namespace) -> int:
    project = _project(cfg, args)
    client = _make_client(cfg, project, log_http=args.verbose)
    issue, comments, events = _load_issue(client, args.number)
    if args.json:
        print(json.dumps(issue_to_json(project, issue, comments), indent=2, ensure_ascii=False))
    else:
        sys.stdout.write(render_issue(issue, comments, events, width=cfg.wrap_width, raw=args.raw))
    return EXIT_OK


def _cmd_query(cfg: KitConfig, args: argparse.Namespace) -> int:
    project = _project(cfg, args)
    client = _make_client(cfg, project, log_http=args.verbose)
    issues = search_issues(client, " ".join(args.terms))
    if args.by_number:
        issues = sort_issues(issues, by_number=True)
    if args.json:
        print(json.dumps(issues_to_json(project, issues), indent=2, ensure_ascii=False))
    else:
        sys.stdout.write(format_issue_list(issues))
    return EXIT_OK


def _cmd_edit(cfg: KitConfig, args: argparse.Namespace) -> int:
    project = _project(cfg, args)
    client = _make_client(cfg, project, log_http=args.verbose)
    warnings: list[str] = []
    try:
        return _edit(cfg, client, project, args.target, warnings)
    finally:
        for msg in warnings:
            print_warning(msg)


def _edit(
    cfg: KitConfig,
    client: GitHubRestClient,
    project: str,
    target: list[str],
    warnings: list[str],
) -> int:
    if target == ["new"]:
        text = run_editor(CREATE_TEMPLATE, command=cfg.editor_command)
        if text == CREATE_TEMPLATE:
            print_info("no changes made")
            return EXIT_OK
        created = create_from_text(
            client, text, resolver=client.resolve_milestone, warnings=warnings
        )
        print_success(f"https://github.com/{project}/issues/{created.get('number')} created")
        return EXIT_OK

    if len(target) == 1 and target[0].isdigit():
        number = int(target[0])
        issue, comments, events = _load_issue(client, number)
        edited = edit_text(
            render_issue(issue, comments, events, width=cfg.wrap_width),
            command=cfg.editor_command,
        )
        if edited is None:
            print_info("no changes made")
            return EXIT_OK
        result = write_issue(client, issue, edited, resolver=client.resolve_milestone, warnings=warnings)
        if result.errors:
            print_error(result.summary())
            return EXIT_FAILURE
        print_success(f"https://github.com/{project}/issues/{number} updated")
        return EXIT_OK

    issues = search_issues(client, " ".join(target))
    if not issues:
        print_error("no issues matched search")
        return EXIT_FAILURE
    base, text = bulk_edit_start(issues)
    edited = edit_text(text, command=cfg.editor_command)
    if edited is None:
        print_info("no changes made")
        return EXIT_OK
    bulk = bulk_apply(
        client, base, edited, resolver=client.resolve_milestone, status=print_info, warnings=warnings
    )
    done = len(bulk.results) - len(bulk.failed_ids)
    if bulk.failed_ids:
        print_error(
            f"updated {done} issue(s); errors on " + ", ".join(f"#{n}" for n in bulk.failed_ids)
        )
        return EXIT_FAILURE
    print_success(f"updated {done} issue(s)")
    return EXIT_OK


def _cmd_milestones(cfg: KitConfig, args: argparse.Namespace) -> int:
    client = _make_client(cfg, _project(cfg, args), log_http=args.verbose)
    milestones = client.list_open_milestones()
    if args.json:
        print(json.dumps([vars(m) for m in milestones], indent=2))
        return EXIT_OK
    for m in milestones:
        due = (m.due_on or "")[:10]
        print(f"{m.title}\t{due}\t{m.open_issues}")
    return EXIT_OK


def _cmd_report(cfg: KitConfig, args: argparse.Namespace) -> int:
    project = _project(cfg, args)
    with _open_store(cfg) as store:
        actions = store.history(project)
    if args.kind == "activity":
        kind = Action(args.action) if args.action else None
        table = weekly_activity(actions, top=args.top, kind=kind, since=args.since)
    elif args.kind == "milestones":
        table = daily_open_by_milestone(actions, args.milestones, since=args.since)
    else:
        table = daily_label_counts(actions, args.labels, since=args.since)
    sys.stdout.write(render_json(table) + "\n" if args.json else render_table(table))
    return EXIT_OK


_HANDLERS: dict[str, Callable[[KitConfig, argparse.Namespace], int]] = {
    "init": _cmd_init,
    "add": _cmd_add,
    "sync": _cmd_sync,
    "resync": _cmd_sync,
    "refill": _cmd_refill,
    "status": _cmd_status,
    "retime": _cmd_retime,
    "show": _cmd_show,
    "query": _cmd_query,
    "edit": _cmd_edit,
    "milestones": _cmd_milestones,
    "report": _cmd_report,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print_error(str(exc))
        return EXIT_USAGE
    if args.db:
        cfg.database_path = Path(args.db).expanduser()
    level = "DEBUG" if args.verbose else "WARNING" if args.quiet else cfg.logging_level
    log = configure_logging(json_logging=args.json_logs or cfg.logging_json_enabled, level=level)

    handler = _HANDLERS[args.cmd]
    try:
        return handler(cfg, args)
    except EditParseError as exc:
        for problem in exc.problems:
            print_error(problem)
        return EXIT_FAILURE
    except ValueError as exc:
        print_error(str(exc))
        return EXIT_USAGE
    except Exception as exc:  # noqa: BLE001 - converted to exit status
        info = classify_error(exc)
        message = redact(f"{args.cmd}: {info.message}")
        log.log_error(message, error=info.category)
        print_error(message)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
