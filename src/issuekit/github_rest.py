"""GitHub REST/GraphQL transport.

Every call goes through :func:`issuekit.retry.run_with_retries`; a single
attempt (``_send``) turns the HTTP reply into either a response object or one
of the errors from :mod:`issuekit.errors`, which is what decides whether the
retry loop waits, backs off or gives up.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from .errors import GitHubAPIError, GraphQLError, TransientAPIError
from .retry import RetryConfig, run_with_retries

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_GRAPHQL_URL = "https://api.github.com/graphql"
USER_AGENT = "issuekit/0.1.0"
HTTP_ERROR_STATUS = 400
HTTP_NOT_MODIFIED = 304
HTTP_SERVER_ERROR = 500
RATE_LIMIT_STATUSES = (403, 429)

logger = logging.getLogger(__name__)

MILESTONES_QUERY = """
query($owner: String!, $repo: String!, $cursor: String) {
  repository(owner: $owner, name: $repo) {
    milestones(first: 100, after: $cursor, states: OPEN,
               orderBy: {field: DUE_DATE, direction: ASC}) {
      pageInfo { hasNextPage endCursor }
      nodes {
        number
        title
        dueOn
        issues(states: OPEN) { totalCount }
      }
    }
  }
}
"""


def next_link(header: str | None) -> str | None:
    """Return the ``rel="next"`` target of a ``Link`` header, if any."""
    if not header:
        return None
    for link in requests.utils.parse_header_links(header):
        if link.get("rel") == "next" and link.get("url"):
            return link["url"]
    return None


@dataclass
class RateInfo:
    limit: int = 0
    remaining: int = -1
    reset: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.limit > 0 and self.remaining == 0

    def update(self, headers: Any) -> None:
        try:
            if "X-RateLimit-Limit" in headers:
                self.limit = int(headers["X-RateLimit-Limit"])
            if "X-RateLimit-Remaining" in headers:
                self.remaining = int(headers["X-RateLimit-Remaining"])
            if "X-RateLimit-Reset" in headers:
                self.reset = float(headers["X-RateLimit-Reset"])
        except (TypeError, ValueError):
            logger.debug("unparseable rate limit headers: %r", dict(headers))


@dataclass
class Page:
    items: list[dict[str, Any]]
    next_url: str | None
    etag: str | None
    status: int

    @property
    def not_modified(self) -> bool:
        return self.status == HTTP_NOT_MODIFIED


@dataclass
class Milestone:
    number: int
    title: str
    due_on: str | None = None
    open_issues: int = 0


@dataclass
class GitHubRestClient:
    """Lightweight REST/GraphQL client for one GitHub repository."""

    token: str
    repo: str
    base_url: str = DEFAULT_API_URL
    graphql_url: str = DEFAULT_GRAPHQL_URL
    session: requests.Session | None = None
    per_page: int = 100
    timeout: float = 30.0
    retry: RetryConfig | None = None
    log_http: bool = False
    clock: Callable[[], float] = time.time
    rate: RateInfo = field(default_factory=RateInfo)
    _session: requests.Session = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._session = self.session or requests.Session()
        self._session.headers.setdefault("Authorization", f"Bearer {self.token}")
        self._session.headers.setdefault("Accept", "application/vnd.github+json")
        self._session.headers.setdefault("User-Agent", USER_AGENT)
        if self.retry is None:
            self.retry = RetryConfig()

    def for_repo(self, repo: str) -> GitHubRestClient:
        """Same credentials and session, different repository."""
        return GitHubRestClient(
            token=self.token,
            repo=repo,
            base_url=self.base_url,
            graphql_url=self.graphql_url,
            session=self._session,
            per_page=self.per_page,
            timeout=self.timeout,
            retry=self.retry,
            log_http=self.log_http,
            clock=self.clock,
            rate=self.rate,
        )

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo.split("/", 1)[1]

    def repo_path(self, suffix: str = "") -> str:
        return f"/repos/{self.repo}{suffix}"

    # ---- single attempt -----------------------------------------------
    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        etag: str | None = None,
    ) -> requests.Response:
        headers = dict(self._session.headers)
        if etag:
            headers["If-None-Match"] = etag
        start = time.perf_counter()
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientAPIError(f"{method} {url}: {exc}", kind="server") from exc
        if self.log_http:
            logger.debug(
                "HTTP %s %s -> %s (%.3fs)",
                method,
                url,
                response.status_code,
                time.perf_counter() - start,
            )
        self.rate.update(response.headers)
        self._check_status(method, url, response)
        return response

    def _check_status(self, method: str, url: str, response: requests.Response) -> None:
        status = response.status_code
        if status < HTTP_ERROR_STATUS:
            return
        headers = response.headers
        if status in RATE_LIMIT_STATUSES and headers.get("X-RateLimit-Remaining") == "0":
            reset = float(headers.get("X-RateLimit-Reset") or 0)
            margin = self.retry.rate_limit_margin if self.retry else 60.0
            delay = max(0.0, reset - self.clock()) + margin
            raise TransientAPIError(
                f"rate limit exhausted on {method} {url}",
                kind="rate_limit",
                delay=delay,
                status=status,
                response_text=response.text,
            )
        if status in RATE_LIMIT_STATUSES and headers.get("Retry-After"):
            raise TransientAPIError(
                f"secondary rate limit on {method} {url}",
                kind="throttle",
                delay=float(headers["Retry-After"]),
                status=status,
                response_text=response.text,
            )
        if status >= HTTP_SERVER_ERROR:
            raise TransientAPIError(
                f"GitHub API {method} {url} failed with {status}",
                kind="server",
                status=status,
                response_text=response.text,
            )
        raise GitHubAPIError(
            f"GitHub API {method} {url} failed with {status}",
            status=status,
            response_text=response.text,
        )

    # ---- REST helpers -------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        url = self._url(path)
        response = run_with_retries(
            lambda: self._send(method, url, params=params, json_body=json_body),
            cfg=self.retry,
        )
        if response.text:
            try:
                return response.json()
            except ValueError as exc:
                raise GitHubAPIError(
                    f"GitHub API {method} {url} returned malformed JSON",
                    status=response.status_code,
                    response_text=response.text,
                ) from exc
        return None

    def fetch_page(
        self,
        url: str,
        etag: str | None = None,
        *,
        params: dict[str, Any] | None = None,
    ) -> Page:
        """Fetch one page of a list endpoint.

        A 304 reply to a conditional request yields an empty page carrying
        the caller's validator; it is not an error.
        """
        full = self._url(url)
        response = run_with_retries(
            lambda: self._send("GET", full, params=params, etag=etag),
            cfg=self.retry,
        )
        if response.status_code == HTTP_NOT_MODIFIED:
            return Page(items=[], next_url=None, etag=etag, status=HTTP_NOT_MODIFIED)
        try:
            data = response.json()
        except ValueError as exc:
            raise GitHubAPIError(
                f"GitHub API GET {full} returned malformed JSON",
                status=response.status_code,
                response_text=response.text,
            ) from exc
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            data = data["items"]
        if not isinstance(data, list):
            raise GitHubAPIError(
                f"GitHub API GET {full} did not return a list",
                status=response.status_code,
                response_text=response.text,
            )
        return Page(
            items=[d for d in data if isinstance(d, dict)],
            next_url=next_link(response.headers.get("Link")),
            etag=response.headers.get("ETag"),
            status=response.status_code,
        )

    def paginate(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        etag: str | None = None,
    ) -> Iterator[Page]:
        """Yield pages following ``Link: rel="next"`` until exhausted.

        The validator applies to the first page only; a 304 ends the walk.
        """
        query = dict(params or {})
        query.setdefault("per_page", self.per_page)
        page = self.fetch_page(url, etag, params=query)
        yield page
        while page.next_url and not page.not_modified:
            page = self.fetch_page(page.next_url)
            yield page

    def _all(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for page in self.paginate(url, params=params):
            out.extend(page.items)
        return out

    # ---- GraphQL ------------------------------------------------------
    def _graphql_once(self, payload: dict[str, Any]) -> Any:
        cfg = self.retry or RetryConfig()
        try:
            response = self._session.request(
                "POST",
                self.graphql_url,
                json=payload,
                headers=dict(self._session.headers),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientAPIError(f"POST {self.graphql_url}: {exc}", kind="server") from exc
        self.rate.update(response.headers)
        if response.status_code != 200:  # noqa: PLR2004
            if "wait a few minutes" in (response.text or ""):
                raise TransientAPIError(
                    "graphql: asked to wait a few minutes",
                    kind="rate_limit",
                    delay=cfg.graphql_rate_limit_sleep,
                    status=response.status_code,
                    response_text=response.text,
                )
            self._check_status("POST", self.graphql_url, response)
        try:
            data = response.json()
        except ValueError as exc:
            raise GitHubAPIError(
                "graphql reply is not JSON",
                status=response.status_code,
                response_text=response.text,
            ) from exc
        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
            msg = str(first.get("message", ""))
            if "rate limit exceeded" in msg.lower():
                raise TransientAPIError(
                    f"graphql: {msg}",
                    kind="rate_limit",
                    delay=cfg.graphql_rate_limit_sleep,
                    response_text=response.text,
                )
            if "submitted too quickly" in msg.lower() or "too many requests" in msg.lower():
                raise TransientAPIError(
                    f"graphql: {msg}",
                    kind="throttle",
                    delay=cfg.graphql_throttle_sleep,
                    response_text=response.text,
                )
            raise GraphQLError(msg, response_text=response.text)
        return data.get("data") if isinstance(data, dict) else None

    def graphql(self, query: str, variables: dict[str, Any] | None = None) -> Any:
        payload = {"query": query, "variables": dict(variables or {})}
        return run_with_retries(lambda: self._graphql_once(payload), cfg=self.retry)

    def collect(
        self,
        query: str,
        variables: dict[str, Any],
        path: Sequence[str],
    ) -> list[Any]:
        """Run a cursor-paginated query and gather every node at ``path``.

        ``path`` names the keys from ``data`` down to the connection object,
        which must select ``pageInfo { hasNextPage endCursor }`` and ``nodes``.
        """
        out: list[Any] = []
        vars_ = dict(variables)
        vars_.setdefault("cursor", None)
        while True:
            node = self.graphql(query, vars_)
            for key in path:
                node = node.get(key) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                raise GitHubAPIError(f"graphql reply missing {'.'.join(path)}")
            out.extend(node.get("nodes") or [])
            info = node.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return out
            vars_["cursor"] = info.get("endCursor")

    # ---- Read operations ----------------------------------------------
    def rate_limit(self) -> RateInfo:
        data = self._request("GET", "/rate_limit")
        core = (data or {}).get("resources", {}).get("core", {})
        self.rate.limit = int(core.get("limit", self.rate.limit))
        self.rate.remaining = int(core.get("remaining", self.rate.remaining))
        self.rate.reset = float(core.get("reset", self.rate.reset))
        return self.rate

    def get_issue(self, number: int) -> dict[str, Any]:
        data = self._request("GET", self.repo_path(f"/issues/{number}"))
        if not isinstance(data, dict):
            raise GitHubAPIError(f"issue {self.repo}#{number}: unexpected reply")
        return data

    def list_comments(self, number: int) -> list[dict[str, Any]]:
        return self._all(self.repo_path(f"/issues/{number}/comments"))

    def list_issue_events(self, number: int) -> list[dict[str, Any]]:
        return self._all(self.repo_path(f"/issues/{number}/events"))

    def list_repo_issues(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """List issues by repository; pull requests are filtered out."""
        items = self._all(self.repo_path("/issues"), params)
        return [i for i in items if "pull_request" not in i]

    def search_issues(self, q: str) -> list[dict[str, Any]]:
        query = f"type:issue state:open repo:{self.repo} {q}".strip()
        return self._all("/search/issues", {"q": query})

    def list_milestones(self, state: str = "open") -> list[dict[str, Any]]:
        return self._all(self.repo_path("/milestones"), {"state": state})

    def list_open_milestones(self) -> list[Milestone]:
        nodes = self.collect(
            MILESTONES_QUERY,
            {"owner": self.owner, "repo": self.name},
            ("repository", "milestones"),
        )
        out = []
        for n in nodes:
            issues = n.get("issues") or {}
            out.append(
                Milestone(
                    number=int(n["number"]),
                    title=str(n.get("title") or ""),
                    due_on=n.get("dueOn"),
                    open_issues=int(issues.get("totalCount") or 0),
                )
            )
        return out

    def resolve_milestone(self, name: str) -> int | None:
        """Map an open milestone title to its number; None when unknown."""
        name = name.strip()
        for entry in self.list_milestones("open"):
            if entry.get("title") == name and isinstance(entry.get("number"), int):
                return int(entry["number"])
        return None

    # ---- Mutations ----------------------------------------------------
    def create_issue(
        self,
        *,
        title: str,
        body: str,
        labels: Iterable[str] | None = None,
        milestone: int | None = None,
        assignee: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = list(labels)
        if milestone is not None:
            payload["milestone"] = milestone
        if assignee:
            payload["assignees"] = [assignee]
        data = self._request("POST", self.repo_path("/issues"), json_body=payload)
        if not isinstance(data, dict):
            raise GitHubAPIError("create issue: unexpected reply")
        return data

    def edit_issue(self, number: int, **fields: Any) -> dict[str, Any]:
        """PATCH an issue with exactly the given fields.

        ``assignee=""`` clears the assignee and ``milestone=None`` clears the
        milestone; fields that are not passed are left alone.
        """
        payload: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "assignee":
                payload["assignees"] = [value] if value else []
            elif key == "labels":
                payload["labels"] = sorted(value)
            else:
                payload[key] = value
        data = self._request("PATCH", self.repo_path(f"/issues/{number}"), json_body=payload)
        return data if isinstance(data, dict) else {}

    def add_labels(self, number: int, labels: Iterable[str]) -> None:
        self._request(
            "POST",
            self.repo_path(f"/issues/{number}/labels"),
            json_body={"labels": list(labels)},
        )

    def remove_label(self, number: int, label: str) -> None:
        self._request(
            "DELETE",
            self.repo_path(f"/issues/{number}/labels/{quote(label, safe='')}"),
        )

    def create_comment(self, number: int, body: str) -> dict[str, Any]:
        data = self._request(
            "POST",
            self.repo_path(f"/issues/{number}/comments"),
            json_body={"body": body},
        )
        return data if isinstance(data, dict) else {}


__all__ = [
    "GitHubAPIError",
    "GitHubRestClient",
    "Milestone",
    "Page",
    "RateInfo",
    "next_link",
]
