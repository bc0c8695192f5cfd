"""issuekit - a local, replayable cache of GitHub issue activity.

Typical library use:

    from issuekit import EventStore, GitHubRestClient, Synchronizer, refill

    with EventStore("~/githubissue.db") as store:
        store.add_project("golang/go")
        client = GitHubRestClient(token=token, repo="golang/go")
        Synchronizer(store, client).sync_project("golang/go")
        refill(store, "golang/go")

Raw events are the source of truth; the history table is derived from them
and can be rebuilt at any time. Issues are edited as plain text through
:mod:`issuekit.textform`.
"""

from __future__ import annotations

from .config import KitConfig, load_config
from .errors import (
    AuthError,
    ConfigError,
    EditParseError,
    GitHubAPIError,
    GraphQLError,
    MigrationError,
    StoreError,
    TransientAPIError,
)
from .github_rest import GitHubRestClient
from .models import Action, EditIntent, HistoryAction, IssueState, ItemType, RawEvent
from .refill import refill
from .session import SessionContext, open_bulk, open_issue, open_search
from .store import EventStore
from .sync import Synchronizer

__version__ = "0.1.0"

__all__ = [
    "Action",
    "AuthError",
    "ConfigError",
    "EditIntent",
    "EditParseError",
    "EventStore",
    "GitHubAPIError",
    "GitHubRestClient",
    "GraphQLError",
    "HistoryAction",
    "IssueState",
    "ItemType",
    "KitConfig",
    "MigrationError",
    "RawEvent",
    "SessionContext",
    "StoreError",
    "Synchronizer",
    "TransientAPIError",
    "__version__",
    "load_config",
    "open_bulk",
    "open_issue",
    "open_search",
    "refill",
]
