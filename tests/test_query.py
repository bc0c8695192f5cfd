from __future__ import annotations

from conftest import DummyResponse
from issuekit.models import IssueState
from issuekit.query import (
    format_issue_list,
    issues_to_json,
    query_to_list_options,
    search_issues,
    sort_issues,
)

API = 'https://api.github.com/repos/o/r'


def test_simple_terms_map_to_list_parameters():
    opt = query_to_list_options('state:closed author:rsc label:NeedsFix,Go2 mentions:adg')
    assert opt is not None
    assert opt.params() == {
        'state': 'closed',
        'creator': 'rsc',
        'mentioned': 'adg',
        'labels': 'NeedsFix,Go2',
    }


def test_milestone_terms():
    assert query_to_list_options('milestone:Go1.5', {'Go1.5': 11}.get).params() == {'milestone': '11'}
    assert query_to_list_options('no:milestone').params() == {'milestone': 'none'}
    assert query_to_list_options('milestone:Unknown', {}.get) is None
    assert query_to_list_options('milestone:Go1.5') is None


def test_queries_needing_search():
    assert query_to_list_options('flaky') is None
    assert query_to_list_options('"exact phrase"') is None
    assert query_to_list_options('state:open state:closed') is None
    assert query_to_list_options('label:') is None
    assert query_to_list_options('is:pr') is None


def test_search_uses_list_endpoint_for_simple_queries(client, session):
    session.queue(
        DummyResponse(
            200,
            [
                {'number': 3, 'title': 'b'},
                {'number': 1, 'title': 'a'},
                {'number': 2, 'title': 'pr', 'pull_request': {}},
            ],
        )
    )
    issues = search_issues(client, 'state:open')
    assert [i.number for i in issues] == [1, 3]
    method, url, kw = session.request_log[0]
    assert url == f'{API}/issues'
    assert kw['params']['state'] == 'open'


def test_search_falls_back_to_search_api(client, session):
    session.queue(DummyResponse(200, {'total_count': 1, 'items': [{'number': 9, 'title': 'flaky'}]}))
    issues = search_issues(client, 'flaky')
    assert [i.number for i in issues] == [9]
    method, url, kw = session.request_log[0]
    assert url == 'https://api.github.com/search/issues'
    assert kw['params']['q'] == 'type:issue state:open repo:o/r flaky'


def test_sorting_and_formatting():
    issues = [IssueState(number=2, title='b'), IssueState(number=5, title='a'), IssueState(number=1, title='a')]
    assert [i.number for i in sort_issues(issues)] == [1, 5, 2]
    assert [i.number for i in sort_issues(issues, by_number=True)] == [5, 2, 1]
    assert format_issue_list(sort_issues(issues)) == '1\ta\n5\ta\n2\tb\n'
    assert [d['Ref'] for d in issues_to_json('o/r', issues)] == ['o/r#2', 'o/r#5', 'o/r#1']
