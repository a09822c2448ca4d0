"""Tests for roadmap.github_projects."""

import subprocess
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from roadmap.errors import GitHubAuthError, GitHubRequestError, ProjectNotFoundError
from roadmap.github_projects import (
    Iteration,
    Milestone,
    fetch_project_items,
    get_project,
    graphql,
    list_organization_projects,
    resolve_token,
)


def _response(status=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {"data": {}}
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f"{status} error", response=response
        )
    return response


def _item_node(node_id, title="Item", number=None, field_values=None, **content):
    content.setdefault("__typename", "Issue")
    content.setdefault("state", "OPEN")
    return {
        "id": node_id,
        "type": "ISSUE",
        "createdAt": "2024-01-02T10:00:00Z",
        "isArchived": False,
        "fieldValues": {"nodes": field_values or []},
        "content": {"title": title, "number": number, **content},
    }


def _items_page(nodes, has_next=False, cursor=None):
    return {
        "data": {
            "node": {
                "items": {
                    "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
                    "nodes": nodes,
                }
            }
        }
    }


@pytest.fixture
def no_sleep():
    with patch("roadmap.github_projects.time.sleep") as sleep:
        yield sleep


class TestGraphql:
    @patch("roadmap.github_projects.requests.post")
    def test_returns_data(self, mock_post):
        mock_post.return_value = _response(payload={"data": {"viewer": {"login": "octo"}}})
        assert graphql("tok", "query") == {"viewer": {"login": "octo"}}
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer tok"

    @patch("roadmap.github_projects.requests.post")
    def test_401_is_fatal_without_retry(self, mock_post, no_sleep):
        mock_post.return_value = _response(status=401)
        with pytest.raises(GitHubAuthError):
            graphql("tok", "query")
        assert mock_post.call_count == 1
        no_sleep.assert_not_called()

    @patch("roadmap.github_projects.requests.post")
    def test_403_names_scope(self, mock_post, no_sleep):
        mock_post.return_value = _response(
            status=403, headers={"X-Accepted-OAuth-Scopes": "read:project"}
        )
        with pytest.raises(GitHubAuthError, match="read:project"):
            graphql("tok", "query")
        assert mock_post.call_count == 1

    @patch("roadmap.github_projects.requests.post")
    def test_insufficient_scopes_error(self, mock_post):
        mock_post.return_value = _response(
            payload={
                "data": None,
                "errors": [
                    {
                        "type": "INSUFFICIENT_SCOPES",
                        "message": "Your token has not been granted the required scopes to "
                        "execute this query. The 'projectV2' field requires one of the "
                        "following scopes: ['read:project'], but your token has only been "
                        "granted the: ['repo'] scopes.",
                    }
                ],
            }
        )
        with pytest.raises(GitHubAuthError, match="'read:project' scope"):
            graphql("tok", "query")

    @patch("roadmap.github_projects.requests.post")
    def test_not_found_error(self, mock_post):
        mock_post.return_value = _response(
            payload={"errors": [{"type": "NOT_FOUND", "message": "Could not resolve"}]}
        )
        with pytest.raises(ProjectNotFoundError):
            graphql("tok", "query")

    @patch("roadmap.github_projects.requests.post")
    def test_other_graphql_error(self, mock_post):
        mock_post.return_value = _response(payload={"errors": [{"message": "Parse error"}]})
        with pytest.raises(GitHubRequestError, match="Parse error"):
            graphql("tok", "query")

    @patch("roadmap.github_projects.requests.post")
    def test_transient_errors_retried(self, mock_post, no_sleep):
        mock_post.side_effect = [
            requests.ConnectionError("reset"),
            _response(status=502),
            _response(payload={"data": {"ok": True}}),
        ]
        assert graphql("tok", "query", base_delay=1.0) == {"ok": True}
        assert mock_post.call_count == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [1.0, 2.0]

    @patch("roadmap.github_projects.requests.post")
    def test_retries_exhausted(self, mock_post, no_sleep):
        mock_post.side_effect = requests.Timeout("slow")
        with pytest.raises(GitHubRequestError, match="after 3 attempts"):
            graphql("tok", "query", max_attempts=3)
        assert mock_post.call_count == 3
        assert no_sleep.call_count == 2

    @patch("roadmap.github_projects.requests.post")
    def test_rate_limit_honours_retry_after(self, mock_post, no_sleep):
        mock_post.side_effect = [
            _response(status=403, headers={"X-RateLimit-Remaining": "0", "Retry-After": "30"}),
            _response(payload={"data": {}}),
        ]
        graphql("tok", "query", base_delay=0.5)
        no_sleep.assert_called_once_with(30)

    @patch("roadmap.github_projects.requests.post")
    def test_client_error_not_retried(self, mock_post, no_sleep):
        mock_post.return_value = _response(status=400)
        with pytest.raises(GitHubRequestError):
            graphql("tok", "query")
        assert mock_post.call_count == 1


class TestGetProject:
    @patch("roadmap.github_projects.requests.post")
    def test_found(self, mock_post):
        mock_post.return_value = _response(
            payload={
                "data": {
                    "organization": {
                        "projectV2": {
                            "id": "PVT_1",
                            "number": 1,
                            "title": "Roadmap",
                            "url": "https://github.com/orgs/acme/projects/1",
                        }
                    }
                }
            }
        )
        project = get_project("tok", "acme", 1)
        assert project.id == "PVT_1"
        assert project.title == "Roadmap"
        variables = mock_post.call_args.kwargs["json"]["variables"]
        assert variables == {"organization": "acme", "number": 1}

    @patch("roadmap.github_projects.requests.post")
    def test_missing(self, mock_post):
        mock_post.return_value = _response(payload={"data": {"organization": {"projectV2": None}}})
        with pytest.raises(ProjectNotFoundError, match="Project 7 not found"):
            get_project("tok", "acme", 7)


class TestFetchProjectItems:
    @patch("roadmap.github_projects.requests.post")
    def test_parses_items(self, mock_post):
        node = _item_node(
            "PVTI_1",
            title="Add login",
            number=12,
            url="https://github.com/acme/portal/issues/12",
            createdAt="2024-01-01T08:00:00Z",
            labels={"nodes": [{"name": "epic: Portal"}]},
            assignees={"nodes": [{"login": "octo"}]},
            milestone={"title": "v1", "dueOn": "2024-03-01T00:00:00Z"},
            field_values=[
                {"__typename": "ProjectV2ItemFieldSingleSelectValue", "name": "High", "field": {"name": "Priority"}},
                {"__typename": "ProjectV2ItemFieldDateValue", "date": "2024-01-15", "field": {"name": "Start Date"}},
                {"__typename": "ProjectV2ItemFieldNumberValue", "number": 3, "field": {"name": "Points"}},
                {"__typename": "ProjectV2ItemFieldTextValue", "text": "Portal", "field": {"name": "Epic"}},
                {
                    "__typename": "ProjectV2ItemFieldIterationValue",
                    "title": "Sprint 1",
                    "startDate": "2024-01-08",
                    "duration": 14,
                    "field": {"name": "Iteration"},
                },
                {"__typename": "ProjectV2ItemFieldRepositoryValue"},
                {},
            ],
        )
        mock_post.return_value = _response(payload=_items_page([node]))

        items = fetch_project_items("tok", "PVT_1", 50)

        assert len(items) == 1
        item = items[0]
        assert item.id == "PVTI_1"
        assert item.title == "Add login"
        assert item.item_type == "issue"
        assert item.number == 12
        assert item.labels == ["epic: Portal"]
        assert item.assignees == ["octo"]
        assert item.created_at == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert item.milestone == Milestone("v1", date(2024, 3, 1))
        assert item.fields == {
            "Priority": "High",
            "Start Date": date(2024, 1, 15),
            "Points": 3.0,
            "Epic": "Portal",
            "Iteration": Iteration("Sprint 1", date(2024, 1, 8), 14),
        }

    @patch("roadmap.github_projects.requests.post")
    def test_merged_pull_request_and_draft(self, mock_post):
        nodes = [
            _item_node("PR", __typename="PullRequest", state="CLOSED", mergedAt="2024-02-01T00:00:00Z"),
            {"id": "D", "type": "DRAFT_ISSUE", "createdAt": "2024-01-05T00:00:00Z",
             "fieldValues": {"nodes": []}, "content": {"__typename": "DraftIssue", "title": "Idea"}},
        ]
        mock_post.return_value = _response(payload=_items_page(nodes))
        pr, draft = fetch_project_items("tok", "PVT_1", 50)
        assert pr.item_type == "pull_request"
        assert pr.state == "MERGED"
        assert draft.item_type == "draft"
        assert draft.state is None
        assert draft.created_at == datetime(2024, 1, 5, tzinfo=timezone.utc)

    @patch("roadmap.github_projects.requests.post")
    def test_paginates_in_order(self, mock_post):
        mock_post.side_effect = [
            _response(payload=_items_page([_item_node("1"), _item_node("2")], True, "c1")),
            _response(payload=_items_page([_item_node("3")], False, None)),
        ]
        items = fetch_project_items("tok", "PVT_1", 50)
        assert [i.id for i in items] == ["1", "2", "3"]
        second = mock_post.call_args_list[1].kwargs["json"]["variables"]
        assert second["cursor"] == "c1"

    @patch("roadmap.github_projects.requests.post")
    def test_respects_item_cap(self, mock_post, caplog):
        mock_post.return_value = _response(
            payload=_items_page([_item_node("1"), _item_node("2")], True, "c1")
        )
        items = fetch_project_items("tok", "PVT_1", 2)
        assert [i.id for i in items] == ["1", "2"]
        assert mock_post.call_count == 1
        assert mock_post.call_args.kwargs["json"]["variables"]["first"] == 2
        assert "roadmap.fetch.truncated" in caplog.text

    @patch("roadmap.github_projects.requests.post")
    def test_skips_archived(self, mock_post):
        archived = _item_node("old")
        archived["isArchived"] = True
        mock_post.return_value = _response(payload=_items_page([archived, _item_node("new")]))
        assert [i.id for i in fetch_project_items("tok", "PVT_1", 50)] == ["new"]

    @patch("roadmap.github_projects.requests.post")
    def test_empty_board(self, mock_post):
        mock_post.return_value = _response(payload=_items_page([]))
        assert fetch_project_items("tok", "PVT_1", 50) == []


class TestListOrganizationProjects:
    @patch("roadmap.github_projects.requests.post")
    def test_sorted_by_number(self, mock_post):
        mock_post.return_value = _response(
            payload={
                "data": {
                    "organization": {
                        "projectsV2": {
                            "nodes": [
                                {"number": 3, "title": "Ops", "url": "u3", "closed": True},
                                {"number": 1, "title": "Roadmap", "url": "u1", "closed": False},
                            ]
                        }
                    }
                }
            }
        )
        projects = list_organization_projects("tok", "acme")
        assert [p["number"] for p in projects] == [1, 3]
        assert projects[1]["closed"] is True


class TestResolveToken:
    def test_configured_token(self):
        assert resolve_token("ghp_abc") == "ghp_abc"

    @patch("roadmap.github_projects.subprocess.run")
    def test_falls_back_to_gh_cli(self, mock_run):
        mock_run.return_value = MagicMock(stdout="gho_cli\n")
        assert resolve_token("use-gh-cli") == "gho_cli"
        assert mock_run.call_args.args[0] == ["gh", "auth", "token"]

    @patch("roadmap.github_projects.subprocess.run")
    def test_gh_cli_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        with pytest.raises(GitHubAuthError, match="gh auth login"):
            resolve_token(None)

    @patch("roadmap.github_projects.subprocess.run")
    def test_gh_cli_not_logged_in(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["gh", "auth", "token"])
        with pytest.raises(GitHubAuthError):
            resolve_token("")
