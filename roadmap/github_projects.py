from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import requests

from roadmap.errors import GitHubAuthError, GitHubRequestError, ProjectNotFoundError

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
PAGE_SIZE = 100
DEFAULT_SCOPE = "read:project"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Iteration:
    title: str | None
    start: date | None
    duration_days: int


@dataclass(frozen=True)
class Milestone:
    title: str
    due: date | None


@dataclass
class ProjectInfo:
    id: str
    title: str
    number: int
    url: str | None = None
    short_description: str | None = None


@dataclass
class ProjectItem:
    id: str
    title: str
    item_type: str
    fields: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    closed_at: datetime | None = None
    state: str | None = None
    number: int | None = None
    url: str | None = None
    labels: List[str] = field(default_factory=list)
    assignees: List[str] = field(default_factory=list)
    milestone: Milestone | None = None
    is_archived: bool = False


PROJECT_QUERY = """
query($organization: String!, $number: Int!) {
  organization(login: $organization) {
    projectV2(number: $number) {
      id
      number
      title
      shortDescription
      url
    }
  }
}
"""

ITEMS_QUERY = """
query($projectId: ID!, $first: Int!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: $first, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          type
          createdAt
          isArchived
          fieldValues(first: 20) {
            nodes {
              __typename
              ... on ProjectV2ItemFieldTextValue { text field { ... on ProjectV2FieldCommon { name } } }
              ... on ProjectV2ItemFieldSingleSelectValue { name field { ... on ProjectV2FieldCommon { name } } }
              ... on ProjectV2ItemFieldDateValue { date field { ... on ProjectV2FieldCommon { name } } }
              ... on ProjectV2ItemFieldNumberValue { number field { ... on ProjectV2FieldCommon { name } } }
              ... on ProjectV2ItemFieldMilestoneValue { milestone { title dueOn } field { ... on ProjectV2FieldCommon { name } } }
              ... on ProjectV2ItemFieldIterationValue {
                title startDate duration
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
          content {
            __typename
            ... on Issue {
              title url state number createdAt closedAt
              assignees(first: 10) { nodes { login } }
              labels(first: 20) { nodes { name } }
              milestone { title dueOn }
            }
            ... on PullRequest {
              title url state number createdAt closedAt mergedAt
              assignees(first: 10) { nodes { login } }
              labels(first: 20) { nodes { name } }
              milestone { title dueOn }
            }
            ... on DraftIssue {
              title createdAt
              assignees(first: 10) { nodes { login } }
            }
          }
        }
      }
    }
  }
}
"""

ORG_PROJECTS_QUERY = """
query($organization: String!) {
  organization(login: $organization) {
    projectsV2(first: 50) {
      nodes { id number title url closed }
    }
  }
}
"""

_CONTENT_TYPES = {
    "Issue": "issue",
    "PullRequest": "pull_request",
    "DraftIssue": "draft",
}


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def github_headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
    }


def resolve_token(token: str | None) -> str:
    if token and token != "use-gh-cli":
        return token
    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise GitHubAuthError(
            "No GITHUB_TOKEN configured and the GitHub CLI token is unavailable. "
            "Run `gh auth login` or set GITHUB_TOKEN."
        ) from exc
    gh_token = result.stdout.strip()
    if not gh_token:
        raise GitHubAuthError("GitHub CLI returned an empty token. Run `gh auth login`.")
    logger.info("github.token.gh_cli")
    return gh_token


def _missing_scope(message: str) -> str:
    match = re.search(r"one of the following scopes: \[([^\]]*)\]", message)
    if match:
        scopes = [s.strip().strip("'\"") for s in match.group(1).split(",") if s.strip()]
        if scopes:
            return " or ".join(scopes)
    return DEFAULT_SCOPE


def _raise_for_graphql_errors(errors: list[dict]) -> None:
    types = {str(err.get("type") or "").upper() for err in errors}
    message = "; ".join(str(err.get("message") or err) for err in errors)

    if "INSUFFICIENT_SCOPES" in types or "FORBIDDEN" in types:
        scope = _missing_scope(message)
        raise GitHubAuthError(
            f"GitHub token lacks the required '{scope}' scope: {message}"
        )
    if "NOT_FOUND" in types:
        raise ProjectNotFoundError(message)
    raise GitHubRequestError(f"GitHub GraphQL query failed: {message}")


def _is_rate_limited(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    return bool(response.headers.get("Retry-After"))


def graphql(
    token: str,
    query: str,
    variables: dict | None = None,
    *,
    url: str = GITHUB_GRAPHQL_URL,
    timeout: int = 20,
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> dict:
    last_exc: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        retry_after: str | None = None
        try:
            response = requests.post(
                url,
                json={"query": query, "variables": variables or {}},
                headers=github_headers(token),
                timeout=timeout,
            )
            if response.status_code == 401:
                logger.error("github.auth_failed", extra={"status": response.status_code})
                raise GitHubAuthError(
                    "GitHub authentication failed (401): the token is invalid or expired"
                )
            if response.status_code == 403 and not _is_rate_limited(response):
                scope = response.headers.get("X-Accepted-OAuth-Scopes") or DEFAULT_SCOPE
                logger.error("github.forbidden", extra={"status": response.status_code})
                raise GitHubAuthError(
                    f"GitHub denied access (403): the token needs the '{scope}' scope"
                )
            if response.status_code in {403, 429}:
                retry_after = response.headers.get("Retry-After")
                logger.warning(
                    "github.rate_limit",
                    extra={"reset": response.headers.get("X-RateLimit-Reset")},
                )
                raise requests.HTTPError(
                    f"GitHub rate limit exceeded ({response.status_code})", response=response
                )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            last_exc = exc
            status = exc.response.status_code if exc.response is not None else None
            if status is not None and 400 <= status < 500 and status not in {403, 429}:
                raise GitHubRequestError(f"GitHub request rejected ({status}): {exc}") from exc
            logger.warning(
                "github.request.failed",
                extra={"attempt": attempt, "max_attempts": max_attempts, "error": str(exc)},
            )
            if attempt >= max_attempts:
                break

            delay = base_delay * (2 ** (attempt - 1))
            if retry_after and retry_after.isdigit():
                delay = max(delay, int(retry_after))
            logger.info("github.request.retry_wait", extra={"wait_seconds": delay})
            time.sleep(delay)
            continue

        if payload.get("errors"):
            _raise_for_graphql_errors(payload["errors"])
        return payload.get("data") or {}

    raise GitHubRequestError(
        f"GitHub GraphQL request failed after {max_attempts} attempts: {last_exc}"
    ) from last_exc


def get_project(token: str, organization: str, number: int, **options: Any) -> ProjectInfo:
    data = graphql(
        token,
        PROJECT_QUERY,
        {"organization": organization, "number": number},
        **options,
    )
    project = (data.get("organization") or {}).get("projectV2")
    if not project:
        raise ProjectNotFoundError(
            f"Project {number} not found in organization {organization}"
        )
    logger.info("roadmap.project.found", extra={"title": project.get("title")})
    return ProjectInfo(
        id=project["id"],
        title=project.get("title") or "",
        number=project.get("number") or number,
        url=project.get("url"),
        short_description=project.get("shortDescription"),
    )


def list_organization_projects(token: str, organization: str, **options: Any) -> List[dict]:
    data = graphql(token, ORG_PROJECTS_QUERY, {"organization": organization}, **options)
    nodes = ((data.get("organization") or {}).get("projectsV2") or {}).get("nodes") or []
    projects = [
        {
            "number": node.get("number"),
            "title": node.get("title") or "",
            "url": node.get("url"),
            "closed": bool(node.get("closed")),
        }
        for node in nodes
        if node
    ]
    projects.sort(key=lambda p: p["number"] or 0)
    return projects


def _parse_field_value(fv: dict) -> tuple[str, Any] | None:
    name = (fv.get("field") or {}).get("name")
    if not name:
        return None

    typename = fv.get("__typename")
    if typename == "ProjectV2ItemFieldTextValue":
        return name, fv.get("text")
    if typename == "ProjectV2ItemFieldSingleSelectValue":
        return name, fv.get("name")
    if typename == "ProjectV2ItemFieldDateValue":
        return name, _parse_date(fv.get("date"))
    if typename == "ProjectV2ItemFieldNumberValue":
        number = fv.get("number")
        return name, float(number) if number is not None else None
    if typename == "ProjectV2ItemFieldIterationValue":
        return name, Iteration(
            title=fv.get("title"),
            start=_parse_date(fv.get("startDate")),
            duration_days=int(fv.get("duration") or 0),
        )
    if typename == "ProjectV2ItemFieldMilestoneValue":
        milestone = fv.get("milestone") or {}
        if not milestone.get("title"):
            return None
        return name, Milestone(title=milestone["title"], due=_parse_date(milestone.get("dueOn")))
    return None


def _parse_item(node: dict) -> ProjectItem:
    content = node.get("content") or {}
    typename = content.get("__typename") or ""

    fields: Dict[str, Any] = {}
    for fv in (node.get("fieldValues") or {}).get("nodes") or []:
        if not fv:
            continue
        parsed = _parse_field_value(fv)
        if parsed is None or parsed[1] is None:
            continue
        fields[parsed[0]] = parsed[1]

    milestone = None
    raw_milestone = content.get("milestone") or {}
    if raw_milestone.get("title"):
        milestone = Milestone(
            title=raw_milestone["title"], due=_parse_date(raw_milestone.get("dueOn"))
        )

    state = content.get("state")
    if typename == "PullRequest" and content.get("mergedAt"):
        state = "MERGED"

    labels = [l.get("name") for l in (content.get("labels") or {}).get("nodes") or [] if l and l.get("name")]
    assignees = [
        a.get("login") for a in (content.get("assignees") or {}).get("nodes") or [] if a and a.get("login")
    ]

    item_type = _CONTENT_TYPES.get(typename)
    if item_type is None:
        item_type = str(node.get("type") or "draft").lower()

    return ProjectItem(
        id=node.get("id"),
        title=content.get("title") or "",
        item_type=item_type,
        fields=fields,
        created_at=_parse_datetime(content.get("createdAt") or node.get("createdAt")),
        closed_at=_parse_datetime(content.get("closedAt") or content.get("mergedAt")),
        state=state,
        number=content.get("number"),
        url=content.get("url"),
        labels=labels,
        assignees=assignees,
        milestone=milestone,
        is_archived=bool(node.get("isArchived", False)),
    )


def fetch_project_items(
    token: str, project_id: str, max_items: int, **options: Any
) -> List[ProjectItem]:
    items: List[ProjectItem] = []
    cursor: Optional[str] = None
    has_next = True

    while has_next and len(items) < max_items:
        first = min(PAGE_SIZE, max_items - len(items))
        data = graphql(
            token,
            ITEMS_QUERY,
            {"projectId": project_id, "first": first, "cursor": cursor},
            **options,
        )
        node = data.get("node")
        if node is None:
            raise ProjectNotFoundError(f"Project node {project_id} not found")

        page = node.get("items") or {}
        nodes = page.get("nodes") or []
        page_info = page.get("pageInfo") or {}
        logger.debug("roadmap.fetch.page", extra={"count": len(nodes), "cursor": cursor})

        for raw in nodes:
            if not raw or raw.get("isArchived"):
                continue
            items.append(_parse_item(raw))
            if len(items) >= max_items:
                break

        has_next = bool(page_info.get("hasNextPage")) and bool(nodes)
        cursor = page_info.get("endCursor")

    if has_next:
        logger.warning("roadmap.fetch.truncated", extra={"max_items": max_items})

    logger.info("roadmap.fetch.done", extra={"count": len(items)})
    return items
