from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from roadmap.config import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    PRIORITIES,
    STATUSES,
    NormalizationPolicy,
)
from roadmap.github_projects import Iteration, Milestone, ProjectItem

logger = logging.getLogger(__name__)


@dataclass
class NormalizedTask:
    id: str
    title: str
    epic: str
    priority: str = DEFAULT_PRIORITY
    status: str = DEFAULT_STATUS
    start_date: date | None = None
    due_date: date | None = None
    story_points: float | None = None
    start_inferred: bool = False
    due_inferred: bool = False
    number: int | None = None
    url: str | None = None
    milestone_title: str | None = None
    milestone_due: date | None = None

    @property
    def is_dated(self) -> bool:
        return self.start_date is not None and self.due_date is not None

    @property
    def is_milestone(self) -> bool:
        return self.is_dated and self.due_date == self.start_date

    @property
    def is_inferred(self) -> bool:
        return self.start_inferred or self.due_inferred

    @property
    def duration_days(self) -> int | None:
        if not self.is_dated:
            return None
        return (self.due_date - self.start_date).days


@dataclass
class EpicGroup:
    label: str
    tasks: List[NormalizedTask] = field(default_factory=list)


@dataclass
class RoadmapStatistics:
    total: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    percent_complete: int
    story_points_total: float = 0.0
    story_points_done: float = 0.0
    dated: int = 0
    undated: int = 0
    inferred: int = 0

    @property
    def done(self) -> int:
        return self.by_status.get("done", 0)


@dataclass
class NormalizationResult:
    tasks: List[NormalizedTask]
    epics: List[EpicGroup]
    statistics: RoadmapStatistics


def _normalize_text(value: str | None) -> str:
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.lower().split())


def resolve_field(
    fields: Dict[str, Any], candidates: Sequence[str]
) -> tuple[str, Any] | None:
    """Return the first ``(field name, value)`` whose name matches a candidate.

    Candidates are tried in order; names compare case- and accent-insensitively.
    """
    by_name = {_normalize_text(name): (name, value) for name, value in fields.items()}
    for candidate in candidates:
        hit = by_name.get(_normalize_text(candidate))
        if hit is not None:
            return hit
    return None


def _bucket_priority(value: str) -> str | None:
    normalized = _normalize_text(value)
    if not normalized:
        return None
    if normalized in PRIORITIES:
        return normalized
    if any(k in normalized for k in ["crit", "urgent", "blocker", "p0", "highest"]):
        return "critical"
    if "high" in normalized or "p1" in normalized:
        return "high"
    if normalized.startswith("med") or "p2" in normalized or "normal" in normalized:
        return "medium"
    if normalized.startswith("low") or "p3" in normalized or "p4" in normalized or "minor" in normalized:
        return "low"
    return None


def _bucket_status(value: str) -> str | None:
    normalized = _normalize_text(value)
    if not normalized:
        return None
    if normalized in STATUSES:
        return normalized

    if normalized in ["done", "closed", "complete", "completed", "finished", "shipped", "merged"]:
        return "done"
    if normalized.startswith("done") or normalized.startswith("closed") or normalized.startswith("complete"):
        return "done"

    if "review" in normalized or "qa" in normalized.split() or "valid" in normalized or "testing" in normalized:
        return "in-review"

    if (
        "progress" in normalized
        or "doing" in normalized
        or "wip" in normalized
        or "started" in normalized
        or "active" in normalized
    ):
        return "in-progress"

    if any(
        k in normalized
        for k in ["todo", "to do", "backlog", "ready", "planned", "new", "triage", "blocked", "hold"]
    ):
        return "todo"
    return None


def _epic_from_labels(labels: Iterable[str]) -> str | None:
    for label in labels:
        lowered = label.lower()
        for prefix in ("epic:", "feature:", "area:"):
            if lowered.startswith(prefix):
                rest = label[len(prefix):].strip()
                if rest:
                    return rest
    return None


_PRIORITY_LABELS = {
    "priority: critical": "critical",
    "priority: high": "high",
    "priority: medium": "medium",
    "priority: low": "low",
    "critical": "critical",
    "urgent": "critical",
    "high priority": "high",
    "low priority": "low",
    "p0": "critical",
    "p1": "high",
    "p2": "medium",
    "p3": "low",
}


def _priority_from_labels(labels: Iterable[str]) -> str | None:
    for label in labels:
        priority = _PRIORITY_LABELS.get(" ".join(label.lower().split()))
        if priority:
            return priority
    return None


def _status_from_state(state: str | None, item_type: str) -> str:
    normalized = (state or "").upper()
    if normalized in {"CLOSED", "MERGED"}:
        return "done"
    if normalized == "OPEN" and item_type == "pull_request":
        return "in-review"
    return DEFAULT_STATUS


def _to_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, Iteration):
        return value.start
    if isinstance(value, Milestone):
        return value.due
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _as_label(value: Any) -> str:
    if isinstance(value, (Iteration, Milestone)):
        return value.title or ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _resolve_story_points(item: ProjectItem, value: Any, field_name: str) -> float | None:
    try:
        points = float(value)
    except (TypeError, ValueError):
        text = _as_label(value)
        digits = "".join(ch for ch in text if ch.isdigit() or ch == ".")
        try:
            points = float(digits) if digits else None
        except ValueError:
            points = None
    if points is None or points < 0:
        logger.warning(
            "roadmap.normalize.bad_estimate",
            extra={"item": item.id, "field": field_name, "value": repr(value)},
        )
        return None
    return points


def _resolve_date(item: ProjectItem, hit: tuple[str, Any] | None) -> date | None:
    if hit is None:
        return None
    field_name, value = hit
    parsed = _to_date(value)
    if parsed is None:
        logger.warning(
            "roadmap.normalize.bad_date",
            extra={"item": item.id, "field": field_name, "value": repr(value)},
        )
    return parsed


def normalize_item(item: ProjectItem, policy: NormalizationPolicy) -> NormalizedTask:
    candidates = policy.field_candidates
    fields = item.fields

    epic = None
    hit = resolve_field(fields, candidates["epic"])
    if hit is not None:
        epic = _as_label(hit[1]) or None
    epic = epic or _epic_from_labels(item.labels) or policy.default_epic

    priority = None
    hit = resolve_field(fields, candidates["priority"])
    if hit is not None:
        priority = _bucket_priority(_as_label(hit[1]))
        if priority is None:
            logger.warning(
                "roadmap.normalize.unknown_priority",
                extra={"item": item.id, "field": hit[0], "value": _as_label(hit[1])},
            )
    priority = priority or _priority_from_labels(item.labels) or DEFAULT_PRIORITY

    status = None
    hit = resolve_field(fields, candidates["status"])
    if hit is not None:
        status = _bucket_status(_as_label(hit[1]))
        if status is None:
            logger.warning(
                "roadmap.normalize.unknown_status",
                extra={"item": item.id, "field": hit[0], "value": _as_label(hit[1])},
            )
    status = status or _status_from_state(item.state, item.item_type)

    story_points = None
    hit = resolve_field(fields, candidates["story_points"])
    if hit is not None:
        story_points = _resolve_story_points(item, hit[1], hit[0])

    start = _resolve_date(item, resolve_field(fields, candidates["start_date"]))
    due = _resolve_date(item, resolve_field(fields, candidates["due_date"]))

    if start is None and due is None:
        hit = resolve_field(fields, candidates["iteration"])
        if hit is not None and isinstance(hit[1], Iteration) and hit[1].start is not None:
            start = hit[1].start
            due = start + timedelta(days=hit[1].duration_days)

    task = NormalizedTask(
        id=item.id,
        title=(item.title or "").strip(),
        epic=epic,
        priority=priority,
        status=status,
        start_date=start,
        due_date=due,
        story_points=story_points,
        number=item.number,
        url=item.url,
        milestone_title=item.milestone.title if item.milestone else None,
        milestone_due=item.milestone.due if item.milestone else None,
    )
    if not task.title:
        logger.warning("roadmap.normalize.untitled", extra={"item": item.id})
    _infer_dates(task, item.created_at, policy)
    return task


def _infer_dates(
    task: NormalizedTask, created_at: datetime | None, policy: NormalizationPolicy
) -> None:
    duration = timedelta(days=policy.duration_for(task.priority))

    if task.start_date is not None and task.due_date is None:
        task.due_date = task.start_date + duration
        task.due_inferred = True
    elif task.start_date is None and task.due_date is not None:
        task.start_date = task.due_date - duration
        task.start_inferred = True
    elif task.start_date is None and task.due_date is None:
        created = _to_date(created_at)
        if created is None:
            logger.warning("roadmap.normalize.undated", extra={"item": task.id})
            return
        task.start_date = created
        task.due_date = created + duration
        task.start_inferred = True
        task.due_inferred = True
    elif task.due_date < task.start_date:
        logger.warning(
            "roadmap.normalize.due_before_start",
            extra={
                "item": task.id,
                "start": task.start_date.isoformat(),
                "due": task.due_date.isoformat(),
            },
        )
        task.due_date = task.start_date


def group_by_epic(tasks: Sequence[NormalizedTask]) -> List[EpicGroup]:
    first_seen: Dict[str, int] = {}
    members: Dict[str, List[NormalizedTask]] = {}
    for task in tasks:
        if task.epic not in members:
            first_seen[task.epic] = len(first_seen)
            members[task.epic] = []
        members[task.epic].append(task)

    def _task_key(task: NormalizedTask):
        return (task.start_date is None, task.start_date or date.min, task.id)

    def _epic_key(label: str):
        starts = [t.start_date for t in members[label] if t.start_date is not None]
        earliest: Optional[date] = min(starts) if starts else None
        return (earliest is None, earliest or date.min, first_seen[label])

    return [
        EpicGroup(label=label, tasks=sorted(members[label], key=_task_key))
        for label in sorted(members, key=_epic_key)
    ]


def compute_statistics(tasks: Sequence[NormalizedTask]) -> RoadmapStatistics:
    by_status = {s: 0 for s in STATUSES}
    by_priority = {p: 0 for p in PRIORITIES}
    points_total = 0.0
    points_done = 0.0
    for task in tasks:
        by_status[task.status] = by_status.get(task.status, 0) + 1
        by_priority[task.priority] = by_priority.get(task.priority, 0) + 1
        if task.story_points is not None:
            points_total += task.story_points
            if task.status == "done":
                points_done += task.story_points

    total = len(tasks)
    done = by_status.get("done", 0)
    percent = int(round(done / total * 100)) if total else 0
    dated = sum(1 for t in tasks if t.is_dated)

    return RoadmapStatistics(
        total=total,
        by_status=by_status,
        by_priority=by_priority,
        percent_complete=percent,
        story_points_total=points_total,
        story_points_done=points_done,
        dated=dated,
        undated=total - dated,
        inferred=sum(1 for t in tasks if t.is_inferred),
    )


def normalize_items(
    items: Sequence[ProjectItem], policy: NormalizationPolicy | None = None
) -> NormalizationResult:
    policy = policy or NormalizationPolicy()
    tasks = [normalize_item(item, policy) for item in items]
    logger.info("roadmap.normalize.done", extra={"count": len(tasks)})
    return NormalizationResult(
        tasks=tasks,
        epics=group_by_epic(tasks),
        statistics=compute_statistics(tasks),
    )
