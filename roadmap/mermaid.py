from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import List, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from roadmap.config import get_views_dir
from roadmap.github_projects import ProjectInfo
from roadmap.normalizer import EpicGroup, NormalizedTask, RoadmapStatistics

DATE_FORMAT = "YYYY-MM-DD"
AXIS_FORMAT = "%b %d"
TODAY_MARKER = "stroke-width:5px,stroke:#0f0,opacity:0.75"
MAX_TITLE_LENGTH = 40
INDENT = "    "

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChartConfig:
    title: str = "Project Roadmap"
    date_format: str = DATE_FORMAT
    axis_format: str = AXIS_FORMAT
    today_marker: str = TODAY_MARKER


# Gantt statements; a task line starting with one of these is read as a directive.
_GANTT_KEYWORDS = {
    "gantt",
    "title",
    "dateformat",
    "axisformat",
    "tickinterval",
    "todaymarker",
    "excludes",
    "includes",
    "weekday",
    "section",
    "inclusiveenddates",
    "topaxis",
    "displaymode",
    "acctitle",
    "accdescr",
}


def sanitize_text(value: str | None) -> str:
    cleaned = re.sub(r"[<>\[\]]", "", value or "")
    return " ".join(cleaned.split())


def sanitize_title(title: str | None) -> str:
    cleaned = re.sub(r"[:;,#|<>\[\]{}()]", "", title or "")
    cleaned = " ".join(cleaned.split()).lstrip("%").strip()
    if cleaned.split(" ", 1)[0].lower() in _GANTT_KEYWORDS:
        cleaned = f"Task {cleaned}"
    if len(cleaned) > MAX_TITLE_LENGTH:
        cleaned = cleaned[: MAX_TITLE_LENGTH - 3].rstrip() + "..."
    return cleaned or "Untitled Task"


def sanitize_section(name: str | None) -> str:
    cleaned = re.sub(r"[^\w\s-]", "", name or "")
    return " ".join(cleaned.split()) or "Unnamed"


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
    return slug[:30] or "item"


def task_id(task: NormalizedTask) -> str:
    if task.number is not None:
        return f"task{task.number}"
    return f"task_{re.sub(r'[^A-Za-z0-9_]', '_', task.id)}"


class _IdRegistry:
    def __init__(self) -> None:
        self._seen: set[str] = set()

    def claim(self, base: str) -> str:
        candidate = base
        suffix = 2
        while candidate in self._seen:
            candidate = f"{base}_{suffix}"
            suffix += 1
        self._seen.add(candidate)
        return candidate


def _tags(task: NormalizedTask) -> List[str]:
    tags = []
    if task.is_milestone:
        tags.append("milestone")
    if task.priority == "critical":
        tags.append("crit")
    if task.status == "done":
        tags.append("done")
    elif task.status in {"in-progress", "in-review"}:
        tags.append("active")
    return tags


def _line(title: str, tags: Sequence[str], ident: str, start: date, days: int) -> str:
    meta = ", ".join([*tags, ident, start.isoformat(), f"{days}d"])
    return f"{INDENT}{title} :{meta}"


def render_task(task: NormalizedTask, ident: str) -> str:
    days = 0 if task.is_milestone else task.duration_days
    return _line(sanitize_title(task.title), _tags(task), ident, task.start_date, days)


def _milestone_lines(epics: Sequence[EpicGroup], ids: _IdRegistry) -> List[str]:
    entries: list[tuple[date, str, str, List[str]]] = []
    seen_tasks: set[str] = set()
    seen_milestones: set[tuple[str, date]] = set()

    for group in epics:
        for task in group.tasks:
            if task.is_milestone and task.id not in seen_tasks:
                seen_tasks.add(task.id)
                entries.append(
                    (task.start_date, sanitize_title(task.title), f"{task_id(task)}_ms", _tags(task))
                )
            if task.milestone_title and task.milestone_due:
                key = (sanitize_title(task.milestone_title), task.milestone_due)
                if key not in seen_milestones:
                    seen_milestones.add(key)
                    entries.append(
                        (
                            task.milestone_due,
                            key[0],
                            f"milestone_{_slug(task.milestone_title)}",
                            ["milestone"],
                        )
                    )

    entries.sort(key=lambda e: (e[0], e[1], e[2]))
    return [_line(title, tags, ids.claim(ident), when, 0) for when, title, ident, tags in entries]


def render_gantt(epics: Sequence[EpicGroup], config: ChartConfig | None = None) -> str:
    """Render the epic grouping as Mermaid Gantt syntax.

    Undated tasks are left out. Output depends only on the input, so an
    unchanged board always produces the same text.
    """
    config = config or ChartConfig()
    title = sanitize_text(config.title) or "Project Roadmap"
    lines = [
        "gantt",
        f"{INDENT}title {title}",
        f"{INDENT}dateFormat {config.date_format}",
        f"{INDENT}axisFormat {config.axis_format}",
        f"{INDENT}todayMarker {config.today_marker}",
    ]

    ids = _IdRegistry()
    sections = 0
    for group in epics:
        dated = [t for t in group.tasks if t.is_dated]
        if not dated:
            continue
        lines.append("")
        lines.append(f"{INDENT}section {sanitize_section(group.label)}")
        for task in dated:
            lines.append(render_task(task, ids.claim(task_id(task))))
        sections += 1

    milestones = _milestone_lines(epics, ids)
    if milestones:
        lines.append("")
        lines.append(f"{INDENT}section Milestones")
        lines.extend(milestones)

    logger.info(
        "roadmap.render.done",
        extra={"sections": sections, "milestones": len(milestones)},
    )
    return "\n".join(lines) + "\n"


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(get_views_dir()),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_statistics(stats: RoadmapStatistics) -> str:
    template = _environment().get_template("statistics.md.j2")
    return template.render(stats=stats).strip("\n")


def render_roadmap_body(
    chart: str, stats: RoadmapStatistics, project: ProjectInfo | None = None
) -> str:
    template = _environment().get_template("roadmap.md.j2")
    return template.render(
        chart=chart.strip("\n"),
        statistics=render_statistics(stats),
        project=project,
        project_title=sanitize_text(project.title) if project else "",
    ).strip("\n")
