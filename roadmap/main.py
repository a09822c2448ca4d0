from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from roadmap.config import DEFAULT_EPIC, MAX_ITEMS_LIMIT, Settings, get_settings
from roadmap.errors import ChartValidationError, ProjectNotFoundError, RoadmapError
from roadmap.github_projects import (
    fetch_project_items,
    get_project,
    list_organization_projects,
    resolve_token,
)
from roadmap.mermaid import ChartConfig, render_gantt, render_roadmap_body
from roadmap.normalizer import NormalizationResult, normalize_items
from roadmap.readme import update_document
from roadmap.validation import check_common_issues, validate_with_mmdc

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for logger_name in ("urllib3", "requests"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)
    logging.getLogger("roadmap").setLevel(logging.DEBUG if verbose else logging.INFO)


def _item_cap(value: str) -> int:
    number = int(value)
    if not 1 <= number <= MAX_ITEMS_LIMIT:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_ITEMS_LIMIT}")
    return number


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="roadmap-generator",
        description="Render a GitHub Projects board as a Mermaid Gantt roadmap in a README.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["run", "projects"],
        default="run",
        help="run the pipeline (default) or list the organization's projects",
    )
    parser.add_argument("--dry-run", action="store_true", help="print the roadmap instead of writing it")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--readme", help="target document (overrides README_PATH)")
    parser.add_argument("--max-items", type=_item_cap, help="item cap (overrides MAX_ITEMS)")
    return parser.parse_args(argv)


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    update: dict[str, Any] = {}
    if args.dry_run:
        update["dry_run"] = True
    if args.verbose:
        update["verbose"] = True
    if args.readme:
        update["readme_path"] = args.readme
    if args.max_items:
        update["max_items"] = args.max_items
    return settings.model_copy(update=update) if update else settings


def _github_options(settings: Settings) -> dict[str, Any]:
    return {
        "url": settings.github_api_url,
        "timeout": settings.github_timeout,
        "max_attempts": settings.github_max_attempts,
        "base_delay": settings.github_retry_base_delay,
    }


def _log_data_quality(result: NormalizationResult) -> None:
    stats = result.statistics
    if not stats.total:
        logger.warning("roadmap.quality.empty")
        return
    with_epic = sum(1 for t in result.tasks if t.epic != DEFAULT_EPIC)
    logger.info(
        "roadmap.quality",
        extra={
            "total": stats.total,
            "dated": stats.dated,
            "inferred": stats.inferred,
            "with_epic": with_epic,
        },
    )
    if stats.inferred:
        logger.warning("roadmap.quality.inferred_dates", extra={"count": stats.inferred})
    authored = stats.dated - stats.inferred
    if authored < stats.total * 0.5:
        logger.warning(
            "roadmap.quality.few_dates",
            extra={"authored": authored, "total": stats.total},
        )


def _log_available_projects(token: str, settings: Settings, organization: str) -> None:
    try:
        projects = list_organization_projects(token, organization, **_github_options(settings))
    except RoadmapError:
        logger.warning("roadmap.projects.unavailable")
        return
    for project in projects:
        logger.warning(
            "roadmap.projects.available",
            extra={"number": project["number"], "title": project["title"]},
        )


def run(settings: Settings) -> int:
    organization = settings.require_organization()
    policy = settings.normalization_policy()
    token = resolve_token(settings.github_token)
    options = _github_options(settings)

    logger.info(
        "roadmap.start",
        extra={"organization": organization, "project": settings.project_number},
    )
    try:
        project = get_project(token, organization, settings.project_number, **options)
    except ProjectNotFoundError:
        _log_available_projects(token, settings, organization)
        raise

    items = fetch_project_items(token, project.id, settings.max_items, **options)
    result = normalize_items(items, policy)
    _log_data_quality(result)

    chart = render_gantt(
        result.epics,
        ChartConfig(title=settings.chart_title or project.title or "Project Roadmap"),
    )
    for warning in check_common_issues(chart):
        logger.warning("roadmap.validate.issue", extra={"issue": warning})
    if settings.validate_chart:
        validation = validate_with_mmdc(chart)
        if not validation.valid and not settings.dry_run:
            raise ChartValidationError(f"Generated Mermaid chart is invalid: {validation.error}")

    body = render_roadmap_body(chart, result.statistics, project)

    if settings.dry_run:
        print(body)
        logger.info("roadmap.dry_run")
        return 0

    changed = update_document(
        settings.readme_path,
        body,
        settings.roadmap_start_marker,
        settings.roadmap_end_marker,
        backup=settings.backup_readme,
    )
    logger.info("roadmap.done", extra={"changed": changed})
    return 0


def list_projects(settings: Settings) -> int:
    organization = settings.require_organization()
    token = resolve_token(settings.github_token)
    projects = list_organization_projects(token, organization, **_github_options(settings))
    if not projects:
        print(f"No projects found in {organization}")
        return 0
    for project in projects:
        closed = " (closed)" if project["closed"] else ""
        print(f"#{project['number']}: {project['title']}{closed}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    _configure_logging(args.verbose)

    try:
        settings = _apply_overrides(get_settings(), args)
        if settings.verbose:
            logging.getLogger("roadmap").setLevel(logging.DEBUG)
        if args.command == "projects":
            return list_projects(settings)
        return run(settings)
    except RoadmapError as exc:
        logger.error("roadmap.failed", extra={"error_type": type(exc).__name__})
        print(f"Roadmap generation failed: {exc}", file=sys.stderr)
        return exc.exit_code
    except OSError as exc:
        logger.error("roadmap.io_failed", extra={"error": str(exc)})
        print(f"Roadmap generation failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
