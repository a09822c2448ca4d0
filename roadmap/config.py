from functools import lru_cache
from pathlib import Path
import os

from pydantic import AliasChoices, BaseModel, Field, ValidationError, conint, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from roadmap.errors import ConfigurationError

PRIORITIES = ("critical", "high", "medium", "low")
STATUSES = ("todo", "in-progress", "in-review", "done")

DEFAULT_EPIC = "Uncategorized"
DEFAULT_PRIORITY = "medium"
DEFAULT_STATUS = "todo"

MAX_ITEMS_LIMIT = 1000

DEFAULT_START_MARKER = "<!-- ROADMAP-START -->"
DEFAULT_END_MARKER = "<!-- ROADMAP-END -->"

# Days between start and due date when one of them has to be inferred.
DEFAULT_PRIORITY_DURATIONS = {
    "critical": 3,
    "high": 5,
    "medium": 7,
    "low": 10,
}

DEFAULT_FIELD_CANDIDATES = {
    "epic": ["Epic", "Epic/Theme", "Theme", "Feature Area", "Area"],
    "priority": ["Priority", "Urgency", "Importance"],
    "status": ["Status", "State", "Progress"],
    "start_date": ["Start Date", "Start", "Started", "Start date"],
    "due_date": ["Due Date", "Target Date", "End Date", "Due", "Deadline"],
    "story_points": ["Story Points", "Points", "Estimate", "Estimation", "Effort", "Size"],
    "iteration": ["Iteration", "Sprint"],
}


class NormalizationPolicy(BaseModel):
    field_candidates: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FIELD_CANDIDATES.items()}
    )
    priority_durations: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_DURATIONS)
    )
    default_epic: str = DEFAULT_EPIC

    @field_validator("field_candidates")
    @classmethod
    def _check_field_candidates(cls, value):
        unknown = sorted(set(value) - set(DEFAULT_FIELD_CANDIDATES))
        if unknown:
            raise ValueError(f"Unknown canonical fields: {', '.join(unknown)}")
        merged = {k: list(v) for k, v in DEFAULT_FIELD_CANDIDATES.items()}
        merged.update({k: list(v) for k, v in value.items()})
        return merged

    @field_validator("priority_durations")
    @classmethod
    def _check_priority_durations(cls, value):
        normalized = {str(k).strip().lower(): v for k, v in value.items()}
        unknown = sorted(set(normalized) - set(PRIORITIES))
        if unknown:
            raise ValueError(f"Unknown priorities: {', '.join(unknown)}")
        negative = sorted(k for k, v in normalized.items() if v < 0)
        if negative:
            raise ValueError(f"Durations must be non-negative: {', '.join(negative)}")
        merged = dict(DEFAULT_PRIORITY_DURATIONS)
        merged.update(normalized)
        return merged

    def duration_for(self, priority: str) -> int:
        return self.priority_durations.get(
            priority, self.priority_durations[DEFAULT_PRIORITY]
        )


class Settings(BaseSettings):
    github_token: str | None = None
    github_org: str | None = Field(
        default=None,
        validation_alias=AliasChoices("github_org", "organization"),
    )
    project_number: conint(ge=1) = Field(
        default=1,
        validation_alias=AliasChoices("project_number", "project_id"),
    )
    readme_path: str = "README.md"
    max_items: conint(ge=1, le=MAX_ITEMS_LIMIT) = 50
    dry_run: bool = False
    verbose: bool = False
    chart_title: str | None = None
    priority_durations: dict[str, int] | None = None
    field_candidates: dict[str, list[str]] | None = None
    roadmap_start_marker: str = DEFAULT_START_MARKER
    roadmap_end_marker: str = DEFAULT_END_MARKER
    backup_readme: bool = False
    validate_chart: bool = True
    github_api_url: str = "https://api.github.com/graphql"
    github_timeout: int = 20
    github_max_attempts: conint(ge=1) = 3
    github_retry_base_delay: float = 1.0

    model_config = SettingsConfigDict(env_file=None, env_prefix="", env_ignore_empty=True)

    @field_validator("roadmap_start_marker", "roadmap_end_marker")
    @classmethod
    def _check_marker(cls, value):
        if not value.strip():
            raise ValueError("Marker must not be blank")
        if "\n" in value:
            raise ValueError("Marker must fit on a single line")
        return value

    def require_organization(self) -> str:
        if not self.github_org:
            raise ConfigurationError(
                "Missing required environment variable: GITHUB_ORG or ORGANIZATION"
            )
        return self.github_org

    def normalization_policy(self) -> NormalizationPolicy:
        payload: dict[str, object] = {}
        if self.priority_durations:
            payload["priority_durations"] = self.priority_durations
        if self.field_candidates:
            payload["field_candidates"] = self.field_candidates
        try:
            return NormalizationPolicy(**payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid normalization policy: {exc}") from exc


def _is_json_multiline_start(value: str) -> bool:
    stripped = value.strip()
    return stripped.startswith("{") or stripped.startswith("[")


def _balance_brackets(text: str) -> int:
    return text.count("{") + text.count("[") - text.count("}") - text.count("]")


def _load_env_multiline_json(path: Path) -> None:
    if not path.exists():
        return

    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        raw = lines[i]
        i += 1

        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        if "=" not in raw:
            continue

        key, value = raw.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if not key:
            continue

        if key in os.environ:
            continue

        if _is_json_multiline_start(value):
            buffer = value
            balance = _balance_brackets(buffer)
            while balance > 0 and i < len(lines):
                buffer = f"{buffer}\n{lines[i]}"
                i += 1
                balance = _balance_brackets(buffer)
            os.environ[key] = buffer
            continue

        cleaned = value.strip()
        if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ('"', "'"):
            cleaned = cleaned[1:-1]
        os.environ[key] = cleaned


@lru_cache
def get_settings() -> Settings:
    _load_env_multiline_json(Path.cwd() / ".env")
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def get_project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def get_views_dir() -> Path:
    return get_project_root() / "roadmap" / "views"
