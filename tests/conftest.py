from datetime import date, datetime, timezone

import pytest

from roadmap.github_projects import ProjectItem
from roadmap.normalizer import NormalizedTask


@pytest.fixture
def make_item():
    def _make(item_id="PVTI_1", title="Task", fields=None, **kwargs):
        kwargs.setdefault("item_type", "issue")
        kwargs.setdefault("state", "OPEN")
        kwargs.setdefault("created_at", datetime(2024, 1, 10, 9, 30, tzinfo=timezone.utc))
        return ProjectItem(id=item_id, title=title, fields=fields or {}, **kwargs)

    return _make


@pytest.fixture
def make_task():
    def _make(task_id="A", title="Task", start=date(2024, 1, 1), due=date(2024, 1, 6), **kwargs):
        kwargs.setdefault("epic", "Platform")
        return NormalizedTask(id=task_id, title=title, start_date=start, due_date=due, **kwargs)

    return _make
