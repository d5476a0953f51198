from datetime import datetime, timedelta, timezone

import pytest

from docreview.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository

DEFAULT_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime = DEFAULT_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "wf.db")


@pytest.fixture
def clock(request):
    """Starts at the test module's ``NOW`` when it defines one."""
    return ManualClock(getattr(request.module, "NOW", DEFAULT_NOW))
