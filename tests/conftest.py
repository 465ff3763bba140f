"""
Shared Test Fixtures
"""

from datetime import datetime, timedelta, timezone

import pytest

from caseflow.core.cases.store import CaseStore
from caseflow.core.cases.workflow import CaseWorkflowEngine
from caseflow.core.config import get_config, reset_config


class FakeClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, start: datetime = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Configuration pointing at a throwaway database."""
    monkeypatch.setenv("CASEFLOW_DB_PATH", str(tmp_path / "cases.db"))
    reset_config()
    yield get_config()
    reset_config()


@pytest.fixture
def store(config):
    return CaseStore(config.db_path)


@pytest.fixture
def engine(store, config, clock):
    return CaseWorkflowEngine(store, config=config, clock=clock)


@pytest.fixture
def new_case(engine):
    """Factory for cases in the enquiry stage."""
    def _create(client_id: str = "CLIENT-001", project_name: str = "Boiler retrofit", actor: str = "alice", **kwargs):
        return engine.create_case(client_id, project_name, actor, **kwargs).case
    return _create
