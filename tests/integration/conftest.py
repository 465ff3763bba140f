"""
Integration Test Fixtures
"""

import pytest
from httpx import ASGITransport, AsyncClient

from caseflow.core.cases.workflow import reset_workflow_engine
from caseflow.core.config import reset_config


@pytest.fixture
async def client(tmp_path, monkeypatch):
    """Async test client against a fresh case database."""
    monkeypatch.setenv("CASEFLOW_DB_PATH", str(tmp_path / "api.db"))
    reset_config()
    reset_workflow_engine()

    from caseflow.api.cases.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    reset_workflow_engine()
    reset_config()


@pytest.fixture
def create_case(client):
    """Create a case through the API and return its JSON."""
    async def _create(client_id: str = "CLIENT-001", project_name: str = "Boiler retrofit", **extra):
        response = await client.post(
            "/api/cases",
            params={"actor": "alice"},
            json={"client_id": client_id, "project_name": project_name, **extra},
        )
        assert response.status_code == 201, response.text
        return response.json()["case"]
    return _create
