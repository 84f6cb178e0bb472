from fastapi.testclient import TestClient

from intake_api.main import app
from intake_api.services.repository import RepositoryUnavailableError, get_repository
from intake_api.services.store import InMemoryRepository


class _UnreachableRepository(InMemoryRepository):
    async def ping(self) -> None:
        raise RepositoryUnavailableError("database unavailable")


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root_reports_service_name() -> None:
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "jobsboard-intake-api"}


def test_readyz_pings_repository() -> None:
    app.dependency_overrides[get_repository] = InMemoryRepository
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_readyz_unavailable_when_database_is_down() -> None:
    app.dependency_overrides[get_repository] = _UnreachableRepository
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
    assert response.json() == {"detail": "database unavailable"}
