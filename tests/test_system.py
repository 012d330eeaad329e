from fastapi.testclient import TestClient

from backend.api.system import get_voting_scheduler
from backend.auth.jwt import get_current_user
from backend.main import app


class _Admin:
    id = 1

    def has_any_role(self, *role_names: str) -> bool:
        return "ADMIN" in role_names


class _StubScheduler:
    running = False

    def __init__(self):
        self.runs = 0

    def run_all(self):
        self.runs += 1
        return {
            "deadlines": {"scanned": 1, "closed": 1, "failed": 0},
            "thresholds": {"scanned": 0, "closed": 0, "failed": 0},
            "reminders": {"scanned": 0, "reminded": 0, "failed": 0},
            "purge": {"purged": 0},
        }


def test_health_reports_scheduler_state():
    client = TestClient(app)
    response = client.get("/system/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "scheduler_running": False}
    assert response.headers["X-Request-ID"]


def test_request_id_header_is_echoed():
    client = TestClient(app)
    response = client.get("/system/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


def test_voting_checks_require_admin():
    client = TestClient(app)
    response = client.post("/system/voting-checks")
    assert response.status_code == 401


def test_voting_checks_run_every_sweep():
    stub = _StubScheduler()
    app.dependency_overrides[get_current_user] = lambda: _Admin()
    app.dependency_overrides[get_voting_scheduler] = lambda: stub
    client = TestClient(app)
    try:
        response = client.post("/system/voting-checks")
        assert response.status_code == 200
        assert response.json()["deadlines"]["closed"] == 1
        assert stub.runs == 1
    finally:
        client.close()
        app.dependency_overrides.clear()
