from fastapi.testclient import TestClient

from leadflow.core.config import Settings
from leadflow.main import app
from leadflow.runtime import build_runtime, get_runtime
from leadflow.services.metrics import MetricsRegistry
from leadflow.services.store import InMemoryRepository


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_reports_stopped_workers() -> None:
    runtime = build_runtime(Settings(), InMemoryRepository(), metrics=MetricsRegistry(), adapters={})
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "workers": "stopped"}
