from fastapi import FastAPI
from fastapi.testclient import TestClient

import observability
from request_id_middleware import RequestIdMiddleware
from settings import Settings


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/ping")
    def ping():
        return {"ok": True}

    return app


def test_metrics_are_a_no_op_when_disabled(monkeypatch):
    calls = []
    monkeypatch.setattr(observability, "get_settings", lambda: Settings(metrics_enabled=False))
    monkeypatch.setattr(observability, "_put_metric", lambda *args: calls.append(args))

    observability.record_engine_metric("ContractsCreated")

    assert calls == []


def test_metrics_are_emitted_when_enabled(monkeypatch):
    calls = []
    monkeypatch.setattr(observability, "get_settings", lambda: Settings(metrics_enabled=True))
    monkeypatch.setattr(observability, "_put_metric", lambda *args: calls.append(args))

    observability.record_engine_metric("PaymentsRecorded", status="completed")

    assert calls == [("PaymentsRecorded", 1, "Count", {"status": "completed"})]


def test_request_id_is_reused_when_valid():
    client = TestClient(_app())
    response = client.get("/ping", headers={"X-Request-ID": "abc-123_x.y"})
    assert response.headers["X-Request-ID"] == "abc-123_x.y"


def test_request_id_is_replaced_when_unsafe():
    client = TestClient(_app())
    response = client.get("/ping", headers={"X-Request-ID": "bad id"})
    assigned = response.headers["X-Request-ID"]
    assert assigned != "bad id"
    assert len(assigned) == 32


def test_request_id_is_generated_when_missing():
    client = TestClient(_app())
    first = client.get("/ping").headers["X-Request-ID"]
    second = client.get("/ping").headers["X-Request-ID"]
    assert first != second
