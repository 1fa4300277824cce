"""
Tests for error logging and exception handling.

Tests verify that:
- Unhandled exceptions are caught, logged and sanitized
- HTTPExceptions are logged at appropriate levels
- Validation errors are handled correctly
- Slow requests are cut off by the timeout middleware
- Startup validates webhook routing
"""
import asyncio
import logging

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

pytestmark = pytest.mark.unit

import config_webhooks
from middleware_timeout import TimeoutMiddleware


class TestUnhandledExceptions:
    def test_unhandled_exception_logged_and_sanitized(self, client, test_app, caplog):
        @test_app.get("/test-error-endpoint")
        def test_error_endpoint():
            raise RuntimeError("Sensitive internal error: database password is xyz")

        with caplog.at_level(logging.ERROR):
            response = client.get("/test-error-endpoint")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}
        assert "xyz" not in response.text
        error_logs = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert any("Unhandled exception" in r.getMessage() for r in error_logs)

    def test_server_http_exception_is_sanitized(self, client, test_app):
        @test_app.get("/test-http-500")
        def test_http_500():
            raise HTTPException(status_code=503, detail="upstream pool exhausted at 10.0.0.5")

        response = client.get("/test-http-500")

        assert response.status_code == 503
        assert response.json() == {"detail": "Internal server error"}


class TestClientErrors:
    def test_client_http_exception_logged_as_warning(self, client, caplog):
        with caplog.at_level(logging.WARNING):
            response = client.post("/api/wallet/refresh")

        assert response.status_code == 400
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("HTTP 400" in r.getMessage() for r in warnings)

    def test_validation_error_is_422_with_details(self, client):
        response = client.post("/api/messages", json={"conversation_id": "x"})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert isinstance(detail, list)
        assert any("content" in err["loc"] for err in detail)


class TestTimeoutMiddleware:
    def test_slow_request_returns_504(self):
        app = FastAPI()
        app.add_middleware(TimeoutMiddleware, timeout_seconds=0.05)

        @app.get("/slow")
        async def slow():
            await asyncio.sleep(1)
            return {"ok": True}

        @app.get("/fast")
        async def fast():
            return {"ok": True}

        client = TestClient(app)

        slow_response = client.get("/slow")
        assert slow_response.status_code == 504
        assert slow_response.json()["code"] == "request_timeout"
        assert client.get("/fast").json() == {"ok": True}


class TestStartup:
    def test_lifespan_loads_webhook_routes(self, test_app):
        with TestClient(test_app) as client:
            assert client.get("/api/health").status_code == 200
        assert config_webhooks._CACHE is not None

    def test_invalid_webhook_route_fails_startup(self, test_app, monkeypatch):
        monkeypatch.setenv("N8N_AUTISTIC_AI_TEXT", "not-a-url")

        with pytest.raises(ValueError, match="Invalid webhook routes"):
            with TestClient(test_app):
                pass

        monkeypatch.delenv("N8N_AUTISTIC_AI_TEXT")
        config_webhooks.get_webhook_routes(force_reload=True)
