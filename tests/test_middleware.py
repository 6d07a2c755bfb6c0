"""
בדיקות ל-Middleware — app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות עם מיסוך טוקנים
- WebhookRateLimitMiddleware: הגבלת קצב ל-status callbacks
- Exception handlers: טיפול ב-AppException ו-Exception גנרי
- _mask_path_pii / _safe_query_params: טוקן magic-link לא מגיע ללוג
- SecurityHeadersMiddleware
"""
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    _mask_path_pii,
    _safe_query_params,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import (
    AppException,
    ErrorCode,
    RecipientNotFoundError,
    WebhookAuthenticationError,
)
from tests.conftest import callback_request


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _status_callback(request: Request) -> PlainTextResponse:
    """endpoint שמדמה את ה-webhook של Twilio."""
    return PlainTextResponse("callback ok")


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


def _build_app(
    *,
    routes: list[Route] | None = None,
    middlewares: list[tuple] | None = None,
) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    default_routes = [
        Route("/test", _hello),
        Route("/api/twilio/status", _status_callback, methods=["GET", "POST"]),
        Route("/error", _error),
    ]
    app = Starlette(routes=routes or default_routes)
    if middlewares:
        for mw_class, kwargs in middlewares:
            app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# בדיקות מיסוך
# ============================================================================


class TestMaskPathPii:
    """טוקן ה-magic link ב-path הוא הרשאת גישה — לא נכתב ללוג"""

    @pytest.mark.unit
    def test_masks_rsvp_token_in_path(self) -> None:
        path = "/rsvp/abcd1234efgh5678/confirm"
        masked = _mask_path_pii(path)
        assert masked == "/rsvp/abcd****/confirm"
        assert "1234efgh5678" not in masked

    @pytest.mark.unit
    def test_keeps_prefix_for_debugging(self) -> None:
        masked = _mask_path_pii("/rsvp/Xy9_-token-value")
        assert masked.startswith("/rsvp/Xy9_")

    @pytest.mark.unit
    def test_no_token_no_change(self) -> None:
        path = "/api/tenants/wedding-1/engagement/stats"
        assert _mask_path_pii(path) == path

    @pytest.mark.unit
    def test_short_segment_not_masked(self) -> None:
        """פחות מ-5 תווים — אין מה להסתיר מעבר לקידומת"""
        assert _mask_path_pii("/rsvp/abcd") == "/rsvp/abcd"


class TestSafeQueryParams:

    @pytest.mark.unit
    def test_masks_sensitive_params(self) -> None:
        request = MagicMock()
        request.query_params = {"token": "secret", "Signature": "abc", "page": "2"}
        assert _safe_query_params(request) == {
            "token": "****",
            "Signature": "****",
            "page": "2",
        }


# ============================================================================
# בדיקות CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) > 0

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        custom_id = "my-custom-correlation-id"
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": custom_id})
            assert response.headers["x-correlation-id"] == custom_id

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            r1 = client.get("/test")
            r2 = client.get("/test")
            assert r1.headers["x-correlation-id"] != r2.headers["x-correlation-id"]


# ============================================================================
# בדיקות RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# בדיקות WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(5):
                assert client.post("/api/twilio/status").status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/twilio/status").status_code == 200

            response = client.post("/api/twilio/status")
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            assert client.post("/api/twilio/status").status_code == 200
            assert client.post("/api/twilio/status").status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_cleanup_removes_old_entries(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = [now - 120, now - 90, now - 30, now]

        mw._cleanup_window("1.2.3.4", now)

        assert len(mw._requests["1.2.3.4"]) == 2

    @pytest.mark.unit
    def test_cleanup_deletes_empty_ip(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = [now - 120]

        mw._cleanup_window("1.2.3.4", now)

        assert "1.2.3.4" not in mw._requests

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
                (CorrelationIdMiddleware, {}),
            ]
        )
        with TestClient(app) as client:
            client.post("/api/twilio/status")
            response = client.post("/api/twilio/status")

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    def test_429_body_uses_rate_limited_error_code(self) -> None:
        """תשובת 429 במבנה השגיאה האחיד, עם ERR_1006"""
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 30})]
        )
        with TestClient(app) as client:
            client.post("/api/twilio/status")
            response = client.post("/api/twilio/status")

        error = response.json()["error"]
        assert error["code"] == "ERR_1006"
        assert error["details"] == {"retry_after_seconds": 30}


# ============================================================================
# בדיקות Exception Handlers
# ============================================================================


class TestAppExceptionHandler:

    async def test_handles_not_found(self) -> None:
        exc = RecipientNotFoundError("wedding-1", "family-9")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/tenants/wedding-1/engagement/recipients/family-9"

        response = await app_exception_handler(mock_request, exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert ErrorCode.RECIPIENT_NOT_FOUND.value in response.body.decode()

    async def test_handles_webhook_authentication_error(self) -> None:
        exc = WebhookAuthenticationError("signature mismatch")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/twilio/status"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 403

    async def test_handles_plain_app_exception(self) -> None:
        exc = AppException(
            message="Page cache unavailable",
            error_code=ErrorCode.CACHE_UNAVAILABLE,
            status_code=503,
        )
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/tenants/wedding-1/page-cache/invalidate"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 503


class TestGenericExceptionHandler:

    async def test_handles_unexpected_exception(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/something"

        response = await generic_exception_handler(mock_request, RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/test"

        response = await generic_exception_handler(mock_request, exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# בדיקות SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_nosniff_on_all_responses(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            assert client.get("/test").headers["x-content-type-options"] == "nosniff"

    @pytest.mark.unit
    def test_hsts_and_csp_in_production(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "includeSubDomains" in response.headers["strict-transport-security"]
            assert response.headers["content-security-policy"] == "upgrade-insecure-requests"

    @pytest.mark.unit
    def test_no_csp_in_debug_mode(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers


# ============================================================================
# בדיקות setup_middleware
# ============================================================================


class TestSetupMiddleware:

    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    async def test_status_callback_through_full_stack(self, test_client) -> None:
        """webhook עובר את כל ה-stack (כולל rate limit) ומקבל את ה-headers"""
        body, headers = callback_request("SM-unknown", "delivered")
        response = await test_client.post("/api/twilio/status", content=body, headers=headers)

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
