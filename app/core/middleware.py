"""
HTTP middleware של השירות: correlation id, לוג בקשות עם מיסוך טוקנים של
עמוד האורחים, כותרות אבטחה, rate limit ל-callbacks של Twilio, ו-handlers
גלובליים לשגיאות.
"""
import re
import time
from collections import defaultdict
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# טוקן magic-link של אורח ב-path (/rsvp/<token>) — נותן גישה לעמוד ה-RSVP, אסור בלוג
_MAGIC_TOKEN_IN_PATH_RE = re.compile(r"(/rsvp/)([A-Za-z0-9_-]{4})[A-Za-z0-9_-]+")

# query params שאסור שיופיעו בלוג כפי שהם
_SENSITIVE_QUERY_PARAMS = {"token", "magic_token", "signature"}


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """X-Correlation-ID נכנס (או חדש) — נשמר ב-context ומוחזר בתשובה"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _mask_path_pii(path: str) -> str:
    """מיסוך טוקן magic-link ב-URL path — משאיר 4 תווים ראשונים לדיבוג"""
    return _MAGIC_TOKEN_IN_PATH_RE.sub(r"\1\2****", path)


def _safe_query_params(request: Request) -> dict[str, str]:
    """query params ללוג, עם ערכים רגישים מוסתרים"""
    return {
        key: "****" if key.lower() in _SENSITIVE_QUERY_PARAMS else value
        for key, value in request.query_params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """שורת לוג בתחילת בקשה ובסופה; path ו-query עוברים מיסוך"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.perf_counter()
        safe_path = _mask_path_pii(request.url.path)

        logger.info(
            f"Request started: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
            duration = time.perf_counter() - started

            log_level = "info" if response.status_code < 400 else "warning"
            getattr(logger, log_level)(
                f"Request completed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "status_code": response.status_code,
                    "duration_seconds": round(duration, 4),
                }
            )

            return response
        except Exception as e:
            duration = time.perf_counter() - started
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(duration, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """AppException — התשובה במבנה {"error": {...}} עם קוד השגיאה"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_path_pii(request.url.path),
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """שגיאה לא צפויה — 500 בלי פרטים פנימיים"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_pii(request.url.path),
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff תמיד; HSTS ו-CSP upgrade-insecure-requests רק מחוץ ל-DEBUG"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    sliding window לפי IP על נתיבי ה-callback בלבד.

    שליחת הזמנות לחתונה שלמה מייצרת פרץ של מאות callbacks מ-Twilio,
    ולכן ברירת המחדל גבוהה.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 300,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        # מיפוי IP → רשימת timestamps
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        recent = [ts for ts in self._requests.get(ip, ()) if ts >= cutoff]
        if recent:
            self._requests[ip] = recent
        else:
            self._requests.pop(ip, None)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhook" not in path and "/twilio/" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, [])) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many status callbacks, retry later",
                        "details": {"retry_after_seconds": self._window_seconds},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """רישום ה-middleware; האחרון שנוסף עוטף את כולם"""
    from app.core.config import settings

    # סדר: SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """AppException וכל השאר"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
