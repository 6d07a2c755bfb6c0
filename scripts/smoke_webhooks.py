"""
Smoke tests for a deployed instance.

Runs lightweight HTTP checks against a running app instance:
- GET /health
- POST /api/twilio/status without a signature (expects 403)
- POST /api/twilio/status signed with TWILIO_AUTH_TOKEN (expects 200)

The signed callback carries a MessageSid that has no send event, so a
healthy instance answers 200 with outcome "orphan" and nothing is written
to tracking_events (only a short-lived dead-letter row).
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlencode

import httpx

# לאפשר הרצה מכל תיקיה (למשל `python scripts/smoke_webhooks.py` ב-shell של השרת)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.services.twilio.signature import (  # noqa: E402
    SIGNATURE_HEADER,
    compute_signature,
)


logger = get_logger(__name__)

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _status_callback_params() -> dict[str, str]:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return {
        "MessageSid": f"SMsmoke{stamp}",
        "MessageStatus": "delivered",
        "AccountSid": "ACsmoke",
    }


def _check_status(resp: httpx.Response, expected: int) -> None:
    if resp.status_code != expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} (expected {expected}) for "
            f"{resp.request.method} {resp.request.url}. Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="wedding-tracking-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    auth_token = os.environ.get("TWILIO_AUTH_TOKEN", "")
    # חותמים על ה-URL שהשרת משחזר: TWILIO_WEBHOOK_PUBLIC_BASE_URL שלו + path
    public_base = (os.environ.get("TWILIO_WEBHOOK_PUBLIC_BASE_URL") or base_url).rstrip("/")
    status_url = f"{public_base}/api/twilio/status"

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        resp = client.get(health_url)
        _check_status(resp, expected=200)

        params = _status_callback_params()
        body = urlencode(params)
        post_url = f"{base_url}/api/twilio/status"

        logger.info("Posting unsigned status callback", extra_data={"url": post_url})
        resp = client.post(post_url, content=body, headers={"Content-Type": _FORM_CONTENT_TYPE})
        _check_status(resp, expected=403)

        if not auth_token:
            logger.warning("TWILIO_AUTH_TOKEN not set, skipping signed callback check")
        else:
            signature = compute_signature(auth_token, status_url, params)
            logger.info(
                "Posting signed status callback",
                extra_data={"url": post_url, "message_sid": params["MessageSid"]},
            )
            resp = client.post(
                post_url,
                content=body,
                headers={"Content-Type": _FORM_CONTENT_TYPE, SIGNATURE_HEADER: signature},
            )
            _check_status(resp, expected=200)
            logger.info("Signed callback accepted", extra_data={"response": resp.json()})

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
