"""
אימות חתימת X-Twilio-Signature.

הסכמה של Twilio: ה-URL המלא (כולל query string) ואחריו כל פרמטרי ה-POST
ממוינים לפי שם, כל אחד כ-name+value ללא מפרידים. על המחרוזת מחושב
HMAC-SHA1 עם ה-Auth Token, והתוצאה מקודדת base64.

https://www.twilio.com/docs/usage/webhooks/webhooks-security
"""
import base64
import hashlib
import hmac
from typing import Mapping, Sequence, Union
from urllib.parse import parse_qsl

from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"

ParamValue = Union[str, Sequence[str]]


def build_signature_payload(url: str, params: Mapping[str, ParamValue]) -> str:
    """
    URL + פרמטרים ממוינים לפי שם. למפתח שחוזר — כל הערכים, ממוינים, כל
    אחד כ-name+value (כמו RequestValidator של Twilio). כך ערך שנוסף לגוף
    אחרי החתימה תמיד משנה את ה-payload.
    """
    parts = [url]
    for key in sorted(params):
        value = params[key]
        values = [value] if isinstance(value, str) else sorted(set(value))
        parts.extend(f"{key}{v}" for v in values)
    return "".join(parts)


def compute_signature(auth_token: str, url: str, params: Mapping[str, ParamValue]) -> str:
    digest = hmac.new(
        auth_token.encode("utf-8"),
        build_signature_payload(url, params).encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    url: str,
    params: Mapping[str, ParamValue],
    signature: str | None,
    auth_token: str | None,
) -> bool:
    """
    True רק אם החתימה תואמת. נכשל סגור: חתימה חסרה, טוקן לא מוגדר או
    כותרת לא-ASCII — False.
    """
    if not auth_token:
        logger.error("Twilio auth token is not configured — rejecting callback")
        return False
    if not signature:
        return False

    signature = signature.strip()
    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        logger.warning("Twilio signature header is not ASCII")
        return False

    expected = compute_signature(auth_token, url, params).encode("ascii")
    # compare_digest לא עוצר בבית הראשון שלא תואם — אין דליפת timing
    return hmac.compare_digest(provided, expected)


def verify_raw_request(
    url: str,
    raw_body: bytes,
    signature: str | None,
    auth_token: str | None,
) -> bool:
    """אימות מול גוף הבקשה הגולמי (application/x-www-form-urlencoded)."""
    try:
        pairs = parse_qsl(
            raw_body.decode("utf-8"),
            keep_blank_values=True,
            strict_parsing=False,
        )
    except UnicodeDecodeError:
        logger.warning("Twilio callback body is not valid UTF-8")
        return False

    params: dict[str, list[str]] = {}
    for key, value in pairs:
        params.setdefault(key, []).append(value)
    return verify_signature(url, params, signature, auth_token)
