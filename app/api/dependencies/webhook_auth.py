"""
אימות בקשות נכנסות: חתימת webhook של Meta וסוד ה-callback של n8n.

Meta חותמת כל POST עם ``X-Hub-Signature-256: sha256=<hex>`` —
HMAC-SHA256 של ה-body הגולמי עם ה-App Secret. n8n שולח בחזרה את
ה-callbackSecret שקיבל בכותרת ``X-Callback-Secret``.

כל ההשוואות ב-constant time (hmac.compare_digest).

שימוש:
    @router.post("/integration/callback")
    async def callback(
        ...,
        _: None = Depends(verify_callback_secret),
    ):
        ...
"""
import hashlib
import hmac
import re

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
CALLBACK_SECRET_HEADER = "X-Callback-Secret"

_SIGNATURE_PATTERN = re.compile(r"^sha256=([0-9a-fA-F]{64})$")


def _to_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def constant_time_equals(a: bytes | str | None, b: bytes | str | None) -> bool:
    """השוואה שזמן הריצה שלה לא תלוי במיקום ההבדל. None / אורך שונה → False."""
    if a is None or b is None:
        return False
    a_bytes, b_bytes = _to_bytes(a), _to_bytes(b)
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


def sign_payload(raw_body: bytes, secret: bytes | str) -> str:
    """ערך הכותרת שמתאים ל-body: ``sha256=<hex>``"""
    digest = hmac.new(_to_bytes(secret), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(raw_body: bytes, signature_header: str | None, secret: bytes | str) -> bool:
    """
    אימות חתימת Meta על ה-body הגולמי.

    כל צורה אחרת של הכותרת (חסרה, בלי prefix, hex באורך שגוי) נכשלת.
    סוד ריק → False: בלי סוד אין מה לאמת.
    """
    if not signature_header or not secret:
        return False
    match = _SIGNATURE_PATTERN.match(signature_header)
    if match is None:
        return False
    expected = hmac.new(_to_bytes(secret), raw_body, hashlib.sha256).hexdigest()
    return constant_time_equals(match.group(1).lower(), expected)


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str | None:
    """
    handshake של Meta (GET): מחזיר את ה-challenge רק אם mode == "subscribe"
    וה-token תואם בדיוק. אחרת None.
    """
    if mode != "subscribe" or not challenge or not expected_token:
        return None
    if not constant_time_equals(token, expected_token):
        return None
    return challenge


async def verify_callback_secret(
    x_callback_secret: str | None = Header(None),
) -> None:
    """
    אימות ``X-Callback-Secret`` בבקשות callback מ-n8n.

    - סוד לא מוגדר בשרת → 500 (תצורה שבורה, לא בעיה של הקורא).
    - כותרת חסרה או שגויה → 401, בלי קשר לתוכן ה-body.
    """
    expected = settings.N8N_CALLBACK_SECRET
    if not expected:
        logger.error("N8N_CALLBACK_SECRET לא מוגדר — דוחה callback")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Callback secret is not configured",
        )

    if not x_callback_secret:
        logger.warning("callback ללא כותרת X-Callback-Secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing callback secret",
        )

    if not constant_time_equals(x_callback_secret, expected):
        logger.warning("callback עם סוד שגוי")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid callback secret",
        )
