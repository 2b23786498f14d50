import hashlib
import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("shopee_sync")


SENSITIVE_KEYS = (
    "access_token", "refresh_token", "partner_key", "sign",
    "authorization", "password",
)


def mask_secret(value: Optional[str], length: int = 4) -> str:
    """Return a short, non-sensitive preview of a secret for logs."""
    if not value:
        return "<none>"
    value = str(value)
    if len(value) <= length * 2:
        return "***"
    return f"{value[:length]}...{value[-length:]}"


def token_fingerprint(token: Optional[str]) -> str:
    """SHA-256 fingerprint so logs can tell tokens apart without exposing them."""
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def sanitize_params(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not data:
        return {}

    sanitized = dict(data)
    for key in SENSITIVE_KEYS:
        if key in sanitized and sanitized[key] is not None:
            sanitized[key] = mask_secret(str(sanitized[key]))
    return sanitized
