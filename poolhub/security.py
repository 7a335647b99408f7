import hmac
import hashlib
import json
import time

from fastapi import Header, HTTPException

from poolhub.config import settings
from poolhub.schemas import Principal


def compute_signature(body: dict, timestamp: str) -> str:
    message = f"{timestamp}:{json.dumps(body, sort_keys=True)}".encode()
    return hmac.new(settings.hmac_secret.encode(), message, hashlib.sha256).hexdigest()


def validate_signature(body: dict, signature: str, timestamp: str):
    expected = compute_signature(body, timestamp)
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid timestamp")
    if abs(int(time.time()) - sent_at) > settings.timestamp_skew_seconds:
        raise HTTPException(status_code=401, detail="timestamp skew")
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=401, detail="invalid signature")


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    x_display_name: str | None = Header(None, alias="X-Display-Name"),
) -> Principal:
    """The acting player, as asserted by the authenticating proxy in front of us."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing user identity")
    return Principal(user_id=x_user_id, display_name=x_display_name or x_user_id)
