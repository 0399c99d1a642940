"""
Stateless OAuth `state` tokens.

The callback has to trust the state without any server-side storage, so
the payload travels inside the token and is protected by an HMAC:

    base64url(json(payload)) + "." + base64url(hmac_sha256(secret, body))
"""
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional

from pydantic import BaseModel, ValidationError

from backend.config import STATE_TTL_MS


class StatePayload(BaseModel):
    n: str
    rt: Optional[str] = None
    exp: int  # epoch milliseconds


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sign(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64url(digest)


def sign_state(payload: StatePayload, secret: str) -> str:
    raw = json.dumps(payload.model_dump(exclude_none=True), separators=(",", ":"))
    body = _b64url(raw.encode("utf-8"))
    return f"{body}.{_sign(body, secret)}"


def verify_state(state: Optional[str], secret: str, now_ms: Optional[int] = None) -> Optional[StatePayload]:
    """Returns the payload if the token is authentic and unexpired, else None."""
    if not state:
        return None
    body, _, sig = state.partition(".")
    if not body or not sig:
        return None

    try:
        expected = _sign(body, secret)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(sig.encode("utf-8"), expected.encode("ascii")):
        return None

    try:
        payload = StatePayload.model_validate_json(_b64url_decode(body))
    except (ValueError, binascii.Error, ValidationError):
        return None

    if (now_ms if now_ms is not None else _now_ms()) > payload.exp:
        return None
    return payload


def new_state(return_to: Optional[str], secret: str) -> str:
    payload = StatePayload(
        n=secrets.token_hex(16),
        rt=return_to,
        exp=_now_ms() + STATE_TTL_MS,
    )
    return sign_state(payload, secret)
