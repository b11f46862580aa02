"""
auth/sessions.py -- Server-side sessions with a signed cookie handle.

Security design decisions:
  State: the session lives in the sessions table. The cookie carries only a
       python-jose HS256 JWT whose "sid" claim names the row, signed with
       SECRET_KEY. Deleting the row ends the session no matter what the
       browser still holds, which is how disabling an account evicts it.

  sid: secrets.token_hex(32) -- 256 bits, unguessable even without the
       signature.

  Snapshots: resolve_session() returns an immutable SessionRecord. Nothing
       mutates a live session; changes invalidate the row and the next lookup
       observes it.

  Cookie: httpOnly, samesite=lax, secure when SECURE_COOKIES=true, max_age
       equal to the session TTL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.models import Account, SessionRecord
from auth.store import utcnow
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("dealflow.auth")

SESSION_COOKIE = "session"
_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Cookie token encode / decode
# ---------------------------------------------------------------------------


def encode_session_token(record: SessionRecord) -> str:
    payload = {"sid": record.sid, "sub": str(record.account_id), "exp": record.expires_at}
    return jwt.encode(payload, get_settings().secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> str | None:
    """Return the sid from a signed cookie, or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) and sid else None


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


def create_session(store: AccountStore, account: Account) -> tuple[str, SessionRecord]:
    """Persist a new session for the account. Returns (cookie token, record)."""
    now = utcnow()
    record = SessionRecord(
        sid=secrets.token_hex(32),
        account_id=account.id,
        email=account.email,
        display_name=account.display_name,
        origin=account.origin,
        disabled=account.disabled,
        created_at=now,
        expires_at=now + timedelta(seconds=get_settings().session_ttl_seconds),
    )
    store.create_session(record)
    return encode_session_token(record), record


def resolve_session(store: AccountStore, token: str | None) -> SessionRecord | None:
    """Look up the live session named by a cookie token."""
    if not token:
        return None
    sid = decode_session_token(token)
    if sid is None:
        return None
    return store.get_session(sid)


def end_session(store: AccountStore, token: str | None) -> SessionRecord | None:
    """Delete the session named by the token. Returns what was ended, if any."""
    record = resolve_session(store, token)
    if record is not None:
        store.delete_session(record.sid)
    return record


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session handle as an httpOnly cookie on the response."""
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
