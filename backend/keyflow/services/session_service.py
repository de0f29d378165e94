# Overview: Service-layer operations for bearer sessions; issue, check and revoke.

"""
Bearer sessions for API callers.

The client holds a random 64-hex-character token; only its SHA-256 digest
is persisted in `session_tokens`. A session ends when:
- SESSION_ABSOLUTE_HOURS have passed since login
- it was idle for more than SESSION_IDLE_MINUTES
- the account was deactivated
- it was revoked (logout)
Removing an account deletes its sessions outright.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError
from ..models import Account, SessionToken
from keyflow.time_utils import utcnow


@dataclass
class SessionContext:
    account: Account
    session: SessionToken


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_ABSOLUTE_HOURS", 24))


def _idle_timeout() -> timedelta:
    return timedelta(minutes=current_app.config.get("SESSION_IDLE_MINUTES", 120))


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    # Tokens are high-entropy, a plain digest is enough
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _live_session(token: str) -> SessionToken | None:
    return (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )


def _end(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def create_session(
    account_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Open a session for an account.

    Returns (session_record, plaintext_token); the plaintext is not kept.
    """
    account = db.session.get(Account, account_id)
    if not account:
        raise NotFoundError("Account not found")

    token = generate_token()
    now = utcnow()
    session = SessionToken(
        account_id=account.id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to its account, or None when the session has
    ended. Touches last_used_at on success.
    """
    session = _live_session(token)
    if not session:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None
    if now - session.last_used_at > _idle_timeout():
        _end(session, "Idle timeout")
        return None

    account = session.account
    if not account or not account.is_active or account.status != "active":
        _end(session, "Account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()
    return SessionContext(account=account, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Returns False when no live session matches the token."""
    session = _live_session(token)
    if not session:
        return False
    _end(session, reason)
    return True
