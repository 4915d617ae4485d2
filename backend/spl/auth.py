"""Password hashing plus opaque bearer tokens for sessions and password resets.

Only a peppered HMAC of each token is stored.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import PasswordResetToken, User, UserSession


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_PBKDF2_ITERATIONS = int(os.environ.get("PASSWORD_PBKDF2_ITERATIONS", "390000"))
PASSWORD_SALT_BYTES = int(os.environ.get("PASSWORD_SALT_BYTES", "16"))

TOKEN_BYTES = int(os.environ.get("SESSION_TOKEN_BYTES", "32"))
TOKEN_PEPPER = os.environ.get("SESSION_TOKEN_PEPPER", "").encode("utf-8")
SESSION_TOKEN_PREFIX = os.environ.get("SESSION_TOKEN_PREFIX", "spl")
SESSION_TTL = timedelta(hours=max(1, int(os.environ.get("SESSION_TTL_HOURS", "168"))))

RESET_TOKEN_PREFIX = "splreset"
PASSWORD_RESET_TTL = timedelta(minutes=max(1, int(os.environ.get("PASSWORD_RESET_TTL_MINUTES", "30"))))


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def _unpadded_b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _from_unpadded_b64(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def hash_password(password: str) -> str:
    """Encoded as `algo$iterations$salt$digest`."""
    salt = os.urandom(PASSWORD_SALT_BYTES)
    digest = _pbkdf2(password, salt, PASSWORD_PBKDF2_ITERATIONS)
    return "$".join(
        [PASSWORD_HASH_ALGO, str(PASSWORD_PBKDF2_ITERATIONS), _unpadded_b64(salt), _unpadded_b64(digest)]
    )


def _parse_password_hash(encoded_hash: str) -> tuple[int, bytes, bytes] | None:
    algo, _, rest = encoded_hash.partition("$")
    fields = rest.split("$")
    if algo != PASSWORD_HASH_ALGO or len(fields) != 3:
        return None
    try:
        return int(fields[0]), _from_unpadded_b64(fields[1]), _from_unpadded_b64(fields[2])
    except (ValueError, binascii.Error):
        return None


def verify_password(password: str, encoded_hash: str | None) -> bool:
    parsed = _parse_password_hash(encoded_hash) if encoded_hash else None
    if parsed is None:
        return False
    iterations, salt, expected = parsed
    return hmac.compare_digest(_pbkdf2(password, salt, iterations), expected)


def new_token(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(TOKEN_BYTES)}"


def token_digest(token: str) -> str:
    return hmac.new(TOKEN_PEPPER, token.encode("utf-8"), hashlib.sha256).hexdigest()


def open_session(db: Session, user: User, now: datetime | None = None) -> tuple[str, UserSession]:
    """Add a session row for `user` and return the raw bearer token with it. The caller commits."""
    token = new_token(SESSION_TOKEN_PREFIX)
    session = UserSession(
        user_id=user.id,
        token_hash=token_digest(token),
        expires_at=(now or datetime.utcnow()) + SESSION_TTL,
    )
    db.add(session)
    return token, session


def find_active_session(db: Session, token: str) -> UserSession | None:
    return db.execute(
        select(UserSession).where(
            UserSession.token_hash == token_digest(token),
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > datetime.utcnow(),
        )
    ).scalar_one_or_none()


def issue_password_reset(db: Session, user: User) -> str:
    token = new_token(RESET_TOKEN_PREFIX)
    db.add(
        PasswordResetToken(
            user_id=user.id,
            token_hash=token_digest(token),
            expires_at=datetime.utcnow() + PASSWORD_RESET_TTL,
        )
    )
    return token


def consume_password_reset(db: Session, token: str) -> User | None:
    """Mark a live reset token used and return its user, or None when it is unknown, used or expired."""
    reset = db.execute(
        select(PasswordResetToken)
        .where(PasswordResetToken.token_hash == token_digest(token))
        .with_for_update()
    ).scalar_one_or_none()
    now = datetime.utcnow()
    if reset is None or reset.used_at is not None or reset.expires_at <= now:
        return None
    reset.used_at = now
    return db.get(User, reset.user_id)


def revoke_user_sessions(db: Session, user_id: int) -> int:
    sessions = db.execute(
        select(UserSession).where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
    ).scalars().all()
    now = datetime.utcnow()
    for session in sessions:
        session.revoked_at = now
    return len(sessions)
