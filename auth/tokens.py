"""
auth/tokens.py -- Session JWT, password hashing, and API key primitives.

Security design decisions:
  Sessions: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, name, email, iat and exp. Signing (not encryption) makes
       tampering detectable independent of secrecy. Verification returns None
       on any failure -- the dependency layer turns that into a 401 -- but an
       expired token and a forged/malformed token log differently.

  Passwords: bcrypt directly. Bcrypt's cost factor makes brute-force of
       low-entropy passwords expensive. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  API keys: "ih_" + secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, secret) over the part after the public prefix so
       lookup is O(1). bcrypt's intentional slowness is unnecessary here.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6][M7].

Layer rule: no imports from api/ or tracker/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from auth.models import SessionIdentity
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("identityhub.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

API_KEY_PREFIX = "ih_"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates inputs beyond 72 bytes. The API layer caps passwords at
    72 characters (Pydantic field) so nothing is silently dropped for ASCII input.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a crash.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("identityhub_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the email is registered, so an attacker
    cannot enumerate accounts by measuring response time [C1].

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def issue_session_token(user: User, expire_seconds: int | None = None) -> str:
    """Encode a signed session JWT for the user.

    Args:
        user:           Persisted User (id must be set).
        expire_seconds: Lifetime override. Defaults to
                        Settings.session_expire_seconds (24 hours).
    """
    duration = _settings.session_expire_seconds if expire_seconds is None else expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "user_id": user.id,
        "name": user.name,
        "email": user.email,
        "iat": int(now.timestamp()),
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_session_token(token: str) -> SessionIdentity | None:
    """Verify a session JWT. Returns the identity or None on any failure.

    Expired tokens are routine (the user simply logs in again) and log at
    INFO; malformed tokens or bad signatures may indicate tampering and log
    at WARNING. Callers see the same None either way.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError:
        logger.info("Session token expired")
        return None
    except JWTError as exc:
        logger.warning("Invalid session token: %s", exc)
        return None

    try:
        return SessionIdentity(
            user_id=int(payload["user_id"]),
            name=str(payload["name"]),
            email=str(payload["email"]),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Session token is missing identity claims")
        return None


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: ih_<64 hex chars>.

    secrets.token_hex(32) produces 32 random bytes as 64 hex characters,
    giving 256 bits of entropy.
    """
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def strip_api_key_prefix(raw_key: str) -> str:
    """Return the secret part of a presented key (prefix is optional on input)."""
    if raw_key.startswith(API_KEY_PREFIX):
        return raw_key[len(API_KEY_PREFIX) :]
    return raw_key


def hash_api_key(secret: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, secret) as a hex string.

    Using SECRET_KEY as the HMAC key means an attacker who obtains the DB
    cannot confirm guessed keys offline without also knowing SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        secret.encode(),
        hashlib.sha256,
    ).hexdigest()


def mask_secret(value: str, keep: int = 6) -> str:
    """Keep the first `keep` characters of a secret for log lines; mask the rest."""
    if not value:
        return ""
    return f"{value[:keep]}****"


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": the cookie still rides along on the top-level GET redirect
        back from Atlassian to /jira/callback, which the OAuth flow needs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_expire_seconds,
    )
