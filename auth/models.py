"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence;
services and routes do the work.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TrackerConnection:
    """A user's single Jira Cloud binding.

    Both tokens are Fernet ciphertext (see auth/codec.py) -- plaintext tokens
    never reach the store. expires_at is epoch *milliseconds*; connected_at is
    an ISO 8601 UTC timestamp set once when the OAuth callback succeeds and
    preserved across token refreshes.
    """

    cloud_id: str
    site_url: str
    encrypted_access_token: str
    encrypted_refresh_token: str
    expires_at: int
    connected_at: str


@dataclass
class User:
    """Represents a signed-up identity in IdentityHub.

    email is stored lowercased and is UNIQUE at the storage level, so a
    concurrent duplicate signup fails with IntegrityError rather than racing
    past an application-level pre-check.

    tracker is None while the user is Disconnected.
    """

    name: str
    email: str
    hashed_password: str
    id: int | None = None
    created_at: str | None = None
    tracker: TrackerConnection | None = None


@dataclass
class ApiKey:
    """A long-lived credential for machine clients (CI/CD, scanners, scripts).

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, secret) where secret is the raw key
      without its public "ih_" prefix. Deterministic hashing gives O(1)
      lookup; 256-bit random secrets make bcrypt's slowness unnecessary.
    - key_prefix (first 10 chars of the plaintext, e.g. "ih_1a2b3c4") is kept
      for display only so users can tell keys apart.
    - The plaintext is never persisted. It is returned ONCE at creation.
    """

    user_id: int
    name: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: str | None = None
    last_used_at: str | None = None
    is_active: bool = True


@dataclass
class IssuedApiKey:
    """Result of ApiKeyManager.issue(): the only place the plaintext exists."""

    plaintext_key: str
    record: ApiKey


@dataclass(frozen=True)
class ApiKeyIdentity:
    """Caller identity established from a valid API key."""

    user_id: int
    key_id: int


@dataclass(frozen=True)
class SessionIdentity:
    """Caller identity carried by a verified session JWT."""

    user_id: int
    name: str
    email: str


@dataclass
class OAuthState:
    """Single-use CSRF token binding an authorization request to its user.

    created_at / expires_at are epoch seconds (float) from the ledger clock.
    """

    user_id: int
    state: str
    created_at: float
    expires_at: float
    id: int | None = None
