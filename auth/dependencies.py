"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two caller kinds, two dependencies:

  Humans (web UI) -- session JWT, checked in priority order:
    1. JWT cookie ("access_token") -- set by login/signup.
    2. Authorization: Bearer <jwt> header.
  get_current_identity() returns a SessionIdentity built from the verified
  claims alone. It never touches storage.

  Machines (scanners, CI/CD) -- API key, checked in priority order:
    1. X-API-Key: ih_... header.
    2. Authorization: Bearer ih_... header.
  require_api_key() returns an ApiKeyIdentity. The last_used_at stamp is
  held back until the endpoint has finished, so it is recorded for every
  accepted key, including requests that end in an error response.

try_get_identity() is the soft variant (returns None on failure).

Layer rule: no imports from tracker/.
  auth/dependencies.py may import from fastapi (for Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

from fastapi import Request

from auth.models import ApiKeyIdentity, SessionIdentity
from auth.tokens import API_KEY_PREFIX, verify_session_token
from core.errors import AuthenticationFailure


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_identity(request: Request) -> SessionIdentity | None:
    """Attempt to authenticate the request via session cookie or Bearer JWT.

    Returns the SessionIdentity on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_identity().
    """
    # 1. Cookie (web UI)
    token: str | None = request.cookies.get("access_token")

    # 2. Authorization: Bearer header -- API keys are not session tokens
    if not token:
        bearer = _bearer_token(request)
        if bearer and not bearer.startswith(API_KEY_PREFIX):
            token = bearer

    if not token:
        return None
    return verify_session_token(token)


def get_current_identity(request: Request) -> SessionIdentity:
    """Require a valid session. Raises AuthenticationFailure (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: SessionIdentity = Depends(get_current_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise AuthenticationFailure("Not authenticated.")
    return identity


def require_api_key(request: Request) -> Iterator[ApiKeyIdentity]:
    """Require a valid API key. Raises AuthenticationFailure (401) otherwise.

    Yield dependency: the last_used_at stamp runs on the way out, after the
    endpoint has finished, whether it returned or raised (409, 422, 502...).
    """
    raw_key = request.headers.get("X-API-Key", "").strip() or _bearer_token(request)
    if not raw_key:
        raise AuthenticationFailure(
            "API key required. Use 'X-API-Key: ih_...' or 'Authorization: Bearer ih_...'."
        )

    pending: list[tuple[Callable[..., None], tuple]] = []

    def defer(func: Callable[..., None], *args) -> None:
        pending.append((func, args))

    identity = request.app.state.api_keys.validate(raw_key, defer=defer)
    if identity is None:
        raise AuthenticationFailure("Invalid or revoked API key.")
    try:
        yield identity
    finally:
        for func, args in pending:
            func(*args)
