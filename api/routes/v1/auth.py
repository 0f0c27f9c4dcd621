"""
api/routes/v1/auth.py -- Signup, login and API key REST endpoints.

Routes:
  POST   /api/v1/auth/signup             -- create account; sets JWT cookie
  POST   /api/v1/auth/login              -- password login; sets JWT cookie
  POST   /api/v1/auth/logout             -- clears cookie; 200
  GET    /api/v1/auth/me                 -- current identity (requires session)
  POST   /api/v1/auth/api-keys           -- issue API key (requires session)
  GET    /api/v1/auth/api-keys           -- list caller's API keys (requires session)
  DELETE /api/v1/auth/api-keys/{key_id}  -- revoke key (requires session, ownership checked)

Security:
  [H2] POST /login and /signup are rate-limited per IP.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on responses that carry a token.
  IDOR guard: DELETE /api-keys/{id} passes user_id to the store; the store checks ownership.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyRow,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    SignupRequest,
    UserResponse,
)
from auth.apikeys import ApiKeyManager
from auth.dependencies import get_current_identity
from auth.models import SessionIdentity, User
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password, issue_session_token, set_auth_cookie
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


def _session_response(user: User, status_code: int) -> JSONResponse:
    token = issue_session_token(user)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(user=UserResponse.from_user(user), access_token=token).model_dump(by_alias=True),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.signup_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=LoginResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account and start a session.

    A duplicate email surfaces as EmailTaken (409) from the store's UNIQUE
    constraint; there is no separate existence check to race against.
    """
    user_store: UserStore = request.app.state.user_store
    user = User(name=body.name, email=body.email, hashed_password=hash_password(body.password))
    user.id = user_store.create_user(user)
    return _session_response(user_store.get_by_id(user.id), status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Returns the same generic error for an unknown email and a wrong password
    ("bad_credentials") to avoid leaking account existence.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _session_response(user, status_code=200)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(identity: SessionIdentity = Depends(get_current_identity)) -> UserResponse:
    """Return the identity carried by the session token."""
    return UserResponse(id=identity.user_id, name=identity.name, email=identity.email)


# ---------------------------------------------------------------------------
# API key management (session-authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreated, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    identity: SessionIdentity = Depends(get_current_identity),
) -> ApiKeyCreated:
    """Issue a new API key. The plaintext is shown ONCE and never stored."""
    api_keys: ApiKeyManager = request.app.state.api_keys
    issued = api_keys.issue(identity.user_id, body.name)
    return ApiKeyCreated(
        plaintext_key=issued.plaintext_key,
        id=issued.record.id,
        name=issued.record.name,
        key_prefix=issued.record.key_prefix,
        created_at=issued.record.created_at,
    )


@router.get("/auth/api-keys", response_model=list[ApiKeyRow])
def list_api_keys(
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> list[ApiKeyRow]:
    api_keys: ApiKeyManager = request.app.state.api_keys
    return [ApiKeyRow.from_api_key(k) for k in api_keys.list(identity.user_id)]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    key_id: int,
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> Response:
    """Revoke a key. Someone else's key and a missing key both give 404."""
    api_keys: ApiKeyManager = request.app.state.api_keys
    api_keys.revoke(key_id, identity.user_id)
    return Response(status_code=204)
