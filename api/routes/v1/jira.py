"""
api/routes/v1/jira.py -- Jira Cloud connection endpoints for the web UI.

Routes (all require a session):
  GET    /api/v1/jira/auth                           -- authorization URL with a fresh state
  GET    /api/v1/jira/callback                       -- Atlassian redirect target; 302 to the front end
  DELETE /api/v1/jira/disconnect                     -- drop the stored connection
  GET    /api/v1/jira/status                         -- {isConnected, connectedAt, siteUrl}
  GET    /api/v1/jira/projects                       -- projects visible to the connection
  GET    /api/v1/jira/projects/{project_key}/metadata -- issue types and fields (createmeta)
  GET    /api/v1/jira/projects/{project_key}/issues   -- most recent issues

The callback is a browser navigation, not an XHR: every outcome is a 302 to
FRONTEND_URL/jira/success or FRONTEND_URL/jira/error?message=..., never a
JSON error body.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from api.models import AuthorizationUrl, ConnectionStatus, MessageResponse, normalize_project_key
from auth.dependencies import get_current_identity, try_get_identity
from auth.models import SessionIdentity
from core.config import get_settings
from core.errors import DomainError
from tracker.findings import FindingService
from tracker.handshake import OAuthHandshake

logger = logging.getLogger("identityhub.api")

_settings = get_settings()

router = APIRouter()


def _frontend_redirect(path: str, message: str | None = None) -> RedirectResponse:
    url = f"{_settings.frontend_url}/jira/{path}"
    if message is not None:
        url += f"?message={quote(message, safe='')}"
    return RedirectResponse(url, status_code=302)


@router.get("/jira/auth", response_model=AuthorizationUrl)
def authorization_url(
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> AuthorizationUrl:
    """Start the connect flow. Any earlier outstanding state for the user is replaced."""
    handshake: OAuthHandshake = request.app.state.handshake
    return AuthorizationUrl(authorization_url=handshake.start(identity.user_id))


@router.get("/jira/callback", include_in_schema=False)
def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> RedirectResponse:
    identity = try_get_identity(request)
    if identity is None:
        return _frontend_redirect("error", "Not authenticated")

    handshake: OAuthHandshake = request.app.state.handshake
    if error:
        # User denied consent (or Atlassian refused) -- the state is now useless.
        request.app.state.ledger.invalidate(identity.user_id)
        logger.info("Jira authorization declined: user_id=%s error=%s", identity.user_id, error)
        return _frontend_redirect("error", error_description or error)

    try:
        handshake.complete(identity.user_id, code, state)
    except DomainError as exc:
        logger.warning("Jira connect failed: user_id=%s code=%s", identity.user_id, exc.code)
        return _frontend_redirect("error", exc.message)
    except Exception:
        logger.exception("Jira connect failed unexpectedly: user_id=%s", identity.user_id)
        return _frontend_redirect("error", "Failed to connect Jira. Please try again.")
    return _frontend_redirect("success")


@router.delete("/jira/disconnect", response_model=MessageResponse)
def disconnect(
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> MessageResponse:
    handshake: OAuthHandshake = request.app.state.handshake
    handshake.disconnect(identity.user_id)
    return MessageResponse(message="Jira disconnected successfully")


@router.get("/jira/status", response_model=ConnectionStatus)
def status(
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> ConnectionStatus:
    handshake: OAuthHandshake = request.app.state.handshake
    return ConnectionStatus(**handshake.status(identity.user_id))


@router.get("/jira/projects")
def projects(
    request: Request,
    identity: SessionIdentity = Depends(get_current_identity),
) -> list[dict]:
    findings: FindingService = request.app.state.findings
    return findings.projects(identity.user_id)


@router.get("/jira/projects/{project_key}/metadata")
def project_metadata(
    request: Request,
    project_key: str,
    identity: SessionIdentity = Depends(get_current_identity),
) -> dict:
    findings: FindingService = request.app.state.findings
    return findings.project_schema(identity.user_id, normalize_project_key(project_key, "project_key"))


@router.get("/jira/projects/{project_key}/issues")
def recent_issues(
    request: Request,
    project_key: str,
    max_results: int = Query(10, ge=1, le=100, alias="maxResults"),
    identity: SessionIdentity = Depends(get_current_identity),
) -> list[dict]:
    findings: FindingService = request.app.state.findings
    return findings.recent_issues(identity.user_id, normalize_project_key(project_key, "project_key"), max_results)
