"""
api/routes/v1/findings.py -- NHI findings endpoints for machine clients.

Routes (API key required: "X-API-Key: ih_..." or "Authorization: Bearer ih_..."):
  POST /api/v1/findings  -- create a Jira issue for a finding; 201
  GET  /api/v1/findings  -- list issues carrying the finding labels

The API key's owner must have connected Jira through the web UI first;
otherwise both routes answer 409 tracker_not_connected.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import FindingCreate, FindingCreated, FindingList, TicketRef, normalize_project_key
from auth.dependencies import require_api_key
from auth.models import ApiKeyIdentity
from tracker.findings import FindingDraft, FindingService

router = APIRouter()


@router.post("/findings", response_model=FindingCreated, status_code=201)
def create_finding(
    request: Request,
    body: FindingCreate,
    identity: ApiKeyIdentity = Depends(require_api_key),
) -> FindingCreated:
    findings: FindingService = request.app.state.findings
    ticket = findings.create_finding(
        identity.user_id,
        FindingDraft(
            project_key=body.project_key,
            summary=body.summary,
            description=body.description,
            issue_type=body.issue_type,
            priority=body.priority,
            labels=body.labels,
        ),
    )
    return FindingCreated(ticket=TicketRef(key=ticket.key, id=ticket.id, url=ticket.url))


@router.get("/findings", response_model=FindingList)
def list_findings(
    request: Request,
    project_key: Optional[str] = Query(None, alias="projectKey"),
    max_results: int = Query(50, ge=1, le=100, alias="maxResults"),
    identity: ApiKeyIdentity = Depends(require_api_key),
) -> FindingList:
    findings: FindingService = request.app.state.findings
    if project_key:
        project_key = normalize_project_key(project_key)
    return FindingList(**findings.list_findings(identity.user_id, project_key, max_results))
