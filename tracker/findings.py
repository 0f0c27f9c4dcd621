"""
tracker/findings.py -- Create and list NHI findings as Jira issues.

A finding is a Jira issue tagged with the configured FINDING_LABELS so it can
be found again with a label-only JQL query. Input is validated at the HTTP
boundary (api/models.FindingCreate) before a FindingDraft is built; this
module only shapes Jira payloads and maps responses.

Every Jira call runs through TokenLifecycleManager.call() so the access
token is refreshed first when it has expired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from auth.models import TrackerConnection
from core.config import get_settings
from tracker.lifecycle import TokenLifecycleManager

logger = logging.getLogger("identityhub.findings")

_FINDING_FIELDS = ["summary", "status", "priority", "created", "updated"]
_RECENT_FIELDS = ["summary", "status", "created", "issuetype"]


@dataclass
class FindingDraft:
    project_key: str
    summary: str
    description: str
    issue_type: str | None = None
    priority: str | None = None
    labels: list[str] = field(default_factory=list)


@dataclass
class CreatedTicket:
    key: str
    id: str
    url: str


def _quote_jql(value: str) -> str:
    """Render a value as a JQL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def to_adf(text: str) -> dict:
    """Wrap plain text in a single-paragraph Atlassian Document Format doc."""
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
    }


def _browse_url(connection: TrackerConnection, key: str) -> str:
    return f"{connection.site_url}/browse/{key}"


def _summarize_issue(issue: dict, connection: TrackerConnection) -> dict:
    fields = issue.get("fields") or {}
    return {
        "key": issue.get("key"),
        "id": issue.get("id"),
        "summary": fields.get("summary"),
        "status": (fields.get("status") or {}).get("name"),
        "priority": (fields.get("priority") or {}).get("name") or "None",
        "created": fields.get("created"),
        "updated": fields.get("updated"),
        "url": _browse_url(connection, issue.get("key", "")),
    }


class FindingService:
    def __init__(self, lifecycle: TokenLifecycleManager) -> None:
        self.lifecycle = lifecycle
        self.client = lifecycle.client
        settings = get_settings()
        self.finding_labels = list(settings.finding_labels)
        self.default_issue_type = settings.default_issue_type

    def build_fields(self, draft: FindingDraft) -> dict:
        labels: list[str] = []
        for label in [*draft.labels, *self.finding_labels]:
            if label not in labels:
                labels.append(label)
        fields = {
            "project": {"key": draft.project_key},
            "summary": draft.summary.strip(),
            "description": to_adf(draft.description.strip()),
            "issuetype": {"name": draft.issue_type or self.default_issue_type},
            "labels": labels,
        }
        if draft.priority:
            fields["priority"] = {"name": draft.priority}
        return fields

    def create_finding(self, user_id: int, draft: FindingDraft) -> CreatedTicket:
        fields = self.build_fields(draft)

        def _create(access_token: str, connection: TrackerConnection) -> CreatedTicket:
            issue = self.client.create_issue(access_token, connection.cloud_id, fields)
            return CreatedTicket(key=issue["key"], id=str(issue["id"]), url=_browse_url(connection, issue["key"]))

        ticket = self.lifecycle.call(user_id, _create)
        logger.info("Finding created: %s by user_id=%s", ticket.key, user_id)
        return ticket

    def list_findings(self, user_id: int, project_key: str | None = None, max_results: int = 50) -> dict:
        jql = " AND ".join(f"labels = {_quote_jql(label)}" for label in self.finding_labels[:2])
        if project_key:
            jql += f" AND project = {_quote_jql(project_key)}"
        jql += " ORDER BY created DESC"

        def _search(access_token: str, connection: TrackerConnection) -> dict:
            data = self.client.search_issues(access_token, connection.cloud_id, jql, max_results, _FINDING_FIELDS)
            issues = data.get("issues", [])
            return {
                "total": data.get("total", len(issues)),
                "findings": [_summarize_issue(issue, connection) for issue in issues],
            }

        return self.lifecycle.call(user_id, _search)

    # ------------------------------------------------------------------
    # Session-authenticated passthroughs for the web UI
    # ------------------------------------------------------------------

    def projects(self, user_id: int) -> list[dict]:
        return self.lifecycle.call(
            user_id, lambda token, conn: self.client.list_projects(token, conn.cloud_id)
        )

    def project_schema(self, user_id: int, project_key: str) -> dict:
        return self.lifecycle.call(
            user_id, lambda token, conn: self.client.get_project_schema(token, conn.cloud_id, project_key)
        )

    def recent_issues(self, user_id: int, project_key: str, max_results: int = 10) -> list[dict]:
        jql = f"project = {_quote_jql(project_key)} ORDER BY created DESC"

        def _search(access_token: str, connection: TrackerConnection) -> list[dict]:
            data = self.client.search_issues(access_token, connection.cloud_id, jql, max_results, _RECENT_FIELDS)
            return data.get("issues", [])

        return self.lifecycle.call(user_id, _search)
