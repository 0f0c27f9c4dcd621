"""
tracker/client.py -- HTTP client for Atlassian OAuth 2.0 (3LO) and Jira Cloud REST v3.

One requests.Session per client, a bounded timeout on every call, and
"Accept: application/json" on every request. The client is stateless with
respect to users: callers pass the access token and cloud id explicitly. Token
storage and refresh policy live in tracker/lifecycle.py.

Failure model:
  - Any non-2xx answer raises UpstreamTrackerError(remote_status=<status>)
    carrying the remote JSON payload verbatim as ``detail`` (Jira's
    errorMessages / errors, or the OAuth error / error_description).
  - Network failures and timeouts raise UpstreamTrackerError with no remote
    status (rendered as 502).
  - An authorization with no Jira site raises NoAccessibleWorkspace; a site
    entry without an id or url raises UpstreamTrackerError.

authlib builds the authorization URL; token exchange uses the plain session
so the remote error body is surfaced unchanged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests
from authlib.integrations.requests_client import OAuth2Session

from core.config import Settings, get_settings
from core.errors import NoAccessibleWorkspace, UpstreamTrackerError

logger = logging.getLogger("identityhub.tracker")


@dataclass
class TokenSet:
    """Tokens returned by the Atlassian token endpoint.

    refresh_token is None when a refresh response omits it; the caller then
    keeps the refresh token it already has.
    """

    access_token: str
    refresh_token: str | None
    expires_in: int
    scope: str = ""


@dataclass
class Workspace:
    """The Jira Cloud site an authorization grants access to."""

    cloud_id: str
    site_url: str


def _payload(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text[:500]} if resp.text else None


def remote_message(payload: Any) -> str:
    """Best human-readable message from an Atlassian error payload."""
    if isinstance(payload, dict):
        if payload.get("error_description"):
            return str(payload["error_description"])
        if payload.get("error"):
            return str(payload["error"])
        messages = list(payload.get("errorMessages") or [])
        errors = payload.get("errors") or {}
        if isinstance(errors, dict):
            messages.extend(f"{field}: {msg}" for field, msg in errors.items())
        if messages:
            return "; ".join(str(m) for m in messages)
        if payload.get("message"):
            return str(payload["message"])
    return "unknown error"


class JiraClient:
    """Thin wrapper over the Atlassian auth endpoints and the Jira REST API.

    Usage:
        client = JiraClient(get_settings())
        url = client.build_authorization_url(state)
        tokens = client.exchange_code(code)
        workspace = client.resolve_workspace(tokens.access_token)
        projects = client.list_projects(tokens.access_token, workspace.cloud_id)
    """

    def __init__(self, settings: Settings | None = None, session: requests.Session | None = None) -> None:
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.timeout = self.settings.tracker_timeout_seconds
        # URL construction only; token requests go through self.session.
        self._oauth = OAuth2Session(
            client_id=self.settings.jira_client_id,
            scope=self.settings.jira_scopes,
            redirect_uri=self.settings.jira_redirect_uri,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Jira request failed: %s %s: %s", method, url, exc)
            raise UpstreamTrackerError(f"Could not reach Jira: {exc.__class__.__name__}") from exc

        if not resp.ok:
            payload = _payload(resp)
            logger.warning("Jira answered %s for %s %s", resp.status_code, method, url)
            raise UpstreamTrackerError(
                remote_message(payload),
                remote_status=resp.status_code,
                detail=payload,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return _payload(resp)

    def _api(self, method: str, access_token: str, cloud_id: str, path: str, **kwargs) -> Any:
        url = f"{self.settings.jira_api_base_url}/ex/jira/{cloud_id}/rest/api/3/{path}"
        return self._send(method, url, headers={"Authorization": f"Bearer {access_token}"}, **kwargs)

    # ------------------------------------------------------------------
    # OAuth 2.0 (3LO)
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str) -> str:
        url, _ = self._oauth.create_authorization_url(
            self.settings.jira_authorize_url,
            state=state,
            audience="api.atlassian.com",
            prompt="consent",
        )
        return url

    def _token_request(self, grant: dict[str, str]) -> TokenSet:
        body = {
            "client_id": self.settings.jira_client_id,
            "client_secret": self.settings.jira_client_secret,
            **grant,
        }
        data = self._send("POST", self.settings.jira_token_url, json=body) or {}
        if not data.get("access_token"):
            raise UpstreamTrackerError("Token response did not include an access token.", detail=data)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or 3600),
            scope=data.get("scope", ""),
        )

    def exchange_code(self, code: str) -> TokenSet:
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.jira_redirect_uri,
            }
        )

    def refresh(self, refresh_token: str) -> TokenSet:
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def resolve_workspace(self, access_token: str) -> Workspace:
        """Pick the first Jira site the token can reach."""
        resources = self._send(
            "GET",
            f"{self.settings.jira_api_base_url}/oauth/token/accessible-resources",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if resources is not None and not isinstance(resources, list):
            raise UpstreamTrackerError("Unexpected accessible-resources response from Jira.", detail=resources)
        if not resources:
            raise NoAccessibleWorkspace()
        site = resources[0]
        if not (
            isinstance(site, dict)
            and isinstance(site.get("id"), str)
            and site["id"]
            and isinstance(site.get("url"), str)
            and site["url"]
        ):
            raise UpstreamTrackerError("Unexpected accessible-resources response from Jira.", detail=resources)
        return Workspace(cloud_id=site["id"], site_url=site["url"].rstrip("/"))

    # ------------------------------------------------------------------
    # Jira REST v3
    # ------------------------------------------------------------------

    def list_projects(self, access_token: str, cloud_id: str) -> list[dict]:
        data = self._api("GET", access_token, cloud_id, "project/search") or {}
        return data.get("values", [])

    def get_project_schema(self, access_token: str, cloud_id: str, project_key: str) -> dict:
        return self._api(
            "GET",
            access_token,
            cloud_id,
            "issue/createmeta",
            params={"projectKeys": project_key, "expand": "projects.issuetypes.fields"},
        )

    def create_issue(self, access_token: str, cloud_id: str, fields: dict) -> dict:
        return self._api("POST", access_token, cloud_id, "issue", json={"fields": fields})

    def search_issues(
        self,
        access_token: str,
        cloud_id: str,
        jql: str,
        max_results: int = 50,
        fields: list[str] | None = None,
    ) -> dict:
        body: dict[str, Any] = {"jql": jql, "maxResults": max_results}
        if fields:
            body["fields"] = fields
        return self._api("POST", access_token, cloud_id, "search/jql", json=body) or {}

    def close(self) -> None:
        self._oauth.close()
        self.session.close()
