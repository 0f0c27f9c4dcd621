"""
core/errors.py -- Domain error taxonomy for IdentityHub.

Every failure the service layer reports to a caller is one of these classes.
Each carries a stable machine-readable ``code``, a human-readable ``message``
and the HTTP status the API layer should use. api/main.py registers a single
exception handler for DomainError that renders the shared error envelope:

    {"error": {"code": ..., "message": ..., "detail": ..., "violations": [...]}}

Outward messages are deliberately generic where detail would act as an oracle
(authentication, CSRF). The specific cause is logged server-side instead.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or tracker/.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for errors with a stable code and an HTTP status."""

    code: str = "domain_error"
    status_code: int = 400
    default_message: str = "Request could not be completed."

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        self.message: str = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable error body **without secrets**."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class AuthenticationFailure(DomainError):
    """Missing, invalid, or expired session credential or API key."""

    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class CsrfValidationFailure(DomainError):
    """OAuth state absent, mismatched, or expired. Never says which."""

    code = "csrf_failed"
    status_code = 400
    default_message = "Session expired. Please try connecting again."


class HandshakeFailure(DomainError):
    """The OAuth callback arrived without the parameters needed to continue."""

    code = "connect_failed"
    status_code = 400


class TrackerNotConnected(DomainError):
    code = "tracker_not_connected"
    status_code = 409
    default_message = "Jira is not connected for this user. Connect Jira through the web interface first."


class TrackerReauthRequired(DomainError):
    """Stored Jira credentials can no longer be used; the user must reconnect."""

    code = "tracker_reauth_required"
    status_code = 409
    default_message = "Jira authorization has expired or was revoked. Please reconnect Jira."


class UpstreamTrackerError(DomainError):
    """Jira rejected a request or could not be reached.

    ``remote_status`` is the status Jira answered with (None for network
    failures). ``detail`` holds the remote JSON payload verbatim so callers can
    self-correct (unknown project, invalid issue type, field errors).
    """

    code = "upstream_error"
    default_message = "Jira request failed."

    def __init__(
        self,
        message: str | None = None,
        *,
        remote_status: int | None = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.remote_status = remote_status
        if remote_status == 404:
            self.status_code = 404
        elif remote_status is not None and 400 <= remote_status < 500:
            self.status_code = 400
        else:
            self.status_code = 502


class NoAccessibleWorkspace(DomainError):
    """The Jira account authorized the app but exposes no Jira site."""

    code = "no_accessible_workspace"
    status_code = 409
    default_message = "No accessible Jira sites found for this account."


class ValidationError(DomainError):
    """Malformed caller input. ``violations`` lists every problem at once."""

    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."

    def __init__(self, violations: list[str], message: str | None = None) -> None:
        super().__init__(message)
        self.violations = list(violations)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["violations"] = self.violations
        return payload


class EmailTaken(DomainError):
    code = "email_taken"
    status_code = 409
    default_message = "This email is already taken."


class NotFoundOrUnauthorized(DomainError):
    """Resource is missing or owned by someone else -- indistinguishable on purpose."""

    code = "not_found"
    status_code = 404
    default_message = "Not found."


class ApiKeyLimitReached(DomainError):
    code = "key_limit_reached"
    status_code = 400


class CorruptedSecret(Exception):
    """Ciphertext is malformed, tampered, or was sealed under a different SECRET_KEY.

    Not a DomainError: it never reaches a caller directly. The token lifecycle
    manager turns it into TrackerReauthRequired ("connection lost").
    """
