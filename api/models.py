"""
API request and response models for IdentityHub REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
tracker/findings.py, which own the internal domain representation. Route
handlers map between the two.

JSON on the wire is camelCase (projectKey, lastUsedAt, ...). CamelModel sets
the alias generator once; populate_by_name lets Python code construct models
with snake_case keyword arguments. FastAPI serializes response_model output
by alias.

Separation of concerns: auth/ and tracker/ models = domain truth; api/ models = API contract.
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import ApiKey, User
from core.errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Jira project keys: a letter followed by letters, digits or underscores.
PROJECT_KEY_PATTERN = r"^[A-Z][A-Z0-9_]{0,49}$"


def normalize_project_key(value: str, field: str = "projectKey") -> str:
    """Uppercase a project key taken from a path or query string and check it."""
    key = value.strip().upper()
    if not re.match(PROJECT_KEY_PATTERN, key):
        raise ValidationError([f"{field}: must be a letter followed by letters, digits or underscores (max 50)"])
    return key


# Jira labels cannot contain whitespace.
LABEL_PATTERN = r"^\S+$"


class CamelModel(BaseModel):
    """Base for every transport model: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class SignupRequest(CamelModel):
    """Request body for POST /api/v1/auth/signup.

    Password is capped at 72 characters: bcrypt ignores anything beyond
    72 bytes, so a longer password would be silently truncated.
    """

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(CamelModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=72)


class ApiKeyCreate(CamelModel):
    """Request body for POST /api/v1/auth/api-keys."""

    name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, name=user.name, email=user.email, created_at=user.created_at)


class LoginResponse(CamelModel):
    """Response for login and signup. The token is also set as an httpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str


class ApiKeyCreated(CamelModel):
    """Response for POST /api/v1/auth/api-keys.

    plaintext_key is shown exactly once. It is never stored and cannot be
    retrieved again.
    """

    model_config = ConfigDict(frozen=True)

    plaintext_key: str
    id: int
    name: str
    key_prefix: str
    created_at: str


class ApiKeyRow(CamelModel):
    """One row in GET /api/v1/auth/api-keys -- metadata only, never the hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    key_prefix: str
    created_at: str
    last_used_at: Optional[str] = None
    is_active: bool

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyRow":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            created_at=key.created_at,
            last_used_at=key.last_used_at,
            is_active=key.is_active,
        )


# ---------------------------------------------------------------------------
# Jira connection
# ---------------------------------------------------------------------------


class AuthorizationUrl(CamelModel):
    model_config = ConfigDict(frozen=True)

    authorization_url: str


class ConnectionStatus(CamelModel):
    model_config = ConfigDict(frozen=True)

    is_connected: bool
    connected_at: Optional[str] = None
    site_url: Optional[str] = None


class MessageResponse(CamelModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class FindingCreate(CamelModel):
    """Request body for POST /api/v1/findings.

    Every constraint is declarative, so a bad request reports all of its
    problems at once (one violation per failing field).
    """

    project_key: str = Field(min_length=1, max_length=50, pattern=PROJECT_KEY_PATTERN)
    summary: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=32000)
    issue_type: Optional[str] = Field(default=None, min_length=1, max_length=60)
    priority: Optional[str] = Field(default=None, min_length=1, max_length=60)
    labels: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("project_key", mode="before")
    @classmethod
    def uppercase_project_key(cls, value):
        """Uppercase before the pattern check so "sec" and "SEC" are the same project."""
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("labels")
    @classmethod
    def check_labels(cls, values: list[str]) -> list[str]:
        for label in values:
            if not label or len(label) > 255 or any(ch.isspace() for ch in label):
                raise ValueError("labels must be non-empty strings without whitespace")
        return values


class TicketRef(CamelModel):
    model_config = ConfigDict(frozen=True)

    key: str
    id: str
    url: str


class FindingCreated(CamelModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    ticket: TicketRef


class FindingRow(CamelModel):
    model_config = ConfigDict(frozen=True)

    key: Optional[str] = None
    id: Optional[str] = None
    summary: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None
    url: Optional[str] = None


class FindingList(CamelModel):
    model_config = ConfigDict(frozen=True)

    total: int
    findings: list[FindingRow]


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None
    violations: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
