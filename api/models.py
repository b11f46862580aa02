"""
API request and response models for DealFlow auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password fields are capped at 128 characters to stay clear of bcrypt's
72-byte truncation for realistic inputs and to bound hashing cost. Passwords
are never stripped: only email addresses are trimmed.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from auth.models import Account, AuditEvent, CurrentUser, FederationPolicy

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    manager = "manager"
    sales = "sales"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

EmailField = Annotated[str, StringConstraints(strip_whitespace=True, max_length=320)]
NameField = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)]


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Length and presence rules beyond "non-empty" are enforced by the auth core
    so API and programmatic callers get the same error codes.
    """

    email: EmailField = ""
    password: str = Field(default="", max_length=128)
    first_name: Optional[NameField] = None
    last_name: Optional[NameField] = None


class LoginRequest(BaseModel):
    email: EmailField = ""
    password: str = Field(default="", max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: EmailField = ""


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", max_length=128)
    password: str = Field(default="", max_length=128)


class LinkFederationRequest(BaseModel):
    """Request body for POST /api/v1/admin/users/{id}/link-microsoft."""

    model_config = ConfigDict(str_strip_whitespace=True)

    microsoft_user_id: str = Field(min_length=1, max_length=255)
    tenant_id: str = Field(min_length=1, max_length=255)


class PolicyPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/sso-settings. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    allowed_tenant_ids: Optional[list[str]] = Field(default=None, max_length=100)
    allowed_email_domains: Optional[list[str]] = Field(default=None, max_length=100)
    default_role_for_sso: Optional[RoleEnum] = None
    auto_provision_users: Optional[bool] = None
    sso_only: Optional[bool] = None

    @field_validator("allowed_tenant_ids", "allowed_email_domains", mode="before")
    @classmethod
    def normalize_entries(cls, values: Optional[list]) -> Optional[list[str]]:
        """Lower-case, strip, drop blanks and duplicates while preserving order."""
        if values is None:
            return None
        seen: set[str] = set()
        result: list[str] = []
        for v in values:
            normalized = str(v).strip().lower().lstrip("@")
            if normalized and normalized not in seen:
                seen.add(normalized)
                result.append(normalized)
        return result


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Sanitized account -- the password hash never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    origin: str
    has_password: bool
    microsoft_linked: bool
    federated_tenant: Optional[str]
    disabled: bool
    email_verified: bool
    created_at: Optional[datetime]
    last_login_at: Optional[datetime]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            origin=account.origin,
            has_password=account.has_password,
            microsoft_linked=bool(account.federated_subject),
            federated_tenant=account.federated_tenant,
            disabled=account.disabled,
            email_verified=account.email_verified,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class AdminUserRow(AccountResponse):
    """One row in GET /api/v1/admin/users -- account plus CRM role."""

    role: Optional[str] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    email: str
    name: str
    role: str
    disabled: bool
    origin: str

    @classmethod
    def from_current(cls, user: CurrentUser) -> "MeResponse":
        return cls(
            account_id=user.account_id,
            email=user.email,
            name=user.name,
            role=user.role,
            disabled=user.disabled,
            origin=user.origin,
        )


class AuthStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[MeResponse] = None
    microsoft_sso_enabled: bool


class SessionUserResponse(BaseModel):
    """Returned by register/login: the signed-in account."""

    model_config = ConfigDict(frozen=True)

    user: AccountResponse


class ForgotPasswordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    token: Optional[str] = None  # only populated when EXPOSE_RESET_TOKEN and DEBUG


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class PolicyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed_tenant_ids: list[str]
    allowed_email_domains: list[str]
    default_role_for_sso: str
    auto_provision_users: bool
    sso_only: bool
    updated_at: Optional[datetime] = None

    @classmethod
    def from_policy(cls, policy: FederationPolicy) -> "PolicyResponse":
        return cls(
            allowed_tenant_ids=policy.allowed_tenant_ids,
            allowed_email_domains=policy.allowed_email_domains,
            default_role_for_sso=policy.default_role_for_sso,
            auto_provision_users=policy.auto_provision_users,
            sso_only=policy.sso_only,
            updated_at=policy.updated_at,
        )


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    account_id: Optional[int]
    email: Optional[str]
    action: str
    provider: Optional[str]
    success: bool
    failure_reason: Optional[str]
    metadata: Optional[dict]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            account_id=event.account_id,
            email=event.email,
            action=event.action,
            provider=event.provider,
            success=event.success,
            failure_reason=event.failure_reason,
            metadata=event.metadata,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=event.created_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
