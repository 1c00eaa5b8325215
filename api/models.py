"""
API request and response models for Storegate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, tenancy/ and
enforcement/, which own the internal domain representation. Route handlers map
between the two.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditEvent, AuthenticatedUser, IdentityStatus, Role
from enforcement.models import PromoUsage, VendorGoLiveStatus
from tenancy.models import DomainStatus, ResolvedSite

# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Email format and password length are checked by AuthService so the same
    rules apply to every caller, not only HTTP ones.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    full_name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


class RoleChangeRequest(BaseModel):
    role: Role
    reason: Optional[str] = Field(default=None, max_length=500)


class StatusChangeRequest(BaseModel):
    status: IdentityStatus
    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """An authenticated identity with its current role."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    status: str
    full_name: Optional[str] = None
    email_verified: bool = False
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: AuthenticatedUser) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=Role(user.role).value,
            status=user.status,
            full_name=user.full_name,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
        )


class AuthResponse(BaseModel):
    """Response for signup and login. The token is also set as a cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    token: str
    token_type: str = "bearer"
    expires_at: str


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: str
    identity_id: Optional[str]
    performed_by: Optional[str]
    description: Optional[str]
    metadata: dict
    ip_address: Optional[str]
    created_at: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            identity_id=event.identity_id,
            performed_by=event.performed_by,
            description=event.description,
            metadata=event.metadata,
            ip_address=event.ip_address,
            created_at=event.created_at,
        )


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------


class SiteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_id: str
    site_name: str
    site_slug: str
    domain: str
    is_primary: bool

    @classmethod
    def from_resolved(cls, site: ResolvedSite) -> "SiteResponse":
        return cls(
            site_id=site.site_id,
            site_name=site.site_name,
            site_slug=site.site_slug,
            domain=site.domain,
            is_primary=site.is_primary,
        )


class DomainListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_id: str
    primary: Optional[str]
    domains: list[str]


class DomainCreate(BaseModel):
    """Request body for POST /api/v1/sites/{site_id}/domains."""

    model_config = ConfigDict(str_strip_whitespace=True)

    domain: str = Field(min_length=1, max_length=253)
    is_primary: bool = False
    ssl_enabled: bool = True


class PrimaryDomainRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    domain: str = Field(min_length=1, max_length=253)


class DomainStatusRequest(BaseModel):
    status: DomainStatus


# ---------------------------------------------------------------------------
# Catalog and enforcement
# ---------------------------------------------------------------------------


class VisibleProductsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_id: str
    product_ids: list[str]


class VisibilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_visible: bool
    reason: Optional[str] = None


class GoLiveResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    can_go_live: bool
    is_approved: bool
    has_active_subscription: bool
    has_signed_agreement: bool
    blockers: list[str]

    @classmethod
    def from_status(cls, vendor_id: str, status: VendorGoLiveStatus) -> "GoLiveResponse":
        return cls(
            vendor_id=vendor_id,
            can_go_live=status.can_go_live,
            is_approved=status.is_approved,
            has_active_subscription=status.has_active_subscription,
            has_signed_agreement=status.has_signed_agreement,
            blockers=list(status.blockers),
        )


class EnforcementResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    active: bool


class PromoCostResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    start: str
    end: str
    total_vendor_cost: Decimal


# ---------------------------------------------------------------------------
# Promotions
# ---------------------------------------------------------------------------


class PromoValidationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    promo_id: str
    is_valid: bool
    can_be_used: bool
    errors: list[str]


class PromoUsageRequest(BaseModel):
    """Request body for POST /api/v1/promotions/{promo_id}/usage."""

    model_config = ConfigDict(str_strip_whitespace=True)

    order_id: str = Field(min_length=1, max_length=64)
    discount_amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class PromoUsageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    promo_id: str
    order_id: str
    user_id: Optional[str]
    discount_amount: Decimal
    vendor_cost: Decimal
    created_at: Optional[str]

    @classmethod
    def from_usage(cls, usage: PromoUsage) -> "PromoUsageResponse":
        return cls(
            id=usage.id,
            promo_id=usage.promo_id,
            order_id=usage.order_id,
            user_id=usage.user_id,
            discount_amount=usage.discount_amount,
            vendor_cost=usage.vendor_cost,
            created_at=usage.created_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


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
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
