"""
enforcement/models.py -- Vendor, catalog and promotion records plus derived check results.

The record dataclasses mirror rows owned by other parts of the platform
(vendor onboarding, catalog admin, promotion admin). The engine reads them
and only writes status demotions and promo usage.

Money is Decimal in the domain and integer cents in the database.

VendorGoLiveStatus, ProductVisibility and PromoValidation are derived on every
call and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

DEFAULT_ALLOWED_ROLES = ["retail", "b2b_approved", "vip"]


class VendorStatus(str, Enum):
    applied = "applied"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    suspended = "suspended"


class SubscriptionStatus(str, Enum):
    active = "active"
    past_due = "past_due"
    cancelled = "cancelled"
    expired = "expired"


class AgreementStatus(str, Enum):
    pending = "pending"
    signed = "signed"
    rejected = "rejected"
    expired = "expired"


class ProductStatus(str, Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class PromotionStatus(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    expired = "expired"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Vendor:
    company_name: str
    status: str = VendorStatus.applied.value
    id: str | None = None
    created_at: str | None = None


@dataclass
class VendorSubscription:
    """Billing state. Only status=active with billing_period_end in the future counts."""

    vendor_id: str
    billing_period_start: str  # ISO 8601
    billing_period_end: str  # ISO 8601
    tier: str = "starter"  # "starter" | "growth" | "scale"
    status: str = SubscriptionStatus.active.value
    monthly_price: Decimal = Decimal("0")
    id: str | None = None


@dataclass
class VendorAgreement:
    vendor_id: str
    agreement_version: str
    status: str = AgreementStatus.pending.value
    signed_at: str | None = None
    id: str | None = None


@dataclass
class Product:
    """A sellable item.

    enforce_site_visibility=False makes the product visible on every site
    without a site_product_visibility row.
    """

    vendor_id: str
    name: str
    status: str = ProductStatus.draft.value
    category_id: str | None = None
    enforce_site_visibility: bool = True
    id: str | None = None


@dataclass
class Promotion:
    """A vendor-funded discount.

    site_id None means every site. allowed_roles None means every role.
    usage_limit None (or 0) means unlimited. usage_count and the two totals
    are maintained by the store on every usage insert.
    """

    vendor_id: str
    name: str
    starts_at: str  # ISO 8601
    status: str = PromotionStatus.active.value
    site_id: str | None = None
    code: str | None = None
    ends_at: str | None = None
    allowed_roles: list[str] | None = field(default_factory=lambda: list(DEFAULT_ALLOWED_ROLES))
    usage_limit: int | None = None
    usage_count: int = 0
    total_discount_given: Decimal = Decimal("0")
    total_vendor_cost: Decimal = Decimal("0")
    id: str | None = None


@dataclass
class PromoUsage:
    """One redemption. vendor_cost equals discount_amount: the vendor funds the discount."""

    promo_id: str
    order_id: str
    discount_amount: Decimal
    vendor_cost: Decimal
    user_id: str | None = None
    id: str | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Derived results
# ---------------------------------------------------------------------------


@dataclass
class VendorGoLiveStatus:
    can_go_live: bool
    is_approved: bool
    has_active_subscription: bool
    has_signed_agreement: bool
    blockers: list[str] = field(default_factory=list)


@dataclass
class ProductVisibility:
    is_visible: bool
    reason: str | None = None


@dataclass
class PromoValidation:
    is_valid: bool
    can_be_used: bool
    errors: list[str] = field(default_factory=list)
