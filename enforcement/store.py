"""
enforcement/store.py -- SQLAlchemy Core persistence for vendors, catalog and promotions.

Pattern: Repository + Data Mapper (same as auth/store.py).

Vendors, subscriptions, agreements, products and promotions are owned by the
admin side of the platform; the create_* methods exist so that side (and the
tests) can populate them. The enforcement engine itself only writes:
  - subscription expiry and product archiving (one transaction),
  - promo usage rows plus the promotion's running counters (one transaction).

Money is stored as integer cents. Decimal values are quantised to two places
on the way in, so totals never drift through float conversion.
"""

from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select, text
from sqlalchemy.engine import Engine

from core.db import DEFAULT_TIMEOUT_SECONDS, make_engine, new_id, to_iso, utcnow
from enforcement.models import (
    AgreementStatus,
    Product,
    ProductStatus,
    Promotion,
    PromoUsage,
    SubscriptionStatus,
    Vendor,
    VendorAgreement,
    VendorSubscription,
)

_CENT = Decimal("0.01")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_vendors = Table(
    "vendors",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("company_name", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="applied"),
    Column("created_at", String(40), nullable=False),
)

_subscriptions = Table(
    "vendor_subscriptions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("vendor_id", String(36), nullable=False, index=True),
    Column("tier", String(20), nullable=False, server_default="starter"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("billing_period_start", String(40), nullable=False),
    Column("billing_period_end", String(40), nullable=False),
    Column("monthly_price_cents", Integer, nullable=False, server_default="0"),
    Column("updated_at", String(40), nullable=True),
)

_agreements = Table(
    "vendor_agreements",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("vendor_id", String(36), nullable=False, index=True),
    Column("agreement_version", String(40), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("signed_at", String(40), nullable=True),
)

_products = Table(
    "products",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("vendor_id", String(36), nullable=False, index=True),
    Column("category_id", String(36), nullable=True),
    Column("name", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="draft"),
    Column("enforce_site_visibility", Integer, nullable=False, server_default="1"),
    Column("updated_at", String(40), nullable=True),
)

_product_visibility = Table(
    "site_product_visibility",
    _metadata,
    Column("site_id", String(36), primary_key=True),
    Column("product_id", String(36), primary_key=True),
    Column("is_visible", Integer, nullable=False, server_default="1"),
    Column("updated_at", String(40), nullable=True),
)

_category_visibility = Table(
    "site_category_visibility",
    _metadata,
    Column("site_id", String(36), primary_key=True),
    Column("category_id", String(36), primary_key=True),
    Column("is_visible", Integer, nullable=False, server_default="1"),
    Column("updated_at", String(40), nullable=True),
)

_promotions = Table(
    "promotions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("vendor_id", String(36), nullable=False, index=True),
    Column("site_id", String(36), nullable=True),
    Column("name", Text, nullable=False),
    Column("code", String(50), nullable=True),
    Column("status", String(20), nullable=False, server_default="draft"),
    Column("starts_at", String(40), nullable=False),
    Column("ends_at", String(40), nullable=True),
    Column("allowed_roles", Text, nullable=True),  # JSON array; NULL means every role
    Column("usage_limit", Integer, nullable=True),
    Column("usage_count", Integer, nullable=False, server_default="0"),
    Column("total_discount_cents", Integer, nullable=False, server_default="0"),
    Column("total_vendor_cost_cents", Integer, nullable=False, server_default="0"),
)

_promo_usage = Table(
    "promo_usage",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("promo_id", String(36), nullable=False),
    Column("order_id", String(36), nullable=False),
    Column("user_id", String(36), nullable=True),
    Column("discount_cents", Integer, nullable=False),
    Column("vendor_cost_cents", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
)

Index("ix_promo_usage_promo_created", _promo_usage.c.promo_id, _promo_usage.c.created_at)


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int | None) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(_CENT)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CommerceStore:
    """Repository for the vendor, catalog and promotion records the engine reads.

    Usage:
        store = CommerceStore("sqlite:///:memory:")
        vendor_id = store.create_vendor(Vendor(company_name="Acme", status="approved"))
        store.list_active_subscriptions(vendor_id)
    """

    def __init__(self, db_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Vendors
    # ------------------------------------------------------------------

    def create_vendor(self, vendor: Vendor) -> str:
        vendor_id = vendor.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _vendors.insert().values(
                    id=vendor_id,
                    company_name=vendor.company_name,
                    status=vendor.status,
                    created_at=vendor.created_at or to_iso(utcnow()),
                )
            )
            conn.commit()
        return vendor_id

    def get_vendor(self, vendor_id: str) -> Vendor | None:
        with self.engine.connect() as conn:
            row = conn.execute(_vendors.select().where(_vendors.c.id == vendor_id)).fetchone()
        if row is None:
            return None
        return Vendor(id=row.id, company_name=row.company_name, status=row.status, created_at=row.created_at)

    def list_vendor_ids(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_vendors.c.id).order_by(_vendors.c.created_at)).fetchall()
        return [r.id for r in rows]

    def set_vendor_status(self, vendor_id: str, status: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_vendors.update().where(_vendors.c.id == vendor_id).values(status=status))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Subscriptions and agreements
    # ------------------------------------------------------------------

    def add_subscription(self, sub: VendorSubscription) -> str:
        sub_id = sub.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _subscriptions.insert().values(
                    id=sub_id,
                    vendor_id=sub.vendor_id,
                    tier=sub.tier,
                    status=sub.status,
                    billing_period_start=sub.billing_period_start,
                    billing_period_end=sub.billing_period_end,
                    monthly_price_cents=to_cents(sub.monthly_price),
                )
            )
            conn.commit()
        return sub_id

    def get_subscription(self, sub_id: str) -> VendorSubscription | None:
        with self.engine.connect() as conn:
            row = conn.execute(_subscriptions.select().where(_subscriptions.c.id == sub_id)).fetchone()
        return _row_to_subscription(row) if row is not None else None

    def list_active_subscriptions(self, vendor_id: str) -> list[VendorSubscription]:
        """Active subscriptions of a vendor, latest billing_period_end first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _subscriptions.select()
                .where(
                    (_subscriptions.c.vendor_id == vendor_id)
                    & (_subscriptions.c.status == SubscriptionStatus.active.value)
                )
                .order_by(_subscriptions.c.billing_period_end.desc())
            ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def add_agreement(self, agreement: VendorAgreement) -> str:
        agreement_id = agreement.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _agreements.insert().values(
                    id=agreement_id,
                    vendor_id=agreement.vendor_id,
                    agreement_version=agreement.agreement_version,
                    status=agreement.status,
                    signed_at=agreement.signed_at,
                )
            )
            conn.commit()
        return agreement_id

    def has_signed_agreement(self, vendor_id: str) -> bool:
        """True if any agreement of the vendor, of any version, is signed."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_agreements.c.id)
                .where(
                    (_agreements.c.vendor_id == vendor_id)
                    & (_agreements.c.status == AgreementStatus.signed.value)
                )
                .limit(1)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Enforcement writes
    # ------------------------------------------------------------------

    def expire_and_archive(self, vendor_id: str, subscription_ids: list[str], archive: bool, now: str) -> int:
        """Expire the given subscriptions and, if archive, the vendor's active products.

        Both happen in one transaction, stamped with now. Returns the number of
        products archived.
        """
        archived = 0
        with self.engine.begin() as conn:
            if subscription_ids:
                conn.execute(
                    _subscriptions.update()
                    .where(
                        _subscriptions.c.id.in_(subscription_ids)
                        & (_subscriptions.c.status == SubscriptionStatus.active.value)
                    )
                    .values(status=SubscriptionStatus.expired.value, updated_at=now)
                )
            if archive:
                result = conn.execute(
                    _products.update()
                    .where(
                        (_products.c.vendor_id == vendor_id)
                        & (_products.c.status == ProductStatus.active.value)
                    )
                    .values(status=ProductStatus.archived.value, updated_at=now)
                )
                archived = result.rowcount
        return archived

    def archive_product(self, product_id: str, now: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _products.update()
                .where((_products.c.id == product_id) & (_products.c.status == ProductStatus.active.value))
                .values(status=ProductStatus.archived.value, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Products and visibility
    # ------------------------------------------------------------------

    def create_product(self, product: Product) -> str:
        product_id = product.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _products.insert().values(
                    id=product_id,
                    vendor_id=product.vendor_id,
                    category_id=product.category_id,
                    name=product.name,
                    status=product.status,
                    enforce_site_visibility=1 if product.enforce_site_visibility else 0,
                )
            )
            conn.commit()
        return product_id

    def get_product(self, product_id: str) -> Product | None:
        with self.engine.connect() as conn:
            row = conn.execute(_products.select().where(_products.c.id == product_id)).fetchone()
        return _row_to_product(row) if row is not None else None

    def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        if not product_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_products.select().where(_products.c.id.in_(product_ids))).fetchall()
        return {r.id: _row_to_product(r) for r in rows}

    def set_product_visibility(self, site_id: str, product_id: str, visible: bool) -> None:
        _upsert_visibility(self.engine, _product_visibility, "product_id", site_id, product_id, visible)

    def get_product_visibility(self, product_id: str, site_id: str) -> bool | None:
        """The explicit flag for (site, product), or None when no row exists."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_product_visibility.c.is_visible).where(
                    (_product_visibility.c.site_id == site_id)
                    & (_product_visibility.c.product_id == product_id)
                )
            ).fetchone()
        return bool(row.is_visible) if row is not None else None

    def list_visible_product_ids(self, site_id: str, limit: int) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_product_visibility.c.product_id)
                .where((_product_visibility.c.site_id == site_id) & (_product_visibility.c.is_visible == 1))
                .order_by(_product_visibility.c.product_id)
                .limit(limit)
            ).fetchall()
        return [r.product_id for r in rows]

    def set_category_visibility(self, site_id: str, category_id: str, visible: bool) -> None:
        _upsert_visibility(self.engine, _category_visibility, "category_id", site_id, category_id, visible)

    def get_category_visibility(self, category_id: str, site_id: str) -> bool | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_category_visibility.c.is_visible).where(
                    (_category_visibility.c.site_id == site_id)
                    & (_category_visibility.c.category_id == category_id)
                )
            ).fetchone()
        return bool(row.is_visible) if row is not None else None

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------

    def create_promotion(self, promo: Promotion) -> str:
        promo_id = promo.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _promotions.insert().values(
                    id=promo_id,
                    vendor_id=promo.vendor_id,
                    site_id=promo.site_id,
                    name=promo.name,
                    code=promo.code,
                    status=promo.status,
                    starts_at=promo.starts_at,
                    ends_at=promo.ends_at,
                    allowed_roles=json.dumps(promo.allowed_roles) if promo.allowed_roles is not None else None,
                    usage_limit=promo.usage_limit,
                    usage_count=promo.usage_count,
                    total_discount_cents=to_cents(promo.total_discount_given),
                    total_vendor_cost_cents=to_cents(promo.total_vendor_cost),
                )
            )
            conn.commit()
        return promo_id

    def get_promotion(self, promo_id: str) -> Promotion | None:
        with self.engine.connect() as conn:
            row = conn.execute(_promotions.select().where(_promotions.c.id == promo_id)).fetchone()
        return _row_to_promotion(row) if row is not None else None

    def record_promo_usage(self, usage: PromoUsage) -> str:
        """Insert a usage row and bump the promotion's counters in the same transaction."""
        usage_id = usage.id or new_id()
        discount = to_cents(usage.discount_amount)
        cost = to_cents(usage.vendor_cost)
        with self.engine.begin() as conn:
            conn.execute(
                _promo_usage.insert().values(
                    id=usage_id,
                    promo_id=usage.promo_id,
                    order_id=usage.order_id,
                    user_id=usage.user_id,
                    discount_cents=discount,
                    vendor_cost_cents=cost,
                    created_at=usage.created_at or to_iso(utcnow()),
                )
            )
            conn.execute(
                _promotions.update()
                .where(_promotions.c.id == usage.promo_id)
                .values(
                    usage_count=_promotions.c.usage_count + 1,
                    total_discount_cents=_promotions.c.total_discount_cents + discount,
                    total_vendor_cost_cents=_promotions.c.total_vendor_cost_cents + cost,
                )
            )
        return usage_id

    def list_promo_usage(self, promo_id: str) -> list[PromoUsage]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _promo_usage.select().where(_promo_usage.c.promo_id == promo_id).order_by(_promo_usage.c.created_at)
            ).fetchall()
        return [_row_to_usage(r) for r in rows]

    def sum_vendor_promo_costs(self, vendor_id: str, start: str, end: str) -> Decimal:
        """Sum of vendor_cost over usage of the vendor's promotions with start <= created_at <= end."""
        query = (
            select(func.coalesce(func.sum(_promo_usage.c.vendor_cost_cents), 0).label("total"))
            .select_from(_promo_usage.join(_promotions, _promo_usage.c.promo_id == _promotions.c.id))
            .where(
                (_promotions.c.vendor_id == vendor_id)
                & (_promo_usage.c.created_at >= start)
                & (_promo_usage.c.created_at <= end)
            )
        )
        with self.engine.connect() as conn:
            total = conn.execute(query).scalar()
        return from_cents(total)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


def _upsert_visibility(engine: Engine, table: Table, key: str, site_id: str, item_id: str, visible: bool) -> None:
    now = to_iso(utcnow())
    key_col = table.c[key]
    with engine.begin() as conn:
        result = conn.execute(
            table.update()
            .where((table.c.site_id == site_id) & (key_col == item_id))
            .values(is_visible=1 if visible else 0, updated_at=now)
        )
        if result.rowcount == 0:
            conn.execute(
                table.insert().values({"site_id": site_id, key: item_id, "is_visible": 1 if visible else 0, "updated_at": now})
            )


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_subscription(row) -> VendorSubscription:
    return VendorSubscription(
        id=row.id,
        vendor_id=row.vendor_id,
        tier=row.tier,
        status=row.status,
        billing_period_start=row.billing_period_start,
        billing_period_end=row.billing_period_end,
        monthly_price=from_cents(row.monthly_price_cents),
    )


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        vendor_id=row.vendor_id,
        category_id=row.category_id,
        name=row.name,
        status=row.status,
        enforce_site_visibility=bool(row.enforce_site_visibility),
    )


def _row_to_promotion(row) -> Promotion:
    return Promotion(
        id=row.id,
        vendor_id=row.vendor_id,
        site_id=row.site_id,
        name=row.name,
        code=row.code,
        status=row.status,
        starts_at=row.starts_at,
        ends_at=row.ends_at,
        allowed_roles=json.loads(row.allowed_roles) if row.allowed_roles is not None else None,
        usage_limit=row.usage_limit,
        usage_count=row.usage_count,
        total_discount_given=from_cents(row.total_discount_cents),
        total_vendor_cost=from_cents(row.total_vendor_cost_cents),
    )


def _row_to_usage(row) -> PromoUsage:
    return PromoUsage(
        id=row.id,
        promo_id=row.promo_id,
        order_id=row.order_id,
        user_id=row.user_id,
        discount_amount=from_cents(row.discount_cents),
        vendor_cost=from_cents(row.vendor_cost_cents),
        created_at=row.created_at,
    )
