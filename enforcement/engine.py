"""
enforcement/engine.py -- Server-side re-derivation of vendor, product and promotion eligibility.

Nothing here trusts a stored "is live" flag. Every answer is recomputed from
the underlying records at call time:

  vendor go-live  = approved AND current active subscription AND any signed agreement
  product visible = site visibility AND product active AND vendor go-live
  promo usable    = no error from the full (non short-circuit) check list

Failure policy: every public method catches SQLAlchemyError, logs it with a
traceback and fails closed ("not visible", "cannot go live", "not usable",
False, empty). A storefront must never show something because the database
was slow.

The only writes are compensating demotions (expire subscription, archive
products) and promo usage bookkeeping. Each is one transaction in the store
and, when an AuditLog is supplied, leaves an audit event behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import AuditLog
from auth.models import AuditEventType, Role
from core.db import parse_iso, to_iso, utcnow
from enforcement.models import (
    ProductStatus,
    ProductVisibility,
    PromotionStatus,
    PromoUsage,
    PromoValidation,
    VendorGoLiveStatus,
    VendorStatus,
)
from enforcement.store import CommerceStore

logger = logging.getLogger("storegate.enforcement")

BLOCKER_NOT_APPROVED = "Vendor not approved"
BLOCKER_NO_SUBSCRIPTION = "No active subscription"
BLOCKER_NO_AGREEMENT = "No signed agreement"


class EnforcementEngine:
    """Usage:
        engine = EnforcementEngine(CommerceStore(url), audit=AuditLog(url))
        engine.product_visibility(product_id, site_id).is_visible
    """

    def __init__(
        self,
        store: CommerceStore,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Vendor go-live
    # ------------------------------------------------------------------

    def vendor_go_live_status(self, vendor_id: str) -> VendorGoLiveStatus:
        try:
            return self._go_live(vendor_id, self._clock())
        except SQLAlchemyError:
            logger.exception("Error checking go-live status for vendor %s", vendor_id)
            return VendorGoLiveStatus(
                can_go_live=False,
                is_approved=False,
                has_active_subscription=False,
                has_signed_agreement=False,
                blockers=["Error checking status"],
            )

    def _go_live(self, vendor_id: str, now: datetime) -> VendorGoLiveStatus:
        vendor = self._store.get_vendor(vendor_id)
        is_approved = vendor is not None and vendor.status == VendorStatus.approved.value

        has_subscription = False
        for sub in self._store.list_active_subscriptions(vendor_id):
            end = parse_iso(sub.billing_period_end)
            if end is not None and end > now:
                has_subscription = True
                break

        has_agreement = self._store.has_signed_agreement(vendor_id)

        blockers = []
        if not is_approved:
            blockers.append(BLOCKER_NOT_APPROVED)
        if not has_subscription:
            blockers.append(BLOCKER_NO_SUBSCRIPTION)
        if not has_agreement:
            blockers.append(BLOCKER_NO_AGREEMENT)

        return VendorGoLiveStatus(
            can_go_live=not blockers,
            is_approved=is_approved,
            has_active_subscription=has_subscription,
            has_signed_agreement=has_agreement,
            blockers=blockers,
        )

    # ------------------------------------------------------------------
    # Catalog visibility
    # ------------------------------------------------------------------

    def product_visibility(self, product_id: str, site_id: str) -> ProductVisibility:
        """Checks run in order: site visibility, product status, vendor go-live."""
        try:
            product = self._store.get_product(product_id)

            site_ok = product is not None and not product.enforce_site_visibility
            if not site_ok:
                site_ok = self._store.get_product_visibility(product_id, site_id) is True
            if not site_ok:
                return ProductVisibility(is_visible=False, reason="Product not visible on this site")

            if product is None or product.status != ProductStatus.active.value:
                return ProductVisibility(is_visible=False, reason="Product is not active")

            status = self._go_live(product.vendor_id, self._clock())
            if not status.can_go_live:
                return ProductVisibility(
                    is_visible=False,
                    reason=f"Vendor cannot go live: {', '.join(status.blockers)}",
                )
            return ProductVisibility(is_visible=True)
        except SQLAlchemyError:
            logger.exception("Error checking visibility for product %s on site %s", product_id, site_id)
            return ProductVisibility(is_visible=False, reason="Error checking visibility")

    def visible_products_for_site(self, site_id: str, limit: int = 100) -> list[str]:
        """Product ids explicitly visible on site_id that are active and whose vendor can go live.

        Go-live is computed once per vendor per call.
        """
        try:
            candidates = self._store.list_visible_product_ids(site_id, limit)
            products = self._store.get_products(candidates)
            now = self._clock()
            vendor_live: dict[str, bool] = {}
            visible = []
            for product_id in candidates:
                product = products.get(product_id)
                if product is None or product.status != ProductStatus.active.value:
                    continue
                if product.vendor_id not in vendor_live:
                    vendor_live[product.vendor_id] = self._go_live(product.vendor_id, now).can_go_live
                if vendor_live[product.vendor_id]:
                    visible.append(product_id)
            return visible
        except SQLAlchemyError:
            logger.exception("Error listing visible products for site %s", site_id)
            return []

    def category_visibility(self, category_id: str, site_id: str) -> bool:
        """False when no row exists."""
        try:
            return self._store.get_category_visibility(category_id, site_id) is True
        except SQLAlchemyError:
            logger.exception("Error checking visibility for category %s on site %s", category_id, site_id)
            return False

    def enforce_product_visibility(self, product_id: str) -> bool:
        """Archive the product if its vendor cannot go live. Returns whether it stays live."""
        try:
            product = self._store.get_product(product_id)
            if product is None or product.status != ProductStatus.active.value:
                return False
            now = self._clock()
            status = self._go_live(product.vendor_id, now)
            if status.can_go_live:
                return True
            if self._store.archive_product(product_id, to_iso(now)):
                logger.info("Archived product %s: %s", product_id, ", ".join(status.blockers))
                self._record(
                    AuditEventType.products_archived,
                    f"Product archived: {', '.join(status.blockers)}",
                    {"vendor_id": product.vendor_id, "product_ids": [product_id]},
                )
            return False
        except SQLAlchemyError:
            logger.exception("Error enforcing visibility for product %s", product_id)
            return False

    # ------------------------------------------------------------------
    # Subscription enforcement
    # ------------------------------------------------------------------

    def enforce_vendor_subscription(self, vendor_id: str) -> bool:
        """Demote a vendor whose billing has lapsed.

        Active subscriptions whose period has ended are marked expired. If no
        current subscription remains, the vendor's active products are
        archived in the same transaction and False is returned.
        """
        try:
            now = self._clock()
            subs = self._store.list_active_subscriptions(vendor_id)
            lapsed = []
            current = False
            for sub in subs:
                end = parse_iso(sub.billing_period_end)
                if end is None or end < now:
                    lapsed.append(sub.id)
                else:
                    current = True

            if current and not lapsed:
                return True

            archived = self._store.expire_and_archive(vendor_id, lapsed, archive=not current, now=to_iso(now))
            for sub_id in lapsed:
                self._record(
                    AuditEventType.subscription_expired,
                    "Subscription billing period ended",
                    {"vendor_id": vendor_id, "subscription_id": sub_id},
                )
            if not current:
                reason = "Subscription expired" if subs else "No active subscription"
                logger.info("Vendor %s has no current subscription; archived %d products", vendor_id, archived)
                self._record(
                    AuditEventType.products_archived,
                    f"Vendor products archived: {reason}",
                    {"vendor_id": vendor_id, "archived": archived},
                )
            return current
        except SQLAlchemyError:
            logger.exception("Error enforcing subscription for vendor %s", vendor_id)
            return False

    def enforce_all_subscriptions(self) -> dict[str, bool]:
        """Run enforce_vendor_subscription for every vendor. Meant for a periodic scheduler."""
        try:
            vendor_ids = self._store.list_vendor_ids()
        except SQLAlchemyError:
            logger.exception("Error listing vendors for subscription enforcement")
            return {}
        results = {vendor_id: self.enforce_vendor_subscription(vendor_id) for vendor_id in vendor_ids}
        logger.info(
            "Subscription enforcement: %d vendors checked, %d demoted",
            len(results),
            sum(1 for ok in results.values() if not ok),
        )
        return results

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------

    def validate_promotion(self, promo_id: str, site_id: str | None, user_role: Role | str) -> PromoValidation:
        """Every check runs so errors lists all simultaneous problems."""
        try:
            promo = self._store.get_promotion(promo_id)
            if promo is None:
                return PromoValidation(is_valid=False, can_be_used=False, errors=["Promotion not found"])

            now = self._clock()
            errors = []
            is_valid = promo.status == PromotionStatus.active.value
            if not is_valid:
                errors.append("Promotion is not active")

            if promo.site_id is not None and promo.site_id != site_id:
                errors.append("Promotion not valid for this site")

            starts_at = parse_iso(promo.starts_at)
            if starts_at is None or now < starts_at:
                errors.append("Promotion has not started yet")

            if promo.ends_at is not None:
                ends_at = parse_iso(promo.ends_at)
                if ends_at is None or now > ends_at:
                    errors.append("Promotion has expired")

            if promo.allowed_roles is not None and getattr(user_role, "value", user_role) not in promo.allowed_roles:
                errors.append("Promotion not available for your account type")

            if promo.usage_limit and promo.usage_count >= promo.usage_limit:
                errors.append("Promotion usage limit reached")

            if not self._go_live(promo.vendor_id, now).can_go_live:
                errors.append("Promotion vendor is not active")

            return PromoValidation(is_valid=is_valid, can_be_used=not errors, errors=errors)
        except SQLAlchemyError:
            logger.exception("Error validating promotion %s", promo_id)
            return PromoValidation(is_valid=False, can_be_used=False, errors=["Error validating promotion"])

    def track_promo_usage(
        self,
        promo_id: str,
        order_id: str,
        user_id: str | None,
        discount_amount: Decimal,
    ) -> PromoUsage | None:
        """Record a redemption charged to the promotion's vendor. None if the promo is unknown."""
        try:
            promo = self._store.get_promotion(promo_id)
            if promo is None:
                logger.warning("Promo usage for unknown promotion %s (order %s)", promo_id, order_id)
                return None
            amount = Decimal(discount_amount)
            usage = PromoUsage(
                promo_id=promo_id,
                order_id=order_id,
                user_id=user_id,
                discount_amount=amount,
                vendor_cost=amount,
                created_at=to_iso(self._clock()),
            )
            usage.id = self._store.record_promo_usage(usage)
        except SQLAlchemyError:
            logger.exception("Error tracking usage of promotion %s for order %s", promo_id, order_id)
            return None

        self._record(
            AuditEventType.promo_usage_recorded,
            f"Promotion {promo.name} used on order {order_id}",
            {"vendor_id": promo.vendor_id, "promo_id": promo_id, "vendor_cost": str(amount)},
            identity_id=user_id,
        )
        return usage

    def vendor_promo_costs(self, vendor_id: str, start: datetime, end: datetime) -> Decimal:
        """Total vendor-funded discount of the vendor's promotions used within [start, end]."""
        try:
            return self._store.sum_vendor_promo_costs(vendor_id, to_iso(start), to_iso(end))
        except SQLAlchemyError:
            logger.exception("Error summing promotion costs for vendor %s", vendor_id)
            return Decimal("0.00")

    def _record(
        self,
        event_type: AuditEventType,
        description: str,
        metadata: dict,
        identity_id: str | None = None,
    ) -> None:
        if self._audit is not None:
            self._audit.record(event_type, identity_id=identity_id, description=description, metadata=metadata)
