"""
api/routes/v1/catalog.py -- Storefront catalog gates and vendor enforcement.

Routes:
  GET  /catalog/products                             -- visible product ids for the current site
  GET  /catalog/products/{product_id}/visibility     -- visibility + reason on the current site
  GET  /catalog/categories/{category_id}/visibility  -- category flag on the current site
  POST /catalog/products/{product_id}/enforce        -- archive if the vendor cannot go live (admin)
  GET  /vendors/{vendor_id}/go-live                  -- go-live status with blockers (admin)
  POST /vendors/{vendor_id}/enforce-subscription     -- expire/archive on lapsed billing (admin)
  GET  /vendors/{vendor_id}/promo-costs              -- vendor-funded discount total (admin)

Storefront routes resolve the tenant from the Host header; an unknown domain
is a 404 before the engine is consulted. The engine never raises for store
errors, it answers "not visible" instead.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import EnforcementResponse, GoLiveResponse, PromoCostResponse, VisibilityResponse, VisibleProductsResponse
from auth.dependencies import require_admin
from auth.models import AuthenticatedUser
from core.db import as_utc, to_iso
from enforcement.engine import EnforcementEngine
from tenancy.dependencies import get_current_site
from tenancy.models import ResolvedSite

router = APIRouter()


def _engine(request: Request) -> EnforcementEngine:
    return request.app.state.enforcement


# ---------------------------------------------------------------------------
# Storefront
# ---------------------------------------------------------------------------


@router.get("/catalog/products", response_model=VisibleProductsResponse)
def visible_products(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    site: ResolvedSite = Depends(get_current_site),
) -> VisibleProductsResponse:
    product_ids = _engine(request).visible_products_for_site(site.site_id, limit=limit)
    return VisibleProductsResponse(site_id=site.site_id, product_ids=product_ids)


@router.get("/catalog/products/{product_id}/visibility", response_model=VisibilityResponse)
def product_visibility(
    request: Request,
    product_id: str,
    site: ResolvedSite = Depends(get_current_site),
) -> VisibilityResponse:
    result = _engine(request).product_visibility(product_id, site.site_id)
    return VisibilityResponse(is_visible=result.is_visible, reason=result.reason)


@router.get("/catalog/categories/{category_id}/visibility", response_model=VisibilityResponse)
def category_visibility(
    request: Request,
    category_id: str,
    site: ResolvedSite = Depends(get_current_site),
) -> VisibilityResponse:
    return VisibilityResponse(is_visible=_engine(request).category_visibility(category_id, site.site_id))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/catalog/products/{product_id}/enforce", response_model=VisibilityResponse)
def enforce_product(
    request: Request,
    product_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> VisibilityResponse:
    """Archive the product when its vendor fails go-live. is_visible reports whether it stayed live."""
    return VisibilityResponse(is_visible=_engine(request).enforce_product_visibility(product_id))


@router.get("/vendors/{vendor_id}/go-live", response_model=GoLiveResponse)
def vendor_go_live(
    request: Request,
    vendor_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> GoLiveResponse:
    return GoLiveResponse.from_status(vendor_id, _engine(request).vendor_go_live_status(vendor_id))


@router.post("/vendors/{vendor_id}/enforce-subscription", response_model=EnforcementResponse)
def enforce_subscription(
    request: Request,
    vendor_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> EnforcementResponse:
    return EnforcementResponse(vendor_id=vendor_id, active=_engine(request).enforce_vendor_subscription(vendor_id))


@router.get("/vendors/{vendor_id}/promo-costs", response_model=PromoCostResponse)
def vendor_promo_costs(
    request: Request,
    vendor_id: str,
    start: datetime,
    end: datetime,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> PromoCostResponse:
    """Sum of vendor-funded discounts between start and end (ISO 8601, inclusive). Naive values are UTC."""
    start, end = as_utc(start), as_utc(end)
    if end < start:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_range", "message": "end must not be before start."},
        )
    total = _engine(request).vendor_promo_costs(vendor_id, start, end)
    return PromoCostResponse(vendor_id=vendor_id, start=to_iso(start), end=to_iso(end), total_vendor_cost=total)
