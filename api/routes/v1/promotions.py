"""
api/routes/v1/promotions.py -- Promotion eligibility and redemption bookkeeping.

Routes:
  GET  /promotions/{promo_id}/validate   -- can the caller use this promotion on this site
  POST /promotions/{promo_id}/usage      -- record a redemption against an order (requires auth)

Validation runs for anonymous callers too; they are checked as the guest role.
The site comes from the Host header; an unknown domain validates with no site,
so a site-scoped promotion reports "Promotion not valid for this site".
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import PromoUsageRequest, PromoUsageResponse, PromoValidationResponse
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import AuthenticatedUser, Role
from enforcement.engine import EnforcementEngine
from tenancy.dependencies import try_get_current_site

router = APIRouter()


@router.get("/promotions/{promo_id}/validate", response_model=PromoValidationResponse)
def validate_promotion(request: Request, promo_id: str) -> PromoValidationResponse:
    engine: EnforcementEngine = request.app.state.enforcement
    user = try_get_current_user(request)
    site = try_get_current_site(request)
    role = user.role if user is not None else Role.guest
    result = engine.validate_promotion(promo_id, site.site_id if site else None, Role(role).value)
    return PromoValidationResponse(
        promo_id=promo_id,
        is_valid=result.is_valid,
        can_be_used=result.can_be_used,
        errors=result.errors,
    )


@router.post("/promotions/{promo_id}/usage", response_model=PromoUsageResponse, status_code=201)
def track_usage(
    request: Request,
    promo_id: str,
    body: PromoUsageRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> PromoUsageResponse:
    engine: EnforcementEngine = request.app.state.enforcement
    usage = engine.track_promo_usage(promo_id, body.order_id, current_user.id, body.discount_amount)
    if usage is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Promotion not found."})
    return PromoUsageResponse.from_usage(usage)
