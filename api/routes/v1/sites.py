"""
api/routes/v1/sites.py -- Tenant context and domain administration.

Routes:
  GET   /sites/current                          -- site resolved from the Host header
  GET   /sites/{site_id}/domains                -- active domains, primary first
  POST  /sites/{site_id}/domains                -- attach a domain (admin)
  PUT   /sites/{site_id}/primary-domain         -- switch the primary domain (admin)
  PATCH /sites/{site_id}/domains/{domain}       -- enable / disable a domain (admin)

Every successful mutation clears the resolver cache. Without that a disabled
domain would keep resolving for up to the cache TTL.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import DomainCreate, DomainListResponse, DomainStatusRequest, PrimaryDomainRequest, SiteResponse
from auth.dependencies import require_admin
from auth.models import AuthenticatedUser
from tenancy.dependencies import get_current_site
from tenancy.models import ResolvedSite, SiteDomain
from tenancy.resolver import DomainResolver
from tenancy.store import SiteStore, normalize_domain

router = APIRouter()


@router.get("/sites/current", response_model=SiteResponse)
def current_site(site: ResolvedSite = Depends(get_current_site)) -> SiteResponse:
    return SiteResponse.from_resolved(site)


@router.get("/sites/{site_id}/domains", response_model=DomainListResponse)
def list_domains(request: Request, site_id: str) -> DomainListResponse:
    resolver: DomainResolver = request.app.state.resolver
    return DomainListResponse(
        site_id=site_id,
        primary=resolver.primary_domain(site_id),
        domains=resolver.list_domains(site_id),
    )


@router.post("/sites/{site_id}/domains", response_model=DomainListResponse, status_code=201)
def add_domain(
    request: Request,
    site_id: str,
    body: DomainCreate,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> DomainListResponse:
    """Attach a domain to a site. A primary domain replaces the site's previous primary."""
    site_store: SiteStore = request.app.state.site_store
    resolver: DomainResolver = request.app.state.resolver

    domain = normalize_domain(body.domain)
    if not domain:
        raise HTTPException(status_code=400, detail={"code": "invalid_domain", "message": "Domain is empty."})
    if site_store.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Site not found."})
    try:
        site_store.add_domain(
            SiteDomain(site_id=site_id, domain=domain, is_primary=body.is_primary, ssl_enabled=body.ssl_enabled)
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "domain_taken", "message": "That domain is already registered."},
        ) from exc
    resolver.clear_cache()
    return list_domains(request, site_id)


@router.put("/sites/{site_id}/primary-domain", response_model=DomainListResponse)
def set_primary_domain(
    request: Request,
    site_id: str,
    body: PrimaryDomainRequest,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> DomainListResponse:
    site_store: SiteStore = request.app.state.site_store
    if not site_store.set_primary_domain(site_id, body.domain):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Domain is not registered to this site."},
        )
    request.app.state.resolver.clear_cache()
    return list_domains(request, site_id)


@router.patch("/sites/{site_id}/domains/{domain}", response_model=DomainListResponse)
def set_domain_status(
    request: Request,
    site_id: str,
    domain: str,
    body: DomainStatusRequest,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> DomainListResponse:
    site_store: SiteStore = request.app.state.site_store
    if site_store.get_domain(site_id, domain) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Domain is not registered to this site."},
        )
    site_store.set_domain_status(domain, body.status)
    request.app.state.resolver.clear_cache()
    return list_domains(request, site_id)
