"""
tenancy/dependencies.py -- FastAPI Depends() helpers for tenant context.

The tenant middleware in api/main.py resolves the Host header once per
request and stores the result (possibly None) on request.state.site. These
helpers read it back; if the middleware did not run (e.g. a unit test calling
a route directly) they resolve on demand.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from tenancy.models import ResolvedSite
from tenancy.resolver import DomainResolver

_UNSET = object()


def try_get_current_site(request: Request) -> ResolvedSite | None:
    site = getattr(request.state, "site", _UNSET)
    if site is _UNSET:
        resolver: DomainResolver = request.app.state.resolver
        site = resolver.resolve_from_host(request.headers.get("host"))
        request.state.site = site
    return site


def get_current_site(request: Request) -> ResolvedSite:
    """Require a known tenant. Raises HTTP 404 for unregistered or disabled domains."""
    site = try_get_current_site(request)
    if site is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_site", "message": "No storefront is registered for this domain."},
        )
    return site
