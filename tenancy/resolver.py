"""
tenancy/resolver.py -- Map inbound hostnames to the tenant (site) they belong to.

Every storefront request resolves its Host header exactly once. The result is
cached per normalised domain for a fixed TTL so the lookup chain

    domain -> site id (active domain rows only) -> site summary -> domain row

runs at most once per domain per TTL window.

Only positive results are cached. An unregistered domain is looked up again
on the next request, so a newly added domain works immediately.

There is no per-key invalidation. Anything that mutates site_domains must
call clear_cache() or accept up to TTL of staleness.

Store errors are logged and resolve to None (unknown tenant), never to a
guessed site.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from cache.store import MemoryTTLCache, TTLCache
from tenancy.models import DomainStatus, ResolvedSite
from tenancy.store import SiteStore, normalize_domain

logger = logging.getLogger("storegate.tenancy")


class DomainResolver:
    """Usage:
        resolver = DomainResolver(site_store, MemoryTTLCache(ttl=300))
        site = resolver.resolve_from_host(request.headers["host"])
    """

    def __init__(self, store: SiteStore, cache: TTLCache | None = None) -> None:
        self._store = store
        self._cache: TTLCache = cache if cache is not None else MemoryTTLCache()

    def resolve(self, domain: str) -> ResolvedSite | None:
        normalized = normalize_domain(domain)
        if not normalized:
            return None

        cached = self._cache.get(normalized)
        if cached is not None:
            return cached

        try:
            resolved = self._lookup(normalized)
        except SQLAlchemyError:
            logger.exception("Error resolving site from domain %s", normalized)
            return None

        if resolved is not None:
            self._cache.set(normalized, resolved)
        return resolved

    def _lookup(self, domain: str) -> ResolvedSite | None:
        site_id = self._store.find_active_site_id(domain)
        if site_id is None:
            return None
        site = self._store.get_site(site_id)
        if site is None:
            return None
        domain_row = self._store.get_domain(site_id, domain)
        if domain_row is None or domain_row.status != DomainStatus.active.value:
            return None
        return ResolvedSite(
            site_id=site.id,
            site_name=site.name,
            site_slug=site.slug,
            domain=domain,
            is_primary=domain_row.is_primary,
        )

    def resolve_from_host(self, host_header: str | None) -> ResolvedSite | None:
        """Resolve a raw Host header value (port allowed)."""
        if not host_header:
            return None
        return self.resolve(host_header.split(":")[0])

    def clear_cache(self) -> None:
        self._cache.clear()

    def list_domains(self, site_id: str) -> list[str]:
        """Active domains of a site, primary first. Empty on error."""
        try:
            rows = self._store.list_domains(site_id, status=DomainStatus.active)
        except SQLAlchemyError:
            logger.exception("Error listing domains for site %s", site_id)
            return []
        return [r.domain for r in rows]

    def primary_domain(self, site_id: str) -> str | None:
        try:
            row = self._store.get_primary_domain(site_id)
        except SQLAlchemyError:
            logger.exception("Error getting primary domain for site %s", site_id)
            return None
        return row.domain if row is not None else None
