"""
tenancy/models.py -- Domain dataclasses for sites and their domains.

Pure data containers. SiteStore persists Site and SiteDomain; ResolvedSite is
the derived value the DomainResolver caches and hands to request handlers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DomainStatus(str, Enum):
    active = "active"
    pending = "pending"
    disabled = "disabled"


class SiteStatus(str, Enum):
    active = "active"
    maintenance = "maintenance"
    archived = "archived"


@dataclass
class Site:
    """A storefront brand sharing the platform backend."""

    name: str
    slug: str
    id: str | None = None
    status: str = SiteStatus.active.value
    created_at: str | None = None


@dataclass
class SiteDomain:
    """One hostname mapped to a site.

    domain is globally unique and stored lower-cased without a port. At most
    one domain per site has is_primary set.
    """

    site_id: str
    domain: str
    id: str | None = None
    is_primary: bool = False
    ssl_enabled: bool = True
    status: str = DomainStatus.active.value
    created_at: str | None = None


@dataclass(frozen=True)
class ResolvedSite:
    """Tenant context for one request. Frozen because instances are shared through the cache."""

    site_id: str
    site_name: str
    site_slug: str
    domain: str
    is_primary: bool
