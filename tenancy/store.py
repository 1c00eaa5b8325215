"""
tenancy/store.py -- SQLAlchemy Core persistence for sites and site domains.

Pattern: Repository + Data Mapper (same as auth/store.py).

Invariants enforced at the DB level:
  - site_domains.domain is UNIQUE across all sites.
  - uq_site_primary_domain: partial unique index, at most one row per site
    with is_primary = 1. Every write that promotes a domain first demotes
    the site's other domains inside the same transaction, so the index is
    never tripped by our own writes.

Domains are normalised (lower-cased, port stripped) on the way in so the
resolver's exact-match lookup is reliable.

Any mutation here makes DomainResolver's cache stale. The store does not know
about the resolver; callers (api/routes/v1/sites.py) clear the cache after a
successful write.

Layer rule: no imports from api/, auth/, or enforcement/.
"""

from __future__ import annotations

import re

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select, text
from sqlalchemy.engine import Engine

from core.db import DEFAULT_TIMEOUT_SECONDS, make_engine, new_id, to_iso, utcnow
from tenancy.models import DomainStatus, Site, SiteDomain

_PORT_RE = re.compile(r":\d+$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sites = Table(
    "sites",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", Text, nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(40), nullable=False),
)

_site_domains = Table(
    "site_domains",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("site_id", String(36), nullable=False, index=True),
    Column("domain", String(253), nullable=False, unique=True),
    Column("is_primary", Integer, nullable=False, server_default="0"),
    Column("ssl_enabled", Integer, nullable=False, server_default="1"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(40), nullable=False),
)

Index(
    "uq_site_primary_domain",
    _site_domains.c.site_id,
    unique=True,
    sqlite_where=text("is_primary = 1"),
    postgresql_where=text("is_primary = 1"),
)


def normalize_domain(domain: str) -> str:
    """Lower-case and strip surrounding whitespace and a trailing :port."""
    return _PORT_RE.sub("", (domain or "").strip().lower())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SiteStore:
    """Repository for Site and SiteDomain.

    Usage:
        store = SiteStore("sqlite:///:memory:")
        site_id = store.create_site(Site(name="Acme", slug="acme"))
        store.add_domain(SiteDomain(site_id=site_id, domain="acme.example.com", is_primary=True))
        store.find_active_site_id("acme.example.com")
    """

    def __init__(self, db_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, site: Site) -> str:
        """Insert a site. Raises IntegrityError on a duplicate slug."""
        site_id = site.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _sites.insert().values(
                    id=site_id,
                    name=site.name,
                    slug=site.slug,
                    status=site.status,
                    created_at=site.created_at or to_iso(utcnow()),
                )
            )
            conn.commit()
        return site_id

    def get_site(self, site_id: str) -> Site | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sites.select().where(_sites.c.id == site_id)).fetchone()
        return _row_to_site(row) if row is not None else None

    def list_sites(self) -> list[Site]:
        with self.engine.connect() as conn:
            rows = conn.execute(_sites.select().order_by(_sites.c.slug)).fetchall()
        return [_row_to_site(r) for r in rows]

    # ------------------------------------------------------------------
    # Domain writes
    # ------------------------------------------------------------------

    def add_domain(self, site_domain: SiteDomain) -> str:
        """Attach a domain to a site. A primary domain demotes the site's previous primary.

        Raises IntegrityError if the domain is already registered to any site.
        """
        domain_id = site_domain.id or new_id()
        with self.engine.begin() as conn:
            if site_domain.is_primary:
                conn.execute(
                    _site_domains.update()
                    .where((_site_domains.c.site_id == site_domain.site_id) & (_site_domains.c.is_primary == 1))
                    .values(is_primary=0)
                )
            conn.execute(
                _site_domains.insert().values(
                    id=domain_id,
                    site_id=site_domain.site_id,
                    domain=normalize_domain(site_domain.domain),
                    is_primary=1 if site_domain.is_primary else 0,
                    ssl_enabled=1 if site_domain.ssl_enabled else 0,
                    status=DomainStatus(site_domain.status).value,
                    created_at=site_domain.created_at or to_iso(utcnow()),
                )
            )
        return domain_id

    def set_primary_domain(self, site_id: str, domain: str) -> bool:
        """Make domain the site's only primary. False if the domain is not the site's."""
        domain = normalize_domain(domain)
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(_site_domains.c.id).where(
                    (_site_domains.c.site_id == site_id) & (_site_domains.c.domain == domain)
                )
            ).fetchone()
            if exists is None:
                return False
            conn.execute(
                _site_domains.update()
                .where((_site_domains.c.site_id == site_id) & (_site_domains.c.is_primary == 1))
                .values(is_primary=0)
            )
            conn.execute(_site_domains.update().where(_site_domains.c.id == exists.id).values(is_primary=1))
        return True

    def set_domain_status(self, domain: str, status: DomainStatus) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _site_domains.update()
                .where(_site_domains.c.domain == normalize_domain(domain))
                .values(status=DomainStatus(status).value)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Domain reads
    # ------------------------------------------------------------------

    def find_active_site_id(self, domain: str) -> str | None:
        """Site id owning domain, considering active domain rows only."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_site_domains.c.site_id)
                .where(
                    (_site_domains.c.domain == normalize_domain(domain))
                    & (_site_domains.c.status == DomainStatus.active.value)
                )
                .limit(1)
            ).fetchone()
        return row.site_id if row is not None else None

    def get_domain(self, site_id: str, domain: str) -> SiteDomain | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _site_domains.select().where(
                    (_site_domains.c.site_id == site_id) & (_site_domains.c.domain == normalize_domain(domain))
                )
            ).fetchone()
        return _row_to_domain(row) if row is not None else None

    def list_domains(self, site_id: str, status: DomainStatus | None = None) -> list[SiteDomain]:
        """Domains of a site, primary first, then alphabetical."""
        query = _site_domains.select().where(_site_domains.c.site_id == site_id)
        if status is not None:
            query = query.where(_site_domains.c.status == DomainStatus(status).value)
        query = query.order_by(_site_domains.c.is_primary.desc(), _site_domains.c.domain)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_domain(r) for r in rows]

    def get_primary_domain(self, site_id: str) -> SiteDomain | None:
        """The site's primary domain if it is also active."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _site_domains.select().where(
                    (_site_domains.c.site_id == site_id)
                    & (_site_domains.c.is_primary == 1)
                    & (_site_domains.c.status == DomainStatus.active.value)
                )
            ).fetchone()
        return _row_to_domain(row) if row is not None else None

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_site(row) -> Site:
    return Site(id=row.id, name=row.name, slug=row.slug, status=row.status, created_at=row.created_at)


def _row_to_domain(row) -> SiteDomain:
    return SiteDomain(
        id=row.id,
        site_id=row.site_id,
        domain=row.domain,
        is_primary=bool(row.is_primary),
        ssl_enabled=bool(row.ssl_enabled),
        status=row.status,
        created_at=row.created_at,
    )
