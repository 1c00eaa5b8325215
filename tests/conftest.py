"""
tests/conftest.py -- Shared test fixtures for Storegate unit and integration tests.

This module provides:
  - FakeClock: a settable UTC clock injected into services instead of utcnow
  - unit fixtures: in-memory stores and services wired the same way the
    lifespan in api/main.py wires them
  - seed helpers for vendors, products and promotions
  - api_env: TestClient against the real app with a patched lifespan

Design: named shared-memory SQLite URIs (not plain :memory:) are used for the
TestClient because route handlers run in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread. The
named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

Unit tests run on one thread, so plain sqlite:///:memory: is enough there.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Rate limits are exercised explicitly; keep the defaults out of the way of
# tests that log in many times. Must be set before get_settings() is first called.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SIGNUP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.audit import AuditLog
from auth.models import Role
from auth.roles import RoleLedger
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import IdentityStore
from cache.store import MemoryTTLCache
from core.db import to_iso, utcnow
from enforcement.engine import EnforcementEngine
from enforcement.models import (
    AgreementStatus,
    Product,
    ProductStatus,
    Promotion,
    Vendor,
    VendorAgreement,
    VendorStatus,
    VendorSubscription,
)
from enforcement.store import CommerceStore
from tenancy.models import Site, SiteDomain
from tenancy.resolver import DomainResolver
from tenancy.store import SiteStore

MEMORY_URL = "sqlite:///:memory:"


class FakeClock:
    """Callable clock. Starts at a fixed instant; advance() moves it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity_store() -> Generator[IdentityStore, None, None]:
    store = IdentityStore(MEMORY_URL)
    yield store
    store.close()


@pytest.fixture
def audit(clock: FakeClock) -> Generator[AuditLog, None, None]:
    log = AuditLog(MEMORY_URL, clock=clock)
    yield log
    log.close()


@pytest.fixture
def roles(identity_store: IdentityStore, clock: FakeClock) -> RoleLedger:
    return RoleLedger(identity_store, clock=clock)


@pytest.fixture
def sessions(identity_store: IdentityStore, roles: RoleLedger, audit: AuditLog, clock: FakeClock) -> SessionManager:
    return SessionManager(identity_store, roles, audit, duration=timedelta(hours=168), clock=clock)


@pytest.fixture
def auth_service(
    identity_store: IdentityStore,
    sessions: SessionManager,
    roles: RoleLedger,
    audit: AuditLog,
    clock: FakeClock,
) -> AuthService:
    return AuthService(identity_store, sessions, roles, audit, clock=clock)


@pytest.fixture
def site_store() -> Generator[SiteStore, None, None]:
    store = SiteStore(MEMORY_URL)
    yield store
    store.close()


@pytest.fixture
def commerce_store() -> Generator[CommerceStore, None, None]:
    store = CommerceStore(MEMORY_URL)
    yield store
    store.close()


@pytest.fixture
def engine(commerce_store: CommerceStore, audit: AuditLog, clock: FakeClock) -> EnforcementEngine:
    return EnforcementEngine(commerce_store, audit=audit, clock=clock)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


class Seeder:
    """Creates vendor, product and promotion rows relative to a fixed instant."""

    def __init__(self, store: CommerceStore, now: datetime) -> None:
        self.store = store
        self.now = now

    def vendor(
        self,
        approved: bool = True,
        subscription_end: timedelta | None = timedelta(hours=1),
        signed: bool = True,
    ) -> str:
        """A vendor with the three go-live preconditions set as requested.

        subscription_end is relative to now; None means no subscription row at all.
        """
        vendor_id = self.store.create_vendor(
            Vendor(
                company_name="Acme Supply",
                status=VendorStatus.approved.value if approved else VendorStatus.pending.value,
            )
        )
        if subscription_end is not None:
            self.store.add_subscription(
                VendorSubscription(
                    vendor_id=vendor_id,
                    billing_period_start=to_iso(self.now - timedelta(days=30)),
                    billing_period_end=to_iso(self.now + subscription_end),
                    monthly_price=Decimal("49.00"),
                )
            )
        self.store.add_agreement(
            VendorAgreement(
                vendor_id=vendor_id,
                agreement_version="2024-01",
                status=AgreementStatus.signed.value if signed else AgreementStatus.pending.value,
                signed_at=to_iso(self.now - timedelta(days=60)) if signed else None,
            )
        )
        return vendor_id

    def product(
        self,
        vendor_id: str,
        site_id: str | None = None,
        status: ProductStatus = ProductStatus.active,
        visible: bool = True,
        **fields,
    ) -> str:
        fields.setdefault("name", "Widget")
        product_id = self.store.create_product(Product(vendor_id=vendor_id, status=status.value, **fields))
        if site_id is not None:
            self.store.set_product_visibility(site_id, product_id, visible)
        return product_id

    def promotion(self, vendor_id: str, **overrides) -> str:
        fields = {
            "vendor_id": vendor_id,
            "name": "Spring sale",
            "starts_at": to_iso(self.now - timedelta(days=1)),
            "ends_at": to_iso(self.now + timedelta(days=7)),
        }
        fields.update(overrides)
        return self.store.create_promotion(Promotion(**fields))


@pytest.fixture
def seed(commerce_store: CommerceStore, clock: FakeClock) -> Seeder:
    return Seeder(commerce_store, clock.now)


# ---------------------------------------------------------------------------
# API integration fixture
# ---------------------------------------------------------------------------


STORE_HOST = "shop.acme.test"


@dataclass
class ApiEnv:
    client: TestClient
    admin_token: str
    admin_id: str
    site_id: str
    auth_service: AuthService
    identity_store: IdentityStore
    site_store: SiteStore
    commerce_store: CommerceStore
    audit: AuditLog
    seed: Seeder


def _patch_lifespan(state: dict):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test services into app.state so TestClient routes see
    isolated test DBs. The purge_task is a long-sleeping coroutine that keeps
    asyncio happy (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for key, value in state.items():
            setattr(app.state, key, value)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    One admin account (admin@acme.test / adminpass) and one site reachable at
    STORE_HOST. The TestClient's base_url points at that host so tenant
    middleware resolves it on every request.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    url = f"sqlite:///file:storegate_{suffix}?mode=memory&cache=shared&uri=true"

    identity_store = IdentityStore(url)
    audit_log = AuditLog(url)
    role_ledger = RoleLedger(identity_store)
    session_manager = SessionManager(identity_store, role_ledger, audit_log)
    auth = AuthService(identity_store, session_manager, role_ledger, audit_log)
    sites = SiteStore(url)
    domain_cache = MemoryTTLCache(ttl=300)
    resolver = DomainResolver(sites, domain_cache)
    commerce = CommerceStore(url)

    admin = auth.signup("admin@acme.test", "adminpass")
    auth.change_role(admin.user.id, Role.admin, actor=None, reason="Test bootstrap")
    site_id = sites.create_site(Site(name="Acme", slug="acme"))
    sites.add_domain(SiteDomain(site_id=site_id, domain=STORE_HOST, is_primary=True))

    app.router.lifespan_context = _patch_lifespan(
        {
            "session_cookie_name": "session_token",
            "identity_store": identity_store,
            "audit": audit_log,
            "auth_service": auth,
            "site_store": sites,
            "domain_cache": domain_cache,
            "resolver": resolver,
            "commerce_store": commerce,
            "enforcement": EnforcementEngine(commerce, audit=audit_log),
        }
    )

    with TestClient(app, base_url=f"http://{STORE_HOST}", raise_server_exceptions=True) as client:
        yield ApiEnv(
            client=client,
            admin_token=admin.session.token,
            admin_id=admin.user.id,
            site_id=site_id,
            auth_service=auth,
            identity_store=identity_store,
            site_store=sites,
            commerce_store=commerce,
            audit=audit_log,
            seed=Seeder(commerce, utcnow()),
        )

    commerce.close()
    sites.close()
    audit_log.close()
    identity_store.close()
