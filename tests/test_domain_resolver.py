"""Unit tests for tenancy/resolver.py -- DomainResolver.

Covers:
- resolve() normalises case and port
- a second resolve() within the TTL does not hit the store; after TTL it does
- unknown domains are not cached, so a newly added domain resolves at once
- disabled domains do not resolve
- store errors resolve to None
- list_domains() / primary_domain() only report active domains
"""

import pytest
from sqlalchemy.exc import OperationalError

from cache.store import MemoryTTLCache
from tenancy.models import DomainStatus, Site, SiteDomain
from tenancy.resolver import DomainResolver


class TickClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def tick():
    return TickClock()


@pytest.fixture
def site_id(site_store):
    site_id = site_store.create_site(Site(name="Acme", slug="acme"))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="example.com", is_primary=True))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="www.example.com"))
    return site_id


@pytest.fixture
def resolver(site_store, tick):
    return DomainResolver(site_store, MemoryTTLCache(ttl=300, clock=tick))


def _count_lookups(monkeypatch, site_store) -> list:
    calls = []
    original = site_store.find_active_site_id

    def counting(domain):
        calls.append(domain)
        return original(domain)

    monkeypatch.setattr(site_store, "find_active_site_id", counting)
    return calls


def test_resolve_returns_site_summary(resolver, site_id):
    site = resolver.resolve("example.com")
    assert site.site_id == site_id
    assert site.site_slug == "acme"
    assert site.site_name == "Acme"
    assert site.is_primary is True
    assert resolver.resolve("www.example.com").is_primary is False


def test_resolve_normalises_case_and_port(resolver, site_id):
    assert resolver.resolve("Example.COM:8443") == resolver.resolve("example.com")


def test_cache_hit_within_ttl_and_miss_after(resolver, site_store, site_id, tick, monkeypatch):
    calls = _count_lookups(monkeypatch, site_store)
    resolver.resolve("example.com")
    tick.t += 299
    resolver.resolve("EXAMPLE.com")
    assert len(calls) == 1

    tick.t += 2
    resolver.resolve("example.com")
    assert len(calls) == 2


def test_unknown_domain_is_not_cached(resolver, site_store, site_id):
    assert resolver.resolve("new.example.com") is None
    site_store.add_domain(SiteDomain(site_id=site_id, domain="new.example.com"))
    assert resolver.resolve("new.example.com").site_id == site_id


def test_clear_cache_picks_up_disabled_domain(resolver, site_store, site_id):
    assert resolver.resolve("www.example.com") is not None
    site_store.set_domain_status("www.example.com", DomainStatus.disabled)
    # Still cached until cleared.
    assert resolver.resolve("www.example.com") is not None
    resolver.clear_cache()
    assert resolver.resolve("www.example.com") is None


def test_resolve_from_host(resolver, site_id):
    assert resolver.resolve_from_host("www.example.com:8080").site_id == site_id
    assert resolver.resolve_from_host(None) is None
    assert resolver.resolve_from_host("") is None


def test_store_error_resolves_to_none(resolver, site_store, monkeypatch):
    def fail(domain):
        raise OperationalError("SELECT", {}, Exception("timeout"))

    monkeypatch.setattr(site_store, "find_active_site_id", fail)
    assert resolver.resolve("example.com") is None


def test_list_domains_and_primary(resolver, site_store, site_id):
    site_store.add_domain(SiteDomain(site_id=site_id, domain="old.example.com", status=DomainStatus.disabled.value))
    assert resolver.list_domains(site_id) == ["example.com", "www.example.com"]
    assert resolver.primary_domain(site_id) == "example.com"
    assert resolver.primary_domain("missing-site") is None
    assert resolver.list_domains("missing-site") == []
