"""Unit tests for tenancy/store.py -- sites, domains and the single-primary rule.

Covers:
- normalize_domain() lower-cases and strips ports and whitespace
- add_domain() with is_primary demotes the previous primary
- set_primary_domain() switches primaries and rejects foreign domains
- duplicate domains across sites raise IntegrityError
- list_domains() orders primary first and filters by status
"""

import pytest
from sqlalchemy.exc import IntegrityError

from tenancy.models import DomainStatus, Site, SiteDomain
from tenancy.store import normalize_domain


@pytest.fixture
def site_id(site_store):
    return site_store.create_site(Site(name="Acme", slug="acme"))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Example.COM", "example.com"),
        ("example.com:8443", "example.com"),
        ("  Shop.Example.com:80 ", "shop.example.com"),
        ("", ""),
    ],
)
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected


def test_add_domain_normalises(site_store, site_id):
    site_store.add_domain(SiteDomain(site_id=site_id, domain="WWW.Acme.test:443"))
    assert site_store.get_domain(site_id, "www.acme.test") is not None
    assert site_store.find_active_site_id("www.acme.test") == site_id


def test_only_one_primary_per_site(site_store, site_id):
    site_store.add_domain(SiteDomain(site_id=site_id, domain="a.acme.test", is_primary=True))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="b.acme.test", is_primary=True))

    domains = site_store.list_domains(site_id)
    assert [d.domain for d in domains if d.is_primary] == ["b.acme.test"]
    assert site_store.get_primary_domain(site_id).domain == "b.acme.test"


def test_set_primary_domain(site_store, site_id):
    site_store.add_domain(SiteDomain(site_id=site_id, domain="a.acme.test", is_primary=True))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="b.acme.test"))

    assert site_store.set_primary_domain(site_id, "B.acme.test")
    assert site_store.get_primary_domain(site_id).domain == "b.acme.test"
    assert [d.domain for d in site_store.list_domains(site_id)] == ["b.acme.test", "a.acme.test"]


def test_set_primary_rejects_other_sites_domain(site_store, site_id):
    other = site_store.create_site(Site(name="Other", slug="other"))
    site_store.add_domain(SiteDomain(site_id=other, domain="other.test", is_primary=True))
    assert site_store.set_primary_domain(site_id, "other.test") is False
    assert site_store.get_primary_domain(other).domain == "other.test"


def test_domain_is_unique_across_sites(site_store, site_id):
    other = site_store.create_site(Site(name="Other", slug="other"))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="shared.test"))
    with pytest.raises(IntegrityError):
        site_store.add_domain(SiteDomain(site_id=other, domain="SHARED.test"))


def test_failed_add_does_not_demote_primary(site_store, site_id):
    other = site_store.create_site(Site(name="Other", slug="other"))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="taken.test"))
    site_store.add_domain(SiteDomain(site_id=other, domain="primary.other.test", is_primary=True))
    with pytest.raises(IntegrityError):
        site_store.add_domain(SiteDomain(site_id=other, domain="taken.test", is_primary=True))
    assert site_store.get_primary_domain(other).domain == "primary.other.test"


def test_status_filters(site_store, site_id):
    site_store.add_domain(SiteDomain(site_id=site_id, domain="live.test", is_primary=True))
    site_store.add_domain(SiteDomain(site_id=site_id, domain="soon.test", status=DomainStatus.pending.value))

    assert site_store.find_active_site_id("soon.test") is None
    active = site_store.list_domains(site_id, status=DomainStatus.active)
    assert [d.domain for d in active] == ["live.test"]

    assert site_store.set_domain_status("live.test", DomainStatus.disabled)
    assert site_store.get_primary_domain(site_id) is None
    assert site_store.set_domain_status("nope.test", DomainStatus.active) is False
