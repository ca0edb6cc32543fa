"""Tests for tenant hint extraction and resolution."""

import uuid
from types import SimpleNamespace

import pytest

from clinic_saas.core.errors import AccessDenied, TenantNotFound
from clinic_saas.modules.tenant.repository import TenantRepository
from clinic_saas.modules.tenant.resolver import (
    Identity,
    TenantHint,
    TenantContext,
    TenantResolver,
    extract_subdomain,
    extract_tenant_hint,
    identity_owns_tenant,
    resolve_tenant,
)


class TestExtractSubdomain:
    """Subdomain rules for host-based resolution."""

    @pytest.mark.parametrize(
        "host,expected",
        [
            ("acme.clinic.example", "acme"),
            ("ACME.clinic.example:8443", "acme"),
            ("north-wing.clinic.example", "north-wing"),
            ("clinic.example", None),
            ("localhost", None),
            ("www.clinic.example", None),
            ("api.clinic.example", None),
            ("-bad.clinic.example", None),
            ("bad-.clinic.example", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_subdomain(self, host, expected):
        assert extract_subdomain(host) == expected


class TestExtractTenantHint:
    """Hints are taken in a fixed priority order."""

    def test_header_id_wins(self):
        hint = extract_tenant_hint(
            {"X-Tenant-ID": " 0b6c5a8e-0000-4000-8000-000000000001 ", "X-Tenant-Slug": "acme"},
            identity=Identity(tenant_slug="globex"),
            host="initech.clinic.example",
        )

        assert hint == TenantHint(
            source="header_id", tenant_id="0b6c5a8e-0000-4000-8000-000000000001"
        )

    def test_slug_header_before_identity(self):
        hint = extract_tenant_hint(
            {"X-Tenant-Slug": "ACME"},
            identity=Identity(tenant_slug="globex"),
            host="initech.clinic.example",
        )

        assert hint == TenantHint(source="header_slug", slug="acme")

    def test_identity_before_subdomain(self):
        hint = extract_tenant_hint(
            {}, identity={"tenant_slug": "globex"}, host="initech.clinic.example"
        )

        assert hint.source == "identity"
        assert hint.slug == "globex"

    def test_subdomain_last(self):
        hint = extract_tenant_hint({}, identity=Identity(user_id="u1"), host="initech.clinic.example")

        assert hint == TenantHint(source="subdomain", slug="initech")

    def test_no_hint(self):
        assert extract_tenant_hint({}, identity=None, host="www.clinic.example") is None


class TestTenantResolver:
    """Resolution always reads the tenant store."""

    @pytest.mark.asyncio
    async def test_resolve_by_id_and_slug(self, session, tenant):
        resolver = TenantResolver(session)

        by_id = await resolver.resolve(TenantHint(source="header_id", tenant_id=str(tenant.id)))
        by_slug = await resolver.resolve(TenantHint(source="subdomain", slug="acme"))

        assert by_id.value.id == tenant.id
        assert by_slug.value.slug == "acme"
        assert by_slug.value.name == "Acme Clinic"

    @pytest.mark.asyncio
    async def test_unknown_and_malformed(self, session, tenant):
        resolver = TenantResolver(session)

        unknown = await resolver.resolve(TenantHint(source="header_slug", slug="nobody"))
        malformed = await resolver.resolve(TenantHint(source="header_id", tenant_id="not-a-uuid"))
        missing = await resolver.resolve(TenantHint(source="header_id", tenant_id=str(uuid.uuid4())))

        assert isinstance(unknown.error, TenantNotFound)
        assert isinstance(malformed.error, TenantNotFound)
        assert isinstance(missing.error, TenantNotFound)

    @pytest.mark.asyncio
    async def test_deactivation_applies_immediately(self, session, tenant):
        resolver = TenantResolver(session)
        assert (await resolver.resolve(TenantHint(source="header_slug", slug="acme"))).ok

        stored = await TenantRepository(session).get_by_slug("acme")
        stored.is_active = False
        await session.commit()

        result = await resolver.resolve(TenantHint(source="header_slug", slug="acme"))
        assert isinstance(result.error, TenantNotFound)

    @pytest.mark.asyncio
    async def test_settings_are_published(self, session_maker):
        async with session_maker() as session:
            await TenantRepository(session).create(
                slug="settings-clinic", name="Settings Clinic", settings={"timezone": "UTC"}
            )
            await session.commit()

            context = (
                await TenantResolver(session).resolve(
                    TenantHint(source="header_slug", slug="settings-clinic")
                )
            ).unwrap()

        assert context.get_setting("timezone") == "UTC"
        assert context.get_setting("missing", "x") == "x"
        assert context.to_dict()["slug"] == "settings-clinic"


def _request(headers: dict, identity=None) -> SimpleNamespace:
    return SimpleNamespace(headers=headers, state=SimpleNamespace(identity=identity))


class TestIdentityTenantBinding:
    """A caller bound to one tenant cannot name another."""

    def test_identity_owns_tenant(self):
        acme = TenantContext(id=uuid.uuid4(), slug="acme", name="Acme Clinic")

        assert identity_owns_tenant(None, acme)
        assert identity_owns_tenant(Identity(user_id="u1"), acme)
        assert identity_owns_tenant(Identity(tenant_id=str(acme.id)), acme)
        assert identity_owns_tenant({"tenant_slug": "ACME"}, acme)
        assert not identity_owns_tenant(Identity(tenant_id=str(uuid.uuid4())), acme)
        assert not identity_owns_tenant(Identity(tenant_slug="globex"), acme)

    @pytest.mark.asyncio
    async def test_header_cannot_switch_tenant(self, session, tenant, other_tenant):
        request = _request(
            {"X-Tenant-ID": str(other_tenant.id)},
            identity=Identity(user_id="u1", tenant_id=str(tenant.id)),
        )

        with pytest.raises(AccessDenied):
            await resolve_tenant(request, session)

    @pytest.mark.asyncio
    async def test_matching_header_resolves(self, session, tenant):
        request = _request(
            {"X-Tenant-Slug": "acme"},
            identity=Identity(user_id="u1", tenant_id=str(tenant.id)),
        )

        resolved = await resolve_tenant(request, session)

        assert resolved.id == tenant.id
        assert request.state.tenant is resolved

    @pytest.mark.asyncio
    async def test_unbound_identity_uses_header(self, session, other_tenant):
        request = _request({"X-Tenant-ID": str(other_tenant.id)}, identity=Identity(user_id="u1"))

        resolved = await resolve_tenant(request, session)

        assert resolved.slug == "globex"
