"""Permission and role checks in the authorization engine."""

import pytest

from tenantauth.service.authz import TenantContext
from tenantauth.service.errors import PermissionDenied, TenantContextMissing
from tenantauth.service.runtime import get_runtime
from tenantauth.service.tenancy import TenantHints
from tenantauth.service.tokens import Principal


def _principal(roles, tenant_id="tenant-1", user_id="user-1"):
    return Principal(user_id=user_id, email="u@x.com", tenant_id=tenant_id, roles=roles)


class TestPermissionChecks:
    @pytest.mark.asyncio
    async def test_granted_permission_passes(self):
        authz = get_runtime().authz
        assert await authz.authorize(_principal(["trainer"]), ["courses.read"])

    @pytest.mark.asyncio
    async def test_all_required_permissions_must_be_granted(self):
        authz = get_runtime().authz
        principal = _principal(["trainer"])

        assert await authz.authorize(principal, ["courses.read", "courses.update"])
        assert not await authz.authorize(principal, ["courses.read", "courses.delete"])

    @pytest.mark.asyncio
    async def test_denial_names_missing_permission(self):
        authz = get_runtime().authz
        with pytest.raises(PermissionDenied) as excinfo:
            await authz.require_permissions(_principal(["learner"]), ["courses.create"])
        assert excinfo.value.detail == {"permission": "courses.create"}
        assert excinfo.value.status_code == 403

    @pytest.mark.asyncio
    async def test_undeclared_permission_never_passes(self):
        authz = get_runtime().authz
        assert not await authz.has_permission(_principal(["tenant_admin"]), "ghost.haunt")

    @pytest.mark.asyncio
    async def test_platform_admin_bypasses_even_without_tenant(self):
        authz = get_runtime().authz
        admin = _principal(["platform_admin"], tenant_id=None)

        assert await authz.authorize(admin, ["tenants.create", "ghost.haunt"])

    @pytest.mark.asyncio
    async def test_missing_tenant_rejected(self):
        authz = get_runtime().authz
        with pytest.raises(TenantContextMissing):
            await authz.require_permissions(_principal(["trainer"], tenant_id=None), ["courses.read"])

    @pytest.mark.asyncio
    async def test_no_roles_rejected(self):
        authz = get_runtime().authz
        with pytest.raises(PermissionDenied) as excinfo:
            await authz.require_permissions(_principal([]), ["courses.read"])
        assert "no roles" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_empty_requirement_always_passes(self):
        authz = get_runtime().authz
        assert await authz.authorize(_principal([], tenant_id=None), [])

    @pytest.mark.asyncio
    async def test_new_grant_is_visible_immediately(self):
        runtime = get_runtime()
        principal = _principal(["learner"])
        assert not await runtime.authz.has_permission(principal, "reports.read")

        await runtime.registry.assign_permission_to_role("learner", "reports.read")

        assert await runtime.authz.has_permission(principal, "reports.read")


class TestRoleChecks:
    async def _member(self, runtime, roles, platform_roles=None):
        tenant = runtime.store.create_tenant("acme")
        user = runtime.store.create_user(
            "member@acme.test", "x", platform_roles=platform_roles or []
        )
        runtime.store.create_membership(user.id, tenant.id, roles)
        return tenant, user

    @pytest.mark.asyncio
    async def test_member_with_required_role(self):
        runtime = get_runtime()
        tenant, user = await self._member(runtime, ["trainer"])
        principal = _principal(["trainer"], tenant_id=tenant.id, user_id=user.id)

        context = await runtime.authz.require_roles(
            principal, ["TRAINER", "instructor"], TenantHints(tenant_id=tenant.id)
        )

        assert context == TenantContext(tenant.id, ["trainer"], "tenant_id")

    @pytest.mark.asyncio
    async def test_platform_roles_merge_into_effective_roles(self):
        runtime = get_runtime()
        tenant, user = await self._member(runtime, ["learner"], ["platform_admin"])
        principal = _principal(["learner"], tenant_id=tenant.id, user_id=user.id)

        context = await runtime.authz.require_roles(
            principal, ["platform_admin"], TenantHints(tenant_name="acme")
        )

        assert context.roles == ["learner", "platform_admin"]
        assert context.source == "tenant_name"

    @pytest.mark.asyncio
    async def test_insufficient_role(self):
        runtime = get_runtime()
        tenant, user = await self._member(runtime, ["learner"])
        principal = _principal(["learner"], tenant_id=tenant.id, user_id=user.id)

        with pytest.raises(PermissionDenied) as excinfo:
            await runtime.authz.require_roles(
                principal, ["trainer"], TenantHints(tenant_id=tenant.id)
            )
        assert excinfo.value.message == "insufficient role"
        assert not await runtime.authz.authorize_by_role(
            principal, ["trainer"], TenantHints(tenant_id=tenant.id)
        )

    @pytest.mark.asyncio
    async def test_non_member_rejected(self):
        runtime = get_runtime()
        tenant, _ = await self._member(runtime, ["trainer"])
        outsider = runtime.store.create_user("outsider@x.test", "x")

        with pytest.raises(PermissionDenied) as excinfo:
            await runtime.authz.require_roles(
                _principal(["trainer"], user_id=outsider.id),
                ["trainer"],
                TenantHints(tenant_id=tenant.id),
            )
        assert excinfo.value.message == "not a member of tenant"

    @pytest.mark.asyncio
    async def test_unresolvable_tenant(self):
        runtime = get_runtime()
        with pytest.raises(TenantContextMissing):
            await runtime.authz.require_roles(
                _principal(["trainer"]), ["trainer"], TenantHints(course_id="missing")
            )

    @pytest.mark.asyncio
    async def test_org_admin_skips_membership_only(self):
        runtime = get_runtime()
        tenant = runtime.store.create_tenant("globex")
        org_admin = _principal(["org_admin"], tenant_id=None)
        hints = TenantHints(tenant_id=tenant.id)

        context = await runtime.authz.require_roles(org_admin, ["org_admin", "trainer"], hints)
        assert context.bypass is True
        assert context.tenant_id == tenant.id
        assert (await runtime.authz.require_roles(org_admin, [], hints)).bypass is True

        with pytest.raises(PermissionDenied) as excinfo:
            await runtime.authz.require_roles(org_admin, ["trainer"], hints)
        assert excinfo.value.message == "insufficient role"
        assert not await runtime.authz.authorize_by_role(org_admin, ["trainer"], hints)

    @pytest.mark.asyncio
    async def test_role_codes_compare_case_insensitively(self):
        runtime = get_runtime()
        tenant, user = await self._member(runtime, ["Trainer"])
        principal = _principal(["Trainer"], tenant_id=tenant.id, user_id=user.id)

        context = await runtime.authz.require_roles(
            principal, ["trainer"], TenantHints(tenant_id=tenant.id)
        )

        assert context.roles == ["Trainer"]

    @pytest.mark.asyncio
    async def test_bypass_code_in_membership_row_is_ignored(self):
        runtime = get_runtime()
        tenant, user = await self._member(runtime, ["learner", "org_admin"])
        principal = _principal(["learner"], tenant_id=tenant.id, user_id=user.id)

        context = await runtime.authz.require_roles(
            principal, ["learner"], TenantHints(tenant_id=tenant.id)
        )

        assert context.roles == ["learner"]
        with pytest.raises(PermissionDenied):
            await runtime.authz.require_roles(
                principal, ["org_admin"], TenantHints(tenant_id=tenant.id)
            )


class TestCoarseGuards:
    def test_require_org_admin(self):
        authz = get_runtime().authz
        authz.require_org_admin(_principal(["org_admin"]))
        with pytest.raises(PermissionDenied):
            authz.require_org_admin(_principal(["tenant_admin"]))

    def test_require_tenant_admin_returns_tenant(self):
        authz = get_runtime().authz
        assert authz.require_tenant_admin(_principal(["tenant_admin"])) == "tenant-1"
        assert authz.require_tenant_admin(_principal(["owner"])) == "tenant-1"

    def test_require_tenant_admin_rejects_others(self):
        authz = get_runtime().authz
        with pytest.raises(PermissionDenied):
            authz.require_tenant_admin(_principal(["trainer"]))
        with pytest.raises(TenantContextMissing):
            authz.require_tenant_admin(_principal(["tenant_admin"], tenant_id=None))
