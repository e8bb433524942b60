from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from tenantauth.logging import get_logger
from tenantauth.service.catalog import (
    ORG_ADMIN,
    PLATFORM_ADMIN,
    TENANT_ADMIN,
    tenant_roles_only,
)
from tenantauth.service.errors import ForbiddenError, PermissionDenied, TenantContextMissing
from tenantauth.service.retry import StoreRetry
from tenantauth.service.tenancy import TenantContextResolver, TenantHints
from tenantauth.service.tokens import Principal, merge_roles

logger = get_logger(__name__)

TENANT_ADMIN_ROLES = frozenset({"admin", "owner", ORG_ADMIN, "super_admin", TENANT_ADMIN})


@dataclass
class TenantContext:
    """Effective tenant and roles a request operates under after a role check."""

    tenant_id: str
    roles: List[str] = field(default_factory=list)
    source: Optional[str] = None
    bypass: bool = False


class AuthorizationEngine:
    """Permission-code and coarse role checks against the role registry.

    ``platform_admin`` passes every permission check, including for principals
    without a tenant. ``org_admin`` needs no membership row in the tenant it acts
    on. Both codes are honoured only from platform-level roles.
    """

    def __init__(
        self,
        store,
        resolver: TenantContextResolver,
        *,
        retry: Optional[StoreRetry] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.retry = retry or StoreRetry()

    async def _missing_permission(
        self, principal: Principal, required: Iterable[str]
    ) -> Optional[str]:
        """Return the first code the principal lacks, or None when all are granted."""
        for code in required:
            permission = await self.retry.call(
                "get_permission_by_code", self.store.get_permission_by_code, code
            )
            # Undeclared permissions never pass
            if permission is None:
                return code
            granted = await self.retry.call(
                "role_codes_grant_permission",
                self.store.role_codes_grant_permission,
                principal.roles,
                permission.id,
            )
            if not granted:
                return code
        return None

    async def require_permissions(
        self, principal: Principal, required: Iterable[str]
    ) -> None:
        required = list(required)
        if not required:
            return
        if principal.has_role(PLATFORM_ADMIN):
            return
        if not principal.tenant_id:
            raise TenantContextMissing("User does not belong to any tenant")
        if not principal.roles:
            raise PermissionDenied("User has no roles assigned")
        missing = await self._missing_permission(principal, required)
        if missing:
            logger.info(
                "permission_denied",
                user_id=principal.user_id,
                tenant_id=principal.tenant_id,
                permission=missing,
            )
            raise PermissionDenied(
                f"User does not have permission: {missing}", detail={"permission": missing}
            )

    async def authorize(self, principal: Principal, required: Iterable[str]) -> bool:
        """All of ``required`` must be granted; ``platform_admin`` always passes."""
        try:
            await self.require_permissions(principal, required)
        except ForbiddenError:
            return False
        return True

    async def has_permission(self, principal: Principal, code: str) -> bool:
        return await self.authorize(principal, [code])

    async def require_roles(
        self,
        principal: Principal,
        required_roles: Iterable[str],
        hints: Optional[TenantHints] = None,
    ) -> TenantContext:
        """Coarse role gate for a resolved tenant.

        Roles come from the principal's membership in the resolved tenant merged
        with the user's platform-level roles. ``org_admin`` skips the membership
        lookup but must still hold one of ``required_roles``.
        """
        required = {code.lower() for code in required_roles}
        resolved = await self.resolver.resolve(hints or TenantHints())
        if resolved is None:
            raise TenantContextMissing("user or tenant missing")

        user = await self.retry.call("get_user", self.store.get_user, principal.user_id)
        platform_roles = user.platform_roles if user else []

        if principal.has_role(ORG_ADMIN):
            effective = merge_roles(principal.roles, platform_roles)
            bypass = True
        else:
            membership = await self.retry.call(
                "get_membership",
                self.store.get_membership,
                principal.user_id,
                resolved.tenant_id,
            )
            if membership is None:
                logger.info(
                    "tenant_membership_missing",
                    user_id=principal.user_id,
                    tenant_id=resolved.tenant_id,
                    source=resolved.source,
                )
                raise PermissionDenied("not a member of tenant")
            effective = merge_roles(tenant_roles_only(membership.roles), platform_roles)
            bypass = False

        if required and not required.intersection(code.lower() for code in effective):
            raise PermissionDenied("insufficient role")
        return TenantContext(resolved.tenant_id, effective, resolved.source, bypass)

    async def authorize_by_role(
        self,
        principal: Principal,
        required_roles: Iterable[str],
        hints: Optional[TenantHints] = None,
    ) -> bool:
        try:
            await self.require_roles(principal, required_roles, hints)
        except ForbiddenError:
            return False
        return True

    def require_org_admin(self, principal: Principal) -> None:
        if not principal.has_role(ORG_ADMIN):
            raise PermissionDenied("Only org_admin users can access this endpoint")

    def require_tenant_admin(self, principal: Principal) -> str:
        if not principal.tenant_id:
            raise TenantContextMissing("User does not belong to any tenant")
        if not TENANT_ADMIN_ROLES.intersection(principal.roles):
            raise PermissionDenied("User is not a tenant admin")
        return principal.tenant_id
