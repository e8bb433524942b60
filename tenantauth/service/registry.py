from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from tenantauth.logging import get_logger
from tenantauth.service.catalog import (
    PLATFORM_ADMIN,
    PLATFORM_ROLES,
    TENANT_ADMIN,
    TENANT_ADMIN_ASSIGNABLE_RESOURCES,
    TENANT_ADMIN_REPORTING_RESOURCES,
    tenant_roles_only,
)
from tenantauth.service.errors import (
    ConflictError,
    DuplicatePermissionCode,
    DuplicateRoleCode,
    MembershipConflict,
    NotFoundError,
    PermissionDenied,
    UnknownCategory,
    ValidationError,
)
from tenantauth.service.retry import StoreRetry
from tenantauth.service.tokens import merge_roles
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Permission, Role, RolePermission, Tenant, UserTenant

logger = get_logger(__name__)


def permission_summary(permission: Permission, *fields: str) -> Dict[str, Any]:
    """Public view of a permission; ``fields`` narrows the keys returned."""
    full = {
        "id": permission.id,
        "code": permission.code,
        "name": permission.name,
        "description": permission.description,
        "resource": permission.resource,
        "action": permission.action,
        "category": permission.category,
        "isSystemDefined": permission.is_system_defined,
    }
    if not fields:
        return full
    return {key: full[key] for key in fields}


def role_summary(role: Role) -> Dict[str, Any]:
    return {
        "id": role.id,
        "code": role.code,
        "name": role.name,
        "description": role.description,
        "category": role.category,
        "isSystem": role.is_system,
    }


def membership_summary(membership: UserTenant) -> Dict[str, Any]:
    return {
        "id": membership.id,
        "userId": membership.user_id,
        "tenantId": membership.tenant_id,
        "roles": list(membership.roles),
    }


def membership_roles(roles: Iterable[str]) -> List[str]:
    role_list = merge_roles(roles)
    reserved = [code for code in role_list if code.lower() in PLATFORM_ROLES]
    if reserved:
        raise ValidationError(
            "platform roles cannot be held in a tenant membership",
            detail={"field": "roles", "roles": reserved},
        )
    return role_list


def _may_assign(roles: Iterable[str], permission: Permission) -> bool:
    roles = list(roles)
    if PLATFORM_ADMIN in roles:
        return True
    if TENANT_ADMIN in roles:
        return permission.resource in TENANT_ADMIN_ASSIGNABLE_RESOURCES
    return False


def _check_assignable(roles: Iterable[str], permissions: Iterable[Permission]) -> None:
    roles = list(roles)
    denied = [p.code for p in permissions if not _may_assign(roles, p)]
    if denied:
        logger.info("permission_assignment_denied", permissions=denied)
        raise PermissionDenied(
            f"Cannot assign permission: {denied[0]}", detail={"permissions": denied}
        )


class RoleRegistry:
    """Roles, permissions, grants, tenants and tenant memberships."""

    def __init__(self, store, *, retry: Optional[StoreRetry] = None) -> None:
        self.store = store
        self.retry = retry or StoreRetry()

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        return await self.retry.call(operation, getattr(self.store, operation), *args, **kwargs)

    # roles
    async def create_role(
        self,
        code: str,
        name: str,
        description: Optional[str] = None,
        *,
        category: Optional[str] = None,
    ) -> Role:
        code = (code or "").strip()
        if not code:
            raise ValidationError("role code is required", detail={"field": "code"})
        try:
            role = await self._call(
                "create_role", code, name or code, description=description, category=category
            )
        except ConstraintViolation:
            raise DuplicateRoleCode(code)
        logger.info("role_created", code=code)
        return role

    async def get_role(self, code: str) -> Role:
        role = await self._call("get_role_by_code", code)
        if not role:
            raise NotFoundError(f"Role not found: {code}", detail={"code": code})
        return role

    async def list_roles(self) -> List[Role]:
        return await self._call("list_roles")

    async def get_permissions_for_role(self, code: str) -> List[Permission]:
        role = await self.get_role(code)
        return await self._call("list_permissions_for_role", role.id)

    # permissions
    async def create_permission(
        self,
        code: str,
        name: str,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        category: str = "Custom",
        *,
        description: Optional[str] = None,
    ) -> Permission:
        code = (code or "").strip()
        if "." not in code:
            raise ValidationError(
                "permission code must have the form resource.action",
                detail={"field": "code"},
            )
        default_resource, default_action = code.split(".", 1)
        try:
            permission = await self._call(
                "create_permission",
                code,
                name or code,
                resource or default_resource,
                action or default_action,
                category,
                description=description,
                is_system_defined=False,
            )
        except ConstraintViolation:
            raise DuplicatePermissionCode(code)
        logger.info("permission_created", code=code, category=category)
        return permission

    async def _resolve_permission(self, code_or_id: str) -> Optional[Permission]:
        permission = await self._call("get_permission_by_code", code_or_id)
        if permission is None:
            permission = await self._call("get_permission", code_or_id)
        return permission

    async def assign_permission_to_role(
        self,
        role_code: str,
        permission_code_or_id: str,
        *,
        granted_by: Optional[Iterable[str]] = None,
    ) -> RolePermission:
        """Grant a permission to a role. Re-granting returns the existing row.

        ``granted_by`` holds the assigning caller's roles; a permission outside
        what those roles may assign is denied.
        """
        role = await self._call("get_role_by_code", role_code)
        permission = await self._resolve_permission(permission_code_or_id)
        if not role or not permission:
            raise NotFoundError(
                "Role or permission not found",
                detail={"role": role_code, "permission": permission_code_or_id},
            )
        if granted_by is not None:
            _check_assignable(granted_by, [permission])
        return await self._grant(role, permission)

    async def _grant(self, role: Role, permission: Permission) -> RolePermission:
        existing = await self._call("get_role_permission", role.id, permission.id)
        if existing:
            return existing
        try:
            grant = await self._call("create_role_permission", role.id, permission.id)
        except ConstraintViolation:
            # Concurrent grant won the unique index; return its row
            existing = await self._call("get_role_permission", role.id, permission.id)
            if existing is None:
                raise
            return existing
        logger.info("role_permission_granted", role=role.code, permission=permission.code)
        return grant

    async def assign_permissions_by_category(
        self, role_code: str, category: str, *, granted_by: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        role = await self.get_role(role_code)
        permissions = await self._call("list_permissions")
        wanted = (category or "").strip().lower()
        matching = [p for p in permissions if p.category.lower() == wanted]
        if not matching:
            raise UnknownCategory(category, {p.category for p in permissions})
        if granted_by is not None:
            _check_assignable(granted_by, matching)
        for permission in matching:
            await self._grant(role, permission)
        return {
            "role": role.code,
            "category": matching[0].category,
            "assignedCount": len(matching),
            "permissions": [p.code for p in matching],
        }

    async def user_has_permission(
        self, user_id: str, tenant_id: Optional[str], permission_code: str
    ) -> bool:
        if not tenant_id:
            return False
        membership = await self._call("get_membership", user_id, tenant_id)
        if not membership or not membership.roles:
            return False
        permission = await self._call("get_permission_by_code", permission_code)
        if not permission:
            return False
        return await self._call(
            "role_codes_grant_permission", tenant_roles_only(membership.roles), permission.id
        )

    # tenants
    async def create_tenant(self, name: str) -> Tenant:
        name = (name or "").strip()
        if not name:
            raise ValidationError("tenant name is required", detail={"field": "name"})
        try:
            tenant = await self._call("create_tenant", name)
        except ConstraintViolation:
            raise ConflictError(
                f"Tenant with name '{name}' already exists", detail={"name": name}
            )
        logger.info("tenant_created", tenant_id=tenant.id)
        return tenant

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self._call("get_tenant", tenant_id)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    async def get_tenant_by_name(self, name: str) -> Tenant:
        tenant = await self._call("get_tenant_by_name", name)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"name": name})
        return tenant

    async def list_tenants(self) -> List[Tenant]:
        return await self._call("list_tenants")

    # memberships
    async def get_user_tenant_membership(self, user_id: str) -> Optional[UserTenant]:
        return await self._call("get_membership_for_user", user_id)

    async def attach_user_to_tenant(
        self, user_id: str, tenant_id: str, roles: Iterable[str]
    ) -> UserTenant:
        """Create the user's single membership; any existing membership is a conflict."""
        if await self._call("get_membership_for_user", user_id):
            raise MembershipConflict(
                "User already attached to a tenant", detail={"user_id": user_id}
            )
        try:
            membership = await self._call(
                "create_membership", user_id, tenant_id, membership_roles(roles)
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "user_id":
                raise MembershipConflict(
                    "User already attached to a tenant", detail={"user_id": user_id}
                )
            raise NotFoundError("User or tenant not found", detail=exc.detail)
        logger.info(
            "user_attached_to_tenant",
            user_id=user_id,
            tenant_id=tenant_id,
            roles=membership.roles,
        )
        return membership

    async def assign_roles_to_user_tenant(
        self, user_id: str, tenant_id: str, roles: Iterable[str]
    ) -> UserTenant:
        """Upsert the membership, replacing its role set."""
        role_list = membership_roles(roles)
        membership = await self._call("get_membership", user_id, tenant_id)
        if membership is None:
            return await self.attach_user_to_tenant(user_id, tenant_id, role_list)
        updated = await self._call("set_membership_roles", membership.id, role_list)
        logger.info(
            "user_tenant_roles_replaced", user_id=user_id, tenant_id=tenant_id, roles=role_list
        )
        return updated

    async def add_roles_to_user_tenant(
        self, user_id: str, tenant_id: str, roles: Iterable[str]
    ) -> UserTenant:
        """Merge roles into the membership, creating it when absent."""
        membership = await self._call("get_membership", user_id, tenant_id)
        if membership is None:
            return await self.attach_user_to_tenant(user_id, tenant_id, roles)
        merged = merge_roles(membership.roles, membership_roles(roles))
        updated = await self._call("set_membership_roles", membership.id, merged)
        logger.info(
            "user_tenant_roles_merged", user_id=user_id, tenant_id=tenant_id, roles=merged
        )
        return updated

    async def list_tenant_users(self, tenant_id: str) -> List[Dict[str, Any]]:
        memberships = await self._call("list_memberships_for_tenant", tenant_id)
        users = []
        for membership in memberships:
            user = await self._call("get_user", membership.user_id)
            if not user:
                continue
            users.append(
                {
                    "id": user.id,
                    "email": user.email,
                    "displayName": user.display_name,
                    "status": user.status,
                    "tenantId": membership.tenant_id,
                    "roles": list(membership.roles),
                }
            )
        return users

    # permission catalog queries
    async def available_permissions(self) -> Dict[str, Any]:
        permissions = await self._call("list_permissions")
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for permission in permissions:
            grouped.setdefault(permission.category, []).append(
                permission_summary(
                    permission,
                    "code",
                    "name",
                    "description",
                    "resource",
                    "action",
                    "category",
                    "isSystemDefined",
                )
            )
        resources = list(dict.fromkeys(p.resource for p in permissions))
        system_defined = sum(1 for p in permissions if p.is_system_defined)
        return {
            "categories": grouped,
            "total": len(permissions),
            "categoryCount": len(grouped),
            "resourceCount": len(resources),
            "resources": resources,
            "summary": {
                "systemDefined": system_defined,
                "custom": len(permissions) - system_defined,
            },
        }

    async def permissions_by_category(self, category: str) -> Dict[str, Any]:
        needle = (category or "").lower()
        permissions = [
            p for p in await self._call("list_permissions") if needle in p.category.lower()
        ]
        if not permissions:
            raise NotFoundError(
                f"No permissions found for category: {category}",
                detail={"category": category},
            )
        permissions.sort(key=lambda p: (p.resource, p.action))
        return {
            "category": category,
            "permissions": [
                permission_summary(p, "code", "name", "description", "resource", "action")
                for p in permissions
            ],
            "total": len(permissions),
        }

    async def permissions_by_resource(self, resource: str) -> Dict[str, Any]:
        wanted = (resource or "").lower()
        permissions = [
            p for p in await self._call("list_permissions") if p.resource.lower() == wanted
        ]
        if not permissions:
            raise NotFoundError(
                f"No permissions found for resource: {resource}",
                detail={"resource": resource},
            )
        permissions.sort(key=lambda p: p.action)
        return {
            "resource": resource,
            "permissions": [
                permission_summary(p, "code", "name", "description", "category", "action")
                for p in permissions
            ],
            "total": len(permissions),
        }

    async def permission_by_code(self, code: str) -> Permission:
        permission = await self._call("get_permission_by_code", code)
        if not permission:
            raise NotFoundError(f"Permission not found: {code}", detail={"code": code})
        return permission

    async def permission_stats(self) -> Dict[str, Any]:
        permissions = await self._call("list_permissions")
        by_category: Dict[str, int] = {}
        by_resource: Dict[str, int] = {}
        for permission in permissions:
            by_category[permission.category] = by_category.get(permission.category, 0) + 1
            by_resource[permission.resource] = by_resource.get(permission.resource, 0) + 1
        system_defined = sum(1 for p in permissions if p.is_system_defined)
        return {
            "total": len(permissions),
            "byCategory": by_category,
            "byResource": by_resource,
            "systemDefined": system_defined,
            "custom": len(permissions) - system_defined,
        }

    async def validate_permission_code(self, code: str) -> Dict[str, Any]:
        permission = await self._call("get_permission_by_code", code)
        return {
            "code": code,
            "exists": permission is not None,
            "valid": permission is not None,
            "permission": permission_summary(permission) if permission else None,
        }

    async def can_assign_permission(self, roles: Iterable[str], code: str) -> bool:
        return _may_assign(roles, await self.permission_by_code(code))

    async def assignable_permissions(self, roles: Iterable[str]) -> Dict[str, Any]:
        roles = list(roles)
        permissions = await self._call("list_permissions")
        if PLATFORM_ADMIN in roles:
            return {
                "assignableCount": len(permissions),
                "permissions": [permission_summary(p) for p in permissions],
                "allPermissions": True,
            }
        if TENANT_ADMIN in roles:
            allowed = TENANT_ADMIN_ASSIGNABLE_RESOURCES | TENANT_ADMIN_REPORTING_RESOURCES
            assignable = [p for p in permissions if p.resource in allowed]
            return {
                "assignableCount": len(assignable),
                "permissions": [permission_summary(p) for p in assignable],
                "allPermissions": False,
                "restriction": "Tenant admin can only assign resource-specific permissions",
            }
        return {
            "assignableCount": 0,
            "permissions": [],
            "allPermissions": False,
            "restriction": "Your role cannot assign permissions",
        }
