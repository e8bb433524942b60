from __future__ import annotations

import functools
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from tenantauth.api.schemas import (
    AddRolesRequest,
    AssignCategoryRequest,
    AssignPermissionRequest,
    AssignRoleRequest,
    AuthResponse,
    CreatePermissionRequest,
    CreateRoleRequest,
    CreateTenantRequest,
    CreatePlatformUserRequest,
    CreateTenantUserRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    TenantContextRequest,
    TokenRefreshRequest,
    UserStatusRequest,
    ValidatePermissionRequest,
)
from tenantauth.logging import get_logger
from tenantauth.service.authz import TenantContext
from tenantauth.service.catalog import PLATFORM_ADMIN
from tenantauth.service.errors import NotFoundError, PermissionDenied, TenantContextMissing
from tenantauth.service.registry import membership_summary, permission_summary, role_summary
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.service.tenancy import TenantHints
from tenantauth.service.tokens import Principal
from tenantauth.storage.models import Tenant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, scope: str
) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds, scope=scope)
    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_refresh_cookie(response: Response, refresh_token: str, settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _tenant_summary(tenant: Tenant) -> Dict[str, Any]:
    return {"id": tenant.id, "name": tenant.name, "createdAt": tenant.created_at.isoformat()}


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@dataclass
class AccessContext:
    """What a guarded handler receives: the caller and, for tenant-scoped routes,
    the tenant they act on."""

    principal: Principal
    tenant: Optional[TenantContext] = None


@dataclass(frozen=True)
class RouteSpec:
    """One route registration with its authorization requirements.

    ``permissions`` must all be granted. ``tenant_admin`` requires an
    administrative tenant role, which platform admins skip. ``tenant_scoped``
    resolves the request's tenant and requires membership holding one of
    ``roles`` (any role when empty).
    """

    path: str
    method: str
    handler: Callable[..., Any]
    permissions: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()
    tenant_admin: bool = False
    tenant_scoped: bool = False
    status_code: int = 200
    tags: Tuple[str, ...] = field(default_factory=tuple)


async def _request_hints(request: Request) -> TenantHints:
    body: Any = None
    if request.method in _BODY_METHODS:
        try:
            body = await request.json()
        except ValueError:
            body = None
    return TenantHints.from_request_parts(
        headers=request.headers,
        query=request.query_params,
        path_params=request.path_params,
        body=body,
    )


def _guard_for(route: RouteSpec) -> Callable[..., Any]:
    async def guard(
        request: Request, principal: Principal = Depends(get_principal)
    ) -> AccessContext:
        runtime = get_runtime()
        if route.permissions:
            await runtime.authz.require_permissions(principal, route.permissions)
        if route.tenant_admin and not principal.has_role(PLATFORM_ADMIN):
            runtime.authz.require_tenant_admin(principal)
        tenant = None
        if route.tenant_scoped:
            hints = await _request_hints(request)
            tenant = await runtime.authz.require_roles(principal, route.roles, hints)
        return AccessContext(principal=principal, tenant=tenant)

    return guard


def _endpoint_for(route: RouteSpec) -> Callable[..., Any]:
    """Bind the route's guard to the handler's ``ctx`` parameter."""
    signature = inspect.signature(route.handler)
    if "ctx" not in signature.parameters:
        return route.handler
    guard = Depends(_guard_for(route))
    parameters = [
        param.replace(default=guard) if name == "ctx" else param
        for name, param in signature.parameters.items()
    ]

    @functools.wraps(route.handler)
    async def endpoint(*args: Any, **kwargs: Any) -> Any:
        return await route.handler(*args, **kwargs)

    endpoint.__signature__ = signature.replace(parameters=parameters)  # type: ignore[attr-defined]
    return endpoint


def register_routes(target: APIRouter, routes: list[RouteSpec]) -> None:
    for route in routes:
        target.add_api_route(
            route.path,
            _endpoint_for(route),
            methods=[route.method],
            response_model=Envelope,
            status_code=route.status_code,
            tags=list(route.tags),
        )


# auth


async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and return its first token pair."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.display_name,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_refresh_cookie(response, result["refresh_token"], runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result["access_token"],
            refresh_token=result["refresh_token"],
            user=result["user"],
        ),
    )


async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is suspended
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        body.email,
        runtime.settings.login_rate_limit_per_minute,
        60,
        scope="login",
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_refresh_cookie(response, result["refresh_token"], runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result["access_token"],
            refresh_token=result["refresh_token"],
            user=result["user"],
        ),
    )


async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _client_ip(request) or "unknown",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        scope="refresh",
    )
    presented = (body.refresh_token if body else None) or refresh_cookie
    result = await runtime.auth.refresh(
        presented,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_refresh_cookie(response, result["refresh_token"], runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result["access_token"],
            refresh_token=result["refresh_token"],
            user=result["user"],
        ),
    )


async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    revoked = await runtime.auth.logout(presented)
    response.delete_cookie(REFRESH_COOKIE, path="/")
    return Envelope(status="ok", data={"revoked": revoked})


async def me(ctx: AccessContext):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.me(ctx.principal))


# tenants


async def create_tenant(body: CreateTenantRequest, ctx: AccessContext):
    runtime = get_runtime()
    tenant = await runtime.registry.create_tenant(body.name)
    return Envelope(status="ok", data=_tenant_summary(tenant))


async def list_tenants(ctx: AccessContext):
    runtime = get_runtime()
    tenants = await runtime.registry.list_tenants()
    return Envelope(status="ok", data={"items": [_tenant_summary(t) for t in tenants]})


async def get_tenant_by_name(name: str, ctx: AccessContext):
    runtime = get_runtime()
    tenant = await runtime.registry.get_tenant_by_name(name)
    return Envelope(status="ok", data=_tenant_summary(tenant))


# users


async def _check_same_tenant(runtime, principal: Principal, user_id: str) -> str:
    """Return the target user's tenant, which must be the caller's unless platform admin."""
    membership = await runtime.registry.get_user_tenant_membership(user_id)
    if membership is None:
        raise NotFoundError("User is not attached to a tenant", detail={"user_id": user_id})
    if not principal.has_role(PLATFORM_ADMIN) and membership.tenant_id != principal.tenant_id:
        raise PermissionDenied("User belongs to another tenant")
    return membership.tenant_id


async def create_tenant_user(body: CreateTenantUserRequest, ctx: AccessContext):
    """Create a user inside a tenant, addressed by tenant name."""
    runtime = get_runtime()
    if not ctx.principal.has_role(PLATFORM_ADMIN):
        tenant = await runtime.registry.get_tenant_by_name(body.tenant_name)
        if tenant.id != ctx.principal.tenant_id:
            raise PermissionDenied("Cannot create users in another tenant")
    user = await runtime.auth.create_user_in_tenant(
        body.email,
        body.password,
        body.display_name,
        body.tenant_name,
        body.roles,
    )
    return Envelope(status="ok", data=user)


async def list_tenant_users(ctx: AccessContext):
    runtime = get_runtime()
    if not ctx.principal.tenant_id:
        raise TenantContextMissing("User does not belong to any tenant")
    users = await runtime.registry.list_tenant_users(ctx.principal.tenant_id)
    return Envelope(status="ok", data={"items": users, "total": len(users)})


async def add_user_roles(user_id: str, body: AddRolesRequest, ctx: AccessContext):
    runtime = get_runtime()
    tenant_id = await _check_same_tenant(runtime, ctx.principal, user_id)
    membership = await runtime.registry.add_roles_to_user_tenant(user_id, tenant_id, body.roles)
    return Envelope(status="ok", data=membership_summary(membership))


async def set_user_status(user_id: str, body: UserStatusRequest, ctx: AccessContext):
    runtime = get_runtime()
    await _check_same_tenant(runtime, ctx.principal, user_id)
    user = await runtime.auth.set_user_status(user_id, body.status)
    return Envelope(status="ok", data=user)


async def create_platform_user(body: CreatePlatformUserRequest, ctx: AccessContext):
    """Create a user with platform-level roles and no tenant."""
    runtime = get_runtime()
    # Tenant admins hold admin.manage too
    if not ctx.principal.has_role(PLATFORM_ADMIN):
        raise PermissionDenied("Only platform admins can create platform users")
    user = await runtime.auth.create_platform_user(
        body.email, body.password, body.display_name, body.platform_roles
    )
    return Envelope(status="ok", data=user)


# roles


async def create_role(body: CreateRoleRequest, ctx: AccessContext):
    runtime = get_runtime()
    role = await runtime.registry.create_role(
        body.code, body.name, body.description, category=body.category
    )
    return Envelope(status="ok", data=role_summary(role))


async def list_roles(ctx: AccessContext):
    runtime = get_runtime()
    roles = await runtime.registry.list_roles()
    return Envelope(status="ok", data={"items": [role_summary(r) for r in roles]})


async def get_role_permissions(code: str, ctx: AccessContext):
    runtime = get_runtime()
    permissions = await runtime.registry.get_permissions_for_role(code)
    return Envelope(
        status="ok",
        data={
            "roleCode": code,
            "permissions": [
                permission_summary(p, "id", "code", "name", "description", "category")
                for p in permissions
            ],
        },
    )


async def create_permission(body: CreatePermissionRequest, ctx: AccessContext):
    runtime = get_runtime()
    permission = await runtime.registry.create_permission(
        body.code, body.name, category=body.category, description=body.description
    )
    return Envelope(status="ok", data=permission_summary(permission))


async def assign_permission(body: AssignPermissionRequest, ctx: AccessContext):
    runtime = get_runtime()
    grant = await runtime.registry.assign_permission_to_role(
        body.role_code, body.permission_id, granted_by=ctx.principal.roles
    )
    return Envelope(
        status="ok",
        data={"id": grant.id, "roleId": grant.role_id, "permissionId": grant.permission_id},
    )


async def assign_category(body: AssignCategoryRequest, ctx: AccessContext):
    runtime = get_runtime()
    result = await runtime.registry.assign_permissions_by_category(
        body.role_code, body.category, granted_by=ctx.principal.roles
    )
    return Envelope(status="ok", data=result)


async def assign_role(body: AssignRoleRequest, ctx: AccessContext):
    runtime = get_runtime()
    principal = ctx.principal
    if not principal.has_role(PLATFORM_ADMIN) and body.tenant_id != principal.tenant_id:
        raise PermissionDenied("Cannot assign roles in another tenant")
    membership = await runtime.registry.assign_roles_to_user_tenant(
        body.user_id, body.tenant_id, body.roles
    )
    return Envelope(status="ok", data=membership_summary(membership))


# permission catalog


async def available_permissions(ctx: AccessContext):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registry.available_permissions())


async def permissions_by_category(
    ctx: AccessContext, category: str = Query(..., min_length=1, max_length=64)
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registry.permissions_by_category(category))


async def permissions_by_resource(
    ctx: AccessContext, resource: str = Query(..., min_length=1, max_length=64)
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registry.permissions_by_resource(resource))


async def permission_stats(ctx: AccessContext):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registry.permission_stats())


async def assignable_permissions(ctx: AccessContext):
    runtime = get_runtime()
    data = await runtime.registry.assignable_permissions(ctx.principal.roles)
    return Envelope(status="ok", data=data)


async def validate_permission(body: ValidatePermissionRequest, ctx: AccessContext):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.registry.validate_permission_code(body.code))


async def get_permission(code: str, ctx: AccessContext):
    runtime = get_runtime()
    permission = await runtime.registry.permission_by_code(code)
    return Envelope(status="ok", data=permission_summary(permission))


# tenant context


async def resolve_tenant_context(body: TenantContextRequest, ctx: AccessContext):
    """Report the tenant and effective roles the caller acts under.

    ``roles`` in the body narrows the check to callers holding one of them.
    """
    tenant = ctx.tenant
    wanted = {code.lower() for code in body.roles}
    if wanted and not wanted.intersection(code.lower() for code in tenant.roles):
        raise PermissionDenied("insufficient role")
    return Envelope(
        status="ok",
        data={
            "tenantId": tenant.tenant_id,
            "roles": tenant.roles,
            "source": tenant.source,
            "bypass": tenant.bypass,
        },
    )


ROUTES: list[RouteSpec] = [
    RouteSpec("/auth/register", "POST", register, status_code=201, tags=("auth",)),
    RouteSpec("/auth/login", "POST", login, tags=("auth",)),
    RouteSpec("/auth/refresh", "POST", refresh_tokens, tags=("auth",)),
    RouteSpec("/auth/logout", "POST", logout, tags=("auth",)),
    RouteSpec("/me", "GET", me, tags=("auth",)),
    RouteSpec(
        "/tenants",
        "POST",
        create_tenant,
        permissions=("tenants.create",),
        status_code=201,
        tags=("tenants",),
    ),
    RouteSpec("/tenants", "GET", list_tenants, permissions=("tenants.read",), tags=("tenants",)),
    RouteSpec(
        "/tenants/{name}",
        "GET",
        get_tenant_by_name,
        permissions=("tenants.read",),
        tags=("tenants",),
    ),
    RouteSpec(
        "/users",
        "POST",
        create_tenant_user,
        tenant_admin=True,
        status_code=201,
        tags=("users",),
    ),
    RouteSpec("/users", "GET", list_tenant_users, tenant_admin=True, tags=("users",)),
    RouteSpec(
        "/users/platform",
        "POST",
        create_platform_user,
        permissions=("admin.manage",),
        status_code=201,
        tags=("users",),
    ),
    RouteSpec(
        "/users/{user_id}/roles",
        "POST",
        add_user_roles,
        permissions=("users.update",),
        tags=("users",),
    ),
    RouteSpec(
        "/users/{user_id}/status",
        "POST",
        set_user_status,
        permissions=("users.suspend",),
        tags=("users",),
    ),
    RouteSpec(
        "/roles",
        "POST",
        create_role,
        permissions=("roles.create",),
        status_code=201,
        tags=("roles",),
    ),
    RouteSpec("/roles", "GET", list_roles, permissions=("roles.read",), tags=("roles",)),
    RouteSpec(
        "/roles/{code}/permissions",
        "GET",
        get_role_permissions,
        permissions=("roles.read",),
        tags=("roles",),
    ),
    RouteSpec(
        "/roles/permission",
        "POST",
        create_permission,
        permissions=("permissions.create",),
        status_code=201,
        tags=("roles",),
    ),
    RouteSpec(
        "/roles/assign-permission",
        "POST",
        assign_permission,
        permissions=("roles.assign-permission",),
        tags=("roles",),
    ),
    RouteSpec(
        "/roles/assign-category",
        "POST",
        assign_category,
        permissions=("roles.assign-permission",),
        tags=("roles",),
    ),
    RouteSpec(
        "/roles/assign-role",
        "POST",
        assign_role,
        permissions=("users.update",),
        tags=("roles",),
    ),
    RouteSpec(
        "/permissions/available",
        "GET",
        available_permissions,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/permissions/by-category",
        "GET",
        permissions_by_category,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/permissions/by-resource",
        "GET",
        permissions_by_resource,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/permissions/stats/summary",
        "GET",
        permission_stats,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/permissions/assignable",
        "GET",
        assignable_permissions,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/permissions/validate",
        "POST",
        validate_permission,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    # Registered after the fixed permission paths so they take precedence
    RouteSpec(
        "/permissions/{code}",
        "GET",
        get_permission,
        permissions=("permissions.read",),
        tags=("permissions",),
    ),
    RouteSpec(
        "/tenant-context",
        "POST",
        resolve_tenant_context,
        tenant_scoped=True,
        tags=("tenants",),
    ),
]

register_routes(router, ROUTES)
