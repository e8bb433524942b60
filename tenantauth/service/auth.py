from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.catalog import PLATFORM_ADMIN, PLATFORM_ROLES, tenant_roles_only
from tenantauth.service.errors import (
    ConflictError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.passwords import SecretHasher
from tenantauth.service.registry import RoleRegistry, membership_roles
from tenantauth.service.retry import StoreRetry
from tenantauth.service.sessions import RefreshSessionStore
from tenantauth.service.tokens import Principal, TokenCodec, merge_roles
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import USER_STATUS_ACTIVE, USER_STATUS_SUSPENDED, User

logger = get_logger(__name__)

_USER_STATUSES = frozenset({USER_STATUS_ACTIVE, USER_STATUS_SUSPENDED})


def user_summary(user: User, tenant_id: Optional[str], roles: List[str]) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "displayName": user.display_name,
        "status": user.status,
        "tenantId": tenant_id,
        "roles": roles,
    }


class AuthService:
    """Registration, login, refresh rotation and logout.

    Access tokens carry the user's membership roles merged with their
    platform-level roles. Refresh tokens are rotated on every use.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        codec: TokenCodec,
        hasher: SecretHasher,
        sessions: RefreshSessionStore,
        registry: RoleRegistry,
        retry: Optional[StoreRetry] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.hasher = hasher
        self.sessions = sessions
        self.registry = registry
        self.retry = retry or StoreRetry(
            settings.store_retry_attempts, settings.store_retry_backoff_ms
        )
        # Verified against when the email is unknown so both paths cost one hash
        self._dummy_hash = hasher.hash("tenantauth-unknown-user")

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        return await self.retry.call(operation, getattr(self.store, operation), *args, **kwargs)

    async def get_user_tenant_and_roles(self, user_id: str) -> Tuple[Optional[str], List[str]]:
        membership = await self._call("get_membership_for_user", user_id)
        if not membership:
            return None, []
        return membership.tenant_id, tenant_roles_only(membership.roles)

    async def _principal_for(self, user: User) -> Principal:
        tenant_id, tenant_roles = await self.get_user_tenant_and_roles(user.id)
        return Principal(
            user_id=user.id,
            email=user.email,
            tenant_id=tenant_id,
            roles=merge_roles(tenant_roles, user.platform_roles),
        )

    def sign_access_token(self, principal: Principal) -> str:
        return self.codec.sign_access_token(principal)

    async def _create_user(
        self,
        email: str,
        password: str,
        display_name: Optional[str],
        platform_roles: Iterable[str],
    ) -> User:
        email = (email or "").strip()
        if "@" not in email:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if await self._call("get_user_by_email", email):
            raise ConflictError("Email already exists", detail={"field": "email"})
        try:
            return await self._call(
                "create_user",
                email,
                self.hasher.hash(password),
                display_name=display_name,
                platform_roles=list(platform_roles),
            )
        except ConstraintViolation:
            raise ConflictError("Email already exists", detail={"field": "email"})

    async def register(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        platform_roles = (
            [PLATFORM_ADMIN] if self.settings.is_platform_admin_email(email.strip()) else []
        )
        user = await self._create_user(email, password, display_name, platform_roles)
        principal = await self._principal_for(user)
        refresh_token = await self.sessions.create_refresh_token(user.id, ip_addr, user_agent)
        logger.info(
            "user_registered",
            user_id=user.id,
            platform_admin=PLATFORM_ADMIN in platform_roles,
        )
        return {
            "user": user_summary(user, principal.tenant_id, principal.roles),
            "access_token": self.sign_access_token(principal),
            "refresh_token": refresh_token,
        }

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        user = await self._call("get_user_by_email", (email or "").strip())
        if user is None:
            self.hasher.verify(self._dummy_hash, password or "")
            logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentials()
        if not self.hasher.verify(user.password_hash, password or ""):
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("login_failed", user_id=user.id, reason="suspended")
            raise InvalidCredentials()

        principal = await self._principal_for(user)
        refresh_token = await self.sessions.create_refresh_token(user.id, ip_addr, user_agent)
        logger.info("login_succeeded", user_id=user.id, tenant_id=principal.tenant_id)
        return {
            "access_token": self.sign_access_token(principal),
            "refresh_token": refresh_token,
            "user": {
                "id": user.id,
                "email": user.email,
                "tenantId": principal.tenant_id,
                "roles": principal.roles,
            },
        }

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        if not refresh_token:
            raise InvalidRefreshToken()
        try:
            payload = self.codec.verify_refresh_token(refresh_token)
        except InvalidTokenError:
            raise InvalidRefreshToken()
        user = await self._call("get_user", str(payload["sub"]))
        if user is None or not user.is_active:
            raise InvalidRefreshToken()

        new_refresh = await self.sessions.rotate_refresh_token(
            refresh_token, ip_addr=ip_addr, user_agent=user_agent
        )
        # Re-read membership so role changes take effect on the next access token
        principal = await self._principal_for(user)
        return {
            "access_token": self.sign_access_token(principal),
            "refresh_token": new_refresh,
            "user": {
                "id": user.id,
                "email": user.email,
                "tenantId": principal.tenant_id,
                "roles": principal.roles,
            },
        }

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the presented refresh token. Never fails."""
        if not refresh_token:
            return False
        try:
            return await self.sessions.revoke_refresh_token(refresh_token)
        except InvalidRefreshToken:
            return False

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        token = self.extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("authentication required")
        principal = self.codec.verify_access_token(token)
        user = await self._call("get_user", principal.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError()
        return principal

    async def me(self, principal: Principal) -> dict[str, Any]:
        user = await self._call("get_user", principal.user_id)
        if user is None:
            raise NotFoundError("User not found")
        tenant_id, tenant_roles = await self.get_user_tenant_and_roles(user.id)
        return user_summary(user, tenant_id, merge_roles(tenant_roles, user.platform_roles))

    async def create_user_in_tenant(
        self,
        email: str,
        password: str,
        display_name: Optional[str],
        tenant_name: str,
        roles: Optional[Iterable[str]] = None,
    ) -> dict[str, Any]:
        """Provision a user and their single tenant membership."""
        tenant = await self._call("get_tenant_by_name", tenant_name)
        if tenant is None:
            raise NotFoundError("Tenant not found", detail={"tenantName": tenant_name})
        role_list = membership_roles(roles or self.settings.default_member_roles)
        user = await self._create_user(email, password, display_name, [])
        membership = await self.registry.attach_user_to_tenant(user.id, tenant.id, role_list)
        logger.info(
            "tenant_user_created",
            user_id=user.id,
            tenant_id=tenant.id,
            roles=membership.roles,
        )
        return user_summary(user, membership.tenant_id, merge_roles(membership.roles))

    async def create_platform_user(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        platform_roles: Optional[Iterable[str]] = None,
    ) -> dict[str, Any]:
        """Provision a user with platform-level roles and no tenant membership."""
        roles = merge_roles(code.strip().lower() for code in platform_roles or [])
        unknown = [code for code in roles if code not in PLATFORM_ROLES]
        if unknown:
            raise ValidationError(
                f"unknown platform roles: {', '.join(unknown)}",
                detail={"field": "platformRoles", "allowed": sorted(PLATFORM_ROLES)},
            )
        email = (email or "").strip()
        if not display_name and "@" in email:
            display_name = email.split("@", 1)[0]
        user = await self._create_user(email, password, display_name, roles)
        logger.info("platform_user_created", user_id=user.id, platform_roles=roles)
        summary = user_summary(user, None, list(user.platform_roles))
        summary["platformRoles"] = list(user.platform_roles)
        return summary

    async def set_user_status(self, user_id: str, status: str) -> dict[str, Any]:
        if status not in _USER_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(sorted(_USER_STATUSES))}",
                detail={"field": "status"},
            )
        user = await self._call("update_user_status", user_id, status)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info("user_status_changed", user_id=user_id, status=status)
        tenant_id, tenant_roles = await self.get_user_tenant_and_roles(user.id)
        return user_summary(user, tenant_id, merge_roles(tenant_roles, user.platform_roles))
