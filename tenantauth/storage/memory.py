from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    USER_STATUS_ACTIVE,
    Course,
    CourseModule,
    Lesson,
    LiveClass,
    Permission,
    RefreshToken,
    Role,
    RolePermission,
    Tenant,
    User,
    UserTenant,
    new_id,
)


class MemoryStore:
    """In-memory backing store used for tests and local development.

    Enforces the same uniqueness rules as the SQL schema so services behave the
    same way against either backend.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.memberships: Dict[str, UserTenant] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, RolePermission] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.courses: Dict[str, Course] = {}
        self.course_modules: Dict[str, CourseModule] = {}
        self.lessons: Dict[str, Lesson] = {}
        self.live_classes: Dict[str, LiveClass] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        platform_roles: Optional[Iterable[str]] = None,
        status: str = USER_STATUS_ACTIVE,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                status=status,
                platform_roles=list(platform_roles or []),
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            return user

    def update_platform_roles(self, user_id: str, platform_roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.platform_roles = list(platform_roles)
            return user

    # tenants
    def create_tenant(self, name: str) -> Tenant:
        with self._data_lock:
            if any(t.name == name for t in self.tenants.values()):
                raise ConstraintViolation("tenant name already exists", {"field": "name"})
            tenant = Tenant(id=new_id(), name=name)
            self.tenants[tenant.id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_name(self, name: str) -> Optional[Tenant]:
        with self._data_lock:
            return next((t for t in self.tenants.values() if t.name == name), None)

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            return sorted(self.tenants.values(), key=lambda t: t.created_at)

    # memberships
    def create_membership(
        self, user_id: str, tenant_id: str, roles: Iterable[str]
    ) -> UserTenant:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            # one membership per user, mirrors the unique index on user_tenant.user_id
            if any(m.user_id == user_id for m in self.memberships.values()):
                raise ConstraintViolation(
                    "user already attached to a tenant", {"field": "user_id"}
                )
            membership = UserTenant(
                id=new_id(), user_id=user_id, tenant_id=tenant_id, roles=list(roles)
            )
            self.memberships[membership.id] = membership
            return membership

    def get_membership(self, user_id: str, tenant_id: str) -> Optional[UserTenant]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.memberships.values()
                    if m.user_id == user_id and m.tenant_id == tenant_id
                ),
                None,
            )

    def get_membership_for_user(self, user_id: str) -> Optional[UserTenant]:
        with self._data_lock:
            candidates = [m for m in self.memberships.values() if m.user_id == user_id]
            if not candidates:
                return None
            return min(candidates, key=lambda m: m.created_at)

    def set_membership_roles(
        self, membership_id: str, roles: Iterable[str]
    ) -> Optional[UserTenant]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if not membership:
                return None
            membership.roles = list(roles)
            return membership

    def list_memberships_for_tenant(self, tenant_id: str) -> List[UserTenant]:
        with self._data_lock:
            return sorted(
                (m for m in self.memberships.values() if m.tenant_id == tenant_id),
                key=lambda m: m.created_at,
            )

    # roles and permissions
    def create_role(
        self,
        code: str,
        name: str,
        *,
        description: Optional[str] = None,
        category: Optional[str] = None,
        is_system: bool = False,
    ) -> Role:
        with self._data_lock:
            if any(r.code == code for r in self.roles.values()):
                raise ConstraintViolation("role code already exists", {"field": "code"})
            role = Role(
                id=new_id(),
                code=code,
                name=name,
                description=description,
                category=category,
                is_system=is_system,
            )
            self.roles[role.id] = role
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.code == code), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.code)

    def create_permission(
        self,
        code: str,
        name: str,
        resource: str,
        action: str,
        category: str,
        *,
        description: Optional[str] = None,
        is_system_defined: bool = False,
    ) -> Permission:
        with self._data_lock:
            if any(p.code == code for p in self.permissions.values()):
                raise ConstraintViolation(
                    "permission code already exists", {"field": "code"}
                )
            permission = Permission(
                id=new_id(),
                code=code,
                name=name,
                resource=resource,
                action=action,
                category=category,
                description=description,
                is_system_defined=is_system_defined,
            )
            self.permissions[permission.id] = permission
            return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(permission_id)

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._data_lock:
            return next((p for p in self.permissions.values() if p.code == code), None)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                self.permissions.values(), key=lambda p: (p.category, p.resource, p.action)
            )

    def create_role_permission(self, role_id: str, permission_id: str) -> RolePermission:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            if self._find_role_permission(role_id, permission_id):
                raise ConstraintViolation(
                    "role permission already exists",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            grant = RolePermission(
                id=new_id(), role_id=role_id, permission_id=permission_id
            )
            self.role_permissions[grant.id] = grant
            return grant

    def _find_role_permission(
        self, role_id: str, permission_id: str
    ) -> Optional[RolePermission]:
        return next(
            (
                rp
                for rp in self.role_permissions.values()
                if rp.role_id == role_id and rp.permission_id == permission_id
            ),
            None,
        )

    def get_role_permission(
        self, role_id: str, permission_id: str
    ) -> Optional[RolePermission]:
        with self._data_lock:
            return self._find_role_permission(role_id, permission_id)

    def list_permissions_for_role(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            granted = [
                self.permissions[rp.permission_id]
                for rp in self.role_permissions.values()
                if rp.role_id == role_id and rp.permission_id in self.permissions
            ]
            return sorted(granted, key=lambda p: p.code)

    def count_role_permissions(self, permission_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for rp in self.role_permissions.values() if rp.permission_id == permission_id
            )

    def role_codes_grant_permission(
        self, role_codes: Iterable[str], permission_id: str
    ) -> bool:
        wanted = set(role_codes)
        with self._data_lock:
            for rp in self.role_permissions.values():
                if rp.permission_id != permission_id:
                    continue
                role = self.roles.get(rp.role_id)
                if role and role.code in wanted:
                    return True
            return False

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            self.refresh_tokens[record.id] = record
            return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def list_live_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        now = now or datetime.utcnow()
        with self._data_lock:
            return sorted(
                (
                    t
                    for t in self.refresh_tokens.values()
                    if t.user_id == user_id and t.is_live(now)
                ),
                key=lambda t: t.created_at,
                reverse=True,
            )

    def revoke_refresh_token(self, token_id: str) -> bool:
        """Flip ``revoked`` if still false. Returns whether this call did the flip."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked:
                return False
            record.revoked = True
            return True

    def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshToken
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if not old or old.revoked:
                return None
            if new_record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": new_record.user_id}
                )
            old.revoked = True
            old.replaced_by_id = new_record.id
            self.refresh_tokens[new_record.id] = new_record
            return new_record

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        with self._data_lock:
            stale = [tid for tid, t in self.refresh_tokens.items() if t.expires_at <= now]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
            return len(stale)

    # ownership records maintained by the course and live-class modules
    def save_course(self, course: Course) -> Course:
        with self._data_lock:
            self.courses[course.id] = course
            return course

    def save_course_module(self, module: CourseModule) -> CourseModule:
        with self._data_lock:
            self.course_modules[module.id] = module
            return module

    def save_lesson(self, lesson: Lesson) -> Lesson:
        with self._data_lock:
            self.lessons[lesson.id] = lesson
            return lesson

    def save_live_class(self, live_class: LiveClass) -> LiveClass:
        with self._data_lock:
            self.live_classes[live_class.id] = live_class
            return live_class

    def tenant_id_for_course(self, course_id: str) -> Optional[str]:
        with self._data_lock:
            course = self.courses.get(course_id)
            return course.tenant_id if course else None

    def tenant_id_for_live_class(self, live_class_id: str) -> Optional[str]:
        with self._data_lock:
            live_class = self.live_classes.get(live_class_id)
            return live_class.tenant_id if live_class else None

    def tenant_id_for_module(self, module_id: str) -> Optional[str]:
        with self._data_lock:
            module = self.course_modules.get(module_id)
            if not module:
                return None
            return self.tenant_id_for_course(module.course_id)

    def tenant_id_for_lesson(self, lesson_id: str) -> Optional[str]:
        with self._data_lock:
            lesson = self.lessons.get(lesson_id)
            if not lesson:
                return None
            return self.tenant_id_for_module(lesson.module_id)
