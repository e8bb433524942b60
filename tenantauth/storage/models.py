from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

USER_STATUS_ACTIVE = "active"
USER_STATUS_SUSPENDED = "suspended"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    display_name: Optional[str] = None
    status: str = USER_STATUS_ACTIVE
    platform_roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == USER_STATUS_ACTIVE


@dataclass
class Tenant:
    id: str
    name: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UserTenant:
    """Membership of a user in a tenant with the roles scoped to that tenant."""

    id: str
    user_id: str
    tenant_id: str
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Role:
    id: str
    code: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Permission:
    id: str
    code: str
    name: str
    resource: str
    action: str
    category: str
    description: Optional[str] = None
    is_system_defined: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RolePermission:
    id: str
    role_id: str
    permission_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RefreshToken:
    """Hashed refresh-token record. The raw token is never persisted."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    replaced_by_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_days: int,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        now = datetime.utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=now,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return not self.revoked and self.expires_at > now


# Records below are owned by the course and live-class modules; this service only
# reads them to find which tenant an entity belongs to.


@dataclass
class Course:
    id: str
    tenant_id: str
    title: Optional[str] = None


@dataclass
class CourseModule:
    id: str
    course_id: str
    title: Optional[str] = None


@dataclass
class Lesson:
    id: str
    module_id: str
    title: Optional[str] = None


@dataclass
class LiveClass:
    id: str
    tenant_id: str
    title: Optional[str] = None
