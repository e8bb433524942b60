from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum roles accepted in one assignment request
MAX_ROLES_PER_REQUEST = 32


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "service_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Check email shape. Case is preserved; addresses are stored as given."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.rpartition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_CODE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_PERMISSION_CODE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*\.[a-z0-9][a-z0-9_.-]*$")


def _validate_role_codes(values: List[str]) -> List[str]:
    cleaned = [value.strip() for value in values if value and value.strip()]
    if len(cleaned) > MAX_ROLES_PER_REQUEST:
        raise ValueError(f"at most {MAX_ROLES_PER_REQUEST} roles per request")
    for value in cleaned:
        if len(value) > 64 or not _CODE_PATTERN.match(value):
            raise ValueError(f"invalid role code '{value}'")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128, alias="displayName")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenRefreshRequest(BaseModel):
    # Optional: browsers send the refresh token as a cookie instead
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    user: dict[str, Any]


class CreateTenantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not value:
            raise ValueError("tenant name must not be blank")
        return value


class CreateTenantUserRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128, alias="displayName")
    tenant_name: str = Field(..., min_length=1, max_length=128, alias="tenantName")
    roles: Optional[List[str]] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email")
    @classmethod
    def _validate_user_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return _validate_role_codes(value) or None


class CreatePlatformUserRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128, alias="displayName")
    platform_roles: List[str] = Field(default_factory=list, alias="platformRoles")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email")
    @classmethod
    def _validate_user_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("platform_roles")
    @classmethod
    def _validate_platform_roles(cls, value: List[str]) -> List[str]:
        return _validate_role_codes(value)


class AddRolesRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: List[str]) -> List[str]:
        cleaned = _validate_role_codes(value)
        if not cleaned:
            raise ValueError("roles must not be empty")
        return cleaned


class UserStatusRequest(BaseModel):
    status: str = Field(..., pattern="^(active|suspended)$")


class CreateRoleRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    category: Optional[str] = Field(default=None, max_length=64)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _CODE_PATTERN.match(value):
            raise ValueError(
                "role code must contain only lowercase letters, digits, underscores, and hyphens"
            )
        return value


class CreatePermissionRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    category: str = Field(default="Custom", max_length=64)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _PERMISSION_CODE_PATTERN.match(value):
            raise ValueError("permission code must have the form resource.action")
        return value


class AssignPermissionRequest(BaseModel):
    role_code: str = Field(..., min_length=1, max_length=64, alias="roleCode")
    # Permission code or id
    permission_id: str = Field(..., min_length=1, max_length=128, alias="permissionId")

    model_config = ConfigDict(populate_by_name=True)


class AssignCategoryRequest(BaseModel):
    role_code: str = Field(..., min_length=1, max_length=64, alias="roleCode")
    category: str = Field(..., min_length=1, max_length=64)

    model_config = ConfigDict(populate_by_name=True)


class AssignRoleRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128, alias="userId")
    tenant_id: str = Field(..., min_length=1, max_length=128, alias="tenantId")
    roles: List[str] = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: List[str]) -> List[str]:
        cleaned = _validate_role_codes(value)
        if not cleaned:
            raise ValueError("roles must not be empty")
        return cleaned


class ValidatePermissionRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=128)


class TenantContextRequest(BaseModel):
    """Hints used to resolve the tenant a request acts on."""

    tenant_id: Optional[str] = Field(default=None, max_length=128, alias="tenantId")
    tenant_name: Optional[str] = Field(default=None, max_length=128, alias="tenantName")
    course_id: Optional[str] = Field(default=None, max_length=128, alias="courseId")
    live_class_id: Optional[str] = Field(default=None, max_length=128, alias="liveClassId")
    lesson_id: Optional[str] = Field(default=None, max_length=128, alias="lessonId")
    module_id: Optional[str] = Field(default=None, max_length=128, alias="moduleId")
    roles: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: List[str]) -> List[str]:
        return _validate_role_codes(value)
