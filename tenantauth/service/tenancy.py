from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from tenantauth.logging import get_logger
from tenantauth.service.retry import StoreRetry

logger = get_logger(__name__)


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


@dataclass
class TenantHints:
    """Identifiers a request may carry that point at a tenant."""

    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    course_id: Optional[str] = None
    live_class_id: Optional[str] = None
    lesson_id: Optional[str] = None
    module_id: Optional[str] = None

    @classmethod
    def from_request_parts(
        cls,
        *,
        headers: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
        path_params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> "TenantHints":
        headers = headers or {}
        query = query or {}
        params = path_params or {}
        body = body if isinstance(body, Mapping) else {}
        return cls(
            tenant_id=_first(
                headers.get("x-tenant-id"), body.get("tenantId"), query.get("tenantId")
            ),
            tenant_name=_first(body.get("tenantName")),
            course_id=_first(body.get("courseId"), params.get("id"), params.get("courseId")),
            live_class_id=_first(body.get("liveClassId")),
            lesson_id=_first(params.get("lessonId"), body.get("lessonId")),
            module_id=_first(params.get("moduleId"), body.get("moduleId")),
        )

    def is_empty(self) -> bool:
        return not any(
            (
                self.tenant_id,
                self.tenant_name,
                self.course_id,
                self.live_class_id,
                self.lesson_id,
                self.module_id,
            )
        )


@dataclass
class ResolvedTenant:
    tenant_id: str
    source: str


class TenantContextResolver:
    """Resolve the owning tenant for a request.

    Sources are tried in a fixed order and the first hit wins: explicit tenant
    id, tenant name, course, live class, lesson (via module and course), then
    module (via course). A lookup that finds nothing falls through to the next
    source.
    """

    def __init__(self, store, *, retry: Optional[StoreRetry] = None) -> None:
        self.store = store
        self.retry = retry or StoreRetry()

    async def _lookup_by_name(self, name: str) -> Optional[str]:
        tenant = await self.retry.call("get_tenant_by_name", self.store.get_tenant_by_name, name)
        return tenant.id if tenant else None

    async def resolve(self, hints: TenantHints) -> Optional[ResolvedTenant]:
        if hints.tenant_id:
            return ResolvedTenant(hints.tenant_id, "tenant_id")

        lookups = (
            ("tenant_name", hints.tenant_name, self._lookup_by_name),
            ("course_id", hints.course_id, self.store.tenant_id_for_course),
            ("live_class_id", hints.live_class_id, self.store.tenant_id_for_live_class),
            ("lesson_id", hints.lesson_id, self.store.tenant_id_for_lesson),
            ("module_id", hints.module_id, self.store.tenant_id_for_module),
        )
        for source, value, lookup in lookups:
            if not value:
                continue
            if source == "tenant_name":
                tenant_id = await lookup(value)
            else:
                tenant_id = await self.retry.call(f"tenant_for_{source}", lookup, value)
            if tenant_id:
                return ResolvedTenant(str(tenant_id), source)
            logger.info("tenant_hint_unresolved", source=source)
        return None

    async def resolve_tenant_id(self, hints: TenantHints) -> Optional[str]:
        resolved = await self.resolve(hints)
        return resolved.tenant_id if resolved else None
