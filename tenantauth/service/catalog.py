"""Built-in permission catalog and predefined role bundles.

Permission codes have the form ``resource.action``. The catalog and the role
bundles are installed idempotently by :func:`seed_catalog`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

PLATFORM_ADMIN = "platform_admin"
TENANT_ADMIN = "tenant_admin"
ORG_ADMIN = "org_admin"

# Bypass codes; held only in User.platform_roles, never in a tenant membership
PLATFORM_ROLES = frozenset({PLATFORM_ADMIN, ORG_ADMIN})


def tenant_roles_only(roles: Iterable[str]) -> List[str]:
    return [code for code in roles if code.lower() not in PLATFORM_ROLES]


@dataclass(frozen=True)
class PermissionDef:
    code: str
    name: str
    description: str
    category: str

    @property
    def resource(self) -> str:
        return self.code.split(".", 1)[0]

    @property
    def action(self) -> str:
        return self.code.split(".", 1)[1]


def _defs(category: str, rows: List[tuple[str, str, str]]) -> List[PermissionDef]:
    return [PermissionDef(code, name, description, category) for code, name, description in rows]


PERMISSIONS: List[PermissionDef] = [
    *_defs(
        "User Management",
        [
            ("users.create", "Create User", "Create new users in the system"),
            ("users.read", "View Users", "View user list and user details"),
            ("users.update", "Update User", "Update user information and profile"),
            ("users.delete", "Delete User", "Permanently delete users from system"),
            ("users.suspend", "Suspend User", "Suspend or deactivate user accounts"),
            ("users.export", "Export Users", "Export user data to CSV or other formats"),
            ("users.bulk-upload", "Bulk Upload Users", "Create multiple users via bulk upload"),
            ("users.reset-password", "Reset User Password", "Reset or change user passwords"),
        ],
    ),
    *_defs(
        "Role Management",
        [
            ("roles.create", "Create Role", "Create new custom roles"),
            ("roles.read", "View Roles", "View list of available roles"),
            ("roles.update", "Update Role", "Update role details and metadata"),
            ("roles.delete", "Delete Role", "Delete custom roles from system"),
            (
                "roles.assign-permission",
                "Assign Permissions to Role",
                "Assign or remove permissions from roles",
            ),
        ],
    ),
    *_defs(
        "Permission Management",
        [
            ("permissions.read", "View Permissions", "View available permissions in system"),
            ("permissions.create", "Create Permission", "Create new custom permissions"),
            ("permissions.update", "Update Permission", "Update permission details"),
            ("permissions.delete", "Delete Permission", "Delete permissions from system"),
        ],
    ),
    *_defs(
        "Course Management",
        [
            ("courses.create", "Create Course", "Create new courses"),
            ("courses.read", "View Courses", "View course list and details"),
            ("courses.update", "Update Course", "Edit course content and settings"),
            ("courses.delete", "Delete Course", "Delete courses from system"),
            ("courses.publish", "Publish Course", "Publish courses for learners"),
            ("courses.assign", "Assign Course", "Assign courses to users or groups"),
            ("courses.export", "Export Course", "Export course content and data"),
        ],
    ),
    *_defs(
        "Content Management",
        [
            ("modules.create", "Create Module", "Create course modules"),
            ("modules.read", "View Modules", "View modules and structure"),
            ("modules.update", "Update Module", "Edit module content"),
            ("modules.delete", "Delete Module", "Delete modules"),
            ("lessons.create", "Create Lesson", "Create lessons within modules"),
            ("lessons.read", "View Lessons", "View lessons and content"),
            ("lessons.update", "Update Lesson", "Edit lesson content"),
            ("lessons.delete", "Delete Lesson", "Delete lessons"),
            ("content.upload", "Upload Content", "Upload media and files"),
            ("content.delete", "Delete Content", "Delete uploaded content"),
            ("content.manage", "Manage Content", "Full content management"),
        ],
    ),
    *_defs(
        "Assessment Management",
        [
            ("quizzes.create", "Create Quiz", "Create quizzes and assessments"),
            ("quizzes.read", "View Quizzes", "View quizzes and questions"),
            ("quizzes.update", "Update Quiz", "Edit quiz questions and settings"),
            ("quizzes.delete", "Delete Quiz", "Delete quizzes"),
            ("quizzes.generate-ai", "Generate Quiz with AI", "Use AI to generate quiz questions"),
            ("quizzes.publish", "Publish Quiz", "Publish quizzes for learners"),
        ],
    ),
    *_defs(
        "Live Class Management",
        [
            ("live-class.create", "Create Live Class", "Schedule live classes"),
            ("live-class.read", "View Live Classes", "View live class schedule"),
            ("live-class.update", "Update Live Class", "Edit live class details"),
            ("live-class.delete", "Delete Live Class", "Cancel live classes"),
            ("live-class.start", "Start Live Class", "Start live class session"),
            ("live-class.record", "Record Live Class", "Record live class sessions"),
        ],
    ),
    *_defs(
        "Tenant Management",
        [
            ("tenants.create", "Create Tenant", "Create new organizations/tenants"),
            ("tenants.read", "View Tenants", "View tenant information"),
            ("tenants.update", "Update Tenant", "Update tenant settings"),
            ("tenants.delete", "Delete Tenant", "Delete tenants from system"),
            ("tenants.create-admin", "Create Tenant Admin", "Appoint tenant administrators"),
            ("tenants.manage-settings", "Manage Tenant Settings", "Configure tenant settings"),
        ],
    ),
    *_defs(
        "License Management",
        [
            ("licenses.create", "Create License", "Create application licenses"),
            ("licenses.read", "View Licenses", "View license information"),
            ("licenses.update", "Update License", "Edit license details"),
            ("licenses.delete", "Delete License", "Delete licenses"),
            ("licenses.assign", "Assign License", "Assign licenses to users"),
        ],
    ),
    *_defs(
        "Reporting",
        [
            ("reports.read", "View Reports", "View system and analytics reports"),
            ("reports.create", "Create Report", "Generate custom reports"),
            ("reports.export", "Export Reports", "Export reports to files"),
            ("progress.read", "View Progress", "View learner progress and analytics"),
            ("attendance.read", "View Attendance", "View attendance records"),
            ("analytics.read", "View Analytics", "View advanced analytics and dashboards"),
        ],
    ),
    *_defs(
        "Administration",
        [
            ("admin.manage", "Manage Administration", "Access administrative features"),
            ("admin.view-audit-logs", "View Audit Logs", "View system audit and activity logs"),
            (
                "admin.configure-settings",
                "Configure System Settings",
                "Modify system settings and configurations",
            ),
            ("admin.backup-restore", "Backup & Restore", "Perform system backup and restore"),
            ("admin.view-logs", "View System Logs", "View system and application logs"),
            (
                "admin.manage-notifications",
                "Manage Notifications",
                "Configure notifications and emails",
            ),
            ("admin.batch-operations", "Execute Batch Operations", "Run batch jobs and operations"),
        ],
    ),
]

PERMISSION_CATEGORIES: Dict[str, List[PermissionDef]] = {}
for _perm in PERMISSIONS:
    PERMISSION_CATEGORIES.setdefault(_perm.category, []).append(_perm)


def _codes(prefix: str) -> List[str]:
    return [p.code for p in PERMISSIONS if p.resource == prefix]


PREDEFINED_ROLE_PERMISSIONS: Dict[str, List[str]] = {
    PLATFORM_ADMIN: [p.code for p in PERMISSIONS],
    TENANT_ADMIN: [
        *_codes("users"),
        *_codes("courses"),
        "modules.create",
        "modules.read",
        "modules.update",
        "modules.delete",
        "lessons.create",
        "lessons.read",
        "lessons.update",
        "lessons.delete",
        "content.upload",
        "content.delete",
        "content.manage",
        "quizzes.create",
        "quizzes.read",
        "quizzes.update",
        "quizzes.delete",
        "quizzes.publish",
        *_codes("live-class"),
        "roles.read",
        "roles.create",
        "roles.update",
        "roles.assign-permission",
        "permissions.read",
        "reports.read",
        "reports.create",
        "reports.export",
        "progress.read",
        "attendance.read",
        "analytics.read",
        "admin.manage",
        "admin.view-audit-logs",
        "admin.manage-notifications",
    ],
    "trainer": [
        "courses.read",
        "courses.update",
        "modules.read",
        "modules.update",
        "lessons.read",
        "lessons.update",
        "content.upload",
        "content.manage",
        "quizzes.read",
        "quizzes.create",
        "quizzes.update",
        "quizzes.publish",
        "live-class.read",
        "live-class.create",
        "live-class.start",
        "live-class.record",
        "progress.read",
        "attendance.read",
        "users.read",
    ],
    "instructor": [
        "courses.read",
        "modules.read",
        "lessons.read",
        "content.upload",
        "quizzes.read",
        "live-class.read",
        "live-class.create",
        "live-class.start",
        "progress.read",
    ],
    "learner": [
        "courses.read",
        "modules.read",
        "lessons.read",
        "quizzes.read",
        "live-class.read",
        "progress.read",
    ],
}

PREDEFINED_ROLES: Dict[str, tuple[str, str]] = {
    PLATFORM_ADMIN: ("Platform Administrator", "Full access across every tenant"),
    TENANT_ADMIN: ("Tenant Administrator", "Manages users, content and roles inside one tenant"),
    "trainer": ("Trainer", "Builds and delivers course content"),
    "instructor": ("Instructor", "Teaches courses and runs live classes"),
    "learner": ("Learner", "Consumes published courses"),
}

# Resources a tenant admin may grant to roles
TENANT_ADMIN_ASSIGNABLE_RESOURCES = frozenset(
    {
        "users",
        "courses",
        "modules",
        "lessons",
        "quizzes",
        "live-class",
        "content",
        "roles",
        "permissions",
    }
)
# Reporting resources a tenant admin additionally sees as assignable
TENANT_ADMIN_REPORTING_RESOURCES = frozenset({"reports", "progress", "attendance"})


def seed_catalog(store) -> Dict[str, int]:
    """Install built-in permissions, roles and grants; safe to run repeatedly.

    Runs against the store directly (startup and CLI paths) and relies on the
    store's unique constraints to skip rows that already exist.
    """
    created = {"permissions": 0, "roles": 0, "grants": 0}

    permission_ids: Dict[str, str] = {}
    for definition in PERMISSIONS:
        existing = store.get_permission_by_code(definition.code)
        if existing is None:
            try:
                existing = store.create_permission(
                    definition.code,
                    definition.name,
                    definition.resource,
                    definition.action,
                    definition.category,
                    description=definition.description,
                    is_system_defined=True,
                )
                created["permissions"] += 1
            except ConstraintViolation:
                # Lost a race with another seeder
                existing = store.get_permission_by_code(definition.code)
        if existing is not None:
            permission_ids[definition.code] = existing.id

    for role_code, codes in PREDEFINED_ROLE_PERMISSIONS.items():
        role = store.get_role_by_code(role_code)
        if role is None:
            name, description = PREDEFINED_ROLES[role_code]
            try:
                role = store.create_role(
                    role_code, name, description=description, category="system", is_system=True
                )
                created["roles"] += 1
            except ConstraintViolation:
                role = store.get_role_by_code(role_code)
        if role is None:
            continue
        for code in codes:
            permission_id = permission_ids.get(code)
            if not permission_id or store.get_role_permission(role.id, permission_id):
                continue
            try:
                store.create_role_permission(role.id, permission_id)
                created["grants"] += 1
            except ConstraintViolation:
                continue

    logger.info("rbac_catalog_seeded", **created)
    return created
