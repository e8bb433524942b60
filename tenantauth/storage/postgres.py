from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, TransientStoreError
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        platform_roles TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_tenant (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        roles TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        UNIQUE (user_id, tenant_id)
    )
    """,
    # A user may hold at most one membership
    "CREATE UNIQUE INDEX IF NOT EXISTS user_tenant_one_per_user ON user_tenant (user_id)",
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        category TEXT,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        category TEXT NOT NULL,
        is_system_defined BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        id TEXT PRIMARY KEY,
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        UNIQUE (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        replaced_by_id TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_live ON refresh_token (user_id) WHERE revoked = FALSE",
    """
    CREATE TABLE IF NOT EXISTS course (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        title TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS course_module (
        id TEXT PRIMARY KEY,
        course_id TEXT NOT NULL,
        title TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lesson (
        id TEXT PRIMARY KEY,
        module_id TEXT NOT NULL,
        title TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS live_class (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        title TEXT
    )
    """,
)

_REQUIRED_TABLES = (
    "app_user",
    "tenant",
    "user_tenant",
    "role",
    "permission",
    "role_permission",
    "refresh_token",
    "course",
    "course_module",
    "lesson",
    "live_class",
)


class PostgresStore:
    """Postgres-backed store for identities, memberships, RBAC and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.SerializationFailure, errors.DeadlockDetected) as exc:
            self.logger.warning("postgres_transaction_conflict", error=str(exc))
            raise TransientStoreError("transaction conflict") from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise TransientStoreError("database unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mappers
    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            status=row.get("status") or USER_STATUS_ACTIVE,
            platform_roles=list(row.get("platform_roles") or []),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _tenant_from_row(row: dict[str, Any]) -> Tenant:
        return Tenant(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    @staticmethod
    def _membership_from_row(row: dict[str, Any]) -> UserTenant:
        return UserTenant(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            roles=list(row.get("roles") or []),
            created_at=row["created_at"],
        )

    @staticmethod
    def _role_from_row(row: dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            description=row.get("description"),
            category=row.get("category"),
            is_system=bool(row.get("is_system")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _permission_from_row(row: dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            category=row["category"],
            description=row.get("description"),
            is_system_defined=bool(row.get("is_system_defined")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_from_row(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            replaced_by_id=row.get("replaced_by_id"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

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
        user = User(
            id=new_id(),
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            status=status,
            platform_roles=list(platform_roles or []),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, display_name, status, platform_roles, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.display_name,
                        user.status,
                        user.platform_roles,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_platform_roles(self, user_id: str, platform_roles: List[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET platform_roles = %s WHERE id = %s RETURNING *",
                (list(platform_roles), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # tenants
    def create_tenant(self, name: str) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenant (id, name, created_at) VALUES (%s, %s, %s) RETURNING *",
                    (new_id(), name, datetime.utcnow()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant name already exists", {"field": "name"})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_name(self, name: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE name = %s", (name,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tenant ORDER BY created_at").fetchall()
        return [self._tenant_from_row(row) for row in rows]

    # memberships
    def create_membership(
        self, user_id: str, tenant_id: str, roles: Iterable[str]
    ) -> UserTenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_tenant (id, user_id, tenant_id, roles, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, tenant_id, list(roles), datetime.utcnow()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already attached to a tenant", {"field": "user_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or tenant does not exist",
                {"user_id": user_id, "tenant_id": tenant_id},
            )
        return self._membership_from_row(row)

    def get_membership(self, user_id: str, tenant_id: str) -> Optional[UserTenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tenant WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def get_membership_for_user(self, user_id: str) -> Optional[UserTenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tenant WHERE user_id = %s ORDER BY created_at LIMIT 1",
                (user_id,),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def set_membership_roles(
        self, membership_id: str, roles: Iterable[str]
    ) -> Optional[UserTenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_tenant SET roles = %s WHERE id = %s RETURNING *",
                (list(roles), membership_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_memberships_for_tenant(self, tenant_id: str) -> List[UserTenant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_tenant WHERE tenant_id = %s ORDER BY created_at",
                (tenant_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, code, name, description, category, is_system, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), code, name, description, category, is_system, datetime.utcnow()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role code already exists", {"field": "code"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE code = %s", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY code").fetchall()
        return [self._role_from_row(row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (id, code, name, description, resource, action, category, is_system_defined, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        code,
                        name,
                        description,
                        resource,
                        action,
                        category,
                        is_system_defined,
                        datetime.utcnow(),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission code already exists", {"field": "code"})
        return self._permission_from_row(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE code = %s", (code,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY category, resource, action"
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def create_role_permission(self, role_id: str, permission_id: str) -> RolePermission:
        grant = RolePermission(id=new_id(), role_id=role_id, permission_id=permission_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (id, role_id, permission_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (grant.id, role_id, permission_id, grant.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "role permission already exists",
                {"role_id": role_id, "permission_id": permission_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )
        return grant

    def get_role_permission(
        self, role_id: str, permission_id: str
    ) -> Optional[RolePermission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            ).fetchone()
        if not row:
            return None
        return RolePermission(
            id=str(row["id"]),
            role_id=str(row["role_id"]),
            permission_id=str(row["permission_id"]),
            created_at=row["created_at"],
        )

    def list_permissions_for_role(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                ORDER BY p.code
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def count_role_permissions(self, permission_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM role_permission WHERE permission_id = %s",
                (permission_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def role_codes_grant_permission(
        self, role_codes: Iterable[str], permission_id: str
    ) -> bool:
        codes = list(role_codes)
        if not codes:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM role_permission rp
                    JOIN role r ON r.id = rp.role_id
                    WHERE rp.permission_id = %s AND r.code = ANY(%s)
                ) AS granted
                """,
                (permission_id, codes),
            ).fetchone()
        return bool(row and row["granted"])

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    @staticmethod
    def _insert_refresh_token(conn: psycopg.Connection, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, revoked, replaced_by_id, ip_addr, user_agent, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.expires_at,
                record.revoked,
                record.replaced_by_id,
                record.ip_addr,
                record.user_agent,
                record.created_at,
            ),
        )

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_live_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        now = now or datetime.utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE id = %s AND revoked = FALSE RETURNING id",
                (token_id,),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshToken
    ) -> Optional[RefreshToken]:
        """Revoke ``old_token_id`` and insert ``new_record`` in one transaction.

        The revoke is a compare-and-swap on ``revoked``; when another request has
        already flipped it nothing is written and ``None`` is returned.
        """
        try:
            with self._connect() as conn:
                won = conn.execute(
                    "UPDATE refresh_token SET revoked = TRUE WHERE id = %s AND revoked = FALSE RETURNING id",
                    (old_token_id,),
                ).fetchone()
                if not won:
                    return None
                self._insert_refresh_token(conn, new_record)
                conn.execute(
                    "UPDATE refresh_token SET replaced_by_id = %s WHERE id = %s",
                    (new_record.id, old_token_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": new_record.user_id}
            )
        return new_record

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # ownership records maintained by the course and live-class modules
    def save_course(self, course: Course) -> Course:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO course (id, tenant_id, title) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET tenant_id = EXCLUDED.tenant_id, title = EXCLUDED.title
                """,
                (course.id, course.tenant_id, course.title),
            )
        return course

    def save_course_module(self, module: CourseModule) -> CourseModule:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO course_module (id, course_id, title) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET course_id = EXCLUDED.course_id, title = EXCLUDED.title
                """,
                (module.id, module.course_id, module.title),
            )
        return module

    def save_lesson(self, lesson: Lesson) -> Lesson:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lesson (id, module_id, title) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET module_id = EXCLUDED.module_id, title = EXCLUDED.title
                """,
                (lesson.id, lesson.module_id, lesson.title),
            )
        return lesson

    def save_live_class(self, live_class: LiveClass) -> LiveClass:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO live_class (id, tenant_id, title) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET tenant_id = EXCLUDED.tenant_id, title = EXCLUDED.title
                """,
                (live_class.id, live_class.tenant_id, live_class.title),
            )
        return live_class

    def _scalar_tenant(self, sql: str, entity_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(sql, (entity_id,)).fetchone()
        if not row or row.get("tenant_id") is None:
            return None
        return str(row["tenant_id"])

    def tenant_id_for_course(self, course_id: str) -> Optional[str]:
        return self._scalar_tenant("SELECT tenant_id FROM course WHERE id = %s", course_id)

    def tenant_id_for_live_class(self, live_class_id: str) -> Optional[str]:
        return self._scalar_tenant(
            "SELECT tenant_id FROM live_class WHERE id = %s", live_class_id
        )

    def tenant_id_for_module(self, module_id: str) -> Optional[str]:
        return self._scalar_tenant(
            """
            SELECT c.tenant_id FROM course_module m
            JOIN course c ON c.id = m.course_id
            WHERE m.id = %s
            """,
            module_id,
        )

    def tenant_id_for_lesson(self, lesson_id: str) -> Optional[str]:
        return self._scalar_tenant(
            """
            SELECT c.tenant_id FROM lesson l
            JOIN course_module m ON m.id = l.module_id
            JOIN course c ON c.id = m.course_id
            WHERE l.id = %s
            """,
            lesson_id,
        )
