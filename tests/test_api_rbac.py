"""HTTP tests for tenant, user, role and permission management."""

import pytest
from fastapi.testclient import TestClient

from tenantauth.app import app
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import Course, CourseModule, Lesson


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, email, password="password123"):
    resp = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["access_token"]


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def platform_admin(client):
    resp = client.post(
        "/v1/auth/register", json={"email": "root@platform.test", "password": "password123"}
    )
    assert resp.status_code == 201
    return resp.json()["data"]["access_token"]


@pytest.fixture
def acme(client, platform_admin):
    """Tenant ``acme`` with an admin and a learner."""
    resp = client.post("/v1/tenants", json={"name": "acme"}, headers=_auth(platform_admin))
    assert resp.status_code == 201
    tenant = resp.json()["data"]
    for email, roles in (("admin@acme.test", ["tenant_admin"]), ("learner@acme.test", None)):
        resp = client.post(
            "/v1/users",
            json={
                "email": email,
                "password": "password123",
                "tenantName": "acme",
                "roles": roles,
            },
            headers=_auth(platform_admin),
        )
        assert resp.status_code == 201, resp.text
    return {
        "tenant": tenant,
        "admin": _login(client, "admin@acme.test"),
        "learner": _login(client, "learner@acme.test"),
    }


def _user_id(email):
    return get_runtime().store.get_user_by_email(email).id


class TestTenants:
    def test_platform_admin_manages_tenants(self, client, platform_admin):
        resp = client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(platform_admin))
        assert resp.status_code == 201
        assert resp.json()["data"]["name"] == "globex"

        listed = client.get("/v1/tenants", headers=_auth(platform_admin))
        assert [t["name"] for t in listed.json()["data"]["items"]] == ["globex"]

        fetched = client.get("/v1/tenants/globex", headers=_auth(platform_admin))
        assert fetched.json()["data"]["id"] == resp.json()["data"]["id"]

        dup = client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(platform_admin))
        assert dup.status_code == 409

        missing = client.get("/v1/tenants/nope", headers=_auth(platform_admin))
        assert missing.status_code == 404

    def test_blank_tenant_name_rejected(self, client, platform_admin):
        resp = client.post("/v1/tenants", json={"name": "   "}, headers=_auth(platform_admin))
        assert resp.status_code == 400

    def test_tenant_admin_cannot_create_tenants(self, client, acme):
        resp = client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(acme["admin"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_user_without_tenant_is_rejected(self, client):
        client.post("/v1/auth/register", json={"email": "lone@x.com", "password": "password123"})
        token = _login(client, "lone@x.com")
        resp = client.get("/v1/tenants", headers=_auth(token))
        assert resp.status_code == 403
        assert "tenant" in resp.json()["error"]["message"]


class TestTenantUsers:
    def test_admin_lists_own_tenant_users(self, client, acme):
        resp = client.get("/v1/users", headers=_auth(acme["admin"]))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total"] == 2
        roles = {u["email"]: u["roles"] for u in data["items"]}
        assert roles == {"admin@acme.test": ["tenant_admin"], "learner@acme.test": ["learner"]}

    def test_learner_is_not_tenant_admin(self, client, acme):
        resp = client.get("/v1/users", headers=_auth(acme["learner"]))
        assert resp.status_code == 403

    def test_tenant_admin_creates_user_in_own_tenant_only(self, client, acme, platform_admin):
        client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(platform_admin))
        body = {"email": "new@acme.test", "password": "password123", "tenantName": "acme"}

        ok = client.post("/v1/users", json=body, headers=_auth(acme["admin"]))
        assert ok.status_code == 201
        assert ok.json()["data"]["roles"] == ["learner"]

        body = {**body, "email": "spy@globex.test", "tenantName": "globex"}
        denied = client.post("/v1/users", json=body, headers=_auth(acme["admin"]))
        assert denied.status_code == 403

    def test_add_roles_and_suspend(self, client, acme):
        learner_id = _user_id("learner@acme.test")

        resp = client.post(
            f"/v1/users/{learner_id}/roles",
            json={"roles": ["trainer"]},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["roles"] == ["learner", "trainer"]

        resp = client.post(
            f"/v1/users/{learner_id}/status",
            json={"status": "suspended"},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "suspended"

        login = client.post(
            "/v1/auth/login", json={"email": "learner@acme.test", "password": "password123"}
        )
        assert login.status_code == 401
        me = client.get("/v1/me", headers=_auth(acme["learner"]))
        assert me.status_code == 401

    def test_invalid_status_rejected(self, client, acme):
        resp = client.post(
            f"/v1/users/{_user_id('learner@acme.test')}/status",
            json={"status": "banned"},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 400

    def test_cannot_touch_users_in_other_tenants(self, client, acme, platform_admin):
        client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(platform_admin))
        client.post(
            "/v1/users",
            json={"email": "g@globex.test", "password": "password123", "tenantName": "globex"},
            headers=_auth(platform_admin),
        )
        resp = client.post(
            f"/v1/users/{_user_id('g@globex.test')}/roles",
            json={"roles": ["trainer"]},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 403


class TestRoles:
    def test_create_role_and_grant_by_category(self, client, acme):
        admin = _auth(acme["admin"])
        resp = client.post(
            "/v1/roles", json={"code": "reporter", "name": "Reporter"}, headers=admin
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["isSystem"] is False

        resp = client.post(
            "/v1/roles/assign-category",
            json={"roleCode": "reporter", "category": "assessment management"},
            headers=admin,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["category"] == "Assessment Management"

        perms = client.get("/v1/roles/reporter/permissions", headers=admin)
        assert perms.json()["data"]["roleCode"] == "reporter"
        assert len(perms.json()["data"]["permissions"]) == resp.json()["data"]["assignedCount"]

    def test_unknown_category_lists_valid(self, client, acme):
        resp = client.post(
            "/v1/roles/assign-category",
            json={"roleCode": "learner", "category": "Astrology"},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 404
        assert "Reporting" in resp.json()["error"]["details"]["valid_categories"]

    def test_duplicate_role_and_bad_code(self, client, acme):
        admin = _auth(acme["admin"])
        assert client.post(
            "/v1/roles", json={"code": "learner", "name": "Again"}, headers=admin
        ).status_code == 409
        assert client.post(
            "/v1/roles", json={"code": "Bad Code", "name": "Bad"}, headers=admin
        ).status_code == 400

    def test_assign_permission_is_idempotent(self, client, acme):
        admin = _auth(acme["admin"])
        body = {"roleCode": "learner", "permissionId": "courses.publish"}
        first = client.post("/v1/roles/assign-permission", json=body, headers=admin)
        second = client.post("/v1/roles/assign-permission", json=body, headers=admin)
        assert first.status_code == second.status_code == 200
        assert first.json()["data"]["id"] == second.json()["data"]["id"]

    def test_create_permission_needs_permission(self, client, acme, platform_admin):
        body = {"code": "badges.award", "name": "Award Badge"}
        denied = client.post("/v1/roles/permission", json=body, headers=_auth(acme["admin"]))
        assert denied.status_code == 403
        assert denied.json()["error"]["details"] == {"permission": "permissions.create"}

        created = client.post("/v1/roles/permission", json=body, headers=_auth(platform_admin))
        assert created.status_code == 201
        assert created.json()["data"]["category"] == "Custom"

    def test_assign_role_replaces_roles_within_tenant(self, client, acme):
        resp = client.post(
            "/v1/roles/assign-role",
            json={
                "userId": _user_id("learner@acme.test"),
                "tenantId": acme["tenant"]["id"],
                "roles": ["instructor"],
            },
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["roles"] == ["instructor"]

    def test_assign_role_in_other_tenant_forbidden(self, client, acme):
        resp = client.post(
            "/v1/roles/assign-role",
            json={"userId": "whoever", "tenantId": "other-tenant", "roles": ["learner"]},
            headers=_auth(acme["admin"]),
        )
        assert resp.status_code == 403

    def test_learner_cannot_read_roles(self, client, acme):
        resp = client.get("/v1/roles", headers=_auth(acme["learner"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["details"] == {"permission": "roles.read"}


class TestPermissionCatalog:
    def test_available_and_stats(self, client, acme):
        admin = _auth(acme["admin"])
        available = client.get("/v1/permissions/available", headers=admin).json()["data"]
        assert available["total"] == 71
        stats = client.get("/v1/permissions/stats/summary", headers=admin).json()["data"]
        assert stats["systemDefined"] == 71

    def test_by_category_and_resource(self, client, acme):
        admin = _auth(acme["admin"])
        by_category = client.get(
            "/v1/permissions/by-category", params={"category": "user"}, headers=admin
        )
        assert by_category.status_code == 200
        assert by_category.json()["data"]["total"] == 8

        by_resource = client.get(
            "/v1/permissions/by-resource", params={"resource": "tenants"}, headers=admin
        )
        assert by_resource.json()["data"]["total"] == 6

        missing = client.get("/v1/permissions/by-category", headers=admin)
        assert missing.status_code == 400

    def test_single_permission_and_validate(self, client, acme):
        admin = _auth(acme["admin"])
        resp = client.get("/v1/permissions/courses.read", headers=admin)
        assert resp.json()["data"]["resource"] == "courses"
        assert client.get("/v1/permissions/ghost.haunt", headers=admin).status_code == 404

        valid = client.post(
            "/v1/permissions/validate", json={"code": "courses.read"}, headers=admin
        )
        assert valid.json()["data"]["valid"] is True

    def test_assignable_depends_on_caller(self, client, acme, platform_admin):
        tenant_view = client.get(
            "/v1/permissions/assignable", headers=_auth(acme["admin"])
        ).json()["data"]
        assert tenant_view["allPermissions"] is False

        platform_view = client.get(
            "/v1/permissions/assignable", headers=_auth(platform_admin)
        ).json()["data"]
        assert platform_view["allPermissions"] is True


class TestTenantContext:
    def test_member_resolves_by_lesson(self, client, acme):
        store = get_runtime().store
        store.save_course(Course(id="course-1", tenant_id=acme["tenant"]["id"]))
        store.save_course_module(CourseModule(id="module-1", course_id="course-1"))
        store.save_lesson(Lesson(id="lesson-1", module_id="module-1"))

        resp = client.post(
            "/v1/tenant-context", json={"lessonId": "lesson-1"}, headers=_auth(acme["learner"])
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "tenantId": acme["tenant"]["id"],
            "roles": ["learner"],
            "source": "lesson_id",
            "bypass": False,
        }

    def test_header_tenant_id(self, client, acme):
        resp = client.post(
            "/v1/tenant-context",
            json={"roles": ["tenant_admin"]},
            headers={**_auth(acme["admin"]), "X-Tenant-ID": acme["tenant"]["id"]},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["source"] == "tenant_id"

    def test_role_narrowing(self, client, acme):
        resp = client.post(
            "/v1/tenant-context",
            json={"tenantName": "acme", "roles": ["trainer"]},
            headers=_auth(acme["learner"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "insufficient role"

    def test_non_member_and_unresolved(self, client, acme, platform_admin):
        client.post("/v1/tenants", json={"name": "globex"}, headers=_auth(platform_admin))
        other = client.post(
            "/v1/tenant-context", json={"tenantName": "globex"}, headers=_auth(acme["learner"])
        )
        assert other.status_code == 403
        assert other.json()["error"]["message"] == "not a member of tenant"

        nothing = client.post("/v1/tenant-context", json={}, headers=_auth(acme["learner"]))
        assert nothing.status_code == 403


class TestPrivilegeBoundaries:
    def test_tenant_admin_cannot_hand_out_platform_roles(self, client, acme):
        admin = _auth(acme["admin"])
        admin_id = _user_id("admin@acme.test")

        promote = client.post(
            f"/v1/users/{admin_id}/roles", json={"roles": ["platform_admin"]}, headers=admin
        )
        assert promote.status_code == 400
        assert promote.json()["error"]["details"]["roles"] == ["platform_admin"]

        replace = client.post(
            "/v1/roles/assign-role",
            json={
                "userId": admin_id,
                "tenantId": acme["tenant"]["id"],
                "roles": ["tenant_admin", "org_admin"],
            },
            headers=admin,
        )
        assert replace.status_code == 400

        create = client.post(
            "/v1/users",
            json={
                "email": "sneaky@acme.test",
                "password": "password123",
                "tenantName": "acme",
                "roles": ["platform_admin"],
            },
            headers=admin,
        )
        assert create.status_code == 400
        assert get_runtime().store.get_user_by_email("sneaky@acme.test") is None

        relogged = _login(client, "admin@acme.test")
        denied = client.post("/v1/tenants", json={"name": "mine"}, headers=_auth(relogged))
        assert denied.status_code == 403

    def test_tenant_admin_cannot_grant_platform_permissions(self, client, acme):
        admin = _auth(acme["admin"])

        single = client.post(
            "/v1/roles/assign-permission",
            json={"roleCode": "tenant_admin", "permissionId": "tenants.create"},
            headers=admin,
        )
        assert single.status_code == 403
        assert single.json()["error"]["details"] == {"permissions": ["tenants.create"]}

        bulk = client.post(
            "/v1/roles/assign-category",
            json={"roleCode": "learner", "category": "Tenant Management"},
            headers=admin,
        )
        assert bulk.status_code == 403

        learner_perms = client.get("/v1/roles/learner/permissions", headers=admin).json()
        codes = {p["code"] for p in learner_perms["data"]["permissions"]}
        assert not any(code.startswith("tenants.") for code in codes)
        relogged = _login(client, "admin@acme.test")
        assert client.post(
            "/v1/tenants", json={"name": "mine"}, headers=_auth(relogged)
        ).status_code == 403

    def test_platform_admin_grants_platform_permissions(self, client, platform_admin):
        resp = client.post(
            "/v1/roles/assign-permission",
            json={"roleCode": "trainer", "permissionId": "tenants.read"},
            headers=_auth(platform_admin),
        )
        assert resp.status_code == 200


class TestPlatformUsers:
    def test_platform_admin_creates_platform_admin(self, client, platform_admin):
        resp = client.post(
            "/v1/users/platform",
            json={
                "email": "ops@corp.test",
                "password": "password123",
                "displayName": "Ops",
                "platformRoles": ["platform_admin"],
            },
            headers=_auth(platform_admin),
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["platformRoles"] == ["platform_admin"]
        assert data["tenantId"] is None

        ops = _auth(_login(client, "ops@corp.test"))
        assert client.post("/v1/tenants", json={"name": "ops"}, headers=ops).status_code == 201

    def test_tenant_roles_are_not_platform_roles(self, client, platform_admin):
        resp = client.post(
            "/v1/users/platform",
            json={
                "email": "ops@corp.test",
                "password": "password123",
                "platformRoles": ["trainer"],
            },
            headers=_auth(platform_admin),
        )
        assert resp.status_code == 400

    def test_tenant_admin_and_learner_are_denied(self, client, acme):
        body = {
            "email": "ops@corp.test",
            "password": "password123",
            "platformRoles": ["platform_admin"],
        }
        # tenant_admin holds admin.manage but is not a platform admin
        by_admin = client.post("/v1/users/platform", json=body, headers=_auth(acme["admin"]))
        assert by_admin.status_code == 403

        by_learner = client.post("/v1/users/platform", json=body, headers=_auth(acme["learner"]))
        assert by_learner.status_code == 403
        assert by_learner.json()["error"]["details"] == {"permission": "admin.manage"}
        assert get_runtime().store.get_user_by_email("ops@corp.test") is None

    def test_org_admin_needs_a_listed_role_for_tenant_context(self, client, acme, platform_admin):
        client.post(
            "/v1/users/platform",
            json={
                "email": "org@corp.test",
                "password": "password123",
                "platformRoles": ["org_admin"],
            },
            headers=_auth(platform_admin),
        )
        org = _auth(_login(client, "org@corp.test"))

        anywhere = client.post("/v1/tenant-context", json={"tenantName": "acme"}, headers=org)
        assert anywhere.status_code == 200
        assert anywhere.json()["data"]["bypass"] is True
        assert anywhere.json()["data"]["tenantId"] == acme["tenant"]["id"]

        narrowed = client.post(
            "/v1/tenant-context",
            json={"tenantName": "acme", "roles": ["trainer"]},
            headers=org,
        )
        assert narrowed.status_code == 403
