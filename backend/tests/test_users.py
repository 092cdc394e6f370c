# tests/test_users.py — Access guard, user directory and role management
import pytest
from httpx import AsyncClient

from models import UserRole
from permissions import is_authorized, has_permission, get_role_permissions
from tests.conftest import get_auth_headers, notifications_for, TEST_PASSWORD


class TestAccessGuard:
    def test_enterprise_admin_always_allowed(self):
        assert is_authorized(UserRole.ENTERPRISE_ADMIN, [])
        assert is_authorized("enterprise_admin", [UserRole.STAFF])

    def test_admin_allowed_unless_enterprise_required(self):
        assert is_authorized(UserRole.ADMIN, [UserRole.STAFF])
        assert is_authorized(UserRole.ADMIN, [])
        assert not is_authorized(UserRole.ADMIN, [UserRole.ENTERPRISE_ADMIN])

    def test_other_roles_must_be_listed(self):
        assert is_authorized(UserRole.STAFF, [UserRole.STAFF, UserRole.EDITOR])
        assert not is_authorized(UserRole.STAFF, [UserRole.EDITOR])
        assert not is_authorized(UserRole.USER, [UserRole.STAFF, UserRole.EDITOR])
        assert not is_authorized("user", [])

    def test_unknown_role_is_denied(self):
        assert not is_authorized("superuser", [UserRole.USER])
        assert get_role_permissions("superuser") == []

    def test_permission_lookup(self):
        assert has_permission("staff", "review_changes")
        assert not has_permission("editor", "review_changes")
        assert has_permission("enterprise_admin", "manage_admins")
        assert not has_permission("admin", "manage_admins")


@pytest.mark.asyncio
class TestPolicyEndpoint:
    async def test_policy_is_public(self, client: AsyncClient):
        res = await client.get("/api/v1/permissions")
        assert res.status_code == 200
        data = res.json()
        assert data["version"] == "2"
        assert set(data["roles"]) == {"user", "editor", "staff", "admin", "enterprise_admin"}
        assert data["roles"]["enterprise_admin"]["level"] == 4

    async def test_my_permissions(self, client: AsyncClient, editor_user):
        res = await client.get("/api/v1/permissions/me", headers=get_auth_headers(editor_user))
        assert res.status_code == 200
        assert res.json()["role"] == "editor"
        assert "view_all_changes" in res.json()["permissions"]


@pytest.mark.asyncio
class TestUserDirectory:
    async def test_regular_user_cannot_list(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/users", headers=get_auth_headers(test_user))
        assert res.status_code == 403

    async def test_staff_lists_users(self, client: AsyncClient, staff_user, test_user):
        res = await client.get("/api/v1/users", headers=get_auth_headers(staff_user))
        assert res.status_code == 200
        data = res.json()
        assert data["total"] == 2
        assert data["count"] == 2

    async def test_filter_by_role(self, client: AsyncClient, staff_user, test_user, admin_user):
        res = await client.get("/api/v1/users", params={"role": "admin"}, headers=get_auth_headers(staff_user))
        assert res.status_code == 200
        assert [u["id"] for u in res.json()["users"]] == [admin_user.id]

    async def test_own_profile(self, client: AsyncClient, test_user):
        res = await client.get(f"/api/v1/users/{test_user.id}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["email"] == "testuser@itsm-test.com"
        assert "password_hash" not in res.json()

    async def test_other_profile_needs_privileged_role(self, client: AsyncClient, test_user, other_user, editor_user):
        res = await client.get(f"/api/v1/users/{other_user.id}", headers=get_auth_headers(test_user))
        assert res.status_code == 403
        res = await client.get(f"/api/v1/users/{other_user.id}", headers=get_auth_headers(editor_user))
        assert res.status_code == 200


@pytest.mark.asyncio
class TestRoleManagement:
    async def test_admin_promotes_user_to_staff(self, client: AsyncClient, admin_user, test_user):
        res = await client.patch(
            f"/api/v1/users/{test_user.id}/role",
            json={"role": "staff"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json() == {"user_id": test_user.id, "old_role": "user", "new_role": "staff"}

    async def test_admin_cannot_create_admins(self, client: AsyncClient, admin_user, test_user):
        res = await client.patch(
            f"/api/v1/users/{test_user.id}/role",
            json={"role": "admin"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 403

    async def test_admin_cannot_demote_admins(self, client: AsyncClient, admin_user, second_admin):
        res = await client.patch(
            f"/api/v1/users/{second_admin.id}/role",
            json={"role": "user"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 403

    async def test_enterprise_admin_manages_admins(self, client: AsyncClient, enterprise_admin, test_user):
        res = await client.patch(
            f"/api/v1/users/{test_user.id}/role",
            json={"role": "admin"},
            headers=get_auth_headers(enterprise_admin),
        )
        assert res.status_code == 200
        assert res.json()["new_role"] == "admin"

    async def test_staff_cannot_change_roles(self, client: AsyncClient, staff_user, test_user):
        res = await client.patch(
            f"/api/v1/users/{test_user.id}/role",
            json={"role": "editor"},
            headers=get_auth_headers(staff_user),
        )
        assert res.status_code == 403

    async def test_invalid_role(self, client: AsyncClient, admin_user, test_user):
        res = await client.patch(
            f"/api/v1/users/{test_user.id}/role",
            json={"role": "overlord"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400


@pytest.mark.asyncio
class TestAccountAdministration:
    async def test_admin_creates_account(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/users", json={
            "name": "New Engineer",
            "email": "engineer@itsm-test.com",
            "password": TEST_PASSWORD,
            "role": "editor",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 201
        created = res.json()
        assert created["role"] == "editor"
        assert created["is_active"] is True

        res = await client.post("/api/v1/auth/login", json={
            "email": "engineer@itsm-test.com", "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        assert res.json()["user"]["id"] == created["id"]

    async def test_create_duplicate_email(self, client: AsyncClient, admin_user, test_user):
        res = await client.post("/api/v1/users", json={
            "name": "Copy", "email": test_user.email, "password": TEST_PASSWORD,
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 409

    async def test_create_weak_password(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/users", json={
            "name": "Weak", "email": "weak@itsm-test.com", "password": "password",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 422

    async def test_admin_cannot_create_administrators(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/users", json={
            "name": "Boss", "email": "boss@itsm-test.com", "password": TEST_PASSWORD, "role": "admin",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 403

    async def test_staff_cannot_create_accounts(self, client: AsyncClient, staff_user):
        res = await client.post("/api/v1/users", json={
            "name": "Nope", "email": "nope@itsm-test.com", "password": TEST_PASSWORD,
        }, headers=get_auth_headers(staff_user))
        assert res.status_code == 403

    async def test_admin_edits_user(self, client: AsyncClient, admin_user, test_user):
        res = await client.put(f"/api/v1/users/{test_user.id}", json={
            "name": "Renamed User", "email": "renamed@itsm-test.com", "is_active": False,
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        data = res.json()
        assert data["name"] == "Renamed User"
        assert data["email"] == "renamed@itsm-test.com"
        assert data["is_active"] is False
        assert data["role"] == "user"

    async def test_edit_to_taken_email(self, client: AsyncClient, admin_user, test_user, other_user):
        res = await client.put(f"/api/v1/users/{test_user.id}", json={
            "email": other_user.email,
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 409

    async def test_admin_cannot_edit_other_admins(self, client: AsyncClient, admin_user, second_admin):
        res = await client.put(f"/api/v1/users/{second_admin.id}", json={
            "name": "Hijacked",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 403

    async def test_admin_edits_own_account(self, client: AsyncClient, admin_user):
        res = await client.put(f"/api/v1/users/{admin_user.id}", json={
            "name": "Admin Renamed", "role": "admin",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["name"] == "Admin Renamed"

    async def test_edit_unknown_user(self, client: AsyncClient, admin_user):
        res = await client.put(f"/api/v1/users/{'a' * 24}", json={"name": "Ghost"}, headers=get_auth_headers(admin_user))
        assert res.status_code == 404

    async def test_admin_deletes_user(self, client: AsyncClient, db_session, admin_user, test_user, staff_user):
        # A review request leaves the staff member with an inbox entry
        res = await client.post("/api/v1/changes", json={
            "title": "Rotate TLS certificates",
            "description": "Replace the expiring certificates on the public load balancers.",
            "impact": "medium",
            "category": "security",
            "planned_start_date": "2026-11-10T01:00:00Z",
            "planned_end_date": "2026-11-10T03:00:00Z",
            "reviewers": [{"user": staff_user.id}],
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 201
        assert len(await notifications_for(db_session, staff_user.id, "Review Request")) == 1

        res = await client.delete(f"/api/v1/users/{staff_user.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json() == {"status": "deleted", "id": staff_user.id}

        res = await client.get(f"/api/v1/users/{staff_user.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
        assert await notifications_for(db_session, staff_user.id) == []

    async def test_cannot_delete_change_owner(self, client: AsyncClient, admin_user, test_user):
        res = await client.post("/api/v1/changes", json={
            "title": "Resize log volume",
            "description": "Grow the central log volume before the quarterly audit export.",
            "impact": "low",
            "category": "hardware",
            "planned_start_date": "2026-11-12T20:00:00Z",
            "planned_end_date": "2026-11-12T21:00:00Z",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 201

        res = await client.delete(f"/api/v1/users/{test_user.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 409

    async def test_admin_cannot_delete_admins(self, client: AsyncClient, admin_user, second_admin):
        res = await client.delete(f"/api/v1/users/{second_admin.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 403

    async def test_enterprise_admin_deletes_admins(self, client: AsyncClient, enterprise_admin, second_admin):
        res = await client.delete(f"/api/v1/users/{second_admin.id}", headers=get_auth_headers(enterprise_admin))
        assert res.status_code == 200

    async def test_cannot_delete_self(self, client: AsyncClient, admin_user):
        res = await client.delete(f"/api/v1/users/{admin_user.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 400

    async def test_delete_malformed_id(self, client: AsyncClient, admin_user):
        res = await client.delete("/api/v1/users/not-an-id", headers=get_auth_headers(admin_user))
        assert res.status_code == 400
        assert res.json()["error"] == "validation_error"
