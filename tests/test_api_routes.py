"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> AuthService -> CredentialStore/SQLiteCache -> response model
serialization and the error envelope. Unit testing individual route
functions would miss middleware, dependency injection, and the exception
handlers.

Coverage:
  - register -> profile -> logout -> profile is 401 (same access token)
  - X-Tenant-ID validation on register; duplicate registration 409
  - login success/failure envelopes, rate limit 429
  - refresh rotation, sessions listing, logout-all
  - password reset endpoints: generic response, validate 404 reasons, reset
  - admin routes: permission 403, tenant isolation 403, super_admin override
  - request validation errors use the 400 envelope

Fixtures used (from conftest.py):
  - api_client: (client, service) -- TestClient on the real app with an
    isolated AuthService. Module-scoped, so every test registers its own
    uniquely named users.
"""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from auth.service import AuthService
from tests.conftest import PASSWORD, new_tenant

ApiClient = tuple[TestClient, AuthService]


def _email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}@acme.test"


def _register(client: TestClient, tenant: str, email: str | None = None, role: str | None = None) -> dict:
    body = {"email": email or _email(), "password": PASSWORD, "display_name": "Acme User"}
    if role:
        body["role"] = role
    resp = client.post("/api/v1/auth/register", json=body, headers={"X-Tenant-ID": tenant})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestRegisterProfileLogout:
    def test_full_lifecycle(self, api_client: ApiClient) -> None:
        client, _svc = api_client
        tenant = new_tenant()
        email = _email()

        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": PASSWORD, "display_name": "Acme User"},
            headers={"X-Tenant-ID": tenant},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["session_id"]
        assert data["access_token"] and data["refresh_token"]
        assert data["access_token"] != data["refresh_token"]
        assert data["token_type"] == "Bearer"
        assert data["user"]["tenant_id"] == tenant
        assert data["user"]["role"] == "viewer"
        assert resp.headers["Cache-Control"] == "no-store"

        headers = _bearer(data["access_token"])
        profile = client.get("/api/v1/auth/profile", headers=headers)
        assert profile.status_code == 200
        assert profile.json()["data"]["email"] == email

        assert client.post("/api/v1/auth/logout", headers=headers).status_code == 200

        after = client.get("/api/v1/auth/profile", headers=headers)
        assert after.status_code == 401
        assert after.json()["code"] == "UNAUTHORIZED"
        assert after.headers["WWW-Authenticate"] == "Bearer"

    def test_missing_tenant_header(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "password": PASSWORD, "display_name": "Acme User"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "BAD_REQUEST"

    def test_non_uuid_tenant_header(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "password": PASSWORD, "display_name": "Acme User"},
            headers={"X-Tenant-ID": "acme"},
        )
        assert resp.status_code == 400

    def test_weak_password(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "password": "password", "display_name": "Acme User"},
            headers={"X-Tenant-ID": new_tenant()},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation failed"

    def test_password_longer_than_bcrypt_input_is_400(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "password": "Aa1!" + "x" * 76, "display_name": "Acme User"},
            headers={"X-Tenant-ID": new_tenant()},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "BAD_REQUEST"
        assert any("72 bytes" in p for p in resp.json()["details"]["violations"])

    def test_duplicate_in_same_tenant_is_conflict(self, api_client: ApiClient) -> None:
        client, _ = api_client
        tenant, email = new_tenant(), _email()
        _register(client, tenant, email)
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email.upper(), "password": PASSWORD, "display_name": "Again"},
            headers={"X-Tenant-ID": tenant},
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONFLICT"

    def test_same_email_in_other_tenant_is_allowed(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        first = _register(client, new_tenant(), email)
        second = _register(client, new_tenant(), email)
        assert first["user"]["id"] != second["user"]["id"]

    def test_missing_token_is_401(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.get("/api/v1/auth/profile")
        assert resp.status_code == 401
        assert resp.json() == {
            "error": "Unauthorized",
            "message": "Authorization header with a Bearer token is required",
            "code": "UNAUTHORIZED",
        }


class TestLogin:
    def test_login_success(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        registered = _register(client, new_tenant(), email)
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["id"] == registered["user"]["id"]
        assert data["session_id"] != registered["session_id"]
        assert data["expires_in"] > 0

    def test_wrong_password_and_unknown_email_look_the_same(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        _register(client, new_tenant(), email)
        wrong = client.post("/api/v1/auth/login", json={"email": email, "password": "Wrong123!"})
        unknown = client.post("/api/v1/auth/login", json={"email": _email("ghost"), "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_login_is_rate_limited(self, api_client: ApiClient) -> None:
        client, _ = api_client
        body = {"email": _email("ghost"), "password": PASSWORD}
        statuses = [client.post("/api/v1/auth/login", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429


class TestTokens:
    def test_refresh_rotates_pair(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _register(client, new_tenant())
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert resp.status_code == 200
        rotated = resp.json()["data"]
        assert rotated["session_id"] == data["session_id"]
        assert rotated["refresh_token"] != data["refresh_token"]

        reused = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert reused.status_code == 401
        assert client.get("/api/v1/auth/profile", headers=_bearer(data["access_token"])).status_code == 401
        assert client.get("/api/v1/auth/profile", headers=_bearer(rotated["access_token"])).status_code == 200

    def test_access_token_cannot_refresh(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _register(client, new_tenant())
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": data["access_token"]})
        assert resp.status_code == 401

    def test_sessions_and_logout_all(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        first = _register(client, new_tenant(), email)
        second = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).json()["data"]

        listed = client.get("/api/v1/auth/sessions", headers=_bearer(second["access_token"]))
        assert listed.status_code == 200
        sessions = {s["session_id"]: s for s in listed.json()["data"]}
        assert set(sessions) == {first["session_id"], second["session_id"]}
        assert sessions[second["session_id"]]["current"] is True
        assert "token_hash" not in sessions[first["session_id"]]

        ended = client.post("/api/v1/auth/logout-all", headers=_bearer(first["access_token"]))
        assert ended.status_code == 200
        assert ended.json()["data"]["sessions_terminated"] == 2
        assert client.get("/api/v1/auth/profile", headers=_bearer(second["access_token"])).status_code == 401

    def test_update_profile_and_change_password(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        data = _register(client, new_tenant(), email)
        headers = _bearer(data["access_token"])

        updated = client.put("/api/v1/auth/profile", json={"display_name": "Renamed", "phone": "+15550100"}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["display_name"] == "Renamed"

        wrong = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "Nope1234!", "new_password": "Changed77!"},
            headers=headers,
        )
        assert wrong.status_code == 401

        changed = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "Changed77!"},
            headers=headers,
        )
        assert changed.status_code == 200
        assert client.get("/api/v1/auth/profile", headers=headers).status_code == 401
        relogin = client.post("/api/v1/auth/login", json={"email": email, "password": "Changed77!"})
        assert relogin.status_code == 200


class TestPasswordReset:
    def test_request_is_generic(self, api_client: ApiClient) -> None:
        client, _ = api_client
        email = _email()
        _register(client, new_tenant(), email)
        known = client.post("/api/v1/auth/password-reset", json={"email": email})
        unknown = client.post("/api/v1/auth/password-reset", json={"email": _email("ghost")})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]
        assert "token" not in known.json()["data"]

    def test_validate_without_token_is_400(self, api_client: ApiClient) -> None:
        client, _ = api_client
        for params in ({}, {"token": ""}, {"token": "   "}):
            resp = client.get("/api/v1/auth/validate-reset-token", params=params)
            assert resp.status_code == 400
            assert resp.json()["code"] == "BAD_REQUEST"
            assert resp.json()["details"] == {"field": "token"}

    def test_validate_unknown_token_is_404_with_reason(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.get("/api/v1/auth/validate-reset-token", params={"token": "bogus"})
        assert resp.status_code == 404
        assert resp.json()["details"] == {"reason": "not_found"}

    def test_reset_password_end_to_end(self, api_client: ApiClient) -> None:
        client, svc = api_client
        email = _email()
        data = _register(client, new_tenant(), email)
        token = svc.request_password_reset(email).token

        check = client.get("/api/v1/auth/validate-reset-token", params={"token": token})
        assert check.status_code == 200
        assert check.json()["data"]["is_valid"] is True
        assert check.json()["data"]["email"] != email

        resp = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "ResetPass9!"})
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/profile", headers=_bearer(data["access_token"])).status_code == 401

        again = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "ResetPass9!"})
        assert again.status_code == 404
        assert again.json()["details"]["reason"] == "used"
        login = client.post("/api/v1/auth/login", json={"email": email, "password": "ResetPass9!"})
        assert login.status_code == 200


class TestAdministration:
    def test_viewer_reads_but_cannot_delete(self, api_client: ApiClient) -> None:
        client, _ = api_client
        tenant = new_tenant()
        viewer = _register(client, tenant)
        other = _register(client, tenant)
        headers = _bearer(viewer["access_token"])
        assert client.get("/api/v1/auth/users", headers=headers).status_code == 200
        resp = client.delete(f"/api/v1/auth/users/{other['user']['id']}", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    def test_tenant_admin_lists_own_tenant(self, api_client: ApiClient) -> None:
        client, _ = api_client
        tenant = new_tenant()
        admin = _register(client, tenant, role="tenant_admin")
        _register(client, tenant)
        _register(client, new_tenant())
        resp = client.get("/api/v1/auth/users", headers=_bearer(admin["access_token"]))
        assert resp.status_code == 200
        assert resp.headers["X-Tenant-ID"] == tenant
        users = resp.json()["data"]
        assert len(users) == 2
        assert {u["tenant_id"] for u in users} == {tenant}

    def test_tenant_admin_cannot_name_other_tenant(self, api_client: ApiClient) -> None:
        client, _ = api_client
        admin = _register(client, new_tenant(), role="tenant_admin")
        headers = {**_bearer(admin["access_token"]), "X-Tenant-ID": new_tenant()}
        assert client.get("/api/v1/auth/users", headers=headers).status_code == 403
        query = client.get(
            "/api/v1/auth/users", params={"tenant_id": new_tenant()}, headers=_bearer(admin["access_token"])
        )
        assert query.status_code == 403

    def test_super_admin_override(self, api_client: ApiClient) -> None:
        client, _ = api_client
        other = new_tenant()
        target = _register(client, other)
        root = _register(client, new_tenant(), role="super_admin")
        headers = {**_bearer(root["access_token"]), "X-Tenant-ID": other}

        listed = client.get("/api/v1/auth/users", headers=headers)
        assert listed.status_code == 200
        assert listed.headers["X-Tenant-ID"] == other
        assert [u["id"] for u in listed.json()["data"]] == [target["user"]["id"]]

        deleted = client.delete(f"/api/v1/auth/users/{target['user']['id']}", headers=headers)
        assert deleted.status_code == 200
        assert client.get("/api/v1/auth/profile", headers=_bearer(target["access_token"])).status_code == 401

    def test_delete_user_in_other_tenant_is_not_found(self, api_client: ApiClient) -> None:
        client, _ = api_client
        admin = _register(client, new_tenant(), role="tenant_admin")
        outsider = _register(client, new_tenant())
        resp = client.delete(f"/api/v1/auth/users/{outsider['user']['id']}", headers=_bearer(admin["access_token"]))
        assert resp.status_code == 404

    def test_staff_cannot_delete(self, api_client: ApiClient) -> None:
        client, _ = api_client
        tenant = new_tenant()
        staff = _register(client, tenant, role="staff")
        viewer = _register(client, tenant)
        resp = client.delete(f"/api/v1/auth/users/{viewer['user']['id']}", headers=_bearer(staff["access_token"]))
        assert resp.status_code == 403


class TestRequestValidation:
    def test_missing_field_uses_error_envelope(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "user@acme.test"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "BAD_REQUEST"
        assert any(err["field"].endswith("password") for err in body["details"]["errors"])

    def test_unknown_route_is_404_envelope(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"
