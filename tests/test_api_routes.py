"""
tests/test_api_routes.py -- Integration tests for the auth and users routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthService / AccountStore -> response model serialization -> AuthError
exception handler. Unit testing individual route functions would miss
middleware, dependency injection, and response model validation.

Coverage:
  - Auth failures: 401 on protected routes without a token, bad tokens, refresh
    token presented as access token
  - Register: 201 with tokens, 409 duplicate with field, 422 validation
  - Login: 200 with no-store header, identical 401 for unknown account and
    wrong password, 423 after the lockout threshold
  - Token lifecycle: refresh rotation, validate-token, logout, /me
  - Passwords: change-password, reset-password
  - Mini-app login: create then reuse, provider error -> 502
  - Users: ownership on GET/PATCH, admin-only status/role/delete/restore,
    super_admin required to grant super_admin, self-modification refused

Fixtures used (from conftest.py):
  - api_client: dict with client, provider session mock and admin / user /
    super_admin ids and access tokens. "apiuser" has password "userpass123".
"""

from __future__ import annotations

from conftest import bearer, provider_reply


def _register(client, username: str, password: str = "pw123456", **extra) -> dict:
    resp = client.post("/api/v1/auth/register", json={"username": username, "password": password, **extra})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


class TestApiAuthFailure:
    """Requests to protected routes without valid credentials must return 401."""

    def test_get_me_unauthenticated(self, api_client) -> None:
        resp = api_client["client"].get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_get_me_garbage_token(self, api_client) -> None:
        resp = api_client["client"].get("/api/v1/auth/me", headers=bearer("not-a-token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_refresh_token_is_not_an_access_token(self, api_client) -> None:
        client = api_client["client"]
        tokens = _register(client, "kindcheck")
        resp = client.get("/api/v1/auth/me", headers=bearer(tokens["refresh_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_logout_unauthenticated(self, api_client) -> None:
        assert api_client["client"].post("/api/v1/auth/logout").status_code == 401


class TestRegisterRoute:
    def test_register_returns_tokens(self, api_client) -> None:
        client = api_client["client"]
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "newcomer", "password": "pw123456", "email": "New@Example.com"},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"]
        assert data["account"]["username"] == "newcomer"
        assert data["account"]["email"] == "new@example.com"
        assert "password_hash" not in data["account"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_duplicate_username(self, api_client) -> None:
        client = api_client["client"]
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "apiuser", "password": "pw123456", "email": "apiuser@example.com"},
        )
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "duplicate_field"
        assert error["detail"] == {"field": "username"}

    def test_register_invalid_phone(self, api_client) -> None:
        resp = api_client["client"].post(
            "/api/v1/auth/register",
            json={"username": "badphone", "password": "pw123456", "phone": "555"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"] == {"field": "phone", "reason": "must be a valid mobile number"}

    def test_register_confirm_mismatch(self, api_client) -> None:
        resp = api_client["client"].post(
            "/api/v1/auth/register",
            json={"username": "mismatch", "password": "pw123456", "confirm_password": "pw654321"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_password_whitespace_is_kept(self, api_client) -> None:
        client = api_client["client"]
        data = _register(client, "  spacey  ", password=" pw123456 ")
        assert data["account"]["username"] == "spacey"
        ok = client.post("/api/v1/auth/login", json={"account": "spacey", "password": " pw123456 "})
        assert ok.status_code == 200, ok.text
        trimmed = client.post("/api/v1/auth/login", json={"account": "spacey", "password": "pw123456"})
        assert trimmed.status_code == 401


class TestLoginRoute:
    def test_login_success(self, api_client) -> None:
        resp = api_client["client"].post("/api/v1/auth/login", json={"account": "apiuser", "password": "userpass123"})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["account"]["id"] == api_client["user_id"]
        assert data["expires_in"] > 0

    def test_login_by_email(self, api_client) -> None:
        resp = api_client["client"].post(
            "/api/v1/auth/login", json={"account": "APIUSER@example.com", "password": "userpass123"}
        )
        assert resp.status_code == 200

    def test_unknown_account_and_wrong_password_look_the_same(self, api_client) -> None:
        client = api_client["client"]
        _register(client, "enumtarget")
        unknown = client.post("/api/v1/auth/login", json={"account": "ghost", "password": "pw123456"})
        wrong = client.post("/api/v1/auth/login", json={"account": "enumtarget", "password": "nope1234"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_after_threshold(self, api_client) -> None:
        client = api_client["client"]
        _register(client, "lockme")
        codes = [
            client.post("/api/v1/auth/login", json={"account": "lockme", "password": "wrong123"}).status_code
            for _ in range(5)
        ]
        assert codes == [401, 401, 401, 401, 423]
        resp = client.post("/api/v1/auth/login", json={"account": "lockme", "password": "pw123456"})
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert "locked_until" in error["detail"]


class TestTokenLifecycle:
    def test_me(self, api_client) -> None:
        resp = api_client["client"].get("/api/v1/auth/me", headers=bearer(api_client["user_token"]))
        assert resp.status_code == 200
        assert resp.json()["username"] == "apiuser"

    def test_refresh_rotates(self, api_client) -> None:
        client = api_client["client"]
        tokens = _register(client, "rotator")
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200, resp.text
        rotated = resp.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert client.get("/api/v1/auth/me", headers=bearer(rotated["access_token"])).status_code == 200

    def test_refresh_with_access_token(self, api_client) -> None:
        resp = api_client["client"].post("/api/v1/auth/refresh", json={"refresh_token": api_client["user_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_validate_token(self, api_client) -> None:
        resp = api_client["client"].post("/api/v1/auth/validate-token", json={"token": api_client["user_token"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["account"]["id"] == api_client["user_id"]
        assert data["claims"]["typ"] == "access"

    def test_logout(self, api_client) -> None:
        resp = api_client["client"].post("/api/v1/auth/logout", headers=bearer(api_client["user_token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out."


class TestPasswordRoutes:
    def test_change_password(self, api_client) -> None:
        client = api_client["client"]
        tokens = _register(client, "changer")
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "pw123456", "new_password": "newpass789"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 200, resp.text
        assert client.post("/api/v1/auth/login", json={"account": "changer", "password": "newpass789"}).status_code == 200

    def test_change_password_wrong_old(self, api_client) -> None:
        client = api_client["client"]
        tokens = _register(client, "changer2")
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "nope1234", "new_password": "newpass789"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 401

    def test_reset_password(self, api_client) -> None:
        client = api_client["client"]
        _register(client, "forgetful")
        resp = client.post(
            "/api/v1/auth/reset-password",
            json={"account": "forgetful", "verification_code": "123456", "new_password": "resetpass1"},
        )
        assert resp.status_code == 200, resp.text
        assert client.post("/api/v1/auth/login", json={"account": "forgetful", "password": "resetpass1"}).status_code == 200

    def test_reset_password_unknown_account(self, api_client) -> None:
        resp = api_client["client"].post(
            "/api/v1/auth/reset-password",
            json={"account": "nobody-here", "verification_code": "123456", "new_password": "resetpass1"},
        )
        assert resp.status_code == 404


class TestMiniProgramRoute:
    def test_login_creates_then_reuses_account(self, api_client) -> None:
        client, session = api_client["client"], api_client["session"]
        provider_reply(session, {"openid": "oMiniApp001", "session_key": "sk-1"})
        first = client.post("/api/v1/auth/miniprogram/login", json={"code": "c1"})
        assert first.status_code == 200, first.text
        assert first.json()["session_key"] == "sk-1"

        provider_reply(session, {"openid": "oMiniApp001", "session_key": "sk-2"})
        second = client.post(
            "/api/v1/auth/miniprogram/login",
            json={"code": "c2", "userInfo": {"nickName": "Morpheus", "avatarUrl": "https://img.test/m.png", "gender": 1}},
        )
        assert second.status_code == 200, second.text
        account = second.json()["account"]
        assert account["id"] == first.json()["account"]["id"]
        assert account["nickname"] == "Morpheus"
        assert account["gender"] == "male"

    def test_provider_error(self, api_client) -> None:
        client, session = api_client["client"], api_client["session"]
        provider_reply(session, {"errcode": 40029, "errmsg": "invalid code"})
        resp = client.post("/api/v1/auth/miniprogram/login", json={"code": "bad"})
        assert resp.status_code == 502
        assert resp.json()["error"]["detail"]["provider_code"] == 40029


class TestUsersRoutes:
    def test_owner_can_read_self(self, api_client) -> None:
        client = api_client["client"]
        resp = client.get(f"/api/v1/users/{api_client['user_id']}", headers=bearer(api_client["user_token"]))
        assert resp.status_code == 200

    def test_user_cannot_read_other(self, api_client) -> None:
        client = api_client["client"]
        resp = client.get(f"/api/v1/users/{api_client['admin_id']}", headers=bearer(api_client["user_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "ownership_denied"

    def test_admin_can_read_anyone(self, api_client) -> None:
        client = api_client["client"]
        resp = client.get(f"/api/v1/users/{api_client['user_id']}", headers=bearer(api_client["admin_token"]))
        assert resp.status_code == 200

    def test_owner_updates_profile(self, api_client) -> None:
        client = api_client["client"]
        resp = client.patch(
            f"/api/v1/users/{api_client['user_id']}",
            json={"nickname": "API User", "gender": "female"},
            headers=bearer(api_client["user_token"]),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["nickname"] == "API User"
        assert resp.json()["gender"] == "female"

    def test_user_cannot_change_status(self, api_client) -> None:
        client = api_client["client"]
        resp = client.patch(
            f"/api/v1/users/{api_client['admin_id']}/status",
            json={"status": "banned"},
            headers=bearer(api_client["user_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "insufficient_role"

    def test_admin_bans_user(self, api_client) -> None:
        client = api_client["client"]
        target = _register(client, "troublemaker")
        resp = client.patch(
            f"/api/v1/users/{target['account']['id']}/status",
            json={"status": "banned"},
            headers=bearer(api_client["admin_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "banned"
        # Existing tokens stop working once the account is no longer active.
        me = client.get("/api/v1/auth/me", headers=bearer(target["access_token"]))
        assert me.status_code == 403
        assert me.json()["error"]["code"] == "account_inactive"

    def test_admin_cannot_change_own_status(self, api_client) -> None:
        client = api_client["client"]
        resp = client.patch(
            f"/api/v1/users/{api_client['admin_id']}/status",
            json={"status": "inactive"},
            headers=bearer(api_client["admin_token"]),
        )
        assert resp.status_code == 400

    def test_admin_promotes_to_moderator(self, api_client) -> None:
        client = api_client["client"]
        target = _register(client, "helper")
        resp = client.patch(
            f"/api/v1/users/{target['account']['id']}/role",
            json={"role": "moderator"},
            headers=bearer(api_client["admin_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "moderator"

    def test_admin_cannot_grant_super_admin(self, api_client) -> None:
        client = api_client["client"]
        target = _register(client, "climber")
        resp = client.patch(
            f"/api/v1/users/{target['account']['id']}/role",
            json={"role": "super_admin"},
            headers=bearer(api_client["admin_token"]),
        )
        assert resp.status_code == 403

    def test_super_admin_grants_super_admin(self, api_client) -> None:
        client = api_client["client"]
        target = _register(client, "heir")
        resp = client.patch(
            f"/api/v1/users/{target['account']['id']}/role",
            json={"role": "super_admin"},
            headers=bearer(api_client["super_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "super_admin"

    def test_unknown_role_rejected(self, api_client) -> None:
        client = api_client["client"]
        resp = client.patch(
            f"/api/v1/users/{api_client['user_id']}/role",
            json={"role": "root"},
            headers=bearer(api_client["admin_token"]),
        )
        assert resp.status_code == 422

    def test_delete_and_restore(self, api_client) -> None:
        client = api_client["client"]
        target = _register(client, "ephemeral")
        account_id = target["account"]["id"]
        headers = bearer(api_client["admin_token"])

        deleted = client.delete(f"/api/v1/users/{account_id}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["deleted_at"] is not None
        assert client.get(f"/api/v1/users/{account_id}", headers=headers).status_code == 404
        login = client.post("/api/v1/auth/login", json={"account": "ephemeral", "password": "pw123456"})
        assert login.status_code == 401

        restored = client.post(f"/api/v1/users/{account_id}/restore", headers=headers)
        assert restored.status_code == 200
        assert restored.json()["deleted_at"] is None

    def test_admin_cannot_delete_self(self, api_client) -> None:
        client = api_client["client"]
        resp = client.delete(f"/api/v1/users/{api_client['admin_id']}", headers=bearer(api_client["admin_token"]))
        assert resp.status_code == 400
