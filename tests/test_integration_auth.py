"""End-to-end authentication flows over HTTP.

Covers registration, risk-based login with email approval, account locks,
token refresh, logout, password reset and the admin surfaces.
"""

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from blogauth import app as app_module
from blogauth.service.runtime import reset_runtime_for_tests
from blogauth.service.tokens import TokenService
from blogauth.storage.models import ROLE_ADMIN

ALICE_IP = {"X-Forwarded-For": "1.2.3.4"}
ADMIN_IP = {"X-Forwarded-For": "10.9.8.7"}
PASSWORD = "Password1!"


@pytest.fixture
def runtime(clock):
    return reset_runtime_for_tests(clock=clock)


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


@pytest.fixture
def admin_client(runtime):
    return TestClient(app_module.app)


def register(client, username, email, headers):
    response = client.post(
        "/api/auth/register",
        json={"username": username, "email": email, "password": PASSWORD},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["user"]


def latest_challenge_token(runtime, account_id):
    return runtime.store.list_pending_challenges(account_id)[-1].token


def verified_login(client, runtime, email, headers):
    """Log in, approving the emailed challenge when one is raised."""
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD}, headers=headers)
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    if data["requires_verification"]:
        token = latest_challenge_token(runtime, data["user_id"])
        approved = client.post("/api/auth/verify-2fa-email", json={"token": token, "action": "approve"})
        assert approved.status_code == 200, approved.text
        return approved.json()["data"]["user"]
    return data["user"]


@pytest.fixture
def alice(client):
    return register(client, "alice", "alice@example.com", ALICE_IP)


@pytest.fixture
def admin(admin_client, runtime):
    user = register(admin_client, "admin", "admin@example.com", ADMIN_IP)
    runtime.store.update_account(user["id"], role_id=ROLE_ADMIN)
    # Fresh login so the access token carries the admin role
    return verified_login(admin_client, runtime, "admin@example.com", ADMIN_IP)


class TestRegistration:
    def test_register_starts_session(self, client, alice):
        assert alice["username"] == "alice"
        assert alice["role"] == "user"
        assert alice["last_login_at"] is None
        assert "password_hash" not in alice
        me = client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"

    def test_cookies_are_http_only(self, runtime):
        client = TestClient(app_module.app)
        response = client.post(
            "/api/auth/register",
            json={"username": "carol", "email": "carol@example.com", "password": PASSWORD},
        )
        cookies = response.headers.get_list("set-cookie")
        assert {c.split("=", 1)[0] for c in cookies} == {"access_token", "refresh_token"}
        for cookie in cookies:
            lowered = cookie.lower()
            assert "httponly" in lowered
            assert "samesite=lax" in lowered
            assert "path=/" in lowered

    def test_duplicate_email_is_400(self, client, alice):
        response = client.post(
            "/api/auth/register",
            json={"username": "alice2", "email": "ALICE@example.com", "password": PASSWORD},
            headers=ALICE_IP,
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "email"}


class TestRiskBasedLogin:
    def test_first_login_requires_verification(self, client, runtime, alice, clock):
        response = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires_verification"] is True
        assert data["user_id"] == alice["id"]
        assert "user" not in data
        assert "set-cookie" not in response.headers

        challenges = runtime.store.list_pending_challenges(alice["id"])
        assert len(challenges) == 1
        assert challenges[0].expires_at == clock() + timedelta(minutes=5)
        assert datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00")) == challenges[0].expires_at

    def test_approve_creates_session_and_records_ip(self, runtime, alice):
        fresh = TestClient(app_module.app)
        response = fresh.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        token = latest_challenge_token(runtime, response.json()["data"]["user_id"])

        # The link is opened from a different network than the login
        approved = fresh.post(
            "/api/auth/verify-2fa-email",
            json={"token": token, "action": "approve"},
            headers={"X-Forwarded-For": "5.5.5.5"},
        )
        assert approved.status_code == 200
        data = approved.json()["data"]
        assert data["approved"] is True
        assert data["user"]["id"] == alice["id"]
        assert set(fresh.cookies.keys()) >= {"access_token", "refresh_token"}
        assert runtime.store.get_account_by_id(alice["id"]).last_login_ip == "1.2.3.4"
        assert fresh.get("/api/auth/me").status_code == 200

        reused = fresh.post("/api/auth/verify-2fa-email", json={"token": token, "action": "approve"})
        assert reused.status_code == 401

    def test_second_login_from_same_ip_is_direct(self, client, runtime, alice):
        verified_login(client, runtime, "alice@example.com", ALICE_IP)
        response = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        data = response.json()["data"]
        assert data["requires_verification"] is False
        assert data["user"]["id"] == alice["id"]
        assert "access_token" in response.headers.get("set-cookie", "")

    def test_new_ip_or_stale_login_steps_up_again(self, client, runtime, alice, clock):
        verified_login(client, runtime, "alice@example.com", ALICE_IP)
        moved = client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"X-Forwarded-For": "1.2.3.5"},
        )
        assert moved.json()["data"]["requires_verification"] is True

        clock.advance(days=31)
        stale = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert stale.json()["data"]["requires_verification"] is True

    def test_reject_creates_no_session(self, runtime, alice):
        fresh = TestClient(app_module.app)
        response = fresh.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        token = latest_challenge_token(runtime, alice["id"])
        rejected = fresh.post("/api/auth/verify-2fa-email", json={"token": token, "action": "reject"})
        assert rejected.status_code == 200
        assert rejected.json()["data"]["approved"] is False
        assert "set-cookie" not in rejected.headers
        assert runtime.store.get_account_by_id(alice["id"]).last_login_ip is None
        assert response.json()["data"]["requires_verification"] is True

    def test_expired_link_is_401(self, client, runtime, alice, clock):
        client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP)
        token = latest_challenge_token(runtime, alice["id"])
        clock.advance(minutes=6)
        response = client.post("/api/auth/verify-2fa-email", json={"token": token, "action": "approve"})
        assert response.status_code == 401
        assert runtime.store.list_pending_challenges(alice["id"]) == []

    def test_bad_credentials_are_indistinguishable(self, client, alice):
        wrong_password = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": "Wrong-pass1"}, headers=ALICE_IP
        )
        unknown_email = client.post(
            "/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.json()["error"] == unknown_email.json()["error"]

    def test_login_is_rate_limited(self, client, runtime, alice):
        limit = runtime.settings.login_rate_limit_per_minute
        for _ in range(limit):
            response = client.post(
                "/api/auth/login", json={"email": "alice@example.com", "password": "Wrong-pass1"}, headers=ALICE_IP
            )
            assert response.status_code == 401
        blocked = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"]["details"]["retry_after"] >= 1

    def test_captcha_enforced_when_configured(self, monkeypatch, clock):
        monkeypatch.setenv("TURNSTILE_SECRET_KEY", "turnstile-secret")
        reset_runtime_for_tests(clock=clock)
        client = TestClient(app_module.app)
        response = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"error_codes": ["missing-input-response"]}


class TestAccountLocks:
    def test_lock_blocks_login_until_unlocked(self, client, admin_client, runtime, admin, alice, clock):
        verified_login(client, runtime, "alice@example.com", ALICE_IP)
        until = clock() + timedelta(hours=1)
        locked = admin_client.post(
            f"/api/users/{alice['id']}/lock",
            json={"locked_until": until.isoformat(), "lock_reason": "spam"},
            headers=ADMIN_IP,
        )
        assert locked.status_code == 200, locked.text
        assert locked.json()["data"]["lock_reason"] == "spam"

        refused = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert refused.status_code == 403
        error = refused.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["locked_until"] == until.isoformat()
        assert until.isoformat() in error["message"]

        # Refresh is refused too while the lock holds
        assert client.post("/api/auth/refresh").status_code == 403

        unlocked = admin_client.post(f"/api/users/{alice['id']}/unlock", headers=ADMIN_IP)
        assert unlocked.status_code == 200
        assert unlocked.json()["data"]["locked_until"] is None

        again = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert again.status_code == 200
        assert again.json()["data"]["requires_verification"] is False

    def test_lock_expires_on_its_own(self, client, admin_client, runtime, admin, alice, clock):
        admin_client.post(
            f"/api/users/{alice['id']}/lock",
            json={"locked_until": (clock() + timedelta(hours=1)).isoformat(), "lock_reason": "cool off"},
        )
        clock.advance(hours=1, seconds=1)
        response = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert response.status_code == 200
        assert runtime.store.get_account_by_id(alice["id"]).locked_until is None

    def test_lock_in_the_past_is_400(self, admin_client, admin, alice, clock):
        response = admin_client.post(
            f"/api/users/{alice['id']}/lock",
            json={"locked_until": (clock() - timedelta(minutes=1)).isoformat(), "lock_reason": "late"},
        )
        assert response.status_code == 400

    def test_lock_unknown_account_is_404(self, admin_client, admin, clock):
        response = admin_client.post(
            "/api/users/9999/lock",
            json={"locked_until": (clock() + timedelta(hours=1)).isoformat(), "lock_reason": "x"},
        )
        assert response.status_code == 404

    def test_non_admin_is_forbidden(self, client, alice, clock):
        response = client.post(
            f"/api/users/{alice['id']}/lock",
            json={"locked_until": (clock() + timedelta(hours=1)).isoformat(), "lock_reason": "self"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, runtime, alice):
        anonymous = TestClient(app_module.app)
        assert anonymous.post(f"/api/users/{alice['id']}/unlock").status_code == 401


class TestTokenLifecycle:
    def test_refresh_issues_new_access_cookie(self, client, alice):
        response = client.post("/api/auth/refresh")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["expires_in"] == 15 * 60
        assert "access_token=" in response.headers["set-cookie"]

    def test_refresh_without_cookie_is_400(self, runtime):
        response = TestClient(app_module.app).post("/api/auth/refresh")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "refresh token missing"

    def test_refresh_with_bad_signature_is_401(self, runtime, clock):
        forger = TokenService(
            access_secret="forged-access-secret-000000000000",
            refresh_secret="forged-refresh-secret-00000000000",
            issuer=runtime.settings.jwt_issuer,
            audience=runtime.settings.jwt_audience,
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        client = TestClient(app_module.app)
        client.cookies.set("refresh_token", forger.issue_refresh(1).token)
        assert client.post("/api/auth/refresh").status_code == 401

    def test_expired_access_token_is_rejected(self, client, alice, clock):
        clock.advance(minutes=16)
        assert client.get("/api/auth/me").status_code == 401
        assert client.post("/api/auth/refresh").status_code == 200
        assert client.get("/api/auth/me").status_code == 200

    def test_expired_refresh_grant_is_deleted(self, client, runtime, alice, clock):
        refresh_token = client.cookies.get("refresh_token")
        clock.advance(days=7, seconds=1)
        assert client.post("/api/auth/refresh").status_code == 401
        assert runtime.store.get_refresh_token(refresh_token) is None

    def test_logout_revokes_refresh_token(self, client, runtime, alice):
        refresh_token = client.cookies.get("refresh_token")
        assert runtime.store.get_refresh_token(refresh_token) is not None
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert runtime.store.get_refresh_token(refresh_token) is None
        assert client.get("/api/auth/me").status_code == 401

    def test_authorization_header_is_ignored(self, client, runtime, alice):
        access_token = client.cookies.get("access_token")
        bare = TestClient(app_module.app)
        response = bare.get("/api/auth/me", headers={"Authorization": f"Bearer {access_token}"})
        assert response.status_code == 401


class TestPasswordReset:
    def test_reset_flow(self, client, runtime, alice, monkeypatch):
        links = []

        def capture(to_email, username, reset_link, *, expires_minutes):
            links.append(reset_link)
            return True

        monkeypatch.setattr(runtime.email, "send_password_reset", capture)
        known = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"}, headers=ALICE_IP)
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"}, headers=ALICE_IP)
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(links) == 1

        token = parse_qs(urlparse(links[0]).query)["token"][0]
        refresh_token = client.cookies.get("refresh_token")
        reset = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "N3w-password!"}, headers=ALICE_IP
        )
        assert reset.status_code == 200
        assert runtime.store.get_refresh_token(refresh_token) is None

        old = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}, headers=ALICE_IP
        )
        assert old.status_code == 401
        new = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": "N3w-password!"}, headers=ALICE_IP
        )
        assert new.status_code == 200

        replay = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "Another-pass1"}, headers=ALICE_IP
        )
        assert replay.status_code == 401


class TestProfilesAndAdmin:
    def test_public_profile_hides_contact_details(self, client, runtime, alice):
        anonymous = TestClient(app_module.app).get(f"/api/users/{alice['id']}")
        assert anonymous.status_code == 200
        assert "email" not in anonymous.json()["data"]

        own = client.get(f"/api/users/{alice['id']}")
        assert own.json()["data"]["email"] == "alice@example.com"

        assert client.get("/api/users/9999").status_code == 404

    def test_admin_lists_users_and_audit_log(self, admin_client, admin, alice, clock):
        users = admin_client.get("/api/users")
        assert users.status_code == 200
        assert {u["username"] for u in users.json()["data"]} == {"admin", "alice"}

        admin_client.post(
            f"/api/users/{alice['id']}/lock",
            json={"locked_until": (clock() + timedelta(hours=1)).isoformat(), "lock_reason": "spam"},
        )
        locked = admin_client.get("/api/users", params={"locked": "true"})
        assert [u["id"] for u in locked.json()["data"]] == [alice["id"]]

        log = admin_client.get("/api/admin/audit-log", params={"action": "register"})
        assert log.status_code == 200
        assert {e["username"] for e in log.json()["data"]} == {"admin", "alice"}

        stats = admin_client.get("/api/admin/audit-log/stats").json()["data"]
        assert stats["registrations"] == 2
        assert stats["pending_logins"] == 1

    def test_audit_log_requires_admin(self, client, alice):
        assert client.get("/api/admin/audit-log").status_code == 403


class TestMalformedCookies:
    """Cookies that cannot be tokens behave like missing or invalid ones."""

    @staticmethod
    def _forged_cookie(name, token):
        header, payload, _ = token.split(".")
        return f"{name}={header}.{payload}.é".encode("utf-8")

    def test_non_ascii_access_cookie(self, client, runtime, alice):
        cookie = self._forged_cookie("access_token", client.cookies.get("access_token"))
        bare = TestClient(app_module.app)

        assert bare.get("/api/auth/me", headers={"Cookie": cookie}).status_code == 401
        profile = bare.get(f"/api/users/{alice['id']}", headers={"Cookie": cookie})
        assert profile.status_code == 200
        assert "email" not in profile.json()["data"]

    def test_non_ascii_refresh_cookie(self, client, runtime, alice):
        cookie = self._forged_cookie("refresh_token", client.cookies.get("refresh_token"))
        response = TestClient(app_module.app).post("/api/auth/refresh", headers={"Cookie": cookie})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
