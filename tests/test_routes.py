"""HTTP tests for the login routes."""

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from scripts.create_user import create_user, unlock_user, validate_password

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user(runtime):
    result = create_user(runtime, "jane@example.com", PASSWORD, registered=True)
    return runtime.store.get_user(result["user_id"])


def _flash(client):
    response = client.get("/login")
    assert response.status_code == 200
    return response.json()["data"]["flash"]


class TestLoginPage:
    def test_no_users_redirects_to_setup(self, client):
        response = client.get("/login", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/setup"

    def test_renders_login_view(self, client, user):
        response = client.get("/login")
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["data"]["view"] == "auth.login"
        assert "gatehouse_session" in response.cookies

    def test_request_id_echoed(self, client, user):
        response = client.get("/login", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"


class TestPasswordLogin:
    def test_form_login_redirects_to_dashboard(self, client, user):
        response = client.post(
            "/login",
            data={"email": user.email, "password": PASSWORD},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/dashboard"
        # Authenticated sessions are sent home from the login page
        again = client.get("/login", follow_redirects=False)
        assert again.headers["location"] == "/"

    def test_json_login(self, client, user):
        response = client.post(
            "/login",
            json={"email": "JANE@example.com", "password": PASSWORD},
            follow_redirects=False,
        )
        assert response.headers["location"] == "/dashboard"

    def test_next_parameter_becomes_landing_page(self, client, user):
        client.get("/login?next=/reports")
        response = client.post(
            "/login",
            data={"email": user.email, "password": PASSWORD},
            follow_redirects=False,
        )
        assert response.headers["location"] == "/reports"

    def test_wrong_password_flashes_generic_error(self, client, user):
        response = client.post(
            "/login",
            data={"email": user.email, "password": "nope"},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/login"
        assert _flash(client) == {"error": "These credentials do not match our records."}
        # Read-once
        assert _flash(client) == {}

    def test_missing_field_is_validation_error(self, client, user):
        response = client.post("/login", data={"email": user.email})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_locked_user_unlocked_by_operator(self, client, runtime, user):
        runtime.lockout.max_failed_logins = 2
        for _ in range(2):
            client.post(
                "/login",
                data={"email": user.email, "password": "nope"},
                follow_redirects=False,
            )
        locked = client.post(
            "/login",
            data={"email": user.email, "password": PASSWORD},
            follow_redirects=False,
        )
        assert locked.headers["location"] == "/login"
        assert unlock_user(runtime, user.email)["status"] == "unlocked"
        ok = client.post(
            "/login",
            data={"email": user.email, "password": PASSWORD},
            follow_redirects=False,
        )
        assert ok.headers["location"] == "/dashboard"


class TestSecondFactorRoutes:
    def test_full_challenge_flow(self, client, runtime):
        result = create_user(
            runtime, "otp@example.com", PASSWORD, registered=True, enroll_second_factor=True
        )
        assert result["otpauth_uri"].startswith("otpauth://totp/")
        challenge_path = f"/validate_two_factor/{result['account_key']}"

        response = client.post(
            "/login",
            data={"email": "otp@example.com", "password": PASSWORD},
            follow_redirects=False,
        )
        assert response.headers["location"] == challenge_path

        view = client.get(challenge_path)
        assert view.json()["data"]["view"] == "auth.two_factor"

        code = runtime.challenges.current_code(result["user_id"])
        done = client.post(challenge_path, data={"totp": code}, follow_redirects=False)
        assert done.status_code == 303
        assert done.headers["location"] == "/dashboard"

    def test_challenge_without_pending_login(self, client):
        response = client.get("/validate_two_factor/whatever", follow_redirects=False)
        assert response.headers["location"] == "/login"


class TestLogoutRoutes:
    def test_logout_with_reason(self, client, user):
        client.post(
            "/login",
            data={"email": user.email, "password": PASSWORD},
            follow_redirects=False,
        )
        response = client.get("/logout?reason=inactive", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/"
        assert _flash(client) == {"warning": "You have been logged out due to inactivity."}

    def test_forced_logout_removes_trial_account(self, client, runtime):
        result = create_user(runtime, "trial@example.com", PASSWORD)
        client.post(
            "/login",
            data={"email": "trial@example.com", "password": PASSWORD},
            follow_redirects=False,
        )
        client.get("/logout?force_logout=1", follow_redirects=False)
        assert runtime.store.get_user(result["user_id"]) is None
        assert runtime.store.get_company(result["company_id"]) is None

    def test_unlink_requires_login(self, client):
        response = client.get("/auth_unlink", follow_redirects=False)
        assert response.headers["location"] == "/login"


class TestMisc:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "ok", "store": "MemoryStore", "redis": False}

    def test_unknown_oauth_provider(self, client):
        response = client.get("/auth/myspace", follow_redirects=False)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.parametrize(
        "password,ok",
        [("short", False), ("alllowercaseletters", False), ("CorrectHorse42!", True)],
    )
    def test_password_policy(self, password, ok):
        assert validate_password(password) is ok
