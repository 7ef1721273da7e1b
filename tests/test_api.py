"""HTTP surface: envelopes, status codes and the end-to-end flows."""

import pyotp
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD
from trustcore.app import create_app
from trustcore.service.errors import CREDENTIALS_MESSAGE
from trustcore.storage.errors import CacheUnavailable, StoreUnavailable


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def _login(client, email="alice@example.com", password=TEST_PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _signed_in(client, make_user, email="alice@example.com"):
    make_user(email)
    body = _login(client, email).json()
    return body["data"]["session_token"]


class TestEnvelope:
    def test_signup_created(self, client):
        resp = client.post(
            "/v1/auth/signup", json={"email": "New@Example.com", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "new@example.com"
        assert body["data"]["email_verified"] is False
        assert body["request_id"]

    def test_weak_password_is_validation_error(self, client):
        resp = client.post("/v1/auth/signup", json={"email": "a@example.com", "password": "short"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_duplicate_signup_conflict(self, client, make_user):
        make_user("taken@example.com")
        resp = client.post(
            "/v1/auth/signup", json={"email": "taken@example.com", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_bad_login_uniform_message_and_request_id(self, client, make_user):
        make_user()
        resp = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "Wrong-password-1!"},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"] == {
            "code": "unauthorized",
            "message": CREDENTIALS_MESSAGE,
            "details": None,
        }
        assert body["request_id"] == "req-123"
        assert resp.headers["X-Request-ID"] == "req-123"
        assert _login(client, "nobody@example.com").json()["error"]["message"] == CREDENTIALS_MESSAGE

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_missing_credentials(self, client):
        resp = client.get("/v1/sessions")
        assert resp.status_code == 401
        assert client.get("/v1/sessions", headers=_auth("bogus")).status_code == 401


class TestRateLimits:
    def test_login_limit_returns_429_with_headers(self, client, make_user, settings):
        make_user()
        for _ in range(settings.login_rate_limit):
            assert _login(client, password="Wrong-password-1!").status_code == 401

        resp = _login(client)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert resp.headers["X-RateLimit-Limit"] == str(settings.login_rate_limit)
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert int(resp.headers["Retry-After"]) == settings.login_rate_window_seconds
        assert "X-RateLimit-Reset" in resp.headers


class TestSessions:
    def test_login_sets_cookie_and_lists_session(self, client, make_user):
        make_user()
        resp = _login(client)
        assert resp.status_code == 200
        assert "session_token=" in resp.headers["set-cookie"]
        token = resp.json()["data"]["session_token"]

        sessions = client.get("/v1/sessions", headers=_auth(token)).json()["data"]["sessions"]
        assert len(sessions) == 1
        assert sessions[0]["is_current_session"] is True
        assert sessions[0]["is_this_device"] is True

    def test_revoke_other_device(self, client, make_user):
        token = _signed_in(client, make_user)
        other = _login(client).json()["data"]

        resp = client.delete(f"/v1/sessions/{other['session_id']}", headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"revoked": 1}
        assert client.get("/v1/sessions", headers=_auth(other["session_token"])).status_code == 401

    def test_revoke_foreign_and_unknown(self, client, make_user):
        mine = _signed_in(client, make_user, "mine@example.com")
        make_user("theirs@example.com")
        theirs = _login(client, "theirs@example.com")
        their_session = theirs.json()["data"]["session_id"]

        assert client.delete(f"/v1/sessions/{their_session}", headers=_auth(mine)).status_code == 403
        resp = client.delete("/v1/sessions/does-not-exist", headers=_auth(mine))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_revoke_all_keeps_caller(self, client, make_user):
        token = _signed_in(client, make_user)
        _login(client)
        _login(client)

        resp = client.post("/v1/sessions/revoke-all", headers=_auth(token))
        assert resp.json()["data"] == {"revoked": 2}
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 200

        resp = client.post(
            "/v1/sessions/revoke-all", json={"include_current": True}, headers=_auth(token)
        )
        assert resp.json()["data"] == {"revoked": 1}
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 401

    def test_logout(self, client, make_user):
        token = _signed_in(client, make_user)
        assert client.post("/v1/auth/logout", headers=_auth(token)).status_code == 200
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 401


class TestTwoFactorFlow:
    def test_enroll_verify_challenge_and_recover(self, client, make_user, clock):
        token = _signed_in(client, make_user)
        enrollment = client.post("/v1/auth/2fa/enroll", headers=_auth(token)).json()["data"]
        totp = pyotp.TOTP(enrollment["secret"])

        resp = client.post(
            "/v1/auth/2fa/verify", json={"code": totp.at(clock())}, headers=_auth(token)
        )
        codes = resp.json()["data"]["recovery_codes"]
        assert len(codes) == 16

        login = _login(client).json()["data"]
        assert login["requires_two_factor"] is True
        assert login["session_token"] is None

        resp = client.post(
            "/v1/auth/2fa/challenge",
            json={"ticket": login["pending_ticket"], "code": totp.at(clock())},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["session_token"]

        ticket = _login(client).json()["data"]["pending_ticket"]
        resp = client.post("/v1/auth/2fa/recovery", json={"ticket": ticket, "code": codes[0]})
        assert resp.status_code == 200

        status = client.get("/v1/auth/2fa/recovery-codes", headers=_auth(token)).json()["data"]
        assert (status["total"], status["used"], status["unused"]) == (16, 1, 15)

    def test_bad_code_is_unauthorized(self, client, make_user, clock):
        token = _signed_in(client, make_user)
        client.post("/v1/auth/2fa/enroll", headers=_auth(token))
        resp = client.post("/v1/auth/2fa/verify", json={"code": "000000"}, headers=_auth(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_disable(self, client, make_user, clock):
        token = _signed_in(client, make_user)
        secret = client.post("/v1/auth/2fa/enroll", headers=_auth(token)).json()["data"]["secret"]
        client.post(
            "/v1/auth/2fa/verify", json={"code": pyotp.TOTP(secret).at(clock())}, headers=_auth(token)
        )

        resp = client.post("/v1/auth/2fa/disable", json={"password": TEST_PASSWORD}, headers=_auth(token))
        assert resp.status_code == 200
        assert _login(client).json()["data"]["requires_two_factor"] is False


@pytest.fixture
def outbox(runtime, monkeypatch):
    """Collect (kind, to, token) for every mail the job queue sends."""
    sent = []
    service = runtime.email()
    for kind in ("verification", "password_reset", "account_deletion", "email_change"):
        monkeypatch.setattr(
            service,
            f"send_{kind}",
            lambda to, token, kind=kind: sent.append((kind, to, token)) or True,
        )
    return sent


def _delivered(client, runtime, outbox, kind):
    client.portal.call(runtime.jobs.drain)
    matching = [entry for entry in outbox if entry[0] == kind]
    assert matching, f"no {kind} mail sent"
    return matching[-1]


class TestAccountFlows:
    def test_signup_then_verify_email(self, client, runtime, outbox):
        client.post("/v1/auth/signup", json={"email": "fresh@example.com", "password": TEST_PASSWORD})
        assert _login(client, "fresh@example.com").status_code == 401

        _, to, token = _delivered(client, runtime, outbox, "verification")
        assert to == "fresh@example.com"
        resp = client.post("/v1/auth/verify-email", json={"token": token})
        assert resp.json()["data"]["email_verified"] is True
        assert _login(client, "fresh@example.com").status_code == 200

    def test_change_password_keeps_current_session(self, client, make_user):
        token = _signed_in(client, make_user)
        other = _login(client).json()["data"]["session_token"]

        resp = client.post(
            "/v1/auth/password/change",
            json={"current_password": TEST_PASSWORD, "new_password": "Brand-New-Secret-77"},
            headers=_auth(token),
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"revoked": 1}
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 200
        assert client.get("/v1/sessions", headers=_auth(other)).status_code == 401
        assert _login(client, password="Brand-New-Secret-77").status_code == 200

    def test_change_password_rejects_weak_and_wrong(self, client, make_user):
        token = _signed_in(client, make_user)
        weak = client.post(
            "/v1/auth/password/change",
            json={"current_password": TEST_PASSWORD, "new_password": "short"},
            headers=_auth(token),
        )
        assert weak.status_code == 400
        wrong = client.post(
            "/v1/auth/password/change",
            json={"current_password": "Wrong-password-1!", "new_password": "Brand-New-Secret-77"},
            headers=_auth(token),
        )
        assert wrong.status_code == 401

    def test_password_reset(self, client, runtime, make_user, outbox):
        make_user()
        resp = client.post("/v1/auth/password-reset/request", json={"email": "alice@example.com"})
        assert resp.status_code == 200
        _, _, token = _delivered(client, runtime, outbox, "password_reset")

        resp = client.post(
            "/v1/auth/password-reset",
            json={"token": token, "new_password": "Brand-New-Secret-77"},
        )
        assert resp.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="Brand-New-Secret-77").status_code == 200

        replay = client.post(
            "/v1/auth/password-reset",
            json={"token": token, "new_password": "Another-Secret-88"},
        )
        assert replay.status_code == 401

    def test_reset_request_is_uniform(self, client, make_user):
        make_user()
        known = client.post("/v1/auth/password-reset/request", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/password-reset/request", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_account_deletion(self, client, runtime, make_user, outbox):
        token = _signed_in(client, make_user)
        resp = client.post(
            "/v1/account/deletion/request", json={"password": TEST_PASSWORD}, headers=_auth(token)
        )
        assert resp.status_code == 200
        _, to, deletion_token = _delivered(client, runtime, outbox, "account_deletion")
        assert to == "alice@example.com"

        resp = client.post("/v1/account/deletion/confirm", json={"token": deletion_token})
        assert resp.status_code == 200
        assert resp.json()["data"]["delete_at"]
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 401
        assert _login(client).status_code == 401

    def test_email_change(self, client, runtime, make_user, outbox):
        token = _signed_in(client, make_user)
        resp = client.post(
            "/v1/account/email-change/request",
            json={"new_email": "moved@example.com", "password": TEST_PASSWORD},
            headers=_auth(token),
        )
        assert resp.status_code == 200
        _, to, change_token = _delivered(client, runtime, outbox, "email_change")
        assert to == "moved@example.com"

        resp = client.post("/v1/account/email-change/confirm", json={"token": change_token})
        assert resp.json()["data"]["email"] == "moved@example.com"
        assert _login(client, "moved@example.com").status_code == 200


class TestHealth:
    def test_healthy(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["cache"] == {
            "status": "healthy",
            "degraded": False,
            "backend": "MemoryCache",
        }
        assert body["revoked_entries"] == 0

    def test_cache_down_is_degraded(self, client, runtime, monkeypatch):
        async def down():
            raise CacheUnavailable("down")

        monkeypatch.setattr(runtime.cache, "ping", down)
        body = client.get("/healthz").json()
        assert body["status"] == "degraded"
        assert body["checks"]["cache"]["degraded"] is True
        assert body["revoked_entries"] is None

    def test_store_down_is_unhealthy(self, client, runtime, monkeypatch):
        def down():
            raise StoreUnavailable("down")

        monkeypatch.setattr(runtime.store, "verify_connection", down)
        assert client.get("/healthz").json()["status"] == "unhealthy"
