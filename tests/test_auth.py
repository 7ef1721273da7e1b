"""Password authentication through the facade and the authenticator."""

import pyotp
import pytest

from conftest import TEST_PASSWORD
from trustcore.service.errors import (
    CREDENTIALS_MESSAGE,
    AccountScheduledForDeletion,
    AccountUnverified,
    AuthenticationError,
    InvalidCodeError,
    InvalidCredentials,
    RateLimitedError,
    UserNotFound,
)
from trustcore.storage.models import DeviceInfo

DEVICE = DeviceInfo(user_agent="pytest", ip_address="198.51.100.20")


async def _enable_two_factor(runtime, user, clock):
    enrollment = await runtime.two_factor.enroll(user.id)
    await runtime.two_factor.verify_enrollment(
        user.id, pyotp.TOTP(enrollment.secret).at(clock())
    )
    return enrollment.secret


async def test_password_only_login_returns_session(runtime, make_user, store):
    user = make_user()
    result = await runtime.core.authenticate(user.email, TEST_PASSWORD, device=DEVICE)

    assert result.is_ok
    outcome = result.data
    assert outcome.requires_two_factor is False
    assert outcome.pending_ticket is None
    session = store.get_session(outcome.session.session.id)
    assert session.is_current_session
    assert session.ip_address == "198.51.100.20"


async def test_email_is_normalized(runtime, make_user):
    make_user("mixed@example.com")
    result = await runtime.core.authenticate("  MIXED@Example.com ", TEST_PASSWORD)
    assert result.is_ok


async def test_failures_share_one_message(runtime, make_user, clock):
    make_user("known@example.com")
    make_user("pending@example.com", verified=False)
    doomed = make_user("doomed@example.com")
    runtime.store.schedule_deletion(doomed.id, clock())

    cases = [
        ("nobody@example.com", TEST_PASSWORD, UserNotFound),
        ("known@example.com", "Wrong-password-9!", InvalidCredentials),
        ("pending@example.com", TEST_PASSWORD, AccountUnverified),
        ("doomed@example.com", TEST_PASSWORD, AccountScheduledForDeletion),
        ("not-an-email", TEST_PASSWORD, UserNotFound),
    ]
    for email, password, expected in cases:
        result = await runtime.core.authenticate(email, password)
        assert not result.is_ok
        assert isinstance(result.error, expected)
        assert result.error.message == CREDENTIALS_MESSAGE
        assert result.error.status_code == 401


async def test_federated_only_account_cannot_use_password(runtime, make_user):
    make_user("sso@example.com", password=None)
    result = await runtime.core.authenticate("sso@example.com", "")
    assert isinstance(result.error, InvalidCredentials)


async def test_unverified_login_allowed_when_not_required(runtime, make_user):
    runtime.settings.require_email_verification = False
    make_user("loose@example.com", verified=False)
    assert (await runtime.core.authenticate("loose@example.com", TEST_PASSWORD)).is_ok


async def test_login_rate_limited_per_ip(runtime, make_user, settings):
    make_user()
    for _ in range(settings.login_rate_limit):
        await runtime.core.authenticate("alice@example.com", "Wrong-password-9!", device=DEVICE)

    result = await runtime.core.authenticate("alice@example.com", TEST_PASSWORD, device=DEVICE)
    assert isinstance(result.error, RateLimitedError)
    other_ip = DeviceInfo(ip_address="198.51.100.21")
    assert (await runtime.core.authenticate("alice@example.com", TEST_PASSWORD, device=other_ip)).is_ok


class TestTwoFactorLogin:
    async def test_login_returns_pending_ticket(self, runtime, make_user, clock, store):
        user = make_user()
        await _enable_two_factor(runtime, user, clock)

        outcome = (await runtime.core.authenticate(user.email, TEST_PASSWORD)).unwrap()
        assert outcome.requires_two_factor
        assert outcome.session is None
        assert store.list_sessions(user.id, clock()) == []

    async def test_fourth_attempt_denied_before_code_check(self, runtime, make_user, clock, store):
        user = make_user()
        secret = await _enable_two_factor(runtime, user, clock)
        ticket = (await runtime.core.authenticate(user.email, TEST_PASSWORD)).unwrap().pending_ticket

        for _ in range(3):
            result = await runtime.core.challenge_two_factor(ticket, "000000")
            assert isinstance(result.error, InvalidCodeError)

        correct = pyotp.TOTP(secret).at(clock())
        result = await runtime.core.challenge_two_factor(ticket, correct)
        assert isinstance(result.error, RateLimitedError)
        assert store.list_sessions(user.id, clock()) == []

        clock.advance(minutes=5)
        result = await runtime.core.challenge_two_factor(ticket, pyotp.TOTP(secret).at(clock()))
        assert isinstance(result.error, InvalidCodeError)  # ticket outlived its five minutes

    async def test_full_two_factor_login(self, runtime, make_user, clock):
        user = make_user()
        secret = await _enable_two_factor(runtime, user, clock)
        ticket = (await runtime.core.authenticate(user.email, TEST_PASSWORD)).unwrap().pending_ticket

        issued = (
            await runtime.core.challenge_two_factor(
                ticket, pyotp.TOTP(secret).at(clock()), device=DEVICE
            )
        ).unwrap()
        assert (await runtime.sessions.resolve(issued.token)).user_id == user.id


class TestFederatedLogin:
    async def test_mints_session(self, runtime, make_user):
        user = make_user("oauth@example.com", password=None)
        issued = (await runtime.core.authenticate_federated(user.id, device=DEVICE)).unwrap()
        assert issued.session.is_current_session
        assert issued.session.user_agent == "pytest"

    async def test_respects_account_state(self, runtime, make_user, clock):
        user = make_user("oauth-doomed@example.com", password=None)
        runtime.store.schedule_deletion(user.id, clock())
        result = await runtime.core.authenticate_federated(user.id)
        assert isinstance(result.error, AuthenticationError)

    async def test_unknown_user(self, runtime):
        result = await runtime.core.authenticate_federated("missing")
        assert isinstance(result.error, UserNotFound)


async def test_unknown_user_still_hashes(runtime, monkeypatch):
    calls = []
    original = runtime.passwords.verify_dummy

    async def spy(password):
        calls.append(password)
        await original(password)

    monkeypatch.setattr(runtime.passwords, "verify_dummy", spy)
    with pytest.raises(UserNotFound):
        await runtime.authenticator.authenticate("ghost@example.com", "whatever")
    assert calls == ["whatever"]
