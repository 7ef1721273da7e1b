import pytest

from conftest import TEST_PASSWORD
from scripts.bootstrap_user import bootstrap_user


async def test_creates_verified_password_user(runtime):
    result = await bootstrap_user(runtime, " Ops@Example.com ", TEST_PASSWORD)
    assert result["status"] == "created"

    user = runtime.store.get_user_by_email("ops@example.com")
    assert user.id == result["user_id"]
    assert user.email_verified_at is not None
    assert await runtime.passwords.verify(user.password_hash, TEST_PASSWORD)


async def test_existing_unverified_user_is_marked_verified(runtime, make_user):
    user = make_user("late@example.com", verified=False)
    result = await bootstrap_user(runtime, "late@example.com", TEST_PASSWORD)
    assert result == {"user_id": user.id, "email": "late@example.com", "status": "verified"}
    assert runtime.store.get_user(user.id).email_verified_at is not None


async def test_verified_user_left_alone(runtime, make_user):
    make_user("done@example.com")
    result = await bootstrap_user(runtime, "done@example.com", TEST_PASSWORD)
    assert result["status"] == "already_verified"


async def test_dry_run_writes_nothing(runtime):
    result = await bootstrap_user(runtime, "new@example.com", TEST_PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.store.get_user_by_email("new@example.com") is None


async def test_weak_password_rejected(runtime):
    with pytest.raises(ValueError):
        await bootstrap_user(runtime, "weak@example.com", "password")
