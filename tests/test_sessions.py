"""Session registry: creation, listing, revocation and resolution."""

from unittest.mock import AsyncMock

import pytest

from trustcore.service.errors import (
    AuthenticationError,
    AuthorizationError,
    InfrastructureError,
    NotFoundError,
)
from trustcore.service.revocation import RevocationCache
from trustcore.service.sessions import SESSION_KIND, SessionRegistry
from trustcore.storage.common import hash_secret
from trustcore.storage.errors import CacheUnavailable, StoreUnavailable
from trustcore.storage.models import DeviceInfo


async def test_create_records_device_and_flags_current(runtime, make_user, store):
    user = make_user()
    first = await runtime.sessions.create_session(
        user.id, DeviceInfo(user_agent="laptop", ip_address="10.0.0.5")
    )
    second = await runtime.sessions.create_session(user.id, DeviceInfo(user_agent="phone"))

    assert first.session.token_hash == hash_secret(first.token)
    listed = runtime.sessions.list_sessions(user.id)
    assert {s.id for s in listed} == {first.session.id, second.session.id}
    current = [s for s in listed if s.is_current_session]
    assert [s.id for s in current] == [second.session.id]
    assert store.get_session(first.session.id).user_agent == "laptop"


async def test_revoke_own_session(runtime, make_user, clock, cache):
    user = make_user()
    issued = await runtime.sessions.create_session(user.id)

    revoked = await runtime.sessions.revoke(issued.session.id, user.id)
    assert revoked.revoked_at == clock()
    assert await cache.is_revoked(f"{SESSION_KIND}:{issued.session.token_hash}")
    assert runtime.sessions.list_sessions(user.id) == []


async def test_revoke_foreign_session_forbidden(runtime, make_user):
    owner = make_user("owner@example.com")
    other = make_user("other@example.com")
    issued = await runtime.sessions.create_session(owner.id)

    with pytest.raises(AuthorizationError):
        await runtime.sessions.revoke(issued.session.id, other.id)
    assert (await runtime.sessions.resolve(issued.token)).id == issued.session.id


async def test_revoke_unknown_or_revoked_is_not_found(runtime, make_user):
    user = make_user()
    with pytest.raises(NotFoundError):
        await runtime.sessions.revoke("no-such-session", user.id)

    issued = await runtime.sessions.create_session(user.id)
    await runtime.sessions.revoke(issued.session.id, user.id)
    with pytest.raises(NotFoundError):
        await runtime.sessions.revoke(issued.session.id, user.id)


async def test_revoke_all_except_current(runtime, make_user):
    user = make_user()
    keep = await runtime.sessions.create_session(user.id)
    others = [await runtime.sessions.create_session(user.id) for _ in range(3)]

    count = await runtime.sessions.revoke_all(user.id, except_session_id=keep.session.id)
    assert count == 3
    await runtime.sessions.resolve(keep.token)
    for issued in others:
        with pytest.raises(AuthenticationError):
            await runtime.sessions.resolve(issued.token)


async def test_publish_ttl_tracks_session_expiry(make_user, store, settings, clock):
    backend = AsyncMock()
    registry = SessionRegistry(store, RevocationCache(backend, clock=clock), settings, clock=clock)
    user = make_user()
    issued = await registry.create_session(user.id)

    clock.advance(days=1)
    await registry.revoke(issued.session.id, user.id)

    backend.set_revoked.assert_awaited_once_with(
        f"{SESSION_KIND}:{issued.session.token_hash}",
        (settings.session_ttl_days - 1) * 86400,
    )


async def test_expired_session_revocation_skips_publish(make_user, store, settings, clock):
    backend = AsyncMock()
    backend.is_revoked.return_value = False
    registry = SessionRegistry(store, RevocationCache(backend, clock=clock), settings, clock=clock)
    user = make_user()
    issued = await registry.create_session(user.id)

    clock.advance(days=settings.session_ttl_days + 1)
    await registry.revoke_all(user.id)
    backend.set_revoked.assert_not_awaited()
    with pytest.raises(AuthenticationError):
        await registry.resolve(issued.token)


class TestRevokedTokenDenied:
    async def test_denied_with_cache_reachable(self, runtime, make_user):
        user = make_user()
        issued = await runtime.sessions.create_session(user.id)
        await runtime.sessions.revoke(issued.session.id, user.id)

        with pytest.raises(AuthenticationError):
            await runtime.sessions.resolve(issued.token)

    async def test_denied_with_cache_down(self, make_user, store, settings, clock):
        backend = AsyncMock()
        backend.set_revoked.side_effect = CacheUnavailable("down")
        backend.is_revoked.side_effect = CacheUnavailable("down")
        registry = SessionRegistry(
            store, RevocationCache(backend, clock=clock), settings, clock=clock
        )
        user = make_user()
        issued = await registry.create_session(user.id)

        # the revoke still lands in the store when publishing fails
        await registry.revoke(issued.session.id, user.id)
        with pytest.raises(AuthenticationError):
            await registry.resolve(issued.token)
        backend.is_revoked.assert_awaited()

    async def test_cache_hit_denies_without_store(self, runtime, make_user, cache):
        user = make_user()
        issued = await runtime.sessions.create_session(user.id)
        await cache.set_revoked(f"{SESSION_KIND}:{issued.session.token_hash}", 60)

        with pytest.raises(AuthenticationError):
            await runtime.sessions.resolve(issued.token)


async def test_resolve_rejects_expired_and_unknown(runtime, make_user, clock, settings):
    user = make_user()
    issued = await runtime.sessions.create_session(user.id)
    with pytest.raises(AuthenticationError):
        await runtime.sessions.resolve("not-a-session")
    with pytest.raises(AuthenticationError):
        await runtime.sessions.resolve("")

    clock.advance(days=settings.session_ttl_days, seconds=1)
    with pytest.raises(AuthenticationError):
        await runtime.sessions.resolve(issued.token)


async def test_touch_updates_activity(runtime, make_user, clock, store):
    user = make_user()
    issued = await runtime.sessions.create_session(user.id)
    clock.advance(minutes=10)
    assert await runtime.sessions.touch(issued.token) is True
    assert store.get_session(issued.session.id).last_active_at == clock()


def _store_down(*args, **kwargs):
    raise StoreUnavailable("down")


async def test_store_outage_is_infrastructure_error(make_user, store, settings, clock, cache):
    registry = SessionRegistry(store, RevocationCache(cache, clock=clock), settings, clock=clock)
    user = make_user()
    issued = await registry.create_session(user.id)
    store.get_session_by_token_hash = _store_down

    with pytest.raises(InfrastructureError):
        await registry.resolve(issued.token)
    assert await registry.touch(issued.token) is True
