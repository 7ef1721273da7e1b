from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from trustcore.app import create_app
from trustcore.config import Settings
from trustcore.service.email import EmailService
from trustcore.service.jobs import LocalJobScheduler
from trustcore.service.runtime import Runtime, _mask_url_password, build_cache, build_store
from trustcore.storage.memory import MemoryStore
from trustcore.storage.memory_cache import MemoryCache


class TestLocalJobScheduler:
    async def test_runs_registered_handler(self, clock):
        jobs = LocalJobScheduler(clock=clock)
        seen = []

        async def handler(payload):
            seen.append(payload["n"])

        jobs.register("count", handler)
        await jobs.enqueue("count", {"n": 1})
        await jobs.drain()
        assert seen == [1]
        assert jobs.pending == 0

    async def test_delayed_job_waits(self, clock):
        jobs = LocalJobScheduler(clock=clock)
        seen = []

        async def handler(payload):
            seen.append(payload)

        jobs.register("later", handler)
        await jobs.enqueue("later", {}, run_at=clock() + timedelta(hours=1))
        await jobs.drain(timeout=0.05)
        assert seen == []
        assert jobs.pending == 1
        await jobs.close()
        assert jobs.pending == 0

    async def test_unknown_job_rejected(self, clock):
        with pytest.raises(KeyError):
            await LocalJobScheduler(clock=clock).enqueue("nope", {})

    async def test_failing_handler_does_not_escape(self, clock):
        jobs = LocalJobScheduler(clock=clock)

        async def boom(payload):
            raise RuntimeError("smtp exploded")

        jobs.register("boom", boom)
        await jobs.enqueue("boom", {})
        await jobs.drain()
        assert jobs.pending == 0


class TestWiring:
    def test_build_store_memory(self, settings):
        assert isinstance(build_store(settings), MemoryStore)

    def test_build_cache_falls_back_in_test_mode(self, settings):
        assert isinstance(build_cache(settings), MemoryCache)

    def test_build_cache_requires_redis_outside_test_mode(self):
        settings = Settings(redis_url=None, test_mode=False, allow_redis_fallback_dev=False)
        with pytest.raises(RuntimeError):
            build_cache(settings)

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None

    def test_email_service_is_built_once(self, runtime):
        first = runtime.email()
        assert isinstance(first, EmailService)
        assert runtime.email() is first
        assert first.is_configured is False

    async def test_close_releases_resources(self, runtime, cache):
        await cache.set_revoked("session:x", 60)
        await runtime.close()
        assert await cache.revoked_count() == 0

    def test_app_owns_runtime_when_not_given(self, settings):
        app = create_app(settings=settings)
        assert app.state.runtime is None
        with TestClient(app) as client:
            assert isinstance(app.state.runtime, Runtime)
            assert client.get("/healthz").json()["status"] == "healthy"
        assert app.state.runtime is None


def test_dev_mode_email_logs_without_link(monkeypatch):
    fake_logger = MagicMock()
    monkeypatch.setattr("trustcore.service.email.logger", fake_logger)
    service = EmailService(base_url="https://auth.example.com/")
    assert service.send_password_reset("alice@example.com", "raw-secret-token") is True

    event, = fake_logger.info.call_args.args
    fields = fake_logger.info.call_args.kwargs
    assert event == "email_dev_mode"
    assert fields["recipient"] == "al***@example.com"
    assert "raw-secret-token" not in repr(fields)
    assert service._link("/reset-password", "abc") == "https://auth.example.com/reset-password?token=abc"
