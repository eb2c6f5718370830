"""Tests for the per-tenant pipeline lock."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from substack_intel.core.exceptions import PipelineLockedError
from substack_intel.core.models import utcnow
from substack_intel.data.db import PipelineLockRecord, get_session
from substack_intel.services.lock import PipelineLock


def expire_lock(engine, tenant_id="default"):
    with get_session(engine) as session:
        session.exec(
            update(PipelineLockRecord)
            .where(PipelineLockRecord.tenant_id == tenant_id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        session.commit()


class TestPipelineLock:
    """Acquire, heartbeat, release and expiry."""

    def test_single_holder(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)

        assert lock.acquire("run-1") is True
        assert lock.acquire("run-2") is False
        assert lock.status()["owner"] == "run-1"

    def test_reacquire_by_owner(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)

        assert lock.acquire("run-1") is True
        assert lock.acquire("run-1") is True

    def test_release_frees_lock(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)
        lock.acquire("run-1")

        assert lock.release("run-2") is False
        assert lock.release("run-1") is True
        assert lock.status()["locked"] is False
        assert lock.acquire("run-2") is True

    def test_expired_lock_can_be_taken(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)
        lock.acquire("crashed-run")
        expire_lock(engine)

        assert lock.status()["locked"] is False
        assert lock.acquire("run-2") is True
        assert lock.status()["owner"] == "run-2"

    def test_heartbeat_extends_expiry(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)
        lock.acquire("run-1")
        expire_lock(engine)

        assert lock.heartbeat("run-1") is True
        assert lock.status()["locked"] is True
        assert lock.heartbeat("run-2") is False

    def test_tenants_are_independent(self, engine):
        assert PipelineLock(engine, "tenant-a").acquire("run-1") is True
        assert PipelineLock(engine, "tenant-b").acquire("run-2") is True

    def test_force_unlock(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)
        lock.acquire("run-1")

        assert lock.force_unlock() is True
        assert lock.force_unlock() is False
        assert lock.acquire("run-2") is True

    def test_status_when_held(self, engine):
        lock = PipelineLock(engine, ttl_seconds=120)
        lock.acquire("run-1")

        status = lock.status()

        assert status["locked"] is True
        assert 0 < status["seconds_remaining"] <= 120
        assert 0 < lock.retry_after() <= 120

    def test_retry_after_defaults_to_ttl(self, engine):
        assert PipelineLock(engine, ttl_seconds=90).retry_after() == 90


class TestHold:
    """Context manager used by the orchestrator."""

    def test_hold_releases_on_exit(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)

        with lock.hold("run-1"):
            assert lock.status()["owner"] == "run-1"
        assert lock.status()["locked"] is False

    def test_hold_releases_on_error(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)

        with pytest.raises(RuntimeError):
            with lock.hold("run-1"):
                raise RuntimeError("boom")
        assert lock.status()["locked"] is False

    def test_hold_when_locked(self, engine):
        lock = PipelineLock(engine, ttl_seconds=60)
        lock.acquire("run-1")

        with pytest.raises(PipelineLockedError) as exc_info:
            with lock.hold("run-2"):
                pass
        assert 0 < exc_info.value.retry_after <= 60
        assert lock.status()["owner"] == "run-1"
