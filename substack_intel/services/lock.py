"""Per-tenant pipeline lock with a TTL."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, Optional

import structlog
from sqlalchemy import delete, or_, update
from sqlmodel import select

from substack_intel.core.exceptions import PipelineLockedError
from substack_intel.core.models import utcnow
from substack_intel.data.db import PipelineLockRecord, get_session, upsert_insert

logger = structlog.get_logger(__name__)


class PipelineLock:
    """
    At most one active pipeline run per tenant.

    The lock is a row in ``pipeline_locks`` that expires after
    ``ttl_seconds`` unless the holder heartbeats. A crashed run therefore
    blocks the tenant for at most one TTL.
    """

    def __init__(self, engine, tenant_id: str = "default", ttl_seconds: int = 300):
        self._engine = engine
        self.tenant_id = tenant_id
        self.ttl_seconds = ttl_seconds

    def acquire(self, owner: str) -> bool:
        """Take the lock if it is free, expired or already ours."""
        now = utcnow()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        with get_session(self._engine) as session:
            insert_stmt = upsert_insert(session, PipelineLockRecord).values(
                tenant_id=self.tenant_id,
                owner=owner,
                acquired_at=now,
                heartbeat_at=now,
                expires_at=expires_at,
            )
            excluded = insert_stmt.excluded
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=["tenant_id"],
                set_={
                    "owner": excluded.owner,
                    "acquired_at": excluded.acquired_at,
                    "heartbeat_at": excluded.heartbeat_at,
                    "expires_at": excluded.expires_at,
                },
                where=or_(
                    PipelineLockRecord.expires_at < now,
                    PipelineLockRecord.owner == owner,
                ),
            )
            acquired = bool(session.exec(stmt).rowcount)
            session.commit()

        if acquired:
            logger.info("Pipeline lock acquired", tenant_id=self.tenant_id, owner=owner)
        else:
            logger.info("Pipeline lock held by another run", tenant_id=self.tenant_id, owner=owner)
        return acquired

    def heartbeat(self, owner: str) -> bool:
        now = utcnow()
        with get_session(self._engine) as session:
            result = session.exec(
                update(PipelineLockRecord)
                .where(
                    PipelineLockRecord.tenant_id == self.tenant_id,
                    PipelineLockRecord.owner == owner,
                )
                .values(heartbeat_at=now, expires_at=now + timedelta(seconds=self.ttl_seconds))
            )
            session.commit()
            return bool(result.rowcount)

    def release(self, owner: str) -> bool:
        with get_session(self._engine) as session:
            result = session.exec(
                delete(PipelineLockRecord).where(
                    PipelineLockRecord.tenant_id == self.tenant_id,
                    PipelineLockRecord.owner == owner,
                )
            )
            session.commit()
            released = bool(result.rowcount)
        if released:
            logger.info("Pipeline lock released", tenant_id=self.tenant_id, owner=owner)
        return released

    def force_unlock(self) -> bool:
        """Operator action: drop the lock whoever holds it."""
        with get_session(self._engine) as session:
            result = session.exec(
                delete(PipelineLockRecord).where(PipelineLockRecord.tenant_id == self.tenant_id)
            )
            session.commit()
            removed = bool(result.rowcount)
        logger.warning("Pipeline lock force-released", tenant_id=self.tenant_id, removed=removed)
        return removed

    def status(self) -> Dict[str, Any]:
        with get_session(self._engine) as session:
            row: Optional[PipelineLockRecord] = session.exec(
                select(PipelineLockRecord).where(PipelineLockRecord.tenant_id == self.tenant_id)
            ).first()

        now = utcnow()
        if row is None or row.expires_at <= now:
            return {"locked": False, "owner": None, "acquired_at": None, "expires_at": None, "seconds_remaining": 0}
        return {
            "locked": True,
            "owner": row.owner,
            "acquired_at": row.acquired_at.isoformat(),
            "expires_at": row.expires_at.isoformat(),
            "seconds_remaining": int((row.expires_at - now).total_seconds()),
        }

    def retry_after(self) -> int:
        remaining = self.status()["seconds_remaining"]
        return remaining or self.ttl_seconds

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        """Acquire for the duration of the block or raise ``PipelineLockedError``."""
        if not self.acquire(owner):
            raise PipelineLockedError(
                f"Pipeline already running for tenant {self.tenant_id}",
                retry_after=self.retry_after(),
                details={"tenant_id": self.tenant_id},
            )
        try:
            yield
        finally:
            self.release(owner)
