"""
Progress channel for dashboard consumers.

Events are appended to the ``pipeline_updates`` table and polled by the
dashboard. Delivery is best-effort: a storage failure is logged and never
interrupts the pipeline run.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from substack_intel.core.models import ProgressEvent, utcnow
from substack_intel.data.db import PipelineUpdateRecord, get_session

logger = structlog.get_logger(__name__)


class ProgressStore(Protocol):
    def set(self, tenant_id: str, event: ProgressEvent) -> None:
        ...

    def get(self, tenant_id: str, peek: bool = False) -> List[Dict[str, Any]]:
        ...

    def clear(self, tenant_id: str) -> None:
        ...


class DatabaseProgressStore:
    """``ProgressStore`` backed by the shared ``pipeline_updates`` table."""

    def __init__(self, engine, max_batch: int = 100):
        self._engine = engine
        self.max_batch = max_batch

    def set(self, tenant_id: str, event: ProgressEvent) -> None:
        try:
            with get_session(self._engine) as session:
                session.add(
                    PipelineUpdateRecord(
                        tenant_id=tenant_id,
                        update_data=event.to_payload(),
                        created_at=utcnow(),
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to write progress update", tenant_id=tenant_id, error=str(e))

    def get(self, tenant_id: str, peek: bool = False) -> List[Dict[str, Any]]:
        """Unconsumed updates, oldest first; marks them consumed unless ``peek``."""
        try:
            with get_session(self._engine) as session:
                rows = list(
                    session.exec(
                        select(PipelineUpdateRecord)
                        .where(
                            PipelineUpdateRecord.tenant_id == tenant_id,
                            PipelineUpdateRecord.consumed == False,  # noqa: E712
                        )
                        .order_by(PipelineUpdateRecord.id.asc())
                        .limit(self.max_batch)
                    )
                )
                updates = [dict(row.update_data) for row in rows]
                if rows and not peek:
                    session.exec(
                        update(PipelineUpdateRecord)
                        .where(PipelineUpdateRecord.id.in_([row.id for row in rows]))
                        .values(consumed=True)
                    )
                    session.commit()
                return updates
        except SQLAlchemyError as e:
            logger.warning("Failed to read progress updates", tenant_id=tenant_id, error=str(e))
            return []

    def latest(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        try:
            with get_session(self._engine) as session:
                row = session.exec(
                    select(PipelineUpdateRecord)
                    .where(PipelineUpdateRecord.tenant_id == tenant_id)
                    .order_by(PipelineUpdateRecord.id.desc())
                ).first()
                return dict(row.update_data) if row else None
        except SQLAlchemyError as e:
            logger.warning("Failed to read progress updates", tenant_id=tenant_id, error=str(e))
            return None

    def clear(self, tenant_id: str) -> None:
        try:
            with get_session(self._engine) as session:
                session.exec(delete(PipelineUpdateRecord).where(PipelineUpdateRecord.tenant_id == tenant_id))
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to clear progress updates", tenant_id=tenant_id, error=str(e))
