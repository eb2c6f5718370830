"""High-level persistence helpers for emails, companies and run history."""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from substack_intel.core.exceptions import InvalidTransitionError, StorageError
from substack_intel.core.models import (
    EmailStatus,
    NormalizedContent,
    PipelineRunResult,
    RawMessage,
    RunStatus,
    enum_value,
    transition_sources,
    utcnow,
)

from .db import (
    CompanyRecord,
    EmailRecord,
    MentionRecord,
    PipelineRunRecord,
    get_session,
    upsert_insert,
)

logger = structlog.get_logger(__name__)


class PipelineStore:
    """Tenant-scoped wrapper for the email, company and run tables."""

    def __init__(self, engine, tenant_id: str = "default") -> None:
        self._engine = engine
        self.tenant_id = tenant_id

    @property
    def engine(self):
        return self._engine

    def session(self) -> Session:
        return get_session(self._engine)

    def for_tenant(self, tenant_id: str) -> "PipelineStore":
        return PipelineStore(self._engine, tenant_id)

    # ------------------------------------------------------------------ #
    # Email ingestion
    # ------------------------------------------------------------------ #

    def save_messages(self, messages: Iterable[Tuple[RawMessage, NormalizedContent]]) -> int:
        """
        Insert fetched messages that are not stored yet.

        Existing rows are left untouched so a refetch never resets the
        status of an email that was already processed. Returns the number
        of new rows.
        """
        inserted = 0
        try:
            with self.session() as session:
                for raw, normalized in messages:
                    stmt = (
                        upsert_insert(session, EmailRecord)
                        .values(
                            tenant_id=self.tenant_id,
                            message_id=raw.message_id,
                            subject=raw.subject[:1000],
                            sender=raw.sender[:500],
                            newsletter_name=normalized.newsletter_name,
                            received_at=raw.received_at,
                            raw_content=raw.body,
                            clean_text=normalized.clean_text,
                            status=EmailStatus.UNPROCESSED.value,
                            created_at=utcnow(),
                        )
                        .on_conflict_do_nothing(index_elements=["tenant_id", "message_id"])
                    )
                    result = session.exec(stmt)
                    inserted += max(result.rowcount or 0, 0)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to save fetched messages", {"error": str(e)}) from e

        logger.info("Fetched messages saved", tenant_id=self.tenant_id, inserted=inserted)
        return inserted

    def get_email(self, email_id: int) -> Optional[EmailRecord]:
        with self.session() as session:
            email = session.get(EmailRecord, email_id)
            if email is None or email.tenant_id != self.tenant_id:
                return None
            return email

    def get_email_by_message_id(self, message_id: str) -> Optional[EmailRecord]:
        with self.session() as session:
            statement = select(EmailRecord).where(
                EmailRecord.tenant_id == self.tenant_id,
                EmailRecord.message_id == message_id,
            )
            return session.exec(statement).first()

    def select_unprocessed_batch(self, limit: int = 50) -> List[EmailRecord]:
        """Oldest unprocessed emails first."""
        with self.session() as session:
            statement = (
                select(EmailRecord)
                .where(
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.status == EmailStatus.UNPROCESSED.value,
                )
                .order_by(EmailRecord.received_at.asc(), EmailRecord.id.asc())
                .limit(max(1, limit))
            )
            return list(session.exec(statement))

    # ------------------------------------------------------------------ #
    # Status transitions
    # ------------------------------------------------------------------ #

    def _transition(self, email_id: int, target: EmailStatus, **values) -> int:
        sources = transition_sources(target)
        with self.session() as session:
            stmt = (
                update(EmailRecord)
                .where(
                    EmailRecord.id == email_id,
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.status.in_([s.value for s in sources]),
                )
                .values(status=target.value, **values)
            )
            result = session.exec(stmt)
            session.commit()
            return result.rowcount or 0

    def _current_status(self, email_id: int) -> Optional[str]:
        email = self.get_email(email_id)
        return email.status if email else None

    def mark_processing(self, email_id: int) -> bool:
        """
        Claim an unprocessed email.

        Returns False without changing anything when the email is in any
        other state, so a completed email is never processed twice.
        """
        claimed = self._transition(
            email_id,
            EmailStatus.PROCESSING,
            processing_started_at=utcnow(),
            error_message=None,
        )
        if not claimed:
            logger.debug(
                "Email not claimable, skipping", email_id=email_id, status=self._current_status(email_id)
            )
        return bool(claimed)

    def mark_completed(self, email_id: int) -> None:
        if not self._transition(email_id, EmailStatus.COMPLETED, processed_at=utcnow()):
            current = self._current_status(email_id)
            raise InvalidTransitionError(
                f"Email {email_id} cannot move from {current} to completed",
                current=current,
                target=EmailStatus.COMPLETED.value,
            )

    def mark_failed(self, email_id: int, error_message: str) -> None:
        if not self._transition(
            email_id,
            EmailStatus.FAILED,
            processed_at=utcnow(),
            error_message=(error_message or "Unknown error")[:2000],
        ):
            current = self._current_status(email_id)
            raise InvalidTransitionError(
                f"Email {email_id} cannot move from {current} to failed",
                current=current,
                target=EmailStatus.FAILED.value,
            )

    def reset_to_unprocessed(self, email_ids: Iterable[int]) -> int:
        """Release emails this process claimed but never finished."""
        ids = list(email_ids)
        if not ids:
            return 0
        with self.session() as session:
            stmt = (
                update(EmailRecord)
                .where(
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.id.in_(ids),
                    EmailRecord.status == EmailStatus.PROCESSING.value,
                )
                .values(status=EmailStatus.UNPROCESSED.value, processing_started_at=None)
            )
            result = session.exec(stmt)
            session.commit()
            return result.rowcount or 0

    def reset_failed(self, email_ids: Optional[Iterable[int]] = None) -> int:
        """Operator action: put failed emails back in the queue."""
        with self.session() as session:
            stmt = update(EmailRecord).where(
                EmailRecord.tenant_id == self.tenant_id,
                EmailRecord.status == EmailStatus.FAILED.value,
            )
            if email_ids is not None:
                stmt = stmt.where(EmailRecord.id.in_(list(email_ids)))
            stmt = stmt.values(
                status=EmailStatus.UNPROCESSED.value,
                error_message=None,
                processed_at=None,
                processing_started_at=None,
            )
            result = session.exec(stmt)
            session.commit()
            count = result.rowcount or 0

        logger.info("Failed emails reset to unprocessed", tenant_id=self.tenant_id, count=count)
        return count

    def reset_stuck_processing(self, older_than: timedelta) -> int:
        """Recover emails left in processing by a crashed run."""
        cutoff = utcnow() - older_than
        with self.session() as session:
            stmt = (
                update(EmailRecord)
                .where(
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.status == EmailStatus.PROCESSING.value,
                    (EmailRecord.processing_started_at == None)  # noqa: E711
                    | (EmailRecord.processing_started_at < cutoff),
                )
                .values(status=EmailStatus.UNPROCESSED.value, processing_started_at=None)
            )
            result = session.exec(stmt)
            session.commit()
            count = result.rowcount or 0

        if count:
            logger.warning("Recovered emails stuck in processing", tenant_id=self.tenant_id, count=count)
        return count

    # ------------------------------------------------------------------ #
    # Stats
    # ------------------------------------------------------------------ #

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in EmailStatus}
        with self.session() as session:
            statement = (
                select(EmailRecord.status, func.count(EmailRecord.id))
                .where(EmailRecord.tenant_id == self.tenant_id)
                .group_by(EmailRecord.status)
            )
            for status, count in session.exec(statement):
                counts[status] = count
        return counts

    def newsletter_stats(self, recent_days: int = 7, top_window_days: int = 30, top_n: int = 10) -> Dict:
        now = utcnow()
        with self.session() as session:
            total = session.exec(
                select(func.count(EmailRecord.id)).where(EmailRecord.tenant_id == self.tenant_id)
            ).one()
            recent = session.exec(
                select(func.count(EmailRecord.id)).where(
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.received_at >= now - timedelta(days=recent_days),
                )
            ).one()
            top_rows = session.exec(
                select(EmailRecord.newsletter_name, func.count(EmailRecord.id).label("n"))
                .where(
                    EmailRecord.tenant_id == self.tenant_id,
                    EmailRecord.received_at >= now - timedelta(days=top_window_days),
                )
                .group_by(EmailRecord.newsletter_name)
                .order_by(func.count(EmailRecord.id).desc(), EmailRecord.newsletter_name.asc())
                .limit(top_n)
            ).all()

        return {
            "total_emails": total,
            "recent_emails": recent,
            "top_newsletters": [{"name": name, "count": count} for name, count in top_rows],
        }

    # ------------------------------------------------------------------ #
    # Companies and mentions
    # ------------------------------------------------------------------ #

    def get_company(self, company_id: int) -> Optional[CompanyRecord]:
        with self.session() as session:
            company = session.get(CompanyRecord, company_id)
            if company is None or company.tenant_id != self.tenant_id:
                return None
            return company

    def get_company_by_normalized_name(self, normalized_name: str) -> Optional[CompanyRecord]:
        with self.session() as session:
            statement = select(CompanyRecord).where(
                CompanyRecord.tenant_id == self.tenant_id,
                CompanyRecord.normalized_name == normalized_name,
            )
            return session.exec(statement).first()

    def list_companies(self, limit: int = 50) -> List[CompanyRecord]:
        with self.session() as session:
            statement = (
                select(CompanyRecord)
                .where(CompanyRecord.tenant_id == self.tenant_id)
                .order_by(CompanyRecord.mention_count.desc(), CompanyRecord.name.asc())
                .limit(limit)
            )
            return list(session.exec(statement))

    def list_mentions(
        self, company_id: Optional[int] = None, email_id: Optional[int] = None
    ) -> List[MentionRecord]:
        with self.session() as session:
            statement = select(MentionRecord).where(MentionRecord.tenant_id == self.tenant_id)
            if company_id is not None:
                statement = statement.where(MentionRecord.company_id == company_id)
            if email_id is not None:
                statement = statement.where(MentionRecord.email_id == email_id)
            return list(session.exec(statement.order_by(MentionRecord.id.asc())))

    def delete_company(self, company_id: int) -> bool:
        """Delete a company; its mentions go with it."""
        with self.session() as session:
            company = session.get(CompanyRecord, company_id)
            if company is None or company.tenant_id != self.tenant_id:
                return False
            session.delete(company)
            session.commit()
        logger.info("Company deleted", company_id=company_id)
        return True

    # ------------------------------------------------------------------ #
    # Run history
    # ------------------------------------------------------------------ #

    def record_run_start(self, result: PipelineRunResult) -> int:
        with self.session() as session:
            run = PipelineRunRecord(
                tenant_id=self.tenant_id,
                trigger=enum_value(result.trigger),
                status=RunStatus.RUNNING.value,
                started_at=result.started_at,
            )
            session.add(run)
            session.commit()
            session.refresh(run)
            return run.id

    def record_run_finish(self, run_id: int, result: PipelineRunResult) -> None:
        with self.session() as session:
            run = session.get(PipelineRunRecord, run_id)
            if run is None:
                return
            run.status = enum_value(result.status)
            run.completed_at = result.completed_at or utcnow()
            run.emails_fetched = result.emails_fetched
            run.emails_processed = result.emails_processed
            run.emails_completed = result.emails_completed
            run.emails_failed = result.emails_failed
            run.companies_extracted = result.companies_extracted
            run.new_companies = result.new_companies
            run.error_message = result.error_message
            run.details = dict(result.error_details)
            session.add(run)
            session.commit()

    def last_successful_run(self) -> Optional[PipelineRunRecord]:
        with self.session() as session:
            statement = (
                select(PipelineRunRecord)
                .where(
                    PipelineRunRecord.tenant_id == self.tenant_id,
                    PipelineRunRecord.status.in_(
                        [RunStatus.COMPLETED.value, RunStatus.PARTIAL.value]
                    ),
                    PipelineRunRecord.completed_at != None,  # noqa: E711
                )
                .order_by(PipelineRunRecord.completed_at.desc())
            )
            return session.exec(statement).first()

    def list_runs(self, limit: int = 10) -> List[PipelineRunRecord]:
        with self.session() as session:
            statement = (
                select(PipelineRunRecord)
                .where(PipelineRunRecord.tenant_id == self.tenant_id)
                .order_by(PipelineRunRecord.id.desc())
                .limit(limit)
            )
            return list(session.exec(statement))
