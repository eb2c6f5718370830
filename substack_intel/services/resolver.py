"""
Company resolution and mention recording.

Maps extraction candidates onto deduplicated company rows and records one
mention per (email, company) pair. Every resolution runs in its own short
transaction built from atomic upserts, so concurrent runs that discover
the same company converge on a single row.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from substack_intel.core.exceptions import DedupConflictError, StorageError, ValidationError
from substack_intel.core.models import (
    EnrichmentStatus,
    ExtractionCandidate,
    FundingStatus,
    ResolutionResult,
    enum_value,
    utcnow,
)
from substack_intel.data.db import (
    CompanyRecord,
    EmailRecord,
    MentionRecord,
    get_session,
    upsert_insert,
)
from substack_intel.intelligence.embeddings import enqueue_embedding
from substack_intel.intelligence.names import normalize_company_name
from substack_intel.utils.reliability import RetryPolicy

logger = structlog.get_logger(__name__)


def dedupe_candidates(candidates: Iterable[ExtractionCandidate]) -> List[ExtractionCandidate]:
    """One candidate per normalized name, highest confidence wins, first-seen order."""
    best: Dict[str, ExtractionCandidate] = {}
    for candidate in candidates:
        key = normalize_company_name(candidate.name)
        if not key:
            continue
        current = best.get(key)
        if current is None or candidate.confidence > current.confidence:
            best[key] = candidate
    return list(best.values())


def _merge_tags(existing: Optional[List[str]], incoming: Iterable[str]) -> List[str]:
    merged = list(existing or [])
    for tag in incoming:
        if tag and tag not in merged:
            merged.append(tag)
    return merged


class CompanyResolver:
    """
    Resolve candidates to companies and record mentions.

    Args:
        engine: SQLAlchemy engine shared with the store
        tenant_id: Tenant whose companies are touched
        retry_policy: Policy retrying conflicting upserts
        queue_embeddings: Queue new companies for embedding generation
    """

    def __init__(
        self,
        engine,
        tenant_id: str = "default",
        retry_policy: Optional[RetryPolicy] = None,
        queue_embeddings: bool = True,
    ):
        self._engine = engine
        self.tenant_id = tenant_id
        self.retry_policy = retry_policy or RetryPolicy(
            "resolver", max_attempts=2, base_delay=0.1, retryable=(IntegrityError,)
        )
        self.queue_embeddings = queue_embeddings

    def session(self) -> Session:
        return get_session(self._engine)

    def resolve_and_record(
        self, candidate: ExtractionCandidate, email_id: int, newsletter_name: str = "Unknown"
    ) -> ResolutionResult:
        """
        Upsert the candidate's company and record its mention.

        Re-running with the same (email, candidate) is a no-op apart from
        ``last_updated_at``: the mention is not duplicated and aggregates are
        recomputed from the mention rows.

        Raises:
            ValidationError: Candidate has no usable name or the email is unknown
            DedupConflictError: Upsert still conflicting after the retry
            StorageError: Any other database failure
        """
        normalized = normalize_company_name(candidate.name)
        if not normalized:
            raise ValidationError("Candidate has no usable company name", {"name": candidate.name})

        try:
            result = self.retry_policy.call(
                self._resolve_once, candidate, normalized, email_id, newsletter_name
            )
        except IntegrityError as e:
            raise DedupConflictError(
                f"Company upsert for '{normalized}' kept conflicting",
                {"normalized_name": normalized, "email_id": email_id, "error": str(e.orig)},
            ) from e
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to record mention of '{normalized}'",
                {"normalized_name": normalized, "email_id": email_id, "error": str(e)},
            ) from e

        logger.debug(
            "Company resolved",
            company_id=result.company_id,
            normalized_name=normalized,
            is_new=result.is_new_company,
            mention_created=result.mention_created,
        )
        return result

    def resolve_candidates(
        self, candidates: Iterable[ExtractionCandidate], email_id: int, newsletter_name: str = "Unknown"
    ) -> List[ResolutionResult]:
        return [
            self.resolve_and_record(candidate, email_id, newsletter_name)
            for candidate in dedupe_candidates(candidates)
        ]

    def _resolve_once(
        self, candidate: ExtractionCandidate, normalized: str, email_id: int, newsletter_name: str
    ) -> ResolutionResult:
        now = utcnow()
        newsletter = newsletter_name or "Unknown"
        funding = enum_value(candidate.funding_status) or FundingStatus.UNKNOWN.value

        with self.session() as session:
            email = session.get(EmailRecord, email_id)
            if email is None or email.tenant_id != self.tenant_id:
                raise ValidationError(f"Email {email_id} does not exist", {"email_id": email_id})

            existing_id = session.exec(
                select(CompanyRecord.id).where(
                    CompanyRecord.tenant_id == self.tenant_id,
                    CompanyRecord.normalized_name == normalized,
                )
            ).first()

            insert_stmt = upsert_insert(session, CompanyRecord).values(
                tenant_id=self.tenant_id,
                name=candidate.name,
                normalized_name=normalized,
                description=candidate.description or None,
                website=candidate.website or None,
                funding_status=funding,
                industry=list(candidate.industry),
                mention_count=1,
                newsletter_diversity=1,
                first_seen_at=now,
                last_updated_at=now,
                enrichment_status=EnrichmentStatus.PENDING.value,
            )
            excluded = insert_stmt.excluded
            session.exec(
                insert_stmt.on_conflict_do_update(
                    index_elements=["tenant_id", "normalized_name"],
                    set_={
                        # Fill gaps only; populated fields are never replaced
                        "description": func.coalesce(CompanyRecord.description, excluded.description),
                        "website": func.coalesce(CompanyRecord.website, excluded.website),
                        "funding_status": case(
                            (
                                func.coalesce(CompanyRecord.funding_status, FundingStatus.UNKNOWN.value)
                                == FundingStatus.UNKNOWN.value,
                                excluded.funding_status,
                            ),
                            else_=CompanyRecord.funding_status,
                        ),
                        "last_updated_at": now,
                    },
                )
            )

            company = session.exec(
                select(CompanyRecord).where(
                    CompanyRecord.tenant_id == self.tenant_id,
                    CompanyRecord.normalized_name == normalized,
                )
            ).one()

            mention_insert = (
                upsert_insert(session, MentionRecord)
                .values(
                    tenant_id=self.tenant_id,
                    email_id=email_id,
                    company_id=company.id,
                    context=candidate.context or "",
                    sentiment=enum_value(candidate.sentiment),
                    confidence=candidate.confidence,
                    newsletter_name=newsletter,
                    extracted_at=now,
                )
                .on_conflict_do_nothing(index_elements=["email_id", "company_id"])
            )
            mention_created = bool(session.exec(mention_insert).rowcount)

            mention_id = session.exec(
                select(MentionRecord.id).where(
                    MentionRecord.email_id == email_id,
                    MentionRecord.company_id == company.id,
                )
            ).one()

            mention_count, diversity = session.exec(
                select(
                    func.count(MentionRecord.id),
                    func.count(func.distinct(MentionRecord.newsletter_name)),
                ).where(MentionRecord.company_id == company.id)
            ).one()

            session.exec(
                update(CompanyRecord)
                .where(CompanyRecord.id == company.id)
                .values(
                    mention_count=mention_count,
                    newsletter_diversity=diversity,
                    industry=_merge_tags(company.industry, candidate.industry),
                    last_updated_at=now,
                )
            )

            company_id = company.id
            is_new = existing_id is None
            if is_new and self.queue_embeddings:
                enqueue_embedding(session, company_id)

            session.commit()

        return ResolutionResult(
            company_id=company_id,
            mention_id=mention_id,
            normalized_name=normalized,
            is_new_company=is_new,
            mention_created=mention_created,
        )
