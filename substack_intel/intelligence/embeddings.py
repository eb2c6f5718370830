"""
Company embeddings: backfill queue and similarity search.

New companies are queued by the resolver; ``process_queue`` drains the
queue in small batches. Similarity results are advisory and never feed
back into deduplication.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import structlog
from sqlalchemy import func, update
from sqlmodel import Session, select

from substack_intel.core.exceptions import AuthError, SubstackIntelError
from substack_intel.core.models import EmbeddingJobStatus, utcnow
from substack_intel.data.db import CompanyRecord, EmbeddingJobRecord, get_session, upsert_insert

from .llm_client import EmbeddingClient

logger = structlog.get_logger(__name__)

MAX_EMBEDDING_TEXT = 8000


def enqueue_embedding(session: Session, company_id: int) -> None:
    """Queue a company inside the caller's transaction; no-op if queued."""
    stmt = (
        upsert_insert(session, EmbeddingJobRecord)
        .values(
            company_id=company_id,
            status=EmbeddingJobStatus.PENDING.value,
            attempts=0,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["company_id"])
    )
    session.exec(stmt)


def build_company_text(company: CompanyRecord) -> str:
    parts = [f"Company: {company.name}"]
    if company.description:
        parts.append(f"Description: {company.description}")
    if company.industry:
        parts.append(f"Industry: {', '.join(company.industry)}")
    if company.website:
        host = urlparse(company.website).hostname or ""
        if host:
            parts.append(f"Domain: {host.removeprefix('www.')}")
    return ". ".join(parts)[:MAX_EMBEDDING_TEXT]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingService:
    """Generates, stores and searches company embeddings."""

    def __init__(self, engine, client: EmbeddingClient, tenant_id: str = "default", max_attempts: int = 3):
        self._engine = engine
        self.client = client
        self.tenant_id = tenant_id
        self.max_attempts = max_attempts

    def session(self) -> Session:
        return get_session(self._engine)

    # ---- queue ---------------------------------------------------------- #

    def enqueue(self, company_id: int) -> None:
        with self.session() as session:
            enqueue_embedding(session, company_id)
            session.commit()

    def backfill_missing(self, limit: int = 100) -> int:
        """Queue companies that have no embedding and no queue entry."""
        with self.session() as session:
            queued = select(EmbeddingJobRecord.company_id)
            statement = (
                select(CompanyRecord.id)
                .where(
                    CompanyRecord.tenant_id == self.tenant_id,
                    CompanyRecord.embedding == None,  # noqa: E711
                    CompanyRecord.id.not_in(queued),
                )
                .limit(limit)
            )
            ids = list(session.exec(statement))
            for company_id in ids:
                enqueue_embedding(session, company_id)
            session.commit()
        logger.info("Queued companies for embedding backfill", count=len(ids))
        return len(ids)

    def _next_batch(self, batch_size: int) -> List[EmbeddingJobRecord]:
        with self.session() as session:
            statement = (
                select(EmbeddingJobRecord)
                .join(CompanyRecord, CompanyRecord.id == EmbeddingJobRecord.company_id)
                .where(
                    CompanyRecord.tenant_id == self.tenant_id,
                    (EmbeddingJobRecord.status == EmbeddingJobStatus.PENDING.value)
                    | (
                        (EmbeddingJobRecord.status == EmbeddingJobStatus.FAILED.value)
                        & (EmbeddingJobRecord.attempts < self.max_attempts)
                    ),
                )
                .order_by(EmbeddingJobRecord.created_at.asc(), EmbeddingJobRecord.id.asc())
                .limit(batch_size)
            )
            return list(session.exec(statement))

    def _set_job_status(self, job_id: int, status: EmbeddingJobStatus, error: Optional[str] = None, attempt: bool = False) -> None:
        values: Dict[str, Any] = {"status": status.value, "error": error, "updated_at": utcnow()}
        if attempt:
            values["attempts"] = EmbeddingJobRecord.attempts + 1
        with self.session() as session:
            session.exec(update(EmbeddingJobRecord).where(EmbeddingJobRecord.id == job_id).values(**values))
            session.commit()

    def generate_company_embedding(self, company_id: int) -> List[float]:
        with self.session() as session:
            company = session.get(CompanyRecord, company_id)
            if company is None:
                raise SubstackIntelError(f"Company {company_id} not found")
            text = build_company_text(company)

        vectors = self.client.embed([text])
        if not vectors:
            raise SubstackIntelError("Embedding provider returned no vectors")

        with self.session() as session:
            company = session.get(CompanyRecord, company_id)
            company.embedding = vectors[0]
            company.last_updated_at = utcnow()
            session.add(company)
            session.commit()
        return vectors[0]

    def process_queue(self, batch_size: int = 5) -> Dict[str, int]:
        """
        Generate embeddings for the next queued companies.

        Jobs move pending -> processing -> completed or failed. Failed jobs
        are picked up again until they reach ``max_attempts``. Credential
        errors put the job back to pending and propagate.
        """
        jobs = self._next_batch(batch_size)
        summary = {"processed": 0, "completed": 0, "failed": 0}

        for job in jobs:
            self._set_job_status(job.id, EmbeddingJobStatus.PROCESSING, attempt=True)
            summary["processed"] += 1
            try:
                self.generate_company_embedding(job.company_id)
            except AuthError:
                self._set_job_status(job.id, EmbeddingJobStatus.PENDING)
                raise
            except SubstackIntelError as e:
                self._set_job_status(job.id, EmbeddingJobStatus.FAILED, error=e.message)
                summary["failed"] += 1
                logger.warning("Embedding generation failed", company_id=job.company_id, error=e.message)
                continue
            self._set_job_status(job.id, EmbeddingJobStatus.COMPLETED)
            summary["completed"] += 1

        if jobs:
            logger.info("Embedding queue batch processed", **summary)
        return summary

    # ---- search --------------------------------------------------------- #

    def _rank(self, query: Sequence[float], threshold: float, limit: int, exclude_id: Optional[int] = None) -> List[Dict[str, Any]]:
        with self.session() as session:
            statement = select(CompanyRecord).where(
                CompanyRecord.tenant_id == self.tenant_id,
                CompanyRecord.embedding != None,  # noqa: E711
            )
            companies = list(session.exec(statement))

        scored = []
        for company in companies:
            if company.id == exclude_id:
                continue
            score = cosine_similarity(query, company.embedding or [])
            if score >= threshold:
                scored.append(
                    {
                        "id": company.id,
                        "name": company.name,
                        "description": company.description,
                        "similarity": round(score, 4),
                    }
                )
        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[:limit]

    def find_similar(self, company_id: int, threshold: float = 0.7, limit: int = 5) -> List[Dict[str, Any]]:
        with self.session() as session:
            company = session.get(CompanyRecord, company_id)
            embedding = company.embedding if company else None
        if company is None:
            return []
        if not embedding:
            embedding = self.generate_company_embedding(company_id)
        return self._rank(embedding, threshold, limit, exclude_id=company_id)

    def semantic_search(self, query: str, threshold: float = 0.6, limit: int = 10) -> List[Dict[str, Any]]:
        vectors = self.client.embed([query])
        if not vectors:
            return []
        return self._rank(vectors[0], threshold, limit)

    def stats(self) -> Dict[str, Any]:
        with self.session() as session:
            total = session.exec(
                select(func.count(CompanyRecord.id)).where(CompanyRecord.tenant_id == self.tenant_id)
            ).one()
            embedded = session.exec(
                select(func.count(CompanyRecord.id)).where(
                    CompanyRecord.tenant_id == self.tenant_id,
                    CompanyRecord.embedding != None,  # noqa: E711
                )
            ).one()
            queue_rows = session.exec(
                select(EmbeddingJobRecord.status, func.count(EmbeddingJobRecord.id))
                .join(CompanyRecord, CompanyRecord.id == EmbeddingJobRecord.company_id)
                .where(CompanyRecord.tenant_id == self.tenant_id)
                .group_by(EmbeddingJobRecord.status)
            ).all()

        return {
            "total_companies": total,
            "companies_with_embeddings": embedded,
            "coverage_percentage": round(embedded / total * 100, 1) if total else 0.0,
            "queue": {status: count for status, count in queue_rows},
        }
