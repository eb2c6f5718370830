"""Tests for the embedding queue and similarity search."""

import pytest
from sqlmodel import select

from substack_intel.core.exceptions import AuthError, ExtractionError
from substack_intel.core.models import ExtractionCandidate
from substack_intel.data.db import CompanyRecord, EmbeddingJobRecord, get_session
from substack_intel.intelligence.embeddings import (
    EmbeddingService,
    build_company_text,
    cosine_similarity,
)
from substack_intel.services.resolver import CompanyResolver

from sample_data import FakeEmbedder


def add_company(engine, email_id, name, description, queue=True):
    resolver = CompanyResolver(engine, queue_embeddings=queue)
    candidate = ExtractionCandidate(name=name, description=description, confidence=0.9)
    return resolver.resolve_and_record(candidate, email_id).company_id


def jobs_by_company(engine):
    with get_session(engine) as session:
        return {job.company_id: job for job in session.exec(select(EmbeddingJobRecord))}


class TestEmbeddingQueue:
    """Queue processing and backfill."""

    def test_process_queue_stores_embeddings(self, engine, store, email_id):
        company_id = add_company(engine, email_id, "Acme", "Logistics software")
        embedder = FakeEmbedder()
        service = EmbeddingService(engine, embedder)

        summary = service.process_queue(batch_size=5)

        assert summary == {"processed": 1, "completed": 1, "failed": 0}
        assert store.get_company(company_id).embedding == [1.0, 0.0, 0.0]
        assert jobs_by_company(engine)[company_id].status == "completed"
        assert "Description: Logistics software" in embedder.calls[0][0]
        assert service.process_queue() == {"processed": 0, "completed": 0, "failed": 0}

    def test_failed_jobs_retried_until_max_attempts(self, engine, email_id):
        company_id = add_company(engine, email_id, "Acme", "Logistics software")
        service = EmbeddingService(engine, FakeEmbedder(error=ExtractionError("rate limited")), max_attempts=2)

        assert service.process_queue()["failed"] == 1
        assert service.process_queue()["failed"] == 1
        assert service.process_queue()["processed"] == 0

        job = jobs_by_company(engine)[company_id]
        assert job.status == "failed"
        assert job.attempts == 2
        assert job.error == "rate limited"

    def test_auth_error_requeues_and_propagates(self, engine, email_id):
        company_id = add_company(engine, email_id, "Acme", "Logistics software")
        service = EmbeddingService(engine, FakeEmbedder(error=AuthError("bad key")))

        with pytest.raises(AuthError):
            service.process_queue()
        assert jobs_by_company(engine)[company_id].status == "pending"

    def test_backfill_queues_missing(self, engine, email_id):
        first = add_company(engine, email_id, "Acme", "Logistics software", queue=False)
        second = add_company(engine, email_id, "Globex", "Fintech payments", queue=False)
        service = EmbeddingService(engine, FakeEmbedder())

        assert service.backfill_missing() == 2
        assert set(jobs_by_company(engine)) == {first, second}
        assert service.backfill_missing() == 0

    def test_enqueue_is_idempotent(self, engine, email_id):
        company_id = add_company(engine, email_id, "Acme", "Logistics software", queue=False)
        service = EmbeddingService(engine, FakeEmbedder())

        service.enqueue(company_id)
        service.enqueue(company_id)

        assert list(jobs_by_company(engine)) == [company_id]
        assert service.process_queue()["completed"] == 1

    def test_queue_scoped_to_tenant(self, engine, email_id):
        add_company(engine, email_id, "Acme", "Logistics software")

        assert EmbeddingService(engine, FakeEmbedder(), tenant_id="other").process_queue()["processed"] == 0

    def test_stats(self, engine, email_id):
        add_company(engine, email_id, "Acme", "Logistics software")
        add_company(engine, email_id, "Globex", "Fintech payments")
        service = EmbeddingService(engine, FakeEmbedder())
        service.process_queue(batch_size=1)

        stats = service.stats()

        assert stats["total_companies"] == 2
        assert stats["companies_with_embeddings"] == 1
        assert stats["coverage_percentage"] == 50.0
        assert stats["queue"] == {"completed": 1, "pending": 1}


class TestSimilarity:
    """Similarity search over stored vectors."""

    def setup_method(self):
        self.embedder = FakeEmbedder()

    def seed(self, engine, email_id):
        ids = {
            "acme": add_company(engine, email_id, "Acme", "Logistics software"),
            "shipco": add_company(engine, email_id, "Shipco", "Freight logistics marketplace"),
            "globex": add_company(engine, email_id, "Globex", "Fintech payments"),
        }
        EmbeddingService(engine, self.embedder).process_queue(batch_size=10)
        return ids

    def test_find_similar(self, engine, email_id):
        ids = self.seed(engine, email_id)
        service = EmbeddingService(engine, self.embedder)

        similar = service.find_similar(ids["acme"], threshold=0.5)

        assert [item["id"] for item in similar] == [ids["shipco"]]
        assert similar[0]["similarity"] == pytest.approx(1.0)

    def test_find_similar_unknown_company(self, engine, email_id):
        assert EmbeddingService(engine, self.embedder).find_similar(9999) == []

    def test_find_similar_generates_missing_embedding(self, engine, email_id):
        company_id = add_company(engine, email_id, "Acme", "Logistics software", queue=False)
        service = EmbeddingService(engine, self.embedder)

        assert service.find_similar(company_id) == []
        with get_session(engine) as session:
            assert session.get(CompanyRecord, company_id).embedding == [1.0, 0.0, 0.0]

    def test_semantic_search(self, engine, email_id):
        ids = self.seed(engine, email_id)
        service = EmbeddingService(engine, self.embedder)

        results = service.semantic_search("fintech startups")

        assert [item["id"] for item in results] == [ids["globex"]]


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0


def test_build_company_text():
    company = CompanyRecord(
        tenant_id="default",
        name="Acme",
        normalized_name="acme",
        description="Logistics software",
        website="https://www.acme.com/about",
        industry=["logistics", "saas"],
    )
    assert build_company_text(company) == (
        "Company: Acme. Description: Logistics software. Industry: logistics, saas. Domain: acme.com"
    )
