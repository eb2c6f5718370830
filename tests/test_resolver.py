"""Tests for company resolution and mention recording."""

import threading
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import select

from substack_intel.core.exceptions import DedupConflictError, ValidationError
from substack_intel.core.models import ExtractionCandidate, NormalizedContent
from substack_intel.data.db import (
    CompanyRecord,
    EmbeddingJobRecord,
    create_engine_for_url,
    get_session,
    init_db,
)
from substack_intel.data.store import PipelineStore
from substack_intel.services.resolver import CompanyResolver, dedupe_candidates
from substack_intel.utils.reliability import RetryPolicy

from sample_data import make_message


def candidate(name="Acme Inc.", **fields):
    values = {"confidence": 0.9, "context": f"{name} raised money"}
    values.update(fields)
    return ExtractionCandidate(name=name, **values)


def make_emails(store, count):
    ids = []
    for index in range(1, count + 1):
        message = make_message(index)
        store.save_messages([(message, NormalizedContent(clean_text="text", newsletter_name="Daily Brief"))])
        ids.append(store.get_email_by_message_id(message.message_id).id)
    return ids


class TestCompanyResolver:
    """Upserts, mention idempotency and aggregates."""

    def setup_method(self):
        self.retry = RetryPolicy("resolver", max_attempts=2, base_delay=0, retryable=(IntegrityError,))

    def test_new_company_and_mention(self, engine, store, email_id):
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        result = resolver.resolve_and_record(
            candidate(funding_status="series-a", website="https://acme.com", industry=["logistics"]),
            email_id,
            "Daily Brief",
        )

        assert result.is_new_company is True
        assert result.mention_created is True
        assert result.normalized_name == "acme inc"
        company = store.get_company(result.company_id)
        assert company.name == "Acme Inc."
        assert company.funding_status == "series-a"
        assert company.website == "https://acme.com"
        assert company.industry == ["logistics"]
        assert company.mention_count == 1
        assert company.newsletter_diversity == 1

        mention = store.list_mentions(company_id=company.id)[0]
        assert mention.email_id == email_id
        assert mention.newsletter_name == "Daily Brief"
        assert mention.confidence == pytest.approx(0.9)

    def test_rerun_is_idempotent(self, engine, store, email_id):
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        first = resolver.resolve_and_record(candidate(), email_id, "Daily Brief")
        second = resolver.resolve_and_record(candidate(), email_id, "Daily Brief")

        assert second.company_id == first.company_id
        assert second.mention_id == first.mention_id
        assert second.is_new_company is False
        assert second.mention_created is False
        assert len(store.list_mentions(company_id=first.company_id)) == 1
        assert store.get_company(first.company_id).mention_count == 1

    def test_name_variants_share_one_company(self, engine, store):
        email_ids = make_emails(store, 3)
        resolver = CompanyResolver(engine, retry_policy=self.retry)
        newsletters = ["Daily Brief", "Fintech Weekly", "Platformer"]

        results = [
            resolver.resolve_and_record(candidate(name), email_id, newsletter)
            for name, email_id, newsletter in zip(["Acme Inc.", "acme inc", "ACME INC."], email_ids, newsletters)
        ]

        assert len({r.company_id for r in results}) == 1
        company = store.get_company(results[0].company_id)
        assert company.name == "Acme Inc."
        assert company.mention_count == 3
        assert company.newsletter_diversity == 3
        assert len(store.list_companies()) == 1

    def test_diversity_counts_distinct_newsletters(self, engine, store):
        email_ids = make_emails(store, 3)
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        for email_id in email_ids:
            result = resolver.resolve_and_record(candidate(), email_id, "Daily Brief")

        company = store.get_company(result.company_id)
        assert company.mention_count == 3
        assert company.newsletter_diversity == 1

    def test_populated_fields_never_overwritten(self, engine, store):
        first_email, second_email = make_emails(store, 2)
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        resolver.resolve_and_record(
            candidate(website="https://acme.com", description="Logistics software"), first_email
        )
        result = resolver.resolve_and_record(
            candidate(website="https://acme-other.com", description="Something else"), second_email
        )

        company = store.get_company(result.company_id)
        assert company.website == "https://acme.com"
        assert company.description == "Logistics software"

    def test_gaps_and_unknown_funding_filled(self, engine, store):
        first_email, second_email = make_emails(store, 2)
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        resolver.resolve_and_record(candidate(funding_status="unknown"), first_email)
        result = resolver.resolve_and_record(
            candidate(funding_status="seed", website="https://acme.com"), second_email
        )

        company = store.get_company(result.company_id)
        assert company.funding_status == "seed"
        assert company.website == "https://acme.com"

    def test_known_funding_kept(self, engine, store):
        first_email, second_email = make_emails(store, 2)
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        resolver.resolve_and_record(candidate(funding_status="series-b"), first_email)
        result = resolver.resolve_and_record(candidate(funding_status="seed"), second_email)

        assert store.get_company(result.company_id).funding_status == "series-b"

    def test_industry_tags_merged(self, engine, store):
        first_email, second_email = make_emails(store, 2)
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        resolver.resolve_and_record(candidate(industry=["logistics", "saas"]), first_email)
        result = resolver.resolve_and_record(candidate(industry=["saas", "ai"]), second_email)

        assert store.get_company(result.company_id).industry == ["logistics", "saas", "ai"]

    def test_unusable_name_rejected(self, engine, email_id):
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        with pytest.raises(ValidationError):
            resolver.resolve_and_record(candidate("!!!"), email_id)

    def test_unknown_email_rejected(self, engine, store):
        resolver = CompanyResolver(engine, retry_policy=self.retry)

        with pytest.raises(ValidationError):
            resolver.resolve_and_record(candidate(), 9999)
        assert store.list_companies() == []

    def test_other_tenant_email_rejected(self, engine, email_id):
        resolver = CompanyResolver(engine, tenant_id="other", retry_policy=self.retry)

        with pytest.raises(ValidationError):
            resolver.resolve_and_record(candidate(), email_id)

    def test_new_company_queued_for_embedding(self, engine, email_id):
        result = CompanyResolver(engine, retry_policy=self.retry).resolve_and_record(candidate(), email_id)

        with get_session(engine) as session:
            jobs = list(session.exec(select(EmbeddingJobRecord)))
        assert [job.company_id for job in jobs] == [result.company_id]
        assert jobs[0].status == "pending"

    def test_embedding_queue_can_be_disabled(self, engine, email_id):
        CompanyResolver(engine, retry_policy=self.retry, queue_embeddings=False).resolve_and_record(
            candidate(), email_id
        )

        with get_session(engine) as session:
            assert list(session.exec(select(EmbeddingJobRecord))) == []

    def test_company_delete_cascades_to_mentions(self, engine, store, email_id):
        result = CompanyResolver(engine, retry_policy=self.retry).resolve_and_record(candidate(), email_id)

        assert store.delete_company(result.company_id) is True
        assert store.list_mentions(email_id=email_id) == []
        assert store.get_email(email_id) is not None
        assert store.delete_company(result.company_id) is False

    def test_persistent_conflict_raises_dedup_error(self, engine, email_id):
        resolver = CompanyResolver(engine, retry_policy=self.retry)
        conflict = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with patch.object(resolver, "_resolve_once", side_effect=conflict) as resolve_once:
            with pytest.raises(DedupConflictError):
                resolver.resolve_and_record(candidate(), email_id)
        assert resolve_once.call_count == 2

    def test_conflict_retried_once(self, engine, email_id):
        resolver = CompanyResolver(engine, retry_policy=self.retry)
        conflict = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        real = resolver._resolve_once
        calls = []

        def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise conflict
            return real(*args)

        with patch.object(resolver, "_resolve_once", side_effect=flaky):
            result = resolver.resolve_and_record(candidate(), email_id)
        assert len(calls) == 2
        assert result.normalized_name == "acme inc"


class TestDedupeCandidates:
    """Per-email candidate dedup before resolution."""

    def test_highest_confidence_wins(self):
        result = dedupe_candidates([
            candidate("Acme", confidence=0.6, context="low"),
            candidate("Globex", confidence=0.7),
            candidate("ACME", confidence=0.9, context="high"),
        ])

        assert [c.name for c in result] == ["ACME", "Globex"]
        assert result[0].context == "high"

    def test_ties_keep_first_seen(self):
        result = dedupe_candidates([candidate("Acme", context="first"), candidate("acme", context="second")])

        assert [c.context for c in result] == ["first"]

    def test_resolve_candidates_dedupes(self, engine, store, email_id):
        resolver = CompanyResolver(engine)

        results = resolver.resolve_candidates(
            [candidate("Acme"), candidate("ACME"), candidate("Globex")], email_id, "Daily Brief"
        )

        assert len(results) == 2
        assert len(store.list_mentions(email_id=email_id)) == 2


class TestConcurrentResolution:
    """Resolvers in separate threads racing on the same new company."""

    def test_racing_resolvers_share_one_company(self, tmp_path):
        engine = create_engine_for_url(f"sqlite:///{tmp_path / 'race.db'}")
        init_db(engine)
        store = PipelineStore(engine, "default")
        email_ids = make_emails(store, 2)
        barrier = threading.Barrier(len(email_ids))
        results, errors = [], []

        def resolve(email_id):
            resolver = CompanyResolver(
                engine,
                retry_policy=RetryPolicy(
                    "resolver", max_attempts=5, base_delay=0, retryable=(IntegrityError, OperationalError)
                ),
                queue_embeddings=False,
            )
            barrier.wait(timeout=5)
            try:
                results.append(resolver.resolve_and_record(candidate(), email_id, "Daily Brief"))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=resolve, args=(email_id,)) for email_id in email_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        try:
            assert errors == []
            with get_session(engine) as session:
                companies = session.exec(select(CompanyRecord)).all()
            assert len(companies) == 1
            assert companies[0].normalized_name == "acme inc"
            assert companies[0].mention_count == 2
            assert {r.company_id for r in results} == {companies[0].id}
            assert len(store.list_mentions(company_id=companies[0].id)) == 2
        finally:
            engine.dispose()
