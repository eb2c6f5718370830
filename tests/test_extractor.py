"""Tests for the company extraction engine."""

from unittest.mock import Mock

import pytest

from substack_intel.core.config import LLMConfig
from substack_intel.core.exceptions import AuthError, ExtractionError
from substack_intel.core.models import ExtractionCandidate, ExtractionMetadata, ExtractionResult
from substack_intel.intelligence.cache import ExtractionCache
from substack_intel.intelligence.extractor import (
    SYSTEM_PROMPT,
    TRUNCATION_MARKER,
    VERIFY_PROMPT,
    CompanyExtractor,
    find_context,
    truncate_content,
)
from substack_intel.utils.reliability import RetryPolicy

from sample_data import ACME_TEXT, FakeLLM, company_json


def make_extractor(llm, cache=None, **config_values):
    values = {"OPENAI_API_KEY": "sk-test", "EXTRACTION_MODEL": "test-model"}
    values.update(config_values)
    return CompanyExtractor(
        llm,
        LLMConfig(**values),
        retry_policy=RetryPolicy("extraction", max_attempts=3, base_delay=0, retryable=(ExtractionError,)),
        cache=cache,
    )


class TestExtractCompanies:
    """Prompting, parsing and filtering."""

    def test_concrete_scenario(self):
        """A Series A announcement yields one high-confidence candidate."""
        llm = FakeLLM([company_json({"name": "Acme Inc.", "confidence": 0.9, "sentiment": "positive"})])
        extractor = make_extractor(llm)

        result = extractor.extract_companies(ACME_TEXT, "Daily Brief")

        assert len(result) == 1
        candidate = result.candidates[0]
        assert candidate.name == "Acme Inc."
        assert candidate.funding_status == "series-a"
        assert candidate.confidence >= 0.5
        assert "raised a $10M Series A" in candidate.context

        system_prompt, user_prompt = llm.calls[0]
        assert system_prompt == SYSTEM_PROMPT
        assert "Newsletter: Daily Brief" in user_prompt
        assert ACME_TEXT in user_prompt
        assert result.metadata.model == "fake-model"
        assert result.metadata.token_count == 42

    def test_low_confidence_dropped(self):
        llm = FakeLLM([
            company_json(
                {"name": "Acme Inc.", "confidence": 0.9},
                {"name": "Maybe Corp", "confidence": 0.3},
            )
        ])

        result = make_extractor(llm).extract_companies(ACME_TEXT, "Daily Brief")

        assert [c.name for c in result.candidates] == ["Acme Inc."]
        assert result.metadata.raw_candidates == 2
        assert result.metadata.dropped_candidates == 1

    def test_threshold_is_configurable(self):
        llm = FakeLLM([company_json({"name": "Maybe Corp", "confidence": 0.3})])

        result = make_extractor(llm, EXTRACTION_CONFIDENCE_THRESHOLD=0.2).extract_companies("text", "N")

        assert [c.name for c in result.candidates] == ["Maybe Corp"]

    def test_nameless_candidates_dropped(self):
        llm = FakeLLM([
            company_json({"name": "", "confidence": 0.9}, {"confidence": 0.9}, {"name": "...", "confidence": 0.9})
        ])

        assert make_extractor(llm).extract_companies("text", "N").is_empty

    def test_duplicates_keep_highest_confidence(self):
        llm = FakeLLM([
            company_json(
                {"name": "Acme", "confidence": 0.6, "context": "first"},
                {"name": "ACME", "confidence": 0.95, "context": "second"},
                {"name": "Globex", "confidence": 0.7},
            )
        ])

        result = make_extractor(llm).extract_companies("Acme and Globex", "N")

        assert [c.name for c in result.candidates] == ["ACME", "Globex"]
        assert result.candidates[0].context == "second"

    def test_field_normalization(self):
        llm = FakeLLM([
            company_json(
                {
                    "company": "Globex",
                    "confidence": "80%",
                    "fundingStatus": "Seed round",
                    "website": "globex.io",
                    "industry": "Fintech, Payments",
                    "sentiment": "excited",
                    "description": "Payments for robots",
                }
            )
        ])

        candidate = make_extractor(llm).extract_companies("Globex raised money", "N").candidates[0]

        assert candidate.name == "Globex"
        assert candidate.confidence == pytest.approx(0.8)
        assert candidate.funding_status == "seed"
        assert candidate.website == "https://globex.io"
        assert candidate.industry == ["fintech", "payments"]
        assert candidate.sentiment == "neutral"
        assert candidate.description == "Payments for robots"
        assert candidate.context == "Globex raised money"

    def test_loosely_structured_output(self):
        llm = FakeLLM(["Companies:\n- Acme Inc. (0.9, positive): raised a Series A"])

        result = make_extractor(llm).extract_companies(ACME_TEXT, "Daily Brief")

        assert [c.name for c in result.candidates] == ["Acme Inc."]
        assert result.candidates[0].sentiment == "positive"

    def test_unparseable_output_is_empty_result(self):
        llm = FakeLLM(["Sorry, I cannot help with that."])

        result = make_extractor(llm).extract_companies(ACME_TEXT, "Daily Brief")

        assert result.is_empty
        assert result.metadata.parse_failed is True

    def test_empty_text_skips_llm(self):
        llm = FakeLLM()

        assert make_extractor(llm).extract_companies("   ", "N").is_empty
        assert llm.calls == []

    def test_long_text_is_truncated_in_prompt(self):
        llm = FakeLLM()
        make_extractor(llm, EXTRACTION_MAX_CHARS=50).extract_companies("x" * 200, "N")

        prompt = llm.calls[0][1]
        assert TRUNCATION_MARKER in prompt
        assert "x" * 51 not in prompt


class TestExtractionFailures:
    """Retry and error propagation around the LLM call."""

    def test_transient_errors_retried(self):
        llm = FakeLLM([ExtractionError("rate limited"), ExtractionError("timeout"), company_json()])

        assert make_extractor(llm).extract_companies("text", "N").is_empty
        assert len(llm.calls) == 3

    def test_exhausted_retries_propagate(self):
        llm = FakeLLM(default=ExtractionError("rate limited"))

        with pytest.raises(ExtractionError):
            make_extractor(llm).extract_companies("text", "N")
        assert len(llm.calls) == 3

    def test_auth_error_not_retried(self):
        llm = FakeLLM(default=AuthError("bad key"))

        with pytest.raises(AuthError):
            make_extractor(llm).extract_companies("text", "N")
        assert len(llm.calls) == 1


class TestVerificationPass:
    """Optional second prompt confirming candidates."""

    def test_rejected_candidates_removed(self):
        llm = FakeLLM([
            company_json({"name": "Acme", "confidence": 0.9}, {"name": "Sequoia", "confidence": 0.8}),
            '{"verified": [{"name": "Acme", "is_company": true}, {"name": "Sequoia", "is_company": false}]}',
        ])

        result = make_extractor(llm, EXTRACTION_VERIFY_PASS=True).extract_companies("Acme and Sequoia", "N")

        assert [c.name for c in result.candidates] == ["Acme"]
        assert result.metadata.verified is True
        assert result.metadata.dropped_candidates == 1
        assert llm.calls[1][0] == VERIFY_PROMPT

    def test_verification_failure_keeps_first_pass(self):
        llm = FakeLLM([
            company_json({"name": "Acme", "confidence": 0.9}),
            "not json",
        ])

        result = make_extractor(llm, EXTRACTION_VERIFY_PASS=True).extract_companies("Acme", "N")

        assert [c.name for c in result.candidates] == ["Acme"]


class TestExtractionCache:
    """Identical content does not pay for a second LLM call."""

    def test_cache_hit_skips_llm(self):
        llm = FakeLLM([company_json({"name": "Acme Inc.", "confidence": 0.9})])
        extractor = make_extractor(llm, cache=ExtractionCache())

        first = extractor.extract_companies(ACME_TEXT, "Daily Brief")
        second = extractor.extract_companies(ACME_TEXT, "Daily Brief")

        assert len(llm.calls) == 1
        assert [c.name for c in second.candidates] == [c.name for c in first.candidates]
        assert second.metadata.cached is True
        assert first.metadata.cached is False

    def test_cache_hit_leaves_stored_entry_untouched(self):
        stored = ExtractionResult(
            candidates=[ExtractionCandidate(name="Acme Inc.", confidence=0.9)],
            metadata=ExtractionMetadata(model="test-model"),
        )
        cache = Mock()
        cache.get.return_value = stored
        llm = FakeLLM()
        extractor = make_extractor(llm, cache=cache)

        first = extractor.extract_companies(ACME_TEXT, "Daily Brief")
        second = extractor.extract_companies(ACME_TEXT, "Daily Brief")

        assert llm.calls == []
        assert first.metadata.cached is True
        assert first is not stored
        assert second is not first
        assert stored.metadata.cached is False

    def test_parse_failures_not_cached(self):
        llm = FakeLLM(["garbage", company_json({"name": "Acme Inc.", "confidence": 0.9})])
        extractor = make_extractor(llm, cache=ExtractionCache())

        assert extractor.extract_companies(ACME_TEXT, "Daily Brief").is_empty
        assert len(extractor.extract_companies(ACME_TEXT, "Daily Brief")) == 1

    def test_key_depends_on_inputs(self):
        key = ExtractionCache.make_key("model", "Daily Brief", "text")
        assert key == ExtractionCache.make_key("model", "Daily Brief", "text")
        assert key != ExtractionCache.make_key("model", "Other", "text")
        assert key != ExtractionCache.make_key("other-model", "Daily Brief", "text")

    def test_expired_entries_are_misses(self):
        cache = ExtractionCache(ttl_seconds=-1)
        llm = FakeLLM(default=company_json())
        extractor = make_extractor(llm, cache=cache)

        extractor.extract_companies("text", "N")
        extractor.extract_companies("text", "N")

        assert len(llm.calls) == 2
        assert cache.get_stats()["evictions"] >= 1

    def test_lru_eviction(self):
        cache = ExtractionCache(max_size=1)
        llm = FakeLLM(default=company_json())
        extractor = make_extractor(llm, cache=cache)

        extractor.extract_companies("first", "N")
        extractor.extract_companies("second", "N")

        assert len(cache) == 1


def test_helpers():
    assert truncate_content("short", 10) == "short"
    assert truncate_content("abcdef", 3) == "abc" + TRUNCATION_MARKER
    assert find_context("We like Acme a lot", "acme") == "We like Acme a lot"
    assert find_context("nothing here", "Acme") == ""
