"""Tests for the domain models and the email state machine."""

import pytest
from pydantic import ValidationError

from substack_intel.core.models import (
    EmailStatus,
    ExtractionCandidate,
    PipelineRunResult,
    ProgressEvent,
    RunStatus,
    Session,
    TriggerRequest,
    can_transition,
    enum_value,
    transition_sources,
)


class TestEmailStateMachine:
    """Legal and illegal status transitions."""

    def test_forward_transitions_allowed(self):
        assert can_transition("unprocessed", "processing")
        assert can_transition("processing", "completed")
        assert can_transition("processing", "failed")

    def test_completed_is_terminal(self):
        for target in EmailStatus:
            assert not can_transition("completed", target.value)

    def test_recovery_edges(self):
        assert can_transition("failed", "unprocessed")
        assert can_transition("processing", "unprocessed")
        assert not can_transition("unprocessed", "completed")
        assert not can_transition("failed", "completed")

    def test_unknown_status_rejected(self):
        assert not can_transition("archived", "processing")

    def test_transition_sources(self):
        assert transition_sources(EmailStatus.PROCESSING) == {EmailStatus.UNPROCESSED}
        assert transition_sources(EmailStatus.COMPLETED) == {EmailStatus.PROCESSING}
        assert transition_sources(EmailStatus.UNPROCESSED) == {EmailStatus.PROCESSING, EmailStatus.FAILED}


class TestExtractionCandidate:
    """Coercion of loosely typed LLM values."""

    def test_percentage_confidence(self):
        assert ExtractionCandidate(name="Acme", confidence="85%").confidence == pytest.approx(0.85)

    def test_hundred_scale_confidence(self):
        assert ExtractionCandidate(name="Acme", confidence=70).confidence == pytest.approx(0.7)

    def test_missing_confidence_is_zero(self):
        assert ExtractionCandidate(name="Acme", confidence=None).confidence == 0.0

    def test_confidence_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            ExtractionCandidate(name="Acme", confidence=250)

    def test_unknown_sentiment_becomes_neutral(self):
        assert ExtractionCandidate(name="Acme", sentiment="Bullish").sentiment == "neutral"
        assert ExtractionCandidate(name="Acme", sentiment="Positive").sentiment == "positive"

    def test_name_is_stripped_and_context_clipped(self):
        candidate = ExtractionCandidate(name="  Acme  ", context="x" * 900)
        assert candidate.name == "Acme"
        assert len(candidate.context) == 500


class TestTransportModels:
    """Progress events, trigger requests, sessions and run results."""

    def test_progress_event_payload_uses_camel_case(self):
        payload = ProgressEvent(
            progress=40,
            message="Processed 2 of 5 emails",
            emails_processed=2,
            companies_extracted=3,
            current_email_subject="Issue 2",
        ).to_payload()

        assert payload["emailsProcessed"] == 2
        assert payload["companiesExtracted"] == 3
        assert payload["currentEmailSubject"] == "Issue 2"
        assert payload["status"] == "running"
        assert isinstance(payload["timestamp"], str)

    def test_trigger_request_defaults_and_clamping(self):
        assert TriggerRequest().lookback_days is None
        assert TriggerRequest(lookbackDays=500).lookback_days == 90
        assert TriggerRequest(lookbackDays=0).lookback_days == 1
        assert TriggerRequest(forceRefresh=True).force_refresh is True

    def test_session_permissions(self):
        assert Session(user_id="tenant-a", permissions=["*"]).can("pipeline:run")
        assert Session(user_id="tenant-a", permissions=["pipeline:run"]).can("pipeline:run")
        assert not Session(user_id="tenant-a", permissions=[]).can("pipeline:run")

    def test_run_result_finish(self):
        result = PipelineRunResult(trigger="scheduled")
        result.finish(RunStatus.PARTIAL, "Email 3 failed")

        assert result.status == "partial"
        assert result.trigger == "scheduled"
        assert result.completed_at is not None
        assert result.duration_seconds >= 0
        assert result.error_message == "Email 3 failed"

    def test_enum_value(self):
        assert enum_value(RunStatus.FAILED) == "failed"
        assert enum_value("failed") == "failed"
