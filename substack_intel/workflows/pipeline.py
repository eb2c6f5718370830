"""
Newsletter ingestion pipeline orchestration.

Coordinates the mailbox fetch, content normalization, company extraction
and resolution for one tenant, tracking each email through its status
state machine and publishing progress for the dashboard.
"""

import socket
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Set, Tuple, Union

from substack_intel.core.config import Settings, get_settings, validate_required_settings
from substack_intel.core.exceptions import (
    AuthError,
    ConfigurationError,
    InvalidTransitionError,
    PipelineLockedError,
    SubstackIntelError,
    TransientError,
)
from substack_intel.core.logging import get_logger, set_correlation_id
from substack_intel.core.models import (
    PipelineRunResult,
    ProgressEvent,
    RawMessage,
    RunStatus,
    TriggerRequest,
    TriggerType,
    enum_value,
    utcnow,
)
from substack_intel.data.db import EmailRecord, get_engine
from substack_intel.data.gmail_client import MailboxConnector, create_gmail_connector
from substack_intel.data.store import PipelineStore
from substack_intel.intelligence.cache import ExtractionCache
from substack_intel.intelligence.extractor import CompanyExtractor
from substack_intel.intelligence.html_parser import ContentNormalizer
from substack_intel.intelligence.llm_client import OpenAILLMClient
from substack_intel.services.lock import PipelineLock
from substack_intel.services.progress import DatabaseProgressStore, ProgressStore
from substack_intel.services.resolver import CompanyResolver
from substack_intel.utils.reliability import (
    extraction_retry_policy,
    mailbox_retry_policy,
    resolver_retry_policy,
    track_performance,
)

logger = get_logger(__name__)

# Share of the progress bar given to the mailbox fetch
INGEST_PROGRESS = 10


class PipelineOrchestrator:
    """Run the ingestion-to-extraction pipeline for one tenant."""

    def __init__(
        self,
        store: PipelineStore,
        settings: Optional[Settings] = None,
        connector: Optional[MailboxConnector] = None,
        normalizer: Optional[ContentNormalizer] = None,
        extractor: Optional[CompanyExtractor] = None,
        resolver: Optional[CompanyResolver] = None,
        progress: Optional[ProgressStore] = None,
        lock: Optional[PipelineLock] = None,
        tenant_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        owner: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.tenant_id = tenant_id or store.tenant_id
        self.store = store if store.tenant_id == self.tenant_id else store.for_tenant(self.tenant_id)
        self.correlation_id = set_correlation_id(correlation_id)
        self.owner = owner or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        cfg = self.settings.pipeline
        self._connector = connector
        self._extractor = extractor
        self.normalizer = normalizer or ContentNormalizer()
        self.resolver = resolver or CompanyResolver(
            self.store.engine, self.tenant_id, retry_policy=resolver_retry_policy(self.settings)
        )
        self.progress = progress or DatabaseProgressStore(self.store.engine)
        self.lock = lock or PipelineLock(self.store.engine, self.tenant_id, ttl_seconds=cfg.lock_ttl_seconds)
        self.mailbox_policy = mailbox_retry_policy(self.settings)

        self._cancel = threading.Event()
        self._in_flight: Set[int] = set()

    @property
    def connector(self) -> MailboxConnector:
        """Lazy initialization of the Gmail connector."""
        if self._connector is None:
            self._connector = create_gmail_connector(self.settings.gmail)
        return self._connector

    @property
    def extractor(self) -> CompanyExtractor:
        """Lazy initialization of the extraction engine."""
        if self._extractor is None:
            llm_config = self.settings.llm
            self._extractor = CompanyExtractor(
                OpenAILLMClient(llm_config),
                llm_config,
                retry_policy=extraction_retry_policy(self.settings),
                cache=ExtractionCache(ttl_seconds=llm_config.cache_ttl_hours * 3600),
            )
        return self._extractor

    # ------------------------------------------------------------------ #
    # Checks
    # ------------------------------------------------------------------ #

    def validate_configuration(self) -> None:
        """
        Fail fast when credentials for components we would build are missing.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        missing = validate_required_settings("pipeline", self.settings)
        if self._connector is not None:
            missing = [m for m in missing if not m.startswith("GMAIL_")]
        if self._extractor is not None:
            missing = [m for m in missing if m != "OPENAI_API_KEY"]

        if missing:
            logger.error("Configuration validation failed", missing=missing)
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}", {"missing": missing}
            )
        logger.debug("Configuration validation passed")

    def perform_health_checks(self) -> Dict[str, Any]:
        """
        Perform health checks on the store and the mailbox.

        Returns:
            Dict with health check results
        """
        logger.info("Performing health checks")
        results: Dict[str, Any] = {}

        try:
            counts = self.store.count_by_status()
            results["database"] = {"status": "healthy", "emails": sum(counts.values())}
        except SubstackIntelError as e:
            results["database"] = {"status": "unhealthy", "error": e.message}

        try:
            health_check = getattr(self.connector, "health_check", None)
            if health_check is not None:
                results["gmail"] = health_check()
            else:
                ok = self.connector.test_connection()
                results["gmail"] = {"status": "healthy" if ok else "unhealthy"}
        except SubstackIntelError as e:
            results["gmail"] = {"status": "unhealthy", "error": e.message}

        results["lock"] = self.lock.status()
        results["overall_status"] = (
            "healthy"
            if all(results[name].get("status") == "healthy" for name in ("database", "gmail"))
            else "unhealthy"
        )

        logger.info("Health checks completed", overall_status=results["overall_status"])
        return results

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    @track_performance("mailbox_ingest")
    def ingest(self, lookback_days: int) -> Tuple[int, int]:
        """
        Fetch recent newsletters and store the ones not seen before.

        Returns:
            (messages fetched, new emails stored)

        Raises:
            AuthError: Mailbox credentials rejected
            TransientError: Mailbox still failing after retries
        """
        cfg = self.settings.pipeline
        messages = self.mailbox_policy.call(
            self.connector.fetch_recent_messages, lookback_days, cfg.max_messages
        )

        pairs = []
        for message in messages:
            normalized = self.normalizer.normalize(message)
            if len(normalized.clean_text) < cfg.min_content_chars:
                logger.debug(
                    "Skipping message with too little content",
                    message_id=message.message_id,
                    chars=len(normalized.clean_text),
                )
                continue
            pairs.append((message, normalized))

        inserted = self.store.save_messages(pairs)
        logger.info(
            "Ingest completed",
            fetched=len(messages),
            kept=len(pairs),
            inserted=inserted,
            lookback_days=lookback_days,
        )
        return len(messages), inserted

    def _clean_text(self, email: EmailRecord) -> str:
        if email.clean_text:
            return email.clean_text
        if not email.raw_content:
            return ""
        raw = RawMessage(
            message_id=email.message_id,
            subject=email.subject,
            sender=email.sender,
            body=email.raw_content,
            received_at=email.received_at,
        )
        return self.normalizer.normalize(raw).clean_text

    def _process_email(self, email: EmailRecord, result: PipelineRunResult) -> int:
        extraction = self.extractor.extract_companies(self._clean_text(email), email.newsletter_name)
        resolutions = self.resolver.resolve_candidates(
            extraction.candidates, email.id, email.newsletter_name
        )
        result.companies_extracted += len(resolutions)
        result.new_companies += sum(1 for r in resolutions if r.is_new_company)
        return len(resolutions)

    def process_batch(self, limit: int, result: Optional[PipelineRunResult] = None) -> PipelineRunResult:
        """
        Process the oldest unprocessed emails one at a time.

        Per-email failures mark that email FAILED and the batch continues;
        ``AuthError`` and ``ConfigurationError`` propagate and abort it.
        """
        result = result or PipelineRunResult(tenant_id=self.tenant_id)
        emails = self.store.select_unprocessed_batch(limit)
        total = len(emails)
        logger.info("Processing email batch", batch_size=total)

        for index, email in enumerate(emails, 1):
            if self._cancel.is_set():
                logger.warning("Pipeline run cancelled", remaining=total - index + 1)
                break

            if not self.lock.heartbeat(self.owner):
                # Unlocked by an operator or expired; another run may own the tenant now
                logger.error("Pipeline lock lost, stopping run", tenant_id=self.tenant_id, owner=self.owner)
                result.error_details["lock_lost"] = True
                self._cancel.set()
                break

            if not self.store.mark_processing(email.id):
                continue
            self._in_flight.add(email.id)

            try:
                companies = self._process_email(email, result)
                self.store.mark_completed(email.id)
            except (AuthError, ConfigurationError):
                raise
            except InvalidTransitionError as e:
                self._status_lost(email, e)
            except SubstackIntelError as e:
                self._record_failure(email, result, e.message, type(e).__name__)
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error processing email", email_id=email.id)
                self._record_failure(email, result, f"{type(e).__name__}: {e}", type(e).__name__)
            else:
                self._in_flight.discard(email.id)
                result.emails_completed += 1
                logger.info(
                    "Email processed",
                    email_id=email.id,
                    newsletter=email.newsletter_name,
                    companies=companies,
                )

            result.emails_processed += 1
            self._emit(
                ProgressEvent(
                    status="running",
                    progress=INGEST_PROGRESS + int((100 - INGEST_PROGRESS - 1) * index / total),
                    message=f"Processed {index} of {total} emails",
                    emails_processed=result.emails_processed,
                    emails_failed=result.emails_failed,
                    companies_extracted=result.companies_extracted,
                    current_email_subject=email.subject,
                    last_error=result.error_message,
                )
            )

        return result

    def _status_lost(self, email: EmailRecord, error: InvalidTransitionError) -> None:
        # Reset by an operator or a stuck-email recovery while in flight
        self._in_flight.discard(email.id)
        logger.warning(
            "Email status changed while it was processed",
            email_id=email.id,
            current=error.current,
            target=error.target,
        )

    def _record_failure(self, email: EmailRecord, result: PipelineRunResult, message: str, error_type: str) -> None:
        try:
            self.store.mark_failed(email.id, message)
        except InvalidTransitionError as e:
            self._status_lost(email, e)
            return
        self._in_flight.discard(email.id)
        result.emails_failed += 1
        result.error_message = message
        logger.warning(
            "Email processing failed",
            email_id=email.id,
            subject=email.subject,
            error=message,
            error_type=error_type,
        )

    def _is_fresh(self) -> bool:
        last = self.store.last_successful_run()
        if last is None or last.completed_at is None:
            return False
        window = timedelta(minutes=self.settings.pipeline.freshness_minutes)
        return utcnow() - last.completed_at < window

    def _emit(self, event: ProgressEvent) -> None:
        self.progress.set(self.tenant_id, event)

    def cancel(self) -> None:
        """Stop after the email currently being processed."""
        self._cancel.set()
        logger.info("Pipeline cancellation requested", tenant_id=self.tenant_id)

    def recover_stuck(self) -> int:
        return self.store.reset_stuck_processing(
            timedelta(minutes=self.settings.pipeline.stuck_minutes)
        )

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    def _final_status(self, result: PipelineRunResult) -> RunStatus:
        if self._cancel.is_set():
            return RunStatus.CANCELLED
        if result.emails_failed and not result.emails_completed:
            return RunStatus.FAILED
        if result.emails_failed or "ingest_error" in result.error_details:
            return RunStatus.PARTIAL
        return RunStatus.COMPLETED

    def run(
        self,
        trigger: Union[TriggerType, str] = TriggerType.MANUAL,
        request: Optional[TriggerRequest] = None,
    ) -> PipelineRunResult:
        """
        Execute one pipeline run.

        Manual and scheduled triggers behave identically; ``trigger`` is
        only recorded.

        Returns:
            PipelineRunResult with counts and final status

        Raises:
            ConfigurationError: Required configuration missing
            PipelineLockedError: Another run holds the tenant lock
        """
        request = request or TriggerRequest()
        if request.lookback_days is None:
            request = request.model_copy(update={"lookback_days": self.settings.pipeline.lookback_days})
        result = PipelineRunResult(trigger=trigger, tenant_id=self.tenant_id)
        self._cancel.clear()

        logger.info(
            "Starting pipeline run",
            trigger=enum_value(result.trigger),
            tenant_id=self.tenant_id,
            force_refresh=request.force_refresh,
            lookback_days=request.lookback_days,
            dry_run=self.settings.dry_run,
        )

        self.validate_configuration()

        if self.settings.dry_run:
            return self._dry_run(request, result)

        if not self.lock.acquire(self.owner):
            raise PipelineLockedError(
                f"Pipeline already running for tenant {self.tenant_id}",
                retry_after=self.lock.retry_after(),
                details={"tenant_id": self.tenant_id},
            )

        try:
            result.run_id = self.store.record_run_start(result)
            self._emit(ProgressEvent(status="running", progress=0, message="Pipeline started"))
            self.recover_stuck()

            if not request.force_refresh and self._is_fresh():
                result.error_details["ingest_skipped"] = "recent successful run"
                logger.info("Skipping ingest, last run is recent", tenant_id=self.tenant_id)
            else:
                try:
                    result.emails_fetched, _ = self.ingest(request.lookback_days)
                except TransientError as e:
                    # Keep going with emails already stored
                    result.error_details["ingest_error"] = e.message
                    result.error_message = e.message
                    logger.warning("Mailbox fetch failed after retries", error=e.message)

            self._emit(
                ProgressEvent(
                    status="running",
                    progress=INGEST_PROGRESS,
                    message=f"Fetched {result.emails_fetched} emails",
                    last_error=result.error_message,
                )
            )

            self.process_batch(self.settings.pipeline.batch_size, result)
            result.finish(self._final_status(result))

        except SubstackIntelError as e:
            result.error_details.update(e.details)
            result.error_details["error_type"] = type(e).__name__
            result.finish(RunStatus.FAILED, e.message)
            logger.error("Pipeline run aborted", error=e.message, error_type=type(e).__name__)

        except Exception as e:
            result.error_details["error_type"] = type(e).__name__
            result.finish(RunStatus.FAILED, f"Unexpected error: {e}")
            logger.exception("Pipeline run crashed")

        finally:
            try:
                released = self.store.reset_to_unprocessed(self._in_flight)
                if released:
                    logger.warning("Released unfinished emails", count=released)
                self._in_flight.clear()
                if result.run_id is not None:
                    self.store.record_run_finish(result.run_id, result)
                self._emit(self._summary_event(result))
            finally:
                self.lock.release(self.owner)

        logger.info(
            "Pipeline run finished",
            status=enum_value(result.status),
            processed=result.emails_processed,
            completed=result.emails_completed,
            failed=result.emails_failed,
            companies=result.companies_extracted,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _summary_event(self, result: PipelineRunResult) -> ProgressEvent:
        status = enum_value(result.status)
        return ProgressEvent(
            status=status,
            progress=100,
            message=(
                f"Pipeline {status}: {result.emails_completed} completed, "
                f"{result.emails_failed} failed, {result.companies_extracted} companies"
            ),
            emails_processed=result.emails_processed,
            emails_failed=result.emails_failed,
            companies_extracted=result.companies_extracted,
            last_error=result.error_message,
        )

    def _dry_run(self, request: TriggerRequest, result: PipelineRunResult) -> PipelineRunResult:
        """Fetch and normalize without writing anything."""
        messages = self.mailbox_policy.call(
            self.connector.fetch_recent_messages,
            request.lookback_days,
            self.settings.pipeline.max_messages,
        )
        result.emails_fetched = len(messages)
        result.skipped_reason = "dry run"
        result.finish(RunStatus.SKIPPED)
        logger.info("DRY RUN: pipeline would process fetched messages", fetched=len(messages))
        return result


def build_orchestrator(
    settings: Optional[Settings] = None,
    tenant_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    **overrides,
) -> PipelineOrchestrator:
    """Wire an orchestrator against the configured database."""
    settings = settings or get_settings()
    engine = get_engine(settings.database.url, echo=settings.database.echo)
    store = PipelineStore(engine, tenant_id or settings.pipeline.tenant_id)
    return PipelineOrchestrator(store, settings=settings, correlation_id=correlation_id, **overrides)


def run_pipeline(
    settings: Optional[Settings] = None,
    trigger: Union[TriggerType, str] = TriggerType.MANUAL,
    request: Optional[TriggerRequest] = None,
    tenant_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> PipelineRunResult:
    """
    Entry point shared by the HTTP, CLI and scheduled triggers.

    Args:
        settings: Application settings (global instance if None)
        trigger: "manual" or "scheduled"
        request: Trigger options, defaults to ``TriggerRequest()``
        tenant_id: Tenant scope, defaults to the configured tenant
        correlation_id: Optional correlation ID for tracing

    Returns:
        PipelineRunResult
    """
    orchestrator = build_orchestrator(settings, tenant_id=tenant_id, correlation_id=correlation_id)
    return orchestrator.run(trigger=trigger, request=request)
