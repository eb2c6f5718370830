"""
Scheduled triggers.

The nightly pipeline run uses the same ``run_pipeline`` entry point as the
manual trigger, with ``trigger="scheduled"`` and default options. The
embedding queue is drained on a short interval.
"""

from typing import Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from substack_intel.core.config import Settings, get_settings
from substack_intel.core.exceptions import PipelineLockedError, SubstackIntelError
from substack_intel.core.logging import get_logger, set_correlation_id
from substack_intel.core.models import PipelineRunResult, TriggerRequest, TriggerType
from substack_intel.data.db import get_engine
from substack_intel.intelligence.embeddings import EmbeddingService
from substack_intel.intelligence.llm_client import OpenAILLMClient
from substack_intel.workflows.pipeline import run_pipeline

logger = get_logger(__name__)

EMBEDDING_INTERVAL_MINUTES = 10
EMBEDDING_BATCH_SIZE = 5


def get_pipeline_schedule(settings: Settings) -> Tuple[CronTrigger, str]:
    """Cron trigger for the pipeline from ``PIPELINE_SCHEDULE_CRON``."""
    cfg = settings.pipeline
    trigger = CronTrigger.from_crontab(cfg.schedule_cron, timezone=cfg.schedule_timezone)
    return trigger, f"cron '{cfg.schedule_cron}' ({cfg.schedule_timezone})"


def scheduled_pipeline_job(settings: Optional[Settings] = None) -> Optional[PipelineRunResult]:
    """Run the pipeline as the scheduled trigger; never raises into the scheduler."""
    settings = settings or get_settings()
    correlation_id = set_correlation_id()
    try:
        result = run_pipeline(
            settings,
            trigger=TriggerType.SCHEDULED,
            request=TriggerRequest(),
            correlation_id=correlation_id,
        )
    except PipelineLockedError as e:
        logger.info("Scheduled run skipped, pipeline busy", retry_after=e.retry_after)
        return None
    except SubstackIntelError as e:
        logger.error("Scheduled run failed", error=e.message, error_type=type(e).__name__)
        return None

    logger.info("Scheduled run finished", status=result.status, run_id=result.run_id)
    return result


def embedding_queue_job(settings: Optional[Settings] = None, batch_size: int = EMBEDDING_BATCH_SIZE) -> dict:
    settings = settings or get_settings()
    engine = get_engine(settings.database.url, echo=settings.database.echo)
    service = EmbeddingService(engine, OpenAILLMClient(settings.llm), tenant_id=settings.pipeline.tenant_id)
    try:
        return service.process_queue(batch_size=batch_size)
    except SubstackIntelError as e:
        logger.error("Embedding queue job failed", error=e.message, error_type=type(e).__name__)
        return {"processed": 0, "completed": 0, "failed": 0}


def setup_scheduler(settings: Optional[Settings] = None, blocking: bool = True):
    """
    Build the scheduler with the pipeline and embedding jobs.

    Returns an unstarted ``BlockingScheduler`` (CLI ``schedule`` command) or
    ``BackgroundScheduler`` (embedded in the API process).
    """
    settings = settings or get_settings()
    scheduler_cls = BlockingScheduler if blocking else BackgroundScheduler
    scheduler = scheduler_cls(
        timezone=settings.pipeline.schedule_timezone,
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 600},
    )

    trigger, description = get_pipeline_schedule(settings)
    scheduler.add_job(
        scheduled_pipeline_job,
        trigger=trigger,
        args=[settings],
        id="scheduled_pipeline",
        name=f"Newsletter pipeline ({description})",
        replace_existing=True,
    )

    if settings.llm.openai_api_key:
        scheduler.add_job(
            embedding_queue_job,
            trigger=IntervalTrigger(minutes=EMBEDDING_INTERVAL_MINUTES),
            args=[settings],
            id="embedding_queue",
            name="Company embedding backfill",
            replace_existing=True,
        )
    else:
        logger.warning("OPENAI_API_KEY not set; embedding queue job disabled")

    logger.info("Scheduler configured", schedule=description, jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler
