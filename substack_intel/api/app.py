"""FastAPI application exposing the pipeline triggers and status."""

from __future__ import annotations

import hmac
from typing import Callable, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from substack_intel import __version__
from substack_intel.core.config import Settings, get_settings
from substack_intel.core.exceptions import ConfigurationError, PipelineLockedError
from substack_intel.core.logging import get_logger
from substack_intel.core.models import (
    PipelineRunResult,
    RunStatus,
    Session,
    TriggerRequest,
    TriggerType,
    utcnow,
)
from substack_intel.data.db import get_engine
from substack_intel.data.store import PipelineStore
from substack_intel.services.lock import PipelineLock
from substack_intel.services.progress import DatabaseProgressStore
from substack_intel.services.session import BearerTokenSessionProvider
from substack_intel.workflows.pipeline import PipelineOrchestrator, build_orchestrator

logger = get_logger(__name__)

OrchestratorFactory = Callable[[str], PipelineOrchestrator]


def _run_response(result: PipelineRunResult) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={
            "success": result.status != RunStatus.FAILED.value,
            "result": result.model_dump(mode="json"),
        },
    )


def _locked_response(error: PipelineLockedError) -> JSONResponse:
    retry_after = int(error.retry_after or 0)
    return JSONResponse(
        status_code=429,
        content={"success": False, "error": error.message, "retryAfter": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


def build_app(
    settings: Optional[Settings] = None,
    engine=None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> FastAPI:
    """Create a configured FastAPI instance."""
    settings = settings or get_settings()
    engine = engine or get_engine(settings.database.url, echo=settings.database.echo)
    cfg = settings.pipeline

    sessions = BearerTokenSessionProvider(cfg.api_token, user_id=cfg.tenant_id)
    progress = DatabaseProgressStore(engine)

    def default_factory(tenant_id: str) -> PipelineOrchestrator:
        return build_orchestrator(settings, tenant_id=tenant_id)

    make_orchestrator = orchestrator_factory or default_factory

    app = FastAPI(title="Substack Intelligence Pipeline", version=__version__)

    # Dependency factories
    def require_session(authorization: Optional[str] = Header(default=None)) -> Session:
        session = sessions.session_for(authorization)
        if session is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return session

    def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
        expected = f"Bearer {cfg.cron_secret}" if cfg.cron_secret else None
        if not expected or not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def store_for(session: Session) -> PipelineStore:
        return PipelineStore(engine, session.user_id)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__, "timestamp": utcnow().isoformat()}

    @app.post("/pipeline/sync")
    def trigger_sync(
        request: TriggerRequest = Body(default_factory=TriggerRequest),
        session: Session = Depends(require_session),
    ):
        if not session.can("pipeline:run"):
            raise HTTPException(status_code=403, detail="Missing permission pipeline:run")
        try:
            result = make_orchestrator(session.user_id).run(TriggerType.MANUAL, request)
        except PipelineLockedError as e:
            return _locked_response(e)
        except ConfigurationError as e:
            logger.error("Manual trigger rejected", error=e.message)
            return JSONResponse(status_code=500, content={"success": False, "error": e.message})
        return _run_response(result)

    @app.post("/pipeline/cron")
    def trigger_cron(_: None = Depends(require_cron_secret)):
        try:
            result = make_orchestrator(cfg.tenant_id).run(TriggerType.SCHEDULED, TriggerRequest())
        except PipelineLockedError as e:
            return _locked_response(e)
        except ConfigurationError as e:
            logger.error("Cron trigger rejected", error=e.message)
            return JSONResponse(status_code=500, content={"success": False, "error": e.message})
        return _run_response(result)

    @app.get("/pipeline/status")
    def pipeline_status(session: Session = Depends(require_session)) -> dict:
        store = store_for(session)
        last_run = store.last_successful_run()
        return {
            "success": True,
            "emails": store.count_by_status(),
            "newsletters": store.newsletter_stats(),
            "lock": PipelineLock(engine, session.user_id, cfg.lock_ttl_seconds).status(),
            "lastSuccessfulRun": last_run.model_dump(mode="json") if last_run else None,
            "latestUpdate": progress.latest(session.user_id),
        }

    @app.get("/pipeline/updates")
    def pipeline_updates(
        peek: bool = Query(default=False),
        session: Session = Depends(require_session),
    ) -> dict:
        return {"success": True, "updates": progress.get(session.user_id, peek=peek)}

    @app.get("/pipeline/unlock")
    def lock_status(session: Session = Depends(require_session)) -> dict:
        status = PipelineLock(engine, session.user_id, cfg.lock_ttl_seconds).status()
        return {"success": True, **status}

    @app.post("/pipeline/unlock")
    def unlock(session: Session = Depends(require_session)) -> dict:
        removed = PipelineLock(engine, session.user_id, cfg.lock_ttl_seconds).force_unlock()
        progress.clear(session.user_id)
        return {
            "success": True,
            "released": removed,
            "message": "Pipeline lock cleared",
            "timestamp": utcnow().isoformat(),
        }

    @app.post("/emails/reset-failed")
    def reset_failed(session: Session = Depends(require_session)) -> dict:
        count = store_for(session).reset_failed()
        return {"success": True, "reset": count}

    return app
