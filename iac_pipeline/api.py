"""
FastAPI application: webhook intake and execution queries.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import get_settings
from .core.errors import (
    ExecutionImmutable,
    MalformedTrigger,
    TriggerAuthenticationFailure,
)
from .core.models import ExecutionKind, ExecutionOutcome, ExecutionState
from .core.orchestrator import PipelineOrchestrator
from .db.base import get_db, get_session_local, init_database
from .db.services import ExecutionService, SqlExecutionRecorder
from .pipeline_config import load_pipeline_config
from .triggers import TriggerListener

logger = structlog.get_logger()

# Global instances, created at startup
orchestrator: Optional[PipelineOrchestrator] = None
listener: Optional[TriggerListener] = None

settings = get_settings()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code, detail={"error": {"code": code, "message": message}}
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global orchestrator, listener
    logger.info("Starting IaC pipeline service")

    try:
        init_database()
        config = load_pipeline_config(settings.pipeline_config_path)

        orchestrator = PipelineOrchestrator.from_config(
            config, settings, recorder=SqlExecutionRecorder(get_session_local())
        )
        orchestrator.start()
        listener = TriggerListener(
            settings.webhook_secret,
            integration_branch=config.triggers.integration_branch,
            base_branch=config.triggers.base_branch,
            repositories=config.triggers.repositories,
        )
        logger.info("pipeline_loaded", pipeline=config.name, environment=config.environment.name)
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    logger.info("Shutting down IaC pipeline service")
    if orchestrator:
        orchestrator.stop()
    logger.info("Shutdown complete")


app = FastAPI(
    title="IaC Pipeline",
    description="Continuous delivery for infrastructure-as-code templates",
    version=importlib.metadata.version("iac-pipeline"),
    lifespan=lifespan,
)


def _require_orchestrator() -> PipelineOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


# Health and Info Endpoints
@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("iac-pipeline")}


@app.get("/status")
def get_system_status() -> dict[str, Any]:
    """Orchestrator status and active executions."""
    return {
        "orchestrator": _require_orchestrator().get_status(),
        "settings": {
            "environment": settings.environment,
            "debug": settings.debug,
            "max_concurrent_executions": settings.max_concurrent_executions,
        },
    }


# Trigger Endpoint
@app.post("/webhooks/scm")
async def scm_webhook(request: Request) -> JSONResponse:
    """
    Receive a source-control webhook.

    401 on a bad signature (nothing is recorded), 400 on a malformed event,
    202 with the execution id when an execution starts, 200 when ignored.
    """
    if listener is None:
        raise HTTPException(status_code=503, detail="Trigger listener not initialized")
    runner = _require_orchestrator()

    body = await request.body()
    try:
        decision = listener.handle(request.headers, body)
    except TriggerAuthenticationFailure as e:
        raise _error(401, e.code, e.message)
    except MalformedTrigger as e:
        raise _error(400, e.code, e.message)

    if not decision.accepted:
        return JSONResponse(
            status_code=200, content={"status": "ignored", "reason": decision.reason}
        )

    try:
        execution = runner.submit(decision.event, decision.kind)
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "execution_id": execution.id,
            "kind": execution.kind.value,
        },
    )


# Execution Endpoints
@app.get("/executions")
def list_executions(
    repository: Optional[str] = None,
    branch: Optional[str] = None,
    commit_sha: Optional[str] = None,
    outcome: Optional[str] = None,
    state: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """List executions, newest first, filtered by source reference or result."""
    if outcome and outcome not in {o.value for o in ExecutionOutcome}:
        raise _error(400, "INVALID_FILTER", f"Unknown outcome '{outcome}'")
    if state and state not in {s.value for s in ExecutionState}:
        raise _error(400, "INVALID_FILTER", f"Unknown state '{state}'")
    if limit < 1 or limit > 500 or offset < 0:
        raise _error(400, "INVALID_FILTER", "limit must be 1-500 and offset >= 0")

    executions = ExecutionService(db).list_executions(
        repository=repository,
        branch=branch,
        commit_sha=commit_sha,
        outcome=outcome,
        state=state,
        limit=limit,
        offset=offset,
    )
    return {
        "executions": [e.to_dict(include_results=False) for e in executions],
        "count": len(executions),
        "limit": limit,
        "offset": offset,
    }


@app.get("/executions/{execution_id}")
def get_execution(execution_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Execution detail with verdicts, validator results and audit trail."""
    service = ExecutionService(db)
    db_execution = service.get_execution(execution_id)
    if not db_execution:
        raise _error(404, "NOT_FOUND", f"Execution {execution_id} not found")
    data = db_execution.to_dict()
    data["audit_log"] = service.get_history(execution_id)
    return data


@app.post("/executions/{execution_id}/cancel", status_code=202)
def cancel_execution(execution_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Request cancellation of an in-flight execution."""
    runner = _require_orchestrator()
    service = ExecutionService(db)
    db_execution = service.get_execution(execution_id)
    if not db_execution:
        raise _error(404, "NOT_FOUND", f"Execution {execution_id} not found")
    if db_execution.outcome is not None:
        raise _error(
            409,
            ExecutionImmutable.code,
            f"Execution {execution_id} already {db_execution.outcome}",
        )
    if not runner.cancel(execution_id):
        raise _error(409, "NOT_IN_FLIGHT", f"Execution {execution_id} is not running")

    service.audit.log_cancel_requested(
        execution_id, db_execution.environment, actor_kind="human", actor_id="api"
    )
    return {"status": "cancel_requested", "execution_id": execution_id}


@app.post("/executions/{execution_id}/retrigger", status_code=202)
def retrigger_execution(execution_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Re-run a finished execution on the identical commit."""
    runner = _require_orchestrator()
    service = ExecutionService(db)
    db_execution = service.get_execution(execution_id)
    if not db_execution:
        raise _error(404, "NOT_FOUND", f"Execution {execution_id} not found")
    if db_execution.outcome is None:
        raise _error(409, "EXECUTION_IN_FLIGHT", f"Execution {execution_id} is still running")

    try:
        execution = runner.retrigger(
            db_execution.trigger_event(), ExecutionKind(db_execution.kind), execution_id
        )
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))

    service.audit.log_retrigger(
        execution_id, db_execution.environment, execution.id, actor_kind="human", actor_id="api"
    )
    return {
        "status": "accepted",
        "execution_id": execution.id,
        "retrigger_of": execution_id,
    }
