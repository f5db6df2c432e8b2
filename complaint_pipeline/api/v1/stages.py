"""Stage API: trigger jobs, receive handoffs, inspect stage state."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from complaint_pipeline.config import settings
from complaint_pipeline.errors import InvalidParametersError, UnknownStageError
from complaint_pipeline.jobs.handoff import HandoffPayload
from complaint_pipeline.jobs.models import JobStatus
from complaint_pipeline.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter()

# These will be set by main.py during lifespan
_registry = None
_rate_limiter: Optional[RateLimiter] = None


def set_registry(registry):
    global _registry
    _registry = registry


def set_rate_limiter(limiter: RateLimiter):
    global _rate_limiter
    _rate_limiter = limiter


def client_ip(request: Request) -> str:
    """Rate-limit key for the caller.

    Forwarding headers are only honoured when the direct peer is one of
    `settings.trusted_proxies`; anyone else could set them to any value.
    """
    peer = request.client.host if request.client else None
    if peer is not None and peer in settings.trusted_proxies:
        for header in ("cf-connecting-ip", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return peer or "unknown"


def _require_registry():
    if _registry is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return _registry


def _check_api_key(api_key: Optional[str]) -> None:
    if settings.api_key and api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _orchestrator(stage: str):
    try:
        return _require_registry().get(stage)
    except UnknownStageError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _triggered_response(request: Request, job) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": "triggered",
            "job_id": job.id,
            "stage": job.stage,
            "created_at": job.created_at.isoformat(),
            "parameters": job.parameters,
            "status_url": str(request.url_for("get_job_status", job_id=job.id)),
        },
    )


@router.post("/stages/{stage}/trigger")
async def trigger_stage(
    stage: str,
    request: Request,
    parameters: Optional[Dict[str, Any]] = Body(None),
    x_api_key: Optional[str] = Header(None),
):
    """Create a job for `stage` and start it in the background."""
    registry = _require_registry()
    _orchestrator(stage)

    ip = client_ip(request)
    if _rate_limiter is not None:
        decision = _rate_limiter.check(ip)
        if not decision.allowed:
            logger.warning("Trigger rate limit exceeded for %s", ip)
            retry_after = max(1, int(decision.retry_after + 0.999))
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {_rate_limiter.limit} requests per window.",
                headers={"Retry-After": str(retry_after)},
            )
    _check_api_key(x_api_key)

    try:
        job = await registry.submit(stage, parameters)
    except InvalidParametersError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info("Triggered %s job %s from %s", stage, job.id, ip)
    return _triggered_response(request, job)


@router.post("/stages/{stage}/handoff")
async def receive_handoff(
    stage: str,
    payload: HandoffPayload,
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """Start `stage` with work handed over by an upstream stage."""
    registry = _require_registry()
    _orchestrator(stage)
    _check_api_key(x_api_key)

    try:
        job = await registry.submit(stage, payload.next_parameters())
    except InvalidParametersError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info(
        "Received handoff from %s job %s (%d records) -> %s job %s",
        payload.source_stage, payload.source_job_id, payload.records_produced, stage, job.id,
    )
    return _triggered_response(request, job)


@router.get("/stages/{stage}/jobs")
async def list_stage_jobs(
    stage: str,
    status: Optional[List[JobStatus]] = Query(None),
    limit: int = Query(20, ge=1, le=200),
):
    """Most recent jobs of a stage."""
    jobs = await _orchestrator(stage).list_jobs(status, limit=limit)
    return {
        "stage": stage,
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }


@router.get("/stages/{stage}/reliability")
async def stage_reliability(stage: str):
    """Circuit breaker and failure counters of the stage's inference dependency."""
    return _orchestrator(stage).tracker.snapshot()


@router.get("/stages")
async def list_stages():
    registry = _require_registry()
    return {
        "stages": [
            {
                "name": o.name,
                "jobs_table": o.table,
                "next_stage": o.stage.next_stage,
            }
            for o in registry.orchestrators()
        ]
    }
