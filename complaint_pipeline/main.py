"""Complaint pipeline job service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from complaint_pipeline.config import settings
from complaint_pipeline.api.v1.router import v1_router
from complaint_pipeline.api.v1.health import router as health_root_router
from complaint_pipeline.api.v1 import health as health_api
from complaint_pipeline.api.v1 import jobs as jobs_api
from complaint_pipeline.api.v1 import stages as stages_api
from complaint_pipeline.db.connection_pool import ConnectionPool
from complaint_pipeline.db.supabase_client import close_supabase, create_supabase
from complaint_pipeline.inference.client import InferenceClient
from complaint_pipeline.jobs.handoff import HandoffDispatcher
from complaint_pipeline.jobs.in_process_queue import InProcessQueue
from complaint_pipeline.jobs.orchestrator import JobOrchestrator
from complaint_pipeline.jobs.registry import PipelineRegistry
from complaint_pipeline.jobs.scheduler import AutoTriggerScheduler
from complaint_pipeline.resilience.executor import RetryPolicy
from complaint_pipeline.resilience.rate_limiter import RateLimiter
from complaint_pipeline.resilience.reliability import ReliabilityTracker
from complaint_pipeline.stages.enrich import EnrichStage
from complaint_pipeline.stages.summarize import SummarizeStage
from complaint_pipeline.storage.base import PipelineStore
from complaint_pipeline.storage.memory_store import InMemoryStore
from complaint_pipeline.storage.supabase_store import SupabaseStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = settings.log_level) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_store() -> PipelineStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory store, nothing will be persisted")
        return InMemoryStore()
    if settings.store_backend != "supabase":
        raise ValueError(f"Unknown store backend '{settings.store_backend}'")
    pool = ConnectionPool(
        create_supabase,
        capacity=settings.pool_capacity,
        max_age=settings.pool_max_age_seconds,
        poll_interval=settings.pool_poll_interval_seconds,
        closer=close_supabase,
    )
    return SupabaseStore(pool)


def build_registry(store: PipelineStore, inference: InferenceClient) -> PipelineRegistry:
    """Wire one orchestrator per stage, each with its own reliability tracker."""
    registry = PipelineRegistry()
    handoff = HandoffDispatcher(
        registry,
        remote_urls=settings.handoff_urls,
        timeout=settings.handoff_timeout_seconds,
    )
    policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        rate_limit_cooldown=settings.rate_limit_cooldown_seconds,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
    )
    for stage in (EnrichStage(inference), SummarizeStage(inference)):
        tracker = ReliabilityTracker(
            name=f"{stage.name}-inference",
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            fallback_ratio=settings.fallback_failure_ratio,
            fallback_min_requests=settings.fallback_min_requests,
        )
        registry.register(
            JobOrchestrator(stage, store, tracker=tracker, policy=policy, handoff=handoff)
        )
    registry.attach_dispatcher(
        InProcessQueue(runner=registry.run, workers=settings.max_concurrent_jobs)
    )
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging()
    logger.info("Starting complaint pipeline service on port %d", settings.port)
    logger.info("Store backend: %s", settings.store_backend)

    store = create_store()
    registry = build_registry(store, InferenceClient())
    await registry.dispatcher.start()
    await registry.recover()
    logger.info("Job dispatcher started with stages: %s", ", ".join(registry.stages()))

    # Wire registry and trigger protection into API endpoints
    health_api.set_registry(registry)
    jobs_api.set_registry(registry)
    stages_api.set_registry(registry)
    stages_api.set_rate_limiter(
        RateLimiter(settings.trigger_rate_limit, settings.trigger_rate_window_seconds)
    )

    scheduler = AutoTriggerScheduler(
        registry,
        interval_seconds=settings.auto_trigger_interval_seconds,
        min_items=settings.auto_trigger_min_items,
    )
    await scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down complaint pipeline service")
    await scheduler.stop()
    await registry.dispatcher.stop()


app = FastAPI(
    title="Complaint Pipeline Service",
    description="Job orchestration for complaint enrichment and summarization stages",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("complaint_pipeline.main:app", host="0.0.0.0", port=settings.port)
