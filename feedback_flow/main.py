"""Feedback Flow pipeline tracker - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedback_flow.api.v1 import projects as projects_api
from feedback_flow.api.v1 import sources as sources_api
from feedback_flow.api.v1.router import v1_router
from feedback_flow.config import Settings, settings
from feedback_flow.db.supabase_client import get_supabase
from feedback_flow.jobs.projects import ProjectService
from feedback_flow.jobs.service import JobService
from feedback_flow.jobs.submission import make_strategy
from feedback_flow.jobs.tracker import PipelineTracker
from feedback_flow.logging_setup import setup_logging
from feedback_flow.remote.analysis_client import AnalysisClient
from feedback_flow.storage.memory_store import InMemoryRecordStore
from feedback_flow.storage.record_store import RecordStore
from feedback_flow.storage.supabase_store import SupabaseRecordStore

logger = logging.getLogger("feedback_flow")


async def create_store(config: Settings, table: str) -> RecordStore:
    if config.record_store_mode == "memory":
        return InMemoryRecordStore()
    if config.record_store_mode == "supabase":
        return SupabaseRecordStore(await get_supabase(), table=table)
    raise ValueError(f"Unknown record store mode '{config.record_store_mode}'")


def build_service(config: Settings, store: RecordStore, client: AnalysisClient) -> JobService:
    """Wire strategy, tracker and service together from settings."""
    strategy = make_strategy(config.submission_mode, client)
    tracker = PipelineTracker(
        store,
        strategy,
        interval=config.poll_interval_seconds,
        timeout=config.poll_timeout_seconds,
        max_attempts=config.poll_max_attempts,
        logger=logging.getLogger("feedback_flow.tracker"),
    )
    return JobService(store, strategy, tracker, client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    setup_logging(settings.log_level, settings.log_json)

    logger.info("Starting Feedback Flow tracker on port %s", settings.api_port)
    logger.info("Record store: %s, submission mode: %s", settings.record_store_mode, settings.submission_mode)
    logger.info("Analysis service: %s", settings.analysis_api_base_url)

    store = await create_store(settings, settings.data_sources_table)
    projects_store = await create_store(settings, settings.projects_table)
    client = AnalysisClient(
        settings.analysis_api_base_url,
        timeout=settings.analysis_request_timeout_seconds,
    )
    service = build_service(settings, store, client)
    resumed = await service.start()
    logger.info("Job service started, %d job(s) resumed", resumed)

    sources_api.set_service(service)
    projects_api.set_service(ProjectService(projects_store, store))

    yield

    logger.info("Shutting down Feedback Flow tracker")
    sources_api.set_service(None)
    projects_api.set_service(None)
    await service.stop()
    await client.aclose()
    await store.close()
    await projects_store.close()


app = FastAPI(
    title="Feedback Flow",
    description="Tracks feedback collection and analysis pipelines for registered sources",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8080", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("feedback_flow.main:app", host="0.0.0.0", port=settings.api_port)
