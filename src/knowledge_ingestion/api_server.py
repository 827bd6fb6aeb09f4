"""Admin API for the ingestion service.

Consumed by the platform gateway: source registration and lifecycle, manual
sync triggers, job history and cancellation, and ranked search.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy import text as sql_text

from knowledge_ingestion.config import load_settings
from knowledge_ingestion.connectors.registry import (
    ConnectorRegistry,
    get_connector_registry,
)
from knowledge_ingestion.db import db_session, init_engine
from knowledge_ingestion.db_migrate import migrate
from knowledge_ingestion.errors import InvalidConfiguration, JobNotFound, SourceNotFound
from knowledge_ingestion.job_runner import JobRunner
from knowledge_ingestion.logging_setup import configure_logging, get_logger
from knowledge_ingestion.models import KnowledgeSource
from knowledge_ingestion.scheduler import Scheduler, scheduler_loop
from knowledge_ingestion.search import SearchIndexer
from knowledge_ingestion.tagging import HUMAN_CONFIDENCE

logger = get_logger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "knowledge_ingestion_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "knowledge_ingestion_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


# =============================================================================
# Request / Response Models
# =============================================================================


class CreateSourceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., max_length=50, description="Connector kind (github, jira, slack)")
    configuration: dict[str, Any] = Field(default_factory=dict)
    sync_frequency_minutes: int = Field(default=60, gt=0)
    is_active: bool = True
    created_by: Optional[str] = Field(None, max_length=128)


class UpdateSourceRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    configuration: Optional[dict[str, Any]] = None
    sync_frequency_minutes: Optional[int] = Field(None, gt=0)


class SourceResponse(BaseModel):
    id: str
    name: str
    type: str
    configuration: dict[str, Any]
    sync_frequency_minutes: int
    is_active: bool
    last_sync_at: Optional[str] = None
    needs_reconfiguration: bool
    consecutive_failures: int
    last_error_kind: Optional[str] = None
    active_job_id: Optional[str] = None
    created_by: Optional[str] = None

    @classmethod
    def from_model(cls, source: KnowledgeSource) -> "SourceResponse":
        return cls(
            id=str(source.id),
            name=source.name,
            type=source.type,
            configuration=source.configuration or {},
            sync_frequency_minutes=source.sync_frequency_minutes,
            is_active=source.is_active,
            last_sync_at=source.last_sync_at.isoformat() if source.last_sync_at else None,
            needs_reconfiguration=source.needs_reconfiguration,
            consecutive_failures=source.consecutive_failures,
            last_error_kind=source.last_error_kind,
            active_job_id=str(source.active_job_id) if source.active_job_id else None,
            created_by=source.created_by,
        )


class TagCandidate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    confidence: float = Field(default=HUMAN_CONFIDENCE)


class AssignTagsRequest(BaseModel):
    tags: list[TagCandidate] = Field(..., min_length=1)


def _parse_uuid(raw: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"{what} not found") from None


def create_app(connectors: Optional[ConnectorRegistry] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        configure_logging()
        s = load_settings()
        init_engine(s.db_url)
        # Schema is owned by db_migrate unless auto-create is switched on.
        if s.auto_create_tables:
            migrate()

        registry = connectors or get_connector_registry()
        runner = JobRunner.from_settings(s, connectors=registry)
        app_.state.settings = s
        app_.state.connectors = registry
        app_.state.runner = runner
        app_.state.scheduler = Scheduler(runner)
        app_.state.indexer = SearchIndexer()

        scheduler_task = None
        if s.scheduler_enabled:
            scheduler_task = asyncio.create_task(
                scheduler_loop(app_.state.scheduler, s.poll_interval_seconds)
            )
        else:
            logger.info("scheduler_disabled")

        yield

        if scheduler_task is not None:
            scheduler_task.cancel()
            try:
                await scheduler_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(
        title="Knowledge Ingestion Service", version="0.1.0", lifespan=lifespan
    )

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", "unmatched")
        HTTP_REQUESTS_TOTAL.labels(request.method, path, str(response.status_code)).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(request.method, path).observe(
            time.perf_counter() - start
        )
        return response

    @app.exception_handler(InvalidConfiguration)
    async def _invalid_configuration(request: Request, exc: InvalidConfiguration):
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "errors": exc.errors},
        )

    @app.exception_handler(SourceNotFound)
    @app.exception_handler(JobNotFound)
    async def _not_found(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health")
    def health():
        with db_session() as sess:
            sess.execute(sql_text("SELECT 1"))
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics_endpoint():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    @app.post("/api/v1/sources", status_code=201, response_model=SourceResponse)
    def create_source(body: CreateSourceRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            source_id = runner.sources.register(
                sess,
                name=body.name,
                kind=body.type,
                configuration=body.configuration,
                sync_frequency_minutes=body.sync_frequency_minutes,
                is_active=body.is_active,
                created_by=body.created_by,
            )
            return SourceResponse.from_model(runner.sources.get(sess, source_id))

    @app.get("/api/v1/sources", response_model=list[SourceResponse])
    def list_sources(request: Request, active_only: bool = False):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            return [
                SourceResponse.from_model(src)
                for src in runner.sources.list_sources(sess, active_only=active_only)
            ]

    @app.get("/api/v1/sources/{source_id}", response_model=SourceResponse)
    def get_source(source_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            source = runner.sources.get(sess, _parse_uuid(source_id, "Source"))
            return SourceResponse.from_model(source)

    @app.patch("/api/v1/sources/{source_id}", response_model=SourceResponse)
    def update_source(source_id: str, body: UpdateSourceRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            source = runner.sources.update(
                sess,
                _parse_uuid(source_id, "Source"),
                name=body.name,
                configuration=body.configuration,
                sync_frequency_minutes=body.sync_frequency_minutes,
            )
            return SourceResponse.from_model(source)

    @app.post("/api/v1/sources/{source_id}/activate", response_model=SourceResponse)
    def activate_source(source_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            source = runner.sources.activate(sess, _parse_uuid(source_id, "Source"))
            return SourceResponse.from_model(source)

    @app.post("/api/v1/sources/{source_id}/deactivate", response_model=SourceResponse)
    def deactivate_source(source_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            source = runner.sources.deactivate(sess, _parse_uuid(source_id, "Source"))
            return SourceResponse.from_model(source)

    @app.delete("/api/v1/sources/{source_id}", status_code=204)
    def delete_source(source_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        with db_session() as sess:
            runner.sources.delete(sess, _parse_uuid(source_id, "Source"))
        return Response(status_code=204)

    # -------------------------------------------------------------------------
    # Sync jobs
    # -------------------------------------------------------------------------

    @app.post("/api/v1/sources/{source_id}/sync", status_code=202)
    def trigger_sync(source_id: str, request: Request, background_tasks: BackgroundTasks):
        runner: JobRunner = request.app.state.runner
        job_id = runner.start_job(_parse_uuid(source_id, "Source"), trigger="manual")
        if job_id is None:
            raise HTTPException(
                status_code=409, detail="A sync job is already active for this source"
            )
        background_tasks.add_task(runner.run_job, job_id)
        return {"job_id": str(job_id), "status": "pending"}

    @app.get("/api/v1/sources/{source_id}/jobs")
    def list_jobs(
        source_id: str, request: Request, limit: int = Query(50, ge=1, le=500)
    ):
        runner: JobRunner = request.app.state.runner
        jobs = runner.list_jobs(_parse_uuid(source_id, "Source"), limit=limit)
        return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}

    @app.get("/api/v1/jobs/{job_id}")
    def get_job(job_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        return runner.get_job(_parse_uuid(job_id, "Job")).to_dict()

    @app.post("/api/v1/jobs/{job_id}/cancel")
    def cancel_job(job_id: str, request: Request):
        runner: JobRunner = request.app.state.runner
        return runner.cancel_job(_parse_uuid(job_id, "Job")).to_dict()

    # -------------------------------------------------------------------------
    # Items, tags and search
    # -------------------------------------------------------------------------

    @app.post("/api/v1/items/{item_id}/tags")
    def assign_tags(item_id: str, body: AssignTagsRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        iid = _parse_uuid(item_id, "Item")
        with db_session() as sess:
            if runner.items.get(sess, iid) is None:
                raise HTTPException(status_code=404, detail="Item not found")
            runner.tagger.associate(
                sess, iid, [(t.name, t.confidence) for t in body.tags]
            )
            return {"item_id": item_id, "tags": runner.tagger.tags_for_item(sess, iid)}

    @app.get("/api/v1/search")
    def search(
        request: Request,
        q: str = Query(..., min_length=1),
        limit: int = Query(20, ge=1, le=200),
        match_all: bool = False,
        source_id: Optional[str] = None,
    ):
        indexer: SearchIndexer = request.app.state.indexer
        sid = _parse_uuid(source_id, "Source") if source_id else None
        with db_session() as sess:
            hits = indexer.search(
                sess, q, limit=limit, match_all=match_all, source_id=sid
            )
        return {
            "query": q,
            "results": [
                {
                    "item_id": str(hit.item_id),
                    "source_id": str(hit.source_id),
                    "title": hit.title,
                    "score": round(hit.score, 6),
                    "updated_at": hit.updated_at.isoformat(),
                }
                for hit in hits
            ],
            "count": len(hits),
        }

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Run the API server."""
    import uvicorn

    port = load_settings().api_port
    logger.info("server_starting", port=port)
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run_server()
