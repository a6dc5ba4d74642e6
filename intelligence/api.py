"""FastAPI web API for the research council intelligence engine.

Thin HTTP layer over ``IntelligenceService``: every route validates its
input, resolves the caller's organisation and delegates.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from intelligence.config import settings, validate_config
from intelligence.errors import (
    AccessDeniedError,
    EntityNotFoundError,
    JobNotFoundError,
    ReportNotFoundError,
)
from intelligence.models import EntityStatus, Identity, JobStatusView
from intelligence.service import IntelligenceContext, IntelligenceService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ESTIMATED_TIME_SECONDS = 120


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_config()
    worker_task = None
    if getattr(app.state, "service", None) is None:
        ctx = IntelligenceContext()
        ctx.start()
        app.state.ctx = ctx
        app.state.service = IntelligenceService(ctx)
    ctx = app.state.ctx
    if settings.run_worker_in_api:
        worker_task = asyncio.create_task(ctx.pool.run_forever())
        logger.info("In-process worker pool started")
    logger.info("Intelligence API ready")
    yield
    if worker_task is not None:
        ctx.pool.stop()
        await worker_task
    await ctx.close()


app = FastAPI(
    title="Research Council Intelligence Engine",
    version="0.1.0",
    description="Queue, track and retrieve multi-agent, citation-backed intelligence reports.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Authentication / caller
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
):
    """Require a valid Bearer token when INTELLIGENCE_API_KEY is set."""
    expected = settings.intelligence_api_key
    if not expected:
        return  # auth disabled – no key configured
    if not credentials or credentials.credentials != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


class Caller(BaseModel):
    org_id: str = ""
    user_id: str = ""


def get_caller(
    x_org_id: str = Header(""),
    x_user_id: str = Header(""),
) -> Caller:
    return Caller(org_id=x_org_id, user_id=x_user_id)


def get_service(request: Request) -> IntelligenceService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(JobNotFoundError)
async def _job_not_found(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Job not found"})


@app.exception_handler(ReportNotFoundError)
async def _report_not_found(request: Request, exc: ReportNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Report not found"})


@app.exception_handler(EntityNotFoundError)
async def _entity_not_found(request: Request, exc: EntityNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Entity not found"})


@app.exception_handler(AccessDeniedError)
async def _access_denied(request: Request, exc: AccessDeniedError):
    return JSONResponse(status_code=403, content={"detail": "Access denied"})


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ScrapeRequest(BaseModel):
    linkedin_url: str = Field(..., min_length=1, description="Profile URL of the subject")
    entity_type: Literal["person", "company"]
    extracted_data: dict[str, Any] = Field(default_factory=dict)


class GenerateEntity(BaseModel):
    linkedin_url: str = Field(..., min_length=1)
    entity_type: Literal["person", "company"]
    extracted_data: dict[str, Any] = Field(default_factory=dict)


class GenerateOptions(BaseModel):
    priority: Optional[Literal["normal", "high"]] = None
    notify_when_complete: Optional[bool] = None


class GenerateRequest(BaseModel):
    entity: GenerateEntity
    options: Optional[GenerateOptions] = None


class JobQueuedResponse(BaseModel):
    job_id: str
    entity_id: str
    status: str = "queued"
    estimated_time_seconds: int = ESTIMATED_TIME_SECONDS


class EntitySearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)
    limit: int = Field(10, ge=1, le=50)
    entity_type: Optional[Literal["person", "company"]] = None


class RagQueryRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    entity_id: Optional[str] = None
    limit: int = Field(5, ge=1, le=20)


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    openai_configured: bool
    perplexity_configured: bool
    anthropic_configured: bool
    jina_configured: bool
    serpapi_configured: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check – verifies the service is running and shows config status."""
    return HealthResponse(
        status="ok",
        version="0.1.0",
        database="sqlite" if settings.is_sqlite else "postgres",
        openai_configured=bool(settings.openai_api_key),
        perplexity_configured=bool(settings.perplexity_api_key),
        anthropic_configured=bool(settings.anthropic_api_key),
        jina_configured=bool(settings.jina_api_key),
        serpapi_configured=bool(settings.serpapi_api_key),
    )


@app.get(
    "/api/intelligence/exists",
    response_model=EntityStatus,
    dependencies=[Depends(verify_api_key)],
)
async def entity_exists(
    entity: Optional[str] = Query(None, description="Profile URL to look up"),
    service: IntelligenceService = Depends(get_service),
):
    """Does this subject have an entity / report yet? Cache-fronted."""
    if not entity:
        raise HTTPException(status_code=400, detail="Missing entity parameter")
    return await service.get_entity_status(entity)


@app.post("/api/intelligence/entity/scrape", dependencies=[Depends(verify_api_key)])
async def record_scrape(
    request: ScrapeRequest,
    caller: Caller = Depends(get_caller),
    service: IntelligenceService = Depends(get_service),
):
    """Passive data collection from the browser extraction layer."""
    try:
        entity_id = await service.record_observation(
            request.linkedin_url, request.entity_type, request.extracted_data, caller.org_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception:
        logger.exception("Scrape storage failed")
        raise HTTPException(status_code=500, detail="Failed to store scraped data")
    return {"success": True, "entity_id": entity_id}


@app.post(
    "/api/intelligence/generate",
    response_model=JobQueuedResponse,
    dependencies=[Depends(verify_api_key)],
)
async def generate_report(
    request: GenerateRequest,
    caller: Caller = Depends(get_caller),
    service: IntelligenceService = Depends(get_service),
):
    """Queue report generation; poll /status/{job_id} for progress."""
    entity = request.entity
    identity = Identity.from_facts(entity.extracted_data, profile_url=entity.linkedin_url)
    try:
        job_id = await service.enqueue_generation(
            identity,
            org_id=caller.org_id,
            user_id=caller.user_id,
            kind=entity.entity_type,
            facts=entity.extracted_data,
        )
        job = await asyncio.to_thread(service.ctx.queue.get, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception:
        logger.exception("Report generation failed to queue")
        raise HTTPException(status_code=500, detail="Failed to queue report generation")
    return JobQueuedResponse(job_id=job_id, entity_id=job.entity_id)


@app.get(
    "/api/intelligence/status/{job_id}",
    response_model=JobStatusView,
    dependencies=[Depends(verify_api_key)],
)
async def job_status(job_id: str, service: IntelligenceService = Depends(get_service)):
    return await service.get_job_status(job_id)


@app.get("/api/intelligence/report/{report_id}", dependencies=[Depends(verify_api_key)])
async def get_report(
    report_id: str,
    caller: Caller = Depends(get_caller),
    service: IntelligenceService = Depends(get_service),
):
    return await service.get_report(report_id, org_id=caller.org_id or None)


@app.post(
    "/api/intelligence/refresh/{report_id}",
    response_model=JobQueuedResponse,
    dependencies=[Depends(verify_api_key)],
)
async def refresh_report(
    report_id: str,
    caller: Caller = Depends(get_caller),
    service: IntelligenceService = Depends(get_service),
):
    """Queue a new version of an existing report."""
    job_id = await service.enqueue_refresh(report_id, org_id=caller.org_id, user_id=caller.user_id)
    job = await asyncio.to_thread(service.ctx.queue.get, job_id)
    return JobQueuedResponse(job_id=job_id, entity_id=job.entity_id)


@app.post("/api/intelligence/search/entities", dependencies=[Depends(verify_api_key)])
async def search_entities(
    request: EntitySearchRequest,
    service: IntelligenceService = Depends(get_service),
):
    try:
        results = await service.search_entities(
            request.query, limit=request.limit, entity_type=request.entity_type
        )
    except Exception:
        logger.exception("Entity search failed")
        raise HTTPException(status_code=500, detail="Search failed")
    return {"results": results, "query": request.query, "count": len(results)}


@app.post("/api/intelligence/rag/query", dependencies=[Depends(verify_api_key)])
async def rag_query(
    request: RagQueryRequest,
    service: IntelligenceService = Depends(get_service),
):
    try:
        results = await service.query_report_sections(
            request.query, entity_id=request.entity_id, limit=request.limit
        )
    except Exception:
        logger.exception("RAG query failed")
        raise HTTPException(status_code=500, detail="RAG query failed")
    return {"results": results, "query": request.query, "count": len(results)}
