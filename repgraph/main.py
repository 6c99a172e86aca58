"""
RepGraph — Reputation Graph API

Reputation graph, score engine and computation jobs behind one FastAPI app.

Start with:
    uvicorn repgraph.main:app --host 0.0.0.0 --port 8000

Workers (COMPUTE_QUEUE_MODE=arq):
    arq repgraph.workers.worker_settings.WorkerSettings
"""
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from repgraph.api.reputation import reputation_error_handler, router as reputation_router
from repgraph.config import get_settings
from repgraph.errors import ReputationGraphError
from repgraph.service import build_service

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)
logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("repgraph_starting", version=VERSION, environment=settings.ENVIRONMENT)

    if settings.GRAPH_BACKEND == "neo4j":
        from repgraph.db.neo4j import init_schema
        try:
            init_schema()
        except ReputationGraphError as e:
            logger.warning("neo4j_init_failed", error=str(e))

    app.state.service = build_service(settings)

    yield

    if settings.GRAPH_BACKEND == "neo4j":
        from repgraph.db.neo4j import close
        close()
    logger.info("repgraph_stopped")


app = FastAPI(
    title="RepGraph — Reputation Graph & Score Engine",
    description=(
        "Per-user, per-domain reputation derived from the behavior graph: "
        "explainable scores, bounded graph queries, and asynchronous recomputation."
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())[:8]
    start = time.time()
    request.state.request_id = request_id
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    if request.url.path != "/v1/reputation/health":
        logger.info("request",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=duration_ms,
                    request_id=request_id)
    return response


app.add_exception_handler(ReputationGraphError, reputation_error_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
                 path=request.url.path,
                 error=str(exc),
                 type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "Something went wrong.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


app.include_router(reputation_router)


@app.get("/")
async def root():
    return {
        "name": "RepGraph",
        "version": VERSION,
        "endpoints": {
            "scores": "GET /v1/reputation/users/{user_id}/scores",
            "graph": "GET /v1/reputation/users/{user_id}/graph?depth=2&maxNodes=100",
            "visualization": "GET /v1/reputation/users/{user_id}/visualization?layout=force",
            "comparison": "GET /v1/reputation/users/{user_id}/comparison",
            "top": "GET /v1/reputation/top/{domain}?limit=10",
            "computations": "POST /v1/reputation/computations",
            "computation_status": "GET /v1/reputation/computations/{job_id}",
            "health": "GET /v1/reputation/health",
            "docs": "GET /docs",
        },
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("repgraph.main:app", host=settings.REPGRAPH_HOST, port=settings.REPGRAPH_PORT)
