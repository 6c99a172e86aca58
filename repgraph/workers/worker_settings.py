"""
RepGraph - Worker Settings

arq worker configuration:
    1. execute_computation job function (computation runner)
    2. Scheduler tick as a cron job (hourly)

Start with:
    arq repgraph.workers.worker_settings.WorkerSettings
"""
import structlog
from arq import cron

from repgraph.config import get_settings
from repgraph.db.neo4j import close as close_neo4j
from repgraph.service import build_service
from repgraph.workers.computation_runner import execute_computation, redis_settings
from repgraph.workers.scheduler import tick as scheduler_tick

logger = structlog.get_logger()


async def startup(ctx):
    settings = get_settings()
    ctx["settings"] = settings
    ctx["service"] = build_service(settings)
    logger.info("worker_started", graph_backend=settings.GRAPH_BACKEND)


async def shutdown(ctx):
    if ctx["settings"].GRAPH_BACKEND == "neo4j":
        close_neo4j()
    logger.info("worker_stopped")


class WorkerSettings:
    functions = [execute_computation]

    cron_jobs = [
        # Checks whether a Full recompute is due and refreshes the baseline
        cron(scheduler_tick, minute={0}, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings()
    max_jobs = 10
    job_timeout = 3600  # Full recomputations can be long
