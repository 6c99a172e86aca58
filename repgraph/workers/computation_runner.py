"""
RepGraph - Computation Runner

arq job that executes one ComputationJob inside the worker process.
The API process claims and stores the job (Queued); this runner picks it up
by id and drives it to Completed or Failed through the job manager, which
also releases the claim.

Only used with COMPUTE_QUEUE_MODE=arq. In inline mode the API process runs
jobs itself as asyncio tasks.
"""
import structlog
from arq import create_pool
from arq.connections import RedisSettings

from repgraph.compute.jobs import ComputationJob
from repgraph.config import get_settings
from repgraph.errors import JobNotFound

logger = structlog.get_logger()

_pool = None


def redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().REDIS_URL)


async def queue_computation(job: ComputationJob):
    """Queue a computation job. The arq job id is the computation id, so re-queues dedupe."""
    global _pool
    if _pool is None:
        _pool = await create_pool(redis_settings())
    await _pool.enqueue_job("execute_computation", job.job_id, _job_id=job.job_id)
    logger.info("computation_job_enqueued", job_id=job.job_id, type=job.type.value, target=job.target)


async def execute_computation(ctx, job_id: str):
    """arq job function."""
    service = ctx["service"]
    logger.info("computation_run_start", job_id=job_id)
    try:
        job = await service.manager.run(job_id)
    except JobNotFound:
        logger.error("computation_job_missing", job_id=job_id)
        return {"job_id": job_id, "status": "missing"}

    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "generated_scores": job.result.generated_scores,
        "failed_units": int(job.result.performance.get("failedUnits", 0)),
    }
