import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from arq.connections import RedisSettings, create_pool
from arq.constants import default_queue_name, job_key_prefix, result_key_prefix
from arq.jobs import serialize_job
from arq.utils import timestamp_ms
from redis.asyncio import Redis
from redis.exceptions import WatchError

from taskboard.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MARK_OVERDUE = "mark_overdue"
TASK_STATUS_UPDATE = "task_status_update"


def overdue_job_key(task_id: int) -> str:
    """Deterministic job id for the overdue notification of one task."""
    return f"overdue-{task_id}"


@dataclass(frozen=True)
class QueuedJob:
    """One unit of work handed to the queue.

    ``key`` is the arq job id and doubles as the deduplication key. Retry and
    result-retention policies belong to the job function's registration in
    the worker, not to the submission.
    """

    key: str
    function: str
    payload: dict[str, Any] = field(default_factory=dict)


class JobSubmitter(Protocol):
    async def submit_batch(self, jobs: Sequence[QueuedJob]) -> list[bool]: ...


class QueueError(Exception):
    """Raised when a batch could not be written to the queue."""


class TaskQueue:
    """
    Writes jobs in arq's Redis layout so an arq worker picks them up.

    arq only enqueues one job per call; ``submit_batch`` writes a whole batch
    in one MULTI/EXEC while watching every job key. A job whose key (or kept
    result) already exists is skipped and reported as ``False``.
    """

    expires_ms = 86_400_000
    max_watch_retries = 3

    def __init__(self, redis: Redis, queue_name: str = default_queue_name):
        self.redis = redis
        self.queue_name = queue_name

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "TaskQueue":
        settings = settings or get_settings()
        pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_dsn),
            default_queue_name=settings.queue_name,
        )
        return cls(pool, settings.queue_name)

    async def submit(self, job: QueuedJob) -> bool:
        (accepted,) = await self.submit_batch([job])
        return accepted

    async def submit_batch(self, jobs: Sequence[QueuedJob]) -> list[bool]:
        """Queue all jobs in one transaction. Returns one flag per job."""
        if not jobs:
            return []

        job_keys = [job_key_prefix + job.key for job in jobs]
        result_keys = [result_key_prefix + job.key for job in jobs]

        for attempt in range(1, self.max_watch_retries + 1):
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(*job_keys)
                present = await pipe.mget(*job_keys, *result_keys)

                accepted = []
                seen = set()
                for i, job in enumerate(jobs):
                    exists = present[i] is not None or present[len(jobs) + i] is not None
                    accepted.append(not exists and job.key not in seen)
                    seen.add(job.key)

                if not any(accepted):
                    await pipe.reset()
                    return accepted

                enqueue_time_ms = timestamp_ms()
                pipe.multi()
                for job, job_key, fresh in zip(jobs, job_keys, accepted):
                    if not fresh:
                        continue
                    data = serialize_job(job.function, (), job.payload, None, enqueue_time_ms)
                    pipe.psetex(job_key, self.expires_ms, data)
                    pipe.zadd(self.queue_name, {job.key: enqueue_time_ms})

                try:
                    await pipe.execute()
                except WatchError:
                    logger.warning(
                        f"Job keys changed while submitting {len(jobs)} jobs "
                        f"(attempt {attempt}/{self.max_watch_retries}), retrying"
                    )
                    continue

            logger.debug(f"Submitted {sum(accepted)} of {len(jobs)} jobs to {self.queue_name}")
            return accepted

        raise QueueError(f"Could not submit {len(jobs)} jobs: job keys kept changing")

    async def close(self):
        await self.redis.aclose()
