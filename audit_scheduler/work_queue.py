"""
Work queue adapter: the enqueue side of the downstream job queue.

Only the submit contract matters to the scheduler; workers that consume the
queue live elsewhere.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from redis import ConnectionPool, Redis, RedisError

from colored_logger import get_colored_logger

from .errors import QueueError
from .models import JobHandle, JobPayload

logger = get_colored_logger(__name__)

# Queue consumed by the website scraper workers
SCRAPER_QUEUE = "scraper-queue"

MAX_PRIORITY = 10


class WorkQueue(ABC):
    """Interface to the external job queue."""

    @abstractmethod
    def submit(self, queue_name: str, payload: JobPayload, priority: int = 5) -> JobHandle:
        """
        Enqueue one job.

        Raises:
            QueueError: If the job could not be enqueued
        """


class RedisWorkQueue(WorkQueue):
    """
    Redis-backed job queue.

    Each job is a hash at ``<prefix>:<queue>:job:<id>``; its id is added to the
    sorted set ``<prefix>:<queue>:waiting``. Scores order higher priorities
    first and FIFO within a priority, so consumers take work with ZPOPMIN.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        client: Optional[Redis] = None,
        key_prefix: str = "poi-audit",
        max_attempts: int = 3,
        backoff_ms: int = 1000,
    ):
        """
        Args:
            redis_url: Connection URL, used when no client is given
            client: Pre-built Redis client
            key_prefix: Namespace for all keys written by this adapter
            max_attempts: Retry attempts recorded on each job for the workers
            backoff_ms: Base exponential backoff recorded on each job
        """
        self.key_prefix = key_prefix
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self._pool: Optional[ConnectionPool] = None

        if client is None:
            self._pool = ConnectionPool.from_url(
                redis_url,
                decode_responses=True,
                max_connections=20,
                retry_on_timeout=True,
            )
            client = Redis(connection_pool=self._pool)
        self._client = client

    def _key(self, queue_name: str, *parts: str) -> str:
        return ":".join((self.key_prefix, queue_name) + parts)

    @staticmethod
    def _score(priority: int, enqueued_ms: int) -> float:
        return float((MAX_PRIORITY - priority) * 10**13 + enqueued_ms)

    def submit(self, queue_name: str, payload: JobPayload, priority: int = 5) -> JobHandle:
        if not 0 <= priority <= MAX_PRIORITY:
            raise QueueError(f"priority must be between 0 and {MAX_PRIORITY}, got {priority}")

        enqueued_ms = int(time.time() * 1000)
        try:
            job_id = str(self._client.incr(self._key(queue_name, "id")))
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(
                self._key(queue_name, "job", job_id),
                mapping={
                    "data": json.dumps(payload.to_dict()),
                    "priority": priority,
                    "attempts": self.max_attempts,
                    "backoff_ms": self.backoff_ms,
                    "enqueued_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            pipe.zadd(
                self._key(queue_name, "waiting"),
                {job_id: self._score(priority, enqueued_ms)},
            )
            pipe.execute()
        except RedisError as e:
            raise QueueError(
                f"Failed to enqueue job for POI {payload.poi_id} on {queue_name}: {e}"
            ) from e

        logger.debug("Enqueued job %s on %s for POI %s", job_id, queue_name, payload.poi_id)
        return JobHandle(job_id=job_id, queue_name=queue_name)

    def pending_count(self, queue_name: str) -> int:
        """Number of jobs waiting on a queue."""
        try:
            return int(self._client.zcard(self._key(queue_name, "waiting")))
        except RedisError as e:
            raise QueueError(f"Failed to read queue length of {queue_name}: {e}") from e

    def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            return bool(self._client.ping())
        except RedisError as e:
            logger.error("Redis health check failed: %s", e)
            return False

    def close(self) -> None:
        """Close the client and its connection pool."""
        self._client.close()
        if self._pool is not None:
            self._pool.disconnect()
            self._pool = None
        logger.info("Redis work queue closed")
