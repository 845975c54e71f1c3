"""
Stage-change event consumer.

Drains the partitioned Redis queue filled by ``enqueue_stage_event``. Each
partition is consumed by exactly one coroutine, so events for the same job
application are evaluated in the order they were queued.

Delivery is at-least-once: an event moves to the partition's in-flight list
while it is evaluated and is only removed (acked) afterwards. Recoverable
failures put it back at the consuming end of the queue; events that keep
failing, or cannot be parsed, go to the partition's dead-letter list.
"""

import asyncio
from datetime import UTC, datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.sequence_enrollment.dependencies import (
    close_collaborators,
    get_trigger_evaluator,
)
from app.features.sequence_enrollment.domain import EnrollmentError, StageChangeEvent
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

MAX_EVENT_ATTEMPTS = 5
RETRY_BACKOFF_SECONDS = 0.5


def dead_letter_key(partition: int) -> str:
    return f"{settings.stage_event_queue_key(partition)}:dead"


class StageEventMetrics:
    """Counters for one consumer run."""

    def __init__(self, partition: int):
        self.partition = partition
        self.start_time = datetime.now(UTC)
        self.processed = 0
        self.retried = 0
        self.dead_lettered = 0
        self.recovered = 0

    @property
    def handled(self) -> int:
        return self.processed + self.dead_lettered

    def to_dict(self) -> dict:
        return {
            "job_run": "stage_events",
            "partition": self.partition,
            "duration_seconds": round((datetime.now(UTC) - self.start_time).total_seconds(), 2),
            "processed": self.processed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "recovered": self.recovered,
        }


async def recover_inflight(partition: int, redis=fast_redis) -> int:
    """
    Return events left in-flight by a crashed consumer to the queue.

    The in-flight list holds the newest event at its head; requeueing from
    head to tail leaves the oldest one next in line.
    """
    queue_key = settings.stage_event_queue_key(partition)
    inflight_key = settings.stage_event_inflight_key(partition)

    stranded = await redis.list_range(inflight_key)
    recovered = 0
    for payload in stranded:
        if await redis.requeue_from_inflight(inflight_key, queue_key, payload):
            recovered += 1

    if recovered:
        logger.warning(
            "Recovered in-flight stage events", partition=partition, recovered=recovered
        )
    return recovered


async def _dead_letter(redis, partition: int, inflight_key: str, payload: str, reason: str):
    await redis.push_to_list(dead_letter_key(partition), payload)
    await redis.ack_from_inflight(inflight_key, payload)
    logger.error(
        "Stage event moved to dead-letter list",
        partition=partition,
        reason=reason,
        payload=payload[:200],
    )


async def consume_stage_events(
    partition: int,
    *,
    evaluator=None,
    redis=fast_redis,
    stop: asyncio.Event | None = None,
    drain: bool = False,
    pop_timeout: int | None = None,
) -> StageEventMetrics:
    """
    Consume one partition until ``stop`` is set.

    With ``drain`` the loop also ends as soon as the queue is empty.
    """
    evaluator = evaluator or get_trigger_evaluator()
    queue_key = settings.stage_event_queue_key(partition)
    inflight_key = settings.stage_event_inflight_key(partition)
    timeout = settings.STAGE_EVENT_POP_TIMEOUT_S if pop_timeout is None else pop_timeout

    metrics = StageEventMetrics(partition)
    attempts: dict[str, int] = {}

    logger.info("Stage event consumer started", partition=partition, queue_key=queue_key)

    while not (stop and stop.is_set()):
        payload = await redis.pop_to_inflight(queue_key, inflight_key, timeout=timeout)
        if payload is None:
            if drain:
                break
            continue

        try:
            event = StageChangeEvent.from_json(payload)
        except (ValueError, KeyError, TypeError) as e:
            await _dead_letter(redis, partition, inflight_key, payload, f"unparseable: {e}")
            metrics.dead_lettered += 1
            continue

        try:
            await evaluator.evaluate(event)
        except (EnrollmentError, DatabaseError) as e:
            attempts[payload] = attempts.get(payload, 0) + 1
            if e.recoverable and attempts[payload] < MAX_EVENT_ATTEMPTS:
                logger.warning(
                    "Stage event evaluation failed, requeueing",
                    partition=partition,
                    job_application_id=event.job_application_id,
                    attempt=attempts[payload],
                    error=str(e),
                )
                await redis.requeue_from_inflight(inflight_key, queue_key, payload)
                metrics.retried += 1
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempts[payload])
                continue

            attempts.pop(payload, None)
            await _dead_letter(redis, partition, inflight_key, payload, str(e))
            metrics.dead_lettered += 1
            continue
        except Exception as e:
            attempts.pop(payload, None)
            logger.error(
                "Unexpected error evaluating stage event",
                partition=partition,
                job_application_id=event.job_application_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await _dead_letter(redis, partition, inflight_key, payload, type(e).__name__)
            metrics.dead_lettered += 1
            continue

        attempts.pop(payload, None)
        await redis.ack_from_inflight(inflight_key, payload)
        metrics.processed += 1

    logger.info("Stage event consumer stopped", **metrics.to_dict())
    return metrics


async def start_stage_event_consumers() -> None:
    """Worker entry point: one consumer per partition until cancelled."""
    await db_pool.initialize()
    await fast_redis.initialize()

    try:
        partitions = range(settings.STAGE_EVENT_PARTITIONS)
        for partition in partitions:
            await recover_inflight(partition)

        logger.info("Starting stage event consumers", partitions=len(partitions))
        await asyncio.gather(*(consume_stage_events(partition) for partition in partitions))
    finally:
        await close_collaborators()
        await fast_redis.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_stage_event_consumers())
