"""
Producer side of the partitioned stage-change queue.

An event's partition is a stable hash of its job application ID, so every
event for one application lands on the same Redis list and one consumer
drains it in order.
"""

import zlib

from app.config import settings
from app.features.sequence_enrollment.domain import EventQueueUnavailable, StageChangeEvent
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)


def partition_for(job_application_id: str, partitions: int | None = None) -> int:
    partitions = partitions or settings.STAGE_EVENT_PARTITIONS
    return zlib.crc32(job_application_id.encode("utf-8")) % partitions


async def enqueue_stage_event(event: StageChangeEvent, redis=fast_redis) -> int:
    """Push the event onto its partition; returns the partition number."""
    partition = partition_for(event.job_application_id)
    queue_key = settings.stage_event_queue_key(partition)

    if not await redis.push_to_list(queue_key, event.to_json()):
        logger.error(
            "Failed to enqueue stage change event",
            job_application_id=event.job_application_id,
            partition=partition,
        )
        raise EventQueueUnavailable()

    logger.info(
        "Stage change event queued",
        job_application_id=event.job_application_id,
        new_stage_id=event.new_stage_id,
        partition=partition,
    )
    return partition
