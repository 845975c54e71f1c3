"""
Job runners for the sequence enrollment feature.
"""

from .stage_event_consumer import (
    consume_stage_events,
    recover_inflight,
    start_stage_event_consumers,
)

__all__ = ["consume_stage_events", "recover_inflight", "start_stage_event_consumers"]
