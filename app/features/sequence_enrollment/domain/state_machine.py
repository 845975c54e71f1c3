"""
Enrollment state machine.

Pure functions: each takes the current Enrollment and returns the next one
(or raises InvalidTransition). Persistence, version checks and logging live
in the lifecycle service.

    active --pause--> paused --resume--> active
    active --advance--> active | completed
    active --fail--> failed
    active | paused --unsubscribe--> unsubscribed   (removal, stage exclusion)

completed, failed and unsubscribed are terminal. A paused enrollment must be
resumed before it can complete or fail.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from .errors import InvalidTransition
from .models import Enrollment, EnrollmentStatus, EnrollmentTrigger, SequenceDefinition

ACTIVE = EnrollmentStatus.ACTIVE
PAUSED = EnrollmentStatus.PAUSED

# action -> statuses it may start from
ALLOWED_SOURCES: dict[str, frozenset[EnrollmentStatus]] = {
    "pause": frozenset({ACTIVE}),
    "resume": frozenset({PAUSED}),
    "advance": frozenset({ACTIVE}),
    "fail": frozenset({ACTIVE}),
    "unsubscribe": frozenset({ACTIVE, PAUSED}),
}

VALID_EDGES: frozenset[tuple[EnrollmentStatus, EnrollmentStatus]] = frozenset(
    {
        (ACTIVE, PAUSED),
        (PAUSED, ACTIVE),
        (ACTIVE, ACTIVE),
        (ACTIVE, EnrollmentStatus.COMPLETED),
        (ACTIVE, EnrollmentStatus.FAILED),
        (ACTIVE, EnrollmentStatus.UNSUBSCRIBED),
        (PAUSED, EnrollmentStatus.UNSUBSCRIBED),
    }
)


def is_valid_edge(from_status: EnrollmentStatus, to_status: EnrollmentStatus) -> bool:
    return (from_status, to_status) in VALID_EDGES


def require_allowed(enrollment: Enrollment, action: str) -> None:
    if enrollment.status not in ALLOWED_SOURCES[action]:
        raise InvalidTransition(enrollment.id, action, enrollment.status.value)


def start(
    sequence: SequenceDefinition,
    job_application_id: str,
    trigger: EnrollmentTrigger,
    now: datetime,
    *,
    job_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Enrollment:
    """Build a fresh active enrollment positioned on the sequence's first step."""
    first_step = sequence.step_at(0)
    return Enrollment(
        id=str(uuid.uuid4()),
        sequence_id=sequence.id,
        job_application_id=job_application_id,
        job_id=job_id,
        status=ACTIVE,
        enrollment_trigger=trigger,
        current_step_id=first_step.id if first_step else None,
        current_step_order=0,
        next_execution_at=sequence.next_execution_at(0, now),
        enrolled_at=now,
        updated_at=now,
        metadata=dict(metadata or {}),
    )


def pause(enrollment: Enrollment, now: datetime) -> Enrollment:
    require_allowed(enrollment, "pause")
    return replace(
        enrollment,
        status=PAUSED,
        paused_at=now,
        next_execution_at=None,
        updated_at=now,
    )


def resume(enrollment: Enrollment, now: datetime, next_execution_at: datetime | None) -> Enrollment:
    require_allowed(enrollment, "resume")
    return replace(
        enrollment,
        status=ACTIVE,
        paused_at=None,
        next_execution_at=next_execution_at,
        updated_at=now,
    )


def advance(
    enrollment: Enrollment,
    now: datetime,
    *,
    next_step_id: str | None,
    next_step_order: int,
    next_execution_at: datetime | None,
    step_count: int,
    execution_entry: dict[str, Any] | None = None,
) -> Enrollment:
    """
    Record that the current step ran and move to ``next_step_order``.

    Step orders are zero-based, so an order at or beyond ``step_count`` means
    the last step has been executed and the enrollment completes.
    """
    require_allowed(enrollment, "advance")
    if next_step_order < enrollment.current_step_order:
        raise InvalidTransition(enrollment.id, "advance backwards", enrollment.status.value)

    log = list(enrollment.execution_log)
    log.append(
        {
            "event": "step_executed",
            "stepId": enrollment.current_step_id,
            "stepOrder": enrollment.current_step_order,
            "executedAt": now.isoformat(),
            **(execution_entry or {}),
        }
    )
    changes: dict[str, Any] = {
        "current_step_order": next_step_order,
        "last_executed_at": now,
        "total_steps_completed": enrollment.total_steps_completed + 1,
        "execution_log": log,
        "updated_at": now,
    }

    if next_step_order >= step_count:
        changes.update(
            status=EnrollmentStatus.COMPLETED,
            completed_at=now,
            next_execution_at=None,
            current_step_id=None,
        )
    else:
        changes.update(current_step_id=next_step_id, next_execution_at=next_execution_at)

    return replace(enrollment, **changes)


def fail(enrollment: Enrollment, now: datetime, reason: str) -> Enrollment:
    require_allowed(enrollment, "fail")
    log = list(enrollment.execution_log)
    log.append(
        {
            "event": "failed",
            "stepOrder": enrollment.current_step_order,
            "reason": reason,
            "at": now.isoformat(),
        }
    )
    return replace(
        enrollment,
        status=EnrollmentStatus.FAILED,
        next_execution_at=None,
        execution_log=log,
        updated_at=now,
    )


def unsubscribe(
    enrollment: Enrollment, now: datetime, reason: str, *, tombstone: bool = False
) -> Enrollment:
    """Stop an open enrollment; ``tombstone`` also marks it as removed by a user."""
    require_allowed(enrollment, "unsubscribe")
    log = list(enrollment.execution_log)
    log.append({"event": "unsubscribed", "reason": reason, "at": now.isoformat()})
    return replace(
        enrollment,
        status=EnrollmentStatus.UNSUBSCRIBED,
        next_execution_at=None,
        paused_at=None,
        removed_at=now if tombstone else enrollment.removed_at,
        execution_log=log,
        updated_at=now,
    )


def tombstone(enrollment: Enrollment, now: datetime) -> Enrollment:
    """Hide an already-terminal enrollment from listings; status is left as is."""
    if not enrollment.is_terminal:
        raise InvalidTransition(enrollment.id, "tombstone", enrollment.status.value)
    return replace(enrollment, removed_at=now, updated_at=now)


def merge_metadata(enrollment: Enrollment, now: datetime, metadata: dict[str, Any]) -> Enrollment:
    merged = {**enrollment.metadata, **metadata}
    return replace(enrollment, metadata=merged, updated_at=now)
