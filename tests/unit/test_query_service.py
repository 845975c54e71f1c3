"""
Tests for the read side: page validation, filtered listing, stats and events.
"""

import pytest

from app.features.sequence_enrollment.domain import (
    EnrollmentFilters,
    EnrollmentNotFound,
    EnrollmentStatus,
    EnrollmentTrigger,
    InvalidQuery,
)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"page": 0},
        {"limit": 0},
        {"limit": 101},
        {"sort_by": "candidateName"},
        {"sort_order": "sideways"},
    ],
)
def test_invalid_page_requests_rejected(queries, kwargs):
    with pytest.raises(InvalidQuery):
        queries.build_page_request(**kwargs)


def test_page_request_defaults(queries):
    page = queries.build_page_request()

    assert page.page == 1
    assert page.limit == 20
    assert page.sort_by == "enrolledAt"
    assert page.sort_order == "desc"


def test_sort_order_is_case_insensitive(queries):
    assert queries.build_page_request(sort_order="ASC").sort_order == "asc"


@pytest.mark.asyncio
async def test_listing_paginates_and_filters(queries, lifecycle, clock):
    for application_id in ("A1", "A2", "A3", "A4", "A5"):
        await lifecycle.create("SEQ1", application_id)
        clock.advance(minutes=1)
    await lifecycle.create("SEQ2", "A1")

    page = await queries.list_enrollments(
        EnrollmentFilters(sequence_id="SEQ1"),
        queries.build_page_request(page=2, limit=2, sort_order="asc"),
    )

    assert page.total == 5
    assert page.total_pages == 3
    assert [e.job_application_id for e in page.items] == ["A3", "A4"]
    assert page.has_next and page.has_previous


@pytest.mark.asyncio
async def test_listing_filters_by_status_and_trigger(queries, lifecycle):
    manual = await lifecycle.create("SEQ1", "A1")
    await lifecycle.create("SEQ1", "A2", EnrollmentTrigger.AUTOMATIC)
    await lifecycle.pause(manual.id)

    paused = await queries.list_enrollments(
        EnrollmentFilters(status=EnrollmentStatus.PAUSED), queries.build_page_request()
    )
    automatic = await queries.list_enrollments(
        EnrollmentFilters(enrollment_trigger=EnrollmentTrigger.AUTOMATIC),
        queries.build_page_request(),
    )

    assert [e.id for e in paused.items] == [manual.id]
    assert [e.job_application_id for e in automatic.items] == ["A2"]


@pytest.mark.asyncio
async def test_removed_enrollments_hidden_unless_requested(queries, lifecycle):
    kept = await lifecycle.create("SEQ1", "A1")
    removed = await lifecycle.create("SEQ1", "A2")
    await lifecycle.remove(removed.id)

    default = await queries.list_enrollments(EnrollmentFilters(), queries.build_page_request())
    everything = await queries.list_enrollments(
        EnrollmentFilters(include_removed=True), queries.build_page_request()
    )

    assert [e.id for e in default.items] == [kept.id]
    assert {e.id for e in everything.items} == {kept.id, removed.id}


@pytest.mark.asyncio
async def test_stats_zero_fill_every_status(queries, lifecycle):
    first = await lifecycle.create("SEQ1", "A1")
    await lifecycle.create("SEQ1", "A2")
    await lifecycle.pause(first.id)
    removed = await lifecycle.create("SEQ1", "A3")
    await lifecycle.remove(removed.id)

    stats = await queries.stats("SEQ1")

    assert stats == {
        "active": 1,
        "paused": 1,
        "completed": 0,
        "failed": 0,
        "unsubscribed": 0,
        "total": 2,
    }


@pytest.mark.asyncio
async def test_stats_for_unused_sequence(queries):
    stats = await queries.stats("SEQ2")

    assert stats["total"] == 0
    assert set(stats) == {s.value for s in EnrollmentStatus} | {"total"}


@pytest.mark.asyncio
async def test_events_list_transitions(queries, lifecycle):
    enrollment = await lifecycle.create("SEQ1", "A1")
    await lifecycle.pause(enrollment.id)

    events = await queries.events(enrollment.id)

    assert [(e.action, e.to_status) for e in events] == [
        ("create", EnrollmentStatus.ACTIVE),
        ("pause", EnrollmentStatus.PAUSED),
    ]


@pytest.mark.asyncio
async def test_events_for_unknown_enrollment(queries):
    with pytest.raises(EnrollmentNotFound):
        await queries.events("missing")
