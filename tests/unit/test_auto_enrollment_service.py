"""
Tests for auto-enrollment config writes, the retroactive sweep and the
config lock.
"""

import asyncio

import pytest

from app.features.sequence_enrollment.domain import (
    AutoEnrollmentConfigNotFound,
    ConfigConflict,
    EnrollmentTrigger,
    InvalidAutoEnrollmentConfig,
    LedgerDecision,
    SequenceNotFound,
)
from app.features.sequence_enrollment.services.auto_enrollment_service import LOCK_KEY_PREFIX


async def _set(service, sequence_id="SEQ1", **overrides):
    payload = {
        "auto_enroll_enabled": True,
        "trigger_stages": ["phone_screen"],
        "exclude_stages": ["rejected"],
        "include_existing_candidates": False,
    }
    payload.update(overrides)
    return await service.set_config(sequence_id, **payload)


@pytest.mark.asyncio
async def test_overlapping_stages_rejected(auto_enrollment, config_repo):
    with pytest.raises(InvalidAutoEnrollmentConfig) as exc:
        await _set(auto_enrollment, trigger_stages=["X", "Y"], exclude_stages=["Y"])

    assert "Y" in exc.value.message
    assert config_repo.configs == {}


@pytest.mark.asyncio
async def test_enabled_config_needs_trigger_stage(auto_enrollment):
    with pytest.raises(InvalidAutoEnrollmentConfig):
        await _set(auto_enrollment, trigger_stages=[])


@pytest.mark.asyncio
async def test_disabled_config_may_have_no_stages(auto_enrollment):
    result = await _set(
        auto_enrollment, auto_enroll_enabled=False, trigger_stages=[], exclude_stages=[]
    )

    assert result.config.auto_enroll_enabled is False
    assert result.sweep is None


@pytest.mark.asyncio
async def test_unscoped_sequence_cannot_enable(auto_enrollment, sequences):
    sequences.add("ORPHAN", [0], job_id=None)

    with pytest.raises(InvalidAutoEnrollmentConfig):
        await _set(auto_enrollment, sequence_id="ORPHAN")


@pytest.mark.asyncio
async def test_unknown_sequence(auto_enrollment):
    with pytest.raises(SequenceNotFound):
        await _set(auto_enrollment, sequence_id="NOPE")


@pytest.mark.asyncio
async def test_config_is_stored_with_job_and_deduplicated_stages(auto_enrollment):
    result = await _set(auto_enrollment, trigger_stages=["phone_screen", "phone_screen", "onsite"])

    assert result.config.job_id == "job-1"
    assert result.config.trigger_stages == ["phone_screen", "onsite"]
    assert (await auto_enrollment.get_config("SEQ1")).trigger_stages == ["phone_screen", "onsite"]


@pytest.mark.asyncio
async def test_get_missing_config(auto_enrollment):
    with pytest.raises(AutoEnrollmentConfigNotFound):
        await auto_enrollment.get_config("SEQ1")


@pytest.mark.asyncio
async def test_enabling_with_existing_candidates_sweeps(
    auto_enrollment, pipeline, enrollment_repo, ledger_repo
):
    pipeline.add("S1", stage_id="phone_screen")
    pipeline.add("S2", stage_id="phone_screen")
    pipeline.add("S3", stage_id="applied")

    result = await _set(auto_enrollment, include_existing_candidates=True)

    assert sorted(e.job_application_id for e in result.sweep.created) == ["S1", "S2"]
    for enrollment in result.sweep.created:
        assert enrollment.enrollment_trigger == EnrollmentTrigger.AUTOMATIC
    assert ledger_repo.decisions[("SEQ1", "S1", "phone_screen")][0] == LedgerDecision.ENROLLED
    assert len(enrollment_repo.rows) == 2


@pytest.mark.asyncio
async def test_sweep_skips_open_and_previously_excluded(
    auto_enrollment, pipeline, lifecycle, ledger_repo
):
    pipeline.add("S1", stage_id="phone_screen")
    pipeline.add("S2", stage_id="phone_screen")
    pipeline.add("S3", stage_id="phone_screen")
    await lifecycle.create("SEQ1", "S1")
    await ledger_repo.record("SEQ1", "S3", "rejected", LedgerDecision.EXCLUDED)

    result = await _set(auto_enrollment, include_existing_candidates=True)

    assert [e.job_application_id for e in result.sweep.created] == ["S2"]
    assert result.sweep.skipped == ["S1"]
    assert ledger_repo.decisions[("SEQ1", "S1", "phone_screen")][0] == LedgerDecision.SKIPPED_EXISTING


@pytest.mark.asyncio
async def test_no_sweep_without_existing_candidates_flag(auto_enrollment, pipeline, enrollment_repo):
    pipeline.add("S1", stage_id="phone_screen")

    result = await _set(auto_enrollment, include_existing_candidates=False)

    assert result.sweep is None
    assert enrollment_repo.rows == {}


@pytest.mark.asyncio
async def test_sweep_runs_only_when_newly_enabled(auto_enrollment, pipeline, enrollment_repo):
    await _set(auto_enrollment, include_existing_candidates=True)
    pipeline.add("S1", stage_id="phone_screen")

    result = await _set(auto_enrollment, include_existing_candidates=True)

    assert result.sweep is None
    assert enrollment_repo.rows == {}


@pytest.mark.asyncio
async def test_empty_sweep_returns_empty_result(auto_enrollment):
    result = await _set(auto_enrollment, include_existing_candidates=True)

    assert result.sweep is not None
    assert result.sweep.requested == 0


@pytest.mark.asyncio
async def test_locked_config_raises_conflict_after_retries(auto_enrollment, fake_redis):
    fake_redis.store[f"{LOCK_KEY_PREFIX}:SEQ1"] = "someone-else"

    with pytest.raises(ConfigConflict):
        await _set(auto_enrollment)

    assert fake_redis.store[f"{LOCK_KEY_PREFIX}:SEQ1"] == "someone-else"


@pytest.mark.asyncio
async def test_lock_is_released_after_write(auto_enrollment, fake_redis):
    await _set(auto_enrollment)

    assert f"{LOCK_KEY_PREFIX}:SEQ1" not in fake_redis.store


@pytest.mark.asyncio
async def test_lock_is_released_when_sweep_fails(auto_enrollment, pipeline, fake_redis):
    async def broken(job_id, stage_ids):
        raise RuntimeError("pipeline down")

    pipeline.list_applications_in_stages = broken

    with pytest.raises(RuntimeError):
        await _set(auto_enrollment, include_existing_candidates=True)

    assert f"{LOCK_KEY_PREFIX}:SEQ1" not in fake_redis.store


@pytest.mark.asyncio
async def test_lock_retry_succeeds_once_released(auto_enrollment, fake_redis, monkeypatch):
    key = f"{LOCK_KEY_PREFIX}:SEQ1"
    fake_redis.store[key] = "sweep-in-flight"
    original_acquire = fake_redis.acquire_lock
    attempts = {"count": 0}

    async def acquire(lock_key, token, ttl_s):
        attempts["count"] += 1
        if attempts["count"] == 2:
            fake_redis.store.pop(key, None)
        return await original_acquire(lock_key, token, ttl_s)

    monkeypatch.setattr(fake_redis, "acquire_lock", acquire)

    result = await _set(auto_enrollment)

    assert result.config.auto_enroll_enabled is True
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_lock_is_extended_while_sweep_runs(auto_enrollment, pipeline, fake_redis):
    auto_enrollment.lock_refresh_s = 0.01

    async def slow_listing(job_id, stage_ids):
        await asyncio.sleep(0.05)
        return []

    pipeline.list_applications_in_stages = slow_listing

    await _set(auto_enrollment, include_existing_candidates=True)

    assert f"{LOCK_KEY_PREFIX}:SEQ1" in fake_redis.extensions
    assert f"{LOCK_KEY_PREFIX}:SEQ1" not in fake_redis.store


@pytest.mark.asyncio
async def test_lock_is_not_extended_without_sweep(auto_enrollment, fake_redis):
    auto_enrollment.lock_refresh_s = 0.01

    await _set(auto_enrollment)
    await asyncio.sleep(0.03)

    assert fake_redis.extensions == []
