"""
Trigger evaluator: reacts to recruitment pipeline stage changes.

For every enabled auto-enrollment config scoped to the application's job:

1. new stage is an exclude stage -> unsubscribe any open enrollment and
   record an exclusion (exclusion always wins over a trigger match)
2. new stage is a trigger stage -> enroll, unless the pair is already
   enrolled or was excluded before
3. otherwise nothing happens

Trigger decisions are written to the ledger with the event's dedup key, so
a redelivered event finds its decision already recorded and is dropped,
while a later move back into the same stage is evaluated again. The
exclude branch is never gated; unsubscribing is idempotent.
"""

from app.features.sequence_enrollment.domain import (
    AutoEnrollmentConfig,
    DuplicateEnrollment,
    EnrollmentTrigger,
    JobApplication,
    LedgerDecision,
    StageChangeEvent,
    TriggerAction,
    TriggerOutcome,
)
from app.features.sequence_enrollment.repository.auto_enrollment_repository import (
    AutoEnrollmentConfigRepository,
    AutoEnrollmentLedgerRepository,
)
from app.infrastructure.observability.logging import get_logger

from .sequencing import KeyedLock

logger = get_logger(__name__)


class TriggerEvaluator:
    def __init__(
        self,
        lifecycle,
        pipeline,
        configs=AutoEnrollmentConfigRepository,
        ledger=AutoEnrollmentLedgerRepository,
        sequencer: KeyedLock | None = None,
    ):
        self.lifecycle = lifecycle
        self.pipeline = pipeline
        self.configs = configs
        self.ledger = ledger
        self.sequencer = sequencer or KeyedLock()

    async def evaluate(self, event: StageChangeEvent) -> list[TriggerOutcome]:
        """Evaluate one stage-change event against every matching config."""
        async with self.sequencer.hold(event.job_application_id):
            application = await self.pipeline.get_application(event.job_application_id)
            if application is None:
                logger.warning(
                    "Stage change for unknown job application ignored",
                    job_application_id=event.job_application_id,
                    new_stage_id=event.new_stage_id,
                )
                return []

            configs = await self.configs.list_enabled_for_job(application.job_id)
            outcomes = []
            for config in configs:
                outcomes.append(await self._evaluate_config(config, application, event))

        logger.info(
            "Stage change evaluated",
            job_application_id=event.job_application_id,
            new_stage_id=event.new_stage_id,
            previous_stage_id=event.previous_stage_id,
            configs=len(outcomes),
            actions=[outcome.action.value for outcome in outcomes],
        )
        return outcomes

    async def _evaluate_config(
        self,
        config: AutoEnrollmentConfig,
        application: JobApplication,
        event: StageChangeEvent,
    ) -> TriggerOutcome:
        stage_id = event.new_stage_id
        outcome = TriggerOutcome(
            sequence_id=config.sequence_id,
            job_application_id=application.id,
            stage_id=stage_id,
        )

        is_exclude = config.is_exclude_stage(stage_id)
        if not is_exclude and not config.is_trigger_stage(stage_id):
            outcome.reason = "stage_not_configured"
            return outcome

        if is_exclude:
            return await self._exclude(config, application, event, outcome)

        previous = await self.ledger.get_decision(
            config.sequence_id, application.id, stage_id, event_key=event.dedup_key
        )
        if previous is not None:
            outcome.reason = f"already_evaluated:{previous.value}"
            return outcome
        return await self._enroll(config, application, event, outcome)

    async def _exclude(
        self,
        config: AutoEnrollmentConfig,
        application: JobApplication,
        event: StageChangeEvent,
        outcome: TriggerOutcome,
    ) -> TriggerOutcome:
        open_enrollment = await self.lifecycle.find_open(config.sequence_id, application.id)
        if open_enrollment:
            await self.lifecycle.unsubscribe(
                open_enrollment.id, reason=f"excluded_stage:{event.new_stage_id}"
            )
            outcome.action = TriggerAction.UNSUBSCRIBED
            outcome.enrollment_id = open_enrollment.id
        else:
            outcome.action = TriggerAction.EXCLUDED

        await self.ledger.record(
            config.sequence_id,
            application.id,
            event.new_stage_id,
            LedgerDecision.EXCLUDED,
            enrollment_id=outcome.enrollment_id,
            event_key=event.dedup_key,
        )
        return outcome

    async def _enroll(
        self,
        config: AutoEnrollmentConfig,
        application: JobApplication,
        event: StageChangeEvent,
        outcome: TriggerOutcome,
    ) -> TriggerOutcome:
        if await self.ledger.has_exclusion(config.sequence_id, application.id):
            outcome.reason = "previously_excluded"
            return outcome

        try:
            enrollment = await self.lifecycle.create(
                config.sequence_id,
                application.id,
                EnrollmentTrigger.PIPELINE_STAGE,
                metadata={
                    "source": "pipeline_stage",
                    "triggerStageId": event.new_stage_id,
                    "previousStageId": event.previous_stage_id,
                },
                application=application,
            )
        except DuplicateEnrollment as e:
            await self.ledger.record(
                config.sequence_id,
                application.id,
                event.new_stage_id,
                LedgerDecision.SKIPPED_EXISTING,
                enrollment_id=e.existing_id,
                event_key=event.dedup_key,
            )
            outcome.reason = "already_enrolled"
            outcome.enrollment_id = e.existing_id
            return outcome

        await self.ledger.record(
            config.sequence_id,
            application.id,
            event.new_stage_id,
            LedgerDecision.ENROLLED,
            enrollment_id=enrollment.id,
            event_key=event.dedup_key,
        )
        outcome.action = TriggerAction.ENROLLED
        outcome.enrollment_id = enrollment.id
        return outcome
