from __future__ import annotations

from typing import Mapping

import structlog

from habitdata.db.models import JobKind, JobStatus
from habitdata.jobs.options import ImportOptions, parse_job_options
from habitdata.jobs.service import InvalidJobStateError, JobConflictError, JobNotFoundError, JobService
from habitdata.jobs.types import JobSnapshot
from habitdata.pipeline.collaborators import JobEvent, Notifier
from habitdata.pipeline.errors import (
    JobCancelledError,
    RollbackError,
    StageError,
    StageTimeoutError,
    TransientStageError,
)
from habitdata.pipeline.plans import JobPlan
from habitdata.pipeline.retry import RetryController
from habitdata.pipeline.rollback import RollbackCoordinator
from habitdata.pipeline.stages import StageContext, StageExecutor

logger = structlog.get_logger(__name__)


class PipelineOrchestrator:
    """Drives one job through its kind's stage list and commits the outcome."""

    def __init__(
        self,
        *,
        store: JobService,
        executor: StageExecutor,
        retry: RetryController,
        rollback: RollbackCoordinator,
        notifier: Notifier,
        plans: Mapping[JobKind, JobPlan],
        worker_id: str,
    ):
        self._store = store
        self._executor = executor
        self._retry = retry
        self._rollback = rollback
        self._notifier = notifier
        self._plans = dict(plans)
        self.worker_id = worker_id

    def run(self, job_id: str) -> JobSnapshot | None:
        """Run a startable job to a resting state; None when the job was not startable."""
        job = self._store.claim_for_run(job_id, self.worker_id)
        if job is None:
            logger.info("job_not_startable", job_id=job_id)
            return None

        log = logger.bind(job_id=job.id, kind=job.kind.value, run_number=job.run_number)
        resumed = job.kind == JobKind.IMPORT and job.status == JobStatus.IN_PROGRESS
        log.info("job_claimed", status=job.status.value, resumed=resumed)

        plan = self._plans[job.kind]
        options = parse_job_options(job.kind, job.options)
        stages = plan.stages(options)
        ctx = StageContext(self._store, job, worker_id=self.worker_id, options=options)
        boundary = plan.validation_boundary()

        try:
            for position in range(plan.first_stage(resumed), len(stages)):
                self._executor.run_stage(ctx, stages[position], index=position + 1, count=len(stages))
                if position == boundary:
                    assert isinstance(options, ImportOptions)
                    validated = self._store.mark_validated(job.id, self.worker_id, release=not options.auto_start)
                    log.info("job_validated", auto_start=options.auto_start)
                    self._notify(validated, "validated")
                    if not options.auto_start:
                        return validated
                    if self._store.claim_for_run(job.id, self.worker_id) is None:
                        raise InvalidJobStateError(f"Job {job.id} could not continue after validation")

            completed = self._store.complete_job(job.id, self.worker_id, result=plan.build_result(ctx))
            log.info("job_completed")
            self._notify(completed, "completed")
            return completed
        except JobCancelledError:
            log.info("job_cancelled_at_checkpoint")
            return self._store.get_job(job.id)
        except StageError as exc:
            return self._handle_failure(job.id, exc)
        except (InvalidJobStateError, JobConflictError) as exc:
            # Another actor (cancel, lease recovery, delete) owns the job now.
            log.warning("job_ownership_lost", error=str(exc))
            return self._safe_get(job.id)

    def recover_interrupted(self) -> list[str]:
        """Fail in-flight jobs whose lease expired, rolling imports back where required."""
        recovered: list[str] = []
        for job in self._store.find_expired_leases():
            error = TransientStageError(
                "Worker lease expired before the job finished",
                stage=job.progress.step_name,
                error_code="LEASE_EXPIRED",
            )
            needs_rollback = self._rollback_required(job)
            error_info = self._retry.build_error_info(
                error,
                previous_retry_count=job.retry_count,
                max_retries=job.max_retries,
                rollback_attempted=needs_rollback,
            )
            failed = self._store.expire_lease(job.id, error_info=error_info)
            if failed is None:
                continue
            logger.warning("job_lease_expired", job_id=job.id, kind=job.kind.value, stage=job.progress.step_name)
            self._notify(failed, "failed")
            if needs_rollback:
                self._roll_back(failed)
            recovered.append(job.id)
        return recovered

    def _rollback_required(self, job: JobSnapshot) -> bool:
        if job.kind != JobKind.IMPORT or job.backup_info is None:
            return False
        if job.backup_info.run_number != job.run_number:
            return False
        options = parse_job_options(job.kind, job.options)
        assert isinstance(options, ImportOptions)
        return options.rollback_on_error

    def _handle_failure(self, job_id: str, exc: StageError) -> JobSnapshot | None:
        current = self._store.get_job(job_id)
        log = logger.bind(job_id=job_id, kind=current.kind.value, stage=exc.stage, error_code=exc.error_code)
        if current.status == JobStatus.CANCELLED:
            log.info("job_failure_after_cancel", error=str(exc))
            return current

        needs_rollback = self._rollback_required(current)
        error_info = self._retry.build_error_info(
            exc,
            previous_retry_count=current.retry_count,
            max_retries=current.max_retries,
            rollback_attempted=needs_rollback,
        )
        try:
            failed = self._store.fail_job(job_id, worker_id=self.worker_id, error_info=error_info)
        except JobCancelledError:
            log.info("job_failure_after_cancel", error=str(exc))
            return self._store.get_job(job_id)
        except (InvalidJobStateError, JobConflictError) as conflict:
            log.warning("job_ownership_lost", error=str(conflict))
            return self._safe_get(job_id)

        log.warning(
            "job_failed",
            error=str(exc),
            retry_count=error_info.retry_count,
            can_retry=error_info.can_retry,
            next_retry_at=error_info.next_retry_at.isoformat() if error_info.next_retry_at else None,
        )
        self._notify(failed, "failed")
        if not needs_rollback:
            return failed
        if isinstance(exc, StageTimeoutError) and exc.handler_running:
            # Restoring under a live writer could be overwritten by it.
            log.error("job_rollback_skipped", reason="stage handler still running")
            outcome = self._store.record_rollback_outcome(
                failed.id, succeeded=False, message="stage handler did not stop within its grace period"
            )
            self._notify(outcome, "rollback_failed")
            return outcome
        return self._roll_back(failed)

    def _roll_back(self, failed: JobSnapshot) -> JobSnapshot:
        assert failed.backup_info is not None
        log = logger.bind(job_id=failed.id, snapshot_id=failed.backup_info.snapshot_id)
        try:
            restored = self._rollback.rollback(failed.owner_id, failed.backup_info)
        except RollbackError as exc:
            log.error("job_rollback_failed", error=str(exc))
            outcome = self._store.record_rollback_outcome(failed.id, succeeded=False, message=str(exc))
            self._notify(outcome, "rollback_failed")
            return outcome

        log.info("job_rolled_back", records_restored=restored)
        outcome = self._store.record_rollback_outcome(failed.id, succeeded=True)
        self._notify(outcome, "rolled_back")
        return outcome

    def _safe_get(self, job_id: str) -> JobSnapshot | None:
        try:
            return self._store.get_job(job_id)
        except JobNotFoundError:
            return None

    def _notify(self, job: JobSnapshot, event: str) -> None:
        message = job.error_info.message if job.error_info else None
        try:
            self._notifier.notify(
                job.owner_id,
                JobEvent(job_id=job.id, kind=job.kind.value, event=event, status=job.status.value, message=message),
            )
        except Exception:
            # Delivery problems never change the job outcome.
            logger.exception("job_notification_failed", job_id=job.id, job_event=event)
