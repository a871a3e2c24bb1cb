from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from habitdata.jobs.options import JobOptions
from habitdata.jobs.service import JobService
from habitdata.jobs.types import JobSnapshot
from habitdata.pipeline.errors import JobCancelledError, StageError, StageTimeoutError, TransientStageError

logger = structlog.get_logger(__name__)

StageHandler = Callable[["StageContext"], None]


@dataclass(frozen=True)
class Stage:
    name: str
    handler: StageHandler


class StageContext:
    """Per-run state shared by the stages of one job.

    Handlers never hold on to a job row. ``refresh()`` re-reads the record and
    ``scratch`` carries in-memory intermediates (collected data, encoded bytes)
    from one stage to the next.
    """

    def __init__(self, store: JobService, job: JobSnapshot, *, worker_id: str, options: JobOptions):
        self.store = store
        self.job_id = job.id
        self.owner_id = job.owner_id
        self.kind = job.kind
        self.run_number = job.run_number
        self.worker_id = worker_id
        self.options = options
        self.scratch: dict[str, Any] = {}
        self.units_processed = 0
        self.units_total: int | None = None
        self._abandoned = threading.Event()

    def refresh(self) -> JobSnapshot:
        return self.store.get_job(self.job_id)

    def checkpoint(self) -> None:
        if self._abandoned.is_set():
            raise StageTimeoutError("Stage was abandoned after its deadline")
        self.store.heartbeat(
            self.job_id,
            self.worker_id,
            units_processed=self.units_processed,
            units_total=self.units_total,
        )

    def report_units(self, processed: int, total: int | None = None) -> None:
        self.units_processed = processed
        if total is not None:
            self.units_total = total
        self.checkpoint()

    def start_stage(self) -> None:
        self.units_processed = 0
        self.units_total = None

    def abandon(self) -> None:
        self._abandoned.set()


class StageExecutor:
    def __init__(self, store: JobService, *, timeout_seconds: float, max_workers: int, grace_seconds: float = 0):
        self._store = store
        self._timeout_seconds = timeout_seconds
        self._grace_seconds = grace_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="habitdata-stage")

    def run_stage(self, ctx: StageContext, stage: Stage, *, index: int, count: int) -> JobSnapshot:
        """Run one stage and commit its progress before returning."""
        self._store.begin_stage(ctx.job_id, ctx.worker_id, step_name=stage.name, step_index=index, step_count=count)
        ctx.start_stage()
        log = logger.bind(job_id=ctx.job_id, kind=ctx.kind.value, stage=stage.name)
        log.info("stage_started", step_index=index, step_count=count)

        future = self._executor.submit(stage.handler, ctx)
        try:
            future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as exc:
            # A started handler only stops at its next checkpoint; the caller must not
            # touch the job until it has.
            ctx.abandon()
            future.cancel()
            wait([future], timeout=self._grace_seconds)
            handler_running = not future.done()
            if handler_running:
                log.warning("stage_handler_still_running", grace_seconds=self._grace_seconds)
            raise StageTimeoutError(
                f"Stage {stage.name} exceeded {self._timeout_seconds:g}s",
                stage=stage.name,
                handler_running=handler_running,
            ) from exc
        except JobCancelledError:
            raise
        except StageError as exc:
            if exc.stage is None:
                exc.stage = stage.name
            raise
        except Exception as exc:
            raise TransientStageError(f"Stage {stage.name} failed: {exc}", stage=stage.name) from exc

        snapshot = self._store.complete_stage(
            ctx.job_id,
            ctx.worker_id,
            step_index=index,
            step_count=count,
            units_processed=ctx.units_processed,
            units_total=ctx.units_total,
        )
        log.info("stage_finished", percentage=snapshot.progress.percentage)
        return snapshot

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
