from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


class WorkerQueueFullError(RuntimeError):
    pass


class JobWorkerPool:
    """Bounded background execution of job runs.

    At most ``max_workers`` jobs run at once and at most ``capacity`` are
    queued or running. A job id is never run twice concurrently; submitting
    an id that is already in flight schedules one more pass after the
    current run returns.
    """

    def __init__(self, run_job: Callable[[str], object], *, max_workers: int, capacity: int):
        self._run_job = run_job
        self._capacity = capacity
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="habitdata-job")
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight: set[str] = set()
        self._rerun: set[str] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def ensure_capacity(self) -> None:
        with self._lock:
            if self._closed:
                raise WorkerQueueFullError("Worker pool is shut down")
            if len(self._in_flight) >= self._capacity:
                raise WorkerQueueFullError(f"Worker queue is full ({self._capacity} jobs)")

    def submit(self, job_id: str) -> bool:
        with self._lock:
            if self._closed:
                raise WorkerQueueFullError("Worker pool is shut down")
            if job_id in self._in_flight:
                self._rerun.add(job_id)
                return False
            if len(self._in_flight) >= self._capacity:
                raise WorkerQueueFullError(f"Worker queue is full ({self._capacity} jobs)")
            self._in_flight.add(job_id)
        self._executor.submit(self._run, job_id)
        return True

    def _run(self, job_id: str) -> None:
        while True:
            try:
                self._run_job(job_id)
            except Exception:
                logger.exception("job_run_crashed", job_id=job_id)
            with self._lock:
                if job_id in self._rerun:
                    self._rerun.discard(job_id)
                    continue
                self._in_flight.discard(job_id)
                self._idle.notify_all()
                return

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
