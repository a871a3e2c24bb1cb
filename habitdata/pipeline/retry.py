from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

from habitdata.jobs.types import ErrorInfo
from habitdata.pipeline.errors import StageError


@dataclass(frozen=True)
class RetryDecision:
    retry_count: int
    max_retries: int
    can_retry: bool
    next_retry_at: datetime | None


class RetryController:
    """Decides retry eligibility after a failed run.

    The controller only computes when a job may run again. Nothing here
    schedules or triggers the retry itself.
    """

    def __init__(self, delays_seconds: Sequence[int]):
        if not delays_seconds:
            raise ValueError("delays_seconds must not be empty")
        self._delays = tuple(int(delay) for delay in delays_seconds)

    def delay_for(self, retry_count: int) -> timedelta:
        if retry_count < 1:
            raise ValueError("retry_count must be >= 1")
        index = min(retry_count, len(self._delays)) - 1
        return timedelta(seconds=self._delays[index])

    def decide(
        self,
        *,
        previous_retry_count: int,
        max_retries: int,
        retryable: bool,
        now: datetime | None = None,
    ) -> RetryDecision:
        current = now or datetime.now(tz=timezone.utc)
        retry_count = min(previous_retry_count + 1, max_retries)
        if not retryable or retry_count >= max_retries:
            return RetryDecision(
                retry_count=retry_count,
                max_retries=max_retries,
                can_retry=False,
                next_retry_at=None,
            )
        return RetryDecision(
            retry_count=retry_count,
            max_retries=max_retries,
            can_retry=True,
            next_retry_at=current + self.delay_for(retry_count),
        )

    def build_error_info(
        self,
        error: StageError,
        *,
        previous_retry_count: int,
        max_retries: int,
        rollback_attempted: bool = False,
        now: datetime | None = None,
    ) -> ErrorInfo:
        current = now or datetime.now(tz=timezone.utc)
        decision = self.decide(
            previous_retry_count=previous_retry_count,
            max_retries=max_retries,
            retryable=error.retryable,
            now=current,
        )
        return ErrorInfo(
            message=str(error) or error.__class__.__name__,
            error_code=error.error_code,
            retry_count=decision.retry_count,
            max_retries=decision.max_retries,
            can_retry=decision.can_retry,
            next_retry_at=decision.next_retry_at,
            stage=error.stage,
            rollback_attempted=rollback_attempted,
            rollback_succeeded=None,
            occurred_at=current,
        )
