from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from habitdata.pipeline.errors import (
    IntegrityError,
    PermanentStageError,
    RollbackError,
    StageTimeoutError,
    TransientStageError,
    ValidationFailedError,
)
from habitdata.pipeline.retry import RetryController

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_delay_table_is_indexed_by_retry_count_and_clamped() -> None:
    controller = RetryController([60, 300, 900, 900])

    assert controller.delay_for(1) == timedelta(seconds=60)
    assert controller.delay_for(2) == timedelta(seconds=300)
    assert controller.delay_for(3) == timedelta(seconds=900)
    assert controller.delay_for(9) == timedelta(seconds=900)
    with pytest.raises(ValueError):
        controller.delay_for(0)


def test_empty_delay_table_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryController([])


def test_first_transient_failure_schedules_retry() -> None:
    controller = RetryController([60, 300, 900, 900])
    info = controller.build_error_info(
        TransientStageError("storage hiccup", stage="upload"),
        previous_retry_count=0,
        max_retries=3,
        now=NOW,
    )

    assert info.retry_count == 1
    assert info.can_retry is True
    assert info.next_retry_at == NOW + timedelta(seconds=60)
    assert info.error_code == "TRANSIENT_ERROR"
    assert info.stage == "upload"
    assert info.occurred_at == NOW


def test_retry_budget_exhaustion_stops_retries() -> None:
    controller = RetryController([60, 300, 900, 900])

    second = controller.build_error_info(
        StageTimeoutError("slow"), previous_retry_count=1, max_retries=3, now=NOW
    )
    assert second.retry_count == 2
    assert second.can_retry is True
    assert second.next_retry_at == NOW + timedelta(seconds=300)

    third = controller.build_error_info(
        StageTimeoutError("slow"), previous_retry_count=2, max_retries=3, now=NOW
    )
    assert third.retry_count == 3
    assert third.can_retry is False
    assert third.next_retry_at is None

    # The count never climbs past the budget.
    beyond = controller.build_error_info(
        IntegrityError("mismatch"), previous_retry_count=3, max_retries=3, now=NOW
    )
    assert beyond.retry_count == 3
    assert beyond.can_retry is False


@pytest.mark.parametrize(
    "error",
    [
        ValidationFailedError("bad rows"),
        RollbackError("snapshot missing"),
        PermanentStageError("no encryptor", error_code="ENCRYPTION_UNAVAILABLE"),
    ],
)
def test_non_retryable_errors_never_schedule(error) -> None:
    controller = RetryController([60])
    info = controller.build_error_info(error, previous_retry_count=0, max_retries=3, now=NOW)

    assert info.retry_count == 1
    assert info.can_retry is False
    assert info.next_retry_at is None
    assert info.error_code == error.error_code


def test_rollback_attempted_flag_is_carried() -> None:
    controller = RetryController([60])
    info = controller.build_error_info(
        TransientStageError("apply failed"),
        previous_retry_count=0,
        max_retries=3,
        rollback_attempted=True,
        now=NOW,
    )
    assert info.rollback_attempted is True
    assert info.rollback_succeeded is None
