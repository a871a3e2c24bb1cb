from __future__ import annotations


class StageError(RuntimeError):
    """Failure raised out of a stage handler.

    ``retryable`` tells the retry controller whether another run may help;
    ``error_code`` is what ends up in ``error_info.error_code``.
    """

    retryable: bool = True
    error_code: str = "STAGE_FAILED"

    def __init__(self, message: str, *, stage: str | None = None, error_code: str | None = None):
        super().__init__(message)
        self.stage = stage
        if error_code is not None:
            self.error_code = error_code


class TransientStageError(StageError):
    retryable = True
    error_code = "TRANSIENT_ERROR"


class StageTimeoutError(TransientStageError):
    error_code = "STAGE_TIMEOUT"

    def __init__(self, message: str, *, stage: str | None = None, handler_running: bool = False):
        super().__init__(message, stage=stage)
        self.handler_running = handler_running


class IntegrityError(TransientStageError):
    error_code = "INTEGRITY_MISMATCH"


class PermanentStageError(StageError):
    retryable = False
    error_code = "PERMANENT_ERROR"


class ValidationFailedError(StageError):
    retryable = False
    error_code = "VALIDATION_FAILED"


class RollbackError(StageError):
    retryable = False
    error_code = "ROLLBACK_FAILED"


class JobCancelledError(RuntimeError):
    """Raised at a checkpoint once the job has been cancelled."""
