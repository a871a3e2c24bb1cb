from __future__ import annotations

import structlog

from habitdata.pipeline.collaborators import JobEvent

logger = structlog.get_logger(__name__)


class LoggingNotifier:
    def notify(self, owner_id: str, event: JobEvent) -> None:
        logger.info(
            "job_event",
            owner_id=owner_id,
            job_id=event.job_id,
            kind=event.kind,
            job_event=event.event,
            status=event.status,
            message=event.message,
            **event.details,
        )
