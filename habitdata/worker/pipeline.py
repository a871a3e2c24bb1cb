from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from habitdata.core.config import Settings
from habitdata.db.models import JobKind
from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.jobs.service import JobService
from habitdata.pipeline.collaborators import DataApplier, DataCollector, Encryptor, Notifier, StorageClient
from habitdata.pipeline.integrity import IntegrityVerifier
from habitdata.pipeline.orchestrator import PipelineOrchestrator
from habitdata.pipeline.plans import BackupPlan, ExportPlan, ImportPlan, PlanDependencies
from habitdata.pipeline.pool import JobWorkerPool
from habitdata.pipeline.retry import RetryController
from habitdata.pipeline.rollback import RollbackCoordinator
from habitdata.pipeline.stages import StageExecutor
from habitdata.pipeline.validation import ValidationPipeline
from habitdata.strategies import GzipCompressor, LocalStorageClient, LoggingNotifier, RecordFormatter, SqlRecordStore


@dataclass
class PipelineRuntime:
    store: JobService
    orchestrator: PipelineOrchestrator
    executor: StageExecutor
    pool: JobWorkerPool
    lifecycle: DataLifecycleService
    records: SqlRecordStore
    storage: StorageClient
    rollback: RollbackCoordinator

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)
        self.executor.shutdown(wait=wait)


def build_runtime(
    settings: Settings,
    session_factory: sessionmaker[Session],
    *,
    encryptor: Encryptor | None = None,
    notifier: Notifier | None = None,
    storage: StorageClient | None = None,
    collector: DataCollector | None = None,
    applier: DataApplier | None = None,
    worker_id: str | None = None,
) -> PipelineRuntime:
    """Wire the job store, stage plans, orchestrator and worker pool together."""
    store = JobService(settings=settings, session_factory=session_factory)
    verifier = IntegrityVerifier(settings.checksum_algorithm)
    formatter = RecordFormatter()
    compressor = GzipCompressor(settings.compression_level)
    storage = storage or LocalStorageClient(settings.effective_artifacts_root)
    notifier = notifier or LoggingNotifier()
    records = SqlRecordStore(session_factory)
    collector = collector or records
    applier = applier or records

    rollback = RollbackCoordinator(collector=collector, applier=applier, storage=storage, verifier=verifier)
    deps = PlanDependencies(
        store=store,
        collector=collector,
        applier=applier,
        formatter=formatter,
        compressor=compressor,
        storage=storage,
        verifier=verifier,
        validation=ValidationPipeline(
            formatter,
            verifier,
            max_errors=settings.import_max_errors,
            max_bytes=settings.import_max_bytes,
        ),
        rollback=rollback,
        encryptor=encryptor,
    )
    executor = StageExecutor(
        store,
        timeout_seconds=settings.job_stage_timeout_seconds,
        max_workers=settings.worker_concurrency,
        # Half the lease margin, so the job can still be failed under a live lease.
        grace_seconds=(settings.job_lease_ttl_seconds - settings.job_stage_timeout_seconds) / 2,
    )
    orchestrator = PipelineOrchestrator(
        store=store,
        executor=executor,
        retry=RetryController(settings.job_retry_delays_seconds),
        rollback=rollback,
        notifier=notifier,
        plans={
            JobKind.EXPORT: ExportPlan(deps),
            JobKind.IMPORT: ImportPlan(deps),
            JobKind.BACKUP: BackupPlan(deps),
        },
        worker_id=worker_id or f"worker-{uuid4().hex[:12]}",
    )
    pool = JobWorkerPool(
        orchestrator.run,
        max_workers=settings.worker_concurrency,
        capacity=settings.worker_queue_capacity,
    )
    lifecycle = DataLifecycleService(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        pool=pool,
        storage=storage,
        verifier=verifier,
        formatter=formatter,
        compressor=compressor,
        applier=applier,
        notifier=notifier,
        encryptor=encryptor,
    )
    return PipelineRuntime(
        store=store,
        orchestrator=orchestrator,
        executor=executor,
        pool=pool,
        lifecycle=lifecycle,
        records=records,
        storage=storage,
        rollback=rollback,
    )
