from habitdata.pipeline.pool import JobWorkerPool, WorkerQueueFullError
from habitdata.worker.pipeline import PipelineRuntime, build_runtime

__all__ = [
    "JobWorkerPool",
    "PipelineRuntime",
    "WorkerQueueFullError",
    "build_runtime",
]
