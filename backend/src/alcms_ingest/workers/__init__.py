"""Background workers for async processing tasks."""

from alcms_ingest.workers.ingest_upload_worker import (
    process_pending,
    process_task,
    run_ingest_upload_worker,
)

__all__ = [
    "process_pending",
    "process_task",
    "run_ingest_upload_worker",
]
