import tempfile
import threading
import time
from pathlib import Path

import structlog

from preview_worker.core.config import settings
from preview_worker.core.exceptions import ProcessingCancelled
from preview_worker.services import (
    ClaimedJob,
    ContentScanner,
    JobContext,
    JobStore,
    PreviewKind,
    PreviewProcessor,
    StorageService,
)
from preview_worker.services.storage import original_key

logger = structlog.get_logger()


def process_job(
    job: ClaimedJob,
    store: JobStore,
    storage: StorageService,
    scanner: ContentScanner,
    processor: PreviewProcessor,
    cancel_event: threading.Event | None = None,
) -> dict:
    """Download, scan and preview one claimed job, then record the outcome."""
    job_id = str(job.id)
    kind = PreviewKind.from_mime(job.mime_type)
    logger.info("processing_started", job_id=job_id, resource_id=str(job.resource_id),
                mime_type=job.mime_type, kind=kind.value, attempt=job.attempts)

    start_time = time.time()
    context = JobContext.with_budget(settings.job_timeout_seconds, cancel_event)

    try:
        with tempfile.TemporaryDirectory(prefix=f"preview_{job_id}_") as temp_dir:
            local_file = Path(temp_dir) / f"upload{Path(job.original_path).suffix}"

            storage.download_file(settings.original_bucket, original_key(job.original_path), str(local_file))

            scan = scanner.scan(str(local_file), job.mime_type, job.original_path)
            store.record_scan(job, scan)

            result = processor.process(kind, str(local_file), str(job.resource_id), temp_dir, context)
            store.mark_done(job, result, scan)

    except ProcessingCancelled as e:
        if not context.cancel_event.is_set():
            return _fail(job, store, str(e))
        logger.warning("processing_interrupted", job_id=job_id, error=str(e))
        store.release(job)
        return {"status": "released", "job_id": job_id}

    except Exception as e:
        return _fail(job, store, str(e) or type(e).__name__)

    processing_time = round(time.time() - start_time, 2)
    logger.info("processing_completed", job_id=job_id, preview_count=result.preview_count,
                processing_time=processing_time)

    return {
        "status": "success",
        "job_id": job_id,
        "preview_count": result.preview_count,
        "preview_path": result.primary_path,
    }


def _fail(job: ClaimedJob, store: JobStore, error: str) -> dict:
    job_id = str(job.id)
    logger.error("processing_failed", job_id=job_id, error=error)
    store.mark_failed(job, error)
    return {"status": "failed", "job_id": job_id, "error": error}
