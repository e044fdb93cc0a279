"""
Coach2Coach Preview Worker - Polls the preview job table and builds watermarked previews.
"""

import enum
import signal
import sys
import threading
from typing import Callable

import structlog

from preview_worker.core.config import settings
from preview_worker.services import ContentScanner, JobStore, PreviewProcessor, StorageService, Transcoder
from preview_worker.tasks.preview import process_job

logger = structlog.get_logger()

shutdown_event = threading.Event()


def signal_handler(signum, frame):
    logger.info("shutdown_requested", signal=signum)
    shutdown_event.set()


class PollOutcome(str, enum.Enum):
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"
    RELEASED = "released"
    BACKOFF = "backoff"


class PreviewWorker:
    """One poll cycle per ``run_once``; ``run`` repeats it until stopped."""

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        scanner: ContentScanner,
        processor: PreviewProcessor,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.scanner = scanner
        self.processor = processor
        self.stop_event = stop_event or threading.Event()
        self.sleep = sleep or self.stop_event.wait

    def run_once(self) -> PollOutcome:
        try:
            job = self.store.claim_next_queued_job()
        except Exception as e:
            logger.error("worker_loop_error", error=str(e))
            return PollOutcome.BACKOFF

        if job is None:
            return PollOutcome.IDLE

        try:
            result = process_job(job, self.store, self.storage, self.scanner, self.processor, self.stop_event)
        except Exception as e:
            # Failure could not be recorded; the job stays in processing
            logger.error("failure_not_recorded", job_id=str(job.id), error=str(e))
            return PollOutcome.BACKOFF

        if result["status"] == "released":
            return PollOutcome.RELEASED
        return PollOutcome.COMPLETED if result["status"] == "success" else PollOutcome.FAILED

    @staticmethod
    def delay_for(outcome: PollOutcome) -> float:
        if outcome == PollOutcome.IDLE:
            return settings.poll_interval_seconds
        if outcome == PollOutcome.BACKOFF:
            return settings.error_backoff_seconds
        return 0

    def run(self) -> None:
        logger.info("worker_ready", poll_interval=settings.poll_interval_seconds)

        while not self.stop_event.is_set():
            delay = self.delay_for(self.run_once())
            if delay and not self.stop_event.is_set():
                self.sleep(delay)

        logger.info("worker_stopped")


def build_worker(stop_event: threading.Event | None = None) -> PreviewWorker:
    storage = StorageService()
    return PreviewWorker(
        store=JobStore(),
        storage=storage,
        scanner=ContentScanner(),
        processor=PreviewProcessor(storage, Transcoder()),
        stop_event=stop_event,
    )


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("worker_starting", original_bucket=settings.original_bucket, preview_bucket=settings.preview_bucket)

    try:
        build_worker(shutdown_event).run()
    except Exception as e:
        logger.critical("worker_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
