import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from preview_worker.core.config import settings
from preview_worker.models import JobStatus, ModerationEntry, PreviewJob, ProcessingStatus, Resource, SessionLocal
from preview_worker.services.preview_processor import PreviewResult
from preview_worker.services.scanner import ScanResult

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job row taken at claim time."""

    id: uuid.UUID
    resource_id: uuid.UUID
    original_path: str
    mime_type: str
    attempts: int


class JobStore:
    """Job and resource state transitions, each in its own transaction."""

    def __init__(self, session_factory: sessionmaker | None = None, batch_size: int | None = None) -> None:
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.claim_batch_size

    def _compare_and_swap(self, db: Session, job_id: uuid.UUID) -> bool:
        # Only succeeds while the row is still queued; rowcount tells us who won
        result = db.execute(
            update(PreviewJob)
            .where(PreviewJob.id == job_id, PreviewJob.status == JobStatus.QUEUED)
            .values(status=JobStatus.PROCESSING, attempts=PreviewJob.attempts + 1, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        resource_id = db.execute(select(PreviewJob.resource_id).where(PreviewJob.id == job_id)).scalar_one()
        db.execute(
            update(Resource)
            .where(Resource.id == resource_id)
            .values(processing_status=ProcessingStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        return True

    def mark_processing(self, job_id: uuid.UUID) -> bool:
        """Atomically move a queued job to processing. False if another worker got there first."""
        with self.session_factory() as db:
            claimed = self._compare_and_swap(db, job_id)
            db.commit()
        return claimed

    def claim_next_queued_job(self) -> ClaimedJob | None:
        """Claim the oldest queued job, or return None when the queue is empty."""
        with self.session_factory() as db:
            candidates = db.execute(
                select(PreviewJob.id)
                .where(PreviewJob.status == JobStatus.QUEUED)
                .order_by(PreviewJob.created_at.asc())
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for job_id in candidates:
                if not self._compare_and_swap(db, job_id):
                    logger.info("claim_lost", job_id=str(job_id))
                    continue

                job = db.get(PreviewJob, job_id)
                claimed = ClaimedJob(
                    id=job.id,
                    resource_id=job.resource_id,
                    original_path=job.original_path,
                    mime_type=job.mime_type,
                    attempts=job.attempts,
                )
                db.commit()
                logger.info("job_claimed", job_id=str(claimed.id), resource_id=str(claimed.resource_id),
                            attempt=claimed.attempts)
                return claimed

            db.rollback()
            return None

    def record_scan(self, job: ClaimedJob, scan: ScanResult) -> None:
        """Persist scan output on the moderation entry and the resource."""
        with self.session_factory() as db:
            result = db.execute(
                update(ModerationEntry)
                .where(ModerationEntry.resource_id == job.resource_id)
                .values(risk_score=scan.risk_score, flags=list(scan.flags), updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning("moderation_entry_missing", resource_id=str(job.resource_id))

            db.execute(
                update(Resource)
                .where(Resource.id == job.resource_id)
                .values(risk_score=scan.risk_score, scanner_flags=list(scan.flags))
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def mark_done(self, job: ClaimedJob, result: PreviewResult, scan: ScanResult | None = None) -> None:
        values = {
            "processing_status": ProcessingStatus.READY,
            "is_preview_ready": result.preview_count > 0,
            "storage_path_preview": result.primary_path,
            "preview_count": result.preview_count,
            "last_error": None,
        }
        if scan is not None:
            values.update(risk_score=scan.risk_score, scanner_flags=list(scan.flags))

        with self.session_factory() as db:
            db.execute(
                update(Resource).where(Resource.id == job.resource_id).values(**values)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(PreviewJob).where(PreviewJob.id == job.id)
                .values(status=JobStatus.DONE, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def mark_failed(self, job: ClaimedJob, error_message: str) -> None:
        error_message = (error_message or "Unknown error")[: settings.max_error_length]

        with self.session_factory() as db:
            db.execute(
                update(Resource).where(Resource.id == job.resource_id)
                .values(processing_status=ProcessingStatus.FAILED, is_preview_ready=False, last_error=error_message)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(PreviewJob).where(PreviewJob.id == job.id)
                .values(status=JobStatus.FAILED, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def release(self, job: ClaimedJob) -> bool:
        """Put an interrupted job back in the queue. False if it is no longer processing."""
        with self.session_factory() as db:
            result = db.execute(
                update(PreviewJob)
                .where(PreviewJob.id == job.id, PreviewJob.status == JobStatus.PROCESSING)
                .values(status=JobStatus.QUEUED, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False

            db.execute(
                update(Resource).where(Resource.id == job.resource_id)
                .values(processing_status=ProcessingStatus.QUEUED, is_preview_ready=False, last_error=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

        logger.info("job_released", job_id=str(job.id), resource_id=str(job.resource_id))
        return True

    def get_job(self, job_id: uuid.UUID) -> PreviewJob | None:
        with self.session_factory() as db:
            return db.get(PreviewJob, job_id)
