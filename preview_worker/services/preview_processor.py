import enum
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from preview_worker.core.config import settings
from preview_worker.core.exceptions import ProcessingError, StorageError
from preview_worker.services.storage import StorageService
from preview_worker.services.transcoder import JobContext, Transcoder
from preview_worker.services.watermark import watermark_file

logger = structlog.get_logger()


class PreviewKind(str, enum.Enum):
    PDF = "pdf"
    VIDEO = "video"
    IMAGE = "image"
    CONVERT_THEN_PDF = "convert_then_pdf"

    @classmethod
    def from_mime(cls, mime_type: str | None) -> "PreviewKind":
        """Resolve the handler for a declared MIME type; first substring match wins."""
        mime = (mime_type or "").lower()
        if "pdf" in mime:
            return cls.PDF
        if "video" in mime:
            return cls.VIDEO
        if "image" in mime:
            return cls.IMAGE
        return cls.CONVERT_THEN_PDF


@dataclass
class PreviewResult:
    paths: list[str] = field(default_factory=list)

    @property
    def primary_path(self) -> str | None:
        return self.paths[0] if self.paths else None

    @property
    def preview_count(self) -> int:
        return len(self.paths)


class PreviewProcessor:
    """Builds and uploads watermarked previews for one original file."""

    def __init__(self, storage: StorageService, transcoder: Transcoder | None = None) -> None:
        self.storage = storage
        self.transcoder = transcoder or Transcoder()
        self.bucket = settings.preview_bucket

    def process(self, kind: PreviewKind, local_path: str, resource_id: str,
                work_dir: str, context: JobContext) -> PreviewResult:
        handlers = {
            PreviewKind.PDF: self.process_pdf,
            PreviewKind.VIDEO: self.process_video,
            PreviewKind.IMAGE: self.process_image,
            PreviewKind.CONVERT_THEN_PDF: self.process_document,
        }
        result = handlers[kind](local_path, resource_id, work_dir, context)
        if not result.paths:
            raise ProcessingError(f"No preview artifacts produced for {kind.value}")
        return result

    def _publish(self, local_file: Path, key: str, content_type: str) -> str:
        return self.storage.upload(self.bucket, key, local_file.read_bytes(), content_type, upsert=True)

    def process_pdf(self, local_path: str, resource_id: str, work_dir: str, context: JobContext) -> PreviewResult:
        logger.info("pdf_processing_started", resource_id=resource_id)
        pages_dir = Path(work_dir) / "pages"

        pages = self.transcoder.render_pdf_pages(local_path, str(pages_dir), context)
        if not pages:
            raise ProcessingError("PDF rendering produced no pages")

        result = PreviewResult()
        for number, page in enumerate(pages[: settings.pdf_preview_pages], start=1):
            stamped = pages_dir / f"watermarked_{number}.png"
            watermark_file(str(page), str(stamped), settings.watermark_label)
            result.paths.append(self._publish(stamped, f"{resource_id}/page_{number}.png", "image/png"))

        self._remove_stale_pages(resource_id, result.paths)
        logger.info("pdf_processing_completed", resource_id=resource_id, preview_count=result.preview_count)
        return result

    def _remove_stale_pages(self, resource_id: str, current: list[str]) -> None:
        # A re-run with fewer pages would otherwise leave the old tail behind
        try:
            stale = [key for key in self.storage.list_keys(self.bucket, f"{resource_id}/page_") if key not in current]
            self.storage.delete(self.bucket, stale)
        except StorageError as e:
            logger.warning("stale_pages_cleanup_failed", resource_id=resource_id, error=str(e))

    def process_video(self, local_path: str, resource_id: str, work_dir: str, context: JobContext) -> PreviewResult:
        logger.info("video_processing_started", resource_id=resource_id)
        output = Path(work_dir) / "preview.mp4"

        self.transcoder.clip_video(local_path, str(output), settings.video_watermark_label, context)
        if not output.exists() or output.stat().st_size == 0:
            raise ProcessingError("Video transcoding produced no output")

        key = self._publish(output, f"{resource_id}/preview.mp4", "video/mp4")
        logger.info("video_processing_completed", resource_id=resource_id, clip_seconds=settings.video_clip_seconds)
        return PreviewResult(paths=[key])

    def process_image(self, local_path: str, resource_id: str, work_dir: str, context: JobContext) -> PreviewResult:
        logger.info("image_processing_started", resource_id=resource_id)
        context.check()
        output = Path(work_dir) / "watermarked.png"

        try:
            size = watermark_file(local_path, str(output), settings.watermark_label,
                                  max_size=(settings.image_max_width, settings.image_max_height))
        except OSError as e:
            raise ProcessingError(f"Image could not be read: {e}") from e

        key = self._publish(output, f"{resource_id}/preview.png", "image/png")
        logger.info("image_processing_completed", resource_id=resource_id, width=size[0], height=size[1])
        return PreviewResult(paths=[key])

    def process_document(self, local_path: str, resource_id: str, work_dir: str, context: JobContext) -> PreviewResult:
        logger.info("document_conversion_started", resource_id=resource_id)
        convert_dir = Path(work_dir) / "converted"

        pdf_path = self.transcoder.convert_to_pdf(local_path, str(convert_dir), context)
        if pdf_path is None:
            raise ProcessingError("PDF conversion failed - no output file")

        return self.process_pdf(str(pdf_path), resource_id, work_dir, context)
