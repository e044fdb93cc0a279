from .storage import StorageService
from .transcoder import JobContext, Transcoder
from .scanner import ContentScanner, ScanResult
from .preview_processor import PreviewKind, PreviewProcessor, PreviewResult
from .job_store import ClaimedJob, JobStore

__all__ = [
    "StorageService",
    "JobContext",
    "Transcoder",
    "ContentScanner",
    "ScanResult",
    "PreviewKind",
    "PreviewProcessor",
    "PreviewResult",
    "ClaimedJob",
    "JobStore",
]
