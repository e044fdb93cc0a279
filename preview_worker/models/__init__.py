from .base import SessionLocal
from .job import JobStatus, PreviewJob
from .resource import ModerationEntry, ProcessingStatus, Resource

__all__ = ["SessionLocal", "JobStatus", "PreviewJob", "ModerationEntry", "ProcessingStatus", "Resource"]
