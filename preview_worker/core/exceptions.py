class PreviewError(Exception):
    """Base class for errors raised while generating a preview."""
    pass


class StorageError(PreviewError):
    """Raised when an object cannot be read from or written to storage."""
    pass


class ScanError(PreviewError):
    """Raised when the content scanner cannot produce a result."""
    pass


class ProcessingError(PreviewError):
    """Raised when a format handler cannot produce preview artifacts."""
    pass


class TranscoderError(ProcessingError):
    """Raised when an external tool exits non-zero or times out."""
    pass


class ProcessingCancelled(ProcessingError):
    """Raised when a job is cancelled or runs out of its time budget."""
    pass
