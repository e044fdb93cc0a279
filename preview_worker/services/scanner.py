import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import structlog

from preview_worker.core.config import settings
from preview_worker.core.exceptions import ScanError

logger = structlog.get_logger()

MAX_RISK_SCORE = 100

# Magic-byte prefixes for the declared types the basic scanner can verify
_SIGNATURES = {
    "pdf": (b"%PDF",),
    "image": (b"\x89PNG\r\n\x1a\n", b"\xff\xd8\xff", b"GIF87a", b"GIF89a", b"RIFF", b"BM", b"II*\x00", b"MM\x00*"),
}

_FLAG_WEIGHTS = {
    "empty_file": 60,
    "oversized": 30,
    "blocked_extension": 80,
    "mime_mismatch": 50,
}


@dataclass
class ScanResult:
    risk_score: int = 0
    flags: list[str] = field(default_factory=list)


@dataclass
class ScannerConfig:
    max_file_size_bytes: int
    blocked_extensions: list[str]

    @classmethod
    def from_settings(cls) -> "ScannerConfig":
        return cls(
            max_file_size_bytes=settings.scanner_max_file_size_bytes,
            blocked_extensions=[ext.lower() for ext in settings.scanner_blocked_extensions],
        )


def _looks_like(kind: str, head: bytes) -> bool:
    if kind == "video":
        # ISO base media (mp4/mov), Matroska/WebM, AVI, MPEG-TS/PS
        return (head[4:8] == b"ftyp" or head.startswith(b"\x1a\x45\xdf\xa3")
                or head.startswith(b"RIFF") or head[:1] == b"\x47" or head.startswith(b"\x00\x00\x01\xba"))
    return head.startswith(_SIGNATURES[kind])


def basic_scan(local_path: str, mime_type: str, original_path: str, config: ScannerConfig) -> ScanResult:
    """Cheap structural checks: size, extension and magic bytes against the declared type."""
    path = Path(local_path)
    size = path.stat().st_size
    flags = []

    if size == 0:
        flags.append("empty_file")
    elif size > config.max_file_size_bytes:
        flags.append("oversized")

    if Path(original_path).suffix.lower() in config.blocked_extensions:
        flags.append("blocked_extension")

    if size:
        with path.open("rb") as f:
            head = f.read(16)
        mime = (mime_type or "").lower()
        for kind in ("pdf", "video", "image"):
            if kind in mime:
                if not _looks_like(kind, head):
                    flags.append("mime_mismatch")
                break

    score = min(MAX_RISK_SCORE, sum(_FLAG_WEIGHTS[flag] for flag in flags))
    return ScanResult(risk_score=score, flags=flags)


def load_backend(dotted: str) -> Callable[..., Any]:
    """Resolve ``package.module:callable`` to the callable."""
    module_name, _, attr = dotted.partition(":")
    if not attr:
        module_name, _, attr = dotted.rpartition(".")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def _coerce(result: Any) -> ScanResult:
    if isinstance(result, ScanResult):
        return result
    if isinstance(result, dict):
        score = result.get("risk_score", result.get("riskScore", 0))
        return ScanResult(risk_score=int(score or 0), flags=[str(flag) for flag in result.get("flags") or []])
    raise ScanError(f"Scanner returned unsupported result type: {type(result).__name__}")


class ContentScanner:
    """Adapter around the configured scanning backend."""

    def __init__(self, backend: Callable[..., Any] | None = None, config: ScannerConfig | None = None) -> None:
        self.backend = backend or load_backend(settings.scanner_backend)
        self.config = config or ScannerConfig.from_settings()

    def scan(self, local_path: str, mime_type: str, original_path: str) -> ScanResult:
        try:
            result = _coerce(self.backend(local_path, mime_type, original_path, self.config))
        except ScanError:
            raise
        except Exception as e:
            raise ScanError(f"Content scan failed: {e}") from e

        logger.info("scan_completed", risk_score=result.risk_score, flags=result.flags)
        return result
