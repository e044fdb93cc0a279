import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import structlog

from preview_worker.core.config import settings
from preview_worker.core.exceptions import ProcessingCancelled, TranscoderError

logger = structlog.get_logger()


@dataclass
class JobContext:
    """Time budget and cancellation token shared by every tool run of one job."""

    deadline: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def with_budget(cls, seconds: float | None, cancel_event: threading.Event | None = None,
                    clock: Callable[[], float] = time.monotonic) -> "JobContext":
        deadline = clock() + seconds if seconds else None
        return cls(deadline=deadline, cancel_event=cancel_event or threading.Event(), clock=clock)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - self.clock()

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise ProcessingCancelled("Job cancelled: worker is shutting down")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise ProcessingCancelled("Job time budget exhausted")


class Transcoder:
    """Runs the external conversion tools with a bounded timeout each."""

    def __init__(self, timeout: int | None = None) -> None:
        self.timeout = timeout or settings.tool_timeout_seconds

    def _timeout_for(self, context: JobContext) -> float:
        remaining = context.remaining()
        if remaining is None:
            return self.timeout
        return min(self.timeout, remaining)

    def run(self, tool: str, cmd: list[str], context: JobContext) -> subprocess.CompletedProcess:
        context.check()
        timeout = self._timeout_for(context)

        logger.info("tool_started", tool=tool, timeout=timeout)

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise TranscoderError(f"{tool} timeout after {timeout:.0f}s") from e
        except FileNotFoundError as e:
            raise TranscoderError(f"{tool} not installed: {cmd[0]}") from e

        if result.returncode != 0:
            logger.error("tool_failed", tool=tool, returncode=result.returncode, stderr=(result.stderr or "")[:500])
            raise TranscoderError(f"{tool} failed with code {result.returncode}: {(result.stderr or '').strip()[:500]}")

        logger.info("tool_completed", tool=tool)
        return result

    def render_pdf_pages(self, pdf_path: str, output_dir: str, context: JobContext,
                         first_page: int = 1, last_page: int | None = None, width: int | None = None) -> list[Path]:
        """
        Rasterize a page range of a PDF to PNG files.
        Command: pdftoppm -png -f 1 -l 3 -scale-to-x 800 -scale-to-y -1 {pdf} {output_dir}/page
        """
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        cmd = [
            settings.pdftoppm_bin, "-png",
            "-f", str(first_page),
            "-l", str(last_page or settings.pdf_preview_pages),
            "-scale-to-x", str(width or settings.pdf_preview_width),
            "-scale-to-y", "-1",
            pdf_path,
            str(output_path / "page"),
        ]
        self.run("pdftoppm", cmd, context)

        pages = sorted(output_path.glob("page*.png"), key=_page_number)
        logger.info("pdf_rendered", page_count=len(pages))
        return pages

    def clip_video(self, video_path: str, output_path: str, label: str, context: JobContext) -> Path:
        """Cut the opening seconds, downscale, re-encode and burn in ``label``."""
        output_dir = Path(output_path).parent
        output_dir.mkdir(parents=True, exist_ok=True)

        # Read from a file so the label text never goes through filter escaping
        label_file = output_dir / "drawtext.txt"
        label_file.write_text(label, encoding="utf-8")

        drawtext = (
            f"drawtext=textfile={_escape_filter_value(str(label_file))}:expansion=none"
            ":fontcolor=white:fontsize=24:box=1:boxcolor=black@0.5:boxborderw=5"
            ":x=(w-text_w)/2:y=h-th-10"
        )
        cmd = [
            settings.ffmpeg_bin, "-i", video_path,
            "-t", str(settings.video_clip_seconds),
            "-vf", f"scale={settings.video_width}:{settings.video_height},{drawtext}",
            "-c:v", "libx264",
            "-c:a", "aac",
            "-b:v", settings.video_bitrate,
            "-y", output_path,
        ]
        self.run("ffmpeg", cmd, context)
        return Path(output_path)

    def convert_to_pdf(self, source_path: str, output_dir: str, context: JobContext) -> Path | None:
        """Convert an office document with headless LibreOffice. Returns None when no PDF appears."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        cmd = [
            settings.libreoffice_bin, "--headless",
            "--convert-to", "pdf",
            "--outdir", str(output_path),
            source_path,
        ]
        self.run("libreoffice", cmd, context)

        return next(iter(sorted(output_path.glob("*.pdf"))), None)


def _page_number(path: Path) -> int:
    digits = "".join(ch for ch in path.stem if ch.isdigit())
    return int(digits) if digits else 0


def _escape_filter_value(value: str) -> str:
    # Option value level first, then filtergraph level
    for special in "\\':":
        value = value.replace(special, "\\" + special)
    for special in "\\'[],;":
        value = value.replace(special, "\\" + special)
    return value
