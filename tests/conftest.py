"""
Shared fixtures for preview worker tests.
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

# Set test environment before imports
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STORAGE_ENDPOINT"] = "http://localhost:9000"
os.environ["STORAGE_ACCESS_KEY"] = "minioadmin"
os.environ["STORAGE_SECRET_KEY"] = "minioadmin"
os.environ["ORIGINAL_BUCKET"] = "resources-original"
os.environ["PREVIEW_BUCKET"] = "resources-preview"

import pytest
from faker import Faker
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from preview_worker.models.base import Base
from preview_worker.models.job import JobStatus, PreviewJob
from preview_worker.models.resource import ModerationEntry, ProcessingStatus, Resource
from preview_worker.services.job_store import JobStore

fake = Faker()

PDF_BYTES = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 256


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory=session_factory, batch_size=5)


@pytest.fixture
def fetch(session_factory):
    """Load a fresh copy of a row, bypassing any cached session state."""

    def _fetch(model, pk):
        with session_factory() as db:
            return db.get(model, pk)

    return _fetch


# ============================================================================
# Job Fixtures
# ============================================================================


@pytest.fixture
def make_job(db_session: Session):
    """Create a resource, its moderation entry and a preview job."""
    base_time = datetime.now(timezone.utc) - timedelta(hours=1)
    counter = {"n": 0}

    def _make_job(mime_type: str = "application/pdf", status: JobStatus = JobStatus.QUEUED,
                  filename: str | None = None, with_moderation: bool = True) -> PreviewJob:
        counter["n"] += 1
        resource = Resource(id=uuid.uuid4(), processing_status=ProcessingStatus.QUEUED)
        db_session.add(resource)
        if with_moderation:
            db_session.add(ModerationEntry(resource_id=resource.id))

        filename = filename or fake.file_name(extension="pdf")
        job = PreviewJob(
            id=uuid.uuid4(),
            resource_id=resource.id,
            original_path=f"resources-original/{resource.id}/{filename}",
            mime_type=mime_type,
            status=status,
            created_at=base_time + timedelta(seconds=counter["n"]),
            updated_at=base_time + timedelta(seconds=counter["n"]),
        )
        db_session.add(job)
        db_session.commit()
        db_session.refresh(job)
        return job

    return _make_job


# ============================================================================
# File System Fixtures
# ============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_image(path: Path, size: tuple[int, int], color: str = "white") -> Path:
    Image.new("RGB", size, color).save(path)
    return path


@pytest.fixture
def image_file(temp_dir: Path):
    """Write a solid-colour image of the given size into temp_dir."""

    def _image_file(size: tuple[int, int], name: str = "source.png", color: str = "white") -> Path:
        return make_image(temp_dir / name, size, color)

    return _image_file


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_storage():
    """Storage double: downloads write ``source_bytes``, uploads land in ``uploads``."""
    storage = MagicMock()
    storage.source_bytes = PDF_BYTES
    storage.uploads = {}

    def _download_file(bucket, key, destination):
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        Path(destination).write_bytes(storage.source_bytes)
        return destination

    def _upload(bucket, key, data, content_type, upsert=True):
        storage.uploads[key] = {"bucket": bucket, "data": data, "content_type": content_type}
        return key

    def _list_keys(bucket, prefix):
        return sorted(key for key in storage.uploads if key.startswith(prefix))

    def _delete(bucket, keys):
        for key in keys:
            storage.uploads.pop(key, None)

    storage.download_file.side_effect = _download_file
    storage.upload.side_effect = _upload
    storage.list_keys.side_effect = _list_keys
    storage.delete.side_effect = _delete
    return storage


class FakeTools:
    """Stands in for pdftoppm, ffmpeg and libreoffice behind subprocess.run."""

    def __init__(self) -> None:
        self.pdf_pages = 5
        self.page_height_ratio = 1.294
        self.ffmpeg_returncode = 0
        self.libreoffice_returncode = 0
        self.libreoffice_creates_pdf = True
        self.calls: list[list[str]] = []

    def commands_for(self, tool: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if Path(cmd[0]).name == tool]

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        tool = Path(cmd[0]).name

        if tool == "pdftoppm":
            first = int(cmd[cmd.index("-f") + 1])
            last = int(cmd[cmd.index("-l") + 1])
            width = int(cmd[cmd.index("-scale-to-x") + 1])
            prefix = cmd[-1]
            for number in range(first, min(last, self.pdf_pages) + 1):
                make_image(Path(f"{prefix}-{number}.png"), (width, int(width * self.page_height_ratio)))
            return MagicMock(returncode=0, stderr="")

        if tool == "ffmpeg":
            if self.ffmpeg_returncode == 0:
                Path(cmd[-1]).write_bytes(MP4_BYTES)
                return MagicMock(returncode=0, stderr="")
            return MagicMock(returncode=self.ffmpeg_returncode, stderr="Invalid data found when processing input")

        if tool == "libreoffice":
            if self.libreoffice_returncode != 0:
                return MagicMock(returncode=self.libreoffice_returncode, stderr="Error: source file could not be loaded")
            if self.libreoffice_creates_pdf:
                outdir = Path(cmd[cmd.index("--outdir") + 1])
                (outdir / f"{Path(cmd[-1]).stem}.pdf").write_bytes(PDF_BYTES)
            return MagicMock(returncode=0, stderr="")

        raise AssertionError(f"unexpected command: {cmd}")


@pytest.fixture
def fake_tools():
    """Patch subprocess.run with FakeTools."""
    tools = FakeTools()
    with patch("subprocess.run", side_effect=tools):
        yield tools
