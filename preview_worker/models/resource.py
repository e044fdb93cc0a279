import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONList
from .job import _values


class ProcessingStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class Resource(Base):
    """Preview-related columns of the marketplace ``resources`` table.

    The table is owned by the upload flow; the worker only maps and writes
    the columns it is responsible for.
    """

    __tablename__ = "resources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        Enum(ProcessingStatus, native_enum=False, values_callable=_values, length=20),
        default=ProcessingStatus.QUEUED,
        nullable=False,
    )
    is_preview_ready: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    storage_path_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    scanner_flags: Mapped[list] = mapped_column(JSONList, default=list, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ModerationEntry(Base):
    __tablename__ = "moderation_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    flags: Mapped[list] = mapped_column(JSONList, default=list, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
