"""
Database models: one video job row, at most one analysis row per job.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from vync.db.database import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class VideoStatus(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED)


TERMINAL_STATUSES = (VideoStatus.COMPLETED, VideoStatus.FAILED)


class Video(Base):
    """Job record - one row per uploaded video."""
    __tablename__ = "videos"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Path of the uploaded binary, relative to the shared uploads directory
    storage_path = Column(String(500), nullable=False)
    file_name = Column(String(255), nullable=True)

    # Status
    status = Column(
        Enum(
            VideoStatus,
            name="video_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=VideoStatus.UPLOADING,
        nullable=False,
    )
    error_message = Column(Text, nullable=True)  # Only set when failed

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class VideoAnalysis(Base):
    """Gemini analysis - written once per job by the pipeline's upsert."""
    __tablename__ = "video_analyses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    video_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    summary = Column(Text, default="", nullable=False)
    thought_trace = Column(JsonColumn, default=list, nullable=False)
    chapters = Column(JsonColumn, default=list, nullable=False)  # [{title, start_seconds, end_seconds?}]
    key_insights = Column(JsonColumn, default=list, nullable=False)  # [{timestamp, importance, text}]
    timeline_data = Column(JsonColumn, default=list, nullable=False)  # [{position, label, type}]
    diagram_data = Column(JsonColumn, default=list, nullable=False)  # [{time_seconds, label, description}]

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
