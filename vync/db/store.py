"""
Job record store - the single source of truth shared by the pipeline and
the status clients.

Every call opens and closes its own session, so the store can be shared
across threads (the status client calls it from an executor).
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from vync.core.analysis import ARRAY_FIELDS, record_from_row
from vync.core.errors import (
    PersistenceError,
    SchemaDriftError,
    StatusUpdateError,
    StoreError,
)
from vync.db.database import SessionLocal
from vync.db.models import TERMINAL_STATUSES, Video, VideoAnalysis, VideoStatus
from vync.schemas.analysis import AnalysisRecord

logger = logging.getLogger(__name__)

# undefined_column, undefined_table
_SCHEMA_DRIFT_PGCODES = {"42703", "42P01"}
_SCHEMA_DRIFT_MESSAGES = ("no such column", "no such table")


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError):
        return None


def _is_schema_drift(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _SCHEMA_DRIFT_PGCODES:
        return True
    message = str(orig or exc).lower()
    return any(m in message for m in _SCHEMA_DRIFT_MESSAGES)


def _read_error(exc: SQLAlchemyError, what: str) -> StoreError:
    if _is_schema_drift(exc):
        return SchemaDriftError(detail=f"{what}: {exc}")
    return StoreError(detail=f"{what}: {exc}")


class JobStore:
    """Read, conditional update and upsert over `videos` / `video_analyses`."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    # -- jobs ----------------------------------------------------------------

    def create_job(self, storage_path: str, file_name: Optional[str] = None) -> Video:
        db = self.session_factory()
        try:
            video = Video(
                storage_path=storage_path,
                file_name=file_name,
                status=VideoStatus.UPLOADING,
            )
            db.add(video)
            db.commit()
            db.refresh(video)
            db.expunge(video)
            return video
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("Failed to create video", detail=str(e)) from e
        finally:
            db.close()

    def get_job(self, video_id) -> Optional[Video]:
        """Return the job, or None if the id is unknown or not a valid id."""
        key = _as_uuid(video_id)
        if key is None:
            return None
        db = self.session_factory()
        try:
            video = db.get(Video, key)
            if video is not None:
                db.expunge(video)
            return video
        except SQLAlchemyError as e:
            raise _read_error(e, "videos") from e
        finally:
            db.close()

    def list_jobs(self, status: VideoStatus, newest_first: bool = False) -> List[Video]:
        order = Video.created_at.desc() if newest_first else Video.created_at
        db = self.session_factory()
        try:
            videos = list(
                db.scalars(select(Video).where(Video.status == status).order_by(order))
            )
            db.expunge_all()
            return videos
        except SQLAlchemyError as e:
            raise _read_error(e, "videos") from e
        finally:
            db.close()

    def update_job_status(
        self, video_id, status: VideoStatus, error_message: Optional[str] = None
    ) -> bool:
        """
        Move a job to `status`. Terminal jobs are never touched, so a job
        that reached completed/failed keeps that status forever.

        Returns True if a row was updated.
        """
        key = _as_uuid(video_id)
        if key is None:
            return False
        db = self.session_factory()
        try:
            result = db.execute(
                update(Video)
                .where(Video.id == key)
                .where(Video.status.not_in(TERMINAL_STATUSES))
                .values(
                    status=status,
                    error_message=error_message if status == VideoStatus.FAILED else None,
                    updated_at=datetime.utcnow(),
                )
            )
            updated = result.rowcount > 0
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StatusUpdateError(detail=str(e)) from e
        finally:
            db.close()

        if updated:
            logger.info(f"Video {video_id} status: {status.value}")
        else:
            logger.info(f"Video {video_id} status unchanged (missing or terminal)")
        return updated

    # -- analyses ------------------------------------------------------------

    def upsert_analysis(self, video_id, fields: dict) -> None:
        """
        Insert the analysis for a job, replacing any existing row for it.
        Raises PersistenceError on failure.
        """
        key = _as_uuid(video_id)
        if key is None:
            raise PersistenceError(detail=f"Invalid video id: {video_id!r}")

        values = {"summary": fields.get("summary") or ""}
        for name in ARRAY_FIELDS:
            values[name] = fields.get(name) or []
        values["created_at"] = datetime.utcnow()

        db = self.session_factory()
        try:
            insert = _dialect_insert(db.get_bind().dialect.name)
            stmt = insert(VideoAnalysis.__table__).values(
                id=uuid.uuid4(), video_id=key, **values
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[VideoAnalysis.__table__.c.video_id],
                set_={name: stmt.excluded[name] for name in values},
            )
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(detail=str(e)) from e
        finally:
            db.close()

    def get_analysis(self, video_id) -> Optional[AnalysisRecord]:
        key = _as_uuid(video_id)
        if key is None:
            return None
        db = self.session_factory()
        try:
            row = db.scalars(
                select(VideoAnalysis).where(VideoAnalysis.video_id == key)
            ).first()
            return record_from_row(row)
        except SQLAlchemyError as e:
            raise _read_error(e, "video_analyses") from e
        finally:
            db.close()

    def get_latest_analysis(self) -> Optional[AnalysisRecord]:
        """Most recently written analysis across all jobs."""
        db = self.session_factory()
        try:
            row = db.scalars(
                select(VideoAnalysis).order_by(VideoAnalysis.created_at.desc()).limit(1)
            ).first()
            return record_from_row(row)
        except SQLAlchemyError as e:
            raise _read_error(e, "video_analyses") from e
        finally:
            db.close()


def _dialect_insert(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(detail=f"Upsert not supported on {dialect_name}")
    return insert
