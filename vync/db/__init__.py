from vync.db.database import Base, engine, get_db, init_db, SessionLocal
from vync.db.models import TERMINAL_STATUSES, Video, VideoAnalysis, VideoStatus

__all__ = [
    "Base",
    "engine",
    "get_db",
    "init_db",
    "SessionLocal",
    "TERMINAL_STATUSES",
    "Video",
    "VideoAnalysis",
    "VideoStatus",
]
