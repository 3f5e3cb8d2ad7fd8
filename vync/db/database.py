"""
PostgreSQL database connection using SQLAlchemy.
Uses PostgreSQL's LISTEN/NOTIFY to announce job and analysis changes.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from vync.config import DATABASE_URL, NOTIFY_CHANNEL

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# NOTIFY payloads are capped at 8000 bytes; large analysis rows are sent
# with their keys only and listeners re-read them.
NOTIFY_TRIGGER_FUNCTION = f"""
    CREATE OR REPLACE FUNCTION notify_vync_change()
    RETURNS TRIGGER AS $$
    DECLARE
        payload TEXT;
    BEGIN
        payload := json_build_object(
            'table', TG_TABLE_NAME, 'type', TG_OP, 'record', row_to_json(NEW)
        )::text;
        IF octet_length(payload) > 7900 THEN
            payload := json_build_object(
                'table', TG_TABLE_NAME,
                'type', TG_OP,
                'record', (
                    SELECT json_object_agg(key, value)
                    FROM json_each(row_to_json(NEW))
                    WHERE key IN ('id', 'video_id', 'status')
                )
            )::text;
        END IF;
        PERFORM pg_notify('{NOTIFY_CHANNEL}', payload);
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
"""


def get_db():
    """Dependency for FastAPI endpoints."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _create_trigger(conn, name: str, table: str, timing: str, function: str):
    from sqlalchemy import text

    conn.execute(text(f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1 FROM pg_trigger WHERE tgname = '{name}'
            ) THEN
                CREATE TRIGGER {name}
                {timing} ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION {function}();
            END IF;
        END $$;
    """))


def init_db(bind=None):
    """Create all tables, plus the PostgreSQL triggers."""
    from vync.db.models import Video, VideoAnalysis  # noqa: F401
    from sqlalchemy import text

    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    # Triggers and NOTIFY are PostgreSQL only; other databases poll.
    if bind.dialect.name != "postgresql":
        return

    with bind.connect() as conn:
        # Automatic updated_at (ON UPDATE behavior)
        conn.execute(text("""
            CREATE OR REPLACE FUNCTION update_modified_column()
            RETURNS TRIGGER AS $$
            BEGIN
                NEW.updated_at = NOW();
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
        """))
        _create_trigger(conn, "set_video_timestamp", "videos",
                        "BEFORE UPDATE", "update_modified_column")

        # Change feed for the dispatcher and status clients
        conn.execute(text(NOTIFY_TRIGGER_FUNCTION))
        _create_trigger(conn, "notify_video_change", "videos",
                        "AFTER INSERT OR UPDATE", "notify_vync_change")
        _create_trigger(conn, "notify_analysis_change", "video_analyses",
                        "AFTER INSERT OR UPDATE", "notify_vync_change")
        conn.commit()
