"""
Shared fixtures: an in-memory job store and canned Gemini responses.
"""

import json

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vync.db import init_db

ANALYSIS_JSON = {
    "summary": "A walkthrough of a kitchen renovation.",
    "chapters": [{"title": "Demolition", "start_seconds": 0, "end_seconds": 60}],
    "thought_trace": ["Identify the setting", "Track the phases"],
    "key_insights": [
        {"timestamp": 12, "importance": 9, "text": "Cabinets removed"},
        "Tiles are reused",
    ],
    "timeline_data": [{"position": 10, "label": "Start", "type": "primary"}],
    "diagram_data": [{"time_seconds": 0, "label": "Demo", "description": "Walls come down"}],
}

ANALYSIS_TEXT = "```json\n" + json.dumps(ANALYSIS_JSON) + "\n```"


def make_session_factory(create_tables: bool = True) -> sessionmaker:
    """SQLite in memory, one shared connection so every session sees the same data."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    if create_tables:
        init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
