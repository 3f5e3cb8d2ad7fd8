"""
Analysis record schemas.
"""
from datetime import datetime
from typing import Any, List, Optional, Union

from pydantic import BaseModel, field_validator


class KeyInsight(BaseModel):
    timestamp: Union[int, float] = 0
    importance: Union[int, float] = 5
    text: str = ""


class AnalysisRecord(BaseModel):
    """
    Structured output of one analysis. Item shapes other than key insights
    are kept as Gemini returned them.
    """
    video_id: Optional[str] = None
    summary: str = ""
    thought_trace: List[Any] = []
    chapters: List[Any] = []
    key_insights: List[KeyInsight] = []
    timeline_data: List[Any] = []
    diagram_data: List[Any] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("video_id", mode="before")
    @classmethod
    def _video_id_as_str(cls, value):
        return None if value is None else str(value)
