"""
Pydantic schemas for the video job API.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from vync.db.models import VideoStatus


class TriggerRecord(BaseModel):
    id: Optional[str] = None


class TriggerPayload(BaseModel):
    """Analysis trigger: a store webhook (`record`) or a direct call (`video_id`)."""
    type: Optional[str] = None
    table: Optional[str] = None
    record: Optional[TriggerRecord] = None
    video_id: Optional[str] = None


class VideoResponse(BaseModel):
    """Full job info."""
    id: UUID
    storage_path: str
    file_name: Optional[str]
    status: VideoStatus
    error_message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ChatRequest(BaseModel):
    question: str = ""


class ChatResponse(BaseModel):
    reply: str
