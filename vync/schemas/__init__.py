from vync.schemas.analysis import AnalysisRecord, KeyInsight
from vync.schemas.video import (
    ChatRequest,
    ChatResponse,
    TriggerPayload,
    TriggerRecord,
    VideoResponse,
)

__all__ = [
    "AnalysisRecord",
    "KeyInsight",
    "ChatRequest",
    "ChatResponse",
    "TriggerPayload",
    "TriggerRecord",
    "VideoResponse",
]
