# Workers for processing jobs

from vync.workers.pipeline import AnalysisPipeline, resolve_video_id

__all__ = [
    "AnalysisPipeline",
    "resolve_video_id",
]
