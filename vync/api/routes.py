"""
Vync API - upload, analysis trigger, results and chat.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from vync.config import MAX_UPLOAD_BYTES
from vync.core.errors import VyncError
from vync.core.gemini import GeminiClient
from vync.core.storage import VideoStorage, is_video_type
from vync.db import Video, VideoStatus, get_db
from vync.db.store import JobStore
from vync.schemas import AnalysisRecord, ChatRequest, ChatResponse, VideoResponse
from vync.workers.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


def get_store() -> JobStore:
    return JobStore()


def get_storage() -> VideoStorage:
    return VideoStorage()


def get_gemini():
    gemini = GeminiClient()
    try:
        yield gemini
    finally:
        gemini.close()


def get_pipeline(
    store: JobStore = Depends(get_store),
    gemini: GeminiClient = Depends(get_gemini),
    storage: VideoStorage = Depends(get_storage),
) -> AnalysisPipeline:
    return AnalysisPipeline(store, gemini, storage)


@router.post("/analysis_trigger")
async def analysis_trigger(request: Request, pipeline: AnalysisPipeline = Depends(get_pipeline)):
    """
    Run the analysis pipeline for one job. Accepts the store's change
    notification (`{"record": {"id": ...}}`) or `{"video_id": ...}`.
    """
    body = await request.body()
    try:
        return await run_in_threadpool(pipeline.handle, body)
    except VyncError:
        raise
    except Exception as e:
        # Already marked failed by the pipeline
        raise VyncError(detail=str(e)) from e


@router.post("/videos", response_model=VideoResponse)
async def upload_video(
    file: UploadFile = File(...),
    store: JobStore = Depends(get_store),
    storage: VideoStorage = Depends(get_storage),
):
    """Upload a video. Creates the job; the dispatcher picks it up from there."""
    if not is_video_type(file.content_type, file.filename):
        raise HTTPException(status_code=400, detail="Only video files are accepted")

    content = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(content) > MAX_UPLOAD_BYTES:
        limit_mb = MAX_UPLOAD_BYTES // (1024 * 1024)
        raise HTTPException(status_code=413, detail=f"Video exceeds the {limit_mb} MB limit")

    storage_path = await run_in_threadpool(storage.save, content, file.filename)
    video = await run_in_threadpool(store.create_job, storage_path, file.filename)
    logger.info(f"[{video.id}] Uploaded {file.filename} ({len(content)} bytes)")
    return video


@router.get("/videos/{video_id}", response_model=VideoResponse)
def get_video(video_id: UUID, db: Session = Depends(get_db)):
    """Job details and status."""
    video = db.query(Video).filter(Video.id == video_id).first()
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


@router.get("/videos/{video_id}/analysis", response_model=AnalysisRecord)
def get_video_analysis(video_id: UUID, store: JobStore = Depends(get_store)):
    analysis = store.get_analysis(video_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return analysis


@router.get("/library", response_model=List[VideoResponse])
def get_library(db: Session = Depends(get_db)):
    """Analyzed videos, newest first."""
    return (
        db.query(Video)
        .filter(Video.status == VideoStatus.COMPLETED)
        .order_by(Video.created_at.desc())
        .all()
    )


@router.post("/videos/{video_id}/chat", response_model=ChatResponse)
def chat(
    video_id: UUID,
    data: ChatRequest,
    store: JobStore = Depends(get_store),
    gemini: GeminiClient = Depends(get_gemini),
):
    """Ask a question about an analyzed video."""
    question = data.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question is required")

    analysis = store.get_analysis(video_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")

    reply = gemini.chat(question, analysis.summary, analysis.thought_trace)
    return ChatResponse(reply=reply)
