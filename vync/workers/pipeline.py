"""
Analysis pipeline - moves one video job through upload → inference → persistence.

Invoked once per new job, either by the store's change notification
(`{"record": {"id": ...}}`) or directly (`{"video_id": ...}`). Delivery is
at-least-once: every step after the status write is safe to repeat.

    uploading → processing → completed
                           ↘ failed (download, upload, analysis or save error)
"""

import json
import logging
import time
from typing import Optional, Union

from pydantic import ValidationError

from vync.core.analysis import parse_analysis
from vync.core.errors import BadRequestError, ConfigurationError, NotFoundError, VyncError
from vync.core.gemini import GeminiClient
from vync.core.storage import VideoStorage
from vync.db.models import VideoStatus
from vync.db.store import JobStore
from vync.schemas.video import TriggerPayload

logger = logging.getLogger(__name__)

FILE_ACTIVE_TIMEOUT = 120.0


def resolve_video_id(body: Union[bytes, str, dict]) -> str:
    """
    Pull the job id out of a trigger body. Raises BadRequestError if the body
    is not JSON or names no job.
    """
    try:
        if isinstance(body, dict):
            payload = TriggerPayload.model_validate(body)
        else:
            payload = TriggerPayload.model_validate_json(body)
    except (ValidationError, ValueError) as e:
        raise BadRequestError("Invalid JSON body") from e

    if payload.record is not None and payload.record.id:
        video_id = str(payload.record.id).strip()
    elif payload.video_id:
        video_id = str(payload.video_id).strip()
    else:
        video_id = ""
    if not video_id:
        raise BadRequestError("Missing video_id or webhook record")
    return video_id


class AnalysisPipeline:
    """Runs one job start-to-finish. No internal concurrency, no retries."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        gemini: Optional[GeminiClient] = None,
        storage: Optional[VideoStorage] = None,
    ):
        self.store = store or JobStore()
        self.gemini = gemini or GeminiClient()
        self.storage = storage or VideoStorage()

    def handle(self, body: Union[bytes, str, dict]) -> dict:
        """Entry point for trigger bodies."""
        return self.run(resolve_video_id(body))

    def run(self, video_id: str) -> dict:
        """
        Analyze one job. Returns the success response body; raises a
        VyncError (carrying the HTTP status) on failure, after recording the
        failure on the job.
        """
        start_time = time.monotonic()
        logger.info(f"[{video_id}] Starting analysis")

        if not self.gemini.api_key:
            logger.error(f"[{video_id}] GEMINI_API_KEY not configured")
            raise ConfigurationError()

        # Step 1: Resolve job
        video = self.store.get_job(video_id)
        if video is None or not video.storage_path:
            logger.error(f"[{video_id}] Video not found or no storage_path")
            raise NotFoundError()

        if video.status.terminal:
            logger.info(f"[{video_id}] Already {video.status.value}, nothing to do")
            return self._skipped(video_id, video.status)

        # Step 2: Mark processing
        if not self.store.update_job_status(video_id, VideoStatus.PROCESSING):
            # Another invocation finished the job since step 1
            latest = self.store.get_job(video_id)
            logger.info(f"[{video_id}] Finished elsewhere, nothing to do")
            return self._skipped(video_id, latest.status if latest else VideoStatus.FAILED)

        try:
            fields = self._analyze(video_id, video.storage_path)

            # Step 6: Persist
            logger.info(f"[{video_id}] Saving analysis to database")
            self.store.upsert_analysis(video_id, fields)

            # Step 7: Finalize
            self.store.update_job_status(video_id, VideoStatus.COMPLETED)
        except VyncError as e:
            logger.error(f"[{video_id}] {e.job_message}: {e}")
            self._mark_failed(video_id, e.job_message)
            raise
        except Exception as e:
            logger.error(f"[{video_id}] Analysis failed unexpectedly: {e}", exc_info=True)
            self._mark_failed(video_id, VyncError.job_message)
            raise

        duration = round(time.monotonic() - start_time, 2)
        logger.info(f"[{video_id}] Analysis complete in {duration}s")
        return {"ok": True, "video_id": video_id, "duration": duration}

    def _skipped(self, video_id: str, status: VideoStatus) -> dict:
        return {"ok": True, "video_id": video_id, "status": status.value, "skipped": True}

    def _analyze(self, video_id: str, storage_path: str) -> dict:
        # Step 3: Fetch binary
        logger.info(f"[{video_id}] Downloading video from storage: {storage_path}")
        data, mime_type = self.storage.fetch(storage_path)
        logger.info(f"[{video_id}] Video size: {len(data) / 1024 / 1024:.2f} MB ({mime_type})")

        # Step 4: Upload to Gemini
        logger.info(f"[{video_id}] Uploading to Gemini File API")
        upload_url = self.gemini.start_resumable_upload(
            len(data), mime_type, f"vync_{storage_path}"
        )
        file_uri = self.gemini.upload_bytes(upload_url, data)
        self.gemini.wait_until_active(file_uri, timeout=FILE_ACTIVE_TIMEOUT)
        logger.info(f"[{video_id}] Uploaded to Gemini: {file_uri}")

        # Step 5: Generate analysis
        logger.info(f"[{video_id}] Requesting Gemini analysis")
        raw_text = self.gemini.generate(file_uri, mime_type)
        logger.info(f"[{video_id}] Gemini response received ({len(raw_text)} chars)")
        fields = parse_analysis(raw_text)
        logger.info(
            f"[{video_id}] Analysis parsed: "
            + json.dumps({k: len(v) for k, v in fields.items() if isinstance(v, list)})
        )
        return fields

    def _mark_failed(self, video_id: str, message: str):
        try:
            self.store.update_job_status(video_id, VideoStatus.FAILED, message)
        except VyncError as e:
            # The original failure is what the caller needs to see
            logger.error(f"[{video_id}] Could not record failure: {e}")
