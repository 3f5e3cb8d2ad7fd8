"""
Gemini REST integration.

Video analysis is a two-phase protocol: a resumable upload to the File API
(negotiate, then transfer the bytes in one finalized request), followed by a
`generateContent` call that references the uploaded file.
"""

import logging
import time
from typing import List, Optional

import requests

from vync.config import (
    GEMINI_API_BASE,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    GEMINI_TIMEOUT,
    GEMINI_UPLOAD_URL,
)
from vync.core.errors import (
    EmptyResponseError,
    GenerationError,
    MissingFileUriError,
    UploadInitError,
    UploadTransferError,
)

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are a video intelligence engine. Analyze this video and return a single JSON object (no markdown, no code fence) with this exact structure:

{
  "summary": "2-4 sentence summary of the video content and structure.",
  "chapters": [
    { "title": "Chapter title", "start_seconds": 0, "end_seconds": 60 }
  ],
  "thought_trace": [
    "Step 1 of your reasoning...",
    "Step 2..."
  ],
  "key_insights": [
    { "timestamp": 0, "importance": 8, "text": "Key insight description." }
  ],
  "timeline_data": [
    { "position": 10, "label": "Event label", "type": "primary" }
  ],
  "diagram_data": [
    { "time_seconds": 0, "label": "Phase or event", "description": "Short description." }
  ]
}

Rules:
- summary: main text summary. chapters: title, start_seconds, end_seconds (optional). thought_trace: 4-8 reasoning steps.
- key_insights: 3-6 items. Each must be an object with "timestamp" (seconds, number), "importance" (1-10, number), and "text" (string).
- timeline_data: for Intelligence Timeline. 4-8 items. Each: "position" (0-100, number = % through video), "label" (string), "type" ("primary" | "warning" | "accent").
- diagram_data: for Temporal Flow Diagram. 3-8 items. Each: "time_seconds" (number), "label" (string), "description" (string).

Return only the JSON object."""

CHAT_PROMPT = (
    "You are Vync AI. Answer the user's question based ONLY on the provided video "
    "analysis data. If the data doesn't mention the answer, say you need more visual "
    "reasoning time."
)

ERROR_BODY_CHARS = 500
FILE_POLL_INTERVAL = 2.0


def _candidate_text(data: dict) -> str:
    try:
        return (data["candidates"][0]["content"]["parts"][0].get("text") or "").strip()
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


class GeminiClient:
    """Thin wrapper around the Gemini File API and generateContent."""

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        timeout: float = GEMINI_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def close(self):
        self.session.close()

    @property
    def generate_url(self) -> str:
        return f"{GEMINI_API_BASE}/models/{self.model}:generateContent"

    def _params(self) -> dict:
        return {"key": self.api_key}

    # -- upload --------------------------------------------------------------

    def start_resumable_upload(self, size_bytes: int, mime_type: str, display_name: str) -> str:
        """Negotiate a resumable upload. Returns the upload URL."""
        try:
            resp = self.session.post(
                GEMINI_UPLOAD_URL,
                params=self._params(),
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(size_bytes),
                    "X-Goog-Upload-Header-Content-Type": mime_type,
                    "Content-Type": "application/json",
                },
                json={"file": {"display_name": display_name}},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise UploadInitError(detail=str(e)) from e

        upload_url = resp.headers.get("x-goog-upload-url")
        if not upload_url:
            body = resp.text[:ERROR_BODY_CHARS] if resp.text else "No response body"
            raise UploadInitError(detail=f"No upload URL from Gemini ({resp.status_code}): {body}")
        return upload_url

    def upload_bytes(self, upload_url: str, data: bytes) -> str:
        """Transfer the whole payload in one finalized request. Returns the file URI."""
        try:
            resp = self.session.post(
                upload_url,
                headers={
                    "Content-Length": str(len(data)),
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                data=data,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise UploadTransferError(detail=str(e)) from e

        if not resp.ok:
            body = resp.text[:ERROR_BODY_CHARS] if resp.text else "No response body"
            raise UploadTransferError(detail=f"Upload failed ({resp.status_code}): {body}")

        try:
            file_info = resp.json()
        except ValueError as e:
            raise MissingFileUriError(detail="Upload response is not JSON") from e

        file_uri = ((file_info or {}).get("file") or {}).get("uri")
        if not file_uri:
            raise MissingFileUriError(detail="No file URI from Gemini response")
        return file_uri

    def wait_until_active(self, file_uri: str, timeout: float = 120.0) -> None:
        """
        Wait for an uploaded video to leave the PROCESSING state; generation
        rejects files that are not ACTIVE yet.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                resp = self.session.get(file_uri, params=self._params(), timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                raise UploadTransferError(detail=f"File status check failed: {e}") from e
            if not resp.ok:
                raise UploadTransferError(
                    detail=f"File status check failed ({resp.status_code}): "
                           f"{resp.text[:ERROR_BODY_CHARS]}"
                )

            try:
                state = (resp.json() or {}).get("state", "ACTIVE")
            except ValueError as e:
                raise UploadTransferError(detail="File status response is not JSON") from e
            if state == "ACTIVE":
                return
            if state == "FAILED":
                raise UploadTransferError(detail="Gemini could not process the uploaded file")
            if time.monotonic() >= deadline:
                raise UploadTransferError(detail=f"File still {state} after {timeout:.0f}s")

            logger.info(f"Waiting for Gemini file {file_uri} ({state})")
            time.sleep(FILE_POLL_INTERVAL)

    # -- generation ----------------------------------------------------------

    def _generate(self, body: dict) -> str:
        try:
            resp = self.session.post(
                self.generate_url,
                params=self._params(),
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise GenerationError(detail=str(e)) from e

        if not resp.ok:
            error_body = resp.text[:ERROR_BODY_CHARS] if resp.text else "No response body"
            raise GenerationError(detail=f"Gemini returned {resp.status_code}: {error_body}")

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError(detail="Failed to parse Gemini response JSON") from e
        return _candidate_text(data)

    def generate(self, file_uri: str, mime_type: str, prompt: str = ANALYSIS_PROMPT) -> str:
        """Run the analysis prompt against an uploaded file. Returns the raw text."""
        text = self._generate({
            "contents": [{
                "parts": [
                    {"file_data": {"file_uri": file_uri, "mime_type": mime_type}},
                    {"text": prompt},
                ],
            }],
            "generationConfig": {
                "temperature": 0.2,
                "maxOutputTokens": 8192,
                "responseMimeType": "application/json",
            },
        })
        if not text:
            raise EmptyResponseError(detail="Empty response from Gemini")
        return text

    def chat(self, question: str, summary: str, thought_trace: List) -> str:
        """Answer a question using only a stored analysis as context."""
        context = "\n".join([
            "--- Video analysis ---",
            "Summary: " + summary,
            "Thought trace:",
            *[f"{i + 1}. {step}" for i, step in enumerate(thought_trace)],
            "--- End of analysis ---",
        ])
        text = self._generate({
            "systemInstruction": {
                "parts": [{"text": f"{CHAT_PROMPT}\n\nUse this video analysis data only:\n{context}"}],
            },
            "contents": [{"role": "user", "parts": [{"text": question}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 1024},
        })
        return text or "I couldn't generate a reply. Please try again."
