"""
Dispatcher - delivers new jobs to the analysis pipeline.

Waits on the store's change feed for newly inserted videos and invokes the
pipeline once per job, webhook style. Every idle wake-up also scans for jobs
still marked `uploading`, which covers notifications missed while the worker
was down. Delivery is at-least-once; the pipeline tolerates repeats.

Run with: python -m vync.workers.dispatcher

Environment Variables:
    DATABASE_URL: Job store (LISTEN/NOTIFY is used when it is PostgreSQL)
    GEMINI_API_KEY: Required when running the pipeline in-process
    ANALYSIS_TRIGGER_URL: If set, POST each job here instead of running it in-process
    POLL_INTERVAL: Seconds between catch-up scans (default: 2)
"""

import logging
import os
import sys
import time
from typing import Optional

import requests

from vync.config import (
    ANALYSIS_TRIGGER_URL,
    DATABASE_URL,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    POLL_INTERVAL,
    UPLOADS_PATH,
)
from vync.core.errors import VyncError
from vync.db import VideoStatus, engine, init_db
from vync.db.notify import ChangeEvent, PostgresChangeFeed
from vync.db.store import JobStore
from vync.workers.pipeline import AnalysisPipeline

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

TRIGGER_TIMEOUT = 15 * 60


class Dispatcher:
    def __init__(
        self,
        store: JobStore,
        pipeline: Optional[AnalysisPipeline] = None,
        trigger_url: str = ANALYSIS_TRIGGER_URL,
        feed: Optional[PostgresChangeFeed] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.trigger_url = trigger_url
        self.feed = feed

    def dispatch(self, video_id: str) -> bool:
        """Deliver one job. Returns True if the pipeline reported success."""
        body = {"record": {"id": video_id}}
        if self.trigger_url:
            try:
                resp = requests.post(self.trigger_url, json=body, timeout=TRIGGER_TIMEOUT)
            except requests.exceptions.RequestException as e:
                logger.error(f"[{video_id}] Trigger request failed: {e}")
                return False
            if resp.status_code != 200:
                logger.error(f"[{video_id}] Trigger returned {resp.status_code}: {resp.text[:300]}")
                return False
            return True

        try:
            self.pipeline.handle(body)
        except VyncError as e:
            # Failures past step 2 are already recorded on the job
            logger.error(f"[{video_id}] Dispatch failed ({e.status_code}): {e}")
            return False
        return True

    def new_video_ids(self, events) -> list:
        return [
            str(event.record.get("id"))
            for event in events
            if event.table == "videos"
            and event.type == "INSERT"
            and event.record.get("id")
        ]

    def pending_video_ids(self) -> list:
        return [str(video.id) for video in self.store.list_jobs(VideoStatus.UPLOADING)]

    def run_once(self, timeout: float = POLL_INTERVAL) -> int:
        """Wait for new jobs (or scan), dispatch them. Returns how many ran."""
        events = self.feed.wait(timeout) if self.feed is not None else []
        video_ids = self.new_video_ids(events)
        if not video_ids:
            if self.feed is None:
                time.sleep(timeout)
            video_ids = self.pending_video_ids()

        for video_id in video_ids:
            self.dispatch(video_id)
        return len(video_ids)


def on_change(event: ChangeEvent):
    logger.debug(f"Change: {event.type} {event.table} {event.record.get('id')}")


def verify_setup(trigger_url: str = ANALYSIS_TRIGGER_URL) -> bool:
    """Verify that all required components are in place."""
    errors = []

    if not trigger_url and not GEMINI_API_KEY:
        errors.append("GEMINI_API_KEY is not set")

    if not os.path.exists(UPLOADS_PATH):
        os.makedirs(UPLOADS_PATH, exist_ok=True)
        logger.info(f"Created directory: {UPLOADS_PATH}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main loop - wait for new jobs."""
    logger.info("=" * 60)
    logger.info("Analysis Dispatcher Starting")
    logger.info("=" * 60)
    logger.info("Configuration:")
    logger.info(f"  DATABASE: {engine.url.render_as_string(hide_password=True)}")
    logger.info(f"  UPLOADS_PATH: {UPLOADS_PATH}")
    logger.info(f"  GEMINI_MODEL: {GEMINI_MODEL}")
    logger.info(f"  TRIGGER: {ANALYSIS_TRIGGER_URL or 'in-process'}")
    logger.info(f"  POLL_INTERVAL: {POLL_INTERVAL}s")
    logger.info("=" * 60)

    if not verify_setup():
        logger.error("Setup verification failed! Fix the errors above and restart.")
        sys.exit(1)

    init_db()
    store = JobStore()

    feed = None
    if engine.dialect.name == "postgresql":
        feed = PostgresChangeFeed(DATABASE_URL)
        feed.subscribe("videos", on_change, events=("INSERT",))
    else:
        logger.info("Not PostgreSQL - polling only")

    dispatcher = Dispatcher(
        store,
        pipeline=None if ANALYSIS_TRIGGER_URL else AnalysisPipeline(store),
        feed=feed,
    )

    logger.info("Setup verified. Dispatcher ready, waiting for jobs...")
    while True:
        try:
            dispatcher.run_once()
        except Exception as e:
            logger.error(f"Dispatcher error: {e}", exc_info=True)
            if feed is not None:
                feed.close()
            time.sleep(POLL_INTERVAL)


if __name__ == "__main__":
    main()
