"""
Tests for the status synchronization client: push/pull convergence,
timeout, failure detection, fallback and teardown.
"""

import asyncio
import threading
import unittest
from types import SimpleNamespace

from vync.client.sync import (
    PROGRESS_STEPS,
    StatusSynchronizer,
    SyncConfig,
    SyncState,
)
from vync.core.errors import SchemaDriftError, StoreError
from vync.db import VideoStatus
from vync.db.notify import ChangeEvent, ChangeFeed
from vync.schemas import AnalysisRecord

VIDEO_ID = "0b7c6a8e-1f8e-4c55-9d3a-7f3c2f0d9a11"
OTHER_ID = "5e2d1c3b-8a7f-4e6d-b5c4-a3b2c1d0e9f8"


class FakeStore:
    """Counts reads; results are set by the test."""

    def __init__(self):
        self.analysis = None
        self.latest = None
        self.job = SimpleNamespace(status=VideoStatus.PROCESSING, error_message=None)
        self.errors = []
        self.calls = []
        self._lock = threading.Lock()

    def _call(self, name):
        with self._lock:
            self.calls.append(name)
            if self.errors:
                raise self.errors.pop(0)

    def count(self, name):
        with self._lock:
            return self.calls.count(name)

    def get_analysis(self, video_id):
        self._call("get_analysis")
        return self.analysis

    def get_job(self, video_id):
        self._call("get_job")
        return self.job

    def get_latest_analysis(self):
        self._call("get_latest_analysis")
        return self.latest


def fast_config(**overrides):
    config = dict(
        poll_interval=0.01,
        early_poll_delay=0.005,
        step_interval=0.5,
        timeout=1.0,
        fallback_after=3,
        allow_fallback=False,
    )
    config.update(overrides)
    return SyncConfig(**config)


def analysis_event(**record):
    return ChangeEvent(table="video_analyses", type="INSERT", record=record)


def video_event(**record):
    return ChangeEvent(table="videos", type="UPDATE", record=record)


class SyncTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = FakeStore()
        self.feed = ChangeFeed()
        self.views = []

    def synchronizer(self, **config):
        return StatusSynchronizer(self.store, self.feed, fast_config(**config),
                                  listener=self.views.append)

    def settled_views(self):
        return [v for v in self.views if v.settled]

    async def follow(self, sync, video_id=VIDEO_ID, timeout=2.0):
        return await asyncio.wait_for(sync.follow(video_id), timeout)


class TestConvergence(SyncTestCase):

    async def test_ready_from_pull(self):
        self.store.analysis = AnalysisRecord(video_id=VIDEO_ID, summary="pulled")
        sync = self.synchronizer()

        view = await self.follow(sync)
        self.assertEqual(view.state, SyncState.READY)
        self.assertEqual(view.record.summary, "pulled")
        self.assertIsNone(view.fallback_video_id)
        self.assertFalse(sync.session.active)
        self.assertEqual(self.feed.subscriber_count, 0)

    async def test_ready_from_push(self):
        sync = self.synchronizer(early_poll_delay=1.0, poll_interval=1.0)
        session = sync.watch(VIDEO_ID)

        self.feed.publish(analysis_event(id="a1", video_id=VIDEO_ID, summary="pushed",
                                         key_insights=[{"timestamp": 4, "importance": 7,
                                                        "text": "k"}]))
        view = await asyncio.wait_for(session.wait(), 1.0)
        self.assertEqual(view.state, SyncState.READY)
        self.assertEqual(view.record.summary, "pushed")
        self.assertEqual(view.record.key_insights[0].timestamp, 4)
        self.assertFalse(session.active)

    async def test_push_for_other_video_is_ignored(self):
        sync = self.synchronizer(timeout=0.1)
        session = sync.watch(VIDEO_ID)
        self.feed.publish(analysis_event(id="a1", video_id=OTHER_ID, summary="other"))
        self.feed.publish(video_event(id=OTHER_ID, status="failed"))

        view = await asyncio.wait_for(session.wait(), 1.0)
        self.assertEqual(view.state, SyncState.ERROR)

    async def test_push_and_poll_settle_once(self):
        self.store.analysis = AnalysisRecord(video_id=VIDEO_ID, summary="pulled")
        sync = self.synchronizer()
        session = sync.watch(VIDEO_ID)
        self.feed.publish(analysis_event(id="a1", video_id=VIDEO_ID, summary="pushed"))

        await asyncio.wait_for(session.wait(), 1.0)
        await asyncio.sleep(0.05)
        self.feed.publish(analysis_event(id="a1", video_id=VIDEO_ID, summary="again"))

        settled = self.settled_views()
        self.assertEqual(len(settled), 1)
        self.assertEqual(settled[0].state, SyncState.READY)
        self.assertEqual(session.view.record.summary, "pushed")

        # Teardown already happened; closing again is harmless
        session.close()
        sync.close()

    async def test_truncated_push_pulls_record(self):
        sync = self.synchronizer(early_poll_delay=5.0, poll_interval=5.0)
        session = sync.watch(VIDEO_ID)
        await asyncio.sleep(0.05)
        self.assertEqual(self.store.count("get_analysis"), 1)

        self.store.analysis = AnalysisRecord(video_id=VIDEO_ID, summary="from store")
        self.feed.publish(analysis_event(id="a1", video_id=VIDEO_ID))

        view = await asyncio.wait_for(session.wait(), 1.0)
        self.assertEqual(view.record.summary, "from store")
        self.assertEqual(self.store.count("get_analysis"), 2)

    async def test_completed_status_push_pulls_record(self):
        sync = self.synchronizer(early_poll_delay=5.0, poll_interval=5.0)
        session = sync.watch(VIDEO_ID)
        await asyncio.sleep(0.05)

        self.store.analysis = AnalysisRecord(video_id=VIDEO_ID, summary="done")
        self.feed.publish(video_event(id=VIDEO_ID, status="completed"))

        view = await asyncio.wait_for(session.wait(), 1.0)
        self.assertEqual(view.state, SyncState.READY)
        self.assertEqual(view.job_status, "completed")


class TestFailure(SyncTestCase):

    async def test_failed_from_pull(self):
        self.store.job = SimpleNamespace(status=VideoStatus.FAILED,
                                         error_message="Gemini analysis failed")
        view = await self.follow(self.synchronizer())
        self.assertEqual(view.state, SyncState.FAILED)
        self.assertEqual(view.reason, "Gemini analysis failed")
        self.assertEqual(self.store.count("get_latest_analysis"), 0)

    async def test_failed_push_stops_polling(self):
        sync = self.synchronizer()
        session = sync.watch(VIDEO_ID)
        self.feed.publish(video_event(id=VIDEO_ID, status="failed",
                                      error_message="Failed to download video"))

        view = await asyncio.wait_for(session.wait(), 1.0)
        self.assertEqual(view.state, SyncState.FAILED)
        self.assertEqual(view.reason, "Failed to download video")

        await asyncio.sleep(0.1)
        self.assertEqual(self.store.calls, [])
        self.assertEqual(session.pull_count, 0)
        self.assertFalse(session.active)

    async def test_status_update_without_failure_keeps_pending(self):
        sync = self.synchronizer(timeout=0.1)
        session = sync.watch(VIDEO_ID)
        self.feed.publish(video_event(id=VIDEO_ID, status="processing"))
        self.assertEqual(session.view.state, SyncState.PENDING)
        self.assertEqual(session.view.job_status, "processing")
        await asyncio.wait_for(session.wait(), 1.0)

    async def test_timeout(self):
        sync = self.synchronizer(timeout=0.1)
        view = await self.follow(sync)
        self.assertEqual(view.state, SyncState.ERROR)
        self.assertEqual(view.reason, "timeout")

        pulls = sync.session.pull_count
        self.assertGreater(pulls, 1)
        await asyncio.sleep(0.1)
        self.assertEqual(sync.session.pull_count, pulls)
        self.assertEqual(len(self.settled_views()), 1)
        self.assertFalse(sync.session.active)
        self.assertEqual(self.feed.subscriber_count, 0)

    async def test_schema_drift_is_soft(self):
        self.store.errors = [SchemaDriftError(), SchemaDriftError()]
        self.store.analysis = AnalysisRecord(video_id=VIDEO_ID, summary="after fix")

        view = await self.follow(self.synchronizer())
        self.assertEqual(view.state, SyncState.READY)
        self.assertEqual(view.record.summary, "after fix")
        self.assertEqual(self.store.count("get_analysis"), 3)

    async def test_hard_error(self):
        self.store.errors = [StoreError(detail="connection refused")]

        view = await self.follow(self.synchronizer())
        self.assertEqual(view.state, SyncState.ERROR)
        self.assertIn("connection refused", view.reason)
        self.assertEqual(self.store.count("get_analysis"), 1)


class TestFallback(SyncTestCase):

    async def test_adopts_latest_after_empty_pulls(self):
        self.store.latest = AnalysisRecord(video_id=OTHER_ID, summary="latest")
        sync = self.synchronizer(allow_fallback=True, fallback_after=2)

        view = await self.follow(sync)
        self.assertEqual(view.state, SyncState.READY)
        self.assertEqual(view.fallback_video_id, OTHER_ID)
        self.assertEqual(view.record.summary, "latest")
        self.assertEqual(self.store.count("get_job"), 3)
        self.assertEqual(self.store.count("get_latest_analysis"), 1)

    async def test_latest_for_same_video_is_not_a_substitution(self):
        self.store.latest = AnalysisRecord(video_id=VIDEO_ID, summary="mine")
        view = await self.follow(self.synchronizer(allow_fallback=True, fallback_after=1))
        self.assertEqual(view.state, SyncState.READY)
        self.assertIsNone(view.fallback_video_id)

    async def test_fallback_never_overrides_failure(self):
        self.store.latest = AnalysisRecord(video_id=OTHER_ID, summary="latest")
        self.store.job = SimpleNamespace(status=VideoStatus.FAILED, error_message=None)

        view = await self.follow(self.synchronizer(allow_fallback=True, fallback_after=0))
        self.assertEqual(view.state, SyncState.FAILED)
        self.assertEqual(view.reason, "Analysis failed")
        self.assertEqual(self.store.count("get_latest_analysis"), 0)

    async def test_disabled(self):
        self.store.latest = AnalysisRecord(video_id=OTHER_ID, summary="latest")
        view = await self.follow(self.synchronizer(timeout=0.1))
        self.assertEqual(view.state, SyncState.ERROR)
        self.assertEqual(self.store.count("get_latest_analysis"), 0)


class TestLifecycle(SyncTestCase):

    async def test_watch_switch_tears_down_previous(self):
        sync = self.synchronizer()
        first = sync.watch(VIDEO_ID)
        second = sync.watch(OTHER_ID)

        self.assertFalse(first.active)
        self.assertTrue(second.active)
        self.assertEqual(self.feed.subscriber_count, 2)
        with self.assertRaises(asyncio.CancelledError):
            await first.wait()

        # Events for the old job no longer reach anyone
        self.feed.publish(video_event(id=VIDEO_ID, status="failed"))
        self.assertEqual(first.view.state, SyncState.PENDING)
        sync.close()
        self.assertEqual(self.feed.subscriber_count, 0)

    async def test_progress_steps(self):
        sync = self.synchronizer(step_interval=0.02, timeout=0.2)
        view = await self.follow(sync)

        steps = [v.step for v in self.views if not v.settled]
        self.assertEqual(sorted(set(steps)), list(range(len(PROGRESS_STEPS))))
        self.assertEqual(view.state, SyncState.ERROR)
        self.assertEqual(view.step_label, PROGRESS_STEPS[-1])


if __name__ == "__main__":
    unittest.main()
