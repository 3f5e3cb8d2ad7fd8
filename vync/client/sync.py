"""
Status synchronization client.

Follows one job until it settles, merging two unreliable sources:

* push: change-feed notifications for the job's analysis row and status;
* pull: a timed lookup of the analysis row (then the job status) in the store.

Whichever source first sees a terminal condition wins. Settling, `close()`
and switching jobs all tear down every timer, subscription and in-flight
pull at once, so no callback for a stale job can fire afterwards.

    pending ──▶ ready   (analysis row found, pushed, or fallback adopted)
            ├─▶ failed  (job status failed)
            └─▶ error   (timeout or store failure)

Everything runs on one asyncio loop. Store reads go through the default
executor because JobStore is blocking.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from vync.config import (
    SYNC_EARLY_POLL_DELAY,
    SYNC_FALLBACK_AFTER,
    SYNC_POLL_INTERVAL,
    SYNC_STEP_INTERVAL,
    SYNC_TIMEOUT,
)
from vync.core.analysis import is_complete_row, record_from_row
from vync.core.errors import SchemaDriftError, SyncTimeoutError
from vync.db.models import VideoStatus
from vync.db.notify import ChangeEvent, ChangeFeed, Subscription
from vync.db.store import JobStore
from vync.schemas.analysis import AnalysisRecord

logger = logging.getLogger(__name__)

PROGRESS_STEPS = (
    "Video secured in vault...",
    "Transferring to Gemini Engine...",
    "Performing High-Reasoning Scan...",
)

DEFAULT_FAILURE_REASON = "Analysis failed"


@dataclass
class SyncConfig:
    poll_interval: float = SYNC_POLL_INTERVAL
    early_poll_delay: float = SYNC_EARLY_POLL_DELAY
    step_interval: float = SYNC_STEP_INTERVAL
    timeout: float = SYNC_TIMEOUT
    fallback_after: int = SYNC_FALLBACK_AFTER
    allow_fallback: bool = True


class SyncState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    ERROR = "error"


@dataclass(frozen=True)
class SyncView:
    video_id: str
    state: SyncState = SyncState.PENDING
    step: int = 0
    record: Optional[AnalysisRecord] = None
    reason: Optional[str] = None
    # Set when `record` belongs to another job (latest-analysis fallback)
    fallback_video_id: Optional[str] = None
    job_status: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.state != SyncState.PENDING

    @property
    def step_label(self) -> str:
        return PROGRESS_STEPS[min(self.step, len(PROGRESS_STEPS) - 1)]


@dataclass
class _PullResult:
    record: Optional[AnalysisRecord] = None
    job_status: Optional[VideoStatus] = None
    error_message: Optional[str] = None
    latest: Optional[AnalysisRecord] = None


Listener = Callable[[SyncView], None]


class SyncSession:
    """One job's synchronization. Single use: create, `start()`, then `close()`."""

    def __init__(
        self,
        video_id: str,
        store: JobStore,
        feed: ChangeFeed,
        config: Optional[SyncConfig] = None,
        listener: Optional[Listener] = None,
    ):
        self.video_id = str(video_id)
        self.store = store
        self.feed = feed
        self.config = config or SyncConfig()
        self.listener = listener

        self.view = SyncView(video_id=self.video_id)
        self.settled = False
        self.closed = False
        self.pull_count = 0
        self._empty_pulls = 0
        self._repull = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done: Optional[asyncio.Future] = None
        self._subscriptions: List[Subscription] = []
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._progress_handle: Optional[asyncio.TimerHandle] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._pull_task: Optional[asyncio.Task] = None

    # -- lifecycle -----------------------------------------------------------

    def start(self):
        """Subscribe, issue the first pull and arm the timers. Needs a running loop."""
        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()

        self._subscriptions = [
            self.feed.subscribe(
                "video_analyses",
                self._on_analysis_event,
                events=("INSERT", "UPDATE"),
                match={"video_id": self.video_id},
            ),
            self.feed.subscribe(
                "videos",
                self._on_video_event,
                events=("UPDATE",),
                match={"id": self.video_id},
            ),
        ]

        self._pull_now()
        self._poll_handle = self._loop.call_later(self.config.early_poll_delay, self._tick)
        self._progress_handle = self._loop.call_later(
            self.config.step_interval, self._advance_step
        )
        self._timeout_handle = self._loop.call_later(self.config.timeout, self._on_timeout)

        logger.info(f"[{self.video_id}] Watching for analysis")
        self._emit()

    def close(self):
        """Stop everything without settling. Safe to call more than once."""
        if self.closed:
            return
        self._teardown()
        if self._done is not None and not self._done.done():
            self._done.cancel()

    async def wait(self) -> SyncView:
        """Wait for the settled view. Raises CancelledError if closed first."""
        return await asyncio.shield(self._done)

    @property
    def active(self) -> bool:
        """True while any timer, subscription or pull could still call back."""
        handles = (self._poll_handle, self._progress_handle, self._timeout_handle)
        return (
            any(h is not None and not h.cancelled() for h in handles)
            or any(s.active for s in self._subscriptions)
            or (self._pull_task is not None and not self._pull_task.done())
        )

    def _teardown(self):
        self.closed = True
        for handle in (self._poll_handle, self._progress_handle, self._timeout_handle):
            if handle is not None:
                handle.cancel()
        self._poll_handle = self._progress_handle = self._timeout_handle = None

        for subscription in self._subscriptions:
            subscription.unsubscribe()

        task = self._pull_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._pull_task = None

    # -- convergence ---------------------------------------------------------

    def _settle(self, state: SyncState, **changes):
        if self.settled or self.closed:
            return
        self.settled = True
        self._teardown()
        self.view = replace(self.view, state=state, **changes)

        if state == SyncState.READY and self.view.fallback_video_id:
            logger.warning(
                f"[{self.video_id}] Showing latest analysis of "
                f"{self.view.fallback_video_id} instead"
            )
        else:
            logger.info(f"[{self.video_id}] Settled: {state.value}"
                        + (f" ({self.view.reason})" if self.view.reason else ""))

        self._emit()
        if not self._done.done():
            self._done.set_result(self.view)

    def _emit(self):
        if self.listener is None:
            return
        try:
            self.listener(self.view)
        except Exception as e:
            logger.error(f"[{self.video_id}] Sync listener failed: {e}", exc_info=True)

    def _update(self, **changes):
        view = replace(self.view, **changes)
        if view != self.view:
            self.view = view
            self._emit()

    # -- push ----------------------------------------------------------------

    def _on_analysis_event(self, event: ChangeEvent):
        if self.settled or self.closed:
            return
        if not is_complete_row(event.record):
            # Payload was too large for NOTIFY; read the row instead
            logger.info(f"[{self.video_id}] Partial analysis notification, pulling")
            self._pull_now(queue=True)
            return
        record = record_from_row(event.record)
        if record is not None:
            self._settle(SyncState.READY, record=record)

    def _on_video_event(self, event: ChangeEvent):
        if self.settled or self.closed:
            return
        status = event.record.get("status")
        if status == VideoStatus.FAILED.value:
            self._settle(
                SyncState.FAILED,
                job_status=status,
                reason=event.record.get("error_message") or DEFAULT_FAILURE_REASON,
            )
        elif status == VideoStatus.COMPLETED.value:
            self._update(job_status=status)
            self._pull_now(queue=True)
        elif status:
            self._update(job_status=status)

    # -- pull ----------------------------------------------------------------

    def _tick(self):
        if self.settled or self.closed:
            return
        self._pull_now()
        self._poll_handle = self._loop.call_later(self.config.poll_interval, self._tick)

    def _pull_now(self, queue: bool = False):
        """Start a pull. If one is in flight, skip it, or with `queue` run one after."""
        if self.settled or self.closed:
            return
        if self._pull_task is not None and not self._pull_task.done():
            self._repull = self._repull or queue
            return
        self._repull = False
        self._pull_task = self._loop.create_task(self._pull())

    async def _pull(self):
        use_fallback = (
            self.config.allow_fallback
            and self._empty_pulls >= self.config.fallback_after
        )
        self.pull_count += 1
        try:
            result = await self._loop.run_in_executor(None, self._read, use_fallback)
        except SchemaDriftError as e:
            logger.warning(f"[{self.video_id}] Poll skipped, schema mismatch: {e}")
        except Exception as e:
            logger.error(f"[{self.video_id}] Poll failed: {e}")
            self._settle(SyncState.ERROR, reason=str(e))
            return
        else:
            if self.settled or self.closed:
                return
            self._apply(result)

        if self._repull and not (self.settled or self.closed):
            self._pull_task = None
            self._pull_now()

    def _read(self, use_fallback: bool) -> _PullResult:
        """Blocking store reads for one poll. Runs in the executor."""
        record = self.store.get_analysis(self.video_id)
        if record is not None:
            return _PullResult(record=record)

        result = _PullResult()
        job = self.store.get_job(self.video_id)
        if job is not None:
            result.job_status = job.status
            result.error_message = job.error_message
        if use_fallback and result.job_status != VideoStatus.FAILED:
            result.latest = self.store.get_latest_analysis()
        return result

    def _apply(self, result: _PullResult):
        if result.record is not None:
            self._settle(SyncState.READY, record=result.record)
            return

        status = result.job_status.value if result.job_status is not None else None
        if result.job_status == VideoStatus.FAILED:
            self._settle(
                SyncState.FAILED,
                job_status=status,
                reason=result.error_message or DEFAULT_FAILURE_REASON,
            )
            return

        latest = result.latest
        if latest is not None:
            if latest.video_id == self.video_id:
                self._settle(SyncState.READY, record=latest, job_status=status)
            else:
                self._settle(
                    SyncState.READY,
                    record=latest,
                    job_status=status,
                    fallback_video_id=latest.video_id,
                )
            return

        self._empty_pulls += 1
        self._update(job_status=status)

    # -- timers --------------------------------------------------------------

    def _advance_step(self):
        if self.settled or self.closed:
            return
        if self.view.step < len(PROGRESS_STEPS) - 1:
            self._update(step=self.view.step + 1)
            self._progress_handle = self._loop.call_later(
                self.config.step_interval, self._advance_step
            )
        else:
            self._progress_handle = None

    def _on_timeout(self):
        self._timeout_handle = None
        logger.warning(f"[{self.video_id}] No result after {self.config.timeout:.0f}s")
        self._settle(SyncState.ERROR, reason=SyncTimeoutError.error)


class StatusSynchronizer:
    """
    Watches one job at a time. `watch()` on a new id tears down the previous
    session before starting the next; nothing carries over between jobs.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        feed: Optional[ChangeFeed] = None,
        config: Optional[SyncConfig] = None,
        listener: Optional[Listener] = None,
    ):
        self.store = store or JobStore()
        self.feed = feed if feed is not None else ChangeFeed()
        self.config = config or SyncConfig()
        self.listener = listener
        self.session: Optional[SyncSession] = None

    @property
    def view(self) -> Optional[SyncView]:
        return self.session.view if self.session is not None else None

    def watch(self, video_id: str) -> SyncSession:
        self.close()
        self.session = SyncSession(
            video_id, self.store, self.feed, self.config, self.listener
        )
        self.session.start()
        return self.session

    async def follow(self, video_id: str) -> SyncView:
        """Watch a job and wait until it settles."""
        return await self.watch(video_id).wait()

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None
