"""
vync-watch - follow one video's analysis from the terminal.

    vync-watch 6f1c...  [--timeout 300] [--poll-interval 3] [--no-fallback] [--json]

Exit codes: 0 ready, 2 failed, 3 timeout or store error, 130 interrupted.
"""
import argparse
import asyncio
import json
import logging
import sys

from vync.client.sync import StatusSynchronizer, SyncConfig, SyncState, SyncView
from vync.config import DATABASE_URL
from vync.db import engine
from vync.db.notify import ChangeFeed, PostgresChangeFeed
from vync.db.store import JobStore

logger = logging.getLogger(__name__)

EXIT_CODES = {
    SyncState.READY: 0,
    SyncState.FAILED: 2,
    SyncState.ERROR: 3,
}


def print_view(view: SyncView):
    if view.state == SyncState.PENDING:
        status = f" [{view.job_status}]" if view.job_status else ""
        print(f"... {view.step_label}{status}", flush=True)
    elif view.state == SyncState.READY:
        if view.fallback_video_id:
            print(f"!! No result for {view.video_id} yet; "
                  f"showing latest analysis ({view.fallback_video_id})")
        print("Analysis ready")
    else:
        print(f"{view.state.value}: {view.reason}")


def print_record(view: SyncView, as_json: bool):
    record = view.record
    if as_json:
        print(json.dumps(record.model_dump(mode="json"), indent=2))
        return

    print()
    print(record.summary or "(no summary)")
    if record.chapters:
        print("\nChapters:")
        for chapter in record.chapters:
            if isinstance(chapter, dict):
                print(f"  {chapter.get('start_seconds', 0):>6}s  {chapter.get('title', '')}")
            else:
                print(f"  {chapter}")
    if record.key_insights:
        print("\nKey insights:")
        for insight in record.key_insights:
            print(f"  [{insight.importance}] {insight.timestamp}s  {insight.text}")


async def watch(video_id: str, config: SyncConfig, as_json: bool) -> int:
    feed = ChangeFeed()
    if engine.dialect.name == "postgresql":
        feed = PostgresChangeFeed(DATABASE_URL)
        feed.attach()
    else:
        logger.info("Not PostgreSQL - polling only")

    synchronizer = StatusSynchronizer(JobStore(), feed, config, listener=print_view)
    try:
        view = await synchronizer.follow(video_id)
    finally:
        synchronizer.close()
        if isinstance(feed, PostgresChangeFeed):
            feed.close()

    if view.state == SyncState.READY:
        print_record(view, as_json)
    return EXIT_CODES[view.state]


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Wait for a video's analysis and print it.")
    parser.add_argument("video_id")
    parser.add_argument("--timeout", type=float, default=SyncConfig.timeout)
    parser.add_argument("--poll-interval", type=float, default=SyncConfig.poll_interval)
    parser.add_argument("--no-fallback", action="store_true",
                        help="Never show the latest analysis of another video")
    parser.add_argument("--json", action="store_true", help="Print the analysis as JSON")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    config = SyncConfig(
        poll_interval=args.poll_interval,
        timeout=args.timeout,
        allow_fallback=not args.no_fallback,
    )
    try:
        return asyncio.run(watch(args.video_id, config, args.json))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
