"""
Tests for the vync-watch command.
"""

import io
import unittest
from contextlib import redirect_stdout
from unittest import mock

from vync.client import cli
from vync.client.sync import SyncState, SyncView
from vync.schemas import AnalysisRecord


class TestWatchCommand(unittest.TestCase):

    @mock.patch("vync.client.cli.watch", new_callable=mock.AsyncMock)
    def test_exit_code_and_options(self, watch):
        watch.return_value = 2
        code = cli.main(["v1", "--timeout", "10", "--no-fallback"])

        self.assertEqual(code, 2)
        video_id, config, as_json = watch.call_args.args
        self.assertEqual(video_id, "v1")
        self.assertEqual(config.timeout, 10)
        self.assertFalse(config.allow_fallback)
        self.assertFalse(as_json)

    def test_print_fallback_view(self):
        view = SyncView(
            video_id="v1",
            state=SyncState.READY,
            record=AnalysisRecord(video_id="v2", summary="s"),
            fallback_video_id="v2",
        )
        out = io.StringIO()
        with redirect_stdout(out):
            cli.print_view(view)
        self.assertIn("showing latest analysis (v2)", out.getvalue())

    def test_print_record(self):
        view = SyncView(
            video_id="v1",
            state=SyncState.READY,
            record=AnalysisRecord(
                video_id="v1",
                summary="A kitchen tour.",
                chapters=[{"title": "Intro", "start_seconds": 0}],
                key_insights=[{"timestamp": 4, "importance": 8, "text": "Tiles"}],
            ),
        )
        out = io.StringIO()
        with redirect_stdout(out):
            cli.print_record(view, as_json=False)
        self.assertIn("A kitchen tour.", out.getvalue())
        self.assertIn("Intro", out.getvalue())
        self.assertIn("[8] 4s  Tiles", out.getvalue())


if __name__ == "__main__":
    unittest.main()
