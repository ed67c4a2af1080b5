import io
import json
from unittest.mock import patch

import pytest


def _events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_event_shapes():
    from vapourbox.progress import ProgressReporter
    stream = io.StringIO()
    reporter = ProgressReporter(stream)
    reporter.progress(500, 2000, 25.0, 60.0)
    reporter.log("info", "Generated script")
    reporter.error("ffmpeg exited with code 1")
    reporter.complete(True, "/out.mp4")
    reporter.complete(False)

    assert _events(stream) == [
        {"type": "progress", "frame": 500, "totalFrames": 2000, "fps": 25.0, "eta": 60.0},
        {"type": "log", "level": "info", "message": "Generated script"},
        {"type": "error", "message": "ffmpeg exited with code 1"},
        {"type": "complete", "success": True, "outputPath": "/out.mp4"},
        {"type": "complete", "success": False},
    ]
    # one object per line
    assert stream.getvalue().count("\n") == 5


def test_log_and_error_are_mirrored_to_logger():
    from vapourbox.progress import ProgressReporter
    reporter = ProgressReporter(io.StringIO())
    with patch("vapourbox.progress.log_error") as mock_error:
        reporter.error("boom")
    mock_error.assert_called_once_with("boom")


def test_unknown_log_level_is_rejected():
    from vapourbox.progress import ProgressReporter
    with pytest.raises(ValueError):
        ProgressReporter(io.StringIO()).log("verbose", "x")


@pytest.mark.parametrize("frame,total,expected", [(0, 0, 0), (50, 200, 25), (199, 200, 99), (10, -1, 0)])
def test_percent_complete(frame, total, expected):
    from vapourbox.progress import ProgressInfo
    assert ProgressInfo(frame, total).percent_complete() == expected


@pytest.mark.parametrize("eta,expected", [
    (5025, "1h 23m 45s"),
    (187, "3m 07s"),
    (42, "42s"),
    (42.9, "42s"),
    (0, "--"),
    (-3, "--"),
    (float("inf"), "--"),
    (float("nan"), "--"),
])
def test_eta_formatted(eta, expected):
    from vapourbox.progress import ProgressInfo
    assert ProgressInfo(eta=eta).eta_formatted() == expected


def test_fps_formatted():
    from vapourbox.progress import ProgressInfo
    assert ProgressInfo(fps=25.0).fps_formatted() == "25.0 fps"
    assert ProgressInfo(fps=0.0).fps_formatted() == "-- fps"


def test_console_reporter_draws_bar_instead_of_json():
    from vapourbox.progress import ConsoleReporter
    stream = io.StringIO()
    reporter = ConsoleReporter(stream)
    with patch("vapourbox.progress.update_progress") as mock_update, \
         patch("sys.stderr.write"), patch("sys.stderr.flush"):
        reporter.progress(50, 200, 25.0, 6.0)
        reporter.complete(True, "/out.mp4")

    args, kwargs = mock_update.call_args
    assert args[0] == 25.0
    assert kwargs["time_str"] == "50/200"
    assert kwargs["eta_str"] == "6s"
    assert kwargs["speed_str"] == "25.0 fps"
    assert stream.getvalue() == ""
