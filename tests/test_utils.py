import logging
import subprocess
from unittest.mock import patch, MagicMock

import pytest


def test_parse_input_info():
    from vapourbox.utils import parse_input_info
    assert parse_input_info("INPUT_INFO:frames=1000,fps_num=25,fps_den=1") == {
        "frames": 1000, "fps_num": 25, "fps_den": 1,
    }
    assert parse_input_info("INPUT_INFO:frames=abc,fps_num=30000") == {"fps_num": 30000}
    assert parse_input_info("Loading plugin ffms2") is None
    assert parse_input_info("") is None


@pytest.mark.parametrize("line,expected", [
    ("frame=500", (500, None)),
    ("fps=25.0", (None, 25.0)),
    ("frame=  500 fps= 25 q=28.0 size=   1024kB time=00:00:20.00", (500, 25.0)),
    ("frame=500 fps=25.0", (500, 25.0)),
    ("progress=continue", (None, None)),
    ("out_time=00:00:20.000000", (None, None)),
    ("", (None, None)),
])
def test_parse_ffmpeg_progress(line, expected):
    from vapourbox.utils import parse_ffmpeg_progress
    assert parse_ffmpeg_progress(line) == expected


@pytest.mark.parametrize("code,expected", [(0, 0), (1, 1), (-2, 130), (-13, 141), (-15, 143), (None, None)])
def test_normalize_exit_code(code, expected):
    from vapourbox.utils import normalize_exit_code
    assert normalize_exit_code(code) == expected


def test_terminate_process_kills_after_grace():
    from vapourbox import utils
    p = MagicMock()
    p.poll.return_value = None
    p.wait.side_effect = [subprocess.TimeoutExpired("vspipe", 2.0), 0]
    utils.track_process(p)

    utils.terminate_process(p, grace=2.0)

    p.terminate.assert_called_once()
    p.kill.assert_called_once()
    assert p not in utils.ACTIVE_PROCS


def test_terminate_process_skips_finished():
    from vapourbox import utils
    p = MagicMock()
    p.poll.return_value = 0
    utils.terminate_process(p)
    p.terminate.assert_not_called()


def test_cleanup_on_exit_stops_tracked_processes():
    from vapourbox import utils
    running = MagicMock()
    running.poll.side_effect = [None, None, None]
    utils.track_process(running)
    with patch("vapourbox.utils.time.sleep"):
        utils.cleanup_on_exit()
    running.terminate.assert_called_once()
    running.kill.assert_called_once()
    assert utils.ACTIVE_PROCS == []


def test_run_command_returns_output():
    from vapourbox import utils
    proc = MagicMock()
    proc.communicate.return_value = (b"out", b"err")
    proc.returncode = 0
    with patch("vapourbox.utils.subprocess.Popen", return_value=proc):
        assert utils.run_command(["ffmpeg", "-version"], stdout=subprocess.PIPE) == (0, b"out", b"err")
    assert proc not in utils.ACTIVE_PROCS


def test_shared_counter():
    from vapourbox.utils import SharedCounter
    counter = SharedCounter()
    assert counter.get() == 0
    counter.set(1000)
    assert counter.get() == 1000


def test_configure_logging_replaces_handlers(tmp_path):
    from vapourbox.utils import configure_logging, logger, log_info
    log_file = tmp_path / "worker.log"
    configure_logging(str(log_file))
    configure_logging(str(log_file), debug=True)
    try:
        handlers = logger.handlers
        assert len(handlers) == 2
        console = [h for h in handlers if not isinstance(h, logging.FileHandler)][0]
        assert console.level == logging.DEBUG
        log_info("hello log")
        assert "[INFO] hello log" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


def test_update_progress_format():
    from vapourbox.utils import update_progress
    with patch("sys.stderr.write") as mock_write, patch("sys.stderr.flush"):
        update_progress(50, "Encoding ", "500/1000", "25.0 fps", "20s")
    line = mock_write.call_args[0][0]
    assert "[VapourBox] Encoding " in line
    assert " 50.0%" in line
    assert "500/1000" in line
    assert "ETA 20s" in line
    assert "25.0 fps" in line


def test_remove_quietly(tmp_path):
    from vapourbox.utils import remove_quietly
    f = tmp_path / "out.mp4"
    f.write_bytes(b"x")
    assert remove_quietly(str(f)) is True
    assert remove_quietly(str(f)) is False
    assert remove_quietly(None) is False


def test_error_messages():
    from vapourbox.errors import DependencyNotFoundError, SpawnError, ProcessExitError, JobCancelled
    err = DependencyNotFoundError("vspipe", "deps/linux-x64/vapoursynth/vspipe")
    assert err.message == "vspipe not found at deps/linux-x64/vapoursynth/vspipe"
    assert "PATH" in str(err)
    assert str(SpawnError("ffmpeg", "No such file")) == "Failed to spawn ffmpeg: No such file"
    assert str(ProcessExitError("vspipe", 2)) == "vspipe exited with code 2"
    assert str(JobCancelled()) == "Job cancelled"
