import threading
from unittest.mock import patch, MagicMock

import pytest


@pytest.fixture
def worker():
    import vapourbox_worker
    return vapourbox_worker


@pytest.fixture
def config(tmp_path):
    from vapourbox.config import default_config
    cfg = default_config()
    cfg["temp_dir"] = str(tmp_path)
    cfg["log_file"] = None
    return cfg


def _patched_generator(script_path):
    generator = MagicMock()
    generator.generate.return_value = str(script_path)
    return generator


def test_parse_args_defaults(worker):
    args = worker.parse_args(["--config", "job.json"])
    assert args.config == "job.json"
    assert args.preview is False
    assert args.frame == 0
    assert args.single_frame is False
    assert args.console is False


def test_parse_args_requires_config(worker):
    with patch("sys.stderr.write"):
        with pytest.raises(SystemExit):
            worker.parse_args(["--preview"])


def test_run_job_success(worker, job, config, reporter, tmp_path):
    script = tmp_path / "job-1.vpy"
    script.write_text("x", encoding="utf-8")

    with patch.object(worker.ScriptGenerator, "from_config", return_value=_patched_generator(script)), \
         patch.object(worker, "PipelineExecutor") as mock_executor_cls:
        code = worker.run_job(job, config, reporter, threading.Event())

    assert code == 0
    executor = mock_executor_cls.return_value.__enter__.return_value
    script_arg, job_arg, is_cancelled = executor.execute.call_args[0]
    assert script_arg == str(script)
    assert job_arg is job
    assert is_cancelled() is False
    assert reporter.events[-1] == {"type": "complete", "success": True, "outputPath": job.output_path}
    # generated script is removed unless keep_scripts
    assert not script.exists()


def test_run_job_keeps_script_when_configured(worker, job, config, reporter, tmp_path):
    script = tmp_path / "job-1.vpy"
    script.write_text("x", encoding="utf-8")
    config["keep_scripts"] = True

    with patch.object(worker.ScriptGenerator, "from_config", return_value=_patched_generator(script)), \
         patch.object(worker, "PipelineExecutor"):
        worker.run_job(job, config, reporter, threading.Event())
    assert script.exists()


def test_run_job_cancelled(worker, job, config, reporter, tmp_path):
    from vapourbox.errors import JobCancelled
    script = tmp_path / "job-1.vpy"
    script.write_text("x", encoding="utf-8")
    output = tmp_path / "partial.mp4"
    output.write_bytes(b"partial")
    job.output_path = str(output)

    with patch.object(worker.ScriptGenerator, "from_config", return_value=_patched_generator(script)), \
         patch.object(worker, "PipelineExecutor") as mock_executor_cls:
        mock_executor_cls.return_value.__enter__.return_value.execute.side_effect = JobCancelled()
        code = worker.run_job(job, config, reporter, threading.Event())

    assert code == 130
    assert not output.exists()
    assert reporter.events[-2:] == [
        {"type": "log", "level": "info", "message": "Job cancelled by user"},
        {"type": "complete", "success": False},
    ]
    assert reporter.of_type("error") == []


def test_run_job_failure(worker, job, config, reporter, tmp_path):
    from vapourbox.errors import ProcessExitError
    script = tmp_path / "job-1.vpy"
    script.write_text("x", encoding="utf-8")

    with patch.object(worker.ScriptGenerator, "from_config", return_value=_patched_generator(script)), \
         patch.object(worker, "PipelineExecutor") as mock_executor_cls:
        mock_executor_cls.return_value.__enter__.return_value.execute.side_effect = ProcessExitError("ffmpeg", 1)
        code = worker.run_job(job, config, reporter, threading.Event())

    assert code == 1
    assert reporter.events[-2:] == [
        {"type": "error", "message": "ffmpeg exited with code 1"},
        {"type": "complete", "success": False},
    ]


def test_run_job_template_error(worker, job, config, reporter):
    from vapourbox.errors import TemplateLoadError
    with patch.object(worker.ScriptGenerator, "from_config", side_effect=TemplateLoadError("Template x not found")):
        code = worker.run_job(job, config, reporter, threading.Event())
    assert code == 1
    assert reporter.of_type("error")[0]["message"] == "Template x not found"


def test_signal_handler_sets_cancel_event(worker):
    import signal
    event = threading.Event()
    with patch("vapourbox_worker.signal.signal") as mock_signal:
        worker.install_signal_handlers(event)
    handlers = {call[0][0]: call[0][1] for call in mock_signal.call_args_list}
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM}
    handlers[signal.SIGTERM](signal.SIGTERM, None)
    assert event.is_set()


def test_preview_writes_png_to_stdout(worker, job, config):
    args = worker.parse_args(["--config", "job.json", "--preview", "--frame", "300"])
    stdout = MagicMock()
    with patch.object(worker, "PipelineExecutor") as mock_executor_cls, \
         patch("vapourbox_worker.sys.stdout", stdout):
        executor = mock_executor_cls.return_value.__enter__.return_value
        executor.generate_preview.return_value = b"\x89PNG"
        code = worker.run_preview(job, config, args)

    assert code == 0
    # frame 300 at the job's 29.97 fps
    time_seconds = executor.generate_preview.call_args[0][1]
    assert time_seconds == pytest.approx(300 / 29.97)
    stdout.buffer.write.assert_called_once_with(b"\x89PNG")


def test_preview_single_frame_to_file(worker, job, config, tmp_path):
    out = tmp_path / "frame.png"
    args = worker.parse_args(["--config", "job.json", "--preview", "--frame", "12",
                              "--single-frame", "--output", str(out)])
    with patch.object(worker, "PipelineExecutor") as mock_executor_cls:
        executor = mock_executor_cls.return_value.__enter__.return_value
        executor.generate_preview_frame.return_value = b"png-bytes"
        code = worker.run_preview(job, config, args)

    assert code == 0
    executor.generate_preview_frame.assert_called_once_with(job, 12)
    assert out.read_bytes() == b"png-bytes"


def test_preview_failure_exit_code(worker, job, config):
    from vapourbox.errors import DependencyNotFoundError
    args = worker.parse_args(["--config", "job.json", "--preview"])
    with patch.object(worker, "PipelineExecutor") as mock_executor_cls:
        executor = mock_executor_cls.return_value.__enter__.return_value
        executor.generate_preview.side_effect = DependencyNotFoundError("ffmpeg", "deps/linux-x64/ffmpeg/ffmpeg")
        assert worker.run_preview(job, config, args) == 1


def test_main_invalid_job_file(worker, tmp_path, capsys):
    bad = tmp_path / "job.json"
    bad.write_text("{", encoding="utf-8")
    with patch.object(worker, "configure_logging"), \
         patch.object(worker, "load_config", return_value={"log_file": None, "debug_logging": False}):
        code = worker.main(["--config", str(bad)])
    assert code == 1
    out = capsys.readouterr().out.splitlines()
    assert '"type": "error"' in out[0]
    assert out[-1] == '{"type": "complete", "success": false}'


def test_main_runs_job(worker, job_file):
    with patch.object(worker, "configure_logging"), \
         patch.object(worker, "install_signal_handlers") as mock_signals, \
         patch.object(worker, "run_job", return_value=0) as mock_run:
        assert worker.main(["--config", str(job_file), "--settings", str(job_file.parent / "none.yaml")]) == 0

    job, config, reporter, cancel_event = mock_run.call_args[0]
    assert job.id == "job-1"
    assert config["progress_interval_ms"] == 500
    mock_signals.assert_called_once_with(cancel_event)


@pytest.mark.parametrize("extra", [
    {"qtgmcParameters": {"thSad1": "high"}},
    {"restorationPipeline": {"deinterlace": None}},
])
def test_main_mistyped_job_ends_with_complete_false(worker, tmp_path, capsys, extra):
    import json
    data = {"id": "job-1", "inputPath": "/in.avi", "outputPath": "/out.mp4"}
    data.update(extra)
    path = tmp_path / "job.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    with patch.object(worker, "configure_logging"), \
         patch.object(worker, "load_config", return_value={"log_file": None, "debug_logging": False}), \
         patch.object(worker, "run_job") as mock_run:
        code = worker.main(["--config", str(path)])

    assert code == 1
    mock_run.assert_not_called()
    events = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [e["type"] for e in events] == ["error", "complete"]
    assert "Invalid job description" in events[0]["message"]
    assert events[-1] == {"type": "complete", "success": False}
