import io
import sys
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure project root is importable before any test module imports the package
PROJECT_ROOT = str(Path(__file__).parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


@pytest.fixture(autouse=True)
def setup_path():
    """Ensure project root is in sys.path globally for all tests."""
    if PROJECT_ROOT not in sys.path:
        sys.path.insert(0, PROJECT_ROOT)


@pytest.fixture(autouse=True)
def clean_active_procs():
    """Mocked processes must never leak into the atexit cleanup."""
    from vapourbox import utils
    yield
    utils.ACTIVE_PROCS.clear()


@pytest.fixture
def job_dict():
    return {
        "id": "job-1",
        "inputPath": "/videos/tape01.avi",
        "outputPath": "/videos/tape01_restored.mp4",
        "qtgmcParameters": {"preset": "Slower"},
        "encodingSettings": {"codec": "libx264", "quality": 18},
        "totalFrames": 900,
        "inputFrameRate": 29.97,
    }


@pytest.fixture
def job(job_dict):
    from vapourbox.job import VideoJob
    return VideoJob.from_dict(job_dict)


@pytest.fixture
def job_file(tmp_path, job_dict):
    path = tmp_path / "job.json"
    path.write_text(json.dumps(job_dict), encoding="utf-8")
    return path


class BufferReporter:
    """ProgressReporter writing to memory, with the events decoded back for assertions."""

    def __init__(self):
        from vapourbox.progress import ProgressReporter
        self.buffer = io.StringIO()
        self.reporter = ProgressReporter(self.buffer)

    def __getattr__(self, name):
        return getattr(self.reporter, name)

    @property
    def events(self):
        return [json.loads(line) for line in self.buffer.getvalue().splitlines()]

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def reporter():
    return BufferReporter()


def make_process(stderr=b"", returncode=0, stdout=None):
    """Popen stand-in with a real byte stream on stderr."""
    p = MagicMock()
    p.pid = 4242
    p.stdout = stdout if stdout is not None else MagicMock()
    p.stderr = io.BytesIO(stderr)
    p.wait.return_value = returncode
    p.returncode = returncode
    p.poll.return_value = None
    return p


@pytest.fixture
def fake_process():
    return make_process
