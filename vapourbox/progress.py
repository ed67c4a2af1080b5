import sys
import json
import math
import threading
from dataclasses import dataclass
from enum import Enum

from vapourbox.utils import log_debug, log_info, log_warning, log_error, update_progress

# ==============================================================================
# PROGRESS CHANNEL
# ==============================================================================
#
# One JSON object per line on stdout, consumed by the controlling app:
#   {"type": "progress", "frame": 120, "totalFrames": 1000, "fps": 25.0, "eta": 35.2}
#   {"type": "log", "level": "info", "message": "..."}
#   {"type": "error", "message": "..."}
#   {"type": "complete", "success": true, "outputPath": "/out.mp4"}


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_MIRROR = {
    LogLevel.DEBUG: log_debug,
    LogLevel.INFO: log_info,
    LogLevel.WARNING: log_warning,
    LogLevel.ERROR: log_error,
}


@dataclass
class ProgressInfo:
    frame: int = 0
    total_frames: int = 0
    fps: float = 0.0
    eta: float = 0.0

    def progress(self):
        if self.total_frames <= 0:
            return 0.0
        return self.frame / self.total_frames

    def percent_complete(self):
        return int(self.progress() * 100)

    def eta_formatted(self):
        if not math.isfinite(self.eta) or self.eta <= 0:
            return "--"
        total = int(self.eta)
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        if hours > 0:
            return f"{hours}h {minutes:02d}m {seconds:02d}s"
        if minutes > 0:
            return f"{minutes}m {seconds:02d}s"
        return f"{seconds}s"

    def fps_formatted(self):
        if self.fps > 0:
            return f"{self.fps:.1f} fps"
        return "-- fps"


class ProgressReporter:
    """Thread-safe JSON-lines event writer. Log and error events also go to the log file."""

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def _send(self, event):
        line = json.dumps(event)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()

    def progress(self, frame, total_frames, fps, eta):
        self._send({
            "type": "progress",
            "frame": int(frame),
            "totalFrames": int(total_frames),
            "fps": float(fps),
            "eta": float(eta),
        })

    def log(self, level, message):
        level = LogLevel(level)
        _LOG_MIRROR[level](message)
        self._send({"type": "log", "level": level.value, "message": message})

    def error(self, message):
        log_error(message)
        self._send({"type": "error", "message": message})

    def complete(self, success, output_path=None):
        event = {"type": "complete", "success": bool(success)}
        if output_path is not None:
            event["outputPath"] = output_path
        self._send(event)


class ConsoleReporter(ProgressReporter):
    """Interactive variant: a progress bar on stderr instead of JSON events."""

    def __init__(self, stream=None):
        super().__init__(stream if stream is not None else sys.stderr)
        self._bar_open = False

    def _end_bar(self):
        if self._bar_open:
            sys.stderr.write("\n")
            sys.stderr.flush()
            self._bar_open = False

    def progress(self, frame, total_frames, fps, eta):
        info = ProgressInfo(frame, total_frames, fps, eta)
        frames_str = f"{frame}/{total_frames}" if total_frames > 0 else f"{frame}"
        with self._lock:
            update_progress(
                info.progress() * 100,
                "Encoding ",
                time_str=frames_str,
                speed_str=info.fps_formatted(),
                eta_str=info.eta_formatted(),
            )
            self._bar_open = True

    def log(self, level, message):
        level = LogLevel(level)
        if level == LogLevel.DEBUG:
            # vspipe chatter belongs in the log file only
            log_debug(message)
            return
        with self._lock:
            self._end_bar()
        _LOG_MIRROR[level](message)

    def error(self, message):
        with self._lock:
            self._end_bar()
        log_error(message)

    def complete(self, success, output_path=None):
        with self._lock:
            self._end_bar()
        if success:
            log_info(f"Done: {output_path}" if output_path else "Done")
        else:
            log_info("Finished with errors")
