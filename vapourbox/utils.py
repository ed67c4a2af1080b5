import os
import re
import sys
import time
import signal
import atexit
import logging
import threading
import subprocess
from typing import List

# ==============================================================================
#  LOGGING & PROCESS MANAGEMENT
# ==============================================================================


def get_project_root():
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


SCRIPT_DIR = get_project_root()
logger = logging.getLogger("VapourBox")
logger.setLevel(logging.DEBUG)
logger.propagate = False


class ISOFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        from datetime import datetime
        dt = datetime.fromtimestamp(record.created).astimezone()
        return dt.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + dt.strftime('%z')


def configure_logging(log_file=None, debug=False):
    """
    Attaches the file and console handlers to the worker logger.
    Calling it again replaces the previous handlers.
    stdout is never used: it carries the JSON event channel or preview bytes.
    """
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        try:
            handler.close()
        except (ValueError, OSError):
            pass

    if log_file:
        if not os.path.isabs(log_file):
            log_file = os.path.join(SCRIPT_DIR, log_file)
        # File Handler (DEBUG level -> full vspipe/ffmpeg chatter)
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(ISOFormatter('%(asctime)s [%(levelname)s] %(message)s'))
        logger.addHandler(file_handler)

    # Console Handler (INFO level -> minimal output)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console_handler)
    return logger


def _emit(level, msg):
    try:
        logger.log(level, msg)
        for handler in logger.handlers:
            try:
                handler.flush()
            except (ValueError, RuntimeError, AttributeError):
                pass
    except (ValueError, RuntimeError, AttributeError):
        pass


def log_debug(msg):
    _emit(logging.DEBUG, msg)


def log_info(msg):
    _emit(logging.INFO, msg)


def log_warning(msg):
    _emit(logging.WARNING, msg)


def log_error(msg):
    _emit(logging.ERROR, msg)


# Process Tracking & Signal Handling
ACTIVE_PROCS: List[subprocess.Popen] = []


def track_process(p):
    ACTIVE_PROCS.append(p)
    return p


def untrack_process(p):
    if p in ACTIVE_PROCS:
        try:
            ACTIVE_PROCS.remove(p)
        except ValueError:
            pass


def terminate_process(p, grace=2.0):
    """Terminates a child, then kills it if it outlives the grace period."""
    if p is None:
        return
    try:
        if p.poll() is None:
            log_debug(f"[SYSTEM] Terminating process {p.pid}...")
            p.terminate()
            try:
                p.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                p.kill()
                p.wait()
    except OSError as e:
        log_debug(f"[SYSTEM] Could not stop process {getattr(p, 'pid', '?')}: {e}")
    finally:
        untrack_process(p)


def cleanup_on_exit(signum=None, frame=None):
    """Terminates all registered subprocesses."""
    if signum:
        sig_name = signal.Signals(signum).name
        log_debug(f"[SYSTEM] Received signal {sig_name}. Shutting down...")

    for p in list(ACTIVE_PROCS):
        if p.poll() is None:
            log_debug(f"[SYSTEM] Terminating process {p.pid}...")
            try:
                p.terminate()
                # Give it a moment to die gracefully, then kill if needed
                time.sleep(0.1)
                if p.poll() is None:
                    p.kill()
            except OSError:
                pass
        untrack_process(p)


# Children never outlive the worker, whatever the exit path
atexit.register(cleanup_on_exit)


def run_command(args, **kwargs):
    """Executes a command to completion and tracks it for cleanup."""
    p = subprocess.Popen(args, **kwargs)
    track_process(p)
    try:
        out, err = p.communicate()
        return p.returncode, out, err
    finally:
        untrack_process(p)


def normalize_exit_code(code):
    """Maps a signal-killed returncode (-N on POSIX) to the shell's 128+N."""
    if code is None:
        return None
    if code < 0:
        return 128 + (-code)
    return code


class SharedCounter:
    """Single-writer integer shared between the stderr reader and the main loop."""

    def __init__(self, value=0):
        self._value = value
        self._lock = threading.Lock()

    def set(self, value):
        with self._lock:
            self._value = value

    def get(self):
        with self._lock:
            return self._value


# ==============================================================================
# STREAM PARSING
# ==============================================================================

INPUT_INFO_PREFIX = "INPUT_INFO:"

_FRAME_RE = re.compile(r"^frame=\s*(\d+)")
_FPS_RE = re.compile(r"(?:^|\s)fps=\s*(\d+(?:\.\d+)?)")


def parse_input_info(line_str):
    """
    Parses 'INPUT_INFO:frames=1000,fps_num=25,fps_den=1' into a dict of ints.
    Returns None for any other line. Malformed pairs are skipped.
    """
    if not line_str or not line_str.startswith(INPUT_INFO_PREFIX):
        return None

    info = {}
    for pair in line_str[len(INPUT_INFO_PREFIX):].split(","):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        try:
            info[key.strip()] = int(value.strip())
        except ValueError:
            pass
    return info


def parse_ffmpeg_progress(line_str):
    """
    Extracts frame number and processing rate from an FFmpeg progress line.
    Handles both '-progress pipe:2' key=value lines and the classic stats line.
    Returns: (frame_int_or_None, fps_float_or_None)
    """
    if not line_str:
        return None, None

    frame = None
    fps = None

    frame_match = _FRAME_RE.match(line_str)
    if frame_match:
        frame = int(frame_match.group(1))

    fps_match = _FPS_RE.search(line_str)
    if fps_match:
        try:
            fps = float(fps_match.group(1))
        except ValueError:
            pass

    return frame, fps


def update_progress(percent, message, time_str=None, speed_str=None, eta_str=None, process_name="VapourBox"):
    """Draws a unified progress bar matching the style: [Process] Status[Bar]  % | Frames | ETA | Speed"""
    bar_length = 20

    # Ensure percent is 0-100
    percent = max(0.0, min(100.0, percent))

    filled_length = int(bar_length * percent // 100)
    bar = "█" * filled_length + "░" * (bar_length - filled_length)

    output = f"\r\033[K[{process_name}] {message}[{bar}] {percent:5.1f}%"

    if time_str:
        output += f" | {time_str}"
    if eta_str:
        output += f" | ETA {eta_str}"
    if speed_str:
        output += f" | {speed_str}"

    sys.stderr.write(output)
    sys.stderr.flush()


def remove_quietly(path):
    """Deletes a file if present. Returns True when something was removed."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        log_debug(f"[CLEANUP] Could not remove {path}: {e}")
        return False
