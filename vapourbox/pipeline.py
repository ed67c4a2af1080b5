import io
import os
import time
import shutil
import tempfile
import threading
import subprocess
from collections import deque

from vapourbox.config import default_config
from vapourbox.deps import DependencyLocator
from vapourbox.errors import SpawnError, StreamError, ProcessExitError, JobCancelled
from vapourbox.utils import (
    log_debug, log_info, track_process, untrack_process, terminate_process,
    run_command, normalize_exit_code, remove_quietly, SharedCounter, parse_ffmpeg_progress,
    INPUT_INFO_PREFIX,
)
from vapourbox.vspipe import ScriptGenerator, PreviewParams, log_vspipe_output

# ==============================================================================
# VSPIPE -> FFMPEG PIPELINE
# ==============================================================================

# SIGINT / SIGPIPE as reported by a shell; both happen on a normal cancel or early encoder exit
TOLERATED_EXIT_CODES = (0, 130, 141)

PREVIEW_CLIP_NAME = "preview_clip.mkv"


def build_vspipe_args(vspipe, script_path, start=None, end=None):
    cmd = [vspipe]
    if start is not None:
        cmd.extend(["--start", str(start)])
    if end is not None:
        cmd.extend(["--end", str(end)])
    cmd.extend(["-c", "y4m", str(script_path), "-"])
    return cmd


def build_ffmpeg_args(settings, output):
    """Encoder arguments for a Y4M stream on stdin (executable not included)."""
    args = ["-f", "yuv4mpegpipe", "-i", "-", "-progress", "pipe:2"]
    args.extend(["-c:v", settings.codec.encoder])

    profile = settings.codec.prores_profile
    if profile is not None:
        args.extend(["-profile:v", str(profile)])
    else:
        args.extend(["-crf", str(settings.quality), "-preset", settings.encoder_preset])

    if settings.audio_copy:
        args.extend(["-c:a", "copy"])
    else:
        args.extend(["-c:a", settings.audio_codec, "-b:a", f"{settings.audio_bitrate}k"])

    if settings.custom_ffmpeg_args:
        args.extend(settings.custom_ffmpeg_args.split())

    args.extend(["-y", str(output)])
    return args


def build_preview_encoder_args():
    return [
        "-f", "yuv4mpegpipe", "-i", "-",
        "-vframes", "1",
        "-vf", "scale=in_range=tv:out_range=pc",
        "-f", "image2pipe", "-vcodec", "png", "-",
    ]


def compute_effective_total(reported, job):
    """Output frame count: the count vspipe reported (x2 under rate doubling), else the job's estimate."""
    if reported and reported > 0:
        if job.effective_pipeline().deinterlace.doubles_rate:
            return reported * 2
        return reported
    return job.total_frames or 0


def compute_eta(total, frame, fps):
    if fps > 0 and total > frame:
        return (total - frame) / fps
    return 0.0


def is_progress_line(line_str):
    """True for '-progress' key=value output and the classic 'frame= ...' stats line."""
    key, sep, _ = line_str.partition("=")
    return bool(sep) and key.replace("_", "").isalnum()


def check_exit_code(stage, code, detail=None):
    code = normalize_exit_code(code)
    if code not in TOLERATED_EXIT_CODES:
        raise ProcessExitError(stage, code, detail)
    return code


class PipelineExecutor:
    """
    Runs vspipe | ffmpeg for one job and reports progress.
    Both children are stopped when the executor is closed or collected.
    """

    def __init__(self, reporter, locator=None, config=None, generator=None):
        self.reporter = reporter
        self.config = config or default_config()
        self.locator = locator or DependencyLocator.from_config(self.config)
        self._generator = generator
        self.vspipe_process = None
        self.ffmpeg_process = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.terminate()
        return False

    def __del__(self):
        try:
            self.terminate()
        except (OSError, AttributeError):
            pass

    @property
    def generator(self):
        if self._generator is None:
            self._generator = ScriptGenerator.from_config(self.config)
        return self._generator

    def _spawn(self, stage, cmd, **kwargs):
        log_debug(f"[PIPELINE] {stage} command: {' '.join(cmd)}")
        try:
            p = subprocess.Popen(cmd, **kwargs)
        except OSError as e:
            raise SpawnError(stage, e)
        return track_process(p)

    def terminate(self):
        grace = self.config.get("terminate_grace_seconds", 2.0)
        for p in (self.vspipe_process, self.ffmpeg_process):
            if p is not None:
                terminate_process(p, grace)

    # --------------------------------------------------------------------------
    # Full encode
    # --------------------------------------------------------------------------

    def execute(self, script_path, job, is_cancelled):
        vspipe = self.locator.vspipe_path()
        ffmpeg = self.locator.ffmpeg_path()
        env = self.locator.build_environment()

        vspipe_cmd = build_vspipe_args(vspipe, script_path)
        ffmpeg_cmd = [ffmpeg] + build_ffmpeg_args(job.encoding_settings, job.output_path)

        self.vspipe_process = self._spawn(
            "vspipe", vspipe_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=env
        )
        try:
            self.ffmpeg_process = self._spawn(
                "ffmpeg", ffmpeg_cmd,
                stdin=self.vspipe_process.stdout,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env,
            )
        except SpawnError:
            self.terminate()
            raise

        # ffmpeg owns the read end now; vspipe gets SIGPIPE if ffmpeg dies
        if self.vspipe_process.stdout:
            self.vspipe_process.stdout.close()

        reported_total = SharedCounter()
        t_vspipe = threading.Thread(
            target=log_vspipe_output,
            args=(self.vspipe_process.stderr, reported_total, self.reporter),
        )
        t_vspipe.daemon = True
        t_vspipe.start()

        interval = self.config.get("progress_interval_ms", 500) / 1000.0
        last_progress_time = time.monotonic()
        current_frame = 0
        current_fps = 0.0
        stderr_lines = deque(maxlen=20)

        try:
            stderr_reader = io.TextIOWrapper(self.ffmpeg_process.stderr, encoding="utf-8", errors="replace")
            for line in stderr_reader:
                if is_cancelled():
                    self.terminate()
                    raise JobCancelled()

                line_str = line.strip()
                if not line_str:
                    continue
                if not is_progress_line(line_str):
                    stderr_lines.append(line_str)

                frame, fps = parse_ffmpeg_progress(line_str)
                if frame is not None:
                    current_frame = frame
                if fps is not None:
                    current_fps = fps

                now = time.monotonic()
                if now - last_progress_time >= interval:
                    total = compute_effective_total(reported_total.get(), job)
                    eta = compute_eta(total, current_frame, current_fps)
                    self.reporter.progress(current_frame, total, current_fps, eta)
                    last_progress_time = now
        except (OSError, ValueError) as e:
            self.terminate()
            raise StreamError(f"Failed reading ffmpeg output: {e}")

        if is_cancelled():
            self.terminate()
            raise JobCancelled()

        t_vspipe.join()
        vspipe_code = self.vspipe_process.wait()
        ffmpeg_code = self.ffmpeg_process.wait()
        untrack_process(self.vspipe_process)
        untrack_process(self.ffmpeg_process)

        log_debug(f"[PIPELINE] vspipe exit {vspipe_code}, ffmpeg exit {ffmpeg_code}")
        check_exit_code("vspipe", vspipe_code)
        check_exit_code("ffmpeg", ffmpeg_code, "; ".join(stderr_lines) or None)

    # --------------------------------------------------------------------------
    # Preview
    # --------------------------------------------------------------------------

    def frame_rate(self, job):
        return job.input_frame_rate or self.config.get("default_frame_rate", 29.97)

    def extract_preview_clip(self, job, time_seconds, temp_dir):
        """Cuts a short lossless FFV1 clip centred on time_seconds for ffms2 to index."""
        num_frames = self.config.get("preview_frames", 11)
        frame_rate = self.frame_rate(job)
        start_time = max(0.0, time_seconds - (num_frames / 2.0) / frame_rate)

        clip_path = os.path.join(temp_dir, PREVIEW_CLIP_NAME)
        cmd = [
            self.locator.ffmpeg_path(),
            "-ss", f"{start_time:.3f}",
            "-i", job.input_path,
            "-vframes", str(num_frames),
            "-c:v", "ffv1", "-level", "1",
            "-an",
            clip_path,
        ]
        log_info(f"Extracting {num_frames} frames starting at {start_time:.3f}s")
        log_debug(f"[PREVIEW] ffmpeg command: {' '.join(cmd)}")
        try:
            code, _, err = run_command(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise SpawnError("ffmpeg", e)

        if code != 0:
            detail = err.decode("utf-8", errors="replace").strip() if err else None
            raise ProcessExitError("ffmpeg", normalize_exit_code(code), detail)
        if not os.path.exists(clip_path):
            raise ProcessExitError("ffmpeg", code, "preview clip was not created")
        return clip_path

    def preview_params(self, job, clip_path):
        frame_rate = self.frame_rate(job)
        return PreviewParams(
            video_path=clip_path,
            fps_num=int(frame_rate * 1000),
            fps_den=1000,
            field_based=2 if job.is_top_field_first() else 1,
        )

    def generate_preview(self, job, time_seconds):
        """Returns the restored frame nearest time_seconds as PNG bytes."""
        base_dir = self.config.get("temp_dir") or tempfile.gettempdir()
        temp_dir = os.path.join(base_dir, f"vapourbox_preview_{job.id}")
        script_path = None
        try:
            os.makedirs(temp_dir, exist_ok=True)
            clip_path = self.extract_preview_clip(job, time_seconds, temp_dir)
            script_path = self.generator.generate_preview(job, self.preview_params(job, clip_path))
            return self._run_preview_pipe(build_vspipe_args(self.locator.vspipe_path(), script_path))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
            remove_quietly(script_path)

    def generate_preview_frame(self, job, frame):
        """Renders one output frame of the full job script, without a temporary clip."""
        frame = int(frame)
        if job.effective_pipeline().deinterlace.doubles_rate:
            frame *= 2
        script_path = self.generator.generate(job)
        try:
            cmd = build_vspipe_args(self.locator.vspipe_path(), script_path, start=frame, end=frame)
            return self._run_preview_pipe(cmd)
        finally:
            remove_quietly(script_path)

    def _run_preview_pipe(self, vspipe_cmd):
        env = self.locator.build_environment()
        ffmpeg_cmd = [self.locator.ffmpeg_path()] + build_preview_encoder_args()

        self.vspipe_process = self._spawn(
            "vspipe", vspipe_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=env
        )
        try:
            self.ffmpeg_process = self._spawn(
                "ffmpeg", ffmpeg_cmd,
                stdin=self.vspipe_process.stdout,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                env=env,
            )
        except SpawnError:
            self.terminate()
            raise
        if self.vspipe_process.stdout:
            self.vspipe_process.stdout.close()

        vspipe_errors = []

        def collect_errors():
            try:
                for raw in iter(self.vspipe_process.stderr.readline, b''):
                    line_str = raw.decode("utf-8", errors="replace").strip()
                    if line_str and not line_str.startswith(INPUT_INFO_PREFIX):
                        log_debug(f"vspipe stderr: {line_str}")
                        vspipe_errors.append(line_str)
            except (ValueError, OSError):
                pass

        t_errors = threading.Thread(target=collect_errors)
        t_errors.daemon = True
        t_errors.start()

        try:
            png, _ = self.ffmpeg_process.communicate()
        except OSError as e:
            self.terminate()
            raise StreamError(f"Failed reading preview output: {e}")
        vspipe_code = self.vspipe_process.wait()
        t_errors.join()
        untrack_process(self.vspipe_process)
        untrack_process(self.ffmpeg_process)

        vspipe_code = normalize_exit_code(vspipe_code)
        if vspipe_code != 0:
            raise ProcessExitError("vspipe", vspipe_code, "\n".join(vspipe_errors) or None)
        ffmpeg_code = normalize_exit_code(self.ffmpeg_process.returncode)
        if ffmpeg_code != 0:
            raise ProcessExitError("ffmpeg", ffmpeg_code)
        return png
