#!/usr/bin/env python3
"""
VAPOURBOX WORKER
Runs one restoration job (vspipe | ffmpeg) described by a JSON file.

Job mode reports progress as JSON lines on stdout.
Preview mode writes a single PNG to stdout (or --output) and nothing else.
"""
import os
import sys
import signal
import argparse
import threading

# Ensure the current directory is in sys.path so the package can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from vapourbox.config import load_config
from vapourbox.errors import VapourBoxError, JobCancelled
from vapourbox.job import load_job
from vapourbox.pipeline import PipelineExecutor
from vapourbox.progress import ProgressReporter, ConsoleReporter
from vapourbox.utils import configure_logging, log_debug, log_info, log_error, remove_quietly
from vapourbox.vspipe import ScriptGenerator

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="vapourbox-worker",
        description="Video restoration worker: VapourSynth filter chain piped into FFmpeg",
    )
    parser.add_argument("--config", required=True, help="Path to the job description JSON file")
    parser.add_argument("--preview", action="store_true", help="Render a single processed frame as PNG")
    parser.add_argument("--frame", type=int, default=0, help="Frame number for --preview (default: 0)")
    parser.add_argument("--single-frame", action="store_true",
                        help="Preview straight from the job script with vspipe --start/--end")
    parser.add_argument("--output", help="Write the preview PNG here instead of stdout")
    parser.add_argument("--settings", help="Path to config.yaml (default: next to the worker)")
    parser.add_argument("--console", action="store_true", help="Human readable progress bar instead of JSON")
    parser.add_argument("--debug", action="store_true", help="Verbose console logging")
    return parser.parse_args(argv)


def install_signal_handlers(cancel_event):
    """SIGINT/SIGTERM request a cancel; the executor notices on its next ffmpeg line."""
    def handler(signum, frame):
        log_debug(f"[SYSTEM] Received signal {signal.Signals(signum).name}. Cancelling...")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def run_job(job, config, reporter, cancel_event):
    """Generates the script and runs the pipeline. Returns the worker exit code."""
    script_path = None
    try:
        generator = ScriptGenerator.from_config(config)
        script_path = generator.generate(job)
        reporter.log("info", f"Generated script: {script_path}")

        with PipelineExecutor(reporter, config=config, generator=generator) as executor:
            executor.execute(script_path, job, cancel_event.is_set)

        reporter.complete(True, job.output_path)
        return EXIT_OK
    except JobCancelled:
        reporter.log("info", "Job cancelled by user")
        # Partial output is useless
        remove_quietly(job.output_path)
        reporter.complete(False)
        return EXIT_CANCELLED
    except VapourBoxError as e:
        reporter.error(str(e))
        reporter.complete(False)
        return EXIT_FAILED
    finally:
        if script_path and not config.get("keep_scripts"):
            remove_quietly(script_path)


def run_preview(job, config, args):
    """Preview mode: PNG bytes only on stdout, diagnostics go to stderr/log."""
    frame_rate = job.input_frame_rate or config["default_frame_rate"]
    time_seconds = args.frame / frame_rate
    log_info(f"Preview: frame {args.frame} at {time_seconds:.3f}s (fps: {frame_rate:.2f})")

    try:
        with PipelineExecutor(ProgressReporter(sys.stderr), config=config) as executor:
            if args.single_frame:
                png = executor.generate_preview_frame(job, args.frame)
            else:
                png = executor.generate_preview(job, time_seconds)
    except VapourBoxError as e:
        log_error(f"Error generating preview: {e}")
        return EXIT_FAILED

    if args.output:
        try:
            with open(args.output, "wb") as f:
                f.write(png)
        except OSError as e:
            log_error(f"Error writing preview to {args.output}: {e}")
            return EXIT_FAILED
    else:
        sys.stdout.buffer.write(png)
        sys.stdout.buffer.flush()
    return EXIT_OK


def main(argv=None):
    args = parse_args(argv)

    try:
        config = load_config(args.settings)
    except VapourBoxError as e:
        configure_logging(debug=args.debug)
        log_error(f"Error loading settings: {e}")
        return EXIT_FAILED

    configure_logging(config.get("log_file"), debug=args.debug or config.get("debug_logging"))

    if args.preview:
        try:
            job = load_job(args.config)
        except VapourBoxError as e:
            log_error(f"Error reading config: {e}")
            return EXIT_FAILED
        return run_preview(job, config, args)

    reporter = ConsoleReporter() if args.console else ProgressReporter()
    try:
        job = load_job(args.config)
    except VapourBoxError as e:
        reporter.error(str(e))
        reporter.complete(False)
        return EXIT_FAILED

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)
    return run_job(job, config, reporter, cancel_event)


if __name__ == "__main__":
    sys.exit(main())
