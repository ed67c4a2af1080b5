import os
import shutil
import platform

from vapourbox.errors import DependencyNotFoundError
from vapourbox.utils import log_debug, get_project_root

# ==============================================================================
# BUNDLED TOOLS (vspipe / ffmpeg / portable Python)
# ==============================================================================
#
# Layout of a deps folder:
#   deps/<platform>/vapoursynth/vspipe[.exe]   (+ plugins, Lib/site-packages on Windows)
#   deps/<platform>/ffmpeg/ffmpeg[.exe]
#   deps/<platform>/python/...                 (macOS framework / Linux prefix)

PLATFORM_DIRS = ("windows-x64", "windows-arm64", "macos-arm64", "macos-x64", "linux-x64")

# Interpreter versions shipped in deps/<platform>/python, newest first
BUNDLED_PYTHON_VERSIONS = ("3.14", "3.11")


def detect_platform(system=None, machine=None):
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arm = machine in ("arm64", "aarch64")
    if system == "windows":
        return "windows-arm64" if arm else "windows-x64"
    if system == "darwin":
        return "macos-arm64" if arm else "macos-x64"
    return "linux-x64"


def find_deps_directory(start_dir):
    """Walks upward from start_dir looking for deps/<known platform>."""
    current = os.path.abspath(start_dir)
    while True:
        deps_dir = os.path.join(current, "deps")
        if os.path.isdir(deps_dir):
            if any(os.path.isdir(os.path.join(deps_dir, p)) for p in PLATFORM_DIRS):
                return deps_dir
        # macOS app bundle
        contents_deps = os.path.join(current, "Contents", "deps")
        if os.path.isdir(contents_deps):
            return contents_deps
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return "deps"


class DependencyLocator:
    def __init__(self, base_path=None, platform_name=None):
        self.platform = platform_name or detect_platform()
        self.base_path = base_path or find_deps_directory(get_project_root())
        log_debug(f"[DEPS] Using {self.base_path} ({self.platform})")

    @classmethod
    def from_config(cls, config):
        return cls(base_path=config.get("deps_dir"))

    @property
    def is_windows(self):
        return self.platform.startswith("windows")

    @property
    def is_macos(self):
        return self.platform.startswith("macos")

    @property
    def platform_dir(self):
        return os.path.join(self.base_path, self.platform)

    def _resolve(self, tool, candidates):
        for path in candidates:
            if os.path.isfile(path):
                return path
        # Try system PATH as last resort
        system_path = shutil.which(tool)
        if system_path:
            return system_path
        raise DependencyNotFoundError(tool, candidates[0] if candidates else tool)

    def vspipe_path(self):
        vs_dir = os.path.join(self.platform_dir, "vapoursynth")
        if self.is_windows:
            candidates = [os.path.join(vs_dir, "VSPipe.exe"), os.path.join(vs_dir, "vspipe.exe")]
        else:
            candidates = [os.path.join(vs_dir, "vspipe")]
        return self._resolve("vspipe", candidates)

    def ffmpeg_path(self):
        exe_name = "ffmpeg.exe" if self.is_windows else "ffmpeg"
        return self._resolve("ffmpeg", [os.path.join(self.platform_dir, "ffmpeg", exe_name)])

    def python_home(self):
        if self.is_windows:
            # Python is embedded in the portable VapourSynth folder
            return os.path.join(self.platform_dir, "vapoursynth")
        if self.is_macos:
            return os.path.join(self.platform_dir, "python", "Python.framework", "Versions", "Current")
        return os.path.join(self.platform_dir, "python")

    def python_path(self):
        if self.is_windows:
            paths = [os.path.join(self.platform_dir, "vapoursynth", "Lib", "site-packages")]
            return ";".join(paths)
        paths = [os.path.join(self.platform_dir, "python-packages")]
        for version in BUNDLED_PYTHON_VERSIONS:
            paths.append(os.path.join(self.python_home(), "lib", f"python{version}", "site-packages"))
        return ":".join(paths)

    def vapoursynth_plugin_path(self):
        plugin_dir = "vs-plugins" if self.is_windows else "plugins"
        return os.path.join(self.platform_dir, "vapoursynth", plugin_dir)

    def nnedi3cl_weights_path(self):
        if self.is_windows:
            return os.path.join(self.vapoursynth_plugin_path(), "nnedi3_weights.bin")
        return os.path.join(self.platform_dir, "resources", "NNEDI3CL", "nnedi3_weights.bin")

    def bin_path(self):
        paths = [
            os.path.join(self.platform_dir, "ffmpeg"),
            os.path.join(self.platform_dir, "vapoursynth"),
        ]
        if not self.is_windows:
            paths.append(os.path.join(self.python_home(), "bin"))
        return (";" if self.is_windows else ":").join(paths)

    def build_environment(self, base_env=None):
        """Derived environment variables for vspipe and ffmpeg (portable layout)."""
        env = dict(os.environ if base_env is None else base_env)
        sep = ";" if self.is_windows else ":"

        # Keep the user's site-packages out of the embedded interpreter
        env["PYTHONNOUSERSITE"] = "1"
        env["PYTHONHOME"] = self.python_home()
        env["PYTHONPATH"] = self.python_path()
        env["VAPOURSYNTH_PLUGIN_PATH"] = self.vapoursynth_plugin_path()
        env["NNEDI3CL_WEIGHTS_PATH"] = self.nnedi3cl_weights_path()

        existing = env.get("PATH", "")
        env["PATH"] = self.bin_path() + (sep + existing if existing else "")

        if self.is_macos:
            env["DYLD_LIBRARY_PATH"] = os.path.join(self.platform_dir, "vapoursynth")
        return env
