import os
import copy
import yaml
from vapourbox.errors import ConfigError
from vapourbox.utils import log_debug, get_project_root

# ==============================================================================
#  CONFIGURATION
# ==============================================================================

CONFIG_ENV_VAR = "VAPOURBOX_CONFIG"

DEFAULTS = {
    "deps_dir": None,            # None -> search upward for deps/<platform>
    "template_dir": None,        # Extra directory searched before the bundled templates
    "temp_dir": None,            # None -> system temp directory
    "progress_interval_ms": 500,
    "preview_frames": 11,
    "default_frame_rate": 29.97,
    "terminate_grace_seconds": 2.0,
    "keep_scripts": False,
    "log_file": "vapourbox_worker.log",
    "debug_logging": False,
}


def default_config():
    return copy.deepcopy(DEFAULTS)


def resolve_config_path(path=None):
    if path:
        return str(path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return env_path
    return os.path.join(get_project_root(), "config.yaml")


def load_config(path=None):
    """
    Loads config.yaml and merges it over the defaults.
    A missing file is not an error; a malformed one is.
    """
    config = default_config()
    config_path = resolve_config_path(path)

    if not os.path.exists(config_path):
        log_debug(f"[CONFIG] No settings file at {config_path}, using defaults")
        return config

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error loading {config_path}: {exc}")
    except OSError as exc:
        raise ConfigError(f"Cannot read {config_path}: {exc}")

    if loaded is None:
        return config
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(loaded).__name__}")

    unknown = sorted(set(loaded) - set(DEFAULTS))
    if unknown:
        log_debug(f"[CONFIG] Ignoring unknown keys: {', '.join(unknown)}")

    for key in DEFAULTS:
        if key in loaded and loaded[key] is not None:
            config[key] = loaded[key]

    try:
        config["progress_interval_ms"] = int(config["progress_interval_ms"])
        config["preview_frames"] = int(config["preview_frames"])
        config["default_frame_rate"] = float(config["default_frame_rate"])
        config["terminate_grace_seconds"] = float(config["terminate_grace_seconds"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value in {config_path}: {exc}")

    if config["preview_frames"] < 1:
        raise ConfigError("preview_frames must be at least 1")

    log_debug(f"[CONFIG] Loaded settings from {config_path}")
    return config
