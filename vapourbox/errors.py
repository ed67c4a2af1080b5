"""Worker exceptions. Every fatal condition is a VapourBoxError subclass."""


class VapourBoxError(Exception):
    """Base exception for all worker errors."""

    def __init__(self, message, hint=None):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self):
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


# Discovery
class ConfigError(VapourBoxError):
    """Settings file or job description could not be read."""


class TemplateLoadError(VapourBoxError):
    """No template file found and no built-in fallback for it."""


class WriteError(VapourBoxError):
    """Generated script could not be persisted."""


class DependencyNotFoundError(VapourBoxError):
    """vspipe or ffmpeg could not be resolved."""

    def __init__(self, tool, searched):
        super().__init__(
            f"{tool} not found at {searched}",
            "install it into the deps folder or add it to PATH",
        )
        self.tool = tool


# Runtime
class SpawnError(VapourBoxError):
    """The OS failed to start a child process."""

    def __init__(self, stage, error):
        super().__init__(f"Failed to spawn {stage}: {error}")
        self.stage = stage


class StreamError(VapourBoxError):
    """Unexpected I/O failure on a child pipe."""


class ProcessExitError(VapourBoxError):
    """A stage exited with a code outside the tolerated set."""

    def __init__(self, stage, code, detail=None):
        super().__init__(f"{stage} exited with code {code}", detail)
        self.stage = stage
        self.code = code


class JobCancelled(VapourBoxError):
    """Cancellation was requested while the pipeline was running."""

    def __init__(self, message="Job cancelled"):
        super().__init__(message)
