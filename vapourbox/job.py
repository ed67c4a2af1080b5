import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from vapourbox.errors import ConfigError
from vapourbox.models import Record, QTGMCParameters, RestorationPipeline

# ==============================================================================
# JOB DESCRIPTION
# ==============================================================================


class VideoCodec(str, Enum):
    H264 = "libx264"
    H265 = "libx265"
    FFV1 = "ffv1"
    PRORES_PROXY = "prores_ks -profile:v 0"
    PRORES_LT = "prores_ks -profile:v 1"
    PRORES_422 = "prores_ks -profile:v 2"
    PRORES_HQ = "prores_ks -profile:v 3"

    @property
    def encoder(self):
        return self.value.split()[0]

    @property
    def prores_profile(self):
        """Profile index for ProRes codecs, None otherwise."""
        if not self.value.startswith("prores_ks"):
            return None
        return int(self.value.rsplit(" ", 1)[-1])


class ContainerFormat(str, Enum):
    MP4 = "mp4"
    MOV = "mov"
    MKV = "mkv"
    AVI = "avi"


class FieldOrder(str, Enum):
    TFF = "tff"
    BFF = "bff"
    PROGRESSIVE = "progressive"
    UNKNOWN = "unknown"


@dataclass
class EncodingSettings(Record):
    codec: VideoCodec = VideoCodec.H264
    encoder_preset: str = "medium"
    quality: int = 18
    audio_copy: bool = True
    audio_codec: str = "aac"
    audio_bitrate: int = 192
    custom_ffmpeg_args: str = ""
    container: ContainerFormat = ContainerFormat.MP4


@dataclass
class VideoJob(Record):
    id: str = ""
    input_path: str = ""
    output_path: str = ""
    qtgmc_parameters: QTGMCParameters = field(default_factory=QTGMCParameters)
    restoration_pipeline: Optional[RestorationPipeline] = None
    encoding_settings: EncodingSettings = field(default_factory=EncodingSettings)
    detected_field_order: Optional[FieldOrder] = None
    total_frames: Optional[int] = None
    input_frame_rate: Optional[float] = None

    def effective_pipeline(self):
        if self.restoration_pipeline is not None:
            return self.restoration_pipeline
        return RestorationPipeline.from_legacy(self.qtgmc_parameters)

    def is_top_field_first(self):
        """Explicit TFF setting first, then the detected field order."""
        tff = self.effective_pipeline().deinterlace.tff
        if tff is not None:
            return tff
        if self.detected_field_order == FieldOrder.TFF:
            return True
        if self.detected_field_order == FieldOrder.BFF:
            return False
        return None

    def to_dict(self):
        out = super().to_dict()
        if self.restoration_pipeline is None:
            out.pop("restorationPipeline")
        return out


def load_job(path):
    """Reads a job description written by the controlling app."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read job file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid job JSON in {path}: {e}")

    try:
        job = VideoJob.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid job description in {path}: {e}")

    missing = [name for name in ("id", "input_path", "output_path") if not getattr(job, name)]
    if missing:
        raise ConfigError(f"Job file {path} is missing: {', '.join(missing)}")
    return job
