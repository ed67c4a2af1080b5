"""
Restoration parameter records.

Every stage is a plain dataclass whose field defaults mirror the defaults of
the filter it drives. The script generator compares against these values to
decide which arguments to leave out, so they must stay in sync with
vapourbox/vspipe.py.
"""
import math
import typing
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


# ==============================================================================
# JSON MAPPING
# ==============================================================================


def camel_case(name):
    """'de_crawl_y_thresh' -> 'deCrawlYThresh'; a trailing '_' is dropped."""
    head, *rest = name.rstrip("_").split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def json_key(f):
    return f.metadata.get("key") or camel_case(f.name)


def _unwrap_optional(hint):
    if typing.get_origin(hint) is typing.Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def _is_optional(hint):
    return typing.get_origin(hint) is typing.Union and type(None) in typing.get_args(hint)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce(key, hint, value):
    """Checks a decoded JSON value against a field's type hint."""
    if value is None:
        if _is_optional(hint):
            return None
        raise TypeError(f"{key} must not be null")
    hint = _unwrap_optional(hint)
    if not isinstance(hint, type):
        return value
    if issubclass(hint, Enum):
        return hint(value)
    if dataclasses.is_dataclass(hint):
        return hint.from_dict(value)
    if hint is bool:
        if not isinstance(value, bool):
            raise TypeError(f"{key} must be a boolean, got {value!r}")
        return value
    if hint is int:
        if _is_number(value) and float(value).is_integer():
            return int(value)
        raise TypeError(f"{key} must be an integer, got {value!r}")
    if hint is float:
        if not _is_number(value) or not math.isfinite(value):
            raise TypeError(f"{key} must be a finite number, got {value!r}")
        # JSON writes 2.0 as 2; keep float fields float so they render as '2.0'
        return float(value)
    if hint is str:
        # Ids may arrive as numbers
        if isinstance(value, str) or _is_number(value):
            return str(value)
        raise TypeError(f"{key} must be a string, got {value!r}")
    return value


class Record:
    """camelCase JSON loading shared by every parameter record."""

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise TypeError(f"{cls.__name__} expects an object, got {type(data).__name__}")
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            key = json_key(f)
            if key in data:
                kwargs[f.name] = _coerce(key, hints[f.name], data[key])
        return cls(**kwargs)

    def to_dict(self):
        out = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, Record):
                value = value.to_dict()
            out[json_key(f)] = value
        return out


def _key(name, default):
    return field(default=default, metadata={"key": name})


# ==============================================================================
# DEINTERLACE (QTGMC)
# ==============================================================================


class QTGMCPreset(str, Enum):
    PLACEBO = "Placebo"
    VERY_SLOW = "Very Slow"
    SLOWER = "Slower"
    SLOW = "Slow"
    MEDIUM = "Medium"
    FAST = "Fast"
    FASTER = "Faster"
    VERY_FAST = "Very Fast"
    SUPER_FAST = "Super Fast"
    ULTRA_FAST = "Ultra Fast"
    DRAFT = "Draft"


@dataclass
class QTGMCParameters(Record):
    enabled: bool = True
    preset: QTGMCPreset = QTGMCPreset.SLOWER
    input_type: int = 0
    tff: Optional[bool] = None
    fps_divisor: int = 1

    # Temporal radii & repair
    tr0: Optional[int] = None
    tr1: Optional[int] = None
    tr2: Optional[int] = None
    rep0: Optional[int] = None
    rep1: int = 0
    rep2: Optional[int] = None
    rep_chroma: bool = True

    # Interpolation
    edi_mode: Optional[str] = None
    nn_size: Optional[int] = None
    nn_neurons: Optional[int] = None
    edi_qual: int = 1
    edi_max_d: Optional[int] = None
    chroma_edi: str = ""

    # Motion analysis
    block_size: Optional[int] = None
    overlap: Optional[int] = None
    search: Optional[int] = None
    search_param: Optional[int] = None
    pel_search: Optional[int] = None
    chroma_motion: Optional[bool] = None
    true_motion: bool = False
    lambda_: Optional[int] = None
    lsad: Optional[int] = None
    p_new: Optional[int] = None
    p_level: Optional[int] = None
    global_motion: bool = True
    dct: int = 0
    sub_pel: Optional[int] = None
    sub_pel_interp: int = 2
    th_sad1: int = 640
    th_sad2: int = 256
    th_scd1: int = 180
    th_scd2: int = 98

    # Sharpening
    sharpness: Optional[float] = None
    s_mode: Optional[int] = None
    sl_mode: Optional[int] = None
    sl_rad: Optional[int] = None
    s_ovs: int = 0
    sv_thin: float = 0.0
    sbb: Optional[int] = None
    srch_clip_pp: Optional[int] = None

    # Noise
    noise_process: Optional[int] = None
    ez_denoise: Optional[float] = None
    ez_keep_grain: Optional[float] = None
    noise_preset: str = "Fast"
    denoiser: Optional[str] = None
    fft_threads: int = 1
    denoise_mc: Optional[bool] = None
    noise_tr: Optional[int] = None
    sigma: Optional[float] = None
    chroma_noise: bool = False
    show_noise: float = 0.0
    grain_restore: Optional[float] = None
    noise_restore: Optional[float] = None
    noise_deint: Optional[str] = None
    stabilize_noise: Optional[bool] = None

    # Source matching
    source_match: int = 0
    match_preset: Optional[str] = None
    match_edi: Optional[str] = None
    match_preset2: Optional[str] = None
    match_edi2: Optional[str] = None
    match_tr2: int = 1
    match_enhance: float = 0.5
    lossless: int = 0

    # Misc
    border: bool = False
    precise: Optional[bool] = None
    force_tr: int = 0
    str_: float = 2.0
    amp: float = 0.0625
    fast_ma: bool = False
    e_search_p: bool = False
    refine_motion: bool = False

    # GPU
    opencl: bool = False
    device: Optional[int] = None

    @property
    def doubles_rate(self):
        """True when QTGMC outputs one frame per field."""
        return self.enabled and self.fps_divisor == 1


# ==============================================================================
# NOISE REDUCTION
# ==============================================================================


class NoiseReductionMethod(str, Enum):
    SM_DEGRAIN = "smDegrain"
    MC_TEMPORAL_DENOISE = "mcTemporalDenoise"
    QTGMC_BUILTIN = "qtgmcBuiltin"


class NoiseReductionPreset(str, Enum):
    OFF = "off"
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    CUSTOM = "custom"


@dataclass
class NoiseReductionParameters(Record):
    enabled: bool = False
    preset: NoiseReductionPreset = NoiseReductionPreset.OFF
    method: NoiseReductionMethod = NoiseReductionMethod.SM_DEGRAIN

    sm_degrain_tr: int = 2
    sm_degrain_th_sad: int = _key("smDegrainThSAD", 300)
    sm_degrain_th_sadc: int = _key("smDegrainThSADC", 150)
    sm_degrain_refine: bool = True
    sm_degrain_prefilter: int = 2

    mc_temporal_sigma: float = 4.0
    mc_temporal_radius: int = 2
    mc_temporal_profile: str = "fast"

    qtgmc_ez_denoise: float = 0.0
    qtgmc_ez_keep_grain: float = 0.0

    @classmethod
    def from_preset(cls, preset):
        """Parameter set the controlling app applies when a preset is picked."""
        preset = NoiseReductionPreset(preset)
        if preset == NoiseReductionPreset.OFF:
            return cls(enabled=False, preset=preset)
        strengths = {
            NoiseReductionPreset.LIGHT: (1, 200, 100),
            NoiseReductionPreset.MODERATE: (2, 300, 150),
            NoiseReductionPreset.HEAVY: (3, 500, 250),
        }
        if preset in strengths:
            tr, th_sad, th_sadc = strengths[preset]
            return cls(enabled=True, preset=preset, method=NoiseReductionMethod.SM_DEGRAIN,
                       sm_degrain_tr=tr, sm_degrain_th_sad=th_sad, sm_degrain_th_sadc=th_sadc)
        return cls(enabled=True, preset=preset)


# ==============================================================================
# DEHALO / DEBLOCK / DEBAND / SHARPEN
# ==============================================================================


class DehaloMethod(str, Enum):
    DEHALO_ALPHA = "DeHalo_alpha"
    FINE_DEHALO = "FineDehalo"
    YAHR = "YAHR"


@dataclass
class DehaloParameters(Record):
    enabled: bool = False
    method: DehaloMethod = DehaloMethod.DEHALO_ALPHA
    rx: float = 2.0
    ry: float = 2.0
    dark_str: float = 1.0
    bright_str: float = 1.0
    low_threshold: int = 50
    high_threshold: int = 100
    yahr_blur: int = 2
    yahr_depth: int = 32


class DeblockMethod(str, Enum):
    DEBLOCK_QED = "Deblock_QED"
    DEBLOCK = "Deblock"


@dataclass
class DeblockParameters(Record):
    enabled: bool = False
    method: DeblockMethod = DeblockMethod.DEBLOCK_QED
    quant1: int = 24
    quant2: int = 26
    a_offset1: int = 1
    a_offset2: int = 1
    block_size: int = 8
    overlap: int = 4


@dataclass
class DebandParameters(Record):
    enabled: bool = False
    range: int = 15
    y: int = 32
    cb: int = 32
    cr: int = 32
    grain_y: int = 24
    grain_c: int = 24
    dynamic_grain: bool = True
    output_depth: int = 16


class SharpenMethod(str, Enum):
    LSFMOD = "LSFmod"
    CAS = "CAS"


@dataclass
class SharpenParameters(Record):
    enabled: bool = False
    method: SharpenMethod = SharpenMethod.LSFMOD
    strength: int = 100
    overshoot: int = 1
    undershoot: int = 1
    soft_edge: int = 0
    cas_sharpness: float = 0.5


# ==============================================================================
# CHROMA / COLOR
# ==============================================================================


class ChromaFixPreset(str, Enum):
    OFF = "off"
    VHS_CLEANUP = "vhsCleanup"
    BROADCAST_FIX = "broadcastFix"
    ANALOG_REPAIR = "analogRepair"
    CUSTOM = "custom"


@dataclass
class ChromaFixParameters(Record):
    enabled: bool = False
    preset: ChromaFixPreset = ChromaFixPreset.OFF

    apply_chroma_bleeding_fix: bool = False
    chroma_bleed_cx: int = 4
    chroma_bleed_cy: int = 4
    chroma_bleed_c_blur: float = 0.7
    chroma_bleed_strength: float = 1.0

    apply_de_crawl: bool = False
    de_crawl_y_thresh: int = 10
    de_crawl_c_thresh: int = 10
    de_crawl_max_diff: int = 50

    apply_vinverse: bool = False
    vinverse_sstr: float = 2.7
    vinverse_amnt: int = 255
    vinverse_scl: int = 12

    @classmethod
    def from_preset(cls, preset):
        preset = ChromaFixPreset(preset)
        if preset == ChromaFixPreset.OFF:
            return cls(enabled=False, preset=preset)
        if preset == ChromaFixPreset.VHS_CLEANUP:
            return cls(enabled=True, preset=preset,
                       apply_chroma_bleeding_fix=True, chroma_bleed_c_blur=0.8, chroma_bleed_strength=0.8,
                       apply_vinverse=True, vinverse_sstr=2.7)
        if preset == ChromaFixPreset.BROADCAST_FIX:
            return cls(enabled=True, preset=preset,
                       apply_de_crawl=True, de_crawl_y_thresh=12, de_crawl_c_thresh=12)
        if preset == ChromaFixPreset.ANALOG_REPAIR:
            return cls(enabled=True, preset=preset,
                       apply_chroma_bleeding_fix=True, chroma_bleed_c_blur=1.0, chroma_bleed_strength=1.0,
                       apply_de_crawl=True, apply_vinverse=True)
        return cls(enabled=True, preset=preset)


class ColorCorrectionPreset(str, Enum):
    OFF = "off"
    BROADCAST_SAFE = "broadcastSafe"
    ENHANCE_COLORS = "enhanceColors"
    DESATURATE = "desaturate"
    CUSTOM = "custom"


@dataclass
class ColorCorrectionParameters(Record):
    enabled: bool = False
    preset: ColorCorrectionPreset = ColorCorrectionPreset.OFF
    brightness: float = 0.0
    contrast: float = 1.0
    hue: float = 0.0
    saturation: float = 1.0
    coring: bool = False
    apply_levels: bool = False
    input_low: int = 0
    input_high: int = 255
    output_low: int = 0
    output_high: int = 255
    gamma: float = 1.0

    @classmethod
    def from_preset(cls, preset):
        preset = ColorCorrectionPreset(preset)
        if preset == ColorCorrectionPreset.OFF:
            return cls(enabled=False, preset=preset)
        if preset == ColorCorrectionPreset.BROADCAST_SAFE:
            return cls(enabled=True, preset=preset, coring=True, apply_levels=True,
                       input_low=16, input_high=235, output_low=16, output_high=235)
        if preset == ColorCorrectionPreset.ENHANCE_COLORS:
            return cls(enabled=True, preset=preset, contrast=1.1, saturation=1.15,
                       apply_levels=True, input_low=8, input_high=247, gamma=0.95)
        if preset == ColorCorrectionPreset.DESATURATE:
            return cls(enabled=True, preset=preset, saturation=0.0)
        return cls(enabled=True, preset=preset)


# ==============================================================================
# CROP / RESIZE
# ==============================================================================


class ResizeKernel(str, Enum):
    SPLINE36 = "spline36"
    LANCZOS = "lanczos"
    BICUBIC = "bicubic"
    BILINEAR = "bilinear"
    NNEDI3 = "nnedi3"
    EEDI3 = "eedi3"

    @property
    def is_edi(self):
        return self in (ResizeKernel.NNEDI3, ResizeKernel.EEDI3)


class UpscaleMethod(str, Enum):
    NNEDI3_RPOW2 = "nnedi3Rpow2"
    EEDI3_RPOW2 = "eedi3Rpow2"
    SPLINE36 = "spline36"


class CropResizePreset(str, Enum):
    OFF = "off"
    REMOVE_OVERSCAN = "removeOverscan"
    RESIZE_720P = "resize720p"
    RESIZE_1080P = "resize1080p"
    RESIZE_4K = "resize4k"
    CUSTOM = "custom"


@dataclass
class CropResizeParameters(Record):
    enabled: bool = False
    preset: CropResizePreset = CropResizePreset.OFF

    crop_enabled: bool = False
    crop_left: int = 0
    crop_right: int = 0
    crop_top: int = 0
    crop_bottom: int = 0

    resize_enabled: bool = False
    target_width: Optional[int] = None
    target_height: Optional[int] = None
    kernel: ResizeKernel = ResizeKernel.SPLINE36
    maintain_aspect: bool = True

    use_integer_upscale: bool = False
    upscale_method: UpscaleMethod = UpscaleMethod.NNEDI3_RPOW2
    upscale_factor: int = 2

    @property
    def crops(self):
        return self.enabled and self.crop_enabled

    @property
    def resizes(self):
        return self.enabled and self.resize_enabled

    @classmethod
    def from_preset(cls, preset):
        preset = CropResizePreset(preset)
        if preset == CropResizePreset.OFF:
            return cls(enabled=False, preset=preset)
        if preset == CropResizePreset.REMOVE_OVERSCAN:
            return cls(enabled=True, preset=preset, crop_enabled=True,
                       crop_left=8, crop_right=8, crop_top=8, crop_bottom=8)
        targets = {
            CropResizePreset.RESIZE_720P: (1280, 720),
            CropResizePreset.RESIZE_1080P: (1920, 1080),
        }
        if preset in targets:
            width, height = targets[preset]
            return cls(enabled=True, preset=preset, resize_enabled=True,
                       target_width=width, target_height=height,
                       kernel=ResizeKernel.SPLINE36, maintain_aspect=True)
        if preset == CropResizePreset.RESIZE_4K:
            return cls(enabled=True, preset=preset, resize_enabled=True, use_integer_upscale=True,
                       upscale_method=UpscaleMethod.NNEDI3_RPOW2, upscale_factor=2)
        return cls(enabled=True, preset=preset)


# ==============================================================================
# PIPELINE
# ==============================================================================


class PassType(str, Enum):
    DEINTERLACE = "deinterlace"
    NOISE_REDUCTION = "noiseReduction"
    DEHALO = "dehalo"
    DEBLOCK = "deblock"
    DEBAND = "deband"
    SHARPEN = "sharpen"
    CHROMA_FIXES = "chromaFixes"
    COLOR_CORRECTION = "colorCorrection"
    CROP_RESIZE = "cropResize"


@dataclass
class RestorationPipeline(Record):
    deinterlace: QTGMCParameters = field(default_factory=QTGMCParameters)
    noise_reduction: NoiseReductionParameters = field(default_factory=NoiseReductionParameters)
    dehalo: DehaloParameters = field(default_factory=DehaloParameters)
    deblock: DeblockParameters = field(default_factory=DeblockParameters)
    deband: DebandParameters = field(default_factory=DebandParameters)
    sharpen: SharpenParameters = field(default_factory=SharpenParameters)
    color_correction: ColorCorrectionParameters = field(default_factory=ColorCorrectionParameters)
    chroma_fixes: ChromaFixParameters = field(default_factory=ChromaFixParameters)
    crop_resize: CropResizeParameters = field(default_factory=CropResizeParameters)

    @classmethod
    def from_legacy(cls, qtgmc):
        """Deinterlace-only pipeline built from a single QTGMC parameter set."""
        return cls(deinterlace=dataclasses.replace(qtgmc))

    def enabled_passes(self) -> List[PassType]:
        # Crop runs first on the original frame, resize last on the restored one
        passes = []
        if self.crop_resize.crops:
            passes.append(PassType.CROP_RESIZE)
        stages = [
            (self.deinterlace, PassType.DEINTERLACE),
            (self.noise_reduction, PassType.NOISE_REDUCTION),
            (self.dehalo, PassType.DEHALO),
            (self.deblock, PassType.DEBLOCK),
            (self.deband, PassType.DEBAND),
            (self.sharpen, PassType.SHARPEN),
            (self.chroma_fixes, PassType.CHROMA_FIXES),
            (self.color_correction, PassType.COLOR_CORRECTION),
        ]
        passes.extend(pass_type for params, pass_type in stages if params.enabled)
        if self.crop_resize.resizes and PassType.CROP_RESIZE not in passes:
            passes.append(PassType.CROP_RESIZE)
        return passes

    def is_pass_enabled(self, pass_type):
        return PassType(pass_type) in self.enabled_passes()
