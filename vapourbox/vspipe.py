import os
import tempfile
from collections import namedtuple

from vapourbox.errors import WriteError
from vapourbox.models import (
    NoiseReductionMethod, DehaloMethod, DeblockMethod, SharpenMethod,
    ResizeKernel, UpscaleMethod,
)
from vapourbox.template import (
    Field, field_value, load_template, substitute_fields, select_method, toggle_block,
    keep_block, remove_block, replace_required,
    format_int, format_double, format_bool, format_str, escape_path,
)
from vapourbox.utils import log_debug, log_error, parse_input_info

# ==============================================================================
# VAPOURSYNTH SCRIPT GENERATOR
# ==============================================================================

PIPELINE_TEMPLATE = "pipeline_template.vpy"
PREVIEW_TEMPLATE = "preview_template.vpy"
STAGES_TEMPLATE = "restoration_stages.vpy"

PACKAGE_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

# Deinterlace-only chain used when no template files ship with the worker
EMBEDDED_STAGES = """{{#DEINTERLACE}}
clip = haf.QTGMC(
    clip,
    Preset="{{PRESET}}",
{{#TFF}}
    TFF={{TFF}},
{{/TFF}}
{{#FPS_DIVISOR}}
    FPSDivisor={{FPS_DIVISOR}},
{{/FPS_DIVISOR}}
{{#OPENCL}}
    opencl={{OPENCL}},
{{/OPENCL}}
)
{{/DEINTERLACE}}
"""

EMBEDDED_PIPELINE_TEMPLATE = """import sys
import vapoursynth as vs
import havsfunc as haf

core = vs.core

clip = core.ffms2.Source(source="{{INPUT_PATH}}")

input_fps_num = clip.fps.numerator
input_fps_den = clip.fps.denominator
total_frames = clip.num_frames
print("INPUT_INFO:frames=%d,fps_num=%d,fps_den=%d" % (total_frames, input_fps_num, input_fps_den), file=sys.stderr)
sys.stderr.flush()

{{RESTORATION_STAGES}}
clip.set_output()
"""

NR_BLOCKS = {
    NoiseReductionMethod.SM_DEGRAIN: "NR_SMDEGRAIN",
    NoiseReductionMethod.MC_TEMPORAL_DENOISE: "NR_MCTD",
    NoiseReductionMethod.QTGMC_BUILTIN: "NR_QTGMC",
}
DEHALO_BLOCKS = {
    DehaloMethod.DEHALO_ALPHA: "DEHALO_ALPHA",
    DehaloMethod.FINE_DEHALO: "FINE_DEHALO",
    DehaloMethod.YAHR: "YAHR",
}
DEBLOCK_BLOCKS = {
    DeblockMethod.DEBLOCK_QED: "DEBLOCK_QED",
    DeblockMethod.DEBLOCK: "DEBLOCK_SIMPLE",
}
SHARPEN_BLOCKS = {
    SharpenMethod.LSFMOD: "SHARPEN_LSF",
    SharpenMethod.CAS: "SHARPEN_CAS",
}
UPSCALE_BLOCKS = {
    UpscaleMethod.NNEDI3_RPOW2: "UPSCALE_NNEDI3",
    UpscaleMethod.EEDI3_RPOW2: "UPSCALE_EEDI3",
    UpscaleMethod.SPLINE36: "UPSCALE_SPLINE36",
}
RESIZE_FUNCTIONS = {
    ResizeKernel.SPLINE36: "core.resize.Spline36",
    ResizeKernel.LANCZOS: "core.resize.Lanczos",
    ResizeKernel.BICUBIC: "core.resize.Bicubic",
    ResizeKernel.BILINEAR: "core.resize.Bilinear",
    # EDI kernels double first, then land on the target with Spline36
    ResizeKernel.NNEDI3: "core.resize.Spline36",
    ResizeKernel.EEDI3: "core.resize.Spline36",
}
EDI_FUNCTIONS = {
    ResizeKernel.NNEDI3: "nnedi3_rpow2",
    ResizeKernel.EEDI3: "eedi3_rpow2",
}

PreviewParams = namedtuple("PreviewParams", ["video_path", "fps_num", "fps_den", "field_based"])


def default_template_dirs(extra_dir=None):
    return [extra_dir, PACKAGE_TEMPLATE_DIR, os.path.join(os.getcwd(), "templates")]


# ==============================================================================
# PER-STAGE FIELD TABLES
# ==============================================================================
# Defaults here are the filter defaults: a value equal to them is left out of
# the call so the filter falls back to its own behaviour.


def deinterlace_fields(p, tff):
    return [
        Field("TFF", tff, None, format_bool),
        Field("INPUT_TYPE", p.input_type, 0, format_int),
        Field("FPS_DIVISOR", p.fps_divisor, 1, format_int),
        # Quality
        Field("TR0", p.tr0, None, format_int),
        Field("TR1", p.tr1, None, format_int),
        Field("TR2", p.tr2, None, format_int),
        Field("REP0", p.rep0, None, format_int),
        Field("REP1", p.rep1, 0, format_int),
        Field("REP2", p.rep2, None, format_int),
        Field("REP_CHROMA", p.rep_chroma, True, format_bool),
        # Interpolation
        Field("EDI_MODE", p.edi_mode, None, format_str),
        Field("NN_SIZE", p.nn_size, None, format_int),
        Field("NN_NEURONS", p.nn_neurons, None, format_int),
        Field("EDI_QUAL", p.edi_qual, 1, format_int),
        Field("EDI_MAX_D", p.edi_max_d, None, format_int),
        Field("CHROMA_EDI", p.chroma_edi, "", format_str),
        # Motion analysis
        Field("BLOCK_SIZE", p.block_size, None, format_int),
        Field("OVERLAP", p.overlap, None, format_int),
        Field("SEARCH", p.search, None, format_int),
        Field("SEARCH_PARAM", p.search_param, None, format_int),
        Field("PEL_SEARCH", p.pel_search, None, format_int),
        Field("CHROMA_MOTION", p.chroma_motion, None, format_bool),
        Field("TRUE_MOTION", p.true_motion, False, format_bool),
        Field("LAMBDA", p.lambda_, None, format_int),
        Field("LSAD", p.lsad, None, format_int),
        Field("P_NEW", p.p_new, None, format_int),
        Field("P_LEVEL", p.p_level, None, format_int),
        Field("GLOBAL_MOTION", p.global_motion, True, format_bool),
        Field("DCT", p.dct, 0, format_int),
        Field("SUB_PEL", p.sub_pel, None, format_int),
        Field("SUB_PEL_INTERP", p.sub_pel_interp, 2, format_int),
        Field("TH_SAD1", p.th_sad1, 640, format_int),
        Field("TH_SAD2", p.th_sad2, 256, format_int),
        Field("TH_SCD1", p.th_scd1, 180, format_int),
        Field("TH_SCD2", p.th_scd2, 98, format_int),
        # Sharpening
        Field("SHARPNESS", p.sharpness, None, format_double),
        Field("S_MODE", p.s_mode, None, format_int),
        Field("SL_MODE", p.sl_mode, None, format_int),
        Field("SL_RAD", p.sl_rad, None, format_int),
        Field("S_OVS", p.s_ovs, 0, format_int),
        Field("SV_THIN", p.sv_thin, 0.0, format_double),
        Field("SBB", p.sbb, None, format_int),
        Field("SRCH_CLIP_PP", p.srch_clip_pp, None, format_int),
        # Noise
        Field("NOISE_PROCESS", p.noise_process, None, format_int),
        Field("EZ_DENOISE", p.ez_denoise, None, format_double),
        Field("EZ_KEEP_GRAIN", p.ez_keep_grain, None, format_double),
        Field("NOISE_PRESET", p.noise_preset, "Fast", format_str),
        Field("DENOISER", p.denoiser, None, format_str),
        Field("FFT_THREADS", p.fft_threads, 1, format_int),
        Field("DENOISE_MC", p.denoise_mc, None, format_bool),
        Field("NOISE_TR", p.noise_tr, None, format_int),
        Field("SIGMA", p.sigma, None, format_double),
        Field("CHROMA_NOISE", p.chroma_noise, False, format_bool),
        Field("SHOW_NOISE", p.show_noise, 0.0, format_double),
        Field("GRAIN_RESTORE", p.grain_restore, None, format_double),
        Field("NOISE_RESTORE", p.noise_restore, None, format_double),
        Field("NOISE_DEINT", p.noise_deint, None, format_str),
        Field("STABILIZE_NOISE", p.stabilize_noise, None, format_bool),
        # Source matching
        Field("SOURCE_MATCH", p.source_match, 0, format_int),
        Field("MATCH_PRESET", p.match_preset, None, format_str),
        Field("MATCH_EDI", p.match_edi, None, format_str),
        Field("MATCH_PRESET2", p.match_preset2, None, format_str),
        Field("MATCH_EDI2", p.match_edi2, None, format_str),
        Field("MATCH_TR2", p.match_tr2, 1, format_int),
        Field("MATCH_ENHANCE", p.match_enhance, 0.5, format_double, 0.001),
        Field("LOSSLESS", p.lossless, 0, format_int),
        # Misc
        Field("BORDER", p.border, False, format_bool),
        Field("PRECISE", p.precise, None, format_bool),
        Field("FORCE_TR", p.force_tr, 0, format_int),
        Field("STR", p.str_, 2.0, format_double),
        Field("AMP", p.amp, 0.0625, format_double),
        Field("FAST_MA", p.fast_ma, False, format_bool),
        Field("E_SEARCH_P", p.e_search_p, False, format_bool),
        Field("REFINE_MOTION", p.refine_motion, False, format_bool),
        # havsfunc picks its GPU code path from this, so it is always written
        Field("OPENCL", p.opencl, None, format_bool),
        Field("DEVICE", p.device, None, format_int),
    ]


def noise_reduction_fields(p, qtgmc_preset):
    return [
        Field("NR_TR", p.sm_degrain_tr, 2, format_int),
        Field("NR_THSAD", p.sm_degrain_th_sad, 300, format_int),
        Field("NR_THSADC", p.sm_degrain_th_sadc, 150, format_int),
        Field("NR_REFINE", p.sm_degrain_refine, None, format_bool),
        Field("NR_PREFILTER", p.sm_degrain_prefilter, None, format_int),
        Field("MCTD_SIGMA", p.mc_temporal_sigma, None, format_double),
        Field("MCTD_RADIUS", p.mc_temporal_radius, None, format_int),
        Field("MCTD_PROFILE", p.mc_temporal_profile, None, format_str),
        Field("NR_QTGMC_PRESET", qtgmc_preset, None, format_str),
        Field("NR_EZ_DENOISE", p.qtgmc_ez_denoise, 0.0, format_double),
        Field("NR_EZ_KEEP_GRAIN", p.qtgmc_ez_keep_grain, 0.0, format_double),
    ]


def dehalo_fields(p):
    return [
        Field("DEHALO_RX", p.rx, 2.0, format_double),
        Field("DEHALO_RY", p.ry, 2.0, format_double),
        Field("DEHALO_DARK", p.dark_str, 1.0, format_double),
        Field("DEHALO_BRIGHT", p.bright_str, 1.0, format_double),
        Field("DEHALO_LOW", p.low_threshold, 50, format_int),
        Field("DEHALO_HIGH", p.high_threshold, 100, format_int),
        Field("YAHR_BLUR", p.yahr_blur, 2, format_int),
        Field("YAHR_DEPTH", p.yahr_depth, 32, format_int),
    ]


def deblock_fields(p):
    return [
        Field("DEBLOCK_QUANT1", p.quant1, 24, format_int),
        Field("DEBLOCK_QUANT2", p.quant2, 26, format_int),
        Field("DEBLOCK_AOFF1", p.a_offset1, 1, format_int),
        Field("DEBLOCK_AOFF2", p.a_offset2, 1, format_int),
        # Single-pass Deblock takes the first-pass strength
        Field("DEBLOCK_QUANT", p.quant1, None, format_int),
        Field("DEBLOCK_AOFFSET", p.a_offset1, None, format_int),
    ]


def deband_fields(p):
    return [
        Field("DEBAND_RANGE", p.range, None, format_int),
        Field("DEBAND_Y", p.y, None, format_int),
        Field("DEBAND_CB", p.cb, None, format_int),
        Field("DEBAND_CR", p.cr, None, format_int),
        Field("DEBAND_GRAIN_Y", p.grain_y, None, format_int),
        Field("DEBAND_GRAIN_C", p.grain_c, None, format_int),
        Field("DEBAND_DYNAMIC_GRAIN", p.dynamic_grain, None, format_bool),
        Field("DEBAND_OUTPUT_DEPTH", p.output_depth, None, format_int),
    ]


def sharpen_fields(p):
    return [
        Field("LSF_STRENGTH", p.strength, 100, format_int),
        Field("LSF_OVERSHOOT", p.overshoot, 1, format_int),
        Field("LSF_UNDERSHOOT", p.undershoot, 1, format_int),
        Field("LSF_SOFT", p.soft_edge, 0, format_int),
        Field("CAS_SHARPNESS", p.cas_sharpness, 0.5, format_double),
    ]


def chroma_fields(p):
    return [
        Field("BLEED_CX", p.chroma_bleed_cx, None, format_int),
        Field("BLEED_CY", p.chroma_bleed_cy, None, format_int),
        Field("BLEED_BLUR", p.chroma_bleed_c_blur, None, format_double),
        Field("BLEED_STRENGTH", p.chroma_bleed_strength, None, format_double),
        Field("DECRAWL_YTHRESH", p.de_crawl_y_thresh, None, format_int),
        Field("DECRAWL_CTHRESH", p.de_crawl_c_thresh, None, format_int),
        Field("DECRAWL_MAXDIFF", p.de_crawl_max_diff, None, format_int),
        Field("VINVERSE_SSTR", p.vinverse_sstr, None, format_double),
        Field("VINVERSE_AMNT", p.vinverse_amnt, None, format_int),
        Field("VINVERSE_SCL", p.vinverse_scl, None, format_int),
    ]


def color_tweak_fields(p):
    return [
        Field("COLOR_HUE", p.hue, 0.0, format_double),
        Field("COLOR_SAT", p.saturation, 1.0, format_double),
        Field("COLOR_BRIGHT", p.brightness, 0.0, format_double),
        Field("COLOR_CONT", p.contrast, 1.0, format_double),
        Field("COLOR_CORING", p.coring, False, format_bool),
    ]


def color_levels_fields(p):
    return [
        Field("LEVELS_IN_LOW", p.input_low, None, format_int),
        Field("LEVELS_IN_HIGH", p.input_high, None, format_int),
        Field("LEVELS_GAMMA", p.gamma, None, format_double),
        Field("LEVELS_OUT_LOW", p.output_low, None, format_int),
        Field("LEVELS_OUT_HIGH", p.output_high, None, format_int),
    ]


def crop_fields(p):
    return [
        Field("CROP_LEFT", p.crop_left, 0, format_int),
        Field("CROP_RIGHT", p.crop_right, 0, format_int),
        Field("CROP_TOP", p.crop_top, 0, format_int),
        Field("CROP_BOTTOM", p.crop_bottom, 0, format_int),
    ]


# ==============================================================================
# STAGE RENDERING
# ==============================================================================


def _render_stage(script, block, enabled, render):
    if not enabled:
        return remove_block(block, script)
    return render(keep_block(block, script))


def _render_deinterlace(script, p, tff):
    script = replace_required("PRESET", p.preset.value, script)
    return substitute_fields(script, deinterlace_fields(p, tff))


def _render_resize(script, p):
    if p.use_integer_upscale:
        script = select_method(script, "UPSCALE", ["UPSCALE", "RESIZE_TARGET"])
        script = select_method(script, UPSCALE_BLOCKS[p.upscale_method], UPSCALE_BLOCKS.values())
        return replace_required("UPSCALE_FACTOR", p.upscale_factor, script, format_int)

    script = select_method(script, "RESIZE_TARGET", ["UPSCALE", "RESIZE_TARGET"])
    script = substitute_fields(script, [
        Field("RESIZE_WIDTH", p.target_width, None, format_int),
        Field("RESIZE_HEIGHT", p.target_height, None, format_int),
    ])
    script = toggle_block("MAINTAIN_ASPECT", p.maintain_aspect, script)
    script = toggle_block("RESIZE_EDI", p.kernel.is_edi, script)
    if p.kernel.is_edi:
        script = replace_required("EDI_FUNCTION", EDI_FUNCTIONS[p.kernel], script)
    return replace_required("RESIZE_FUNCTION", RESIZE_FUNCTIONS[p.kernel], script)


def render_stages(script, pipeline, tff=None):
    """Applies every stage of the pipeline to a template, in pipeline order."""
    passes = pipeline.enabled_passes()
    log_debug(f"[DEBUG] Restoration passes: {', '.join(p.value for p in passes) or 'none'}")
    crop_resize = pipeline.crop_resize
    deinterlace = pipeline.deinterlace
    nr = pipeline.noise_reduction
    color = pipeline.color_correction
    chroma = pipeline.chroma_fixes

    script = _render_stage(script, "CROP", crop_resize.crops,
                           lambda s: substitute_fields(s, crop_fields(crop_resize)))
    script = _render_stage(script, "DEINTERLACE", deinterlace.enabled,
                           lambda s: _render_deinterlace(s, deinterlace, tff))
    script = _render_stage(script, "NOISE_REDUCTION", nr.enabled, lambda s: substitute_fields(
        select_method(s, NR_BLOCKS[nr.method], NR_BLOCKS.values()),
        noise_reduction_fields(nr, deinterlace.preset.value)))
    script = _render_stage(script, "DEHALO", pipeline.dehalo.enabled, lambda s: substitute_fields(
        select_method(s, DEHALO_BLOCKS[pipeline.dehalo.method], DEHALO_BLOCKS.values()),
        dehalo_fields(pipeline.dehalo)))
    script = _render_stage(script, "DEBLOCK", pipeline.deblock.enabled, lambda s: substitute_fields(
        select_method(s, DEBLOCK_BLOCKS[pipeline.deblock.method], DEBLOCK_BLOCKS.values()),
        deblock_fields(pipeline.deblock)))
    script = _render_stage(script, "DEBAND", pipeline.deband.enabled,
                           lambda s: substitute_fields(s, deband_fields(pipeline.deband)))
    script = _render_stage(script, "SHARPEN", pipeline.sharpen.enabled, lambda s: substitute_fields(
        select_method(s, SHARPEN_BLOCKS[pipeline.sharpen.method], SHARPEN_BLOCKS.values()),
        sharpen_fields(pipeline.sharpen)))

    def _chroma(s):
        s = toggle_block("CHROMA_BLEED", chroma.apply_chroma_bleeding_fix, s)
        s = toggle_block("DECRAWL", chroma.apply_de_crawl, s)
        s = toggle_block("VINVERSE", chroma.apply_vinverse, s)
        return substitute_fields(s, chroma_fields(chroma))

    script = _render_stage(script, "CHROMA", chroma.enabled, _chroma)

    def _color(s):
        tweak = color_tweak_fields(color)
        # Tweak is only called when at least one of its arguments survives
        needs_tweak = any(field_value(f) is not None for f in tweak)
        s = toggle_block("COLOR_TWEAK", needs_tweak, s)
        s = toggle_block("COLOR_LEVELS", color.apply_levels, s)
        return substitute_fields(s, tweak + color_levels_fields(color))

    script = _render_stage(script, "COLOR", color.enabled, _color)
    script = _render_stage(script, "RESIZE", crop_resize.resizes, lambda s: _render_resize(s, crop_resize))
    return script


# ==============================================================================
# GENERATOR
# ==============================================================================


class ScriptGenerator:
    """
    Renders .vpy scripts for a job.
    Templates are read once, when the generator is created; the preview
    template on first use.
    """

    def __init__(self, template_dirs=None, output_dir=None):
        self.template_dirs = list(template_dirs) if template_dirs else default_template_dirs()
        self.output_dir = output_dir or tempfile.gettempdir()
        self.stages = load_template(STAGES_TEMPLATE, self.template_dirs, EMBEDDED_STAGES)
        self.template = replace_required(
            "RESTORATION_STAGES", self.stages,
            load_template(PIPELINE_TEMPLATE, self.template_dirs, EMBEDDED_PIPELINE_TEMPLATE),
        )
        self._preview_template = None

    @classmethod
    def from_config(cls, config):
        return cls(default_template_dirs(config.get("template_dir")), config.get("temp_dir"))

    @property
    def preview_template(self):
        if self._preview_template is None:
            # No built-in fallback: previews need the shipped template
            preview = load_template(PREVIEW_TEMPLATE, self.template_dirs)
            self._preview_template = replace_required("RESTORATION_STAGES", self.stages, preview)
        return self._preview_template

    def render(self, job):
        script = replace_required("INPUT_PATH", job.input_path, self.template, escape_path)
        return render_stages(script, job.effective_pipeline(), job.is_top_field_first())

    def render_preview(self, job, params):
        script = self.preview_template
        script = replace_required("PREVIEW_VIDEO_PATH", params.video_path, script, escape_path)
        script = replace_required("FPS_NUM", params.fps_num, script, format_int)
        script = replace_required("FPS_DEN", params.fps_den, script, format_int)
        script = replace_required("FIELD_BASED", params.field_based, script, format_int)
        return render_stages(script, job.effective_pipeline(), job.is_top_field_first())

    def generate(self, job):
        """Writes the job's script to <output_dir>/<job id>.vpy and returns the path."""
        path = os.path.join(self.output_dir, f"{job.id}.vpy")
        return self._write(path, self.render(job))

    def generate_preview(self, job, params):
        path = os.path.join(self.output_dir, f"{job.id}_preview.vpy")
        return self._write(path, self.render_preview(job, params))

    def _write(self, path, script):
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "wb") as f:
                f.write(script.encode("utf-8"))
        except OSError as e:
            raise WriteError(f"Failed to write script to {path}: {e}")
        log_debug(f"[DEBUG] VPY saved to: {path} (Size: {os.path.getsize(path)})")
        return path


# ==============================================================================
# VSPIPE DIAGNOSTICS
# ==============================================================================


def log_vspipe_output(pipe, reported_total=None, reporter=None):
    """Forwards vspipe stderr to the log and records the INPUT_INFO frame count."""
    try:
        # Use a sentinel that works for both bytes and strings
        for line in iter(pipe.readline, b''):
            if not line:
                break
            if isinstance(line, bytes):
                line_str = line.decode('utf-8', errors='replace').strip()
            else:
                line_str = line.strip()
            if not line_str:
                continue

            message = f"vspipe stderr: {line_str}"
            if reporter is not None:
                reporter.log("debug", message)
            else:
                log_debug(message)

            if any(x in line_str for x in ["Script evaluation failed", "Error", "Failed"]):
                log_error(f"[VSPIPE ERROR] {line_str}")

            info = parse_input_info(line_str)
            if info and reported_total is not None and "frames" in info:
                reported_total.set(info["frames"])
    except (ValueError, OSError) as e:
        # Pipe closed underneath us (process killed on cancel)
        log_debug(f"[VSPIPE] stderr reader stopped: {e}")
