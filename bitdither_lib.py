"""
A Python library for turning images into 1-bit style bitmaps: luminance or
per-channel reduction, tone correction, nearest-neighbour resampling, and
ordered or error-diffusion quantization with optional glitch noise.
Use this as a standalone library or import it from the CLI.
"""

import logging
import math
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from PIL import Image

logger = logging.getLogger('bitdither')

# Smallest levels span; keeps the black/white point remap finite.
LEVELS_EPSILON = 1e-3
BASE_THRESHOLD = 128.0
GLITCH_MAX = 100.0
# numpy seeds must be non-negative; negative seeds wrap into this range
SEED_MODULUS = 2 ** 64


# -------------------- Enumerations --------------------

class DitherMethod(Enum):
    ORDERED = "ordered"
    FLOYD_STEINBERG = "floyd_steinberg"
    ATKINSON = "atkinson"
    SIERRA_LITE = "sierra_lite"
    BURKES = "burkes"


class ColorMode(Enum):
    MONO = "mono"
    GRAY = "gray"
    PALETTE = "palette"
    RGB = "rgb"


# -------------------- Parameter records --------------------

RGB = Tuple[int, int, int]


@dataclass(frozen=True)
class ToneParameters:
    brightness: float = 0.0
    contrast: float = 1.0
    gamma: float = 1.0
    threshold_offset: float = 0.0
    black_point: float = 0.0
    white_point: float = 255.0

    @property
    def levels_span(self) -> float:
        """White/black point distance, never below LEVELS_EPSILON."""
        span = _finite_or(self.white_point, 255.0) - _finite_or(self.black_point, 0.0)
        return max(LEVELS_EPSILON, span)


@dataclass(frozen=True)
class QuantizationParameters:
    method: DitherMethod = DitherMethod.FLOYD_STEINBERG
    mode: ColorMode = ColorMode.MONO
    dither_strength: float = 1.0
    glitch_intensity: float = 0.0
    palette_foreground: RGB = (255, 255, 255)
    palette_background: RGB = (0, 0, 0)
    preserve_alpha: bool = False


@dataclass(frozen=True)
class ScaleParameters:
    scale_percent: float = 100.0


@dataclass(frozen=True)
class DitherSettings:
    """
    Immutable snapshot of everything one pipeline run needs.
    The caller builds a fresh snapshot whenever its controls change;
    a run never observes later changes.
    """
    tone: ToneParameters = field(default_factory=ToneParameters)
    quantization: QuantizationParameters = field(default_factory=QuantizationParameters)
    scale: ScaleParameters = field(default_factory=ScaleParameters)
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'DitherSettings':
        """
        Build settings from a plain dict, as stored in JSON configs.

        Expected layout (every key optional):
            {"tone": {...}, "quantization": {...}, "scale": {...}, "seed": 1}

        Raises:
            ValueError: on unknown method/mode names or unknown keys
        """
        quant_raw = dict(data.get("quantization", {}))
        if "method" in quant_raw:
            quant_raw["method"] = DitherMethod(quant_raw["method"])
        if "mode" in quant_raw:
            quant_raw["mode"] = ColorMode(quant_raw["mode"])
        for key in ("palette_foreground", "palette_background"):
            if key in quant_raw:
                quant_raw[key] = tuple(int(c) for c in quant_raw[key])
        try:
            tone = ToneParameters(**data.get("tone", {}))
            quantization = QuantizationParameters(**quant_raw)
            scale = ScaleParameters(**data.get("scale", {}))
        except TypeError as e:
            raise ValueError(f"Invalid settings: {e}") from e

        seed = data.get("seed")
        return cls(tone=tone, quantization=quantization, scale=scale,
                   seed=None if seed is None else int(seed))

    def to_dict(self) -> Dict:
        quant = asdict(self.quantization)
        quant["method"] = self.quantization.method.value
        quant["mode"] = self.quantization.mode.value
        quant["palette_foreground"] = list(self.quantization.palette_foreground)
        quant["palette_background"] = list(self.quantization.palette_background)
        return {
            "tone": asdict(self.tone),
            "quantization": quant,
            "scale": asdict(self.scale),
            "seed": self.seed,
        }


def _finite_or(value: float, fallback: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return fallback
    return value if math.isfinite(value) else fallback


def _glitch_amount(glitch: float) -> float:
    """Glitch intensity clamped to [0, GLITCH_MAX]; non-numbers mean no glitch."""
    return min(GLITCH_MAX, max(0.0, _finite_or(glitch, 0.0)))


def _as_pixel_buffer(src: np.ndarray) -> np.ndarray:
    """Validate a PixelBuffer and widen RGB input to opaque RGBA."""
    arr = np.asarray(src)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise ValueError(f"Expected an (H, W, 3|4) pixel buffer, got shape {arr.shape}")
    if arr.shape[0] < 1 or arr.shape[1] < 1:
        raise ValueError("Pixel buffer must be at least 1x1")
    if arr.shape[2] == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr.astype(np.uint8), alpha], axis=2)
    return arr


# -------------------- Color Reducer --------------------

class ColorReducer:
    """
    Turns RGBA pixel buffers into scalar channel fields at full resolution.
    """

    LUMA_WEIGHTS = (0.299, 0.587, 0.114)

    @staticmethod
    def reduce(src: np.ndarray) -> np.ndarray:
        arr = _as_pixel_buffer(src).astype(np.float64)
        wr, wg, wb = ColorReducer.LUMA_WEIGHTS
        return wr * arr[:, :, 0] + wg * arr[:, :, 1] + wb * arr[:, :, 2]

    @staticmethod
    def reduce_rgb(src: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        arr = _as_pixel_buffer(src).astype(np.float64)
        return arr[:, :, 0].copy(), arr[:, :, 1].copy(), arr[:, :, 2].copy()

    @staticmethod
    def extract_alpha(src: np.ndarray) -> np.ndarray:
        return _as_pixel_buffer(src)[:, :, 3].astype(np.float64)


# -------------------- Tone Mapper --------------------

class ToneMapper:
    """
    Per-sample brightness/contrast/gamma/levels correction.
    The step order is fixed; changing it changes the output.
    """

    @staticmethod
    def apply(channel: np.ndarray, params: ToneParameters, glitch: float = 0.0,
              rng: Optional[np.random.Generator] = None) -> np.ndarray:
        v = channel
        v += _finite_or(params.brightness, 0.0)

        contrast = _finite_or(params.contrast, 1.0)
        v -= 128.0
        v *= contrast
        v += 128.0

        gamma = _finite_or(params.gamma, 1.0)
        if gamma > 0:
            # negative bases clamp to 0 before the power
            np.maximum(v, 0.0, out=v)
            np.power(v / 255.0, 1.0 / gamma, out=v)
            v *= 255.0

        v += _finite_or(params.threshold_offset, 0.0)

        v -= _finite_or(params.black_point, 0.0)
        v *= 255.0 / params.levels_span

        glitch = _glitch_amount(glitch)
        if glitch > 0:
            rng = rng if rng is not None else np.random.default_rng()
            v += rng.uniform(-glitch, glitch, size=v.shape)

        np.nan_to_num(v, copy=False, nan=0.0, posinf=255.0, neginf=0.0)
        np.clip(v, 0.0, 255.0, out=v)
        return v


# -------------------- Resampler --------------------

class Resampler:
    """
    Nearest-neighbour resampling only; hard edges are kept on purpose.
    """

    @staticmethod
    def working_size(src_w: int, src_h: int, scale_percent: float) -> Tuple[int, int]:
        scale = _finite_or(scale_percent, 100.0)
        if scale <= 0:
            scale = 0.0
        w = max(1, int(math.floor(src_w * scale / 100.0)))
        h = max(1, int(math.floor(src_h * scale / 100.0)))
        return w, h

    @staticmethod
    def source_indices(src_len: int, dst_len: int) -> np.ndarray:
        # floor(i / dst * src) in exact integer arithmetic
        idx = (np.arange(dst_len, dtype=np.int64) * src_len) // dst_len
        return np.minimum(idx, src_len - 1)

    @staticmethod
    def downsample(channel: np.ndarray, src_w: int, src_h: int,
                   dst_w: int, dst_h: int) -> np.ndarray:
        dst_w = max(1, int(dst_w))
        dst_h = max(1, int(dst_h))
        xs = Resampler.source_indices(src_w, dst_w)
        ys = Resampler.source_indices(src_h, dst_h)
        return channel[np.ix_(ys, xs)].astype(np.float64, copy=True)


# -------------------- Quantizers --------------------

def effective_threshold(tone: ToneParameters) -> float:
    """
    Error-diffusion threshold rescaled by the levels span.
    Equals 128 exactly for black_point=0, white_point=255.
    """
    return BASE_THRESHOLD * 255.0 / tone.levels_span


class BaseQuantizer:
    """
    Base class for quantizers.
    Each quantizer must implement .quantize(field, threshold, strength, glitch, rng)
    and return a uint8 array of 0/1 bits with the same shape as 'field'.
    """
    def quantize(self, channel: np.ndarray, threshold: float = BASE_THRESHOLD,
                 strength: float = 1.0, glitch: float = 0.0,
                 rng: Optional[np.random.Generator] = None) -> np.ndarray:
        raise NotImplementedError


class OrderedQuantizer(BaseQuantizer):
    """
    Ordered dithering against a tiled 4x4 Bayer matrix.
    Compares normalized luminance directly with the matrix, so the
    levels-rescaled threshold is ignored. No error is carried.
    """

    BAYER4x4 = np.array([
        [0, 8, 2, 10],
        [12, 4, 14, 6],
        [3, 11, 1, 9],
        [15, 7, 13, 5],
    ], dtype=np.float64)

    @staticmethod
    def threshold_map(h: int, w: int) -> np.ndarray:
        ranks = OrderedQuantizer.BAYER4x4
        tiled = np.tile(ranks, ((h + 3) // 4, (w + 3) // 4))[:h, :w]
        return (tiled + 0.5) / 16.0

    def quantize(self, channel, threshold=BASE_THRESHOLD, strength=1.0,
                 glitch=0.0, rng=None):
        h, w = channel.shape
        norm = np.clip(np.nan_to_num(channel, nan=0.0), 0.0, 255.0) / 255.0
        limits = self.threshold_map(h, w)
        glitch = _glitch_amount(glitch)
        if glitch > 0:
            rng = rng if rng is not None else np.random.default_rng()
            limits = limits + rng.uniform(-glitch, glitch, size=(h, w)) / 200.0
        return (norm >= limits).astype(np.uint8)


# (dx, dy, weight) triples, weights already divided by the kernel total
KERNELS: Dict[DitherMethod, List[Tuple[int, int, float]]] = {
    DitherMethod.FLOYD_STEINBERG: [
        (1, 0, 7 / 16), (-1, 1, 3 / 16), (0, 1, 5 / 16), (1, 1, 1 / 16),
    ],
    # 6/8 of the error is carried; the rest is dropped
    DitherMethod.ATKINSON: [
        (1, 0, 1 / 8), (2, 0, 1 / 8), (-1, 1, 1 / 8), (0, 1, 1 / 8),
        (1, 1, 1 / 8), (0, 2, 1 / 8),
    ],
    DitherMethod.SIERRA_LITE: [
        (1, 0, 2 / 4), (-1, 1, 1 / 4), (0, 1, 1 / 4),
    ],
    DitherMethod.BURKES: [
        (1, 0, 8 / 32), (2, 0, 4 / 32),
        (-2, 1, 2 / 32), (-1, 1, 4 / 32), (0, 1, 8 / 32), (1, 1, 4 / 32), (2, 1, 2 / 32),
    ],
}


class ErrorDiffusionQuantizer(BaseQuantizer):
    """
    Row-major, single-pass error diffusion with a configurable kernel.

    For each sample:
      1) read the value, clamped to [0, 255]
      2) bit = value >= threshold (+ per-sample jitter when glitching)
      3) error = (value - 0|255) * strength, non-finite errors become 0
      4) add error*weight to every in-bounds kernel neighbour

    The channel field must be a floating-point array; it is mutated by the
    carried error. Visited samples keep the value they were read with.
    """
    def __init__(self, kernel: List[Tuple[int, int, float]]):
        self.kernel = list(kernel)

    def quantize(self, channel, threshold=BASE_THRESHOLD, strength=1.0,
                 glitch=0.0, rng=None):
        if not np.issubdtype(channel.dtype, np.floating):
            raise ValueError(f"Error diffusion needs a float field, got {channel.dtype}")
        h, w = channel.shape
        bits = np.zeros((h, w), dtype=np.uint8)
        strength = _finite_or(strength, 0.0)
        threshold = _finite_or(threshold, BASE_THRESHOLD)
        glitch = _glitch_amount(glitch)

        if glitch > 0:
            rng = rng if rng is not None else np.random.default_rng()
            thresholds = threshold + rng.uniform(-glitch, glitch, size=(h, w))
        else:
            thresholds = np.full((h, w), threshold, dtype=np.float64)

        for y in range(h):
            for x in range(w):
                old = channel[y, x]
                if not math.isfinite(old):
                    old = 0.0
                old = min(255.0, max(0.0, old))
                if old >= thresholds[y, x]:
                    bits[y, x] = 1
                    new = 255.0
                else:
                    new = 0.0

                err = (old - new) * strength
                if not math.isfinite(err):
                    err = 0.0
                if err == 0.0:
                    continue

                for (dx, dy, weight) in self.kernel:
                    nx = x + dx
                    ny = y + dy
                    if 0 <= nx < w and 0 <= ny < h:
                        channel[ny, nx] += err * weight
        return bits


def get_quantizer(method: DitherMethod) -> BaseQuantizer:
    if method == DitherMethod.ORDERED:
        return OrderedQuantizer()
    elif method in KERNELS:
        return ErrorDiffusionQuantizer(KERNELS[method])
    else:
        raise ValueError(f"Unrecognized DitherMethod: {method}")


# -------------------- Compositor --------------------

class Compositor:
    """
    Maps quantized bits (or, in GRAY mode, tone-mapped values) to RGBA output.
    """

    @staticmethod
    def _clamp_color(color: RGB) -> np.ndarray:
        return np.clip(np.array(color, dtype=np.int64), 0, 255).astype(np.uint8)

    @staticmethod
    def composite_bits(bits: np.ndarray, mode: ColorMode,
                       foreground: RGB = (255, 255, 255),
                       background: RGB = (0, 0, 0)) -> np.ndarray:
        """Single bit plane -> RGBA. PALETTE uses the two colours, MONO uses white/black."""
        h, w = bits.shape
        if mode == ColorMode.PALETTE:
            fg = Compositor._clamp_color(foreground)
            bg = Compositor._clamp_color(background)
        else:
            fg = np.array([255, 255, 255], dtype=np.uint8)
            bg = np.array([0, 0, 0], dtype=np.uint8)
        out = np.empty((h, w, 4), dtype=np.uint8)
        out[:, :, :3] = np.where(bits[:, :, None] == 1, fg, bg)
        out[:, :, 3] = 255
        return out

    @staticmethod
    def composite_rgb(bit_planes: Tuple[np.ndarray, np.ndarray, np.ndarray]) -> np.ndarray:
        h, w = bit_planes[0].shape
        out = np.empty((h, w, 4), dtype=np.uint8)
        for ch, plane in enumerate(bit_planes):
            out[:, :, ch] = np.where(plane == 1, 255, 0)
        out[:, :, 3] = 255
        return out

    @staticmethod
    def composite_gray(values: np.ndarray, alpha: Optional[np.ndarray] = None) -> np.ndarray:
        h, w = values.shape
        gray = np.clip(np.rint(np.nan_to_num(values, nan=0.0)), 0, 255).astype(np.uint8)
        out = np.empty((h, w, 4), dtype=np.uint8)
        out[:, :, 0] = gray
        out[:, :, 1] = gray
        out[:, :, 2] = gray
        if alpha is None:
            out[:, :, 3] = 255
        else:
            out[:, :, 3] = np.clip(np.rint(alpha), 0, 255).astype(np.uint8)
        return out

    @staticmethod
    def composite(bits_or_values, mode: ColorMode, quant: QuantizationParameters,
                  alpha: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Dispatch on the colour mode.

        Args:
            bits_or_values: bit plane (MONO/PALETTE), tuple of three planes (RGB)
                or the tone-mapped field (GRAY)
            mode: Output colour mode
            quant: Supplies the palette colours and preserve_alpha
            alpha: Downsampled source alpha, only used in GRAY mode
        """
        if mode == ColorMode.RGB:
            return Compositor.composite_rgb(bits_or_values)
        if mode == ColorMode.GRAY:
            return Compositor.composite_gray(bits_or_values,
                                             alpha if quant.preserve_alpha else None)
        return Compositor.composite_bits(bits_or_values, mode,
                                         quant.palette_foreground, quant.palette_background)


# -------------------- Bitmap Ditherer --------------------

class BitmapDitherer:
    """
    Orchestrates one run of the pipeline:
    reduce -> downsample -> tone map -> quantize -> composite.
    Each call allocates its own working fields and random generator.
    """
    def __init__(self, settings: Optional[DitherSettings] = None):
        self.settings = settings or DitherSettings()

    def _rng(self) -> np.random.Generator:
        seed = self.settings.seed
        if seed is None:
            return np.random.default_rng()
        try:
            return np.random.default_rng(int(seed) % SEED_MODULUS)
        except (TypeError, ValueError, OverflowError):
            logger.debug(f"Unusable seed {seed!r}; using a fresh generator")
            return np.random.default_rng()

    def process(self, src: np.ndarray) -> np.ndarray:
        """
        Dither a PixelBuffer.

        Args:
            src: (H, W, 4) or (H, W, 3) uint8 array, left untouched

        Returns:
            (h, w, 4) uint8 array at working resolution
        """
        started = time.perf_counter()
        buf = _as_pixel_buffer(src)
        src_h, src_w = buf.shape[:2]
        tone = self.settings.tone
        quant = self.settings.quantization
        dst_w, dst_h = Resampler.working_size(src_w, src_h, self.settings.scale.scale_percent)
        glitch = _glitch_amount(quant.glitch_intensity)
        rng = self._rng()

        logger.debug(f"Dithering {src_w}x{src_h} -> {dst_w}x{dst_h} "
                     f"(method={quant.method.value}, mode={quant.mode.value})")

        if quant.mode == ColorMode.RGB:
            quantizer = get_quantizer(quant.method)
            planes = []
            for channel in ColorReducer.reduce_rgb(buf):
                small = Resampler.downsample(channel, src_w, src_h, dst_w, dst_h)
                ToneMapper.apply(small, tone, glitch, rng)
                planes.append(quantizer.quantize(small, BASE_THRESHOLD,
                                                 quant.dither_strength, glitch, rng))
            out = Compositor.composite(tuple(planes), quant.mode, quant)
        else:
            lum = ColorReducer.reduce(buf)
            small = Resampler.downsample(lum, src_w, src_h, dst_w, dst_h)
            ToneMapper.apply(small, tone, glitch, rng)

            if quant.mode == ColorMode.GRAY:
                alpha = None
                if quant.preserve_alpha:
                    alpha = Resampler.downsample(ColorReducer.extract_alpha(buf),
                                                 src_w, src_h, dst_w, dst_h)
                out = Compositor.composite(small, quant.mode, quant, alpha)
            else:
                quantizer = get_quantizer(quant.method)
                bits = quantizer.quantize(small, effective_threshold(tone),
                                          quant.dither_strength, glitch, rng)
                out = Compositor.composite(bits, quant.mode, quant)

        logger.debug(f"Dithering finished in {time.perf_counter() - started:.3f}s")
        return out

    def apply_dithering(self, image: Image.Image) -> Image.Image:
        arr = np.array(image.convert('RGBA'), dtype=np.uint8)
        return Image.fromarray(self.process(arr), 'RGBA')
