"""Optimization policies.

Everything here is a pure function of resource attributes and configuration:
no I/O, no shared state. The per-classification optimizers gather the
attributes, ask the policy what to do, and carry it out.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .config import OptimizerConfig
from .encoders import EncodeParams
from .models import Classification

RESIZE_QUALITY = 95


def floor_for(classification: Classification, config: OptimizerConfig) -> Optional[int]:
    return {
        Classification.IMAGE: config.image_floor,
        Classification.MARKUP: config.markup_floor,
        Classification.FONT: config.font_floor,
    }.get(classification)


# -- images ---------------------------------------------------------------


@dataclass(frozen=True)
class ImageAttributes:
    size: int
    width: int
    height: int
    fmt: str
    mode: str
    dynamic_range: int = 255
    many_colors: bool = True
    progressive: bool = False
    animated: bool = False


@dataclass(frozen=True)
class Candidate:
    encoder: str
    params: EncodeParams


@dataclass(frozen=True)
class ImagePlan:
    quality: int
    photographic: bool
    resize: Optional[Candidate]
    candidates: Tuple[Candidate, ...]
    fallback: Optional[Candidate]


def skip_reason(attrs: ImageAttributes) -> Optional[str]:
    """Why an image should not be touched at all, if it shouldn't."""
    if attrs.animated:
        return "animated"
    if attrs.fmt == "JPEG" and attrs.progressive:
        return "already_optimized"
    if attrs.fmt not in ("JPEG", "PNG", "GIF", "WEBP"):
        return "unsupported_format"
    return None


def base_quality(size: int) -> int:
    if size < 100_000:
        return 90
    if size < 500_000:
        return 85
    return 80


def target_quality(attrs: ImageAttributes, config: OptimizerConfig) -> int:
    if config.image_quality is not None:
        return config.image_quality
    quality = base_quality(attrs.size)
    # wide tonal range hides artifacts; flat images show them
    if attrs.dynamic_range >= 200:
        quality -= 5
    elif attrs.dynamic_range < 64:
        quality += 5
    return max(config.min_quality, min(config.max_quality, quality))


def needs_resize(attrs: ImageAttributes, config: OptimizerConfig) -> bool:
    return attrs.width > config.max_width or attrs.height > config.max_height


def image_candidates(attrs: ImageAttributes, quality: int, lossless: bool) -> Tuple[Candidate, ...]:
    photographic = attrs.many_colors
    if attrs.fmt == "JPEG":
        exact = Candidate("jpegoptim", EncodeParams(progressive=True))
        if lossless:
            return (exact,)
        capped = Candidate("jpegoptim", EncodeParams(quality=quality, progressive=True))
        reencoded = Candidate("pillow", EncodeParams(quality=quality, progressive=True, fmt="JPEG"))
        if photographic:
            return (reencoded, capped, exact)
        return (exact, capped, reencoded)

    if attrs.fmt == "PNG":
        oxipng = Candidate("oxipng", EncodeParams(effort=4))
        if lossless:
            return (oxipng,)
        quantized = Candidate("pngquant", EncodeParams(quality=quality))
        if photographic:
            return (quantized, oxipng)
        # 256 colours or fewer: a palette PNG loses nothing
        palette = Candidate("pillow", EncodeParams(palette=True, fmt="PNG"))
        return (oxipng, palette, quantized)

    if attrs.fmt == "WEBP" and not lossless:
        return (Candidate("pillow", EncodeParams(quality=quality, fmt="WEBP")),)
    return ()


def plan_image(attrs: ImageAttributes, config: OptimizerConfig) -> ImagePlan:
    lossless = config.lossless
    quality = 100 if lossless else target_quality(attrs, config)

    resize = None
    if not lossless and needs_resize(attrs, config):
        resize = Candidate(
            "pillow",
            EncodeParams(
                quality=RESIZE_QUALITY if attrs.fmt in ("JPEG", "WEBP") else None,
                max_size=(config.max_width, config.max_height),
                fmt=attrs.fmt,
            ),
        )

    fallback = None
    if attrs.fmt in ("PNG", "GIF"):
        fallback = Candidate("pillow", EncodeParams(fmt=attrs.fmt))
    elif not lossless:
        fallback = Candidate(
            "pillow", EncodeParams(quality=quality, progressive=attrs.fmt == "JPEG", fmt=attrs.fmt)
        )

    return ImagePlan(
        quality=quality,
        photographic=attrs.many_colors,
        resize=resize,
        candidates=image_candidates(attrs, quality, lossless),
        fallback=fallback,
    )


def beats(candidate_size: int, original_size: int, min_improvement: float) -> bool:
    return candidate_size <= original_size * (1.0 - min_improvement)


# -- fonts ----------------------------------------------------------------

SUBSET = "subset"
REPACKAGE = "repackage"
STRIP = "strip"


def font_flavor(path: str) -> Optional[str]:
    lower = path.lower()
    if lower.endswith(".woff2"):
        return "woff2"
    if lower.endswith(".woff"):
        return "woff"
    return None


def plan_font(used: Optional[int], inventory: int, subset_ratio: float, tool_available: bool) -> str:
    if not tool_available:
        return STRIP
    if used and inventory and used / inventory <= subset_ratio:
        return SUBSET
    return REPACKAGE
