"""Raster image optimization."""

from __future__ import annotations

import logging
import pathlib
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .models import Outcome, Resource
from .policy import Candidate, ImageAttributes, beats, plan_image, skip_reason

log = logging.getLogger(__name__)

# Statistics are gathered on a nearest-neighbour thumbnail so no new colours appear.
ANALYSIS_SIZE = (512, 512)

SUFFIXES = {"JPEG": ".jpg", "PNG": ".png", "GIF": ".gif", "WEBP": ".webp"}


def analyze_image(path: pathlib.Path, size: Optional[int] = None) -> ImageAttributes:
    """Gather the attributes the image policy decides on.

    Args:
        path: Path to the image file
        size: Size in bytes, if already known

    Returns:
        ImageAttributes for the image

    Raises:
        UnidentifiedImageError: Pillow does not recognise the file
        OSError: the file cannot be read or decoded
    """
    size = path.stat().st_size if size is None else size
    with Image.open(path) as img:
        fmt = img.format or ""
        mode = img.mode
        width, height = img.size
        progressive = bool(img.info.get("progressive") or img.info.get("progression"))
        animated = getattr(img, "n_frames", 1) > 1

        sample = img.copy()
        sample.thumbnail(ANALYSIS_SIZE, Image.NEAREST)
        try:
            low, high = sample.convert("L").getextrema()
            # getcolors returns None once the limit is exceeded
            many_colors = sample.convert("RGBA").getcolors(maxcolors=256) is None
        except ValueError:
            # exotic modes Pillow cannot convert; assume a full-range photo
            low, high, many_colors = 0, 255, True

    return ImageAttributes(
        size=size,
        width=width,
        height=height,
        fmt=fmt,
        mode=mode,
        dynamic_range=high - low,
        many_colors=many_colors,
        progressive=progressive,
        animated=animated,
    )


def _run(ctx, candidate: Candidate, source: pathlib.Path, fmt: str) -> Optional[pathlib.Path]:
    return ctx.encode(candidate.encoder, source, candidate.params, SUFFIXES.get(fmt, ""))


def _discard(path: Optional[pathlib.Path], keep: pathlib.Path) -> None:
    if path is not None and path != keep:
        path.unlink(missing_ok=True)


def optimize_image(resource: Resource, ctx) -> Tuple[Outcome, Optional[str]]:
    """Try every candidate encoding of ``resource`` and keep the smallest.

    The original stays in place unless a candidate beats it by at least
    ``min_improvement``; failing that, a plain same-format re-encode is kept
    when it is smaller at all. Encode errors propagate and the caller marks
    the resource failed with its bytes untouched.
    """
    source = resource.file_path
    original = resource.size
    try:
        attrs = analyze_image(source, original)
    except UnidentifiedImageError:
        return Outcome.SKIPPED, "unsupported_format"

    reason = skip_reason(attrs)
    if reason:
        return Outcome.SKIPPED, reason

    plan = plan_image(attrs, ctx.config)
    log.debug("%s: %dx%d %s quality=%d photographic=%s", resource.path, attrs.width, attrs.height,
              attrs.fmt, plan.quality, plan.photographic)

    base = source
    best, best_size = source, original
    produced = []
    try:
        if plan.resize is not None:
            resized = _run(ctx, plan.resize, source, attrs.fmt)
            if resized is not None:
                produced.append(resized)
                base = resized
                if resized.stat().st_size < best_size:
                    best, best_size = resized, resized.stat().st_size

        for candidate in plan.candidates:
            output = _run(ctx, candidate, base, attrs.fmt)
            if output is None:
                continue
            produced.append(output)
            size = output.stat().st_size
            if size < best_size:
                best, best_size = output, size

        if best != source and beats(best_size, original, ctx.config.min_improvement):
            ctx.install(resource, best)
            return Outcome.OPTIMIZED, f"{original}->{best_size}"

        if plan.fallback is not None:
            output = _run(ctx, plan.fallback, base, attrs.fmt)
            if output is not None:
                produced.append(output)
                size = output.stat().st_size
                if size < original:
                    ctx.install(resource, output)
                    return Outcome.OPTIMIZED, f"{original}->{size} fallback"
        return Outcome.SKIPPED, "no_gain"
    finally:
        for path in produced:
            _discard(path, source)
