"""Embedded font subsetting and repackaging."""

from __future__ import annotations

import logging
import pathlib
import posixpath
from typing import Optional, Set, Tuple

from fontTools.ttLib import TTFont

from .encoders import EncodeParams
from .errors import ResourceProcessingFailed
from .models import Outcome, Resource
from .policy import REPACKAGE, SUBSET, font_flavor, plan_font

log = logging.getLogger(__name__)

# Tables no reader needs to render text.
METADATA_TABLES = ("DSIG", "FFTM", "PfEd")


def glyph_inventory(path: pathlib.Path) -> Set[int]:
    """Code points the font maps to glyphs."""
    try:
        with TTFont(path, lazy=True) as font:
            return set(font.getBestCmap() or {})
    except Exception as e:
        # fontTools raises a wide range of errors for damaged fonts
        raise ResourceProcessingFailed(f"unreadable font: {e}", str(path)) from e


def strip_metadata(source: pathlib.Path, output: pathlib.Path) -> bool:
    """Save ``source`` without its metadata tables; False if it has none."""
    with TTFont(source) as font:
        dropped = [tag for tag in METADATA_TABLES if tag in font]
        if not dropped:
            return False
        for tag in dropped:
            del font[tag]
        # keeps the WOFF/WOFF2 flavor it was read with
        font.save(output)
    log.debug("Dropped %s from %s", ", ".join(dropped), source.name)
    return True


def _install_if_smaller(ctx, resource: Resource, produced: Optional[pathlib.Path], size: int) -> Optional[int]:
    if produced is None:
        return None
    new_size = produced.stat().st_size
    if new_size >= size:
        produced.unlink(missing_ok=True)
        return None
    ctx.install(resource, produced)
    return new_size


def optimize_font(resource: Resource, ctx) -> Tuple[Outcome, Optional[str]]:
    """Subset, repackage or strip ``resource`` according to the font plan.

    Subsetting needs the run's character set; when it is unknown every glyph
    is kept. A subset that comes out no smaller falls back to repackaging.
    """
    source = resource.file_path
    size = resource.size
    suffix = posixpath.splitext(resource.path)[1]
    inventory = glyph_inventory(source)

    characters = ctx.characters
    used = None
    if characters is not None:
        used = len({ord(c) for c in characters if len(c) == 1} & inventory)

    subsetter = ctx.encoders.get("pyftsubset")
    action = plan_font(used, len(inventory), ctx.config.subset_ratio,
                       subsetter is not None and subsetter.available())
    flavor = font_flavor(resource.path)
    log.debug("%s: %s glyphs used of %d, plan %s", resource.path, used, len(inventory), action)

    if action == SUBSET:
        text_file = ctx.scratch_file(".txt")
        text_file.write_text("".join(sorted(characters)), encoding="utf-8")
        try:
            produced = ctx.encode("pyftsubset", source, EncodeParams(text_file=text_file, flavor=flavor), suffix)
        finally:
            text_file.unlink(missing_ok=True)
        new_size = _install_if_smaller(ctx, resource, produced, size)
        if new_size is not None:
            return Outcome.OPTIMIZED, f"subset {used}/{len(inventory)}"

    if action in (SUBSET, REPACKAGE):
        produced = ctx.encode("pyftsubset", source, EncodeParams(keep_all_glyphs=True, flavor=flavor), suffix)
        if _install_if_smaller(ctx, resource, produced, size) is not None:
            return Outcome.OPTIMIZED, "repackaged"
        return Outcome.SKIPPED, "no_gain"

    # the remaining plan is to strip metadata
    output = ctx.scratch_file(suffix)
    try:
        stripped = strip_metadata(source, output)
    except Exception as e:
        output.unlink(missing_ok=True)
        raise ResourceProcessingFailed(f"could not rewrite font: {e}", resource.path) from e
    if stripped and _install_if_smaller(ctx, resource, output, size) is not None:
        return Outcome.OPTIMIZED, "stripped"
    output.unlink(missing_ok=True)
    return Outcome.SKIPPED, "no_gain"
