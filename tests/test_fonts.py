from pathlib import Path

import pytest
from fontTools.ttLib import TTFont

from epub_optimizer.errors import ResourceProcessingFailed
from epub_optimizer.fonts import glyph_inventory, optimize_font, strip_metadata
from epub_optimizer.models import Outcome

from helpers import MissingEncoder, add_resource, build_font, fake_encoders

ALPHABET = "ABCDEFGHIJ"


def _font_bytes(tmp_path: Path, with_dsig: bool = False) -> bytes:
    return build_font(tmp_path / "fixture.ttf", ALPHABET, with_dsig=with_dsig).read_bytes()


def test_glyph_inventory(tmp_path: Path) -> None:
    path = build_font(tmp_path / "f.ttf", ALPHABET)
    assert glyph_inventory(path) == {ord(c) for c in ALPHABET}


def test_glyph_inventory_of_damaged_font(tmp_path: Path) -> None:
    path = tmp_path / "broken.ttf"
    path.write_bytes(b"\0\1\0\0 definitely not a font")
    with pytest.raises(ResourceProcessingFailed):
        glyph_inventory(path)


def test_strip_metadata(tmp_path: Path) -> None:
    signed = build_font(tmp_path / "signed.ttf", ALPHABET, with_dsig=True)
    output = tmp_path / "out.ttf"
    assert strip_metadata(signed, output)
    with TTFont(output) as font:
        assert "DSIG" not in font

    plain = build_font(tmp_path / "plain.ttf", ALPHABET)
    assert not strip_metadata(plain, tmp_path / "unused.ttf")


def test_sparse_usage_subsets(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(encoders=fake_encoders(0.5), font_floor=0)
    data = _font_bytes(tmp_path)
    resource = add_resource(ctx, "OEBPS/fonts/f.ttf", data)
    ctx.characters = frozenset("AB")

    assert optimize_font(resource, ctx) == (Outcome.OPTIMIZED, "subset 2/10")
    assert resource.size == len(data) // 2
    (_, params), = ctx.encoders["pyftsubset"].calls
    assert params.text_file is not None
    assert not params.keep_all_glyphs
    assert list(ctx.scratch_dir.iterdir()) == []


def test_unknown_characters_repackage(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(encoders=fake_encoders(0.5), font_floor=0)
    resource = add_resource(ctx, "OEBPS/fonts/f.woff2", _font_bytes(tmp_path))

    assert optimize_font(resource, ctx) == (Outcome.OPTIMIZED, "repackaged")
    (_, params), = ctx.encoders["pyftsubset"].calls
    assert params.keep_all_glyphs
    assert params.flavor == "woff2"


def test_heavy_usage_repackages(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(encoders=fake_encoders(1.0), font_floor=0)
    data = _font_bytes(tmp_path)
    resource = add_resource(ctx, "OEBPS/fonts/f.ttf", data)
    ctx.characters = frozenset(ALPHABET)

    assert optimize_font(resource, ctx) == (Outcome.SKIPPED, "no_gain")
    assert resource.file_path.read_bytes() == data


def test_without_subsetter_metadata_is_stripped(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(encoders={"pyftsubset": MissingEncoder("pyftsubset")}, font_floor=0)
    data = _font_bytes(tmp_path, with_dsig=True)
    resource = add_resource(ctx, "OEBPS/fonts/f.ttf", data)
    ctx.characters = frozenset("A")

    assert optimize_font(resource, ctx) == (Outcome.OPTIMIZED, "stripped")
    assert resource.size < len(data)


def test_without_subsetter_or_metadata_nothing_changes(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(encoders={}, font_floor=0)
    data = _font_bytes(tmp_path)
    resource = add_resource(ctx, "OEBPS/fonts/f.otf", data)
    assert optimize_font(resource, ctx) == (Outcome.SKIPPED, "no_gain")
    assert resource.file_path.read_bytes() == data
    assert list(ctx.scratch_dir.iterdir()) == []
