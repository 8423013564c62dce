"""Builders shared by the test modules: small EPUBs, images, fonts and fake encoders."""

import io
import random
import time
import zipfile
from pathlib import Path
from typing import Dict, Optional

from fontTools.fontBuilder import FontBuilder
from fontTools.pens.ttGlyphPen import TTGlyphPen
from fontTools.ttLib import newTable
from PIL import Image

from epub_optimizer.classifier import classify_path
from epub_optimizer.config import OptimizerConfig
from epub_optimizer.context import RunContext
from epub_optimizer.encoders import Encoder, check_output
from epub_optimizer.errors import EncodeError
from epub_optimizer.models import Resource

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

CONTENT_OPF = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="id">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="id">urn:uuid:test</dc:identifier>
    <dc:title>Test</dc:title>
  </metadata>
  <manifest>
    <item id="c1" href="chapter1.xhtml" media-type="application/xhtml+xml"/>
  </manifest>
  <spine><itemref idref="c1"/></spine>
</package>
"""

CHAPTER = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>One</title></head>
  <body>
    <p>Hello world</p>
  </body>
</html>
"""


def book_files(extra: Optional[Dict[str, bytes]] = None) -> Dict[str, bytes]:
    files = {
        "META-INF/container.xml": CONTAINER_XML.encode(),
        "OEBPS/content.opf": CONTENT_OPF.encode(),
        "OEBPS/chapter1.xhtml": CHAPTER.encode(),
    }
    files.update(extra or {})
    return files


def write_epub(path: Path, files: Dict[str, bytes], mimetype: bool = True,
               compression: int = zipfile.ZIP_DEFLATED) -> Path:
    with zipfile.ZipFile(path, "w") as z:
        if mimetype:
            z.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        for name, data in files.items():
            z.writestr(zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0)), data, compress_type=compression)
    return path


def noise_png(width: int, height: int, seed: int = 0) -> bytes:
    """A PNG of random pixels; it does not compress, so its size is predictable."""
    rng = random.Random(seed)
    data = rng.randbytes(width * height * 3)
    buf = io.BytesIO()
    Image.frombytes("RGB", (width, height), data).save(buf, format="PNG")
    return buf.getvalue()


def flat_png(width: int, height: int, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def build_font(path: Path, chars: str, with_dsig: bool = False) -> Path:
    names = [".notdef"] + [f"uni{ord(c):04X}" for c in chars]
    glyphs = {}
    for name in names:
        pen = TTGlyphPen(None)
        pen.moveTo((100, 0))
        pen.lineTo((100, 700))
        pen.lineTo((500, 700))
        pen.lineTo((500, 0))
        pen.closePath()
        glyphs[name] = pen.glyph()

    fb = FontBuilder(1000, isTTF=True)
    fb.setupGlyphOrder(names)
    fb.setupCharacterMap({ord(c): f"uni{ord(c):04X}" for c in chars})
    fb.setupGlyf(glyphs)
    fb.setupHorizontalMetrics({name: (600, 100) for name in names})
    fb.setupHorizontalHeader(ascent=800, descent=-200)
    fb.setupNameTable({"familyName": "Fixture", "styleName": "Regular"})
    fb.setupOS2()
    fb.setupPost()
    if with_dsig:
        dsig = newTable("DSIG")
        dsig.ulVersion = 1
        dsig.usFlag = 0
        dsig.usNumSigs = 0
        dsig.signatureRecords = []
        fb.font["DSIG"] = dsig
    fb.save(str(path))
    return path


class FakeEncoder(Encoder):
    """Keeps the first ``ratio`` of the input bytes and records every call."""

    def __init__(self, name: str = "fake", ratio: float = 0.5, delay: float = 0.0):
        self.name = name
        self.ratio = ratio
        self.delay = delay
        self.calls = []

    def encode(self, source, params, output):
        self.calls.append((Path(source).name, params))
        if self.delay:
            time.sleep(self.delay)
        data = Path(source).read_bytes()
        output.write_bytes(data[: max(1, int(len(data) * self.ratio))])
        return check_output(self.name, output)


class FailingEncoder(Encoder):
    def __init__(self, name: str = "broken"):
        self.name = name

    def encode(self, source, params, output):
        raise EncodeError(f"{self.name} exited with 1", str(source))


class MissingEncoder(Encoder):
    def __init__(self, name: str = "missing"):
        self.name = name

    def available(self) -> bool:
        return False

    def encode(self, source, params, output):
        raise AssertionError("an unavailable encoder must not be called")


def fake_encoders(ratio: float = 0.5, **overrides) -> Dict[str, Encoder]:
    encoders = {
        name: FakeEncoder(name, ratio)
        for name in ("pillow", "jpegoptim", "oxipng", "pngquant", "pyftsubset")
    }
    encoders.update(overrides)
    return encoders


def run_context(encoders=None, workers: int = 2, **overrides) -> RunContext:
    ctx = RunContext(OptimizerConfig(**overrides), encoders=encoders if encoders is not None else {}, workers=workers)
    ctx.open_workdir()
    return ctx


def add_resource(ctx: RunContext, path: str, data: bytes, protected: bool = False) -> Resource:
    target = ctx.content_dir / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return Resource(ctx.content_dir, path, classify_path(path), protected=protected)


def entries(path: Path) -> Dict[str, bytes]:
    with zipfile.ZipFile(path) as z:
        return {info.filename: z.read(info) for info in z.infolist() if not info.is_dir()}
