"""Encoder collaborators.

Every encoder takes ``(source, params, output)`` and either returns ``output``
holding a non-empty file or raises. The pipeline never looks inside an
encoder; anything other than a non-empty output is a failure of that one
resource.
"""

from __future__ import annotations

import logging
import pathlib
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from PIL import Image

from .errors import EncodeError, EncoderUnavailable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodeParams:
    quality: Optional[int] = None
    effort: int = 4
    progressive: bool = False
    palette: bool = False
    strip_metadata: bool = True
    max_size: Optional[Tuple[int, int]] = None
    fmt: Optional[str] = None
    text_file: Optional[pathlib.Path] = None
    flavor: Optional[str] = None
    keep_all_glyphs: bool = False
    timeout: Optional[float] = None


def check_output(name: str, output: pathlib.Path) -> pathlib.Path:
    if not output.exists() or output.stat().st_size == 0:
        raise EncodeError(f"{name} produced no output")
    return output


class Encoder:
    name = "encoder"

    def available(self) -> bool:
        return True

    def encode(self, source: pathlib.Path, params: EncodeParams, output: pathlib.Path) -> pathlib.Path:
        raise NotImplementedError


class CommandEncoder(Encoder):
    """Runs an external program; subclasses only build the argument list."""

    executable = ""
    writes_stdout = False

    def __init__(self, executable: Optional[str] = None):
        if executable:
            self.executable = executable

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def command(self, source: pathlib.Path, params: EncodeParams, output: pathlib.Path) -> List[str]:
        raise NotImplementedError

    def encode(self, source, params, output):
        if not self.available():
            raise EncoderUnavailable(f"{self.executable} is not installed", str(source))
        cmd = self.command(source, params, output)
        log.debug("Running %s: %s", self.name, " ".join(cmd))
        try:
            if self.writes_stdout:
                with output.open("wb") as out:
                    proc = subprocess.run(cmd, stdout=out, stderr=subprocess.PIPE, timeout=params.timeout)
            else:
                proc = subprocess.run(
                    cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, timeout=params.timeout
                )
        except subprocess.TimeoutExpired as e:
            raise EncodeError(f"{self.name} timed out", str(source)) from e
        except OSError as e:
            raise EncodeError(f"{self.name} could not run: {e}", str(source)) from e

        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", "replace").strip().splitlines()
            tail = stderr[-1] if stderr else ""
            raise EncodeError(f"{self.name} exited with {proc.returncode} {tail}".strip(), str(source))
        return check_output(self.name, output)


class JpegoptimEncoder(CommandEncoder):
    name = "jpegoptim"
    executable = "jpegoptim"
    writes_stdout = True

    def command(self, source, params, output):
        cmd = [self.executable, "-q"]
        if params.strip_metadata:
            cmd.append("--strip-all")
        if params.quality is not None and params.quality < 100:
            cmd.append(f"--max={params.quality}")
        cmd.append("--all-progressive" if params.progressive else "--all-normal")
        cmd += ["--stdout", str(source)]
        return cmd


class OxipngEncoder(CommandEncoder):
    name = "oxipng"
    executable = "oxipng"

    def command(self, source, params, output):
        cmd = [self.executable, "-q", "-o", str(params.effort)]
        if params.strip_metadata:
            cmd += ["--strip", "safe"]
        cmd += ["--out", str(output), str(source)]
        return cmd


class PngquantEncoder(CommandEncoder):
    name = "pngquant"
    executable = "pngquant"

    def command(self, source, params, output):
        quality = params.quality or 80
        floor = max(0, quality - 20)
        cmd = [self.executable, f"--quality={floor}-{quality}", "--speed", "3", "--force"]
        if params.strip_metadata:
            cmd.append("--strip")
        cmd += ["--output", str(output), "--", str(source)]
        return cmd


class FontSubsetEncoder(CommandEncoder):
    name = "pyftsubset"
    executable = "pyftsubset"

    def command(self, source, params, output):
        cmd = [self.executable, str(source), f"--output-file={output}"]
        if params.keep_all_glyphs or params.text_file is None:
            cmd += [
                "--glyphs=*",
                "--unicodes=*",
                "--notdef-glyph",
                "--notdef-outline",
                "--glyph-names",
                "--legacy-cmap",
                "--symbol-cmap",
                "--name-legacy",
            ]
        else:
            cmd += [f"--text-file={params.text_file}", "--notdef-outline"]
        cmd += ["--layout-features=*", "--name-IDs=*", "--name-languages=*", "--drop-tables+=DSIG"]
        if params.flavor:
            cmd.append(f"--flavor={params.flavor}")
        return cmd


class PillowEncoder(Encoder):
    """In-process re-encode; used for resizing and the same-format fallback."""

    name = "pillow"

    def encode(self, source, params, output):
        try:
            with Image.open(source) as img:
                img.load()
                fmt = (params.fmt or img.format or "PNG").upper()
                if params.max_size:
                    img = _fit_within(img, params.max_size)
                img, save_kwargs = _prepare(img, fmt, params)
                img.save(output, format=fmt, **save_kwargs)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise EncodeError(f"pillow could not encode: {e}", str(source)) from e
        return check_output(self.name, output)


def _fit_within(img, bounds):
    width, height = img.size
    max_w, max_h = bounds
    if width <= max_w and height <= max_h:
        return img
    ratio = min(max_w / width, max_h / height)
    new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
    log.debug("Resizing %dx%d -> %dx%d", width, height, *new_size)
    return img.resize(new_size, Image.LANCZOS)


def _prepare(img, fmt, params):
    kwargs = {"optimize": True}
    if fmt == "JPEG":
        if img.mode not in ("RGB", "L", "CMYK"):
            if "A" in img.mode or img.mode == "P":
                rgba = img.convert("RGBA")
                bg = Image.new("RGB", img.size, (255, 255, 255))
                bg.paste(rgba, mask=rgba.split()[-1])
                img = bg
            else:
                img = img.convert("RGB")
        kwargs["quality"] = params.quality or 85
        kwargs["progressive"] = params.progressive
    elif fmt == "PNG":
        if params.palette and img.mode not in ("P", "1"):
            if "A" in img.mode:
                img = img.convert("RGBA").quantize(colors=256, method=Image.Quantize.FASTOCTREE)
            else:
                img = img.convert("RGB").convert("P", palette=Image.ADAPTIVE)
    elif fmt == "WEBP":
        kwargs = {"quality": params.quality or 80, "method": 6}
    if not params.strip_metadata:
        for key in ("icc_profile", "exif"):
            if key in img.info:
                kwargs[key] = img.info[key]
    return img, kwargs


def default_encoders() -> Dict[str, Encoder]:
    return {
        "pillow": PillowEncoder(),
        "jpegoptim": JpegoptimEncoder(),
        "oxipng": OxipngEncoder(),
        "pngquant": PngquantEncoder(),
        "pyftsubset": FontSubsetEncoder(),
    }


def missing_tools(encoders: Dict[str, Encoder]) -> List[str]:
    """Names of external encoders whose executables cannot be found."""
    return sorted(name for name, encoder in encoders.items() if not encoder.available())
