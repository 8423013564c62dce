"""Reading the source container into a working tree and writing it back out."""

from __future__ import annotations

import logging
import os
import pathlib
import posixpath
import shutil
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple
from xml.etree import ElementTree as ET

from .errors import ArchiveUnreadable, ProcessingError
from .models import MIMETYPE_ENTRY, ArchiveEntry, Resource

log = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
CONTAINER_NS = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
EPUB_MIMETYPE = "application/epub+zip"
DEFLATE_LEVEL = 9
# the per-entry level became public in Python 3.13
LEVEL_ATTR = "compress_level" if hasattr(zipfile.ZipInfo, "compress_level") else "_compresslevel"


@dataclass
class ExtractionResult:
    entries: List[ArchiveEntry] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)

    def date_times(self):
        return {entry.name: entry.date_time for entry in self.entries}


def is_safe_name(name: str) -> bool:
    if not name or name.startswith(("/", "\\")) or (len(name) > 1 and name[1] == ":"):
        return False
    parts = name.replace("\\", "/").split("/")
    return ".." not in parts


def extract(source: pathlib.Path, dest: pathlib.Path, stream_threshold: int = 10_000_000,
            chunk_size: int = 1024 * 1024, check_cancelled=None) -> ExtractionResult:
    """Materialize every file entry of ``source`` under ``dest``."""
    result = ExtractionResult()
    seen = set()
    try:
        zf = zipfile.ZipFile(source)
    except (zipfile.BadZipFile, OSError, ValueError) as e:
        raise ArchiveUnreadable(f"Cannot open {source}: {e}") from e

    with zf:
        for info in zf.infolist():
            if check_cancelled:
                check_cancelled()
            if info.is_dir():
                continue
            name = info.filename
            if not is_safe_name(name):
                log.warning("Skipping unsafe entry name: %s", name)
                result.skipped.append((name, "extract:unsafe_path"))
                continue
            if name in seen:
                log.warning("Skipping repeated entry: %s", name)
                result.skipped.append((name, "extract:duplicate_name"))
                continue

            target = dest / name
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                if info.file_size > stream_threshold:
                    log.debug("Streaming large entry %s (%d bytes)", name, info.file_size)
                    with zf.open(info) as src, target.open("wb") as out:
                        shutil.copyfileobj(src, out, chunk_size)
                else:
                    target.write_bytes(zf.read(info))
            except (zipfile.BadZipFile, zlib.error, OSError, NotImplementedError, RuntimeError) as e:
                log.warning("Could not extract %s: %s", name, e)
                target.unlink(missing_ok=True)
                result.skipped.append((name, f"extract:{type(e).__name__}"))
                continue

            seen.add(name)
            result.entries.append(
                ArchiveEntry(
                    name=name,
                    size=info.file_size,
                    date_time=info.date_time,
                    compressed=info.compress_type != zipfile.ZIP_STORED,
                )
            )
    log.info("Extracted %d entries (%d skipped)", len(result.entries), len(result.skipped))
    return result


def write_order(resources: Iterable[Resource]) -> List[Resource]:
    """Reserved entry first, then by classification and ascending size.

    Putting similar content next to each other helps the compressor; the
    path tie-break keeps the order stable between runs.
    """
    resources = list(resources)
    head = [r for r in resources if r.path == MIMETYPE_ENTRY]
    rest = [r for r in resources if r.path != MIMETYPE_ENTRY]
    rest.sort(key=lambda r: (r.classification.write_priority, r.size, r.path))
    return head + rest


def _zipinfo(name: str, date_time, compress_type: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=date_time or (1980, 1, 1, 0, 0, 0))
    info.compress_type = compress_type
    info.external_attr = 0o644 << 16
    return info


def partial_path(destination: pathlib.Path) -> pathlib.Path:
    return destination.with_name(f".{destination.name}.partial")


def write(resources: Iterable[Resource], destination: pathlib.Path, stream_threshold: int = 10_000_000,
          chunk_size: int = 1024 * 1024, check_cancelled=None, commit=None) -> pathlib.Path:
    """Write ``resources`` into a new container at ``destination``.

    The archive is assembled in a hidden sibling file and only renamed into
    place once complete; ``commit`` may wrap that rename.
    """
    ordered = write_order(resources)
    tmp = partial_path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=DEFLATE_LEVEL) as z:
            for resource in ordered:
                if check_cancelled:
                    check_cancelled()
                source = resource.content_path
                if resource.path == MIMETYPE_ENTRY:
                    info = _zipinfo(resource.path, resource.date_time, zipfile.ZIP_STORED)
                    z.writestr(info, source.read_bytes())
                    continue
                info = _zipinfo(resource.path, resource.date_time, zipfile.ZIP_DEFLATED)
                if resource.size > stream_threshold:
                    # entries opened from a ZipInfo do not inherit the archive-wide level
                    setattr(info, LEVEL_ATTR, DEFLATE_LEVEL)
                    with source.open("rb") as src, z.open(info, "w", force_zip64=True) as out:
                        shutil.copyfileobj(src, out, chunk_size)
                else:
                    z.writestr(info, source.read_bytes(), compresslevel=DEFLATE_LEVEL)
        if commit is not None:
            commit(tmp, destination)
        else:
            os.replace(tmp, destination)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    log.info("Wrote %d entries to %s", len(ordered), destination)
    return destination


def container_problems(path: pathlib.Path, expect_mimetype: bool = True) -> List[str]:
    """Structural problems of the container at ``path``; empty when it looks sound."""
    problems = []
    try:
        with zipfile.ZipFile(path) as z:
            infos = z.infolist()
            names = {info.filename for info in infos}
            if MIMETYPE_ENTRY in names:
                first = infos[0]
                if first.filename != MIMETYPE_ENTRY:
                    problems.append("mimetype is not the first entry")
                elif first.compress_type != zipfile.ZIP_STORED:
                    problems.append("mimetype is compressed")
                elif z.read(first).strip() != EPUB_MIMETYPE.encode():
                    problems.append("mimetype content is not application/epub+zip")
            elif expect_mimetype:
                problems.append("mimetype entry missing")

            if CONTAINER_PATH in names:
                opf = package_document(z.read(CONTAINER_PATH))
                if opf is None:
                    problems.append("container.xml names no package document")
                elif opf not in names:
                    problems.append(f"package document {opf} missing")
            bad = z.testzip()
            if bad is not None:
                problems.append(f"corrupt entry {bad}")
    except (zipfile.BadZipFile, OSError) as e:
        problems.append(f"not a readable zip: {e}")
    return problems


def package_document(container_xml: bytes) -> Optional[str]:
    """The OPF path that ``META-INF/container.xml`` points at, if any."""
    try:
        root = ET.fromstring(container_xml)
    except ET.ParseError as e:
        log.warning("Error parsing container.xml: %s", e)
        return None
    for rootfile in root.findall(".//c:rootfile", CONTAINER_NS):
        if rootfile.get("media-type") == "application/oebps-package+xml":
            full_path = rootfile.get("full-path")
            if full_path:
                return posixpath.normpath(full_path)
    return None


def verify(path: pathlib.Path, expect_mimetype: bool = True) -> None:
    problems = container_problems(path, expect_mimetype)
    if problems:
        raise ProcessingError("Output failed structural check: " + "; ".join(problems))
