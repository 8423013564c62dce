"""Sorting extracted files into images, markup/style, fonts and everything else."""

from __future__ import annotations

import logging
import pathlib
import posixpath
from typing import Dict, Optional, Set
from urllib.parse import unquote
from xml.etree import ElementTree as ET

from .markup import referenced_characters
from .models import Classification, Resource, ResourceSet

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
MARKUP_EXTENSIONS = {".xhtml", ".html", ".htm", ".css", ".svg"}
FONT_EXTENSIONS = {".ttf", ".otf", ".woff", ".woff2"}

ENCRYPTION_PATH = "META-INF/encryption.xml"
ENC_NS = {"enc": "http://www.w3.org/2001/04/xmlenc#"}


def classify_path(path: str) -> Classification:
    ext = posixpath.splitext(path)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return Classification.IMAGE
    if ext in MARKUP_EXTENSIONS:
        return Classification.MARKUP
    if ext in FONT_EXTENSIONS:
        return Classification.FONT
    return Classification.OTHER


def protected_paths(content_dir: pathlib.Path) -> Set[str]:
    """Paths listed in META-INF/encryption.xml (obfuscated fonts and the like)."""
    encryption = content_dir / ENCRYPTION_PATH
    if not encryption.exists():
        return set()
    try:
        tree = ET.parse(encryption)
    except ET.ParseError as e:
        log.warning("Error parsing encryption.xml: %s", e)
        return set()
    paths = set()
    for ref in tree.getroot().iter(f"{{{ENC_NS['enc']}}}CipherReference"):
        uri = ref.get("URI")
        if uri:
            paths.add(posixpath.normpath(unquote(uri)))
    if paths:
        log.info("%d resources are protected by encryption.xml", len(paths))
    return paths


def classify(content_dir: pathlib.Path, date_times: Optional[Dict[str, tuple]] = None,
             gather_characters: bool = True, text_limit: Optional[int] = None) -> ResourceSet:
    date_times = date_times or {}
    protected = protected_paths(content_dir)
    resources = ResourceSet()

    for file in sorted(content_dir.rglob("*")):
        if not file.is_file():
            continue
        rel = file.relative_to(content_dir).as_posix()
        resources.add(
            Resource(
                root=content_dir,
                path=rel,
                classification=classify_path(rel),
                date_time=date_times.get(rel),
                protected=rel in protected,
            )
        )

    log.info(
        "Found %d images, %d markup/style files, %d fonts, %d other files",
        len(resources.images), len(resources.markup), len(resources.fonts), len(resources.other),
    )

    if gather_characters and resources.fonts:
        resources.characters = referenced_characters(resources.markup, text_limit)
    return resources
