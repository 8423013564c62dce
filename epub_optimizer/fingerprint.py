"""Content fingerprints used for deduplication.

Small files get a full SHA-256. Past ``full_hash_limit`` the digest only covers
the size plus the first and last ``sample_size`` bytes; two same-size files
that agree at both ends but differ in the middle collide. Textual resources are
compared byte for byte before they are linked, binary ones are not.
"""

from __future__ import annotations

import functools
import hashlib
import pathlib

from .config import OptimizerConfig


def full_digest(path: pathlib.Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def sampled_digest(path: pathlib.Path, sample_size: int = 1024) -> str:
    size = path.stat().st_size
    h = hashlib.sha256()
    h.update(f"{size}-".encode())
    with path.open("rb") as f:
        h.update(f.read(sample_size))
        h.update(b"-")
        f.seek(max(0, size - sample_size))
        h.update(f.read(sample_size))
    return "s:" + h.hexdigest()


def compute_fingerprint(
    path: pathlib.Path,
    full_hash_limit: int = 1024 * 1024,
    sample_size: int = 1024,
    chunk_size: int = 1024 * 1024,
    always_full: bool = False,
) -> str:
    if always_full or path.stat().st_size < full_hash_limit:
        return full_digest(path, chunk_size)
    return sampled_digest(path, sample_size)


def fingerprinter(config: OptimizerConfig):
    """Bind ``compute_fingerprint`` to the thresholds of ``config``."""
    return functools.partial(
        compute_fingerprint,
        full_hash_limit=config.full_hash_limit,
        sample_size=config.sample_size,
        chunk_size=config.chunk_size,
        always_full=config.full_hash_fingerprints,
    )
