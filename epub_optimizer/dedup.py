"""Collapsing duplicate resources onto one canonical copy."""

from __future__ import annotations

import filecmp
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from .fingerprint import compute_fingerprint, fingerprinter
from .models import MIMETYPE_ENTRY, Outcome, Resource

log = logging.getLogger(__name__)


class FingerprintTable:
    """Fingerprint -> canonical resource, safe for concurrent claims.

    The member with the smallest path always ends up canonical, whatever order
    the claims arrive in.
    """

    def __init__(self):
        self._canonical: Dict[str, Resource] = {}
        self._lock = threading.Lock()

    def claim(self, fingerprint: str, resource: Resource) -> Resource:
        with self._lock:
            current = self._canonical.get(fingerprint)
            if current is None or resource.path < current.path:
                self._canonical[fingerprint] = resource
                return resource
            return current

    def canonical(self, fingerprint: str) -> Optional[Resource]:
        with self._lock:
            return self._canonical.get(fingerprint)

    def __len__(self):
        return len(self._canonical)


def eligible(resource: Resource) -> bool:
    return (
        resource.path != MIMETYPE_ENTRY
        and not resource.protected
        and resource.outcome is not Outcome.FAILED
    )


def same_bytes(a: Resource, b: Resource) -> bool:
    return filecmp.cmp(a.content_path, b.content_path, shallow=False)


def link(duplicate: Resource, canonical: Resource) -> bool:
    """Replace ``duplicate`` on disk with a hard link to ``canonical``."""
    duplicate.size  # remember the pre-link size
    target = duplicate.file_path
    tmp = target.with_name(f".{target.name}.link")
    try:
        os.link(canonical.file_path, tmp)
        os.replace(tmp, target)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        log.warning("Could not link %s to %s (%s); keeping it as an independent file",
                    duplicate.path, canonical.path, e)
        return False
    duplicate.canonical = canonical
    duplicate.content_changed()
    duplicate.mark(Outcome.DEDUPLICATED, canonical.path)
    return True


class Deduplicator:
    def __init__(self, fingerprint=compute_fingerprint, workers: int = 1, check_cancelled=None):
        self.fingerprint = fingerprint
        self.workers = max(1, workers)
        self.check_cancelled = check_cancelled
        self.table = FingerprintTable()

    @classmethod
    def for_context(cls, ctx) -> "Deduplicator":
        return cls(fingerprinter(ctx.config), ctx.workers, ctx.check_cancelled)

    def _key(self, resource: Resource) -> str:
        # identical bytes under different classifications are optimized differently
        return f"{resource.classification.value}:{resource.fingerprint(self.fingerprint)}"

    def _claim(self, resource: Resource) -> None:
        if self.check_cancelled:
            self.check_cancelled()
        self.table.claim(self._key(resource), resource)

    def fingerprint_all(self, resources: List[Resource]) -> None:
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self._claim, r): r for r in resources}
            for future in as_completed(futures):
                try:
                    future.result()
                except OSError as e:
                    log.warning("Could not fingerprint %s: %s", futures[future].path, e)

    def run(self, resources: Iterable[Resource]) -> int:
        """Link every duplicate to its canonical; returns the number of new links."""
        candidates = sorted((r for r in resources if eligible(r)), key=lambda r: r.path)
        self.fingerprint_all(candidates)

        linked = 0
        for resource in candidates:
            if not resource.has_fingerprint:
                continue
            canonical = self.table.canonical(self._key(resource))
            if canonical is None or canonical is resource or resource.canonical is canonical:
                continue
            if not resource.classification.is_binary and not same_bytes(resource, canonical):
                log.debug("Fingerprint match without identical bytes: %s vs %s", resource.path, canonical.path)
                continue
            if link(resource, canonical):
                log.debug("Deduplicated %s -> %s", resource.path, canonical.path)
                linked += 1

        if linked:
            log.info("Collapsed %d duplicate resources", linked)
        return linked
