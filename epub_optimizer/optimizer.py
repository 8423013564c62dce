"""Per-resource optimization, fanned out over a bounded worker pool."""

from __future__ import annotations

import logging
import shutil
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional

from .errors import Cancelled
from .fingerprint import fingerprinter
from .fonts import optimize_font
from .images import optimize_image
from .markup import optimize_markup
from .models import Classification, Outcome, Resource, ResourceSet
from .policy import floor_for

log = logging.getLogger(__name__)

# Groups run one after another; resources inside a group run in parallel.
GROUP_ORDER = (Classification.IMAGE, Classification.MARKUP, Classification.FONT)

HANDLERS = {
    Classification.IMAGE: optimize_image,
    Classification.MARKUP: optimize_markup,
    Classification.FONT: optimize_font,
}


class ResourceOptimizer:
    """Drives each resource from Unprocessed to exactly one terminal outcome."""

    def __init__(self, ctx, handlers: Optional[Dict] = None):
        self.ctx = ctx
        self.handlers = handlers or HANDLERS
        self.fingerprint = fingerprinter(ctx.config)

    def _cache_key(self, resource: Resource) -> Optional[str]:
        try:
            key = resource.fingerprint(self.fingerprint)
        except OSError:
            return None
        # sampled fingerprints are only trusted for binary content
        if key.startswith("s:") and not resource.classification.is_binary:
            return None
        return f"{resource.classification.value}:{key}"

    def _from_cache(self, resource: Resource, key: Optional[str]) -> bool:
        cached = self.ctx.cache.get(key) if key else None
        if cached is None or cached == resource.file_path or not cached.exists():
            return False
        if cached.stat().st_size >= resource.size:
            return False
        produced = self.ctx.scratch_file()
        shutil.copyfile(cached, produced)
        self.ctx.install(resource, produced)
        return True

    def process(self, resource: Resource) -> Outcome:
        if resource.outcome is not Outcome.UNPROCESSED:
            return resource.outcome
        self.ctx.check_cancelled()

        if resource.protected:
            resource.mark(Outcome.SKIPPED, "protected")
            return resource.outcome
        handler = self.handlers.get(resource.classification)
        if handler is None:
            resource.mark(Outcome.SKIPPED, "passthrough")
            return resource.outcome

        try:
            floor = floor_for(resource.classification, self.ctx.config)
            if floor and resource.size < floor:
                resource.mark(Outcome.SKIPPED, "below_floor")
                return resource.outcome

            key = self._cache_key(resource)
            if self._from_cache(resource, key):
                resource.mark(Outcome.OPTIMIZED, "cached")
                return resource.outcome

            outcome, detail = handler(resource, self.ctx)
        except Cancelled:
            raise
        except Exception as e:
            log.warning("Failed to optimize %s: %s", resource.path, e)
            log.debug("Failure details for %s", resource.path, exc_info=True)
            resource.mark(Outcome.FAILED, str(e) or type(e).__name__)
            return resource.outcome

        resource.mark(outcome, detail)
        if outcome is Outcome.OPTIMIZED:
            if key:
                self.ctx.cache.put(key, resource.file_path)
            log.debug("Optimized %s (%s)", resource.path, detail)
        return outcome

    def run_group(self, resources: Iterable[Resource]) -> None:
        pending = [r for r in resources if r.outcome is Outcome.UNPROCESSED]
        if not pending:
            return
        pool = ThreadPoolExecutor(max_workers=self.ctx.workers, thread_name_prefix="optimize")
        try:
            futures = [pool.submit(self.process, r) for r in pending]
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in done:
                # process() records everything but cancellation
                future.result()
        except BaseException:
            self.ctx.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    def run(self, resources: ResourceSet) -> None:
        self.ctx.characters = resources.characters
        for classification in GROUP_ORDER:
            group: List[Resource] = resources.group(classification)
            if not group:
                continue
            log.info("Optimizing %d %s resources", len(group), classification.value)
            self.run_group(group)
        for resource in resources.other:
            if resource.outcome is Outcome.UNPROCESSED:
                resource.mark(Outcome.SKIPPED, "passthrough")
