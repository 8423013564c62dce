"""The pipeline orchestrator.

``optimize`` runs extract -> classify -> deduplicate -> optimize -> write in a
worker thread and waits for it at most the configured wall-clock budget. On
timeout the run is cancelled cooperatively and anything it wrote is removed.
"""

from __future__ import annotations

import logging
import os
import pathlib
import threading
import time
import zipfile
from typing import Iterable, List, Optional, Union

from . import archive
from .classifier import classify, classify_path
from .config import KB, OptimizerConfig
from .context import RunContext
from .dedup import Deduplicator
from .errors import ArchiveUnreadable, InputTooLarge, OptimizerError, ProcessingError, SizeIncreased
from .models import MIMETYPE_ENTRY, FailureReason, Outcome, RunSummary, SummaryBuilder
from .optimizer import ResourceOptimizer
from .policy import floor_for

log = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

def default_destination(source: PathLike) -> pathlib.Path:
    source = pathlib.Path(source)
    return source.with_name(f"{source.stem}_optimized.epub")


def estimated_reduction(size: int) -> float:
    """Expected saving ratio for one optimizable entry of ``size`` bytes."""
    if size < 100 * KB:
        return 0.10
    if size < 500 * KB:
        return 0.20
    return 0.25


def _failed(builder: SummaryBuilder, started: float, error: OptimizerError, dry_run: bool = False) -> RunSummary:
    return builder.build(
        time.monotonic() - started,
        success=False,
        reason=FailureReason(error.reason),
        message=str(error),
        dry_run=dry_run,
    )


def estimate(source: PathLike, config: Optional[OptimizerConfig] = None) -> RunSummary:
    """Predict the result of ``optimize`` from the central directory alone.

    Nothing is extracted or written. Entries sharing (CRC-32, size) with an
    earlier one count as deduplicated; optimizable entries above their floor
    are assumed to shrink by a size-tiered ratio.
    """
    config = config or OptimizerConfig()
    source = pathlib.Path(source)
    started = time.monotonic()
    builder = SummaryBuilder(source.stat().st_size)
    try:
        with zipfile.ZipFile(source) as z:
            infos = z.infolist()
    except (zipfile.BadZipFile, OSError) as e:
        return _failed(builder, started, ArchiveUnreadable(f"Cannot open {source}: {e}"), dry_run=True)

    seen = set()
    saved = 0
    for info in infos:
        if info.is_dir():
            continue
        classification = classify_path(info.filename)
        key = (info.CRC, info.file_size)
        if info.filename != MIMETYPE_ENTRY and key in seen:
            saved += info.compress_size
            builder.record_outcome(classification, Outcome.DEDUPLICATED)
            continue
        seen.add(key)
        floor = floor_for(classification, config)
        if floor is None or info.file_size < floor:
            builder.record_outcome(classification, Outcome.SKIPPED)
            continue
        saved += int(info.compress_size * estimated_reduction(info.file_size))
        builder.record_outcome(classification, Outcome.OPTIMIZED)

    builder.output_size = max(0, builder.input_size - saved)
    log.info("Estimated saving for %s: %d bytes", source.name, saved)
    return builder.build(time.monotonic() - started, dry_run=True)


class PipelineRun:
    """One ``optimize`` call: the run context, its summary and its outcome."""

    def __init__(self, source: pathlib.Path, destination: pathlib.Path, config: OptimizerConfig,
                 encoders=None, input_size: int = 0):
        self.source = source
        self.destination = destination
        self.config = config
        self.ctx = RunContext(config, encoders)
        self.summary = SummaryBuilder(input_size, destination)
        self.committed = False
        self.result: Optional[RunSummary] = None
        self.error: Optional[OptimizerError] = None
        self.started = time.monotonic()

    def _commit(self, partial: pathlib.Path, destination: pathlib.Path) -> None:
        with self.ctx.commit_lock:
            self.ctx.check_cancelled()
            os.replace(partial, destination)
            self.committed = True

    def _discard_destination(self) -> None:
        if self.committed:
            self.destination.unlink(missing_ok=True)
            self.committed = False

    def _stages(self) -> RunSummary:
        ctx = self.ctx
        config = self.config
        log.info("Extracting %s", self.source.name)
        extraction = archive.extract(self.source, ctx.content_dir, ctx.stream_threshold,
                                     config.chunk_size, ctx.check_cancelled)
        for name, reason in extraction.skipped:
            self.summary.record_failure(name, reason)

        resources = classify(ctx.content_dir, extraction.date_times(), text_limit=ctx.stream_threshold)
        ctx.check_cancelled()
        Deduplicator.for_context(ctx).run(resources.all)
        ResourceOptimizer(ctx).run(resources)
        self.summary.record_resources(resources.all)

        ctx.check_cancelled()
        log.info("Writing %s", self.destination)
        archive.write(resources.all, self.destination, ctx.stream_threshold, config.chunk_size,
                      ctx.check_cancelled, commit=self._commit)
        try:
            archive.verify(self.destination, expect_mimetype=resources.get(MIMETYPE_ENTRY) is not None)
            output_size = self.destination.stat().st_size
            if output_size > self.summary.input_size and not config.force:
                raise SizeIncreased(
                    f"Output ({output_size} bytes) is larger than the input ({self.summary.input_size} bytes)"
                )
        except BaseException:
            with ctx.commit_lock:
                self._discard_destination()
            raise

        self.summary.output_size = output_size
        return self.summary.build(time.monotonic() - self.started)

    def _target(self) -> None:
        try:
            self.result = self._stages()
        except OptimizerError as e:
            self.error = e
        except Exception as e:
            log.exception("Unexpected error while optimizing %s", self.source)
            self.error = ProcessingError(f"{type(e).__name__}: {e}")
        finally:
            self.ctx.close_workdir()

    def _abandon(self) -> None:
        """Remove everything the cancelled run wrote; its thread is not waited for."""
        self.ctx.cancel()
        with self.ctx.commit_lock:
            self._discard_destination()
        archive.partial_path(self.destination).unlink(missing_ok=True)
        self.ctx.close_workdir()

    def execute(self) -> RunSummary:
        self.ctx.start_clock()
        try:
            self.ctx.open_workdir()
        except OSError as e:
            return _failed(self.summary, self.started, ProcessingError(f"Cannot create a working directory: {e}"))
        thread = threading.Thread(target=self._target, name="epub-optimizer-run", daemon=True)
        thread.start()
        try:
            thread.join(self.ctx.remaining())
        except BaseException:
            self._abandon()
            raise

        if thread.is_alive():
            log.warning("Timed out after %.1fs; cancelling", self.config.timeout)
            self._abandon()
            return self.summary.build(
                time.monotonic() - self.started,
                success=False,
                reason=FailureReason.TIMEOUT,
                message=f"Optimization exceeded {self.config.timeout}s",
            )

        if self.error is not None:
            log.warning("Optimization of %s failed: %s", self.source.name, self.error)
            return _failed(self.summary, self.started, self.error)
        return self.result


def optimize(source: PathLike, destination: Optional[PathLike] = None,
             config: Optional[OptimizerConfig] = None, encoders=None) -> RunSummary:
    """Optimize the EPUB at ``source`` into ``destination``.

    Never raises for run-level failures: they come back as an unsuccessful
    RunSummary whose ``raise_for_failure`` re-raises them as typed errors.
    """
    config = config or OptimizerConfig()
    source = pathlib.Path(source)
    destination = pathlib.Path(destination) if destination else default_destination(source)
    started = time.monotonic()

    try:
        input_size = source.stat().st_size
    except OSError as e:
        return _failed(SummaryBuilder(0), started, ArchiveUnreadable(f"Cannot read {source}: {e}"))
    builder = SummaryBuilder(input_size)

    if config.max_input_bytes and input_size > config.max_input_bytes:
        return _failed(builder, started, InputTooLarge(
            f"{source.name} is {input_size} bytes; the limit is {config.max_input_bytes}"
        ))
    if config.dry_run:
        return estimate(source, config)
    if destination.resolve() == source.resolve():
        return _failed(builder, started, ProcessingError("destination must differ from the source"))

    return PipelineRun(source, destination, config, encoders, input_size).execute()


def batch_order(sources: Iterable[PathLike]) -> List[pathlib.Path]:
    """Largest first, so the slowest books start while the budget is fresh."""

    def size(path):
        try:
            return os.path.getsize(path)
        except OSError:
            return 0

    return sorted((pathlib.Path(s) for s in sources), key=size, reverse=True)


def optimize_batch(sources: Iterable[PathLike], output_dir: PathLike,
                   config: Optional[OptimizerConfig] = None, encoders=None) -> List[RunSummary]:
    """Optimize several books, largest first, into ``output_dir`` under their own names."""
    output_dir = pathlib.Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    summaries = []
    for source in batch_order(sources):
        summary = optimize(source, output_dir / source.name, config, encoders)
        log.info("%s: %s", source.name, "ok" if summary.success else summary.reason.value)
        summaries.append(summary)
    return summaries
