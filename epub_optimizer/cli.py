"""epub-optimizer: shrink EPUB files without changing what they contain.

Usage:
    epub-optimizer INPUT.epub [options]
    epub-optimizer A.epub B.epub --output-dir OUT [options]
    epub-optimizer https://example.org/book.epub [options]

Exit codes:
    0  success (or dry run)
    1  unreadable archive, processing or download error
    2  output would be larger than the input
    3  input larger than the configured cap
    4  timeout
"""

import argparse
import logging
import pathlib
import sys
import tempfile
from typing import List, Optional

from . import __version__
from .config import MB, OptimizerConfig
from .downloader import Downloader, is_url
from .encoders import default_encoders, missing_tools
from .errors import DownloadError
from .models import FailureReason, RunSummary
from .pipeline import batch_order, default_destination, optimize, optimize_batch

EXIT_CODES = {
    FailureReason.ARCHIVE_UNREADABLE: 1,
    FailureReason.PROCESSING_ERROR: 1,
    FailureReason.SIZE_INCREASE: 2,
    FailureReason.TOO_LARGE: 3,
    FailureReason.TIMEOUT: 4,
}


def human(n: float) -> str:
    for unit in ('B', 'KB', 'MB', 'GB'):
        if n < 1024 or unit == 'GB':
            return f"{n:.1f} {unit}"
        n /= 1024


def exit_code(summary: RunSummary) -> int:
    if summary.success:
        return 0
    return EXIT_CODES.get(summary.reason, 1)


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(prog="epub-optimizer", description="Lossless-first EPUB optimiser")
    p.add_argument("inputs", nargs="*", help="Input .epub file(s) or http(s) URL(s)")
    p.add_argument("-o", "--output", type=pathlib.Path,
                   help="Output file (default: input stem + '_optimized.epub')")
    p.add_argument("-d", "--output-dir", type=pathlib.Path,
                   help="Directory for the outputs when several inputs are given")
    p.add_argument("-q", "--quality", type=int,
                   help="Image quality (1-100, default adaptive; 100 = lossless)")
    p.add_argument("--max-width", type=int, help="Resize images wider than this")
    p.add_argument("--max-height", type=int, help="Resize images taller than this")
    p.add_argument("-j", "--threads", type=int, help="Worker thread cap")
    p.add_argument("--timeout", type=float, help="Wall-clock budget per book in seconds (default 300)")
    p.add_argument("--max-input-mb", type=int, help="Refuse inputs larger than this many MB")
    p.add_argument("--max-memory-mb", type=int, help="Memory budget used to size in-memory buffers")
    p.add_argument("--min-improvement", type=float,
                   help="Fraction an image must shrink by to be replaced (default 0.05)")
    p.add_argument("--full-hash", action="store_true",
                   help="Hash whole files when deduplicating instead of sampling large ones")
    p.add_argument("--constrained", action="store_true",
                   help="Use the limits suited to shared CI runners")
    p.add_argument("-f", "--force", action="store_true", help="Keep the output even if it is larger")
    p.add_argument("-n", "--dry-run", action="store_true", help="Estimate savings without writing anything")
    p.add_argument("-v", "--verbose", action="store_true", help="Log the disposition of each file")
    p.add_argument("--quiet", action="store_true", help="Only print errors")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = p.parse_args(argv)
    if not args.inputs:
        p.print_help()
        sys.exit(1)
    if args.quality is not None and not 1 <= args.quality <= 100:
        p.error("--quality must be between 1 and 100")
    return args


def build_config(args) -> OptimizerConfig:
    overrides = {
        "image_quality": args.quality,
        "max_width": args.max_width,
        "max_height": args.max_height,
        "threads": args.threads,
        "timeout": args.timeout,
        "max_input_bytes": args.max_input_mb * MB if args.max_input_mb else None,
        "max_memory_mb": args.max_memory_mb,
        "min_improvement": args.min_improvement,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.full_hash:
        overrides["full_hash_fingerprints"] = True
    overrides["force"] = args.force
    overrides["dry_run"] = args.dry_run
    if args.constrained:
        return OptimizerConfig.constrained_preset(**overrides)
    return OptimizerConfig(**overrides)


def verify_compressors_availability(quiet: bool = False) -> None:
    """Warn about external encoders that cannot be found; their candidates are skipped."""
    missing = missing_tools(default_encoders())
    if missing and not quiet:
        for name in missing:
            print(f"Note: {name} is not installed; its optimizations will be skipped", file=sys.stderr)


def report(source, summary: RunSummary) -> None:
    name = pathlib.Path(source).name
    if not summary.success:
        print(f"{name}: failed ({summary.reason.value}) {summary.message or ''}".rstrip())
        return
    verb = "Would save" if summary.dry_run else "Saved"
    print(f"{name}: {human(summary.input_size)} → {human(summary.output_size)} "
          f"({verb.lower()} {summary.saved_ratio:.1%})")
    print(f"  optimized {summary.optimized}, deduplicated {summary.deduplicated}, "
          f"skipped {summary.skipped}, failed {summary.failed} in {summary.elapsed:.1f}s")
    for failure in summary.failures:
        print(f"  ! {failure.path}: {failure.reason}")
    if summary.destination:
        print(f"  Output file: {summary.destination}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    config = build_config(args)
    verify_compressors_availability(args.quiet)

    with tempfile.TemporaryDirectory(prefix="epub-optimizer-dl-") as download_dir:
        downloader = Downloader(download_dir, max_bytes=config.max_input_bytes)
        sources = []
        for value in args.inputs:
            if is_url(value):
                try:
                    sources.append(downloader.download(value))
                except DownloadError as e:
                    print(f"{value}: download failed: {e}", file=sys.stderr)
                    return 1
            else:
                sources.append(pathlib.Path(value))

        if len(sources) > 1 or args.output_dir:
            if args.output:
                print("--output only applies to a single input; use --output-dir", file=sys.stderr)
                return 1
            output_dir = args.output_dir or pathlib.Path.cwd()
            summaries = optimize_batch(sources, output_dir, config)
            for source, summary in zip(batch_order(sources), summaries):
                if not args.quiet or not summary.success:
                    report(source, summary)
            return max(exit_code(s) for s in summaries)

        source = sources[0]
        destination = args.output
        if destination is None and is_url(args.inputs[0]):
            destination = pathlib.Path.cwd() / default_destination(source).name
        summary = optimize(source, destination, config)
        if not args.quiet or not summary.success:
            report(source, summary)
        return exit_code(summary)


if __name__ == "__main__":
    sys.exit(main())
