"""Configuration surface consumed by the pipeline."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import Optional

KB = 1000
MB = 1000 * 1000
MiB = 1024 * 1024

CONSTRAINED_THREAD_CAP = 2


@dataclass(frozen=True)
class OptimizerConfig:
    # parallelism and limits
    threads: Optional[int] = None
    timeout: float = 300.0
    max_memory_mb: Optional[int] = None
    max_input_bytes: Optional[int] = None
    constrained: bool = False

    # run behaviour
    force: bool = False
    dry_run: bool = False
    min_improvement: float = 0.05

    # per-classification floors (bytes)
    image_floor: int = 10 * KB
    markup_floor: int = 1 * KB
    font_floor: int = 50 * KB

    # images
    image_quality: Optional[int] = None
    max_width: int = 1200
    max_height: int = 1600
    min_quality: int = 40
    max_quality: int = 95

    # fonts
    subset_ratio: float = 0.5

    # streaming and fingerprints
    large_file_threshold: int = 10 * MB
    markup_stream_threshold: int = 1 * MB
    chunk_size: int = MiB
    full_hash_limit: int = MiB
    sample_size: int = 1024
    full_hash_fingerprints: bool = False

    @classmethod
    def constrained_preset(cls, **overrides) -> "OptimizerConfig":
        """Limits suited to shared CI runners."""
        values = dict(
            threads=CONSTRAINED_THREAD_CAP,
            max_memory_mb=512,
            max_input_bytes=50 * MiB,
            constrained=True,
            image_quality=75,
            max_width=800,
            max_height=1200,
        )
        values.update(overrides)
        return cls(**values)

    def replace(self, **changes) -> "OptimizerConfig":
        return dataclasses.replace(self, **changes)

    @property
    def lossless(self) -> bool:
        return self.image_quality == 100


def in_constrained_environment(environ=None) -> bool:
    environ = os.environ if environ is None else environ
    return any(environ.get(name) for name in ("CI", "GITHUB_ACTIONS"))


def optimal_threads(cpu_count: int) -> int:
    """Worker count for ``cpu_count`` CPUs, leaving headroom for the rest of the system."""
    if cpu_count <= 2:
        return max(1, cpu_count - 1)
    if cpu_count <= 4:
        return cpu_count - 1
    if cpu_count <= 8:
        return cpu_count - 2
    return 6


def resolve_workers(config: OptimizerConfig, cpu_count: Optional[int] = None, environ=None) -> int:
    environ = os.environ if environ is None else environ
    workers = optimal_threads(cpu_count if cpu_count is not None else (os.cpu_count() or 1))

    caps = []
    if config.threads:
        caps.append(config.threads)
    env_cap = environ.get("EPUB_OPTIMIZER_THREADS")
    if env_cap and env_cap.isdigit() and int(env_cap) > 0:
        caps.append(int(env_cap))
    if config.constrained or in_constrained_environment(environ):
        caps.append(CONSTRAINED_THREAD_CAP)

    for cap in caps:
        workers = min(workers, cap)
    return max(1, workers)


def streaming_threshold(config: OptimizerConfig, workers: int) -> int:
    """Largest payload a worker may hold in memory at once."""
    threshold = config.large_file_threshold
    if config.max_memory_mb:
        budget = config.max_memory_mb * MiB // max(1, workers)
        threshold = min(threshold, budget)
    return max(config.chunk_size, threshold)
