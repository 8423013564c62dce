"""Shrink EPUB containers: deduplicate, re-encode and repack without changing their content."""

__version__ = "0.1.0"

from .config import OptimizerConfig
from .errors import (
    ArchiveUnreadable,
    EncodeError,
    EncoderUnavailable,
    InputTooLarge,
    OptimizerError,
    PipelineTimeout,
    ProcessingError,
    ResourceProcessingFailed,
    SizeIncreased,
)
from .models import FailureReason, Outcome, RunSummary
from .pipeline import default_destination, estimate, optimize, optimize_batch

__all__ = [
    "OptimizerConfig",
    "RunSummary",
    "FailureReason",
    "Outcome",
    "optimize",
    "optimize_batch",
    "estimate",
    "default_destination",
    "OptimizerError",
    "ArchiveUnreadable",
    "SizeIncreased",
    "PipelineTimeout",
    "InputTooLarge",
    "ProcessingError",
    "ResourceProcessingFailed",
    "EncodeError",
    "EncoderUnavailable",
]
