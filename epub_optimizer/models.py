"""Data model shared by the pipeline stages."""

from __future__ import annotations

import enum
import pathlib
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import RUN_LEVEL_ERRORS, ProcessingError

MIMETYPE_ENTRY = "mimetype"


class Classification(enum.Enum):
    IMAGE = "image"
    MARKUP = "markup"
    FONT = "font"
    OTHER = "other"

    @property
    def is_binary(self) -> bool:
        return self in (Classification.IMAGE, Classification.FONT)

    @property
    def write_priority(self) -> int:
        return _WRITE_PRIORITY[self]


_WRITE_PRIORITY = {
    Classification.MARKUP: 0,
    Classification.IMAGE: 1,
    Classification.FONT: 2,
    Classification.OTHER: 3,
}


class Outcome(enum.Enum):
    UNPROCESSED = "unprocessed"
    OPTIMIZED = "optimized"
    SKIPPED = "skipped"
    DEDUPLICATED = "deduplicated"
    FAILED = "failed"


class FailureReason(str, enum.Enum):
    SIZE_INCREASE = "size_increase"
    TIMEOUT = "timeout"
    TOO_LARGE = "too_large"
    ARCHIVE_UNREADABLE = "archive_unreadable"
    PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class ArchiveEntry:
    """One file entry read out of the source container."""

    name: str
    size: int
    date_time: Tuple[int, int, int, int, int, int]
    compressed: bool = True


class Resource:
    """An extracted entry materialized as a file under the working tree."""

    def __init__(
        self,
        root: pathlib.Path,
        path: str,
        classification: Classification,
        date_time: Optional[Tuple[int, int, int, int, int, int]] = None,
        protected: bool = False,
    ):
        self.root = root
        self.path = path
        self.classification = classification
        self.date_time = date_time
        self.protected = protected
        self.outcome = Outcome.UNPROCESSED
        self.detail: Optional[str] = None
        self.canonical: Optional[Resource] = None
        self.original_size: Optional[int] = None
        self._size: Optional[int] = None
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    def __repr__(self):
        return f"Resource({self.path!r}, {self.classification.value}, {self.outcome.value})"

    @property
    def file_path(self) -> pathlib.Path:
        return self.root / self.path

    @property
    def content_path(self) -> pathlib.Path:
        """File holding this resource's bytes; a reference resolves to its canonical."""
        if self.canonical is not None:
            return self.canonical.content_path
        return self.file_path

    @property
    def is_reference(self) -> bool:
        return self.canonical is not None

    @property
    def size(self) -> int:
        if self._size is None:
            self._size = self.content_path.stat().st_size
            if self.original_size is None:
                self.original_size = self._size
        return self._size

    def fingerprint(self, compute) -> str:
        """Fingerprint of the current content, computed once with ``compute(path)``."""
        with self._lock:
            if self._fingerprint is None:
                self._fingerprint = compute(self.content_path)
            return self._fingerprint

    @property
    def has_fingerprint(self) -> bool:
        return self._fingerprint is not None

    def content_changed(self) -> None:
        """Drop cached size and fingerprint after the bytes on disk were replaced."""
        if self.original_size is None and self._size is not None:
            self.original_size = self._size
        self._size = None
        self._fingerprint = None

    def mark(self, outcome: Outcome, detail: Optional[str] = None) -> None:
        self.outcome = outcome
        self.detail = detail


@dataclass
class ResourceSet:
    images: List[Resource] = field(default_factory=list)
    markup: List[Resource] = field(default_factory=list)
    fonts: List[Resource] = field(default_factory=list)
    other: List[Resource] = field(default_factory=list)
    all: List[Resource] = field(default_factory=list)
    characters: Optional[frozenset] = None

    def add(self, resource: Resource) -> None:
        self.all.append(resource)
        self.group(resource.classification).append(resource)

    def group(self, classification: Classification) -> List[Resource]:
        return {
            Classification.IMAGE: self.images,
            Classification.MARKUP: self.markup,
            Classification.FONT: self.fonts,
            Classification.OTHER: self.other,
        }[classification]

    def get(self, path: str) -> Optional[Resource]:
        for resource in self.all:
            if resource.path == path:
                return resource
        return None


@dataclass(frozen=True)
class FileFailure:
    path: str
    reason: str


@dataclass(frozen=True)
class RunSummary:
    success: bool
    input_size: int
    output_size: int
    elapsed: float
    reason: Optional[FailureReason] = None
    message: Optional[str] = None
    destination: Optional[pathlib.Path] = None
    optimized: int = 0
    skipped: int = 0
    deduplicated: int = 0
    failed: int = 0
    outcomes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failures: Tuple[FileFailure, ...] = ()
    dry_run: bool = False

    @property
    def bytes_saved(self) -> int:
        return self.input_size - self.output_size

    @property
    def saved_ratio(self) -> float:
        if self.input_size <= 0:
            return 0.0
        return self.bytes_saved / self.input_size

    def raise_for_failure(self) -> None:
        if self.success:
            return
        error_cls = RUN_LEVEL_ERRORS.get(self.reason.value if self.reason else "", ProcessingError)
        raise error_cls(self.message or (self.reason.value if self.reason else "optimization failed"))


class SummaryBuilder:
    """Accumulates run facts; ``build`` freezes them into a RunSummary."""

    def __init__(self, input_size: int = 0, destination: Optional[pathlib.Path] = None):
        self.input_size = input_size
        self.output_size = input_size
        self.destination = destination
        self.failures: List[FileFailure] = []
        self.counts: Dict[Classification, Counter] = {}
        self._lock = threading.Lock()

    def record_failure(self, path: str, reason: str) -> None:
        with self._lock:
            self.failures.append(FileFailure(path, reason))

    def record_outcome(self, classification: Classification, outcome: Outcome, n: int = 1) -> None:
        with self._lock:
            self.counts.setdefault(classification, Counter())[outcome] += n

    def record_resources(self, resources) -> None:
        with self._lock:
            for resource in resources:
                self.counts.setdefault(resource.classification, Counter())[resource.outcome] += 1
                if resource.outcome is Outcome.FAILED:
                    self.failures.append(FileFailure(resource.path, resource.detail or "failed"))

    def _total(self, outcome: Outcome) -> int:
        return sum(counter[outcome] for counter in self.counts.values())

    def build(
        self,
        elapsed: float,
        success: bool = True,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
        dry_run: bool = False,
    ) -> RunSummary:
        outcomes = {
            classification.value: {outcome.value: n for outcome, n in counter.items() if n}
            for classification, counter in sorted(self.counts.items(), key=lambda kv: kv[0].write_priority)
        }
        extraction_failures = sum(1 for f in self.failures if f.reason.startswith("extract"))
        return RunSummary(
            success=success,
            input_size=self.input_size,
            output_size=self.output_size if success else self.input_size,
            elapsed=elapsed,
            reason=reason,
            message=message,
            destination=self.destination if success and not dry_run else None,
            optimized=self._total(Outcome.OPTIMIZED),
            skipped=self._total(Outcome.SKIPPED),
            deduplicated=self._total(Outcome.DEDUPLICATED),
            failed=self._total(Outcome.FAILED) + extraction_failures,
            outcomes=outcomes,
            failures=tuple(self.failures),
            dry_run=dry_run,
        )
