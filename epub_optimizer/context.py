"""Run-scoped state passed explicitly through the pipeline stages."""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import shutil
import tempfile
import threading
import time
from typing import Dict, Optional

from .config import OptimizerConfig, resolve_workers, streaming_threshold
from .encoders import EncodeParams, default_encoders
from .errors import Cancelled, EncoderUnavailable

log = logging.getLogger(__name__)


class ResultCache:
    """Optimized outputs keyed by the fingerprint of their input; lives for one run."""

    def __init__(self):
        self._entries: Dict[str, pathlib.Path] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> Optional[pathlib.Path]:
        with self._lock:
            return self._entries.get(fingerprint)

    def put(self, fingerprint: str, path: pathlib.Path) -> None:
        with self._lock:
            self._entries.setdefault(fingerprint, path)

    def __len__(self):
        return len(self._entries)


class RunContext:
    def __init__(self, config: OptimizerConfig, encoders=None, workers: Optional[int] = None):
        self.config = config
        self.encoders = encoders if encoders is not None else default_encoders()
        self.workers = workers or resolve_workers(config)
        self.stream_threshold = streaming_threshold(config, self.workers)
        self.cache = ResultCache()
        self.cancel_event = threading.Event()
        self.commit_lock = threading.Lock()
        self.deadline: Optional[float] = None
        self.workdir: Optional[pathlib.Path] = None
        self.characters: Optional[frozenset] = None

    @property
    def content_dir(self) -> pathlib.Path:
        return self.workdir / "content"

    @property
    def scratch_dir(self) -> pathlib.Path:
        return self.workdir / "scratch"

    def start_clock(self) -> None:
        if self.config.timeout and self.config.timeout > 0:
            self.deadline = time.monotonic() + self.config.timeout

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled("run cancelled")

    def scratch_file(self, suffix: str = "") -> pathlib.Path:
        fd, name = tempfile.mkstemp(suffix=suffix, dir=self.scratch_dir)
        os.close(fd)
        return pathlib.Path(name)

    def open_workdir(self) -> pathlib.Path:
        self.workdir = pathlib.Path(tempfile.mkdtemp(prefix="epub-optimizer-"))
        self.content_dir.mkdir()
        self.scratch_dir.mkdir()
        return self.workdir

    def close_workdir(self) -> None:
        # after a timeout both the caller and the run thread get here; the
        # path is kept so the second call removes anything created late
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)

    def encode(self, name: str, source: pathlib.Path, params: EncodeParams,
               suffix: str = "") -> Optional[pathlib.Path]:
        """Run encoder ``name`` into a fresh scratch file.

        Returns None when the encoder is not installed so the caller can move
        on to its next candidate; encode failures propagate.
        """
        self.check_cancelled()
        encoder = self.encoders.get(name)
        if encoder is None or not encoder.available():
            log.debug("%s unavailable, skipping candidate for %s", name, source.name)
            return None
        output = self.scratch_file(suffix)
        params = dataclasses.replace(params, timeout=self.remaining())
        try:
            return encoder.encode(source, params, output)
        except EncoderUnavailable:
            output.unlink(missing_ok=True)
            return None
        except BaseException:
            output.unlink(missing_ok=True)
            raise

    def install(self, resource, produced: pathlib.Path) -> None:
        """Atomically swap ``produced`` in as the resource's content."""
        os.replace(produced, resource.file_path)
        resource.content_changed()
