"""Fetching books over HTTP(S) before optimizing them."""

from __future__ import annotations

import logging
import pathlib
import posixpath
import secrets
import time
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from .errors import DownloadError, DownloadTimeout, HTTPStatusFailure, IntegrityFailure, MalformedURL

log = logging.getLogger(__name__)

USER_AGENT = "epub-optimizer-downloader/1.0"
TIMEOUT = 30.0
MAX_RETRIES = 3
BACKOFF = 1.0

ZIP_MAGIC = b"PK\x03\x04"
# an empty ZIP is a bare end-of-central-directory record
MIN_SIZE = 22


def is_url(value: str) -> bool:
    return value.lower().startswith(("http://", "https://"))


def filename_for(url: str) -> str:
    basename = posixpath.basename(unquote(urlparse(url).path))
    if not basename.lower().endswith(".epub"):
        basename = f"epub_{secrets.token_hex(4)}.epub"
    return basename


def verify_download(path: pathlib.Path, max_bytes: Optional[int] = None) -> None:
    size = path.stat().st_size
    if size < MIN_SIZE:
        raise IntegrityFailure(f"{path.name} is only {size} bytes")
    if max_bytes is not None and size > max_bytes:
        raise IntegrityFailure(f"{path.name} is {size} bytes; the limit is {max_bytes}")
    with path.open("rb") as f:
        magic = f.read(len(ZIP_MAGIC))
    if magic != ZIP_MAGIC:
        raise IntegrityFailure(f"{path.name} is not a ZIP container")


class Downloader:
    """Streams books to ``output_dir``, retrying transient failures.

    Client errors (4xx) and integrity failures are not retried; timeouts,
    transport errors and server errors are, with exponential backoff.
    """

    def __init__(self, output_dir, timeout: float = TIMEOUT, retries: int = MAX_RETRIES,
                 backoff: float = BACKOFF, max_bytes: Optional[int] = None,
                 client: Optional[httpx.Client] = None, sleep=time.sleep):
        self.output_dir = pathlib.Path(output_dir)
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.max_bytes = max_bytes
        self.client = client
        self.sleep = sleep

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
        )

    def _fetch(self, client: httpx.Client, url: str, target: pathlib.Path) -> None:
        partial = target.with_name(f".{target.name}.part")
        try:
            with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                if response.status_code >= 400:
                    raise HTTPStatusFailure(response.status_code, response.reason_phrase)
                received = 0
                with partial.open("wb") as out:
                    for chunk in response.iter_bytes():
                        received += len(chunk)
                        if self.max_bytes is not None and received > self.max_bytes:
                            raise IntegrityFailure(f"{url} exceeds {self.max_bytes} bytes")
                        out.write(chunk)
            verify_download(partial, self.max_bytes)
            partial.replace(target)
        except httpx.TimeoutException as e:
            raise DownloadTimeout(f"{url} timed out after {self.timeout}s") from e
        finally:
            partial.unlink(missing_ok=True)

    def download(self, url: str, destination: Optional[pathlib.Path] = None) -> pathlib.Path:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise MalformedURL(f"Not an http(s) URL: {url!r}")

        target = pathlib.Path(destination) if destination else self.output_dir / filename_for(url)
        if target.exists():
            log.info("%s already downloaded", target.name)
            return target
        target.parent.mkdir(parents=True, exist_ok=True)

        client = self.client or self._client()
        try:
            for attempt in range(self.retries + 1):
                try:
                    self._fetch(client, url, target)
                    log.info("Downloaded %s (%d bytes)", target.name, target.stat().st_size)
                    return target
                except (DownloadTimeout, HTTPStatusFailure, httpx.TransportError) as e:
                    retryable = not isinstance(e, HTTPStatusFailure) or e.status_code >= 500
                    if not retryable or attempt == self.retries:
                        if isinstance(e, httpx.TransportError):
                            raise DownloadError(f"{url}: {e}") from e
                        raise
                    delay = self.backoff * (2 ** attempt)
                    log.warning("Download of %s failed (%s); retrying in %.0fs", url, e, delay)
                    self.sleep(delay)
        finally:
            if self.client is None:
                client.close()


def download(url: str, output_dir=".", **kwargs) -> pathlib.Path:
    return Downloader(output_dir, **kwargs).download(url)
