from pathlib import Path

import httpx
import pytest

from epub_optimizer.downloader import Downloader, filename_for, is_url, verify_download
from epub_optimizer.errors import DownloadError, DownloadTimeout, HTTPStatusFailure, IntegrityFailure, MalformedURL

from helpers import book_files, write_epub

URL = "https://books.example.org/library/Moby%20Dick.epub"


def _epub_bytes(tmp_path: Path) -> bytes:
    return write_epub(tmp_path / "fixture.epub", book_files()).read_bytes()


def _downloader(tmp_path: Path, handler, **kwargs):
    calls = []
    sleeps = []

    def record(request):
        calls.append(request)
        return handler(request, len(calls))

    client = httpx.Client(transport=httpx.MockTransport(record))
    downloader = Downloader(tmp_path / "downloads", client=client, sleep=sleeps.append, **kwargs)
    return downloader, calls, sleeps


def test_is_url_and_filename() -> None:
    assert is_url("HTTPS://example.org/a.epub")
    assert not is_url("books/a.epub")
    assert filename_for(URL) == "Moby Dick.epub"
    generated = filename_for("https://example.org/download?id=7")
    assert generated.startswith("epub_") and generated.endswith(".epub")


def test_download_success(tmp_path: Path) -> None:
    payload = _epub_bytes(tmp_path)
    downloader, calls, sleeps = _downloader(tmp_path, lambda request, n: httpx.Response(200, content=payload))

    path = downloader.download(URL)
    assert path == tmp_path / "downloads" / "Moby Dick.epub"
    assert path.read_bytes() == payload
    assert len(calls) == 1
    assert calls[0].headers["User-Agent"].startswith("epub-optimizer")
    assert sleeps == []
    assert not list(path.parent.glob(".*.part"))


def test_existing_download_is_reused(tmp_path: Path) -> None:
    downloader, calls, _ = _downloader(tmp_path, lambda request, n: httpx.Response(500))
    target = tmp_path / "downloads" / "Moby Dick.epub"
    target.parent.mkdir()
    target.write_bytes(b"already here")
    assert downloader.download(URL) == target
    assert calls == []


def test_client_errors_are_not_retried(tmp_path: Path) -> None:
    downloader, calls, sleeps = _downloader(tmp_path, lambda request, n: httpx.Response(404))
    with pytest.raises(HTTPStatusFailure) as excinfo:
        downloader.download(URL)
    assert excinfo.value.status_code == 404
    assert len(calls) == 1
    assert sleeps == []


def test_server_errors_are_retried_with_backoff(tmp_path: Path) -> None:
    payload = _epub_bytes(tmp_path)

    def handler(request, n):
        return httpx.Response(503) if n < 3 else httpx.Response(200, content=payload)

    downloader, calls, sleeps = _downloader(tmp_path, handler)
    assert downloader.download(URL).read_bytes() == payload
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_timeouts_exhaust_retries(tmp_path: Path) -> None:
    def handler(request, n):
        raise httpx.ReadTimeout("too slow", request=request)

    downloader, calls, sleeps = _downloader(tmp_path, handler)
    with pytest.raises(DownloadTimeout):
        downloader.download(URL)
    assert len(calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_connection_errors_become_download_errors(tmp_path: Path) -> None:
    def handler(request, n):
        raise httpx.ConnectError("refused", request=request)

    downloader, calls, _ = _downloader(tmp_path, handler, retries=1)
    with pytest.raises(DownloadError) as excinfo:
        downloader.download(URL)
    assert not isinstance(excinfo.value, DownloadTimeout)
    assert len(calls) == 2


def test_non_zip_payload_fails_integrity(tmp_path: Path) -> None:
    downloader, calls, _ = _downloader(
        tmp_path, lambda request, n: httpx.Response(200, content=b"<html>Not found, sorry</html>")
    )
    with pytest.raises(IntegrityFailure):
        downloader.download(URL)
    assert len(calls) == 1
    assert list((tmp_path / "downloads").iterdir()) == []


def test_oversized_payload_fails_integrity(tmp_path: Path) -> None:
    payload = _epub_bytes(tmp_path)
    downloader, _, _ = _downloader(tmp_path, lambda request, n: httpx.Response(200, content=payload),
                                   max_bytes=100)
    with pytest.raises(IntegrityFailure):
        downloader.download(URL)


def test_malformed_urls(tmp_path: Path) -> None:
    downloader, calls, _ = _downloader(tmp_path, lambda request, n: httpx.Response(200))
    for url in ("ftp://example.org/a.epub", "https:///a.epub", "not a url"):
        with pytest.raises(MalformedURL):
            downloader.download(url)
    assert calls == []


def test_verify_download(tmp_path: Path) -> None:
    tiny = tmp_path / "tiny.epub"
    tiny.write_bytes(b"PK")
    with pytest.raises(IntegrityFailure):
        verify_download(tiny)
    verify_download(write_epub(tmp_path / "ok.epub", book_files()))
