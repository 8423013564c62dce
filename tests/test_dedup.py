import functools
import os
from pathlib import Path

from epub_optimizer import dedup
from epub_optimizer.classifier import classify_path
from epub_optimizer.dedup import Deduplicator, FingerprintTable
from epub_optimizer.fingerprint import compute_fingerprint
from epub_optimizer.models import Outcome, Resource

from helpers import noise_png


def _resources(root: Path, files) -> list:
    out = []
    for path, data in files.items():
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        out.append(Resource(root, path, classify_path(path)))
    return out


def test_duplicates_link_to_smallest_path(tmp_path: Path) -> None:
    image = noise_png(20, 20)
    resources = _resources(tmp_path, {f"OEBPS/img/copy{i}.png": image for i in reversed(range(8))})

    assert Deduplicator(workers=4).run(resources) == 7

    canonical = next(r for r in resources if r.path == "OEBPS/img/copy0.png")
    assert canonical.outcome is Outcome.UNPROCESSED
    inode = os.stat(canonical.file_path).st_ino
    for resource in resources:
        assert os.stat(resource.file_path).st_ino == inode
        if resource is not canonical:
            assert resource.outcome is Outcome.DEDUPLICATED
            assert resource.canonical is canonical
            assert resource.detail == canonical.path
            assert resource.original_size == len(image)


def test_second_pass_links_nothing(tmp_path: Path) -> None:
    resources = _resources(tmp_path, {"a.css": b"p{}", "b.css": b"p{}", "c.css": b"q{}"})
    assert Deduplicator().run(resources) == 1
    assert Deduplicator().run(resources) == 0


def test_sampled_collisions_are_checked_for_text(tmp_path: Path) -> None:
    head, tail = b"H" * 10, b"T" * 10
    resources = _resources(tmp_path, {
        "a.css": head + b"a" * 480 + tail,
        "b.css": head + b"b" * 480 + tail,
        "a.png": head + b"a" * 480 + tail,
        "b.png": head + b"b" * 480 + tail,
    })
    fingerprint = functools.partial(compute_fingerprint, full_hash_limit=100, sample_size=10)

    assert Deduplicator(fingerprint).run(resources) == 1
    by_path = {r.path: r for r in resources}
    assert by_path["b.css"].outcome is Outcome.UNPROCESSED
    assert by_path["b.png"].outcome is Outcome.DEDUPLICATED


def test_mimetype_and_protected_are_never_linked(tmp_path: Path) -> None:
    resources = _resources(tmp_path, {"mimetype": b"same", "a.txt": b"same", "b.ttf": b"same"})
    resources[2].protected = True
    assert Deduplicator().run(resources) == 0


def test_link_failure_keeps_independent_copies(tmp_path: Path, monkeypatch) -> None:
    def refuse(src, dst):
        raise OSError("links not supported")

    monkeypatch.setattr(dedup.os, "link", refuse)
    resources = _resources(tmp_path, {"a.png": b"img", "b.png": b"img"})
    assert Deduplicator().run(resources) == 0
    assert all(r.outcome is Outcome.UNPROCESSED for r in resources)
    assert (tmp_path / "b.png").read_bytes() == b"img"
    assert not list(tmp_path.glob(".*.link"))


def test_fingerprint_table_is_order_independent(tmp_path: Path) -> None:
    names = ["c.png", "a.png", "b.png"]
    for order in (names, list(reversed(names)), sorted(names)):
        table = FingerprintTable()
        for name in order:
            table.claim("f", Resource(tmp_path, name, classify_path(name)))
        assert table.canonical("f").path == "a.png"
        assert len(table) == 1
