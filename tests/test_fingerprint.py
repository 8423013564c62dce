import hashlib
from pathlib import Path

from epub_optimizer.config import OptimizerConfig
from epub_optimizer.fingerprint import compute_fingerprint, fingerprinter, full_digest, sampled_digest


def test_full_digest_matches_sha256(tmp_path: Path) -> None:
    data = b"chapter one" * 1000
    path = tmp_path / "a.xhtml"
    path.write_bytes(data)
    assert full_digest(path, chunk_size=64) == hashlib.sha256(data).hexdigest()


def test_small_files_are_hashed_in_full(tmp_path: Path) -> None:
    path = tmp_path / "a.css"
    path.write_bytes(b"p{color:red}")
    assert compute_fingerprint(path, full_hash_limit=1000) == hashlib.sha256(b"p{color:red}").hexdigest()


def test_sampled_fingerprint_ignores_the_middle(tmp_path: Path) -> None:
    a = tmp_path / "a.bin"
    b = tmp_path / "b.bin"
    a.write_bytes(b"H" * 100 + b"x" * 800 + b"T" * 100)
    b.write_bytes(b"H" * 100 + b"y" * 800 + b"T" * 100)

    fa = compute_fingerprint(a, full_hash_limit=500, sample_size=100)
    fb = compute_fingerprint(b, full_hash_limit=500, sample_size=100)
    assert fa.startswith("s:")
    assert fa == fb == sampled_digest(a, 100)

    assert compute_fingerprint(a, full_hash_limit=500, sample_size=100, always_full=True) != \
        compute_fingerprint(b, full_hash_limit=500, sample_size=100, always_full=True)


def test_sampled_fingerprint_includes_size(tmp_path: Path) -> None:
    a = tmp_path / "a.bin"
    b = tmp_path / "b.bin"
    a.write_bytes(b"H" * 10 + b"x" * 50 + b"T" * 10)
    b.write_bytes(b"H" * 10 + b"x" * 60 + b"T" * 10)
    assert sampled_digest(a, 10) != sampled_digest(b, 10)


def test_fingerprinter_binds_config(tmp_path: Path) -> None:
    path = tmp_path / "big.bin"
    path.write_bytes(b"z" * 5000)
    assert fingerprinter(OptimizerConfig(full_hash_limit=1000))(path).startswith("s:")
    assert not fingerprinter(OptimizerConfig(full_hash_limit=1000, full_hash_fingerprints=True))(path).startswith("s:")
