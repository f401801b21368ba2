import bz2
import gzip
import io
import tarfile
import zlib

import pytest
import zstandard as zstd

import snaptar


def decompress(kind, data):
    if kind is snaptar.CompressionKind.BZ2:
        return bz2.decompress(data)
    if kind is snaptar.CompressionKind.GZ:
        return gzip.decompress(data)
    if kind is snaptar.CompressionKind.ZLIB:
        return zlib.decompress(data)
    if kind is snaptar.CompressionKind.ZST:
        return zstd.ZstdDecompressor().decompressobj().decompress(data)
    raise AssertionError(kind)


def read_members(kind, path):
    """[(TarInfo, payload)] in archive order."""
    raw = decompress(kind, path.read_bytes())
    out = []
    with tarfile.open(fileobj=io.BytesIO(raw), mode="r:") as tar:
        for m in tar.getmembers():
            out.append((m, tar.extractfile(m).read()))
    return out


@pytest.fixture
def read_archive():
    return read_members


@pytest.fixture(autouse=True)
def _no_pinned_epoch(monkeypatch):
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)


@pytest.fixture
def tree(tmp_path, monkeypatch):
    """data/{a.txt, sub/b.bin, sub/deeper/c.txt, empty/} under a fresh cwd."""
    monkeypatch.chdir(tmp_path)
    root = tmp_path / "data"
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "a.txt").write_bytes(b"alpha\n")
    (root / "sub" / "b.bin").write_bytes(bytes(range(256)) * 40)
    (root / "sub" / "deeper" / "c.txt").write_bytes(b"")
    return root
