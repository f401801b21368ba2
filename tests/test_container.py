import io
import tarfile

import pytest

from snaptar import ContainerWriter, FormatError, make_header


def test_header_fields():
    ti = make_header("data/a.txt", 6, 1700000000)
    assert ti.name == "data/a.txt"
    assert ti.size == 6
    assert ti.mode == 0o644
    assert (ti.uid, ti.gid) == (0, 0)
    assert ti.mtime == 1700000000
    assert ti.type == tarfile.REGTYPE


def test_header_checksum_is_the_tar_checksum():
    ti = make_header("x.bin", 10, 42)
    buf = ti.tobuf(tarfile.GNU_FORMAT, "utf-8", "surrogateescape")
    # frombuf rejects a block with a bad checksum
    parsed = tarfile.TarInfo.frombuf(buf, "utf-8", "surrogateescape")
    assert parsed.name == "x.bin"
    assert parsed.chksum == tarfile.calc_chksums(buf)[0]


def test_header_rejects_empty_name():
    with pytest.raises(FormatError):
        make_header("", 0, 0)


def test_header_rejects_negative_size():
    with pytest.raises(FormatError, match="negative"):
        make_header("a", -1, 0)


def test_long_names_are_kept():
    name = "/".join(["segment"] * 40) + "/file.txt"
    sink = io.BytesIO()
    with ContainerWriter(sink, mtime=0) as w:
        w.add_bytes(name, b"payload")
    with tarfile.open(fileobj=io.BytesIO(sink.getvalue())) as tar:
        assert tar.getnames() == [name]


def test_entries_written_in_order_and_padded():
    sink = io.BytesIO()
    with ContainerWriter(sink, mtime=5) as w:
        w.add_bytes("one", b"1" * 700)
        w.add_file("two", io.BytesIO(b"22"), 2)
    assert w.entries == ["one", "two"]
    data = sink.getvalue()
    assert len(data) % tarfile.RECORDSIZE == 0
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        members = tar.getmembers()
        assert [m.name for m in members] == ["one", "two"]
        assert tar.extractfile(members[0]).read() == b"1" * 700
        assert all(m.mtime == 5 for m in members)
    # header + 2 payload blocks, header + 1 payload block, then zeros
    assert data[512 * 5:] == b"\0" * (len(data) - 512 * 5)


def test_finish_twice_is_an_error():
    w = ContainerWriter(io.BytesIO(), mtime=0)
    w.finish()
    with pytest.raises(ValueError):
        w.finish()
    with pytest.raises(ValueError):
        w.add_bytes("late", b"")


def test_short_payload_fails():
    w = ContainerWriter(io.BytesIO(), mtime=0)
    with pytest.raises(OSError):
        w.add_file("short", io.BytesIO(b"abc"), 10)


def test_error_exit_writes_no_trailer():
    sink = io.BytesIO()
    with pytest.raises(RuntimeError):
        with ContainerWriter(sink, mtime=0) as w:
            w.add_bytes("a", b"x")
            raise RuntimeError("boom")
    # one header block and one payload block, no end-of-archive blocks
    assert len(sink.getvalue()) == 1024


def test_clean_exit_writes_trailer():
    sink = io.BytesIO()
    with ContainerWriter(sink, mtime=0) as w:
        w.add_bytes("a", b"x")
    assert len(sink.getvalue()) == tarfile.RECORDSIZE


def test_header_rejects_undecodable_name():
    with pytest.raises(FormatError, match="not valid utf-8"):
        make_header("d/x\udcff.txt", 1, 0)
