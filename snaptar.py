"""snaptar: verifiable tar snapshots of a file set.

snaptar packs files and directories into a single compressed tar archive and
appends a manifest entry, ``meta.json``, as the last member:

    {"checksums": {"<entry name>": "<md5 hex>", ...}, "timestamp": <unix seconds>}

Pipeline (strictly sequential, one file at a time):

- resolve: inputs are flattened depth-first into regular-file paths; entry names
  are the paths exactly as given on the command line.
- digest: each file is read once to compute its MD5 (4 MiB window).
- write: the file is reopened and streamed into a GNU tar entry
  (mode 0644, uid/gid 0, mtime = run timestamp).
- manifest: after the last file, ``meta.json`` is written.
- finish: tar trailer, then compressor trailer, then the output file is closed.

CLI:
  snaptar -i PATH [PATH ...] [-o OUTPUT] [-c bz2|gz|zlib|zst]

  --dry-run    resolve inputs and output path, emit one JSON line, write nothing
  --verbose    print one line per archived entry
  --profile    print per-phase timing (does not affect archive bytes)

SOURCE_DATE_EPOCH, when set, pins the manifest timestamp and header mtimes.
"""

from __future__ import annotations

import argparse
import bz2
import gzip
import hashlib
import io
import json
import os
import pathlib
import sys
import tarfile
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Union

import zstandard as zstd

# -----------------------------
# Versioning / format
# -----------------------------
TOOL_VERSION = "0.1.0"
VERSION_STR = TOOL_VERSION
__version__ = VERSION_STR

MANIFEST_NAME = "meta.json"
DEFAULT_OUTPUT_NAME = "out"

# Tar header defaults (no ownership/permission preservation)
ENTRY_MODE = 0o644
ENTRY_UID = 0
ENTRY_GID = 0
TAR_FORMAT = tarfile.GNU_FORMAT
TAR_ENCODING = "utf-8"
TAR_ERRORS = "strict"

# -----------------------------
# Defaults / knobs
# -----------------------------
DIGEST_CHUNK = 4 * 1024 * 1024

BZ2_LEVEL = 9
GZIP_LEVEL = 9
ZLIB_LEVEL = zlib.Z_BEST_COMPRESSION
# highest zstd level usable without ultra (long window) mode
ZSTD_LEVEL = 19

DEF_VERBOSE = False
DEF_PROFILE = False

PathLike = Union[str, "os.PathLike[str]"]


class PhaseTimer:
    """Wall-clock seconds per build phase, accumulated between ``mark`` calls.

    Only used for ``--profile`` output; archive bytes never depend on it.
    """

    __slots__ = ("last", "totals")

    def __init__(self) -> None:
        self.last = time.perf_counter()
        self.totals: Dict[str, float] = {}

    def mark(self, phase: str) -> None:
        now = time.perf_counter()
        self.totals[phase] = self.totals.get(phase, 0.0) + (now - self.last)
        self.last = now

    def report(self) -> str:
        total = sum(self.totals.values()) or 1e-9
        ranked = sorted(self.totals.items(), key=lambda kv: (-kv[1], kv[0]))
        return " | ".join(f"{k}={v:.3f}s({100.0 * v / total:.1f}%)" for k, v in ranked)


# -----------------------------
# Errors
# -----------------------------
class ArchiveError(Exception):
    """Base for every failure that aborts an archive build."""


class PathNotFoundError(ArchiveError):
    pass


class ArchiveIOError(ArchiveError):
    pass


class ClockError(ArchiveError):
    """System clock reports a time before the Unix epoch. Not retryable."""


class FormatError(ArchiveError, ValueError):
    pass


# -----------------------------
# Utilities
# -----------------------------
def source_date_epoch() -> Optional[int]:
    """
    Reproducible-build timestamp source.

    Returns SOURCE_DATE_EPOCH (integer seconds since the Unix epoch) when it is
    set to a valid non-negative value, otherwise None.
    """
    v = os.environ.get("SOURCE_DATE_EPOCH")
    if not v:
        return None
    try:
        sec = int(v.strip())
    except ValueError:
        return None
    if sec < 0:
        return None
    return sec


def capture_timestamp() -> int:
    pinned = source_date_epoch()
    if pinned is not None:
        return pinned
    now = time.time()
    if now < 0:
        raise ClockError(f"system time {now!r} is before the Unix epoch")
    return int(now)


def ensure_parent(p: pathlib.Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def entry_name(path: str) -> str:
    return path.replace(os.sep, "/") if os.sep != "/" else path


# -----------------------------
# Input resolution
# -----------------------------
def _walk_dir(directory: str, out: List[str]) -> None:
    try:
        with os.scandir(directory) as it:
            children = list(it)
    except OSError as e:
        raise ArchiveIOError(f"cannot list directory '{directory}': {e}") from e
    # listing order, not sorted
    for child in children:
        if child.is_dir():
            _walk_dir(child.path, out)
        else:
            out.append(child.path)


def resolve_inputs(paths: Iterable[PathLike]) -> List[str]:
    """Flatten files and directories into the ordered list of files to archive.

    Directories are walked depth-first; a path given twice is resolved twice.
    Raises PathNotFoundError for the first input that does not exist.
    """
    out: List[str] = []
    for raw in paths:
        p = os.fspath(raw)
        if not os.path.exists(p):
            raise PathNotFoundError(f"file '{p}' does not exist")
        if os.path.isfile(p):
            out.append(p)
            continue
        if os.path.isdir(p):
            _walk_dir(p, out)
    return out


def resolve_output_path(output: Optional[PathLike], kind: "CompressionKind") -> pathlib.Path:
    """
    Derive the archive path.

    No output -> current directory. A directory (existing, or spelled with a
    trailing separator) gets ``out`` appended. An existing extension is cut at
    the first dot of the file name. The result always ends in ``.tar.<suffix>``.
    """
    raw = os.getcwd() if output is None else os.fspath(output)
    p = pathlib.Path(raw)
    if raw.endswith(("/", os.sep)) or p.is_dir():
        p = p / DEFAULT_OUTPUT_NAME
    else:
        name = p.name
        lead = len(name) - len(name.lstrip("."))
        if "." in name[lead:]:
            p = p.with_name(name[:lead] + name[lead:].split(".", 1)[0])
    return p.with_name(f"{p.name}.tar.{kind.suffix}")


# -----------------------------
# Digest
# -----------------------------
def iter_chunks(fh: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    while True:
        b = fh.read(chunk_size)
        if not b:
            break
        yield b


def md5_stream(fh: BinaryIO, chunk_size: int = DIGEST_CHUNK) -> str:
    h = hashlib.md5(usedforsecurity=False)
    for chunk in iter_chunks(fh, chunk_size):
        h.update(chunk)
    return h.hexdigest()


def md5_file(path: PathLike, chunk_size: int = DIGEST_CHUNK) -> str:
    try:
        with open(path, "rb") as fh:
            return md5_stream(fh, chunk_size)
    except OSError as e:
        raise ArchiveIOError(f"failed to read '{os.fspath(path)}': {e}") from e


# -----------------------------
# Compression
# -----------------------------
class CompressionKind(Enum):
    BZ2 = "bz2"
    GZ = "gz"
    ZLIB = "zlib"
    ZST = "zst"

    @property
    def suffix(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


DEF_COMPRESSION = CompressionKind.BZ2


class _ZlibWriter:
    """Bare zlib stream (no gzip framing) behind the write/close interface."""

    def __init__(self, sink: BinaryIO, level: int) -> None:
        self._sink = sink
        self._cobj = zlib.compressobj(level)

    def write(self, data: bytes) -> int:
        out = self._cobj.compress(data)
        if out:
            self._sink.write(out)
        return len(data)

    def close(self) -> None:
        self._sink.write(self._cobj.flush())


def _open_writer(kind: CompressionKind, sink: BinaryIO, mtime: int):
    # none of these writers close the sink they wrap
    if kind is CompressionKind.BZ2:
        return bz2.BZ2File(sink, "wb", compresslevel=BZ2_LEVEL)
    if kind is CompressionKind.GZ:
        return gzip.GzipFile(filename="", mode="wb", compresslevel=GZIP_LEVEL, fileobj=sink, mtime=mtime)
    if kind is CompressionKind.ZLIB:
        return _ZlibWriter(sink, ZLIB_LEVEL)
    if kind is CompressionKind.ZST:
        return zstd.ZstdCompressor(level=ZSTD_LEVEL).stream_writer(sink, closefd=False)
    raise ValueError(f"unknown compression kind {kind!r}")


class CompressionTransform:
    """Write-side compressor over an output byte sink.

    ``finish()`` must be called exactly once, after the last write; it emits the
    compressor trailer into the sink and leaves the sink open. Used as a context
    manager it is finished on exit if nobody did so already.
    """

    def __init__(self, kind: CompressionKind, sink: BinaryIO, mtime: int = 0) -> None:
        self.kind = kind
        self.bytes_in = 0
        self._sink = sink
        self._writer = _open_writer(kind, sink, mtime)
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def write(self, data: bytes) -> int:
        if self._finished:
            raise ValueError("write to finished compression transform")
        self._writer.write(data)
        n = len(data)
        self.bytes_in += n
        return n

    def finish(self) -> None:
        if self._finished:
            raise ValueError("compression transform already finished")
        self._finished = True
        self._writer.close()
        self._sink.flush()

    def __enter__(self) -> "CompressionTransform":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._finished:
            self.finish()


def open_transform(kind: CompressionKind, sink: BinaryIO, mtime: int = 0) -> CompressionTransform:
    return CompressionTransform(kind, sink, mtime=mtime)


# -----------------------------
# Tar container
# -----------------------------
def make_header(name: str, size: int, mtime: int) -> tarfile.TarInfo:
    """Regular-file tar header with fixed ownership and permissions."""
    arcname = entry_name(name)
    if not arcname:
        raise FormatError("empty entry name")
    # GNU base-256 fields would accept a negative size
    if size < 0:
        raise FormatError(f"negative size {size} for '{name}'")
    # undecodable names (surrogate escapes) cannot appear as manifest keys
    try:
        arcname.encode(TAR_ENCODING)
    except UnicodeEncodeError as e:
        raise FormatError(f"entry name {name!r} is not valid {TAR_ENCODING}") from e
    ti = tarfile.TarInfo(name=arcname)
    ti.type = tarfile.REGTYPE
    ti.size = size
    ti.mtime = mtime
    ti.mode = ENTRY_MODE
    ti.uid = ENTRY_UID
    ti.gid = ENTRY_GID
    ti.uname = ""
    ti.gname = ""
    try:
        ti.tobuf(TAR_FORMAT, TAR_ENCODING, TAR_ERRORS)
    except (ValueError, UnicodeError) as e:
        raise FormatError(f"cannot build tar header for '{name}': {e}") from e
    return ti


class ContainerWriter:
    """
    GNU tar stream over any object with ``write()``.

    Entries are written in call order, each header followed by its payload
    padded to the 512-byte block size. ``finish()`` appends the end-of-archive
    blocks once. On an error exit the buffered bytes are flushed but no trailer
    is written, so a failed build never looks complete.
    """

    def __init__(self, sink, mtime: int) -> None:
        self.mtime = int(mtime)
        self.entries: List[str] = []
        self._tar = tarfile.open(fileobj=sink, mode="w|", format=TAR_FORMAT,
                                 encoding=TAR_ENCODING, errors=TAR_ERRORS)
        self._finished = False

    def add_file(self, name: str, fh: BinaryIO, size: int) -> tarfile.TarInfo:
        if self._finished:
            raise ValueError("tar container already finished")
        ti = make_header(name, size, self.mtime)
        self._tar.addfile(ti, fh)
        self.entries.append(ti.name)
        return ti

    def add_bytes(self, name: str, data: bytes) -> tarfile.TarInfo:
        return self.add_file(name, io.BytesIO(data), len(data))

    def finish(self) -> None:
        if self._finished:
            raise ValueError("tar container already finished")
        self._finished = True
        self._tar.close()

    def __enter__(self) -> "ContainerWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._finished:
            return
        if exc_type is None:
            self.finish()
            return
        self._abandon()

    def _abandon(self) -> None:
        # TarFile.close() would append the end-of-archive blocks; flush the
        # stream buffer only and mark the tar closed so it is never completed
        self._finished = True
        self._tar.fileobj.close()
        self._tar.closed = True


# -----------------------------
# Manifest
# -----------------------------
@dataclass(frozen=True)
class Manifest:
    timestamp: int
    checksums: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"timestamp": int(self.timestamp), "checksums": dict(self.checksums)}

    def to_bytes(self) -> bytes:
        doc = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return doc.encode("utf-8")


def build_manifest(checksums: Dict[str, str], timestamp: Optional[int] = None) -> Manifest:
    ts = capture_timestamp() if timestamp is None else int(timestamp)
    if not 0 <= ts < 2 ** 64:
        raise ClockError(f"manifest timestamp out of range: {ts}")
    return Manifest(timestamp=ts, checksums=dict(checksums))


# -----------------------------
# Build archive
# -----------------------------
@dataclass
class BuildResult:
    path: pathlib.Path
    kind: CompressionKind
    entries: List[str]
    manifest: Manifest
    raw_bytes: int
    archive_bytes: int
    seconds: float


def _append_file(tar: ContainerWriter, path: str) -> int:
    try:
        with open(path, "rb") as fh:
            size = os.fstat(fh.fileno()).st_size
            tar.add_file(path, fh, size)
    except OSError as e:
        raise ArchiveIOError(f"failed to archive '{path}': {e}") from e
    return size


def build_archive(
    out_path: PathLike,
    inputs: Iterable[PathLike],
    kind: CompressionKind = DEF_COMPRESSION,
    *,
    verbose: bool = DEF_VERBOSE,
    profile: bool = DEF_PROFILE,
) -> BuildResult:
    """Write the archive for ``inputs`` to ``out_path``.

    Inputs are resolved before the output is opened, so a missing input never
    creates or truncates the output. Any failure aborts the build and leaves
    whatever was written on disk.
    """
    pt = PhaseTimer() if profile else None
    t0 = time.perf_counter()
    out_path = pathlib.Path(out_path)

    run_ts = capture_timestamp()
    paths = resolve_inputs(inputs)
    if pt: pt.mark("resolve")

    checksums: Dict[str, str] = {}
    raw_sum = 0
    try:
        ensure_parent(out_path)
        with out_path.open("wb") as fout, \
                open_transform(kind, fout, mtime=run_ts) as comp, \
                ContainerWriter(comp, mtime=run_ts) as tar:
            for path in paths:
                digest = md5_file(path)
                if pt: pt.mark("digest")
                size = _append_file(tar, path)
                if pt: pt.mark("write")
                name = tar.entries[-1]
                if name in checksums:
                    print(f"WARNING: duplicate entry '{name}'; manifest keeps the last checksum", file=sys.stderr)
                checksums[name] = digest
                raw_sum += size
                if verbose:
                    print(f"  + {digest}  {size:12d}  {name}")

            manifest = build_manifest(checksums)
            tar.add_bytes(MANIFEST_NAME, manifest.to_bytes())
            if pt: pt.mark("manifest")

            tar.finish()
            comp.finish()
    except OSError as e:
        raise ArchiveIOError(f"failed to write '{out_path}': {e}") from e
    if pt: pt.mark("finish")

    arc_bytes = out_path.stat().st_size
    elapsed = time.perf_counter() - t0
    ratio = arc_bytes / float(raw_sum if raw_sum else 1)

    print(f"[snaptar v{VERSION_STR}] OK: wrote {out_path}")
    print(f"  files={len(paths)} raw_sum={raw_sum} archive_bytes={arc_bytes} ratio={ratio:.4f} time={elapsed:.2f}s")
    print(f"  compression={kind.suffix} manifest={MANIFEST_NAME}")
    if pt: print("  profile: " + pt.report())

    return BuildResult(
        path=out_path,
        kind=kind,
        entries=list(tar.entries),
        manifest=manifest,
        raw_bytes=raw_sum,
        archive_bytes=arc_bytes,
        seconds=elapsed,
    )


# -----------------------------
# Commands
# -----------------------------
def cmd_build(args: argparse.Namespace) -> None:
    kind = CompressionKind(args.compression)
    out_path = resolve_output_path(args.output, kind)

    # Dry run: resolve only, emit one JSON line, never touch the output.
    if args.dry_run:
        paths = resolve_inputs(args.inputs)
        plan = {
            "mode": "dry-run",
            "version": VERSION_STR,
            "output": str(out_path),
            "compression": kind.suffix,
            "input_files": len(paths),
            "files": [entry_name(p) for p in paths],
        }
        print(json.dumps(plan, sort_keys=True, separators=(",", ":")))
        return

    build_archive(out_path, args.inputs, kind, verbose=args.verbose, profile=args.profile)


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="snaptar",
        description="Pack files into a compressed tar archive with an MD5 manifest (meta.json).",
    )
    ap.add_argument("-i", "--input", dest="inputs", nargs="+", action="extend", required=True,
                    metavar="PATH", help="files or directories to add to the archive (repeatable)")
    ap.add_argument("-o", "--output", default=None,
                    help="path to archive; defaults to out.tar.<compression> in the current directory")
    ap.add_argument("-c", "--compression", choices=[k.value for k in CompressionKind],
                    default=DEF_COMPRESSION.value, help="compression algorithm (default: %(default)s)")
    ap.add_argument("--dry-run", action="store_true",
                    help="resolve inputs and output path; emit 1 JSON line; do not write the archive")
    ap.add_argument("-v", "--verbose", action="store_true", default=DEF_VERBOSE,
                    help="print one line per archived file")
    ap.add_argument("--profile", action="store_true", default=DEF_PROFILE,
                    help="print per-phase timing breakdown (does not affect archive bytes)")
    ap.add_argument("--version", action="version", version=f"%(prog)s {VERSION_STR}")
    ap.set_defaults(func=cmd_build)
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)
    try:
        args.func(args)
    except ArchiveError as e:
        raise SystemExit(f"ERROR: {e}")


if __name__ == "__main__":
    main()
