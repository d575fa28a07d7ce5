"""
archive.py — Minimal ZIP reader for Word packages.

A .docx is a ZIP, and all we ever want out of it is word/document.xml.
We scan local file headers front to back instead of trusting the central
directory, because the uploads are whatever the customer's portal spat
out: truncated downloads, archives with junk appended, packages re-zipped
by a mail gateway. Every one of those still has intact local headers for
the first N entries, and partial results beat an exception.

Rules of the scan:
  - start at offset 0, expect the local header signature PK\\x03\\x04
  - stop quietly at the first non-matching signature (central directory,
    end record, garbage) or at any header/payload that runs off the end
  - stored entries (method 0) keep their bytes verbatim
  - deflate entries (method 8) keep their compressed bytes; we only
    inflate the one entry we actually need

Inflation is time-boxed. zlib itself can't be interrupted, so we feed it
the input in slices and check the deadline between slices. That keeps
one pathological stream from eating the request's time budget.

The stdlib `zipfile` backend exists for environments where somebody
prefers central-directory semantics. It obeys the same deadline.
"""

from __future__ import annotations

import io
import logging
import struct
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from bid_documents.config import config

logger = logging.getLogger(__name__)

LOCAL_HEADER_SIGNATURE = 0x04034B50
DATA_DESCRIPTOR_SIGNATURE = 0x08074B50
# signature, version, flags, method, mtime, mdate, crc32, csize, usize, name_len, extra_len
_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
_FLAG_DATA_DESCRIPTOR = 0x0008

WORD_DOCUMENT_PATH = "word/document.xml"


class CompressionMethod(Enum):
    STORED = 0
    DEFLATE = 8
    OTHER = -1

    @classmethod
    def from_code(cls, code: int) -> "CompressionMethod":
        if code == 0:
            return cls.STORED
        if code == 8:
            return cls.DEFLATE
        return cls.OTHER


@dataclass
class ArchiveEntry:
    """One member as found in its local header. `payload` is still compressed for deflate."""
    path: str
    compression_method: CompressionMethod
    compressed_size: int
    uncompressed_size: int
    payload: bytes = field(repr=False)
    method_code: int = 0
    flags: int = 0


class _InflateTimeout(Exception):
    pass


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


def read_entries(data: bytes) -> Dict[str, ArchiveEntry]:
    """
    Scan local file headers and return {virtual path: ArchiveEntry}.

    Never raises on bad input. Whatever was collected before the first
    malformed or foreign record is returned.
    """
    entries: Dict[str, ArchiveEntry] = {}
    offset = 0
    total = len(data)

    while offset + _LOCAL_HEADER.size <= total:
        (
            signature, _version, flags, method, _mtime, _mdate,
            _crc, csize, usize, name_len, extra_len,
        ) = _LOCAL_HEADER.unpack_from(data, offset)

        if signature != LOCAL_HEADER_SIGNATURE:
            break

        name_start = offset + _LOCAL_HEADER.size
        payload_start = name_start + name_len + extra_len
        if payload_start > total:
            logger.debug("Header at %d runs past end of buffer, stopping scan", offset)
            break

        name = data[name_start:name_start + name_len].decode("utf-8", errors="replace")
        kind = CompressionMethod.from_code(method)

        if flags & _FLAG_DATA_DESCRIPTOR and csize == 0:
            # Sizes live in a trailing data descriptor. Only a deflate stream
            # tells us where it ends, so that's the one case we can recover.
            if kind is not CompressionMethod.DEFLATE:
                logger.debug("Entry %r has a data descriptor and no sizes, stopping scan", name)
                break
            csize = _deflate_stream_length(data, payload_start)
            if csize is None:
                break
            payload_end = payload_start + csize
            next_offset = _skip_data_descriptor(data, payload_end)
            if usize == 0:
                usize = _descriptor_usize(data, payload_end)
        else:
            payload_end = payload_start + csize
            next_offset = payload_end

        if payload_end > total:
            logger.debug("Entry %r is truncated (%d > %d), stopping scan", name, payload_end, total)
            break

        entries[_normalize_path(name)] = ArchiveEntry(
            path=_normalize_path(name),
            compression_method=kind,
            compressed_size=csize,
            uncompressed_size=usize,
            payload=data[payload_start:payload_end],
            method_code=method,
            flags=flags,
        )
        offset = next_offset

    return entries


def _skip_data_descriptor(data: bytes, offset: int) -> int:
    """Data descriptor: [signature] crc32 csize usize. The signature is optional."""
    if offset + 4 <= len(data):
        (maybe_sig,) = struct.unpack_from("<I", data, offset)
        if maybe_sig == DATA_DESCRIPTOR_SIGNATURE:
            return offset + 16
    return offset + 12


def _descriptor_usize(data: bytes, offset: int) -> int:
    start = offset
    if offset + 4 <= len(data) and struct.unpack_from("<I", data, offset)[0] == DATA_DESCRIPTOR_SIGNATURE:
        start += 4
    if start + 12 > len(data):
        return 0
    _crc, _csize, usize = struct.unpack_from("<III", data, start)
    return usize


def _deflate_stream_length(data: bytes, start: int) -> Optional[int]:
    """Run a raw inflater from `start` until end-of-stream and report bytes consumed."""
    deadline = time.monotonic() + config.archive.inflate_timeout_s
    try:
        _, consumed = _run_inflate(
            memoryview(data)[start:], -zlib.MAX_WBITS, deadline, keep_output=False
        )
    except (zlib.error, _InflateTimeout) as exc:
        logger.debug("Could not size deflate stream at %d: %s", start, exc)
        return None
    return consumed


def _run_inflate(
    data,
    wbits: int,
    deadline: float,
    keep_output: bool = True,
) -> Tuple[Optional[bytes], int]:
    """
    Decompress `data` slice by slice, checking the deadline between slices.

    Returns (output or None if the stream never reached its end, bytes of
    input consumed). Raises zlib.error on a corrupt stream and
    _InflateTimeout when the deadline passes.
    """
    step = config.archive.inflate_chunk_bytes
    ceiling = config.archive.max_inflated_bytes
    inflater = zlib.decompressobj(wbits)
    out = bytearray()
    produced = 0
    fed = 0

    for pos in range(0, len(data), step):
        piece = bytes(data[pos:pos + step])
        fed += len(piece)
        while piece:
            if time.monotonic() > deadline:
                raise _InflateTimeout()
            # max_length bounds the work per call so the deadline check stays meaningful
            chunk = inflater.decompress(piece, step * 8)
            produced += len(chunk)
            if produced > ceiling:
                raise zlib.error(f"inflated size exceeds {ceiling} bytes")
            if keep_output:
                out += chunk
            piece = inflater.unconsumed_tail
            if inflater.eof:
                break
        if inflater.eof:
            break

    if not inflater.eof:
        # output can still be buffered inside zlib after the last max_length cut
        tail = inflater.flush()
        if keep_output:
            out += tail
    if not inflater.eof:
        return None, fed
    consumed = fed - len(inflater.unused_data)
    return (bytes(out) if keep_output else b""), consumed


def inflate(data: bytes, timeout_s: Optional[float] = None) -> Optional[bytes]:
    """
    Decompress a ZIP deflate payload, or return None.

    Raw deflate first (what ZIP uses); zlib-wrapped as a fallback for the
    odd producer that writes a zlib header anyway. None means timeout,
    corrupt or truncated stream, or output over the size ceiling. Never
    raises.
    """
    if timeout_s is None:
        timeout_s = config.archive.inflate_timeout_s
    deadline = time.monotonic() + timeout_s

    for wbits in (-zlib.MAX_WBITS, zlib.MAX_WBITS):
        try:
            result, _ = _run_inflate(memoryview(data), wbits, deadline)
        except _InflateTimeout:
            logger.warning("Inflate timed out after %.1fs (%d compressed bytes)", timeout_s, len(data))
            return None
        except zlib.error as exc:
            logger.debug("Inflate with wbits=%d failed: %s", wbits, exc)
            continue
        if result is not None:
            return result
        logger.debug("Deflate stream with wbits=%d ended early", wbits)

    return None


def entry_bytes(entry: ArchiveEntry, timeout_s: Optional[float] = None) -> Optional[bytes]:
    """Uncompressed content of an entry, or None if it can't be had."""
    if entry.compression_method is CompressionMethod.STORED:
        return entry.payload
    if entry.compression_method is CompressionMethod.DEFLATE:
        return inflate(entry.payload, timeout_s)
    logger.info("Entry %r uses unsupported compression method %d", entry.path, entry.method_code)
    return None


def _lookup(entries: Dict[str, ArchiveEntry], path: str) -> Optional[ArchiveEntry]:
    wanted = _normalize_path(path)
    if wanted in entries:
        return entries[wanted]
    # Some generators write "Word/Document.xml"
    lowered = wanted.lower()
    for name, entry in entries.items():
        if name.lower() == lowered:
            return entry
    return None


class ArchiveReader:
    """Capability used by the text extractor: give me one member's bytes."""

    name = "base"

    def read_member(self, data: bytes, path: str, timeout_s: Optional[float] = None) -> Optional[bytes]:
        raise NotImplementedError


class LocalHeaderArchiveReader(ArchiveReader):
    """The default: our own header scan, lazy inflation."""

    name = "local_headers"

    def read_member(self, data: bytes, path: str, timeout_s: Optional[float] = None) -> Optional[bytes]:
        entries = read_entries(data)
        entry = _lookup(entries, path)
        if entry is None:
            logger.debug("%s not among %d scanned entries", path, len(entries))
            return None
        return entry_bytes(entry, timeout_s)


class ZipfileArchiveReader(ArchiveReader):
    """stdlib zipfile (central directory). Same None-on-failure and deadline rules."""

    name = "zipfile"

    def read_member(self, data: bytes, path: str, timeout_s: Optional[float] = None) -> Optional[bytes]:
        if timeout_s is None:
            timeout_s = config.archive.inflate_timeout_s
        deadline = time.monotonic() + timeout_s
        step = config.archive.inflate_chunk_bytes
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                wanted = _normalize_path(path).lower()
                info = next(
                    (i for i in zf.infolist() if _normalize_path(i.filename).lower() == wanted),
                    None,
                )
                if info is None:
                    return None
                out = bytearray()
                with zf.open(info) as member:
                    while True:
                        if time.monotonic() > deadline:
                            logger.warning("zipfile read of %s timed out", path)
                            return None
                        chunk = member.read(step)
                        if not chunk:
                            break
                        out += chunk
                        if len(out) > config.archive.max_inflated_bytes:
                            return None
                return bytes(out)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError) as exc:
            logger.debug("zipfile could not read %s: %s", path, exc)
            return None


def get_archive_reader(backend: Optional[str] = None) -> ArchiveReader:
    backend = backend or config.archive.backend
    if backend == "zipfile":
        return ZipfileArchiveReader()
    return LocalHeaderArchiveReader()
