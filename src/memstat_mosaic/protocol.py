"""Incremental decoder for the page-info wire format.

A producer sends a sequence of frames.  Each frame is a little-endian
``u64`` payload length followed by that many payload bytes, holding zero or
more region records::

    u64 start
    u64 end
    u32 name length
    name bytes, zero padded to a multiple of four
    (end - start) / page size  u32 use counts
    (end - start) / page size  u32 combined page flags

Chunks handed to :meth:`StreamDecoder.add_chunk` may split frames at any
byte.  Every complete frame replaces the decoded region list in full.
"""

from __future__ import annotations

import collections.abc as cabc
import logging
import struct
from dataclasses import dataclass, field

import numpy as np

from .config import PAGE_SIZE
from .errors import MalformedRecordError

logger = logging.getLogger(__name__)

_U64 = struct.Struct("<Q")
_U32 = struct.Struct("<I")
U32_LE = np.dtype("<u4")
FRAME_HEADER_SIZE = _U64.size
NAME_ALIGNMENT = 4


@dataclass(frozen=True)
class MappedRegion:
    """A contiguous address range together with its per-page metadata."""

    start: int
    end: int
    backing_file: str = ""
    use_counts: tuple[int, ...] = ()
    combined_flags: tuple[int, ...] = ()

    def page_count(self, page_size: int = PAGE_SIZE) -> int:
        """Return the number of pages covered by the region."""
        return (self.end - self.start) // page_size


class FieldReader:
    """Bounds-checked little-endian reader over one frame payload."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        """Return the number of unread payload bytes."""
        return len(self._data) - self.pos

    def _claim(self, size: int, what: str) -> int:
        if size > self.remaining:
            msg = (
                f"{what} needs {size} bytes at payload offset {self.pos}, "
                f"only {self.remaining} left"
            )
            raise MalformedRecordError(msg)
        offset = self.pos
        self.pos += size
        return offset

    def read_u64(self, what: str = "u64 field") -> int:
        """Read one unsigned 64-bit integer."""
        return _U64.unpack_from(self._data, self._claim(_U64.size, what))[0]

    def read_u32(self, what: str = "u32 field") -> int:
        """Read one unsigned 32-bit integer."""
        return _U32.unpack_from(self._data, self._claim(_U32.size, what))[0]

    def read_bytes(self, size: int, what: str = "byte field") -> bytes:
        """Read ``size`` raw bytes."""
        offset = self._claim(size, what)
        return self._data[offset : offset + size]

    def read_u32_array(self, count: int, what: str = "u32 array") -> tuple[int, ...]:
        """Read ``count`` unsigned 32-bit integers as a tuple of ints."""
        offset = self._claim(count * U32_LE.itemsize, what)
        if not count:
            return ()
        values = np.frombuffer(self._data, dtype=U32_LE, count=count, offset=offset)
        return tuple(int(value) for value in values.tolist())

    def skip_padding(self, consumed: int, alignment: int = NAME_ALIGNMENT) -> None:
        """Skip the zero bytes that pad ``consumed`` up to ``alignment``."""
        self._claim(-consumed % alignment, "name padding")


def read_region(reader: FieldReader, page_size: int = PAGE_SIZE) -> MappedRegion:
    """Decode one region record from ``reader``."""
    start = reader.read_u64("region start")
    end = reader.read_u64("region end")
    if end < start:
        msg = f"region end 0x{end:X} lies below its start 0x{start:X}"
        raise MalformedRecordError(msg)
    if (end - start) % page_size:
        msg = (
            f"region 0x{start:X}-0x{end:X} is not a whole number of "
            f"{page_size}-byte pages"
        )
        raise MalformedRecordError(msg)

    name_length = reader.read_u32("name length")
    raw_name = reader.read_bytes(name_length, "backing file name")
    reader.skip_padding(name_length)

    pages = (end - start) // page_size
    use_counts = reader.read_u32_array(pages, "use counts")
    combined_flags = reader.read_u32_array(pages, "page flags")
    return MappedRegion(
        start=start,
        end=end,
        backing_file=raw_name.decode("utf-8", errors="surrogateescape"),
        use_counts=use_counts,
        combined_flags=combined_flags,
    )


def decode_payload(payload: bytes, page_size: int = PAGE_SIZE) -> list[MappedRegion]:
    """Decode every record of a complete frame payload.

    Raises:
        MalformedRecordError: If the payload does not end exactly after the
            last record.
    """
    reader = FieldReader(payload)
    regions: list[MappedRegion] = []
    while reader.remaining:
        regions.append(read_region(reader, page_size))
    return regions


def encode_frame(
    regions: cabc.Iterable[MappedRegion], page_size: int = PAGE_SIZE,
) -> bytes:
    """Serialize ``regions`` into one wire frame."""
    payload = bytearray()
    for region in regions:
        pages = region.page_count(page_size)
        if region.end < region.start or (region.end - region.start) % page_size:
            msg = f"region 0x{region.start:X}-0x{region.end:X} is not page aligned"
            raise ValueError(msg)
        if len(region.use_counts) != pages or len(region.combined_flags) != pages:
            msg = (
                f"region 0x{region.start:X}-0x{region.end:X} spans {pages} pages "
                f"but carries {len(region.use_counts)} use counts and "
                f"{len(region.combined_flags)} flag words"
            )
            raise ValueError(msg)
        name = region.backing_file.encode("utf-8", errors="surrogateescape")
        payload += _U64.pack(region.start)
        payload += _U64.pack(region.end)
        payload += _U32.pack(len(name))
        payload += name
        payload += bytes(-len(name) % NAME_ALIGNMENT)
        payload += np.asarray(region.use_counts, dtype=U32_LE).tobytes()
        payload += np.asarray(region.combined_flags, dtype=U32_LE).tobytes()
    return _U64.pack(len(payload)) + bytes(payload)


@dataclass
class DecoderState:
    """Bytes received so far and the length of the frame being awaited."""

    buffer: bytearray = field(default_factory=bytearray)
    pending_length: int | None = None


class StreamDecoder:
    """Turn an arbitrarily chunked byte stream into region lists."""

    def __init__(self, page_size: int = PAGE_SIZE) -> None:
        self.page_size = page_size
        self.state = DecoderState()
        self.regions: list[MappedRegion] = []

    def add_chunk(self, data: bytes) -> bool:
        """Buffer ``data`` and decode every frame that is now complete.

        Returns ``True`` when at least one frame completed, in which case
        :attr:`regions` holds the regions of the most recent one.  Earlier
        frames completed by the same call are discarded.

        Raises:
            MalformedRecordError: If a completed frame is malformed.  That
                frame is dropped from the buffer and :attr:`regions` keeps
                the last good frame.  Bytes after the bad frame stay
                buffered for the next call.  A malformed frame that follows
                a good one in the same call stays buffered and is reported
                by the next call, so the good frame is returned first.
        """
        state = self.state
        state.buffer += data
        completed = False
        while True:
            if state.pending_length is None:
                if len(state.buffer) < FRAME_HEADER_SIZE:
                    break
                state.pending_length = _U64.unpack_from(state.buffer)[0]
            frame_end = FRAME_HEADER_SIZE + state.pending_length
            if len(state.buffer) < frame_end:
                break

            payload = bytes(state.buffer[FRAME_HEADER_SIZE:frame_end])
            try:
                regions = decode_payload(payload, self.page_size)
            except MalformedRecordError:
                if completed:
                    break
                del state.buffer[:frame_end]
                state.pending_length = None
                raise
            del state.buffer[:frame_end]
            state.pending_length = None

            if completed:
                logger.debug(
                    "Superseding frame of %d regions with a newer one",
                    len(self.regions),
                )
            self.regions = regions
            completed = True
            logger.debug(
                "Decoded frame: %d regions from %d payload bytes",
                len(regions),
                len(payload),
            )
        return completed
