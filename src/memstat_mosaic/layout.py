"""Tile layout and page classification for the memory mosaic.

Mapped regions are grouped into *large regions* separated by wide holes in
the address space.  Each large region is drawn as consecutive rows of tiles,
one tile per page, with unmapped pages between its regions shown as gap
tiles.  Large regions are separated by a few rows of separator tiles.
"""

from __future__ import annotations

import collections.abc as cabc
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import NamedTuple, Protocol

import numpy as np

from .config import LayoutConfig
from .errors import RegionOrderError
from .page_flags import (
    KPF_ANON,
    KPF_MMAP,
    KPF_NOPAGE,
    KPF_THP,
    PM_PRESENT,
    format_page_flags,
    is_flag_set,
)
from .protocol import MappedRegion

logger = logging.getLogger(__name__)


class TileColor(IntEnum):
    """Color identifiers handed to a :class:`PixelSink`."""

    BACKGROUND = 0
    NOT_PRESENT = 1
    HIGH_REUSE = 2
    FILE_BACKED = 3
    HUGE_PAGE = 4
    PRIVATE = 5
    SHARED = 6
    ANOMALOUS = 7
    UNCLASSIFIED = 8
    GAP = 9
    SEPARATOR = 10


class PixelSink(Protocol):
    """Anything that can receive tile colors from a layout pass."""

    def set_tile(self, row: int, column: int, color: TileColor) -> None:
        """Paint the tile at ``(row, column)``."""


@dataclass(frozen=True)
class LargeRegion:
    """Address span of a run of regions drawn as one block of rows."""

    first: int
    last: int

    def page_count(self, page_size: int) -> int:
        """Return the pages spanned, including gaps between regions."""
        return (self.last - self.first) // page_size


class RowIndexEntry(NamedTuple):
    first_row: int
    base_address: int


TileAssignment = tuple[int, int, TileColor]


def classify_page(flags: int, use_count: int) -> TileColor:
    """Pick the tile color for a single page."""
    if not is_flag_set(flags, PM_PRESENT):
        return TileColor.NOT_PRESENT
    if is_flag_set(flags, KPF_MMAP) and not is_flag_set(flags, KPF_ANON):
        return TileColor.HIGH_REUSE if use_count > 1 else TileColor.FILE_BACKED
    if is_flag_set(flags, KPF_THP):
        # The kernel reports a use count of 0 for THP pages; do not trust it.
        return TileColor.HUGE_PAGE
    if use_count == 1:
        return TileColor.PRIVATE
    if use_count > 1:
        return TileColor.SHARED
    if is_flag_set(flags, KPF_NOPAGE):
        return TileColor.ANOMALOUS
    logger.debug(
        "Unclassified page: use count %d, flags [%s]",
        use_count,
        format_page_flags(flags),
    )
    return TileColor.UNCLASSIFIED


def validate_regions(
    regions: cabc.Sequence[MappedRegion], page_size: int,
) -> None:
    """Check that ``regions`` can be laid out.

    Raises:
        RegionOrderError: If a region is empty, overlaps or precedes its
            predecessor, or its page arrays do not match its size.
    """
    previous: MappedRegion | None = None
    for region in regions:
        if region.end <= region.start:
            msg = f"empty region 0x{region.start:X}-0x{region.end:X}"
            raise RegionOrderError(msg)
        pages = region.page_count(page_size)
        if len(region.use_counts) != pages or len(region.combined_flags) != pages:
            msg = (
                f"region 0x{region.start:X}-0x{region.end:X} spans {pages} pages "
                f"but has {len(region.use_counts)} use counts and "
                f"{len(region.combined_flags)} flag words"
            )
            raise RegionOrderError(msg)
        if previous is not None and region.start < previous.end:
            msg = (
                f"region 0x{region.start:X}-0x{region.end:X} overlaps or precedes "
                f"0x{previous.start:X}-0x{previous.end:X}"
            )
            raise RegionOrderError(msg)
        previous = region


def group_large_regions(
    regions: cabc.Sequence[MappedRegion], config: LayoutConfig,
) -> list[LargeRegion]:
    """Split ``regions`` wherever the gap exceeds ``config.max_gap_pages``."""
    if not regions:
        return []
    large_regions: list[LargeRegion] = []
    first, last = regions[0].start, regions[0].end
    for region in regions[1:]:
        if region.start > last + config.max_gap_bytes:
            large_regions.append(LargeRegion(first, last))
            first = region.start
        last = region.end
    large_regions.append(LargeRegion(first, last))
    return large_regions


def grid_height(
    large_regions: cabc.Sequence[LargeRegion], config: LayoutConfig,
) -> int:
    """Return the number of tile rows needed for ``large_regions``."""
    if not large_regions:
        return 0
    rows = config.separator_rows * (len(large_regions) - 1)
    for large in large_regions:
        rows += -(-large.page_count(config.page_size) // config.columns)
    return rows


class _TileWriter:
    """Row-major cursor that records tile assignments."""

    def __init__(self, columns: int) -> None:
        self.columns = columns
        self.row = 0
        self.column = 0
        self.tiles: list[TileAssignment] = []

    def put(self, color: TileColor, count: int = 1) -> None:
        for _ in range(count):
            self.tiles.append((self.row, self.column, color))
            self.column += 1
            if self.column == self.columns:
                self.column = 0
                self.row += 1

    def end_row(self) -> None:
        if self.column:
            self.column = 0
            self.row += 1

    def put_rows(self, color: TileColor, rows: int) -> None:
        for _ in range(rows):
            self.put(color, self.columns)


@dataclass(frozen=True)
class MosaicLayout:
    """Result of one layout pass."""

    config: LayoutConfig
    large_regions: tuple[LargeRegion, ...]
    rows: int
    tiles: tuple[TileAssignment, ...]
    row_index: tuple[RowIndexEntry, ...]

    @property
    def columns(self) -> int:
        return self.config.columns

    def paint(self, sink: PixelSink) -> None:
        """Replay every tile assignment into ``sink``."""
        for row, column, color in self.tiles:
            sink.set_tile(row, column, color)

    def to_grid(self) -> np.ndarray:
        """Return a ``(rows, columns)`` array of :class:`TileColor` ids."""
        grid = np.full((self.rows, self.columns), TileColor.BACKGROUND, dtype=np.uint8)
        if self.tiles:
            placed = np.asarray(self.tiles, dtype=np.int64)
            grid[placed[:, 0], placed[:, 1]] = placed[:, 2]
        return grid


class LayoutEngine:
    """Compute tile layouts from scratch for each region list."""

    def __init__(self, config: LayoutConfig | None = None) -> None:
        self.config = config if config is not None else LayoutConfig()

    def layout(self, regions: cabc.Sequence[MappedRegion]) -> MosaicLayout:
        """Lay out ``regions``, which must be sorted and non-overlapping.

        Raises:
            RegionOrderError: If ``regions`` fails :func:`validate_regions`.
        """
        config = self.config
        validate_regions(regions, config.page_size)
        large_regions = group_large_regions(regions, config)
        rows = grid_height(large_regions, config)

        writer = _TileWriter(config.columns)
        row_index: list[RowIndexEntry] = []
        next_region = 0
        for number, large in enumerate(large_regions):
            if number:
                writer.put_rows(TileColor.SEPARATOR, config.separator_rows)
            row_index.append(RowIndexEntry(writer.row, large.first))

            previous: MappedRegion | None = None
            while next_region < len(regions) and regions[next_region].end <= large.last:
                region = regions[next_region]
                if previous is not None:
                    gap_pages = (region.start - previous.end) // config.page_size
                    writer.put(TileColor.GAP, gap_pages)
                for use_count, flags in zip(region.use_counts, region.combined_flags):
                    writer.put(classify_page(flags, use_count))
                previous = region
                next_region += 1
            writer.end_row()

        logger.debug(
            "Laid out %d regions in %d large regions over %d rows",
            len(regions),
            len(large_regions),
            rows,
        )
        return MosaicLayout(
            config=config,
            large_regions=tuple(large_regions),
            rows=rows,
            tiles=tuple(writer.tiles),
            row_index=tuple(row_index),
        )
