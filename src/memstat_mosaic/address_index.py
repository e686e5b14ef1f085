"""Lookups between tile positions and addresses."""

from __future__ import annotations

import bisect
import collections.abc as cabc
from dataclasses import dataclass

from .config import LayoutConfig
from .layout import MosaicLayout, RowIndexEntry
from .protocol import MappedRegion


@dataclass(frozen=True)
class PageInfo:
    """Data recorded for the page containing ``address``."""

    address: int
    flags: int
    use_count: int
    backing_file: str


class AddressIndex:
    """Forward (tile -> address) and reverse (address -> page) lookup.

    Both queries return ``None`` when there is no data for the position or
    address; that is an ordinary outcome, not an error.
    """

    def __init__(
        self,
        regions: cabc.Sequence[MappedRegion],
        row_index: cabc.Sequence[RowIndexEntry],
        config: LayoutConfig,
    ) -> None:
        self.config = config
        self._regions = tuple(regions)
        self._region_ends = [region.end for region in self._regions]
        self._row_index = tuple(row_index)
        self._first_rows = [entry.first_row for entry in self._row_index]

    @classmethod
    def from_layout(
        cls, layout: MosaicLayout, regions: cabc.Sequence[MappedRegion],
    ) -> AddressIndex:
        return cls(regions, layout.row_index, layout.config)

    def address_from_position(self, row: int, column: int) -> int | None:
        """Return the address drawn at ``(row, column)``, if any."""
        if not 0 <= column < self.config.columns:
            return None
        pos = bisect.bisect_right(self._first_rows, row)
        if pos == 0:
            return None
        first_row, base = self._row_index[pos - 1]
        tile = (row - first_row) * self.config.columns + column
        return base + tile * self.config.page_size

    def flags_at_address(self, address: int) -> PageInfo | None:
        """Return the page data for ``address``, or ``None`` if unmapped."""
        pos = bisect.bisect_right(self._region_ends, address)
        if pos == len(self._regions):
            return None
        region = self._regions[pos]
        if address < region.start:
            return None
        index = (address - region.start) // self.config.page_size
        return PageInfo(
            address=address,
            flags=region.combined_flags[index],
            use_count=region.use_counts[index],
            backing_file=region.backing_file,
        )
