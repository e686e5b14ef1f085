"""Glue between the stream decoder, the layout engine and the index."""

from __future__ import annotations

import bisect
import collections.abc as cabc

from .address_index import AddressIndex, PageInfo
from .config import LayoutConfig
from .layout import LayoutEngine, MosaicLayout
from .page_flags import format_page_flags
from .protocol import MappedRegion, StreamDecoder


class MosaicModel:
    """Current regions, their layout and the matching address index.

    Every update recomputes the layout from scratch.  When an update fails
    the previous regions, layout and index stay in place.
    """

    def __init__(self, config: LayoutConfig | None = None) -> None:
        self.config = config if config is not None else LayoutConfig()
        self.decoder = StreamDecoder(self.config.page_size)
        self.engine = LayoutEngine(self.config)
        self.regions: tuple[MappedRegion, ...] = ()
        self.layout: MosaicLayout = self.engine.layout(())
        self.index = AddressIndex.from_layout(self.layout, self.regions)

    def feed(self, chunk: bytes) -> bool:
        """Pass ``chunk`` to the decoder; relayout when a frame completes.

        Raises:
            MalformedRecordError: If the decoder rejects a frame.
            RegionOrderError: If the decoded regions cannot be laid out.
        """
        if not self.decoder.add_chunk(chunk):
            return False
        self.update(self.decoder.regions)
        return True

    def update(self, regions: cabc.Sequence[MappedRegion]) -> MosaicLayout:
        """Replace the current regions and rebuild the layout and index."""
        regions = tuple(regions)
        layout = self.engine.layout(regions)
        self.regions = regions
        self.layout = layout
        self.index = AddressIndex.from_layout(layout, regions)
        return layout

    def address_at(self, row: int, column: int) -> int | None:
        return self.index.address_from_position(row, column)

    def page_info_at(self, row: int, column: int) -> PageInfo | None:
        """Return the page drawn at ``(row, column)``, if it is mapped.

        Tiles past the end of a large region (the unpainted rest of its last
        row and the separator rows) show no page.
        """
        address = self.index.address_from_position(row, column)
        if address is None:
            return None
        first_rows = [entry.first_row for entry in self.layout.row_index]
        large = self.layout.large_regions[bisect.bisect_right(first_rows, row) - 1]
        if address >= large.last:
            return None
        return self.index.flags_at_address(address)


def describe_page(info: PageInfo | None) -> str:
    """Format ``info`` for a status line or hover box."""
    if info is None:
        return "No page data"
    lines = [
        f"0x{info.address:016X}",
        f"use count: {info.use_count}",
        f"backing file: {info.backing_file or '(anonymous)'}",
        f"flags: {format_page_flags(info.flags) or '(none)'}",
    ]
    return "\n".join(lines)
