"""Layout constants and the configuration bundle shared by the engine."""

from __future__ import annotations

from dataclasses import dataclass

PAGE_SIZE = 4096
COLUMN_COUNT = 512
# Gaps wider than this (in pages) split the address space into separate
# large regions instead of being drawn as runs of gap tiles.
MAX_GAP_PAGES = 64
SEPARATOR_ROWS = 2
PIXELS_PER_TILE = 4


@dataclass(frozen=True)
class LayoutConfig:
    """Fixed parameters of one mosaic layout."""

    page_size: int = PAGE_SIZE
    columns: int = COLUMN_COUNT
    max_gap_pages: int = MAX_GAP_PAGES
    separator_rows: int = SEPARATOR_ROWS

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            msg = f"page_size must be positive, got {self.page_size}"
            raise ValueError(msg)
        if self.columns <= 0:
            msg = f"columns must be positive, got {self.columns}"
            raise ValueError(msg)
        if self.max_gap_pages < 0:
            msg = f"max_gap_pages must not be negative, got {self.max_gap_pages}"
            raise ValueError(msg)
        if self.separator_rows < 0:
            msg = f"separator_rows must not be negative, got {self.separator_rows}"
            raise ValueError(msg)

    @property
    def max_gap_bytes(self) -> int:
        """Return the largest gap, in bytes, kept inside one large region."""
        return self.max_gap_pages * self.page_size
