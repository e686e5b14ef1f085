"""Raster rendering of mosaic layouts.

:class:`TileImage` is the :class:`~memstat_mosaic.layout.PixelSink` used by
the viewer.  Each tile becomes a ``tile_size`` square of pixels whose rows
get progressively darker, which keeps adjacent tiles of the same color
distinguishable.
"""

from __future__ import annotations

import functools
import os

import numpy as np
from matplotlib import colors as mcolors

from .config import PIXELS_PER_TILE
from .layout import MosaicLayout, TileColor

# Qt named colors: darkGray, green, darkGreen, magenta.lighter(150), magenta,
# yellow, darkRed, white, blue, black.
TILE_PALETTE: dict[TileColor, str] = {
    TileColor.BACKGROUND: "#d3d3d3",
    TileColor.NOT_PRESENT: "#808080",
    TileColor.HIGH_REUSE: "#00ff00",
    TileColor.FILE_BACKED: "#008000",
    TileColor.HUGE_PAGE: "#ff80ff",
    TileColor.PRIVATE: "#ff00ff",
    TileColor.SHARED: "#ffff00",
    TileColor.ANOMALOUS: "#800000",
    TileColor.UNCLASSIFIED: "#ffffff",
    TileColor.GAP: "#0000ff",
    TileColor.SEPARATOR: "#000000",
}

SHADE_FACTOR = 1.15


@functools.lru_cache(maxsize=128)
def tile_shades(color: str, tile_size: int) -> np.ndarray:
    """Return ``(tile_size, 3)`` RGB rows, each darker than the previous."""
    rgb = np.asarray(mcolors.to_rgb(color), dtype=np.float64)
    factors = SHADE_FACTOR ** -np.arange(tile_size, dtype=np.float64)
    shades = np.rint(np.outer(factors, rgb) * 255.0).astype(np.uint8)
    shades.flags.writeable = False
    return shades


class TileImage:
    """RGB pixel buffer that receives tiles from a layout pass."""

    def __init__(
        self,
        rows: int,
        columns: int,
        tile_size: int = PIXELS_PER_TILE,
        palette: dict[TileColor, str] | None = None,
    ) -> None:
        if tile_size <= 0:
            msg = f"tile_size must be positive, got {tile_size}"
            raise ValueError(msg)
        self.rows = rows
        self.columns = columns
        self.tile_size = tile_size
        self.palette = dict(TILE_PALETTE if palette is None else palette)
        background = np.rint(
            np.asarray(mcolors.to_rgb(self.palette[TileColor.BACKGROUND])) * 255.0
        ).astype(np.uint8)
        self.pixels = np.empty((rows * tile_size, columns * tile_size, 3), dtype=np.uint8)
        self.pixels[...] = background

    def set_tile(self, row: int, column: int, color: TileColor) -> None:
        """Paint one tile with the shaded variant of ``color``."""
        size = self.tile_size
        shades = tile_shades(self.palette[color], size)
        y0 = row * size
        x0 = column * size
        self.pixels[y0 : y0 + size, x0 : x0 + size] = shades[:, np.newaxis, :]

    def tile_at_pixel(self, x: int, y: int) -> tuple[int, int]:
        """Convert pixel coordinates into a clamped ``(row, column)``."""
        row = max(0, int(y)) // self.tile_size
        column = min(max(0, int(x) // self.tile_size), self.columns - 1)
        return row, column

    def to_image(self):
        """Return the buffer as a Pillow image."""
        try:
            from PIL import Image
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise RuntimeError("Saving mosaic images requires Pillow") from exc
        return Image.fromarray(self.pixels)

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write the buffer to ``path``; the format follows the suffix."""
        self.to_image().save(path)


def render_layout(layout: MosaicLayout, tile_size: int = PIXELS_PER_TILE) -> TileImage:
    """Paint ``layout`` into a fresh :class:`TileImage`."""
    image = TileImage(layout.rows, layout.columns, tile_size=tile_size)
    layout.paint(image)
    return image
