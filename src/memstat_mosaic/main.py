"""Mosaic viewer for per-page memory usage reported by a memstat producer."""

# mypy: ignore-errors

from __future__ import annotations

import argparse
import logging
import os
import select
import socket
from typing import TYPE_CHECKING, Protocol

import numpy as np

from .config import (
    COLUMN_COUNT,
    MAX_GAP_PAGES,
    PAGE_SIZE,
    PIXELS_PER_TILE,
    SEPARATOR_ROWS,
    LayoutConfig,
)
from .errors import MosaicError
from .model import MosaicModel, describe_page
from .render import TileImage, render_layout

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from matplotlib.backend_bases import Event, MouseEvent

READ_CHUNK = 65536
CONNECT_TIMEOUT = 5.0


# -------- Byte sources --------


class ChunkSource(Protocol):
    """Protocol describing a non-blocking supplier of stream bytes."""

    closed: bool

    def read_available(self) -> bytes:
        """Return whatever bytes have arrived since the last call."""

    def close(self) -> None:
        """Stop reading from the source."""


class RemoteSource(ChunkSource):
    """TCP connection to a producer that streams page-info frames."""

    def __init__(self, host: str, port: int) -> None:
        """Store the producer address for later connections."""
        self.host = host
        self.port = port
        self.sock: socket.socket | None = None
        self.closed = False

    def connect(self, timeout: float = CONNECT_TIMEOUT) -> None:
        """Open the connection and switch it to non-blocking reads."""
        s = socket.create_connection((self.host, self.port), timeout=timeout)
        s.setblocking(False)
        self.sock = s
        self.closed = False

    def read_available(self) -> bytes:
        """Drain the socket without blocking."""
        if self.sock is None:
            msg = "Producer socket has not been connected"
            raise RuntimeError(msg)
        chunks: list[bytes] = []
        while not self.closed:
            try:
                chunk = self.sock.recv(READ_CHUNK)
            except BlockingIOError:
                break
            if not chunk:
                logger.warning("Producer %s:%d closed the connection", self.host, self.port)
                self.close()
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def read(self, timeout: float) -> bytes:
        """Wait up to ``timeout`` seconds for data, then drain the socket."""
        if self.sock is None:
            msg = "Producer socket has not been connected"
            raise RuntimeError(msg)
        ready, _, _ = select.select([self.sock], [], [], timeout)
        if not ready:
            msg = f"no data from {self.host}:{self.port} within {timeout} seconds"
            raise TimeoutError(msg)
        return self.read_available()

    def close(self) -> None:
        """Close the socket; further reads return nothing."""
        if self.sock is not None:
            self.sock.close()
        self.closed = True


def load_stream(
    path: str | os.PathLike[str], model: MosaicModel, chunk_size: int = READ_CHUNK,
) -> int:
    """Feed a recorded byte stream into ``model``.

    Returns the number of reads that completed at least one frame.
    """
    updates = 0
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(max(1, int(chunk_size)))
            if not chunk:
                break
            if model.feed(chunk):
                updates += 1
    return updates


def receive_frame(
    model: MosaicModel, source: RemoteSource, timeout: float = CONNECT_TIMEOUT,
) -> None:
    """Block until ``source`` has delivered one complete frame."""
    while True:
        if model.feed(source.read(timeout)):
            return
        if source.closed:
            raise SystemExit("producer closed the connection before a full frame arrived")


def format_query(model: MosaicModel, row: int, column: int) -> str:
    """Describe the tile at ``(row, column)`` for command-line output."""
    header = f"row {row}, column {column}"
    address = model.address_at(row, column)
    if address is None:
        return f"{header}: out of range"
    return f"{header}:\n{describe_page(model.page_info_at(row, column))}"


def _display_pixels(image: TileImage) -> np.ndarray:
    if image.rows:
        return image.pixels
    # imshow rejects empty arrays; show a single blank tile row instead.
    return np.zeros((image.tile_size, image.pixels.shape[1], 3), dtype=np.uint8)


# -------- Main viewer --------


def run_viewer(model: MosaicModel, source: ChunkSource | None, args: argparse.Namespace) -> None:
    """Show the mosaic in a matplotlib window, polling ``source`` for updates."""
    try:
        import matplotlib.pyplot as plt
        from matplotlib.animation import FuncAnimation
    except ModuleNotFoundError as exc:  # pragma: no cover - viewer path only
        raise RuntimeError("Matplotlib is required to run the viewer") from exc

    tile_image = render_layout(model.layout, args.tile_size)
    cursor: tuple[float, float] | None = None

    fig, ax = plt.subplots(figsize=(12, 8))
    im = ax.imshow(
        _display_pixels(tile_image),
        interpolation="nearest",
        origin="upper",
    )
    ax.set_title(f"{args.input or f'{args.host}:{args.port}'} ({model.config.columns} pages/row)")
    ax.set_axis_off()
    ax.margins(0)

    hover_text = ax.text(
        0.01,
        0.99,
        "",
        transform=ax.transAxes,
        color="white",
        fontsize=9,
        family="monospace",
        ha="left",
        va="top",
        bbox={"facecolor": (0.0, 0.0, 0.0, 0.65), "edgecolor": "none", "pad": 1.8},
    )

    def refresh_image() -> None:
        nonlocal tile_image
        tile_image = render_layout(model.layout, args.tile_size)
        pixels = _display_pixels(tile_image)
        im.set_data(pixels)
        height, width = pixels.shape[:2]
        im.set_extent((-0.5, width - 0.5, height - 0.5, -0.5))

    def on_move(event: MouseEvent) -> None:
        nonlocal cursor
        if event.inaxes != ax or event.xdata is None or event.ydata is None:
            return
        cursor = (event.xdata, event.ydata)

    def update(_: Event) -> tuple[object, ...]:
        if source is not None and not source.closed:
            changed = False
            try:
                changed = model.feed(source.read_available())
            except OSError as exc:
                logger.warning("Lost connection to producer: %s", exc)
                source.close()
            except MosaicError as exc:
                logger.warning("Dropping update: %s", exc)
            if changed:
                refresh_image()

        if cursor is not None:
            row, column = tile_image.tile_at_pixel(round(cursor[0]), round(cursor[1]))
            info = model.page_info_at(row, column)
            hover_text.set_text(f"row {row}, column {column}\n{describe_page(info)}")
        return (im, hover_text)

    cid_m = fig.canvas.mpl_connect("motion_notify_event", on_move)

    interval_ms = int(1000 / max(1, args.fps))
    anim = FuncAnimation(
        fig,
        update,
        interval=interval_ms,
        blit=False,
        cache_frame_data=False,
    )
    plt.show()
    _ = (cid_m, anim)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Per-page memory usage mosaic for a memstat producer",
    )
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="recorded page-info byte stream")
    source.add_argument("--host", help="producer host to connect to")
    p.add_argument("--port", type=int, help="producer TCP port (with --host)")
    p.add_argument("--output", help="render the last frame to this image and exit")
    p.add_argument(
        "--query",
        nargs=2,
        type=int,
        metavar=("ROW", "COLUMN"),
        help="print the page shown at ROW, COLUMN and exit",
    )
    p.add_argument("--page-size", type=int, default=PAGE_SIZE)
    p.add_argument("--columns", type=int, default=COLUMN_COUNT, help="tiles per row")
    p.add_argument(
        "--max-gap-pages",
        type=int,
        default=MAX_GAP_PAGES,
        help="widest gap drawn inside one block of rows",
    )
    p.add_argument("--separator-rows", type=int, default=SEPARATOR_ROWS)
    p.add_argument("--tile-size", type=int, default=PIXELS_PER_TILE, help="pixels per tile")
    p.add_argument("--fps", type=int, default=20)
    p.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return p


def main(argv: list[str] | None = None) -> None:
    """Run the mosaic viewer or one of its one-shot modes."""
    p = build_parser()
    args = p.parse_args(argv)
    if args.host is not None and args.port is None:
        p.error("--port is required with --host")
    if args.tile_size <= 0:
        p.error("--tile-size must be positive")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = LayoutConfig(
            page_size=args.page_size,
            columns=args.columns,
            max_gap_pages=args.max_gap_pages,
            separator_rows=args.separator_rows,
        )
    except ValueError as exc:
        p.error(str(exc))
    model = MosaicModel(config)

    source: RemoteSource | None = None
    try:
        if args.input is not None:
            if load_stream(args.input, model) == 0:
                raise SystemExit(f"no complete frame in {args.input}")
        else:
            source = RemoteSource(args.host, args.port)
            source.connect()
            receive_frame(model, source)
    except MosaicError as exc:
        raise SystemExit(f"invalid page data: {exc}") from exc

    one_shot = args.output is not None or args.query is not None
    if args.output is not None:
        render_layout(model.layout, args.tile_size).save(args.output)
        print(
            f"{len(model.regions)} regions, {len(model.layout.large_regions)} large regions, "
            f"{model.layout.rows} rows -> {args.output}"
        )
    if args.query is not None:
        print(format_query(model, *args.query))

    if one_shot:
        if source is not None:
            source.close()
        return
    try:
        run_viewer(model, source, args)
    finally:
        if source is not None:
            source.close()


if __name__ == "__main__":
    main()
