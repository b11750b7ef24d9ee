#!/usr/bin/env python3
"""Placement of resolved granules on an output grid and pixel assembly

The output grid is a north-up raster covering the request envelope at the
requested resolution. Each granule gets a pixel window on that grid; during
assembly granules are pasted in resolution order and the first granule
covering a pixel wins.
"""
from __future__ import annotations

import dataclasses
import logging
import math
import typing

import numpy

from .errors import RasterReaderError
from .geometry import RESOLUTION_TOLERANCE, Envelope
from .schema import GranuleRecord

if typing.TYPE_CHECKING:
    from .readers import FormatRegistry

logger = logging.getLogger(__name__)

# Fraction of a pixel ignored when snapping envelopes to the grid
SNAP_EPSILON = 1e-9


@dataclasses.dataclass(frozen=True)
class PixelWindow:
    """Convenience wrapper for details of a pixel window on the output grid"""

    xoff: int
    yoff: int
    xsize: int
    ysize: int


@dataclasses.dataclass(frozen=True)
class OutputGrid:
    """North-up raster grid of a read request"""

    envelope: Envelope
    resolution: tuple[float, float]
    width: int
    height: int

    @staticmethod
    def create(envelope: Envelope, resolution: tuple[float, float]) -> "OutputGrid":
        """Grid anchored at the envelope's upper left corner, extended to whole pixels"""
        resx, resy = resolution
        if resx <= 0 or resy <= 0:
            raise ValueError(f"Resolution must be positive: {resolution}")
        width = max(1, math.ceil(envelope.width / resx - SNAP_EPSILON))
        height = max(1, math.ceil(envelope.height / resy - SNAP_EPSILON))
        snapped = Envelope(
            envelope.minx,
            envelope.maxy - height * resy,
            envelope.minx + width * resx,
            envelope.maxy,
        )
        return OutputGrid(snapped, (resx, resy), width, height)

    @property
    def geotransform(self) -> tuple[float, float, float, float, float, float]:
        return (self.envelope.minx, self.resolution[0], 0.0, self.envelope.maxy, 0.0, -self.resolution[1])

    def window(self, envelope: Envelope) -> PixelWindow | None:
        """Pixels of the grid covered by an envelope, None when they share no area"""
        overlap = envelope.intersection(self.envelope)
        if overlap is None:
            return None
        resx, resy = self.resolution
        xoff = max(0, math.floor((overlap.minx - self.envelope.minx) / resx + SNAP_EPSILON))
        xend = min(self.width, math.ceil((overlap.maxx - self.envelope.minx) / resx - SNAP_EPSILON))
        yoff = max(0, math.floor((self.envelope.maxy - overlap.maxy) / resy + SNAP_EPSILON))
        yend = min(self.height, math.ceil((self.envelope.maxy - overlap.miny) / resy - SNAP_EPSILON))
        if xend <= xoff or yend <= yoff:
            return None
        return PixelWindow(xoff, yoff, xend - xoff, yend - yoff)

    def window_envelope(self, window: PixelWindow) -> Envelope:
        resx, resy = self.resolution
        minx = self.envelope.minx + window.xoff * resx
        maxy = self.envelope.maxy - window.yoff * resy
        return Envelope(minx, maxy - window.ysize * resy, minx + window.xsize * resx, maxy)

    def window_geotransform(self, window: PixelWindow) -> tuple[float, float, float, float, float, float]:
        envelope = self.window_envelope(window)
        return (envelope.minx, self.resolution[0], 0.0, envelope.maxy, 0.0, -self.resolution[1])


@dataclasses.dataclass(frozen=True)
class ResolvedGranule:
    """A granule selected for a read, with its placement on the output grid"""

    record: GranuleRecord
    path: str
    window: PixelWindow
    envelope: Envelope
    geotransform: tuple[float, float, float, float, float, float]
    level: int
    resolution: tuple[float, float]

    @property
    def location(self) -> str:
        return self.record.location

    @property
    def index(self) -> int:
        return self.record.index


def select_level(levels: typing.Sequence[tuple[float, float]], requested: tuple[float, float]) -> int:
    """Coarsest pyramid level that is still at least as fine as the request"""
    chosen = 0
    for i, (resx, _) in enumerate(levels):
        if resx <= requested[0] * (1 + RESOLUTION_TOLERANCE):
            chosen = i
    return chosen


def compose(
    grid: OutputGrid,
    granules: typing.Sequence[ResolvedGranule],
    formats: "FormatRegistry",
    coverage_name: str,
    nodata: float | int | None = None,
    format_name: str | None = None,
) -> numpy.ndarray:
    """Read every granule's window and paste it into one (bands, rows, cols) array

    Args:
        grid: Output grid of the request
        granules: Resolved granules in priority order
        formats: Registry used to open granule files
        coverage_name: Coverage to read from structured files
        nodata: Fill value, also treated as transparent in granule pixels
        format_name: Preferred format, as suggested by the coverage configuration

    Returns:
        Array of the grid size with the first granule winning where granules overlap
    """
    data = None
    filled = numpy.zeros((grid.height, grid.width), dtype=bool)
    for granule in granules:
        reader = formats.open(granule.path, format_name)
        try:
            names = reader.coverage_names()
            if not names:
                raise RasterReaderError(f"No coverage in {granule.path}", granule.path)
            name = coverage_name if coverage_name in names else names[0]
            region = numpy.asarray(reader.read_region(name, granule.envelope, grid.resolution, granule.index))
        finally:
            reader.close()

        if region.ndim == 2:
            region = region[numpy.newaxis, ...]
        if data is None:
            fill = 0 if nodata is None else nodata
            data = numpy.full((region.shape[0], grid.height, grid.width), fill, dtype=region.dtype)

        window = granule.window
        region = region[:, : window.ysize, : window.xsize]
        rows, cols = region.shape[1:]
        rows_slice = slice(window.yoff, window.yoff + rows)
        cols_slice = slice(window.xoff, window.xoff + cols)

        free = ~filled[rows_slice, cols_slice]
        if nodata is not None:
            free &= ~numpy.all(region == nodata, axis=0)
        target = data[:, rows_slice, cols_slice]
        target[:, free] = region[:, free]
        filled[rows_slice, cols_slice] |= free
        logger.debug("Pasted %s at %s", granule.location, window)
    return data
