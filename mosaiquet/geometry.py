#!/usr/bin/env python3
"""Envelopes and granule footprints

Footprints are shapely polygons in the coverage CRS. Envelopes are plain
axis-aligned boxes used for bounds, request areas and output grids.
"""
from __future__ import annotations

import dataclasses
import math

import shapely
import shapely.geometry

# Relative tolerance when comparing resolutions
RESOLUTION_TOLERANCE = 1e-6


@dataclasses.dataclass(frozen=True)
class Envelope:
    """Convenience wrapper for an axis-aligned bounding box"""

    minx: float
    miny: float
    maxx: float
    maxy: float

    @staticmethod
    def from_bounds(bounds: tuple[float, float, float, float] | list[float]) -> "Envelope":
        minx, miny, maxx, maxy = (float(v) for v in bounds)
        return Envelope(minx, miny, maxx, maxy)

    @staticmethod
    def from_geotransform(geotransform: tuple[float, ...], width: int, height: int) -> "Envelope":
        """Envelope of a north-up raster from its GDAL-style geotransform"""
        x0, xres, _, y0, _, yres = geotransform
        x1, y1 = x0 + width * xres, y0 + height * yres
        return Envelope(min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))

    @staticmethod
    def parse(text: str) -> "Envelope":
        """Parse "minx,miny maxx,maxy" as written in properties files"""
        try:
            lower, upper = text.strip().split()
            minx, miny = lower.split(",")
            maxx, maxy = upper.split(",")
        except ValueError as e:
            raise ValueError(f"Invalid envelope: {text!r}") from e
        return Envelope(float(minx), float(miny), float(maxx), float(maxy))

    def format(self) -> str:
        return f"{self.minx!r},{self.miny!r} {self.maxx!r},{self.maxy!r}"

    @property
    def width(self) -> float:
        return self.maxx - self.minx

    @property
    def height(self) -> float:
        return self.maxy - self.miny

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.minx, self.miny, self.maxx, self.maxy)

    @property
    def is_empty(self) -> bool:
        return not (self.width > 0 and self.height > 0)

    def intersects(self, other: "Envelope") -> bool:
        return (
            self.minx <= other.maxx
            and self.maxx >= other.minx
            and self.miny <= other.maxy
            and self.maxy >= other.miny
        )

    def intersection(self, other: "Envelope") -> "Envelope | None":
        if not self.intersects(other):
            return None
        return Envelope(
            max(self.minx, other.minx),
            max(self.miny, other.miny),
            min(self.maxx, other.maxx),
            min(self.maxy, other.maxy),
        )

    def union(self, other: "Envelope | None") -> "Envelope":
        if other is None:
            return self
        return Envelope(
            min(self.minx, other.minx),
            min(self.miny, other.miny),
            max(self.maxx, other.maxx),
            max(self.maxy, other.maxy),
        )

    def to_polygon(self) -> shapely.geometry.Polygon:
        return shapely.geometry.box(self.minx, self.miny, self.maxx, self.maxy)


def footprint_envelope(footprint: shapely.geometry.base.BaseGeometry) -> Envelope:
    return Envelope.from_bounds(footprint.bounds)


def footprint_to_wkb(footprint: shapely.geometry.base.BaseGeometry) -> bytes:
    return shapely.to_wkb(footprint)


def footprint_from_wkb(data: bytes) -> shapely.geometry.base.BaseGeometry:
    return shapely.from_wkb(data)


def resolutions_equal(a: tuple[float, float], b: tuple[float, float]) -> bool:
    """Compare two (x, y) resolutions with a small relative tolerance"""
    return all(
        math.isclose(u, v, rel_tol=RESOLUTION_TOLERANCE, abs_tol=0.0) for u, v in zip(a, b)
    )


def levels_equal(a, b) -> bool:
    """True when two resolution pyramids have the same levels"""
    if len(a) != len(b):
        return False
    return all(resolutions_equal(u, v) for u, v in zip(a, b))


def format_levels(levels) -> str:
    """Format a pyramid as "x,y x,y ..." as written in properties files"""
    return " ".join(f"{x!r},{y!r}" for x, y in levels)


def parse_levels(text: str) -> tuple[tuple[float, float], ...]:
    levels = []
    for pair in text.split():
        x, y = pair.split(",")
        levels.append((float(x), float(y)))
    return tuple(levels)
