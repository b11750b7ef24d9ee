#!/usr/bin/env python3
"""Raster reader collaborators

The mosaic never decodes pixels itself. A RasterFormat recognizes files and
opens RasterReader instances, which expose the metadata needed for indexing
(envelope, CRS, resolution levels, color and sample models) and read pixel
regions for assembly.

Structured readers (multi-dimensional files such as NetCDF) describe several
granules per coverage through granules(); plain readers return None and are
indexed as a single granule covering their envelope.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import typing

from .colormodels import ColorModelInfo, SampleModelInfo
from .errors import RasterReaderError
from .geometry import Envelope

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SourceGranule:
    """Convenience wrapper for one slice described by a structured reader"""

    index: int
    attributes: dict[str, typing.Any]
    footprint: typing.Any = None  # shapely geometry, None for the reader envelope


class RasterReader(typing.Protocol):
    """Opened raster file"""

    path: str
    format_name: str

    @property
    def is_structured(self) -> bool: ...

    def coverage_names(self) -> list[str]: ...

    def envelope(self, coverage_name: str) -> Envelope: ...

    def crs(self, coverage_name: str) -> str | None: ...

    def resolution_levels(self, coverage_name: str) -> list[tuple[float, float]]: ...

    def num_overviews(self, coverage_name: str) -> int: ...

    def color_model(self, coverage_name: str) -> ColorModelInfo: ...

    def sample_model(self, coverage_name: str) -> SampleModelInfo: ...

    def granules(self, coverage_name: str) -> list[SourceGranule] | None: ...

    def read_region(
        self,
        coverage_name: str,
        envelope: Envelope,
        resolution: tuple[float, float],
        index: int = 0,
    ) -> "numpy.ndarray": ...  # noqa: F821

    def close(self) -> None: ...


class RasterFormat(typing.Protocol):
    """Recognizes and opens raster files"""

    name: str

    def accepts(self, path: str) -> bool: ...

    def open(self, path: str) -> RasterReader: ...


class FormatRegistry:
    """Ordered set of raster formats, built explicitly by the caller"""

    def __init__(self, formats: typing.Iterable[RasterFormat] = ()):
        self._formats: list[RasterFormat] = list(formats)

    def register(self, raster_format: RasterFormat):
        self._formats.append(raster_format)

    @property
    def formats(self) -> list[RasterFormat]:
        return list(self._formats)

    def get(self, name: str) -> RasterFormat | None:
        for raster_format in self._formats:
            if raster_format.name == name:
                return raster_format
        return None

    def find(self, path: str, preferred: RasterFormat | None = None) -> RasterFormat | None:
        """First format accepting the file, trying a preferred one first"""
        candidates = ([preferred] if preferred is not None else []) + self._formats
        for raster_format in candidates:
            try:
                if raster_format.accepts(path):
                    return raster_format
            except (OSError, RasterReaderError) as e:
                logger.debug("Format %s failed to probe %s: %s", raster_format.name, path, e)
        return None

    def open(self, path: str | os.PathLike, format_name: str | None = None) -> RasterReader:
        """Open a raster with a named format, or the first one accepting it"""
        path = os.fspath(path)
        raster_format = self.get(format_name) if format_name else None
        if raster_format is None:
            raster_format = self.find(path)
        if raster_format is None:
            raise RasterReaderError(f"No format found for {path}", path)
        return raster_format.open(path)

    def __len__(self) -> int:
        return len(self._formats)


def default_formats() -> FormatRegistry:
    """Registry holding the GDAL format"""
    from .gdalreader import GDALFormat

    return FormatRegistry([GDALFormat()])
