#!/usr/bin/env python3
"""GDAL-backed raster format for mosaic indexing and assembly

Supports any GDAL-readable raster, including:
- GeoTIFF / Cloud Optimized GeoTIFF, indexed as one granule per file
- NetCDF with subdatasets, one coverage per variable
- NetCDF with a CF time dimension, one granule per time band

Required packages:
    - GDAL <https://pypi.org/project/GDAL/>
    - numpy <https://pypi.org/project/numpy/>
"""
from __future__ import annotations

import dataclasses
import datetime
import enum
import logging
import os
import pathlib
import re

import numpy

from .colormodels import (
    ComponentColorModelInfo,
    IndexColorModelInfo,
    SampleModelInfo,
    Transparency,
)
from .errors import RasterReaderError
from .geometry import Envelope
from .readers import SourceGranule

logger = logging.getLogger(__name__)

# Band metadata keys holding a vertical coordinate in NetCDF files
ELEVATION_DIMENSIONS = ("NETCDF_DIM_elevation", "NETCDF_DIM_depth", "NETCDF_DIM_height", "NETCDF_DIM_lev")


def _get_gdal():
    """Lazily import osgeo.gdal with exceptions enabled"""
    try:
        import osgeo.gdal
    except ImportError as e:
        raise ImportError(
            "GDAL is required to read raster files. Install with: pip install mosaiquet[gdal]"
        ) from e
    osgeo.gdal.UseExceptions()
    return osgeo.gdal


class ResamplingAlgorithm(enum.StrEnum):
    """Switch for resampling when reading a region at a given resolution"""

    Average = "average"
    Bilinear = "bilinear"
    Cubic = "cubic"
    Mode = "mode"
    NearestNeighbour = "near"


@dataclasses.dataclass
class CFTimeInfo:
    """Container for CF convention time dimension metadata"""

    units: str  # e.g., "minutes", "hours", "days"
    reference_date: datetime.datetime
    calendar: str  # e.g., "standard", "gregorian", "360_day"
    raw_units_string: str

    @property
    def is_gregorian_compatible(self) -> bool:
        """Check if calendar can be converted to standard timestamps"""
        return self.calendar.lower() in ("standard", "gregorian", "proleptic_gregorian")


def parse_cf_time_units(units_string: str, calendar: str = "standard") -> CFTimeInfo | None:
    """Parse a CF units string like "days since 1850-01-01".

    Args:
        units_string: CF units string "<unit> since <reference date>"
        calendar: CF calendar type

    Returns:
        CFTimeInfo instance or None if parsing fails
    """
    match = re.match(r"^(\w+)\s+since\s+(.+)$", units_string.strip(), re.IGNORECASE)
    if not match:
        logger.warning("Could not parse CF time units: %s", units_string)
        return None

    unit = match.group(1).lower()
    unit = {
        "second": "seconds",
        "minute": "minutes",
        "hour": "hours",
        "day": "days",
        "month": "months",
        "year": "years",
    }.get(unit, unit)

    date_str = match.group(2).strip()
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d", "%Y%m%d"):
        try:
            reference_date = datetime.datetime.strptime(date_str, fmt)
            break
        except ValueError:
            continue
    else:
        logger.warning("Could not parse reference date: %s", date_str)
        return None

    return CFTimeInfo(unit, reference_date, calendar.lower() if calendar else "standard", units_string)


def cf_to_timestamp(cf_value: int | float, cf_info: CFTimeInfo) -> datetime.datetime | None:
    """Convert a CF time offset to a datetime, None for non-Gregorian calendars"""
    if not cf_info.is_gregorian_compatible:
        return None

    ref = cf_info.reference_date
    try:
        if cf_info.units in ("seconds", "minutes", "hours", "days"):
            return ref + datetime.timedelta(**{cf_info.units: cf_value})
        if cf_info.units == "months":
            total_months = ref.month + int(cf_value) - 1
            return ref.replace(year=ref.year + total_months // 12, month=total_months % 12 + 1)
        if cf_info.units == "years":
            return ref.replace(year=ref.year + int(cf_value))
    except (ValueError, OverflowError) as e:
        logger.warning("Failed to convert CF time %s: %s", cf_value, e)
        return None
    logger.warning("Unknown CF time unit: %s", cf_info.units)
    return None


def extract_cf_time(metadata: dict[str, str]) -> CFTimeInfo | None:
    """Find CF time units in GDAL dataset metadata (NetCDF "time#units" convention)"""
    time_units = metadata.get("time#units")
    if not time_units:
        for key, value in metadata.items():
            if key.endswith("#units") and "time" in key.lower():
                time_units = value
                break
    if not time_units:
        return None
    return parse_cf_time_units(time_units, metadata.get("time#calendar", "standard"))


def _band_float(metadata: dict[str, str], keys) -> float | None:
    for key in keys:
        value = metadata.get(key)
        if value is not None:
            try:
                return float(value)
            except ValueError:
                continue
    return None


class GDALFormat:
    """Raster format recognizing anything GDAL opens as a raster"""

    name = "GDAL"

    def __init__(self, resampling: ResamplingAlgorithm = ResamplingAlgorithm.NearestNeighbour):
        self.resampling = resampling

    def accepts(self, path: str) -> bool:
        gdal = _get_gdal()
        try:
            driver = gdal.IdentifyDriverEx(path, gdal.OF_RASTER)
        except RuntimeError:
            return False
        return driver is not None

    def open(self, path: str) -> "GDALRasterReader":
        return GDALRasterReader(path, self.resampling)


class GDALRasterReader:
    """Raster reader over one GDAL dataset and its subdatasets"""

    format_name = GDALFormat.name

    def __init__(self, path: str, resampling: ResamplingAlgorithm = ResamplingAlgorithm.NearestNeighbour):
        self.path = os.fspath(path)
        self.resampling = resampling
        self._gdal = _get_gdal()
        self._datasets: dict[str, object] = {}
        self._sources: dict[str, str] = {}

        try:
            dataset = self._open(self.path)
        except RuntimeError as e:
            raise RasterReaderError(f"Cannot open {self.path}: {e}", self.path) from e

        subdatasets = dataset.GetSubDatasets()
        if subdatasets:
            self._structured = True
            for source, _ in subdatasets:
                self._sources[source.rsplit(":", 1)[-1]] = source
        else:
            name = pathlib.Path(self.path).stem
            self._sources[name] = self.path
            self._datasets[name] = dataset
            self._structured = dataset.RasterCount > 1 and extract_cf_time(dataset.GetMetadata()) is not None

    def _open(self, source: str):
        dataset = self._gdal.Open(source)
        # NetCDF without a grid mapping is usually lon/lat
        is_netcdf = source.upper().startswith("NETCDF:") or source.lower().endswith(".nc")
        if dataset.GetSpatialRef() is None and is_netcdf:
            logger.info("No CRS defined for %s, assuming WGS84 (lon/lat) coordinates", source)
            dataset = self._gdal.OpenEx(source, open_options=["ASSUME_LONGLAT=YES"])
        return dataset

    def _dataset(self, coverage_name: str):
        if coverage_name not in self._sources:
            raise RasterReaderError(f"No coverage {coverage_name} in {self.path}", self.path)
        if coverage_name not in self._datasets:
            try:
                self._datasets[coverage_name] = self._open(self._sources[coverage_name])
            except RuntimeError as e:
                raise RasterReaderError(f"Cannot open {coverage_name} of {self.path}: {e}", self.path) from e
        return self._datasets[coverage_name]

    @property
    def is_structured(self) -> bool:
        return self._structured

    def coverage_names(self) -> list[str]:
        return list(self._sources)

    def envelope(self, coverage_name: str) -> Envelope:
        dataset = self._dataset(coverage_name)
        return Envelope.from_geotransform(dataset.GetGeoTransform(), dataset.RasterXSize, dataset.RasterYSize)

    def crs(self, coverage_name: str) -> str | None:
        sref = self._dataset(coverage_name).GetSpatialRef()
        return sref.ExportToWkt() if sref is not None else None

    def num_overviews(self, coverage_name: str) -> int:
        return self._dataset(coverage_name).GetRasterBand(1).GetOverviewCount()

    def resolution_levels(self, coverage_name: str) -> list[tuple[float, float]]:
        """Native resolution followed by one entry per overview"""
        dataset = self._dataset(coverage_name)
        geotransform = dataset.GetGeoTransform()
        xres, yres = abs(geotransform[1]), abs(geotransform[5])
        band = dataset.GetRasterBand(1)
        levels = [(xres, yres)]
        for i in range(band.GetOverviewCount()):
            ovr = band.GetOverview(i)
            levels.append((xres * dataset.RasterXSize / ovr.XSize, yres * dataset.RasterYSize / ovr.YSize))
        return levels

    def color_model(self, coverage_name: str):
        gdal = self._gdal
        dataset = self._dataset(coverage_name)
        band = dataset.GetRasterBand(1)
        transfer_type = gdal.GetDataTypeName(band.DataType)
        color_table = band.GetColorTable()
        if color_table is not None and band.GetColorInterpretation() == gdal.GCI_PaletteIndex:
            entries = [color_table.GetColorEntry(i) for i in range(color_table.GetCount())]
            return IndexColorModelInfo.from_entries(entries, transfer_type)

        if self._structured:
            return ComponentColorModelInfo(1, False, "GRAY", Transparency.OPAQUE, transfer_type)

        interps = {dataset.GetRasterBand(n).GetColorInterpretation() for n in range(1, 1 + dataset.RasterCount)}
        has_alpha = gdal.GCI_AlphaBand in interps
        num_components = dataset.RasterCount - (1 if has_alpha else 0)
        if {gdal.GCI_RedBand, gdal.GCI_GreenBand, gdal.GCI_BlueBand} <= interps:
            color_space = "sRGB"
        elif num_components == 1:
            color_space = "GRAY"
        else:
            color_space = f"bogus:{num_components}"
        return ComponentColorModelInfo(
            num_components,
            has_alpha,
            color_space,
            Transparency.TRANSLUCENT if has_alpha else Transparency.OPAQUE,
            transfer_type,
        )

    def sample_model(self, coverage_name: str) -> SampleModelInfo:
        dataset = self._dataset(coverage_name)
        band = dataset.GetRasterBand(1)
        block_width, block_height = band.GetBlockSize()
        return SampleModelInfo(
            self._gdal.GetDataTypeName(band.DataType),
            1 if self._structured else dataset.RasterCount,
            block_width,
            block_height,
        )

    def granules(self, coverage_name: str) -> list[SourceGranule] | None:
        """One granule per band for structured datasets, with CF time and elevation"""
        if not self._structured:
            return None
        dataset = self._dataset(coverage_name)
        cf_info = extract_cf_time(dataset.GetMetadata())
        granules = []
        for n in range(1, 1 + dataset.RasterCount):
            metadata = dataset.GetRasterBand(n).GetMetadata()
            attributes = {}
            time_value = _band_float(metadata, ("NETCDF_DIM_time",))
            if cf_info is not None and time_value is not None:
                timestamp = cf_to_timestamp(time_value, cf_info)
                if timestamp is not None:
                    attributes["time"] = timestamp
            elevation = _band_float(metadata, ELEVATION_DIMENSIONS)
            if elevation is not None:
                attributes["elevation"] = elevation
            granules.append(SourceGranule(n - 1, attributes))
        return granules

    def read_region(
        self,
        coverage_name: str,
        envelope: Envelope,
        resolution: tuple[float, float],
        index: int = 0,
    ) -> numpy.ndarray:
        """Pixels of a region at a resolution, shaped (bands, rows, cols)"""
        gdal = self._gdal
        dataset = self._dataset(coverage_name)
        if self._structured:
            dataset = gdal.Translate("", dataset, options=gdal.TranslateOptions(format="VRT", bandList=[index + 1]))
        nodata = dataset.GetRasterBand(1).GetNoDataValue()
        try:
            output = gdal.Warp(
                "",
                dataset,
                options=gdal.WarpOptions(
                    format="MEM",
                    outputBounds=envelope.bounds,
                    xRes=resolution[0],
                    yRes=resolution[1],
                    resampleAlg=str(self.resampling),
                    srcNodata=nodata,
                    dstNodata=nodata,
                ),
            )
        except RuntimeError as e:
            raise RasterReaderError(f"Cannot read {coverage_name} of {self.path}: {e}", self.path) from e
        data = output.ReadAsArray()
        if data.ndim == 2:
            data = data[numpy.newaxis, ...]
        return data

    def close(self):
        self._datasets.clear()
