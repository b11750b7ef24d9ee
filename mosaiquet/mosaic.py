#!/usr/bin/env python3
"""Mosaic reader: resolves read requests against the granule catalog

A mosaic is a directory holding raster files, one Parquet catalog file and
one properties file per coverage. The reader keeps one RasterManager per
coverage, which turns a request (envelope, resolution, dimension values)
into catalog filters, enforces the granule count ceiling, and places the
matching granules on an output grid, optionally assembling their pixels.

Usage:
    with MosaicReader.open("/data/mosaic") as mosaic:
        coverage = mosaic.read(parameters=ReadParameters(envelope=Envelope(0, 0, 10, 10)))
        if coverage is not None:
            print(coverage.data.shape, [g.location for g in coverage.granules])
"""
from __future__ import annotations

import dataclasses
import datetime
import logging
import os
import pathlib
import threading
import typing

import numpy

from .assembly import OutputGrid, ResolvedGranule, compose, select_level
from .catalog import DEFAULT_BATCH_SIZE, GranuleCatalog
from .configuration import (
    CoverageConfiguration,
    IndexerConfiguration,
    coverage_properties_path,
    discover_coverage_configurations,
)
from .dimensions import ELEVATION, TIME, DimensionDescriptor, DimensionDomain, Range
from .errors import (
    AmbiguousCoverageError,
    InvalidFilterAttributeError,
    ReaderDisposedError,
    TooManyGranulesError,
    UnknownCoverageError,
)
from .events import EventDispatcher
from .filters import BBox, Filter, check_attributes, combine
from .geometry import Envelope
from .readers import FormatRegistry, default_formats
from .schema import GranuleRecord
from .walker import CancellationToken, IndexingResult, MosaicWalker

if typing.TYPE_CHECKING:
    from .harvest import HarvestedFile

logger = logging.getLogger(__name__)

# Coverage name meaning "the only coverage of the mosaic"
UNSPECIFIED = "_UN$PECIFIED_"

DEFAULT_MAX_ALLOWED_TILES = 2**31 - 1

HAS_PREFIX = "HAS_"
DOMAIN_SUFFIX = "_DOMAIN"
MINIMUM_SUFFIX = "_DOMAIN_MINIMUM"
MAXIMUM_SUFFIX = "_DOMAIN_MAXIMUM"


@dataclasses.dataclass(frozen=True)
class ReadParameters:
    """Read request: area, resolution and dimension constraints

    Dimension values are single values or Range instances. Custom dimensions
    are keyed by dimension name.
    """

    envelope: Envelope | None = None
    resolution: tuple[float, float] | None = None
    time: typing.Any = None
    elevation: typing.Any = None
    dimensions: typing.Mapping[str, typing.Any] = dataclasses.field(default_factory=dict)
    filter: Filter | None = None
    max_allowed_tiles: int | None = None
    assemble: bool = True
    nodata: float | int | None = None


@dataclasses.dataclass
class MosaicCoverage:
    """Result of a read: placed granules and, when assembled, their pixels"""

    name: str
    crs: str | None
    grid: OutputGrid
    granules: list[ResolvedGranule]
    data: numpy.ndarray | None = None

    @property
    def envelope(self) -> Envelope:
        return self.grid.envelope

    @property
    def geotransform(self) -> tuple[float, ...]:
        return self.grid.geotransform

    @property
    def locations(self) -> list[str]:
        return [granule.location for granule in self.granules]


def _format_value(value) -> str:
    if isinstance(value, Range):
        return f"{_format_value(value.start)}/{_format_value(value.end)}"
    if isinstance(value, datetime.datetime):
        return value.isoformat() + "Z"
    return str(value)


class RasterManager:
    """Read-side state of one coverage"""

    def __init__(self, mosaic: "MosaicReader", configuration: CoverageConfiguration):
        self.mosaic = mosaic
        self.configuration = configuration
        self.descriptors: dict[str, DimensionDescriptor] = configuration.dimension_descriptors()
        self.envelope: Envelope | None = None

    @property
    def name(self) -> str:
        return self.configuration.name

    @property
    def catalog(self) -> GranuleCatalog:
        return self.mosaic.catalog

    def initialize(self):
        """Compute the coverage envelope; EmptyCatalogError if it has no granules"""
        bounds = self.catalog.compute_bounds(self.name)
        self.envelope = self.configuration.envelope or bounds
        logger.info("Coverage %s covers %s", self.name, self.envelope.format())

    def domain(self, dimension: str) -> DimensionDomain:
        descriptor = self.descriptors.get(dimension.upper())
        if descriptor is None:
            raise InvalidFilterAttributeError(f"Coverage {self.name} has no {dimension} dimension")
        return DimensionDomain(descriptor, self.catalog, self.name)

    def granule_path(self, record: GranuleRecord) -> str:
        if self.configuration.absolute_path or self.mosaic.root is None:
            return record.location
        return os.fspath(self.mosaic.root / record.location)

    def _dimension_filter(self, dimension: str, value) -> Filter:
        descriptor = self.descriptors.get(dimension.upper())
        if descriptor is None:
            raise InvalidFilterAttributeError(f"Coverage {self.name} has no {dimension} dimension", {dimension})
        return descriptor.filter_for(value)

    def build_filter(self, parameters: ReadParameters, area: Envelope) -> Filter:
        schema = self.catalog.get_type(self.name)
        filters = [BBox(area, schema.geometry_attribute)]
        if parameters.time is not None:
            filters.append(self._dimension_filter(TIME, parameters.time))
        if parameters.elevation is not None:
            filters.append(self._dimension_filter(ELEVATION, parameters.elevation))
        for dimension, value in parameters.dimensions.items():
            if value is not None:
                filters.append(self._dimension_filter(dimension, value))
        if parameters.filter is not None:
            check_attributes(parameters.filter, schema.attribute_names, f"coverage {self.name}")
            filters.append(parameters.filter)
        return combine(*filters)

    def resolve(self, parameters: ReadParameters, max_allowed_tiles: int) -> tuple[OutputGrid, list[ResolvedGranule]] | None:
        """Granules of a request placed on its output grid, None when nothing intersects"""
        request = parameters.envelope or self.envelope
        area = request.intersection(self.envelope)
        if area is None or area.is_empty:
            return None

        resolution = parameters.resolution or self.configuration.levels[0]
        grid = OutputGrid.create(area, resolution)
        filter = self.build_filter(parameters, area)

        limit = max_allowed_tiles if parameters.max_allowed_tiles is None else parameters.max_allowed_tiles
        count = self.catalog.count(self.name, filter)
        if count > limit:
            raise TooManyGranulesError(count, limit)
        if count == 0:
            return None

        level = select_level(self.configuration.levels, resolution)
        resolved = []
        for record in self.catalog.get_granules(self.name, filter):
            window = grid.window(record.envelope)
            if window is None:
                continue
            resolved.append(
                ResolvedGranule(
                    record=record,
                    path=self.granule_path(record),
                    window=window,
                    envelope=grid.window_envelope(window),
                    geotransform=grid.window_geotransform(window),
                    level=level,
                    resolution=self.configuration.levels[level],
                )
            )
        if not resolved:
            return None
        return grid, resolved

    def _granule_levels(self, granules: list[ResolvedGranule], resolution) -> list[ResolvedGranule]:
        """Per-granule pyramid level selection for heterogeneous coverages"""
        formats = self.mosaic.formats
        placed = []
        for granule in granules:
            reader = formats.open(granule.path, self.configuration.suggested_format)
            try:
                names = reader.coverage_names()
                name = self.name if self.name in names else names[0]
                levels = reader.resolution_levels(name)
            finally:
                reader.close()
            level = select_level(levels, resolution)
            placed.append(dataclasses.replace(granule, level=level, resolution=tuple(levels[level])))
        return placed

    def read(self, parameters: ReadParameters, max_allowed_tiles: int) -> MosaicCoverage | None:
        resolved = self.resolve(parameters, max_allowed_tiles)
        if resolved is None:
            return None
        grid, granules = resolved
        data = None
        if parameters.assemble:
            if self.configuration.heterogeneous:
                granules = self._granule_levels(granules, grid.resolution)
            data = compose(
                grid,
                granules,
                self.mosaic.formats,
                self.name,
                parameters.nodata,
                self.configuration.suggested_format,
            )
        return MosaicCoverage(self.name, self.configuration.crs, grid, granules, data)

    def metadata_names(self) -> list[str]:
        names = []
        for dimension in sorted(self.descriptors):
            names.extend(
                [
                    f"{HAS_PREFIX}{dimension}{DOMAIN_SUFFIX}",
                    f"{dimension}{DOMAIN_SUFFIX}",
                    f"{dimension}{MINIMUM_SUFFIX}",
                    f"{dimension}{MAXIMUM_SUFFIX}",
                ]
            )
        return names

    def metadata_value(self, name: str) -> str | None:
        name = name.upper()
        for dimension in self.descriptors:
            if name == f"{HAS_PREFIX}{dimension}{DOMAIN_SUFFIX}":
                return "true"
            domain = self.domain(dimension)
            if name == f"{dimension}{DOMAIN_SUFFIX}":
                return ",".join(_format_value(v) for v in domain.get_domain())
            if name == f"{dimension}{MINIMUM_SUFFIX}":
                value = domain.get_minimum()
                return None if value is None else _format_value(value)
            if name == f"{dimension}{MAXIMUM_SUFFIX}":
                value = domain.get_maximum()
                return None if value is None else _format_value(value)
        if name.startswith(HAS_PREFIX) and name.endswith(DOMAIN_SUFFIX):
            return "false"
        return None


class MosaicReader:
    """Coverages of a mosaic and the catalog describing their granules"""

    def __init__(
        self,
        catalog: GranuleCatalog,
        configurations: typing.Iterable[CoverageConfiguration] = (),
        root: str | os.PathLike | None = None,
        formats: FormatRegistry | None = None,
        max_allowed_tiles: int = DEFAULT_MAX_ALLOWED_TILES,
    ):
        if max_allowed_tiles < 1:
            raise ValueError(f"max_allowed_tiles must be positive: {max_allowed_tiles}")
        self.catalog = catalog
        self.root = pathlib.Path(root) if root is not None else catalog.root
        self.max_allowed_tiles = max_allowed_tiles
        self._formats = formats
        self._managers: dict[str, RasterManager] = {}
        self._lock = threading.RLock()
        self._disposed = False
        for configuration in configurations:
            self.add_raster_manager(configuration)

    @classmethod
    def open(
        cls,
        root: str | os.PathLike,
        formats: FormatRegistry | None = None,
        max_allowed_tiles: int = DEFAULT_MAX_ALLOWED_TILES,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> "MosaicReader":
        """Open a mosaic directory, loading its catalog and coverage configurations"""
        catalog = GranuleCatalog(root, batch_size=batch_size)
        names = set(catalog.get_type_names())
        configurations = []
        for configuration in discover_coverage_configurations(root):
            if configuration.name in names:
                configurations.append(configuration)
            else:
                logger.warning("Ignoring configuration of %s, which has no catalog", configuration.name)
        return cls(catalog, configurations, root, formats, max_allowed_tiles)

    @property
    def formats(self) -> FormatRegistry:
        if self._formats is None:
            self._formats = default_formats()
        return self._formats

    @property
    def crs_registry(self):
        return self.catalog.crs_registry

    @property
    def coverage_names(self) -> list[str]:
        with self._lock:
            return sorted(self._managers)

    @property
    def coverage_count(self) -> int:
        return len(self._managers)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def ensure_open(self):
        if self._disposed:
            raise ReaderDisposedError("Mosaic reader has been disposed")

    def add_raster_manager(self, configuration: CoverageConfiguration):
        """Register or replace a coverage, computing its envelope from the catalog"""
        self.ensure_open()
        manager = RasterManager(self, configuration)
        manager.initialize()
        with self._lock:
            self._managers[configuration.name] = manager

    def get_configuration(self, coverage_name: str) -> CoverageConfiguration | None:
        with self._lock:
            manager = self._managers.get(coverage_name)
        return manager.configuration if manager is not None else None

    def resolve_name(self, coverage_name: str | None = UNSPECIFIED) -> str:
        """Concrete coverage name, resolving UNSPECIFIED when there is a single coverage"""
        names = self.coverage_names
        if coverage_name is None or coverage_name == UNSPECIFIED:
            if len(names) == 1:
                return names[0]
            raise AmbiguousCoverageError(
                f"No coverage name given and the mosaic holds {len(names)} coverages: {', '.join(names)}"
            )
        if coverage_name not in names:
            raise UnknownCoverageError(coverage_name)
        return coverage_name

    def _manager(self, coverage_name: str | None) -> RasterManager:
        self.ensure_open()
        name = self.resolve_name(coverage_name)
        with self._lock:
            return self._managers[name]

    def read(self, coverage_name: str | None = UNSPECIFIED, parameters: ReadParameters | None = None) -> MosaicCoverage | None:
        """Resolve and optionally assemble the granules matching a request

        Args:
            coverage_name: Coverage to read, UNSPECIFIED for the only one
            parameters: Request area, resolution and dimension values

        Returns:
            MosaicCoverage, or None when no granule matches

        Raises:
            ReaderDisposedError: after dispose()
            AmbiguousCoverageError: UNSPECIFIED with several coverages
            UnknownCoverageError: coverage_name is not part of the mosaic
            TooManyGranulesError: more matches than max_allowed_tiles
        """
        manager = self._manager(coverage_name)
        return manager.read(parameters or ReadParameters(), self.max_allowed_tiles)

    def resolve(self, coverage_name: str | None = UNSPECIFIED, parameters: ReadParameters | None = None) -> list[ResolvedGranule]:
        """Granules a read would use, without reading pixels"""
        manager = self._manager(coverage_name)
        resolved = manager.resolve(parameters or ReadParameters(), self.max_allowed_tiles)
        return resolved[1] if resolved is not None else []

    def get_granules(self, coverage_name: str | None = UNSPECIFIED, filter: Filter | None = None, offset: int = 0, limit: int = -1) -> list[GranuleRecord]:
        manager = self._manager(coverage_name)
        return self.catalog.get_granules(manager.name, filter, offset, limit)

    def get_dimension_descriptors(self, coverage_name: str | None = UNSPECIFIED) -> list[DimensionDescriptor]:
        manager = self._manager(coverage_name)
        return [manager.descriptors[name] for name in sorted(manager.descriptors)]

    def get_domain(
        self,
        dimension: str,
        coverage_name: str | None = UNSPECIFIED,
        filter: Filter | None = None,
        offset: int = 0,
        limit: int = -1,
    ) -> list:
        return self._manager(coverage_name).domain(dimension).get_domain(filter, offset, limit)

    def get_dimension_domain(self, dimension: str, coverage_name: str | None = UNSPECIFIED) -> DimensionDomain:
        return self._manager(coverage_name).domain(dimension)

    def get_metadata_names(self, coverage_name: str | None = UNSPECIFIED) -> list[str]:
        return self._manager(coverage_name).metadata_names()

    def get_metadata_value(self, name: str, coverage_name: str | None = UNSPECIFIED) -> str | None:
        return self._manager(coverage_name).metadata_value(name)

    def get_original_envelope(self, coverage_name: str | None = UNSPECIFIED) -> Envelope:
        return self._manager(coverage_name).envelope

    def get_crs(self, coverage_name: str | None = UNSPECIFIED) -> str | None:
        return self._manager(coverage_name).configuration.crs

    def get_resolution_levels(self, coverage_name: str | None = UNSPECIFIED) -> tuple[tuple[float, float], ...]:
        return self._manager(coverage_name).configuration.levels

    def index(
        self,
        configuration: IndexerConfiguration,
        dispatcher: EventDispatcher | None = None,
        token: CancellationToken | None = None,
    ) -> IndexingResult:
        """Run the directory walker over this mosaic"""
        self.ensure_open()
        return MosaicWalker(self, configuration, dispatcher, token).run()

    def harvest(
        self,
        source: str | os.PathLike | typing.Iterable[str | os.PathLike],
        coverage_name: str | None = UNSPECIFIED,
        dispatcher: EventDispatcher | None = None,
    ) -> list["HarvestedFile"]:
        """Add files to the mosaic, one transaction per file"""
        from .harvest import harvest

        return harvest(self, source, coverage_name, dispatcher)

    def remove_coverage(self, coverage_name: str, delete_configuration: bool = True):
        """Drop a coverage from the catalog and the mosaic"""
        self.ensure_open()
        name = self.resolve_name(coverage_name)
        self.catalog.remove_coverage(name)
        with self._lock:
            self._managers.pop(name, None)
        if delete_configuration and self.root is not None:
            coverage_properties_path(self.root, name).unlink(missing_ok=True)
        logger.info("Removed coverage %s", name)

    def dispose(self):
        if self._disposed:
            return
        self._disposed = True
        with self._lock:
            self._managers.clear()
        self.catalog.dispose()

    def __enter__(self) -> "MosaicReader":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()


def build_mosaic(
    configuration: IndexerConfiguration,
    formats: FormatRegistry | None = None,
    dispatcher: EventDispatcher | None = None,
    token: CancellationToken | None = None,
    max_allowed_tiles: int = DEFAULT_MAX_ALLOWED_TILES,
) -> tuple[MosaicReader, IndexingResult]:
    """Open (or create) the mosaic at the configured root and index it"""
    mosaic = MosaicReader.open(configuration.root_directory, formats, max_allowed_tiles)
    result = mosaic.index(configuration, dispatcher, token)
    return mosaic, result
