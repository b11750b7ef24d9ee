#!/usr/bin/env python3
"""Directory walker building or extending a mosaic's granule catalog

A run scans the indexing directories, opens every candidate file with a
raster format, checks it against the coverage it belongs to and adds its
granules to the catalog. The whole run is one catalog transaction: it is
committed when every file has been handled and rolled back when the run is
cancelled or fails, so the catalog never holds a partially indexed run.

Per file, problems are reported and the file skipped:
- unreadable, hidden, excluded or unsupported files
- a CRS different from the coverage CRS
- a color model that cannot be mosaicked with the coverage's

Resolution differences never skip a file; they mark the coverage
heterogeneous, and that flag never reverts.
"""
from __future__ import annotations

import dataclasses
import enum
import fnmatch
import logging
import os
import pathlib
import threading
import time
import typing

from .collectors import RegexPropertiesCollector, parse_collectors
from .colormodels import ColorModelCheck, check_color_model
from .configuration import (
    CoverageConfiguration,
    CoverageConfigurationBuilder,
    IndexerConfiguration,
    write_coverage_properties,
    write_root_summary,
)
from .dimensions import ELEVATION, TIME
from .errors import CatalogError, ConfigurationError, IndexingError
from .events import EventDispatcher, ExceptionEvent, FileProcessingEvent, FileStatus, ProcessingEvent
from .geometry import levels_equal
from .readers import RasterFormat, RasterReader
from .schema import GranuleRecord, GranuleSchema, default_schema, parse_schema_definition

if typing.TYPE_CHECKING:
    from .mosaic import MosaicReader

logger = logging.getLogger(__name__)

# Sidecar and catalog files never indexed as rasters
EXCLUDED_SUFFIXES = {
    ".shp", ".dbf", ".shx", ".qix", ".lyr", ".prj", ".properties", ".parquet", ".tmp",
    ".svn-base", ".sdw", ".aux", ".wld", ".ovr", ".msk", ".xml", ".json",
    ".tfw", ".tifw", ".tiffw", ".jgw", ".jpgw", ".jpegw", ".pgw", ".pngw", ".gfw", ".gifw", ".bpw", ".bmpw",
    ".j2w", ".rpw",
}  # fmt: skip
EXCLUDED_NAMES = {"error.txt", "error.txt.lck"}

# Attributes structured readers report, mapped to the dimensions they feed
READER_DIMENSIONS = {"time": TIME, "elevation": ELEVATION}


class RunState(enum.StrEnum):
    """Switch for the progress of an indexing run"""

    INIT = "init"
    SCANNING = "scanning"
    OPENING = "opening"
    EXTRACTING = "extracting"
    COMPATIBILITY_CHECK = "compatibility_check"
    COMMITTING_ROW = "committing_row"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class RunStatus(enum.StrEnum):
    """Switch for how an indexing run ended"""

    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation flag, checked by the walker between files"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclasses.dataclass
class FileOutcome:
    """Convenience wrapper for what happened to one file of a run"""

    path: str
    status: FileStatus
    message: str
    coverages: list[str] = dataclasses.field(default_factory=list)
    error: BaseException | None = None


@dataclasses.dataclass
class IndexingResult:
    """Result of an indexing run"""

    status: RunStatus
    files: list[FileOutcome]
    coverages: list[str]
    error: BaseException | None = None

    def count(self, status: FileStatus) -> int:
        return sum(1 for outcome in self.files if outcome.status == status)

    @property
    def ingested(self) -> int:
        return self.count(FileStatus.INGESTED)

    def raise_for_status(self):
        """Raise IndexingError when the run failed"""
        if self.status == RunStatus.FAILED:
            raise IndexingError(f"Indexing failed: {self.error}") from self.error

    def __str__(self) -> str:
        return (
            f"Indexing {self.status}: {self.ingested} ingested, "
            f"{self.count(FileStatus.SKIPPED)} skipped, {self.count(FileStatus.FAILED)} failed"
        )


def _wildcards(wildcard: str) -> list[str]:
    return [w.strip().lower() for w in wildcard.replace(";", ",").split(",") if w.strip()]


def is_candidate(path: str | os.PathLike, wildcard: str = "*.*") -> bool:
    """Whether a file name passes the wildcard and exclusion rules"""
    name = pathlib.Path(path).name
    lower = name.lower()
    if name.startswith(".") or lower in EXCLUDED_NAMES:
        return False
    if any(lower.endswith(suffix) for suffix in EXCLUDED_SUFFIXES):
        return False
    return any(fnmatch.fnmatchcase(lower, pattern) for pattern in _wildcards(wildcard))


@dataclasses.dataclass
class PreparedCoverage:
    """Convenience wrapper for the checked records of one coverage of a file"""

    name: str
    configuration: CoverageConfiguration
    schema: GranuleSchema
    records: list[GranuleRecord]


class MosaicWalker:
    """One indexing run over a mosaic directory"""

    def __init__(
        self,
        mosaic: "MosaicReader",
        configuration: IndexerConfiguration,
        dispatcher: EventDispatcher | None = None,
        token: CancellationToken | None = None,
        collectors: list[RegexPropertiesCollector] | None = None,
    ):
        self.mosaic = mosaic
        self.catalog = mosaic.catalog
        self.formats = mosaic.formats
        self.configuration = configuration
        self.dispatcher = dispatcher or EventDispatcher()
        self.token = token or CancellationToken()
        if collectors is None:
            collectors = parse_collectors(configuration.property_collectors, configuration.root_directory)
        self.collectors = collectors
        self.state = RunState.INIT
        self._root = pathlib.Path(configuration.root_directory).resolve()
        self._configurations: dict[str, CoverageConfiguration] = {}
        self._cached_format: RasterFormat | None = None

    def _set_state(self, state: RunState):
        logger.debug("Walker state %s -> %s", self.state, state)
        self.state = state

    def _fire(self, message: str, percentage: float, level: int = logging.INFO):
        self.dispatcher.fire(ProcessingEvent(type(self).__name__, message, percentage, level))

    def scan(self) -> list[str]:
        """Candidate files of the indexing directories, in a stable order"""
        self._set_state(RunState.SCANNING)
        wildcard = self.configuration.wildcard
        files = []
        for directory in self.configuration.directories:
            directory = pathlib.Path(directory)
            if not directory.is_absolute():
                directory = self._root / directory
            if directory.is_file():
                files.append(str(directory))
                continue
            if not directory.is_dir():
                logger.warning("Indexing directory %s does not exist", directory)
                continue
            for dirpath, dirnames, filenames in os.walk(directory):
                dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
                if not self.configuration.recursive:
                    dirnames[:] = []
                files.extend(os.path.join(dirpath, f) for f in sorted(filenames) if is_candidate(f, wildcard))
        return files

    def run(self, files: typing.Sequence[str] | None = None) -> IndexingResult:
        """Index the given files, or everything scan() finds, in one transaction"""
        self._fire(f"Indexing {self.configuration.root_directory}", 0)
        if files is None:
            files = self.scan()
        outcomes: list[FileOutcome] = []
        status, error = RunStatus.SUCCESS, None
        transaction = None
        try:
            transaction = self.catalog.transaction(f"MosaicCreationTransaction{time.time_ns()}")
            for file_index, path in enumerate(files):
                if self.token.cancelled:
                    self._fire(f"Stopping requested at file {file_index + 1} of {len(files)}", 0)
                    status = RunStatus.CANCELLED
                    break
                outcomes.append(self._process_file(os.fspath(path), file_index, len(files), transaction))

            self._set_state(RunState.FINALIZING)
            if status == RunStatus.CANCELLED:
                transaction.rollback()
                self._set_state(RunState.ROLLED_BACK)
            else:
                transaction.commit()
                self._set_state(RunState.COMMITTED)
        except Exception as e:
            logger.warning("Indexing of %s failed: %s", self.configuration.root_directory, e)
            if transaction is not None:
                transaction.rollback()
            self._set_state(RunState.ROLLED_BACK)
            status, error = RunStatus.FAILED, e
            self.dispatcher.fire(ExceptionEvent(type(self).__name__, str(e), 100, logging.ERROR, e))

        if status == RunStatus.SUCCESS:
            try:
                self._publish()
            except (OSError, ConfigurationError, CatalogError) as e:
                status, error = RunStatus.FAILED, e
                self.dispatcher.fire(ExceptionEvent(type(self).__name__, str(e), 100, logging.ERROR, e))
        self._finish(status)
        return IndexingResult(status, outcomes, sorted(self._configurations) if status == RunStatus.SUCCESS else [], error)

    def _process_file(self, path: str, file_index: int, num_files: int, transaction) -> FileOutcome:
        """Index one file, returning its outcome; catalog errors propagate"""
        percentage = (file_index + 1) * 99.0 / num_files
        self._set_state(RunState.OPENING)

        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            return self._file_event(path, FileStatus.SKIPPED, f"Skipping {path}: not a readable file", percentage)

        raster_format = self.formats.find(path, self._cached_format)
        if raster_format is None:
            return self._file_event(path, FileStatus.SKIPPED, f"Skipping {path}: unsupported format", percentage)
        self._cached_format = raster_format

        reader = None
        try:
            reader = raster_format.open(path)
            pending, skipped = [], []
            for source_name in reader.coverage_names():
                coverage_name = source_name if reader.is_structured else self.configuration.name
                prepared, reason = self._prepare_coverage(
                    path, reader, raster_format, source_name, coverage_name, transaction
                )
                if prepared is not None:
                    pending.append(prepared)
                else:
                    skipped.append(reason)
        except CatalogError:
            raise
        except Exception as e:
            message = f"Failed to process {path}: {e}"
            self.dispatcher.fire(ExceptionEvent(type(self).__name__, message, percentage, logging.WARNING, e))
            return self._file_event(path, FileStatus.FAILED, message, percentage, error=e)
        finally:
            if reader is not None:
                reader.close()

        # Only a file read without errors reaches the catalog
        self._set_state(RunState.COMMITTING_ROW)
        for prepared in pending:
            if prepared.name not in self.catalog.get_type_names(transaction):
                self.catalog.create_type(prepared.schema, transaction)
            self.catalog.add_granules(prepared.name, prepared.records, transaction)
            self._configurations[prepared.name] = prepared.configuration

        ingested = [prepared.name for prepared in pending]
        if ingested:
            message = f"Done with file {file_index + 1} of {num_files}: {path}"
            return self._file_event(path, FileStatus.INGESTED, message, percentage, ingested)
        return self._file_event(path, FileStatus.SKIPPED, "; ".join(skipped) or f"Skipping {path}", percentage)

    def _file_event(
        self,
        path: str,
        status: FileStatus,
        message: str,
        percentage: float,
        coverages: list[str] | None = None,
        error: BaseException | None = None,
    ) -> FileOutcome:
        level = logging.WARNING if status == FileStatus.FAILED else logging.INFO
        self.dispatcher.fire(FileProcessingEvent(type(self).__name__, message, percentage, level, path, status))
        return FileOutcome(path, status, message, coverages or [], error)

    def _configuration(self, coverage_name: str) -> CoverageConfiguration | None:
        if coverage_name in self._configurations:
            return self._configurations[coverage_name]
        return self.mosaic.get_configuration(coverage_name)

    def _prepare_coverage(
        self,
        path: str,
        reader: RasterReader,
        raster_format: RasterFormat,
        source_name: str,
        coverage_name: str,
        transaction,
    ) -> tuple[PreparedCoverage | None, str | None]:
        """Check one coverage of a file and build its records, or return a skip reason

        The catalog is not modified here.
        """
        self._set_state(RunState.EXTRACTING)
        levels = [tuple(level) for level in reader.resolution_levels(source_name)]
        crs = reader.crs(source_name)
        color_model = reader.color_model(source_name)

        configuration = self._configuration(coverage_name)
        if configuration is None:
            configuration = (
                CoverageConfigurationBuilder(coverage_name)
                .set(
                    levels=levels,
                    crs=crs,
                    color_model=color_model,
                    sample_model=reader.sample_model(source_name),
                    absolute_path=self.configuration.absolute_path,
                    location_attribute=self.configuration.location_attribute,
                    time_attribute=self.configuration.time_attribute,
                    elevation_attribute=self.configuration.elevation_attribute,
                    additional_domain_attributes=self.configuration.additional_domain_attributes,
                    envelope=self.configuration.envelope,
                    caching=self.configuration.caching,
                    suggested_format=raster_format.name,
                    type_name=coverage_name,
                )
                .build()
            )
        else:
            self._set_state(RunState.COMPATIBILITY_CHECK)
            configuration, reason = self._check_compatibility(path, configuration, levels, crs, color_model)
            if reason is not None:
                return None, reason

        if coverage_name in self.catalog.get_type_names(transaction):
            schema = self.catalog.get_type(coverage_name, transaction)
        else:
            schema = self.create_schema(configuration)
        records = self._build_records(path, reader, source_name, coverage_name, configuration, schema)
        if not records:
            return None, f"Skipping {path}: no granules in coverage {coverage_name}"
        return PreparedCoverage(coverage_name, configuration, schema, records), None

    def _check_compatibility(self, path, configuration, levels, crs, color_model):
        crs_registry = self.catalog.crs_registry
        if not crs_registry.equals_ignore_metadata(configuration.crs, crs):
            return configuration, f"Skipping {path}: CRS differs from coverage {configuration.name}"

        if configuration.color_model is not None and color_model is not None:
            check = check_color_model(configuration.color_model, color_model)
            if check == ColorModelCheck.INCOMPATIBLE:
                return configuration, f"Skipping {path}: color model incompatible with coverage {configuration.name}"
            if check == ColorModelCheck.EXPAND_TO_RGB and not configuration.expand_to_rgb:
                logger.info("Palette of %s differs, coverage %s will be expanded to RGB", path, configuration.name)
                configuration = dataclasses.replace(configuration, expand_to_rgb=True)

        if not configuration.heterogeneous:
            if len(levels) != configuration.levels_num:
                changes = {"heterogeneous": True}
                if len(levels) > configuration.levels_num:
                    changes["levels"] = tuple((float(x), float(y)) for x, y in levels)
                configuration = dataclasses.replace(configuration, **changes)
            elif not levels_equal(levels, configuration.levels):
                configuration = dataclasses.replace(configuration, heterogeneous=True)
            if configuration.heterogeneous:
                logger.info("Coverage %s is heterogeneous after %s", configuration.name, path)
        return configuration, None

    def create_schema(self, configuration: CoverageConfiguration) -> GranuleSchema:
        """Catalog schema for a new coverage, from the run's schema definition or the dimensions"""
        if self.configuration.schema:
            try:
                return parse_schema_definition(
                    configuration.name,
                    self.configuration.schema,
                    configuration.location_attribute,
                    configuration.crs,
                )
            except ConfigurationError as e:
                logger.warning("Invalid schema definition, using the default schema: %s", e)

        descriptors = configuration.dimension_descriptors()
        custom = [
            attribute
            for name, descriptor in descriptors.items()
            if name not in (TIME, ELEVATION)
            for attribute in descriptor.attributes
        ]
        return default_schema(
            configuration.name,
            location_attribute=configuration.location_attribute,
            time_attributes=descriptors[TIME].attributes if TIME in descriptors else (),
            elevation_attributes=descriptors[ELEVATION].attributes if ELEVATION in descriptors else (),
            custom_attributes=custom,
            crs=configuration.crs,
        )

    def location(self, path: str) -> str:
        """Location attribute value of a file, absolute or relative to the root"""
        resolved = pathlib.Path(path).resolve()
        if self.configuration.absolute_path:
            return str(resolved)
        try:
            return resolved.relative_to(self._root).as_posix()
        except ValueError:
            return pathlib.Path(os.path.relpath(resolved, self._root)).as_posix()

    def _build_records(self, path, reader, source_name, coverage_name, configuration, schema) -> list[GranuleRecord]:
        location = self.location(path)
        envelope = reader.envelope(source_name)
        collected = {}
        for collector in self.collectors:
            collected.update(collector.collect(path))

        names = set(schema.attribute_names)
        descriptors = configuration.dimension_descriptors()

        def keep(attributes: dict) -> dict:
            kept = {}
            for key, value in attributes.items():
                if key not in names and READER_DIMENSIONS.get(key) in descriptors:
                    descriptor = descriptors[READER_DIMENSIONS[key]]
                    if descriptor.is_range:
                        continue
                    key = descriptor.start_attribute
                if key in names:
                    kept[key] = value
            return kept

        source = reader.granules(source_name)
        if source is None:
            return [GranuleRecord(location, envelope.to_polygon(), keep(collected), 0, coverage_name)]
        records = []
        for granule in source:
            attributes = dict(granule.attributes)
            attributes.update(collected)
            footprint = granule.footprint if granule.footprint is not None else envelope.to_polygon()
            records.append(GranuleRecord(location, footprint, keep(attributes), granule.index, coverage_name))
        return records

    def _publish(self):
        """Hand the run's coverage configurations to the mosaic and persist them"""
        root = self.mosaic.root
        for name in sorted(self._configurations):
            configuration = self._configurations[name]
            self.mosaic.add_raster_manager(configuration)
            if root is not None:
                write_coverage_properties(root, configuration)

        names = self.mosaic.coverage_names
        base = pathlib.Path(root).resolve().name if root is not None else None
        if base and names and base not in names:
            write_root_summary(root, base, names)

    def _finish(self, status: RunStatus):
        if status == RunStatus.SUCCESS:
            self._fire("Done" if self._configurations else "Nothing to process", 100)
        elif status == RunStatus.CANCELLED:
            self._fire("Canceled", 100)
        else:
            self._fire("Failed", 100, logging.ERROR)
