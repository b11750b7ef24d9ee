#!/usr/bin/env python3
"""Indexing run and coverage configuration

Two kinds of configuration exist:
- IndexerConfiguration: how one indexing run scans the mosaic directory,
  optionally loaded from <root>/indexer.properties
- CoverageConfiguration: what is known about one coverage (resolution
  pyramid, CRS, color model, attributes), persisted to <root>/<name>.properties
  after a successful run

Both are frozen dataclasses; coverage configurations are only created through
CoverageConfigurationBuilder.build() and replaced, never mutated, afterwards.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import tempfile

from . import colormodels
from .colormodels import ColorModelInfo, IndexColorModelInfo, SampleModelInfo
from .dimensions import (
    ELEVATION,
    ELEVATION_UNIT,
    TIME,
    TIME_UNIT,
    DimensionDescriptor,
    parse_additional_domains,
)
from .errors import ConfigurationError
from .geometry import Envelope, format_levels, parse_levels
from .schema import DEFAULT_LOCATION_ATTRIBUTE

logger = logging.getLogger(__name__)

INDEXER_PROPERTIES = "indexer.properties"
PROPERTIES_SUFFIX = ".properties"
DEFAULT_WILDCARD = "*.*"


class Prop:
    """Keys of the persisted properties files"""

    ABSOLUTE_PATH = "AbsolutePath"
    LOCATION_ATTRIBUTE = "LocationAttribute"
    TIME_ATTRIBUTE = "TimeAttribute"
    ELEVATION_ATTRIBUTE = "ElevationAttribute"
    ADDITIONAL_DOMAIN_ATTRIBUTES = "AdditionalDomainAttributes"
    LEVELS_NUM = "LevelsNum"
    LEVELS = "Levels"
    NAME = "Name"
    TYPENAME = "TypeName"
    EXPAND_TO_RGB = "ExpandToRGB"
    HETEROGENEOUS = "Heterogeneous"
    SUGGESTED_FORMAT = "SuggestedFormat"
    ENVELOPE2D = "Envelope2D"
    CACHING = "Caching"
    CRS = "CRS"
    COLOR_MODEL = "ColorModel"
    SAMPLE_MODEL = "SampleModel"
    COVERAGES = "Coverages"
    # Indexer only
    RECURSIVE = "Recursive"
    WILDCARD = "Wildcard"
    SCHEMA = "Schema"
    PROPERTY_COLLECTORS = "PropertyCollectors"
    INDEXING_DIRECTORIES = "IndexingDirectories"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "yes", "1", "on")


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def read_properties(path: str | os.PathLike) -> dict[str, str]:
    """Read a Java-style properties file of key=value lines"""
    properties = {}
    with open(path, encoding="utf-8") as file:
        pending = ""
        for raw in file:
            line = pending + raw.strip()
            pending = ""
            if not line or line[0] in "#!":
                continue
            if line.endswith("\\") and not line.endswith("\\\\"):
                pending = line[:-1]
                continue
            separator = line.find("=")
            if separator < 0:
                separator = line.find(":")
            if separator < 0:
                properties[line] = ""
                continue
            key = line[:separator].strip()
            value = line[separator + 1:].strip()
            properties[key] = value.replace("\\:", ":").replace("\\=", "=").replace("\\\\", "\\")
    return properties


def write_properties(path: str | os.PathLike, properties: dict[str, str], comment: str | None = None):
    """Write a properties file, replacing any existing one atomically"""
    path = pathlib.Path(path)
    lines = []
    if comment:
        lines.append(f"# {comment}")
    for key, value in properties.items():
        if value is None:
            continue
        lines.append(f"{key}={value}")
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            file.write("\n".join(lines) + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


@dataclasses.dataclass(frozen=True)
class IndexerConfiguration:
    """Configuration for one indexing run"""

    root_directory: str
    index_name: str | None = None
    indexing_directories: tuple[str, ...] = ()
    wildcard: str = DEFAULT_WILDCARD
    recursive: bool = True
    absolute_path: bool = False
    location_attribute: str = DEFAULT_LOCATION_ATTRIBUTE
    time_attribute: str | None = None
    elevation_attribute: str | None = None
    additional_domain_attributes: str | None = None
    schema: str | None = None
    envelope: Envelope | None = None
    caching: bool = False
    property_collectors: str | None = None

    def __post_init__(self):
        if not self.root_directory:
            raise ConfigurationError("Root directory is required")
        if not self.location_attribute:
            raise ConfigurationError("Location attribute must not be empty")

    @property
    def name(self) -> str:
        """Index name, defaulting to the root directory name"""
        return self.index_name or pathlib.Path(self.root_directory).resolve().name

    @property
    def directories(self) -> tuple[str, ...]:
        return self.indexing_directories or (self.root_directory,)

    @classmethod
    def from_properties(cls, root_directory: str, properties: dict[str, str]) -> "IndexerConfiguration":
        envelope = properties.get(Prop.ENVELOPE2D)
        directories = properties.get(Prop.INDEXING_DIRECTORIES)
        return cls(
            root_directory=root_directory,
            index_name=properties.get(Prop.NAME) or None,
            indexing_directories=tuple(d.strip() for d in directories.split(",") if d.strip())
            if directories
            else (),
            wildcard=properties.get(Prop.WILDCARD) or DEFAULT_WILDCARD,
            recursive=_parse_bool(properties.get(Prop.RECURSIVE), True),
            absolute_path=_parse_bool(properties.get(Prop.ABSOLUTE_PATH), False),
            location_attribute=properties.get(Prop.LOCATION_ATTRIBUTE) or DEFAULT_LOCATION_ATTRIBUTE,
            time_attribute=properties.get(Prop.TIME_ATTRIBUTE) or None,
            elevation_attribute=properties.get(Prop.ELEVATION_ATTRIBUTE) or None,
            additional_domain_attributes=properties.get(Prop.ADDITIONAL_DOMAIN_ATTRIBUTES) or None,
            schema=properties.get(Prop.SCHEMA) or None,
            envelope=Envelope.parse(envelope) if envelope else None,
            caching=_parse_bool(properties.get(Prop.CACHING), False),
            property_collectors=properties.get(Prop.PROPERTY_COLLECTORS) or None,
        )

    @classmethod
    def load(cls, root_directory: str | os.PathLike, **overrides) -> "IndexerConfiguration":
        """Configuration from <root>/indexer.properties when present, with overrides

        Overrides set to None are ignored.
        """
        root_directory = str(root_directory)
        path = pathlib.Path(root_directory) / INDEXER_PROPERTIES
        if path.exists():
            logger.info("Loading indexer configuration from %s", path)
            configuration = cls.from_properties(root_directory, read_properties(path))
        else:
            configuration = cls(root_directory=root_directory)
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(configuration, **overrides) if overrides else configuration


@dataclasses.dataclass(frozen=True)
class CoverageConfiguration:
    """Everything known about one coverage of the mosaic"""

    name: str
    levels: tuple[tuple[float, float], ...]
    crs: str | None = None
    color_model: ColorModelInfo | None = None
    sample_model: SampleModelInfo | None = None
    heterogeneous: bool = False
    expand_to_rgb: bool = False
    absolute_path: bool = False
    location_attribute: str = DEFAULT_LOCATION_ATTRIBUTE
    time_attribute: str | None = None
    elevation_attribute: str | None = None
    additional_domain_attributes: str | None = None
    envelope: Envelope | None = None
    caching: bool = False
    suggested_format: str | None = None
    type_name: str | None = None

    @property
    def levels_num(self) -> int:
        return len(self.levels)

    @property
    def palette(self):
        if isinstance(self.color_model, IndexColorModelInfo):
            return self.color_model.palette
        return None

    @property
    def effective_type_name(self) -> str:
        return self.type_name or self.name

    def dimension_descriptors(self) -> dict[str, DimensionDescriptor]:
        """Descriptors for time, elevation and custom dimensions, keyed by name"""
        descriptors = {}
        if self.time_attribute:
            descriptors[TIME] = DimensionDescriptor.from_spec(TIME, self.time_attribute, TIME_UNIT)
        if self.elevation_attribute:
            descriptors[ELEVATION] = DimensionDescriptor.from_spec(
                ELEVATION, self.elevation_attribute, ELEVATION_UNIT
            )
        for descriptor in parse_additional_domains(self.additional_domain_attributes):
            descriptors[descriptor.name] = descriptor
        return descriptors

    def to_properties(self) -> dict[str, str]:
        properties = {
            Prop.NAME: self.name,
            Prop.TYPENAME: self.effective_type_name,
            Prop.LEVELS_NUM: str(self.levels_num),
            Prop.LEVELS: format_levels(self.levels),
            Prop.ABSOLUTE_PATH: _format_bool(self.absolute_path),
            Prop.LOCATION_ATTRIBUTE: self.location_attribute,
            Prop.HETEROGENEOUS: _format_bool(self.heterogeneous),
            Prop.EXPAND_TO_RGB: _format_bool(self.expand_to_rgb),
            Prop.CACHING: _format_bool(self.caching),
            Prop.TIME_ATTRIBUTE: self.time_attribute,
            Prop.ELEVATION_ATTRIBUTE: self.elevation_attribute,
            Prop.ADDITIONAL_DOMAIN_ATTRIBUTES: self.additional_domain_attributes,
            Prop.ENVELOPE2D: self.envelope.format() if self.envelope else None,
            Prop.SUGGESTED_FORMAT: self.suggested_format,
            Prop.CRS: self.crs.replace("\n", " ") if self.crs else None,
        }
        if self.color_model is not None:
            properties[Prop.COLOR_MODEL] = colormodels.color_model_to_json(self.color_model)
        if self.sample_model is not None:
            properties[Prop.SAMPLE_MODEL] = colormodels.sample_model_to_json(self.sample_model)
        return properties

    @classmethod
    def from_properties(cls, properties: dict[str, str]) -> "CoverageConfiguration":
        levels = parse_levels(properties.get(Prop.LEVELS, ""))
        levels_num = properties.get(Prop.LEVELS_NUM)
        if levels_num is not None and int(levels_num) != len(levels):
            raise ConfigurationError(
                f"LevelsNum {levels_num} does not match {len(levels)} levels in {properties.get(Prop.NAME)}"
            )
        envelope = properties.get(Prop.ENVELOPE2D)
        return (
            CoverageConfigurationBuilder(properties.get(Prop.NAME))
            .set(
                levels=levels,
                crs=properties.get(Prop.CRS) or None,
                color_model=colormodels.color_model_from_json(properties.get(Prop.COLOR_MODEL)),
                sample_model=colormodels.sample_model_from_json(properties.get(Prop.SAMPLE_MODEL)),
                heterogeneous=_parse_bool(properties.get(Prop.HETEROGENEOUS)),
                expand_to_rgb=_parse_bool(properties.get(Prop.EXPAND_TO_RGB)),
                absolute_path=_parse_bool(properties.get(Prop.ABSOLUTE_PATH)),
                location_attribute=properties.get(Prop.LOCATION_ATTRIBUTE) or DEFAULT_LOCATION_ATTRIBUTE,
                time_attribute=properties.get(Prop.TIME_ATTRIBUTE) or None,
                elevation_attribute=properties.get(Prop.ELEVATION_ATTRIBUTE) or None,
                additional_domain_attributes=properties.get(Prop.ADDITIONAL_DOMAIN_ATTRIBUTES) or None,
                envelope=Envelope.parse(envelope) if envelope else None,
                caching=_parse_bool(properties.get(Prop.CACHING)),
                suggested_format=properties.get(Prop.SUGGESTED_FORMAT) or None,
                type_name=properties.get(Prop.TYPENAME) or None,
            )
            .build()
        )


class CoverageConfigurationBuilder:
    """Collects coverage configuration values until they are complete"""

    _fields = {f.name for f in dataclasses.fields(CoverageConfiguration)}

    def __init__(self, name: str | None = None):
        self._values = {"name": name}

    def set(self, **values) -> "CoverageConfigurationBuilder":
        unknown = set(values) - self._fields
        if unknown:
            raise ConfigurationError(f"Unknown coverage configuration fields: {', '.join(sorted(unknown))}")
        self._values.update(values)
        return self

    def build(self) -> CoverageConfiguration:
        if not self._values.get("name"):
            raise ConfigurationError("Coverage name is required")
        levels = self._values.get("levels")
        if not levels:
            raise ConfigurationError(f"Coverage {self._values['name']} has no resolution levels")
        values = dict(self._values)
        values["levels"] = tuple((float(x), float(y)) for x, y in levels)
        return CoverageConfiguration(**values)


def coverage_properties_path(root: str | os.PathLike, name: str) -> pathlib.Path:
    return pathlib.Path(root) / f"{name}{PROPERTIES_SUFFIX}"


def write_coverage_properties(root: str | os.PathLike, configuration: CoverageConfiguration) -> pathlib.Path:
    path = coverage_properties_path(root, configuration.name)
    write_properties(path, configuration.to_properties(), comment="Created by mosaiquet")
    logger.info("Wrote coverage configuration %s", path)
    return path


def write_root_summary(root: str | os.PathLike, base_name: str, coverage_names: list[str]) -> pathlib.Path:
    """Summary file named after the root directory, listing the coverages of the mosaic"""
    path = coverage_properties_path(root, base_name)
    write_properties(
        path,
        {Prop.NAME: base_name, Prop.COVERAGES: ",".join(sorted(coverage_names))},
        comment="Created by mosaiquet",
    )
    return path


def discover_coverage_configurations(root: str | os.PathLike) -> list[CoverageConfiguration]:
    """Load every coverage properties file found directly under root"""
    configurations = []
    for path in sorted(pathlib.Path(root).glob(f"*{PROPERTIES_SUFFIX}")):
        if path.name == INDEXER_PROPERTIES or path.name.startswith("."):
            continue
        properties = read_properties(path)
        if Prop.LEVELS not in properties or Prop.NAME not in properties:
            continue
        configurations.append(CoverageConfiguration.from_properties(properties))
    return configurations
