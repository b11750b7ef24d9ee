#!/usr/bin/env python3
"""Granule records and per-coverage catalog schemas

Every coverage stores its granules in an Arrow table with these columns:
- the location attribute (string), path of the source raster
- the geometry attribute (binary), WKB footprint polygon
- imageindex (int64), slice index inside multi-dimensional files
- bbox_minx, bbox_miny, bbox_maxx, bbox_maxy (float64), footprint bounds
- one column per time, elevation or custom domain attribute
"""
from __future__ import annotations

import dataclasses
import datetime
import enum
import json
import logging
import typing

import pyarrow

from .errors import ConfigurationError
from .geometry import Envelope, footprint_envelope, footprint_from_wkb, footprint_to_wkb

logger = logging.getLogger(__name__)

DEFAULT_LOCATION_ATTRIBUTE = "location"
DEFAULT_GEOMETRY_ATTRIBUTE = "the_geom"
INDEX_ATTRIBUTE = "imageindex"
ENVELOPE_COLUMNS = ("bbox_minx", "bbox_miny", "bbox_maxx", "bbox_maxy")

# Separates start and end attribute names of a range dimension
RANGE_SPLITTER = ";"


class AttributeType(enum.StrEnum):
    """Switch for the storage type of a schema attribute"""

    STRING = "String"
    INTEGER = "Integer"
    DOUBLE = "Double"
    BOOLEAN = "Boolean"
    TIMESTAMP = "Timestamp"
    GEOMETRY = "Geometry"

    @classmethod
    def parse(cls, name: str) -> "AttributeType":
        """Resolve loose type names as found in schema definitions"""
        key = name.strip().rsplit(".", 1)[-1].lower()
        aliases = {
            "string": cls.STRING,
            "str": cls.STRING,
            "integer": cls.INTEGER,
            "int": cls.INTEGER,
            "long": cls.INTEGER,
            "short": cls.INTEGER,
            "double": cls.DOUBLE,
            "float": cls.DOUBLE,
            "boolean": cls.BOOLEAN,
            "bool": cls.BOOLEAN,
            "timestamp": cls.TIMESTAMP,
            "date": cls.TIMESTAMP,
            "datetime": cls.TIMESTAMP,
            "geometry": cls.GEOMETRY,
            "polygon": cls.GEOMETRY,
            "multipolygon": cls.GEOMETRY,
        }
        try:
            return aliases[key]
        except KeyError:
            raise ConfigurationError(f"Unknown attribute type: {name}") from None

    @property
    def arrow_type(self) -> pyarrow.DataType:
        return {
            AttributeType.STRING: pyarrow.string(),
            AttributeType.INTEGER: pyarrow.int64(),
            AttributeType.DOUBLE: pyarrow.float64(),
            AttributeType.BOOLEAN: pyarrow.bool_(),
            AttributeType.TIMESTAMP: pyarrow.timestamp("us"),
            AttributeType.GEOMETRY: pyarrow.binary(),
        }[self]


def to_datetime(value) -> datetime.datetime:
    """Normalize a date-like value to a naive UTC datetime"""
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_datetime(datetime.datetime.fromisoformat(text))
        except ValueError:
            pass
        for fmt in ("%Y%m%dT%H%M%S", "%Y%m%dT%H%M", "%Y%m%d", "%Y%m", "%Y"):
            try:
                return datetime.datetime.strptime(text, fmt)
            except ValueError:
                continue
        raise ValueError(f"Not a recognizable timestamp: {value!r}")
    raise TypeError(f"Cannot convert {type(value).__name__} to a timestamp")


def coerce_value(value, attribute_type: AttributeType):
    """Convert a Python value to what the attribute column stores"""
    if value is None:
        return None
    if attribute_type == AttributeType.TIMESTAMP:
        return to_datetime(value)
    if attribute_type == AttributeType.DOUBLE:
        return float(value)
    if attribute_type == AttributeType.INTEGER:
        return int(value)
    if attribute_type == AttributeType.BOOLEAN:
        return bool(value)
    if attribute_type == AttributeType.STRING:
        return str(value)
    return value


def split_range(spec: str) -> tuple[str, str | None]:
    """Split an attribute spec "start;end" into its start and optional end names"""
    parts = [p.strip() for p in spec.split(RANGE_SPLITTER)]
    if len(parts) == 1 and parts[0]:
        return parts[0], None
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise ConfigurationError(f"Invalid attribute definition: {spec!r}")


@dataclasses.dataclass(frozen=True)
class AttributeDescriptor:
    """Convenience wrapper for a schema attribute name and type"""

    name: str
    type: AttributeType


@dataclasses.dataclass(frozen=True)
class GranuleSchema:
    """Attributes stored for every granule of one coverage"""

    name: str
    attributes: tuple[AttributeDescriptor, ...]
    location_attribute: str = DEFAULT_LOCATION_ATTRIBUTE
    geometry_attribute: str = DEFAULT_GEOMETRY_ATTRIBUTE
    crs: str | None = None

    def __post_init__(self):
        names = [a.name for a in self.attributes]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Duplicate attribute in schema {self.name}")
        reserved = set(names) & set(ENVELOPE_COLUMNS)
        if reserved:
            raise ConfigurationError(f"Reserved attribute names: {', '.join(sorted(reserved))}")
        for required in (self.location_attribute, self.geometry_attribute, INDEX_ATTRIBUTE):
            if required not in names:
                raise ConfigurationError(f"Schema {self.name} lacks attribute {required}")

    @property
    def attribute_names(self) -> list[str]:
        return [a.name for a in self.attributes]

    @property
    def domain_attributes(self) -> list[AttributeDescriptor]:
        """Attributes other than location, geometry and slice index"""
        fixed = {self.location_attribute, self.geometry_attribute, INDEX_ATTRIBUTE}
        return [a for a in self.attributes if a.name not in fixed]

    def has_attribute(self, name: str) -> bool:
        return name in self.attribute_names

    def attribute(self, name: str) -> AttributeDescriptor:
        for a in self.attributes:
            if a.name == name:
                return a
        raise KeyError(name)

    def to_arrow(self) -> pyarrow.Schema:
        fields = [pyarrow.field(a.name, a.type.arrow_type) for a in self.attributes]
        fields.extend(pyarrow.field(name, pyarrow.float64(), nullable=False) for name in ENVELOPE_COLUMNS)
        return pyarrow.schema(fields)

    def to_json(self) -> str:
        return json.dumps(
            {
                "name": self.name,
                "attributes": [[a.name, str(a.type)] for a in self.attributes],
                "location_attribute": self.location_attribute,
                "geometry_attribute": self.geometry_attribute,
                "crs": self.crs,
            }
        )

    @staticmethod
    def from_json(text: str | bytes) -> "GranuleSchema":
        data = json.loads(text)
        return GranuleSchema(
            name=data["name"],
            attributes=tuple(AttributeDescriptor(n, AttributeType(t)) for n, t in data["attributes"]),
            location_attribute=data["location_attribute"],
            geometry_attribute=data["geometry_attribute"],
            crs=data.get("crs"),
        )

    def with_name(self, name: str) -> "GranuleSchema":
        return dataclasses.replace(self, name=name)


def parse_schema_definition(
    name: str,
    definition: str,
    location_attribute: str = DEFAULT_LOCATION_ATTRIBUTE,
    crs: str | None = None,
) -> GranuleSchema:
    """Build a schema from a definition like "*the_geom:Polygon,location:String,time:Date"

    A leading "*" marks the geometry attribute. The slice index attribute is
    added when missing.
    """
    attributes = []
    geometry_attribute = None
    for item in definition.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            attr_name, type_name = item.split(":", 1)
        except ValueError:
            raise ConfigurationError(f"Invalid schema attribute: {item!r}") from None
        is_default_geometry = attr_name.startswith("*")
        attr_name = attr_name.lstrip("*").strip()
        attr_type = AttributeType.parse(type_name)
        if attr_type == AttributeType.GEOMETRY and (is_default_geometry or geometry_attribute is None):
            geometry_attribute = attr_name
        attributes.append(AttributeDescriptor(attr_name, attr_type))

    if geometry_attribute is None:
        geometry_attribute = DEFAULT_GEOMETRY_ATTRIBUTE
        attributes.insert(0, AttributeDescriptor(geometry_attribute, AttributeType.GEOMETRY))
    if location_attribute not in [a.name for a in attributes]:
        attributes.append(AttributeDescriptor(location_attribute, AttributeType.STRING))
    if INDEX_ATTRIBUTE not in [a.name for a in attributes]:
        attributes.append(AttributeDescriptor(INDEX_ATTRIBUTE, AttributeType.INTEGER))

    return GranuleSchema(
        name=name,
        attributes=tuple(attributes),
        location_attribute=location_attribute,
        geometry_attribute=geometry_attribute,
        crs=crs,
    )


def default_schema(
    name: str,
    location_attribute: str = DEFAULT_LOCATION_ATTRIBUTE,
    time_attributes: typing.Iterable[str] = (),
    elevation_attributes: typing.Iterable[str] = (),
    custom_attributes: typing.Iterable[str] = (),
    crs: str | None = None,
) -> GranuleSchema:
    """Schema with location, footprint, slice index and the dimension attributes"""
    attributes = [
        AttributeDescriptor(DEFAULT_GEOMETRY_ATTRIBUTE, AttributeType.GEOMETRY),
        AttributeDescriptor(location_attribute, AttributeType.STRING),
        AttributeDescriptor(INDEX_ATTRIBUTE, AttributeType.INTEGER),
    ]
    seen = {a.name for a in attributes}
    for names, attr_type in (
        (time_attributes, AttributeType.TIMESTAMP),
        (elevation_attributes, AttributeType.DOUBLE),
        (custom_attributes, AttributeType.STRING),
    ):
        for attr_name in names:
            if attr_name not in seen:
                attributes.append(AttributeDescriptor(attr_name, attr_type))
                seen.add(attr_name)
    return GranuleSchema(
        name=name,
        attributes=tuple(attributes),
        location_attribute=location_attribute,
        crs=crs,
    )


@dataclasses.dataclass(frozen=True)
class GranuleRecord:
    """One catalog row: a raster file, or one slice of a multi-dimensional file"""

    location: str
    footprint: typing.Any  # shapely geometry in the coverage CRS
    attributes: typing.Mapping[str, typing.Any] = dataclasses.field(default_factory=dict)
    index: int = 0
    coverage: str | None = None

    @property
    def envelope(self) -> Envelope:
        return footprint_envelope(self.footprint)

    def get(self, name: str, default=None):
        return self.attributes.get(name, default)


def records_to_batch(records: typing.Sequence[GranuleRecord], schema: GranuleSchema) -> pyarrow.RecordBatch:
    """Convert granule records to an Arrow record batch of the coverage schema"""
    arrow_schema = schema.to_arrow()
    columns: dict[str, list] = {name: [] for name in arrow_schema.names}
    for record in records:
        unknown = set(record.attributes) - set(schema.attribute_names)
        if unknown:
            logger.debug("Dropping attributes not in schema %s: %s", schema.name, sorted(unknown))
        bounds = record.footprint.bounds
        for attribute in schema.attributes:
            if attribute.name == schema.location_attribute:
                value = record.location
            elif attribute.name == schema.geometry_attribute:
                value = footprint_to_wkb(record.footprint)
            elif attribute.name == INDEX_ATTRIBUTE:
                value = int(record.index)
            else:
                value = coerce_value(record.attributes.get(attribute.name), attribute.type)
            columns[attribute.name].append(value)
        for name, value in zip(ENVELOPE_COLUMNS, bounds):
            columns[name].append(float(value))
    return pyarrow.RecordBatch.from_pydict(columns, schema=arrow_schema)


def table_to_records(table: pyarrow.Table, schema: GranuleSchema) -> list[GranuleRecord]:
    """Convert rows of a coverage table back to granule records"""
    fixed = {schema.location_attribute, schema.geometry_attribute, INDEX_ATTRIBUTE, *ENVELOPE_COLUMNS}
    records = []
    for row in table.to_pylist():
        records.append(
            GranuleRecord(
                location=row[schema.location_attribute],
                footprint=footprint_from_wkb(row[schema.geometry_attribute]),
                attributes={k: v for k, v in row.items() if k not in fixed},
                index=row[INDEX_ATTRIBUTE] or 0,
                coverage=schema.name,
            )
        )
    return records
