#!/usr/bin/env python3
"""Dimension descriptors and their domain queries

A coverage exposes time, elevation and any number of custom dimensions. Each
is described by the catalog attribute(s) holding its values: one attribute
for point values, a start and an end attribute for ranges.
"""
from __future__ import annotations

import dataclasses
import enum
import typing

from .errors import ConfigurationError
from .filters import Between, Compare, Equals, Filter, check_attributes, combine
from .schema import split_range

if typing.TYPE_CHECKING:
    from .catalog import GranuleCatalog

TIME = "TIME"
ELEVATION = "ELEVATION"


class DimensionType(enum.StrEnum):
    """Switch for single-valued or interval-valued dimensions"""

    POINT = "point"
    RANGE = "range"


@dataclasses.dataclass(frozen=True)
class Unit:
    """UCUM unit name and symbol"""

    name: str
    symbol: str


TIME_UNIT = Unit("second", "s")
ELEVATION_UNIT = Unit("meter", "m")
NO_UNIT = Unit("", "")


@dataclasses.dataclass(frozen=True, order=True)
class Range:
    """Closed interval of dimension values"""

    start: typing.Any
    end: typing.Any

    def __post_init__(self):
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"Range start {self.start!r} is after end {self.end!r}")

    def contains(self, value) -> bool:
        return self.start <= value <= self.end


@dataclasses.dataclass(frozen=True)
class DimensionDescriptor:
    """Name, units and catalog attribute(s) of one dimension"""

    name: str
    units: str
    unit_symbol: str
    start_attribute: str
    end_attribute: str | None = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Dimension name is required")
        if not self.start_attribute:
            raise ConfigurationError(f"Dimension {self.name} has no attribute")
        if self.end_attribute is not None and self.end_attribute in ("", self.start_attribute):
            raise ConfigurationError(f"Dimension {self.name} has an invalid end attribute")

    @classmethod
    def from_spec(cls, name: str, spec: str, unit: Unit = NO_UNIT) -> "DimensionDescriptor":
        """Descriptor from an attribute spec, "attr" for points or "start;end" for ranges"""
        start, end = split_range(spec)
        return cls(name, unit.name, unit.symbol, start, end)

    @property
    def type(self) -> DimensionType:
        return DimensionType.POINT if self.end_attribute is None else DimensionType.RANGE

    @property
    def is_range(self) -> bool:
        return self.type == DimensionType.RANGE

    @property
    def attributes(self) -> tuple[str, ...]:
        if self.end_attribute is None:
            return (self.start_attribute,)
        return (self.start_attribute, self.end_attribute)

    def filter_for(self, value) -> Filter:
        """Filter selecting granules matching a value or a Range of this dimension"""
        if not self.is_range:
            if isinstance(value, Range):
                return Between(self.start_attribute, value.start, value.end)
            return Equals(self.start_attribute, value)
        lower, upper = (value.start, value.end) if isinstance(value, Range) else (value, value)
        return combine(
            Compare(self.start_attribute, "<=", upper),
            Compare(self.end_attribute, ">=", lower),
        )


def parse_additional_domains(spec: str | None) -> list[DimensionDescriptor]:
    """Parse custom dimensions like "wavelength,depth(depth_min;depth_max),date(acq)"

    Each entry is "name", "name(attribute)" or "name(start;end)"; without an
    explicit attribute the lowercased dimension name is used.
    """
    descriptors = []
    if not spec:
        return descriptors
    for item in _split_top_level(spec):
        item = item.strip()
        if not item:
            continue
        if "(" in item:
            if not item.endswith(")"):
                raise ConfigurationError(f"Invalid domain definition: {item!r}")
            name, attribute_spec = item[:-1].split("(", 1)
        else:
            name, attribute_spec = item, item.lower()
        descriptors.append(DimensionDescriptor.from_spec(name.strip().upper(), attribute_spec))
    return descriptors


def _split_top_level(spec: str) -> list[str]:
    items, depth, current = [], 0, []
    for char in spec:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            items.append("".join(current))
            current = []
        else:
            current.append(char)
    items.append("".join(current))
    return items


class DimensionDomain:
    """Domain queries for one dimension of one coverage, answered by the catalog"""

    def __init__(self, descriptor: DimensionDescriptor, catalog: "GranuleCatalog", coverage_name: str):
        self.descriptor = descriptor
        self.catalog = catalog
        self.coverage_name = coverage_name

    def _check(self, filter: Filter | None):
        check_attributes(filter, self.descriptor.attributes, f"dimension {self.descriptor.name}")

    def get_domain(self, filter: Filter | None = None, offset: int = 0, limit: int = -1) -> list:
        """Sorted distinct values (or Range pairs) of this dimension, paged

        Args:
            filter: Optional filter over this dimension's own attributes only
            offset: Number of leading values to skip
            limit: Maximum number of values to return, negative for all

        Returns:
            List of values for point dimensions, list of Range for range dimensions
        """
        if offset < 0:
            raise ValueError(f"Offset must not be negative: {offset}")
        self._check(filter)
        rows = self.catalog.distinct(
            self.coverage_name, list(self.descriptor.attributes), filter, offset=offset, limit=limit
        )
        if self.descriptor.is_range:
            return [Range(start, end) for start, end in rows]
        return [row[0] for row in rows]

    def get_minimum(self):
        return self.catalog.aggregate(self.coverage_name, self.descriptor.start_attribute, "min")

    def get_maximum(self):
        attribute = self.descriptor.end_attribute or self.descriptor.start_attribute
        return self.catalog.aggregate(self.coverage_name, attribute, "max")

    def get_size(self, filter: Filter | None = None) -> int:
        self._check(filter)
        return self.catalog.count_distinct(self.coverage_name, list(self.descriptor.attributes), filter)
