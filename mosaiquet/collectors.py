#!/usr/bin/env python3
"""Granule attribute collectors working on raster file names

A collector applies a regular expression to the file name (without
directories) and assigns successive matches to its properties in order, so a
file named "sst_20200101_20200131.tif" with regex "[0-9]{8}" fills a range
"start;end" pair.

Collectors are declared as a comma separated list of

    <Kind>[<config>](<property>[;<property>...])

where Kind is Timestamp, Double, Integer or String (an optional
"FileNameExtractorSPI" suffix is ignored), and config is either "regex=..."
or the name of a <root>/<config>.properties file holding a "regex" key.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import os
import pathlib
import re
import typing

from .configuration import read_properties
from .errors import ConfigurationError
from .schema import RANGE_SPLITTER, to_datetime

logger = logging.getLogger(__name__)

_DEFINITION_RE = re.compile(r"^(?P<kind>\w+)\[(?P<config>.*)\]\((?P<properties>[^()]*)\)$")


class CollectorType(enum.StrEnum):
    """Switch for the value type produced by a collector"""

    TIMESTAMP = "timestamp"
    DOUBLE = "double"
    INTEGER = "integer"
    STRING = "string"

    @classmethod
    def parse(cls, kind: str) -> "CollectorType":
        key = kind.lower().removesuffix("filenameextractorspi").removesuffix("extractor")
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(f"Unknown properties collector: {kind}") from None

    def convert(self, text: str):
        if self == CollectorType.TIMESTAMP:
            return to_datetime(text)
        if self == CollectorType.DOUBLE:
            return float(text)
        if self == CollectorType.INTEGER:
            return int(text)
        return text


@dataclasses.dataclass(frozen=True)
class RegexPropertiesCollector:
    """Fill granule properties from regular expression matches on the file name"""

    property_names: tuple[str, ...]
    regex: str
    type: CollectorType = CollectorType.STRING

    def __post_init__(self):
        if not self.property_names:
            raise ConfigurationError("A properties collector needs at least one property")
        try:
            re.compile(self.regex)
        except re.error as e:
            raise ConfigurationError(f"Invalid collector regex {self.regex!r}: {e}") from e

    def matches(self, path: str | os.PathLike) -> list[str]:
        name = pathlib.Path(path).name
        return [match.group(0) for match in re.finditer(self.regex, name)]

    def collect(self, path: str | os.PathLike) -> dict[str, typing.Any]:
        """Property values extracted from the file name, empty when nothing matches"""
        values = {}
        for property_name, text in zip(self.property_names, self.matches(path)):
            try:
                values[property_name] = self.type.convert(text)
            except ValueError as e:
                logger.warning("Cannot convert %r for property %s of %s: %s", text, property_name, path, e)
        return values


def _split_definitions(text: str) -> list[str]:
    items, depth, current = [], 0, []
    for char in text:
        if char in "[(":
            depth += 1
        elif char in "])":
            depth = max(depth - 1, 0)
        if char == "," and depth == 0:
            items.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    items.append("".join(current).strip())
    return [item for item in items if item]


def parse_collectors(
    definitions: str | None, root_directory: str | os.PathLike | None = None
) -> list[RegexPropertiesCollector]:
    """Build collectors from their textual declaration"""
    collectors = []
    if not definitions:
        return collectors
    for definition in _split_definitions(definitions):
        match = _DEFINITION_RE.match(definition)
        if not match:
            raise ConfigurationError(f"Invalid properties collector definition: {definition!r}")
        config = match.group("config").strip()
        if config.startswith("regex="):
            regex = config[len("regex="):]
        else:
            if root_directory is None:
                raise ConfigurationError(f"Collector configuration {config!r} needs a root directory")
            path = pathlib.Path(root_directory) / f"{config}.properties"
            if not path.exists():
                raise ConfigurationError(f"Collector configuration file not found: {path}")
            regex = read_properties(path).get("regex")
            if not regex:
                raise ConfigurationError(f"No regex in collector configuration {path}")
        names = tuple(p.strip() for p in match.group("properties").split(RANGE_SPLITTER) if p.strip())
        collectors.append(RegexPropertiesCollector(names, regex, CollectorType.parse(match.group("kind"))))
    return collectors
