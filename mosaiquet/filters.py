#!/usr/bin/env python3
"""Catalog query filters

The predicate set is deliberately small: attribute equality, comparisons,
inclusive ranges, bounding box intersection with the footprint, and
conjunctions of those. Filters evaluate to boolean masks over an Arrow table
of granules.

A tiny CQL-like text form is accepted by parse_filter(), e.g.:

    time BETWEEN 2020-01-01 AND 2020-12-31 AND elevation = 100
    BBOX(the_geom, 0, 0, 10, 10) AND band = 'red'
"""
from __future__ import annotations

import dataclasses
import re
import typing

import numpy
import pyarrow
import pyarrow.compute
import shapely

from .errors import InvalidFilterAttributeError, UnsupportedFilterError
from .geometry import Envelope
from .schema import DEFAULT_GEOMETRY_ATTRIBUTE, ENVELOPE_COLUMNS, to_datetime

COMPARISONS = {
    "<": pyarrow.compute.less,
    "<=": pyarrow.compute.less_equal,
    ">": pyarrow.compute.greater,
    ">=": pyarrow.compute.greater_equal,
}


class Filter:
    """Base class of all filter predicates"""

    def attributes(self) -> set[str]:
        """Names of the attributes this filter reads"""
        raise NotImplementedError

    def mask(self, table: pyarrow.Table) -> pyarrow.Array:
        """Boolean mask selecting matching rows of a granule table"""
        raise NotImplementedError

    def __and__(self, other: "Filter | None") -> "Filter":
        return combine(self, other)


def _column(table: pyarrow.Table, name: str):
    if name not in table.schema.names:
        raise InvalidFilterAttributeError(f"Unknown filter attribute: {name}", {name})
    return table.column(name)


def _scalar(value, arrow_type: pyarrow.DataType) -> pyarrow.Scalar:
    """Coerce a filter literal to the type of the column it is compared with"""
    try:
        if pyarrow.types.is_timestamp(arrow_type):
            value = to_datetime(value)
        elif pyarrow.types.is_floating(arrow_type):
            value = float(value)
        elif pyarrow.types.is_integer(arrow_type):
            value = int(value)
        elif pyarrow.types.is_boolean(arrow_type):
            value = value if isinstance(value, bool) else str(value).lower() in ("true", "1", "yes")
        elif pyarrow.types.is_string(arrow_type):
            value = str(value)
    except (TypeError, ValueError) as e:
        raise UnsupportedFilterError(f"Cannot compare {value!r} with {arrow_type}") from e
    return pyarrow.scalar(value, type=arrow_type)


def _to_array(mask) -> pyarrow.Array:
    if isinstance(mask, pyarrow.ChunkedArray):
        mask = mask.combine_chunks()
    return mask.fill_null(False)


@dataclasses.dataclass(frozen=True)
class Equals(Filter):
    """Attribute equals a literal"""

    attribute: str
    value: typing.Any

    def attributes(self) -> set[str]:
        return {self.attribute}

    def mask(self, table):
        column = _column(table, self.attribute)
        return _to_array(pyarrow.compute.equal(column, _scalar(self.value, column.type)))


@dataclasses.dataclass(frozen=True)
class Compare(Filter):
    """Attribute compared with a literal using <, <=, > or >="""

    attribute: str
    operator: str
    value: typing.Any

    def __post_init__(self):
        if self.operator not in COMPARISONS:
            raise UnsupportedFilterError(f"Unsupported comparison operator: {self.operator}")

    def attributes(self) -> set[str]:
        return {self.attribute}

    def mask(self, table):
        column = _column(table, self.attribute)
        function = COMPARISONS[self.operator]
        return _to_array(function(column, _scalar(self.value, column.type)))


@dataclasses.dataclass(frozen=True)
class Between(Filter):
    """Attribute within an inclusive range"""

    attribute: str
    lower: typing.Any
    upper: typing.Any

    def attributes(self) -> set[str]:
        return {self.attribute}

    def mask(self, table):
        column = _column(table, self.attribute)
        lower = pyarrow.compute.greater_equal(column, _scalar(self.lower, column.type))
        upper = pyarrow.compute.less_equal(column, _scalar(self.upper, column.type))
        return _to_array(pyarrow.compute.and_kleene(lower, upper))


@dataclasses.dataclass(frozen=True)
class BBox(Filter):
    """Granule footprint intersects an envelope

    Rows are first selected on the stored footprint bounds, then refined with
    an exact shapely intersection test on the footprint itself.
    """

    envelope: Envelope
    attribute: str = DEFAULT_GEOMETRY_ATTRIBUTE

    def attributes(self) -> set[str]:
        return {self.attribute}

    def mask(self, table):
        geometry = _column(table, self.attribute)
        env = self.envelope
        minx, miny, maxx, maxy = (table.column(name) for name in ENVELOPE_COLUMNS)
        coarse = pyarrow.compute.and_(
            pyarrow.compute.and_(
                pyarrow.compute.less_equal(minx, env.maxx),
                pyarrow.compute.greater_equal(maxx, env.minx),
            ),
            pyarrow.compute.and_(
                pyarrow.compute.less_equal(miny, env.maxy),
                pyarrow.compute.greater_equal(maxy, env.miny),
            ),
        )
        selected = numpy.array(_to_array(coarse).to_numpy(zero_copy_only=False), dtype=bool)
        candidates = numpy.flatnonzero(selected)
        if len(candidates):
            footprints = shapely.from_wkb(geometry.take(pyarrow.array(candidates)).to_pylist())
            selected[candidates] = shapely.intersects(footprints, env.to_polygon())
        return pyarrow.array(selected, type=pyarrow.bool_())


@dataclasses.dataclass(frozen=True)
class And(Filter):
    """Conjunction of filters"""

    filters: tuple[Filter, ...]

    def attributes(self) -> set[str]:
        names = set()
        for f in self.filters:
            names |= f.attributes()
        return names

    def mask(self, table):
        result = None
        for f in self.filters:
            mask = f.mask(table)
            result = mask if result is None else pyarrow.compute.and_(result, mask)
        if result is None:
            return pyarrow.array(numpy.ones(table.num_rows, dtype=bool))
        return result


def combine(*filters: Filter | None) -> Filter | None:
    """AND together filters, ignoring None and flattening nested conjunctions"""
    parts = []
    for f in filters:
        if f is None:
            continue
        if isinstance(f, And):
            parts.extend(f.filters)
        else:
            parts.append(f)
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def check_attributes(filter: Filter | None, allowed: typing.Iterable[str], target: str) -> None:
    """Raise InvalidFilterAttributeError if the filter reads attributes outside allowed"""
    if filter is None:
        return
    foreign = filter.attributes() - set(allowed)
    if foreign:
        raise InvalidFilterAttributeError(
            f"Filter on {target} references foreign attributes: {', '.join(sorted(foreign))}",
            foreign,
        )


_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)(?![\w:.\-])
      | (?P<op><=|>=|<>|!=|==|=|<|>)
      | (?P<punct>[(),])
      | (?P<word>[^\s(),=<>!']+)
    )""",
    re.VERBOSE,
)

_UNSUPPORTED_KEYWORDS = {"OR", "NOT", "LIKE", "ILIKE", "IN", "IS", "DURING", "INTERSECTS"}


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens = []
    position = 0
    text = text.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise UnsupportedFilterError(f"Cannot parse filter near: {text[position:]!r}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _FilterParser:
    def __init__(self, text: str):
        self.tokens = _tokenize(text)
        self.position = 0

    def peek(self) -> tuple[str, str] | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def next(self) -> tuple[str, str]:
        token = self.peek()
        if token is None:
            raise UnsupportedFilterError("Unexpected end of filter")
        self.position += 1
        return token

    def expect(self, text: str):
        kind, value = self.next()
        if value.upper() != text:
            raise UnsupportedFilterError(f"Expected {text!r}, found {value!r}")

    def keyword(self) -> str | None:
        token = self.peek()
        if token and token[0] == "word":
            return token[1].upper()
        return None

    def parse(self) -> Filter:
        clauses = [self.clause()]
        while self.peek() is not None:
            keyword = self.keyword()
            if keyword in _UNSUPPORTED_KEYWORDS:
                raise UnsupportedFilterError(f"Unsupported filter operator: {keyword}")
            self.expect("AND")
            clauses.append(self.clause())
        return combine(*clauses)

    def literal(self):
        kind, value = self.next()
        if kind == "string":
            return value[1:-1].replace("''", "'")
        if kind == "number":
            return float(value) if re.search(r"[.eE]", value) else int(value)
        if kind == "word":
            if value.upper() in _UNSUPPORTED_KEYWORDS or value.upper() == "AND":
                raise UnsupportedFilterError(f"Expected a literal, found {value!r}")
            return value
        raise UnsupportedFilterError(f"Expected a literal, found {value!r}")

    def clause(self) -> Filter:
        kind, value = self.next()
        if kind != "word":
            raise UnsupportedFilterError(f"Expected an attribute name, found {value!r}")
        if value.upper() in _UNSUPPORTED_KEYWORDS:
            raise UnsupportedFilterError(f"Unsupported filter operator: {value.upper()}")
        if value.upper() == "BBOX":
            return self.bbox()

        attribute = value
        keyword = self.keyword()
        if keyword == "BETWEEN":
            self.next()
            lower = self.literal()
            self.expect("AND")
            upper = self.literal()
            return Between(attribute, lower, upper)
        if keyword in _UNSUPPORTED_KEYWORDS:
            raise UnsupportedFilterError(f"Unsupported filter operator: {keyword}")

        kind, operator = self.next()
        if kind != "op":
            raise UnsupportedFilterError(f"Expected an operator after {attribute!r}, found {operator!r}")
        if operator in ("=", "=="):
            return Equals(attribute, self.literal())
        if operator in COMPARISONS:
            return Compare(attribute, operator, self.literal())
        raise UnsupportedFilterError(f"Unsupported filter operator: {operator}")

    def bbox(self) -> Filter:
        self.expect("(")
        args = []
        while True:
            kind, value = self.next()
            if kind == "punct" and value == ")":
                break
            if kind == "punct" and value == ",":
                continue
            args.append((kind, value))
        attribute = DEFAULT_GEOMETRY_ATTRIBUTE
        if args and args[0][0] == "word":
            attribute = args.pop(0)[1]
        if len(args) != 4 or any(kind != "number" for kind, _ in args):
            raise UnsupportedFilterError("BBOX expects four numeric coordinates")
        return BBox(Envelope.from_bounds([float(v) for _, v in args]), attribute)


def parse_filter(text: str | None) -> Filter | None:
    """Parse the CQL-like filter text form, None for an empty string or INCLUDE"""
    if text is None or not text.strip() or text.strip().upper() == "INCLUDE":
        return None
    return _FilterParser(text).parse()
