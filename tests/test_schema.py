#!/usr/bin/env python3
"""Tests for granule schemas, geometry helpers and the CRS registry."""

import datetime

import pyarrow as pa
import pytest
from shapely.geometry import box

from mosaiquet.crs import CRSRegistry
from mosaiquet.errors import ConfigurationError
from mosaiquet.geometry import Envelope, format_levels, levels_equal, parse_levels
from mosaiquet.schema import (
    AttributeType,
    GranuleRecord,
    GranuleSchema,
    default_schema,
    parse_schema_definition,
    records_to_batch,
    table_to_records,
    to_datetime,
)


class TestSchema:
    """Tests for GranuleSchema."""

    def test_default_schema(self):
        """Test the default attributes and their Arrow types."""
        schema = default_schema("sst", time_attributes=["time"], custom_attributes=["band"])

        assert schema.attribute_names == ["the_geom", "location", "imageindex", "time", "band"]
        arrow = schema.to_arrow()
        assert arrow.field("time").type == pa.timestamp("us")
        assert arrow.field("band").type == pa.string()
        assert arrow.field("bbox_minx").type == pa.float64()
        assert [a.name for a in schema.domain_attributes] == ["time", "band"]

    def test_schema_definition(self):
        """Test parsing a schema definition with a marked geometry attribute."""
        schema = parse_schema_definition("sst", "footprint:Polygon,*geom:MultiPolygon,location:String,depth:Integer")

        assert schema.geometry_attribute == "geom"
        assert schema.attribute("depth").type == AttributeType.INTEGER
        assert schema.attribute_names[-1] == "imageindex"

    def test_schema_definition_adds_required_attributes(self):
        """Test that geometry, location and index are added when missing."""
        schema = parse_schema_definition("sst", "time:java.util.Date", location_attribute="path")

        assert schema.attribute_names == ["the_geom", "time", "path", "imageindex"]
        assert schema.attribute("time").type == AttributeType.TIMESTAMP

    @pytest.mark.parametrize("definition", ["time", "time:Complex"])
    def test_invalid_definition(self, definition):
        """Test malformed schema definitions."""
        with pytest.raises(ConfigurationError):
            parse_schema_definition("sst", definition)

    def test_reserved_names(self):
        """Test that the footprint bounds columns cannot be declared."""
        with pytest.raises(ConfigurationError):
            parse_schema_definition("sst", "bbox_minx:Double")

    def test_json(self):
        """Test restoring a schema from its JSON form."""
        schema = default_schema("sst", elevation_attributes=["depth"], crs="EPSG:4326")
        assert GranuleSchema.from_json(schema.to_json()) == schema


class TestRecords:
    """Tests for records and their Arrow form."""

    def test_records_to_batch(self):
        """Test conversion of records to Arrow and back."""
        schema = default_schema("sst", time_attributes=["time"], elevation_attributes=["depth"])
        records = [
            GranuleRecord("a.tif", box(0, 0, 2, 1), {"time": "2024-01-01T12:00:00+02:00", "depth": 5, "extra": 1}, 3),
        ]

        batch = records_to_batch(records, schema)
        restored = table_to_records(pa.Table.from_batches([batch]), schema)

        assert batch.column(batch.schema.get_field_index("bbox_maxx")).to_pylist() == [2.0]
        assert restored[0].location == "a.tif"
        assert restored[0].index == 3
        assert restored[0].get("time") == datetime.datetime(2024, 1, 1, 10)
        assert restored[0].get("depth") == 5.0
        assert restored[0].get("extra") is None
        assert restored[0].envelope == Envelope(0, 0, 2, 1)
        assert restored[0].coverage == "sst"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-01-02", datetime.datetime(2024, 1, 2)),
            ("2024-01-02T03:04:05Z", datetime.datetime(2024, 1, 2, 3, 4, 5)),
            ("20240102T030405", datetime.datetime(2024, 1, 2, 3, 4, 5)),
            (datetime.date(2024, 1, 2), datetime.datetime(2024, 1, 2)),
        ],
    )
    def test_to_datetime(self, value, expected):
        """Test timestamp normalization to naive UTC."""
        assert to_datetime(value) == expected

    def test_to_datetime_invalid(self):
        """Test unparseable timestamps."""
        with pytest.raises(ValueError):
            to_datetime("yesterday")


class TestGeometry:
    """Tests for envelope and resolution helpers."""

    def test_envelope(self):
        """Test envelope operations."""
        a, b = Envelope(0, 0, 10, 10), Envelope(5, 5, 20, 20)

        assert a.intersection(b) == Envelope(5, 5, 10, 10)
        assert a.union(b) == Envelope(0, 0, 20, 20)
        assert a.intersection(Envelope(30, 30, 40, 40)) is None
        assert Envelope(10, 0, 10, 10).is_empty
        assert Envelope.parse(a.format()) == a
        assert Envelope.from_geotransform((0, 2, 0, 10, 0, -2), 5, 5) == a

    def test_levels(self):
        """Test resolution pyramid formatting and comparison."""
        levels = parse_levels("1.0,1.0 2.0,2.0")

        assert levels == ((1.0, 1.0), (2.0, 2.0))
        assert format_levels(levels) == "1.0,1.0 2.0,2.0"
        assert levels_equal(levels, [(1.0 + 1e-9, 1.0), (2.0, 2.0)])
        assert not levels_equal(levels, [(1.0, 1.0)])


class TestCRSRegistry:
    """Tests for CRS parsing and comparison."""

    def test_equals_ignore_metadata(self):
        """Test comparing CRS definitions written differently."""
        registry = CRSRegistry()
        wkt = registry.to_wkt("EPSG:4326")

        assert registry.equals_ignore_metadata("EPSG:4326", wkt)
        assert registry.equals_ignore_metadata("EPSG:4326", "OGC:CRS84")
        assert not registry.equals_ignore_metadata("EPSG:4326", "EPSG:3857")
        assert not registry.equals_ignore_metadata("EPSG:4326", None)
        assert registry.equals_ignore_metadata(None, None)

    def test_unparseable(self):
        """Test that unparseable definitions compare as text."""
        registry = CRSRegistry()

        assert registry.parse("not a crs") is None
        assert registry.equals_ignore_metadata("not a crs", " not a crs ")
        registry.clear()
        assert len(registry) == 0
