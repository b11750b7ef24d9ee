#!/usr/bin/env python3
"""Tests for indexer and coverage configuration."""

import dataclasses

import pytest

from conftest import palette_model
from mosaiquet.collectors import CollectorType, RegexPropertiesCollector, parse_collectors
from mosaiquet.configuration import (
    CoverageConfiguration,
    CoverageConfigurationBuilder,
    IndexerConfiguration,
    discover_coverage_configurations,
    read_properties,
    write_coverage_properties,
    write_properties,
    write_root_summary,
)
from mosaiquet.colormodels import SampleModelInfo
from mosaiquet.dimensions import ELEVATION, TIME
from mosaiquet.errors import ConfigurationError
from mosaiquet.geometry import Envelope


class TestProperties:
    """Tests for properties files."""

    def test_read_properties(self, temp_dir):
        """Test comments, separators, continuations and escapes."""
        path = temp_dir / "test.properties"
        path.write_text(
            "# comment\n"
            "! another comment\n"
            "Name=sst\n"
            "Levels : 1.0,1.0 \\\n"
            "  2.0,2.0\n"
            "Regex=[0-9]{8}=x\n"
            "Path=C\\:\\\\data\n"
        )

        properties = read_properties(path)

        assert properties == {
            "Name": "sst",
            "Levels": "1.0,1.0 2.0,2.0",
            "Regex": "[0-9]{8}=x",
            "Path": "C:\\data",
        }

    def test_write_properties(self, temp_dir):
        """Test that written properties read back and skip None values."""
        path = temp_dir / "out.properties"

        write_properties(path, {"Name": "sst", "TimeAttribute": None, "Caching": "false"}, comment="test")

        assert read_properties(path) == {"Name": "sst", "Caching": "false"}
        assert [p.name for p in temp_dir.iterdir()] == ["out.properties"]


class TestIndexerConfiguration:
    """Tests for IndexerConfiguration."""

    def test_defaults(self, temp_dir):
        """Test defaults without an indexer.properties file."""
        configuration = IndexerConfiguration.load(temp_dir)

        assert configuration.name == temp_dir.name
        assert configuration.wildcard == "*.*"
        assert configuration.recursive
        assert not configuration.absolute_path
        assert configuration.location_attribute == "location"
        assert configuration.directories == (str(temp_dir),)

    def test_load_with_overrides(self, temp_dir):
        """Test that keyword overrides win over indexer.properties and None is ignored."""
        (temp_dir / "indexer.properties").write_text(
            "Name=dem\n"
            "Wildcard=*.tif\n"
            "Recursive=false\n"
            "TimeAttribute=time\n"
            "Envelope2D=0,0 10,10\n"
            "IndexingDirectories=a, b\n"
        )

        configuration = IndexerConfiguration.load(temp_dir, wildcard="*.nc", time_attribute=None)

        assert configuration.name == "dem"
        assert configuration.wildcard == "*.nc"
        assert not configuration.recursive
        assert configuration.time_attribute == "time"
        assert configuration.envelope == Envelope(0, 0, 10, 10)
        assert configuration.directories == ("a", "b")

    def test_invalid(self, temp_dir):
        """Test that an empty location attribute is rejected."""
        with pytest.raises(ConfigurationError):
            IndexerConfiguration(str(temp_dir), location_attribute="")


class TestCoverageConfiguration:
    """Tests for CoverageConfiguration and its builder."""

    @pytest.fixture
    def configuration(self):
        return (
            CoverageConfigurationBuilder("sst")
            .set(
                levels=[(1, 1), (2, 2)],
                crs="EPSG:4326",
                color_model=palette_model([(0, 0, 0), (255, 255, 255)]),
                sample_model=SampleModelInfo("Byte", 1, 256, 256),
                time_attribute="start;end",
                elevation_attribute="depth",
                additional_domain_attributes="wavelength",
                envelope=Envelope(0, 0, 10, 10),
                suggested_format="GTiff",
                type_name="sst",
            )
            .build()
        )

    def test_builder(self, configuration):
        """Test that the builder normalizes levels."""
        assert configuration.levels == ((1.0, 1.0), (2.0, 2.0))
        assert configuration.levels_num == 2
        assert configuration.effective_type_name == "sst"
        assert len(configuration.palette) == 2

    def test_builder_requires_levels(self):
        """Test that a configuration needs a name and levels."""
        with pytest.raises(ConfigurationError):
            CoverageConfigurationBuilder("sst").build()
        with pytest.raises(ConfigurationError):
            CoverageConfigurationBuilder().set(levels=[(1, 1)]).build()
        with pytest.raises(ConfigurationError):
            CoverageConfigurationBuilder("sst").set(colour="red")

    def test_dimension_descriptors(self, configuration):
        """Test the descriptors derived from the attribute settings."""
        descriptors = configuration.dimension_descriptors()

        assert sorted(descriptors) == [ELEVATION, TIME, "WAVELENGTH"]
        assert descriptors[TIME].is_range
        assert descriptors[ELEVATION].unit_symbol == "m"

    def test_properties_round_trip(self, configuration, temp_dir):
        """Test that a persisted configuration is discovered unchanged."""
        write_coverage_properties(temp_dir, configuration)
        write_root_summary(temp_dir, temp_dir.name, ["sst"])
        (temp_dir / "indexer.properties").write_text("Name=sst\nLevels=1,1\n")

        discovered = discover_coverage_configurations(temp_dir)

        assert discovered == [configuration]
        properties = read_properties(temp_dir / "sst.properties")
        assert properties["LevelsNum"] == "2"
        assert properties["Levels"] == "1.0,1.0 2.0,2.0"
        assert properties["TimeAttribute"] == "start;end"

    def test_levels_num_mismatch(self, configuration):
        """Test that inconsistent level counts are rejected."""
        properties = configuration.to_properties()
        properties["LevelsNum"] = "3"

        with pytest.raises(ConfigurationError):
            CoverageConfiguration.from_properties(properties)

    def test_replace(self, configuration):
        """Test that updates produce new configurations."""
        updated = dataclasses.replace(configuration, heterogeneous=True)

        assert updated.heterogeneous
        assert not configuration.heterogeneous


class TestCollectors:
    """Tests for regex properties collectors."""

    def test_collect(self):
        """Test filling a range from successive matches."""
        collector = RegexPropertiesCollector(("start", "end"), "[0-9]{8}", CollectorType.TIMESTAMP)

        values = collector.collect("/data/sst_20240101_20240131.tif")

        assert values["start"].day == 1
        assert values["end"].day == 31

    def test_no_match(self):
        """Test that nothing is collected when the regex does not match."""
        collector = RegexPropertiesCollector(("depth",), "[0-9]+m", CollectorType.STRING)
        assert collector.collect("sst.tif") == {}

    def test_parse(self, temp_dir):
        """Test parsing inline and file based declarations."""
        (temp_dir / "depth.properties").write_text("regex=[0-9]+\n")

        collectors = parse_collectors(
            "TimestampFileNameExtractorSPI[regex=[0-9]{8}](time), Double[depth](depth)", temp_dir
        )

        assert collectors[0].type == CollectorType.TIMESTAMP
        assert collectors[0].regex == "[0-9]{8}"
        assert collectors[1].property_names == ("depth",)
        assert collectors[1].regex == "[0-9]+"
        assert collectors[1].collect("sst_120.tif") == {"depth": 120.0}

    @pytest.mark.parametrize(
        "definition",
        ["Timestamp(time)", "Unknown[regex=x](a)", "Double[missing](depth)", "String[regex=(](a)"],
    )
    def test_invalid(self, definition, temp_dir):
        """Test malformed collector declarations."""
        with pytest.raises(ConfigurationError):
            parse_collectors(definition, temp_dir)
