#!/usr/bin/env python3
"""Tests for the mosaic reader and query resolution."""

import datetime

import numpy
import pytest

from conftest import write_fake_raster
from mosaiquet.configuration import IndexerConfiguration
from mosaiquet.dimensions import Range
from mosaiquet.errors import (
    AmbiguousCoverageError,
    InvalidFilterAttributeError,
    ReaderDisposedError,
    TooManyGranulesError,
    UnknownCoverageError,
)
from mosaiquet.filters import Compare, Equals
from mosaiquet.geometry import Envelope
from mosaiquet.mosaic import MosaicReader, ReadParameters, build_mosaic


@pytest.fixture
def grid_mosaic(mosaic_dir, fake_formats):
    """Mosaic of four 10x10 granules in a 2x2 grid, valued 1 to 4."""
    write_fake_raster(mosaic_dir / "a.fake", envelope=(0, 10, 10, 20), value=1)
    write_fake_raster(mosaic_dir / "b.fake", envelope=(10, 10, 20, 20), value=2)
    write_fake_raster(mosaic_dir / "c.fake", envelope=(0, 0, 10, 10), value=3)
    write_fake_raster(mosaic_dir / "d.fake", envelope=(10, 0, 20, 10), value=4)
    mosaic, result = build_mosaic(IndexerConfiguration.load(mosaic_dir), fake_formats)
    result.raise_for_status()
    yield mosaic
    mosaic.dispose()


@pytest.fixture
def time_mosaic(mosaic_dir, fake_formats):
    """Mosaic of three co-located granules on consecutive days."""
    for day, value in ((1, 10), (2, 20), (3, 30)):
        write_fake_raster(mosaic_dir / f"sst_2024010{day}.fake", value=value)
    configuration = IndexerConfiguration.load(
        mosaic_dir,
        time_attribute="time",
        additional_domain_attributes="sensor",
        property_collectors="Timestamp[regex=[0-9]{8}](time),String[regex=^[a-z]+](sensor)",
    )
    mosaic, result = build_mosaic(configuration, fake_formats)
    result.raise_for_status()
    yield mosaic
    mosaic.dispose()


class TestRead:
    """Tests for reading and assembling granules."""

    def test_read_everything(self, grid_mosaic):
        """Test that a default read assembles every granule at native resolution."""
        coverage = grid_mosaic.read()

        assert coverage.name == "mosaic"
        assert coverage.locations == ["a.fake", "b.fake", "c.fake", "d.fake"]
        assert coverage.data.shape == (1, 20, 20)
        assert coverage.data[0, 0, 0] == 1
        assert coverage.data[0, 0, 19] == 2
        assert coverage.data[0, 19, 0] == 3
        assert coverage.data[0, 19, 19] == 4
        assert coverage.geotransform == (0.0, 1.0, 0.0, 20.0, 0.0, -1.0)

    def test_read_subset(self, grid_mosaic):
        """Test that a request envelope selects and places granules."""
        coverage = grid_mosaic.read(parameters=ReadParameters(envelope=Envelope(5, 5, 15, 15)))

        assert coverage.data.shape == (1, 10, 10)
        assert [g.window for g in coverage.granules][0].xsize == 5
        assert numpy.unique(coverage.data).tolist() == [1, 2, 3, 4]

    def test_touching_granules_are_excluded(self, grid_mosaic):
        """Test that granules sharing only an edge with the request are not used."""
        granules = grid_mosaic.resolve(parameters=ReadParameters(envelope=Envelope(0, 10, 10, 20)))

        assert [g.location for g in granules] == ["a.fake"]

    def test_coarser_resolution(self, grid_mosaic):
        """Test that the output grid follows the requested resolution."""
        coverage = grid_mosaic.read(parameters=ReadParameters(resolution=(2.0, 2.0)))

        assert coverage.data.shape == (1, 10, 10)
        assert coverage.granules[0].window.xsize == 5

    def test_outside_request(self, grid_mosaic):
        """Test that a request outside the coverage returns nothing."""
        assert grid_mosaic.read(parameters=ReadParameters(envelope=Envelope(100, 100, 110, 110))) is None

    def test_resolve_without_assembly(self, grid_mosaic, fake_format):
        """Test that resolve never opens granule files."""
        opened = len(fake_format.opened)
        coverage = grid_mosaic.read(parameters=ReadParameters(assemble=False))

        assert coverage.data is None
        assert len(coverage.granules) == 4
        assert len(fake_format.opened) == opened

    def test_too_many_granules(self, grid_mosaic, fake_format):
        """Test that the granule ceiling is enforced before any pixel is read."""
        opened = len(fake_format.opened)

        with pytest.raises(TooManyGranulesError) as excinfo:
            grid_mosaic.read(parameters=ReadParameters(max_allowed_tiles=3))

        assert excinfo.value.count == 4
        assert excinfo.value.limit == 3
        assert len(fake_format.opened) == opened

    def test_zero_granule_limit(self, grid_mosaic):
        """Test that a request ceiling of zero is enforced, not ignored."""
        with pytest.raises(TooManyGranulesError) as excinfo:
            grid_mosaic.resolve(parameters=ReadParameters(max_allowed_tiles=0))

        assert excinfo.value.limit == 0

    def test_reader_wide_granule_limit(self, mosaic_dir, fake_formats, grid_mosaic):
        """Test the ceiling configured on the reader."""
        grid_mosaic.dispose()
        with MosaicReader.open(mosaic_dir, fake_formats, max_allowed_tiles=2) as mosaic:
            with pytest.raises(TooManyGranulesError):
                mosaic.resolve()
            granules = mosaic.resolve(parameters=ReadParameters(envelope=Envelope(1, 11, 9, 19)))
            assert len(granules) == 1

    def test_first_granule_wins(self, mosaic_dir, fake_formats):
        """Test that overlapping granules paste in location order."""
        write_fake_raster(mosaic_dir / "a.fake", envelope=(0, 0, 10, 10), value=1)
        write_fake_raster(mosaic_dir / "b.fake", envelope=(5, 0, 15, 10), value=2)
        mosaic, _ = build_mosaic(IndexerConfiguration.load(mosaic_dir), fake_formats)

        data = mosaic.read().data
        assert data[0, 0, 7] == 1
        assert data[0, 0, 12] == 2

        data = mosaic.read(parameters=ReadParameters(nodata=1)).data
        assert data[0, 0, 7] == 2
        assert data[0, 0, 2] == 1

    def test_extra_filter(self, grid_mosaic):
        """Test that an extra filter narrows the granules."""
        granules = grid_mosaic.resolve(parameters=ReadParameters(filter=Equals("location", "b.fake")))

        assert [g.location for g in granules] == ["b.fake"]

    def test_extra_filter_on_unknown_attribute(self, grid_mosaic):
        """Test that filters on attributes outside the schema are rejected."""
        with pytest.raises(InvalidFilterAttributeError):
            grid_mosaic.resolve(parameters=ReadParameters(filter=Equals("cloud", 3)))


class TestDimensions:
    """Tests for dimension filters and domains."""

    def test_time_instant(self, time_mosaic):
        """Test that a time value selects the matching granule."""
        coverage = time_mosaic.read(parameters=ReadParameters(time=datetime.datetime(2024, 1, 2)))

        assert coverage.locations == ["sst_20240102.fake"]
        assert coverage.data[0, 0, 0] == 20

    def test_time_range(self, time_mosaic):
        """Test that a time range selects every granule inside it."""
        granules = time_mosaic.resolve(parameters=ReadParameters(time=Range("2024-01-02", "2024-01-05")))

        assert [g.location for g in granules] == ["sst_20240102.fake", "sst_20240103.fake"]

    def test_custom_dimension(self, time_mosaic):
        """Test filtering on a custom dimension."""
        granules = time_mosaic.resolve(parameters=ReadParameters(dimensions={"sensor": "sst"}))
        assert len(granules) == 3

        assert time_mosaic.read(parameters=ReadParameters(dimensions={"SENSOR": "modis"})) is None

    def test_unknown_dimension(self, time_mosaic):
        """Test that values for missing dimensions are rejected."""
        with pytest.raises(InvalidFilterAttributeError):
            time_mosaic.resolve(parameters=ReadParameters(elevation=10.0))

    def test_descriptors(self, time_mosaic):
        """Test the dimension descriptors of a coverage."""
        descriptors = time_mosaic.get_dimension_descriptors()

        assert [d.name for d in descriptors] == ["SENSOR", "TIME"]
        assert descriptors[1].units == "second"
        assert descriptors[1].start_attribute == "time"

    def test_domain(self, time_mosaic):
        """Test sorted distinct domain values and paging."""
        days = [datetime.datetime(2024, 1, d) for d in (1, 2, 3)]

        assert time_mosaic.get_domain("TIME") == days
        assert time_mosaic.get_domain("time", offset=1, limit=1) == days[1:2]
        assert time_mosaic.get_domain("TIME", filter=Compare("time", ">", "2024-01-01")) == days[1:]

    def test_domain_filter_isolation(self, time_mosaic):
        """Test that a domain filter may only use the dimension's own attributes."""
        with pytest.raises(InvalidFilterAttributeError):
            time_mosaic.get_domain("TIME", filter=Equals("location", "sst_20240101.fake"))

    def test_domain_negative_offset(self, time_mosaic):
        """Test that a negative offset is rejected."""
        with pytest.raises(ValueError):
            time_mosaic.get_domain("TIME", offset=-1)

    def test_metadata(self, time_mosaic):
        """Test the domain metadata names and values."""
        names = time_mosaic.get_metadata_names()

        assert "HAS_TIME_DOMAIN" in names
        assert "TIME_DOMAIN_MAXIMUM" in names
        assert time_mosaic.get_metadata_value("HAS_TIME_DOMAIN") == "true"
        assert time_mosaic.get_metadata_value("HAS_ELEVATION_DOMAIN") == "false"
        assert time_mosaic.get_metadata_value("TIME_DOMAIN_MINIMUM") == "2024-01-01T00:00:00Z"
        assert time_mosaic.get_metadata_value("TIME_DOMAIN") == (
            "2024-01-01T00:00:00Z,2024-01-02T00:00:00Z,2024-01-03T00:00:00Z"
        )
        assert time_mosaic.get_metadata_value("SENSOR_DOMAIN") == "sst"
        assert time_mosaic.get_metadata_value("UNKNOWN") is None


class TestReaderLifecycle:
    """Tests for coverage naming, reopening and disposal."""

    @pytest.fixture
    def two_coverages(self, mosaic_dir, fake_formats):
        write_fake_raster(mosaic_dir / "ocean.fake", coverages=["sst", "chl"], granules=[{}])
        mosaic, result = build_mosaic(IndexerConfiguration.load(mosaic_dir), fake_formats)
        yield mosaic
        mosaic.dispose()

    def test_single_coverage_is_implicit(self, grid_mosaic):
        """Test that the only coverage is used when no name is given."""
        assert grid_mosaic.resolve_name() == "mosaic"
        assert grid_mosaic.coverage_count == 1

    def test_ambiguous_coverage(self, two_coverages):
        """Test that omitting the name with several coverages fails."""
        with pytest.raises(AmbiguousCoverageError):
            two_coverages.read()
        assert two_coverages.read("sst") is not None

    def test_unknown_coverage(self, grid_mosaic):
        """Test that reading a missing coverage fails."""
        with pytest.raises(UnknownCoverageError):
            grid_mosaic.read("missing")

    def test_reopen(self, grid_mosaic, mosaic_dir, fake_formats):
        """Test that a reopened mosaic sees the same coverage."""
        envelope = grid_mosaic.get_original_envelope()
        grid_mosaic.dispose()

        with MosaicReader.open(mosaic_dir, fake_formats) as mosaic:
            assert mosaic.coverage_names == ["mosaic"]
            assert mosaic.get_original_envelope() == envelope
            assert mosaic.get_crs() == "EPSG:4326"
            assert mosaic.get_resolution_levels() == ((1.0, 1.0),)
            assert len(mosaic.read().granules) == 4

    def test_remove_coverage(self, two_coverages, mosaic_dir):
        """Test that removing a coverage drops its catalog and properties files."""
        two_coverages.remove_coverage("chl")

        assert two_coverages.coverage_names == ["sst"]
        assert not (mosaic_dir / "chl.parquet").exists()
        assert not (mosaic_dir / "chl.properties").exists()
        assert two_coverages.read() is not None

    def test_disposed_reader(self, grid_mosaic):
        """Test that a disposed reader rejects reads."""
        grid_mosaic.dispose()

        assert grid_mosaic.disposed
        with pytest.raises(ReaderDisposedError):
            grid_mosaic.read()
