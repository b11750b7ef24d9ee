#!/usr/bin/env python3
"""Tests for the directory walker and indexing runs."""

import datetime

import pytest

from conftest import GRAY, palette_model, write_fake_raster
from mosaiquet.configuration import IndexerConfiguration, read_properties
from mosaiquet.errors import CatalogError, IndexingError
from mosaiquet.events import (
    DispatchMode,
    EventDispatcher,
    FileProcessingEvent,
    FileStatus,
    ProcessingEvent,
)
from mosaiquet.mosaic import MosaicReader
from mosaiquet.walker import CancellationToken, RunStatus, is_candidate


def run_index(mosaic_dir, formats, dispatcher=None, token=None, **overrides):
    mosaic = MosaicReader.open(mosaic_dir, formats)
    result = mosaic.index(IndexerConfiguration.load(mosaic_dir, **overrides), dispatcher, token)
    return mosaic, result


class TestCandidates:
    """Tests for file selection."""

    def test_excluded_files(self):
        """Test that sidecar, catalog and hidden files are never candidates."""
        assert is_candidate("a.tif")
        assert not is_candidate(".a.tif")
        assert not is_candidate("mosaic.parquet")
        assert not is_candidate("mosaic.properties")
        assert not is_candidate("a.tfw")
        assert not is_candidate("a.tif.aux.xml")
        assert not is_candidate("error.txt")

    def test_wildcards(self):
        """Test case-insensitive wildcards, comma separated."""
        assert is_candidate("A.TIF", "*.tif")
        assert not is_candidate("a.nc", "*.tif")
        assert is_candidate("a.nc", "*.tif,*.nc")
        assert not is_candidate("README", "*.*")


class TestIndexing:
    """Tests for indexing runs."""

    def test_index_directory(self, mosaic_dir, fake_formats, fake_format):
        """Test indexing plain rasters into one coverage named after the directory."""
        write_fake_raster(mosaic_dir / "a.fake", envelope=(0, 0, 10, 10))
        write_fake_raster(mosaic_dir / "b.fake", envelope=(10, 0, 20, 10))
        write_fake_raster(mosaic_dir / "sub" / "c.fake", envelope=(20, 0, 30, 10))

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.status == RunStatus.SUCCESS
        assert result.ingested == 3
        assert result.coverages == ["mosaic"]
        assert mosaic.coverage_names == ["mosaic"]
        locations = [g.location for g in mosaic.get_granules()]
        assert locations == ["a.fake", "b.fake", "sub/c.fake"]
        assert mosaic.get_original_envelope().bounds == (0, 0, 30, 10)
        assert all(reader.closed for reader in fake_format.opened)

        properties = read_properties(mosaic_dir / "mosaic.properties")
        assert properties["Name"] == "mosaic"
        assert properties["LevelsNum"] == "1"
        assert properties["Heterogeneous"] == "false"
        assert properties["SuggestedFormat"] == "FAKE"
        assert (mosaic_dir / "mosaic.parquet").exists()

    def test_renamed_coverage_gets_root_summary(self, mosaic_dir, fake_formats):
        """Test that a single coverage not named after the directory is listed in a root summary."""
        write_fake_raster(mosaic_dir / "a.fake")

        mosaic, _ = run_index(mosaic_dir, fake_formats, index_name="dem")

        assert mosaic.coverage_names == ["dem"]
        assert read_properties(mosaic_dir / "mosaic.properties")["Coverages"] == "dem"
        assert read_properties(mosaic_dir / "dem.properties")["Name"] == "dem"

    def test_not_recursive(self, mosaic_dir, fake_formats):
        """Test that subdirectories are ignored when not recursive."""
        write_fake_raster(mosaic_dir / "a.fake")
        write_fake_raster(mosaic_dir / "sub" / "c.fake")

        mosaic, result = run_index(mosaic_dir, fake_formats, recursive=False)

        assert [g.location for g in mosaic.get_granules()] == ["a.fake"]

    def test_absolute_paths(self, mosaic_dir, fake_formats):
        """Test storing absolute locations."""
        path = write_fake_raster(mosaic_dir / "a.fake")

        mosaic, result = run_index(mosaic_dir, fake_formats, absolute_path=True)

        assert mosaic.get_granules()[0].location == str(path.resolve())

    def test_unsupported_files_are_skipped(self, mosaic_dir, fake_formats):
        """Test that files no format accepts are reported and skipped."""
        write_fake_raster(mosaic_dir / "a.fake")
        (mosaic_dir / "notes.txt").write_text("not a raster")
        write_fake_raster(mosaic_dir / ".hidden.fake")

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.ingested == 1
        assert result.count(FileStatus.SKIPPED) == 1
        assert result.files[1].path.endswith("notes.txt")

    def test_broken_file_fails_alone(self, mosaic_dir, fake_formats):
        """Test that a file the reader cannot open does not stop the run."""
        (mosaic_dir / "a.fake").write_text("{broken")
        write_fake_raster(mosaic_dir / "b.fake")

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.status == RunStatus.SUCCESS
        assert result.count(FileStatus.FAILED) == 1
        assert result.files[0].error is not None
        assert mosaic.catalog.count("mosaic") == 1

    def test_nothing_to_index(self, mosaic_dir, fake_formats):
        """Test a run over an empty directory."""
        events = []
        dispatcher = EventDispatcher()
        dispatcher.add_listener(events.append)

        mosaic, result = run_index(mosaic_dir, fake_formats, dispatcher)

        assert result.status == RunStatus.SUCCESS
        assert mosaic.coverage_names == []
        assert events[-1].message == "Nothing to process"

    def test_events(self, mosaic_dir, fake_formats):
        """Test that one file event per file and a final Done are fired."""
        write_fake_raster(mosaic_dir / "a.fake")
        write_fake_raster(mosaic_dir / "b.fake")
        events = []
        dispatcher = EventDispatcher()
        dispatcher.add_listener(events.append)

        run_index(mosaic_dir, fake_formats, dispatcher)

        file_events = [e for e in events if isinstance(e, FileProcessingEvent)]
        assert [e.ingested for e in file_events] == [True, True]
        assert file_events[-1].percentage == pytest.approx(99.0)
        assert events[-1].message == "Done"
        assert events[-1].percentage == 100

    def test_queued_events(self, mosaic_dir, fake_formats):
        """Test that queued dispatch leaves events on the channel."""
        write_fake_raster(mosaic_dir / "a.fake")
        dispatcher = EventDispatcher(DispatchMode.QUEUED)
        received = []
        dispatcher.add_listener(received.append)

        run_index(mosaic_dir, fake_formats, dispatcher)

        events = dispatcher.drain()
        assert received == []
        assert all(isinstance(e, ProcessingEvent) for e in events)
        assert any(isinstance(e, FileProcessingEvent) for e in events)
        assert dispatcher.drain() == []


class TestAtomicity:
    """Tests for run-level all or nothing behavior."""

    def test_cancel_rolls_back(self, mosaic_dir, fake_formats):
        """Test that a cancelled run leaves no granules, files or coverages."""
        write_fake_raster(mosaic_dir / "a.fake")
        write_fake_raster(mosaic_dir / "b.fake")
        token = CancellationToken()
        dispatcher = EventDispatcher()
        dispatcher.add_listener(lambda e: token.cancel() if isinstance(e, FileProcessingEvent) else None)

        mosaic, result = run_index(mosaic_dir, fake_formats, dispatcher, token)

        assert result.status == RunStatus.CANCELLED
        assert len(result.files) == 1
        assert mosaic.coverage_names == []
        assert mosaic.catalog.get_type_names() == []
        assert not list(mosaic_dir.glob("*.parquet"))
        assert not list(mosaic_dir.glob("*.properties"))

    def test_fatal_error_rolls_back(self, mosaic_dir, fake_formats, monkeypatch):
        """Test that a catalog failure mid-run undoes the whole run."""
        write_fake_raster(mosaic_dir / "a.fake")
        write_fake_raster(mosaic_dir / "b.fake")
        mosaic = MosaicReader.open(mosaic_dir, fake_formats)
        original = mosaic.catalog.add_granules
        calls = []

        def add_granules(name, records, transaction):
            calls.append(name)
            if len(calls) > 1:
                raise CatalogError("catalog unavailable")
            original(name, records, transaction)

        monkeypatch.setattr(mosaic.catalog, "add_granules", add_granules)
        result = mosaic.index(IndexerConfiguration.load(mosaic_dir))

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, CatalogError)
        assert mosaic.catalog.get_type_names() == []
        assert not list(mosaic_dir.glob("*.parquet"))
        with pytest.raises(IndexingError):
            result.raise_for_status()

    def test_file_failing_on_second_coverage_adds_nothing(self, mosaic_dir, fake_formats):
        """Test that a multi-coverage file failing part way leaves no rows of its earlier coverages."""
        write_fake_raster(mosaic_dir / "ocean.fake", coverages=["a", "b"], granules=[{}], corrupt={"granules": "b"})
        write_fake_raster(mosaic_dir / "other.fake", coverages=["a"], granules=[{}])

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.status == RunStatus.SUCCESS
        assert [f.status for f in result.files] == [FileStatus.FAILED, FileStatus.INGESTED]
        assert mosaic.catalog.get_type_names() == ["a"]
        assert [g.location for g in mosaic.get_granules("a")] == ["other.fake"]
        assert not (mosaic_dir / "b.parquet").exists()

    def test_failed_first_file_creates_no_coverage(self, mosaic_dir, fake_formats):
        """Test that a coverage is not created by a file that fails after opening."""
        write_fake_raster(mosaic_dir / "a.fake", corrupt={"envelope": "*"})

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.status == RunStatus.SUCCESS
        assert result.files[0].status == FileStatus.FAILED
        assert result.coverages == []
        assert mosaic.catalog.get_type_names() == []
        assert not list(mosaic_dir.glob("*.parquet"))
        assert not list(mosaic_dir.glob("*.properties"))

    def test_failed_run_keeps_previous_catalog(self, mosaic_dir, fake_formats, monkeypatch):
        """Test that a failed second run leaves the first run's granules intact."""
        write_fake_raster(mosaic_dir / "a.fake")
        mosaic, _ = run_index(mosaic_dir, fake_formats)
        write_fake_raster(mosaic_dir / "b.fake")

        def add_granules(name, records, transaction):
            raise CatalogError("catalog unavailable")

        monkeypatch.setattr(mosaic.catalog, "add_granules", add_granules)
        result = mosaic.index(IndexerConfiguration.load(mosaic_dir))

        assert result.status == RunStatus.FAILED
        assert mosaic.catalog.count("mosaic") == 1


class TestCompatibility:
    """Tests for CRS, color model and resolution checks."""

    def test_crs_mismatch_is_skipped(self, mosaic_dir, fake_formats):
        """Test that a file in another CRS is skipped."""
        write_fake_raster(mosaic_dir / "a.fake", crs="EPSG:4326")
        write_fake_raster(mosaic_dir / "b.fake", crs="EPSG:3857")

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.ingested == 1
        assert result.files[1].status == FileStatus.SKIPPED
        assert "CRS" in result.files[1].message
        assert mosaic.catalog.count("mosaic") == 1

    def test_equivalent_crs_is_accepted(self, mosaic_dir, fake_formats):
        """Test that CRS definitions differing only in form are compatible."""
        write_fake_raster(mosaic_dir / "a.fake", crs="EPSG:4326")
        write_fake_raster(mosaic_dir / "b.fake", crs="epsg:4326")

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.ingested == 2

    def test_incompatible_color_model_is_skipped(self, mosaic_dir, fake_formats):
        """Test that a palette file cannot join a gray coverage."""
        write_fake_raster(mosaic_dir / "a.fake", color_model=GRAY)
        write_fake_raster(mosaic_dir / "b.fake", color_model=palette_model([(0, 0, 0), (255, 0, 0)]))

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.ingested == 1
        assert "color model" in result.files[1].message

    def test_different_palette_expands_to_rgb(self, mosaic_dir, fake_formats):
        """Test that differing palettes are accepted and mark the coverage for RGB expansion."""
        write_fake_raster(mosaic_dir / "a.fake", color_model=palette_model([(0, 0, 0), (255, 0, 0)]))
        write_fake_raster(mosaic_dir / "b.fake", color_model=palette_model([(0, 0, 0), (0, 255, 0)]))

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert result.ingested == 2
        assert mosaic.get_configuration("mosaic").expand_to_rgb
        assert read_properties(mosaic_dir / "mosaic.properties")["ExpandToRGB"] == "true"

    def test_more_levels_make_coverage_heterogeneous(self, mosaic_dir, fake_formats):
        """Test that a deeper pyramid is adopted and the coverage marked heterogeneous."""
        write_fake_raster(mosaic_dir / "a.fake", levels=[(1, 1), (2, 2)])
        write_fake_raster(mosaic_dir / "b.fake", levels=[(1, 1), (2, 2), (4, 4)])
        write_fake_raster(mosaic_dir / "c.fake", levels=[(1, 1)])

        mosaic, result = run_index(mosaic_dir, fake_formats)

        configuration = mosaic.get_configuration("mosaic")
        assert result.ingested == 3
        assert configuration.heterogeneous
        assert configuration.levels == ((1, 1), (2, 2), (4, 4))
        assert read_properties(mosaic_dir / "mosaic.properties")["LevelsNum"] == "3"

    def test_different_resolution_makes_coverage_heterogeneous(self, mosaic_dir, fake_formats):
        """Test that equal level counts with different resolutions mark the coverage heterogeneous."""
        write_fake_raster(mosaic_dir / "a.fake", levels=[(1, 1)])
        write_fake_raster(mosaic_dir / "b.fake", levels=[(0.5, 0.5)])

        mosaic, result = run_index(mosaic_dir, fake_formats)

        configuration = mosaic.get_configuration("mosaic")
        assert configuration.heterogeneous
        assert configuration.levels == ((1, 1),)

    def test_heterogeneous_never_reverts(self, mosaic_dir, fake_formats):
        """Test that later homogeneous files keep the heterogeneous flag."""
        write_fake_raster(mosaic_dir / "a.fake", levels=[(1, 1)])
        write_fake_raster(mosaic_dir / "b.fake", levels=[(2, 2)])
        mosaic, _ = run_index(mosaic_dir, fake_formats)
        assert mosaic.get_configuration("mosaic").heterogeneous

        extra = write_fake_raster(mosaic_dir / "incoming" / "c.fake", levels=[(1, 1)])
        mosaic.harvest(extra)

        assert mosaic.get_configuration("mosaic").heterogeneous
        assert mosaic.catalog.count("mosaic") == 3

    def test_rejected_file_does_not_flag_coverage(self, mosaic_dir, fake_formats):
        """Test that a file skipped for its CRS leaves the coverage homogeneous."""
        write_fake_raster(mosaic_dir / "a.fake", levels=[(1, 1)])
        write_fake_raster(mosaic_dir / "b.fake", levels=[(2, 2)], crs="EPSG:3857")

        mosaic, result = run_index(mosaic_dir, fake_formats)

        assert not mosaic.get_configuration("mosaic").heterogeneous


class TestStructuredFiles:
    """Tests for multi-coverage files, attributes and schemas."""

    def test_structured_file(self, mosaic_dir, fake_formats):
        """Test that each coverage of a structured file gets its own catalog and slices."""
        granules = [{"time": "2024-01-01T00:00:00Z"}, {"time": "2024-01-02T00:00:00Z"}]
        write_fake_raster(mosaic_dir / "ocean.fake", coverages=["sst", "chl"], granules=granules)

        mosaic, result = run_index(mosaic_dir, fake_formats, time_attribute="time")

        assert mosaic.coverage_names == ["chl", "sst"]
        records = mosaic.get_granules("sst")
        assert [r.index for r in records] == [0, 1]
        assert records[1].get("time") == datetime.datetime(2024, 1, 2)

        summary = read_properties(mosaic_dir / "mosaic.properties")
        assert summary["Coverages"] == "chl,sst"
        assert (mosaic_dir / "sst.properties").exists()

    def test_reader_time_maps_to_time_attribute(self, mosaic_dir, fake_formats):
        """Test that the reader's time values fill a differently named time attribute."""
        write_fake_raster(mosaic_dir / "ocean.fake", coverages=["sst"], granules=[{"time": "2024-03-01"}])

        mosaic, _ = run_index(mosaic_dir, fake_formats, time_attribute="ingestion")

        assert mosaic.get_granules("sst")[0].get("ingestion") == datetime.datetime(2024, 3, 1)

    def test_collectors(self, mosaic_dir, fake_formats):
        """Test that regex collectors fill attributes from file names."""
        write_fake_raster(mosaic_dir / "sst_20240105.fake")

        mosaic, _ = run_index(
            mosaic_dir,
            fake_formats,
            time_attribute="time",
            property_collectors="Timestamp[regex=[0-9]{8}](time)",
        )

        assert mosaic.get_granules()[0].get("time") == datetime.datetime(2024, 1, 5)

    def test_range_collectors(self, mosaic_dir, fake_formats):
        """Test that two regex matches fill a start;end time range."""
        write_fake_raster(mosaic_dir / "sst_20240101_20240131.fake")

        mosaic, _ = run_index(
            mosaic_dir,
            fake_formats,
            time_attribute="start;end",
            property_collectors="TimestampFileNameExtractorSPI[regex=[0-9]{8}](start;end)",
        )

        record = mosaic.get_granules()[0]
        assert record.get("start") == datetime.datetime(2024, 1, 1)
        assert record.get("end") == datetime.datetime(2024, 1, 31)

    def test_schema_definition(self, mosaic_dir, fake_formats):
        """Test that an explicit schema definition shapes the catalog."""
        write_fake_raster(mosaic_dir / "a.fake")

        mosaic, _ = run_index(mosaic_dir, fake_formats, schema="*the_geom:Polygon,location:String,cloud:Double")

        schema = mosaic.catalog.get_type("mosaic")
        assert schema.attribute_names == ["the_geom", "location", "cloud", "imageindex"]

    def test_invalid_schema_falls_back(self, mosaic_dir, fake_formats):
        """Test that an invalid schema definition yields the default schema."""
        write_fake_raster(mosaic_dir / "a.fake")

        mosaic, result = run_index(mosaic_dir, fake_formats, schema="location:NoSuchType")

        assert result.ingested == 1
        assert mosaic.catalog.get_type("mosaic").attribute_names == ["the_geom", "location", "imageindex"]
