#!/usr/bin/env python3
"""Pytest configuration and shared fixtures."""

import json
import tempfile
from pathlib import Path

import numpy
import pytest

from mosaiquet.colormodels import (
    ComponentColorModelInfo,
    IndexColorModelInfo,
    SampleModelInfo,
    Transparency,
    color_model_from_json,
    color_model_to_json,
)
from mosaiquet.geometry import Envelope
from mosaiquet.readers import FormatRegistry, SourceGranule

GRAY = ComponentColorModelInfo(1, False, "GRAY", Transparency.OPAQUE, "Byte")


def palette_model(entries):
    """Index color model from (r, g, b) entries."""
    return IndexColorModelInfo.from_entries(entries)


def write_fake_raster(
    path,
    envelope=(0.0, 0.0, 10.0, 10.0),
    levels=((1.0, 1.0),),
    crs="EPSG:4326",
    color_model=GRAY,
    value=1,
    granules=None,
    coverages=None,
    bands=1,
    corrupt=None,
):
    """Write a JSON raster description readable by FakeFormat.

    granules is a list of attribute dicts, one per slice, making the file
    structured; coverages names the coverages of a structured file. corrupt
    maps reader method names to the coverage they fail on, "*" for any.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "envelope": list(envelope),
                "levels": [list(level) for level in levels],
                "crs": crs,
                "color_model": color_model_to_json(color_model),
                "value": value,
                "granules": granules,
                "coverages": coverages,
                "bands": bands,
                "corrupt": corrupt or {},
            }
        )
    )
    return path


class FakeReader:
    """Raster reader over files written by write_fake_raster."""

    format_name = "FAKE"

    def __init__(self, path):
        self.path = str(path)
        self.data = json.loads(Path(path).read_text())
        self.closed = False

    @property
    def is_structured(self):
        return bool(self.data.get("coverages"))

    def coverage_names(self):
        return list(self.data.get("coverages") or [Path(self.path).stem])

    def _check(self, method, coverage_name):
        target = self.data.get("corrupt", {}).get(method)
        if target in ("*", coverage_name):
            raise OSError(f"corrupt {method} of {coverage_name}")

    def envelope(self, coverage_name):
        self._check("envelope", coverage_name)
        return Envelope.from_bounds(self.data["envelope"])

    def crs(self, coverage_name):
        return self.data["crs"]

    def resolution_levels(self, coverage_name):
        return [tuple(level) for level in self.data["levels"]]

    def num_overviews(self, coverage_name):
        return len(self.data["levels"]) - 1

    def color_model(self, coverage_name):
        return color_model_from_json(self.data["color_model"])

    def sample_model(self, coverage_name):
        return SampleModelInfo("Byte", self.data["bands"])

    def granules(self, coverage_name):
        self._check("granules", coverage_name)
        granules = self.data.get("granules")
        if granules is None:
            return None
        return [SourceGranule(i, attributes) for i, attributes in enumerate(granules)]

    def read_region(self, coverage_name, envelope, resolution, index=0):
        rows = max(1, round(envelope.height / resolution[1]))
        cols = max(1, round(envelope.width / resolution[0]))
        return numpy.full((self.data["bands"], rows, cols), self.data["value"] + index, dtype="uint8")

    def close(self):
        self.closed = True


class FakeFormat:
    """Raster format accepting *.fake files."""

    name = "FAKE"

    def __init__(self):
        self.opened = []

    def accepts(self, path):
        return str(path).endswith(".fake")

    def open(self, path):
        reader = FakeReader(path)
        self.opened.append(reader)
        return reader


@pytest.fixture
def temp_dir():
    """Create temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mosaic_dir(temp_dir):
    """Return an empty mosaic directory named "mosaic"."""
    path = temp_dir / "mosaic"
    path.mkdir()
    return path


@pytest.fixture
def fake_format():
    """Return a fake raster format."""
    return FakeFormat()


@pytest.fixture
def fake_formats(fake_format):
    """Return a format registry holding only the fake format."""
    return FormatRegistry([fake_format])
