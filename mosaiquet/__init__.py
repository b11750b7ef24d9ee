"""mosaiquet: image mosaic granule catalogs backed by Parquet"""
from importlib.metadata import PackageNotFoundError, version

from .configuration import CoverageConfiguration, IndexerConfiguration
from .dimensions import DimensionDescriptor, Range
from .geometry import Envelope
from .mosaic import UNSPECIFIED, MosaicReader, ReadParameters, build_mosaic

try:
    __version__ = version("mosaiquet")
except PackageNotFoundError:
    __version__ = "0.0.0"
