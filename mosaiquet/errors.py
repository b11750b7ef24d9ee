#!/usr/bin/env python3
"""Exception types raised by mosaiquet

Errors fall in three groups:
- catalog errors, fatal to an indexing run (rollback) and raised to callers
- query errors, raised to the caller of a read or domain query
- reader errors, raised for a single raster file and reported as a failed file
"""


class MosaicError(Exception):
    """Base exception for mosaic operations."""

    pass


class ConfigurationError(MosaicError):
    """Invalid run or coverage configuration."""

    pass


class CatalogError(MosaicError):
    """Granule catalog failure."""

    pass


class QueryError(MosaicError):
    """Invalid or unsatisfiable query."""

    pass


class UnknownCoverageError(CatalogError, QueryError):
    """Coverage name is not registered in the catalog or mosaic."""

    def __init__(self, coverage_name: str):
        super().__init__(f"Unknown coverage: {coverage_name}")
        self.coverage_name = coverage_name


class DuplicateCoverageError(CatalogError):
    """Coverage name is already registered."""

    def __init__(self, coverage_name: str):
        super().__init__(f"Coverage already exists: {coverage_name}")
        self.coverage_name = coverage_name


class EmptyCatalogError(CatalogError):
    """Coverage has no granules, so no envelope can be computed."""

    pass


class CatalogDisposedError(CatalogError):
    """Catalog was used after dispose()."""

    pass


class TransactionError(CatalogError):
    """Transaction could not be committed or was used after completion."""

    pass


class InvalidFilterAttributeError(QueryError):
    """Filter references attributes outside of what the target accepts."""

    def __init__(self, message: str, attributes: set[str] | None = None):
        super().__init__(message)
        self.attributes = attributes or set()


class UnsupportedFilterError(QueryError):
    """Filter construct is outside the supported predicate set."""

    pass


class TooManyGranulesError(QueryError):
    """Read would touch more granules than allowed."""

    def __init__(self, count: int, limit: int):
        super().__init__(f"Request touches {count} granules, more than the {limit} allowed")
        self.count = count
        self.limit = limit


class AmbiguousCoverageError(QueryError):
    """No coverage name given while the mosaic holds more than one."""

    pass


class ReaderDisposedError(MosaicError):
    """Mosaic reader was used after dispose()."""

    pass


class RasterReaderError(MosaicError):
    """A raster file could not be opened or read."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class IndexingError(MosaicError):
    """Indexing run failed and was rolled back."""

    pass
