#!/usr/bin/env python3
"""Harvesting: adding files to an existing mosaic

Every harvested file is indexed in its own catalog transaction, so one bad
file never undoes the others. Per-file problems are reported in the returned
HarvestedFile list; only catalog-level failures raise.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import typing

from .configuration import IndexerConfiguration
from .errors import AmbiguousCoverageError, CatalogDisposedError, TransactionError
from .events import EventDispatcher, FileStatus
from .walker import MosaicWalker, RunStatus

if typing.TYPE_CHECKING:
    from .mosaic import MosaicReader

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class HarvestedFile:
    """Outcome of harvesting one file"""

    path: str
    status: FileStatus
    message: str
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.status == FileStatus.INGESTED


def _target_name(mosaic: "MosaicReader", coverage_name: str | None) -> str | None:
    from .mosaic import UNSPECIFIED

    if coverage_name is not None and coverage_name != UNSPECIFIED:
        return coverage_name
    names = mosaic.coverage_names
    if len(names) > 1:
        raise AmbiguousCoverageError(
            f"No target coverage given and the mosaic holds {len(names)} coverages: {', '.join(names)}"
        )
    return names[0] if names else None


def _configuration(mosaic: "MosaicReader", target: str | None, source_root: str) -> IndexerConfiguration:
    """Run configuration matching the target coverage's existing settings"""
    existing = mosaic.get_configuration(target) if target else None
    root = os.fspath(mosaic.root) if mosaic.root is not None else source_root
    overrides = {"index_name": target, "indexing_directories": ()}
    if mosaic.root is None:
        overrides["absolute_path"] = True
    if existing is not None:
        overrides.update(
            absolute_path=existing.absolute_path or mosaic.root is None,
            location_attribute=existing.location_attribute,
            time_attribute=existing.time_attribute,
            elevation_attribute=existing.elevation_attribute,
            additional_domain_attributes=existing.additional_domain_attributes,
            caching=existing.caching,
        )
    return IndexerConfiguration.load(root, **overrides)


def harvest(
    mosaic: "MosaicReader",
    source: str | os.PathLike | typing.Iterable[str | os.PathLike],
    coverage_name: str | None = None,
    dispatcher: EventDispatcher | None = None,
) -> list[HarvestedFile]:
    """Index files into a mosaic, returning one HarvestedFile per file

    Args:
        mosaic: Open mosaic reader
        source: A raster file, a directory scanned like an indexing run, or a list of files
        coverage_name: Target coverage for plain rasters, UNSPECIFIED or None for the only one
        dispatcher: Optional event dispatcher receiving the walker's events

    Returns:
        List of HarvestedFile, ingested, skipped with a reason, or failed with an error

    Raises:
        ReaderDisposedError: the mosaic was disposed
        AmbiguousCoverageError: no target given while the mosaic has several coverages
        CatalogDisposedError, TransactionError: the catalog cannot be written
    """
    mosaic.ensure_open()
    target = _target_name(mosaic, coverage_name)

    if isinstance(source, (str, os.PathLike)):
        source_path = pathlib.Path(source)
        source_root = source_path if source_path.is_dir() else source_path.parent
        configuration = _configuration(mosaic, target, os.fspath(source_root))
        if source_path.is_dir():
            scanner = MosaicWalker(
                mosaic, dataclasses.replace(configuration, indexing_directories=(os.fspath(source_path),))
            )
            files = scanner.scan()
        else:
            files = [os.fspath(source_path)]
    else:
        files = [os.fspath(path) for path in source]
        source_root = pathlib.Path(files[0]).parent if files else pathlib.Path.cwd()
        configuration = _configuration(mosaic, target, os.fspath(source_root))

    harvested = []
    for path in files:
        walker = MosaicWalker(mosaic, configuration, dispatcher)
        result = walker.run([path])
        if result.status == RunStatus.FAILED:
            if isinstance(result.error, (CatalogDisposedError, TransactionError)):
                raise result.error
            harvested.append(HarvestedFile(path, FileStatus.FAILED, str(result.error), result.error))
            continue
        outcome = result.files[0]
        harvested.append(HarvestedFile(outcome.path, outcome.status, outcome.message, outcome.error))
    logger.info(
        "Harvested %d of %d files into %s",
        sum(1 for h in harvested if h.success),
        len(harvested),
        target or configuration.name,
    )
    return harvested
