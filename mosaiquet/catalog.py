#!/usr/bin/env python3
"""Transactional granule catalog backed by Parquet

Each coverage lives in <root>/<coverage>.parquet, sorted by location then
slice index, with its schema stored in the Parquet schema metadata so the
catalog directory is self describing.

Committed state is an immutable Arrow table per coverage. Readers always see
the last committed table and are never blocked by writers. Writers work in a
Transaction, which buffers pending inserts and deletes as Arrow record
batches, holds a write lock on every coverage it touches, and on commit swaps
all touched coverages at once.

Usage:
    catalog = GranuleCatalog("/data/mosaic")
    with catalog.transaction() as tx:
        catalog.create_type(schema, tx)
        catalog.add_granules("mosaic", records, tx)
    records = catalog.get_granules("mosaic", BBox(Envelope(0, 0, 10, 10)))
"""
from __future__ import annotations

import collections
import dataclasses
import enum
import itertools
import logging
import os
import pathlib
import threading
import typing

import pyarrow
import pyarrow.compute
import pyarrow.parquet

from .crs import CRSRegistry
from .errors import (
    CatalogDisposedError,
    CatalogError,
    DuplicateCoverageError,
    EmptyCatalogError,
    TransactionError,
    UnknownCoverageError,
)
from .filters import Filter, check_attributes
from .geometry import Envelope
from .schema import (
    ENVELOPE_COLUMNS,
    INDEX_ATTRIBUTE,
    GranuleRecord,
    GranuleSchema,
    records_to_batch,
    table_to_records,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
METADATA_VERSION = b"mosaiquet:version"
METADATA_COVERAGE = b"mosaiquet:coverage"
METADATA_SCHEMA = b"mosaiquet:schema"

# Number of granule rows per Arrow record batch and Parquet row group
DEFAULT_BATCH_SIZE = 1000

SortKeys = typing.Sequence[tuple[str, str]]


class TransactionState(enum.StrEnum):
    """Switch for the lifecycle of a transaction"""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclasses.dataclass
class _CoverageState:
    """Committed state of one coverage"""

    schema: GranuleSchema
    table: pyarrow.Table
    bounds: Envelope | None


@dataclasses.dataclass
class _Insert:
    batches: list[pyarrow.RecordBatch]

    def apply(self, table: pyarrow.Table) -> pyarrow.Table:
        if not self.batches:
            return table
        added = pyarrow.Table.from_batches(self.batches, schema=table.schema)
        return pyarrow.concat_tables([table, added])


@dataclasses.dataclass
class _Delete:
    filter: Filter | None

    def apply(self, table: pyarrow.Table) -> pyarrow.Table:
        if self.filter is None:
            return table.slice(0, 0)
        return table.filter(pyarrow.compute.invert(self.filter.mask(table)))


def _empty_table(schema: GranuleSchema) -> pyarrow.Table:
    return schema.to_arrow().empty_table()


def _table_bounds(table: pyarrow.Table) -> Envelope | None:
    if table.num_rows == 0:
        return None
    minx, miny, maxx, maxy = (table.column(name) for name in ENVELOPE_COLUMNS)
    return Envelope(
        pyarrow.compute.min(minx).as_py(),
        pyarrow.compute.min(miny).as_py(),
        pyarrow.compute.max(maxx).as_py(),
        pyarrow.compute.max(maxy).as_py(),
    )


def _sort_table(table: pyarrow.Table, schema: GranuleSchema, sort_by: SortKeys | None = None) -> pyarrow.Table:
    keys = list(sort_by or [])
    # Location then slice index always break ties, so ordering is deterministic
    for name in (schema.location_attribute, INDEX_ATTRIBUTE):
        if name not in [k for k, _ in keys]:
            keys.append((name, "ascending"))
    if table.num_rows < 2:
        return table
    return table.take(pyarrow.compute.sort_indices(table, sort_keys=keys))


def _page(table: pyarrow.Table, offset: int, limit: int) -> pyarrow.Table:
    if offset < 0:
        raise ValueError(f"Offset must not be negative: {offset}")
    if offset >= table.num_rows:
        return table.slice(0, 0)
    if limit < 0:
        return table.slice(offset)
    return table.slice(offset, limit)


class Transaction:
    """Unit of work against a GranuleCatalog

    Nothing done in a transaction is visible to other readers until commit();
    rollback() discards it. Used as a context manager it commits on success
    and rolls back on exception.
    """

    def __init__(self, catalog: "GranuleCatalog", handle: str):
        self.catalog = catalog
        self.handle = handle
        self.state = TransactionState.ACTIVE
        self._created: dict[str, GranuleSchema] = {}
        self._dropped: set[str] = set()
        self._operations: dict[str, list[_Insert | _Delete]] = collections.defaultdict(list)
        self._held: list[str] = []

    @property
    def active(self) -> bool:
        return self.state == TransactionState.ACTIVE

    @property
    def touched(self) -> set[str]:
        return set(self._created) | set(self._operations) | self._dropped

    def _check_active(self):
        if not self.active:
            raise TransactionError(f"Transaction {self.handle} is already {self.state}")

    def _lock(self, coverage_name: str):
        """Hold the coverage write lock until the transaction completes"""
        if coverage_name not in self._held:
            self.catalog._write_lock(coverage_name).acquire()
            self._held.append(coverage_name)

    def _release(self):
        while self._held:
            self.catalog._write_lock(self._held.pop()).release()

    def commit(self):
        self._check_active()
        try:
            self.catalog._commit(self)
            self.state = TransactionState.COMMITTED
        except BaseException:
            self._discard()
            raise
        finally:
            self._release()

    def rollback(self):
        if not self.active:
            return
        self._discard()
        self._release()
        logger.info("Rolled back transaction %s", self.handle)

    def _discard(self):
        self._created.clear()
        self._dropped.clear()
        self._operations.clear()
        self.state = TransactionState.ROLLED_BACK

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None and self.active:
            self.commit()
        else:
            self.rollback()


class GranuleCatalog:
    """Granule rows, schemas and bounds for every coverage of a mosaic"""

    def __init__(
        self,
        root: str | os.PathLike | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        crs_registry: CRSRegistry | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"Batch size must be positive: {batch_size}")
        self.root = pathlib.Path(root) if root is not None else None
        self.batch_size = batch_size
        self.crs_registry = crs_registry or CRSRegistry()
        self._coverages: dict[str, _CoverageState] = {}
        self._lock = threading.RLock()
        self._write_locks: dict[str, threading.Lock] = {}
        self._handles = itertools.count(1)
        self._disposed = False
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self):
        for path in sorted(self.root.glob("*.parquet")):
            metadata = pyarrow.parquet.read_schema(path).metadata or {}
            if METADATA_SCHEMA not in metadata:
                continue
            schema = GranuleSchema.from_json(metadata[METADATA_SCHEMA])
            table = pyarrow.parquet.read_table(path).replace_schema_metadata(None)
            table = table.cast(schema.to_arrow())
            self._coverages[schema.name] = _CoverageState(schema, table, _table_bounds(table))
            logger.info("Loaded coverage %s with %d granules from %s", schema.name, table.num_rows, path)

    def _check(self):
        if self._disposed:
            raise CatalogDisposedError("Granule catalog has been disposed")

    def _write_lock(self, coverage_name: str) -> threading.Lock:
        with self._lock:
            if coverage_name not in self._write_locks:
                self._write_locks[coverage_name] = threading.Lock()
            return self._write_locks[coverage_name]

    def _path(self, coverage_name: str) -> pathlib.Path:
        return self.root / f"{coverage_name}.parquet"

    @property
    def disposed(self) -> bool:
        return self._disposed

    def transaction(self, handle: str | None = None) -> Transaction:
        self._check()
        return Transaction(self, handle or f"Transaction{next(self._handles)}")

    def _resolve(self, coverage_name: str, transaction: Transaction | None) -> tuple[GranuleSchema, pyarrow.Table]:
        """Schema and rows of a coverage as seen by the caller"""
        self._check()
        with self._lock:
            committed = self._coverages.get(coverage_name)
        if transaction is None or not transaction.active:
            if committed is None:
                raise UnknownCoverageError(coverage_name)
            return committed.schema, committed.table

        if coverage_name in transaction._created:
            schema = transaction._created[coverage_name]
            table = _empty_table(schema)
        elif committed is not None and coverage_name not in transaction._dropped:
            schema, table = committed.schema, committed.table
        else:
            raise UnknownCoverageError(coverage_name)
        for operation in transaction._operations.get(coverage_name, []):
            table = operation.apply(table)
        return schema, table

    def _require_transaction(self, transaction: Transaction | None) -> Transaction:
        if transaction is None:
            raise TransactionError("A transaction is required to modify the catalog")
        if transaction.catalog is not self:
            raise TransactionError(f"Transaction {transaction.handle} belongs to another catalog")
        transaction._check_active()
        return transaction

    def get_type_names(self, transaction: Transaction | None = None) -> list[str]:
        self._check()
        with self._lock:
            names = set(self._coverages)
        if transaction is not None and transaction.active:
            names = (names - transaction._dropped) | set(transaction._created)
        return sorted(names)

    def get_type(self, coverage_name: str, transaction: Transaction | None = None) -> GranuleSchema:
        schema, _ = self._resolve(coverage_name, transaction)
        return schema

    def create_type(self, schema: GranuleSchema, transaction: Transaction | None = None):
        """Register the schema of a new coverage

        Without a transaction the registration is committed immediately.
        """
        if transaction is None:
            with self.transaction(f"CreateType-{schema.name}") as tx:
                self.create_type(schema, tx)
            return
        tx = self._require_transaction(transaction)
        # Lock before checking, a concurrent create may commit while we wait
        tx._lock(schema.name)
        if schema.name in self.get_type_names(tx):
            raise DuplicateCoverageError(schema.name)
        tx._dropped.discard(schema.name)
        tx._operations.pop(schema.name, None)
        tx._created[schema.name] = schema
        logger.info("Created coverage %s in transaction %s", schema.name, tx.handle)

    def remove_coverage(self, coverage_name: str, transaction: Transaction | None = None):
        """Drop a coverage, its schema and all of its granules"""
        if transaction is None:
            with self.transaction(f"RemoveCoverage-{coverage_name}") as tx:
                self.remove_coverage(coverage_name, tx)
            return
        tx = self._require_transaction(transaction)
        tx._lock(coverage_name)
        if coverage_name not in self.get_type_names(tx):
            raise UnknownCoverageError(coverage_name)
        tx._created.pop(coverage_name, None)
        tx._operations.pop(coverage_name, None)
        with self._lock:
            if coverage_name in self._coverages:
                tx._dropped.add(coverage_name)

    def add_granules(self, coverage_name: str, records: typing.Iterable[GranuleRecord], transaction: Transaction):
        """Buffer granule records for insertion when the transaction commits"""
        tx = self._require_transaction(transaction)
        tx._lock(coverage_name)
        schema = self.get_type(coverage_name, tx)
        insert = _Insert([])
        batch: list[GranuleRecord] = []
        try:
            for record in records:
                batch.append(record)
                if len(batch) >= self.batch_size:
                    insert.batches.append(records_to_batch(batch, schema))
                    batch = []
            if batch:
                insert.batches.append(records_to_batch(batch, schema))
        except (TypeError, ValueError, AttributeError, pyarrow.ArrowException) as e:
            raise CatalogError(f"Cannot store granules of coverage {coverage_name}: {e}") from e
        if insert.batches:
            tx._operations[coverage_name].append(insert)

    def remove_granules(self, coverage_name: str, filter: Filter | None, transaction: Transaction) -> int:
        """Buffer deletion of matching granules, returns how many will be removed"""
        tx = self._require_transaction(transaction)
        tx._lock(coverage_name)
        schema, table = self._resolve(coverage_name, tx)
        check_attributes(filter, schema.to_arrow().names, f"coverage {coverage_name}")
        count = table.num_rows if filter is None else pyarrow.compute.sum(filter.mask(table)).as_py() or 0
        if count:
            tx._operations[coverage_name].append(_Delete(filter))
        return count

    def _select(
        self,
        coverage_name: str,
        filter: Filter | None,
        transaction: Transaction | None,
    ) -> tuple[GranuleSchema, pyarrow.Table]:
        schema, table = self._resolve(coverage_name, transaction)
        check_attributes(filter, schema.to_arrow().names, f"coverage {coverage_name}")
        if filter is not None and table.num_rows:
            table = table.filter(filter.mask(table))
        return schema, table

    def get_granule_table(
        self,
        coverage_name: str,
        filter: Filter | None = None,
        offset: int = 0,
        limit: int = -1,
        sort_by: SortKeys | None = None,
        transaction: Transaction | None = None,
    ) -> pyarrow.Table:
        """Matching granule rows as an Arrow table, sorted then paged"""
        schema, table = self._select(coverage_name, filter, transaction)
        return _page(_sort_table(table, schema, sort_by), offset, limit)

    def get_granules(
        self,
        coverage_name: str,
        filter: Filter | None = None,
        offset: int = 0,
        limit: int = -1,
        sort_by: SortKeys | None = None,
        transaction: Transaction | None = None,
    ) -> list[GranuleRecord]:
        """Matching granule records, ordered by sort_by then location and slice index

        Args:
            coverage_name: Coverage to query
            filter: Optional filter, None selects every granule
            offset: Number of leading matches to skip
            limit: Maximum number of records, negative for all
            sort_by: Optional (attribute, "ascending"|"descending") keys
            transaction: Read the uncommitted view of this transaction

        Returns:
            List of GranuleRecord
        """
        schema = self.get_type(coverage_name, transaction)
        table = self.get_granule_table(coverage_name, filter, offset, limit, sort_by, transaction)
        return table_to_records(table, schema)

    def count(self, coverage_name: str, filter: Filter | None = None, transaction: Transaction | None = None) -> int:
        _, table = self._select(coverage_name, filter, transaction)
        return table.num_rows

    def distinct(
        self,
        coverage_name: str,
        attributes: list[str],
        filter: Filter | None = None,
        offset: int = 0,
        limit: int = -1,
    ) -> list[tuple]:
        """Sorted distinct non-null value tuples of the given attributes, paged"""
        _, table = self._select(coverage_name, filter, None)
        groups = self._distinct_table(table, attributes)
        return [tuple(row[a] for a in attributes) for row in _page(groups, offset, limit).to_pylist()]

    def count_distinct(self, coverage_name: str, attributes: list[str], filter: Filter | None = None) -> int:
        _, table = self._select(coverage_name, filter, None)
        return self._distinct_table(table, attributes).num_rows

    @staticmethod
    def _distinct_table(table: pyarrow.Table, attributes: list[str]) -> pyarrow.Table:
        table = table.select(attributes)
        for name in attributes:
            table = table.filter(pyarrow.compute.is_valid(table.column(name)))
        groups = table.group_by(attributes).aggregate([])
        if groups.num_rows < 2:
            return groups
        return groups.take(pyarrow.compute.sort_indices(groups, sort_keys=[(a, "ascending") for a in attributes]))

    def aggregate(self, coverage_name: str, attribute: str, function: str):
        """Minimum or maximum of an attribute over committed granules, None if empty"""
        _, table = self._select(coverage_name, None, None)
        if attribute not in table.schema.names:
            raise CatalogError(f"Coverage {coverage_name} has no attribute {attribute}")
        column = table.column(attribute)
        if function == "min":
            return pyarrow.compute.min(column).as_py()
        if function == "max":
            return pyarrow.compute.max(column).as_py()
        raise ValueError(f"Unsupported aggregate: {function}")

    def compute_bounds(self, coverage_name: str) -> Envelope:
        """Union of all committed granule footprints of a coverage"""
        self._check()
        with self._lock:
            state = self._coverages.get(coverage_name)
        if state is None:
            raise UnknownCoverageError(coverage_name)
        if state.bounds is None:
            raise EmptyCatalogError(f"Cannot create a mosaic out of an empty index: {coverage_name}")
        return state.bounds

    def _commit(self, transaction: Transaction):
        self._check()
        updated: dict[str, _CoverageState] = {}
        for name in sorted(transaction.touched - transaction._dropped):
            schema, table = self._resolve(name, transaction)
            table = _sort_table(table, schema).combine_chunks()
            updated[name] = _CoverageState(schema, table, _table_bounds(table))

        if self.root is not None:
            self._persist(transaction, updated)

        with self._lock:
            for name in transaction._dropped:
                self._coverages.pop(name, None)
            self._coverages.update(updated)
        logger.info(
            "Committed transaction %s: %s",
            transaction.handle,
            ", ".join(f"{name}={state.table.num_rows}" for name, state in updated.items()) or "no changes",
        )

    def _persist(self, transaction: Transaction, updated: dict[str, _CoverageState]):
        """Write every updated coverage to a temporary file, then swap them all in"""
        written: list[tuple[pathlib.Path, pathlib.Path]] = []
        try:
            for name, state in updated.items():
                path = self._path(name)
                tmp_path = path.with_name(f".{path.name}.{transaction.handle}.tmp")
                self._write_table(tmp_path, state)
                written.append((tmp_path, path))
        except (OSError, pyarrow.ArrowException) as e:
            for name in updated:
                self._path(name).with_name(f".{name}.parquet.{transaction.handle}.tmp").unlink(missing_ok=True)
            raise TransactionError(f"Failed to commit transaction {transaction.handle}: {e}") from e

        # Committed files are moved aside first so a failed swap can put them back
        backups: list[tuple[pathlib.Path, pathlib.Path]] = []
        swapped: list[pathlib.Path] = []
        try:
            for tmp_path, path in written:
                if path.exists():
                    backups.append((self._backup(path, transaction), path))
                os.replace(tmp_path, path)
                swapped.append(path)
            for name in sorted(transaction._dropped):
                path = self._path(name)
                if path.exists():
                    backups.append((self._backup(path, transaction), path))
        except OSError as e:
            for path in swapped:
                path.unlink(missing_ok=True)
            for backup, path in reversed(backups):
                os.replace(backup, path)
            for tmp_path, _ in written:
                tmp_path.unlink(missing_ok=True)
            raise TransactionError(f"Failed to commit transaction {transaction.handle}: {e}") from e

        for backup, _ in backups:
            backup.unlink(missing_ok=True)

    @staticmethod
    def _backup(path: pathlib.Path, transaction: Transaction) -> pathlib.Path:
        backup = path.with_name(f".{path.name}.{transaction.handle}.bak")
        os.replace(path, backup)
        return backup

    def _write_table(self, path: pathlib.Path, state: _CoverageState):
        names = state.table.schema.names
        metadata = {
            METADATA_VERSION: VERSION.encode(),
            METADATA_COVERAGE: state.schema.name.encode(),
            METADATA_SCHEMA: state.schema.to_json().encode(),
        }
        pyarrow.parquet.write_table(
            state.table.replace_schema_metadata(metadata),
            path,
            compression="zstd",
            row_group_size=self.batch_size,
            write_statistics=True,
            sorting_columns=[
                pyarrow.parquet.SortingColumn(names.index(state.schema.location_attribute)),
                pyarrow.parquet.SortingColumn(names.index(INDEX_ATTRIBUTE)),
            ],
        )

    def dispose(self):
        """Release all resources; any further use raises CatalogDisposedError"""
        if self._disposed:
            return
        with self._lock:
            self._coverages.clear()
            self._disposed = True
        self.crs_registry.clear()
        logger.info("Disposed granule catalog %s", self.root or "(memory)")

    def __enter__(self) -> "GranuleCatalog":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
