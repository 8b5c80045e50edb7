"""Load transformed FHIR resources into fhirbase resource tables.

Two interchangeable strategies:

- ``insert``: parameterized multi-row INSERT per resource type, in batches of
  ``insert_batch_size`` rows; rows without an id get ``gen_random_uuid()``.
- ``copy``: CSV rows streamed through PostgreSQL COPY on the raw asyncpg
  connection, in batches sized from available memory (capped).

Every input container is consumed by its own task with its own connection;
records within a container are processed in order. A bad record is logged and
skipped, a failed batch is logged and the stream continues. Only an empty
input set or an unreachable database aborts the run.
"""

import asyncio
import csv
import io
import json
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import asyncpg
from sqlalchemy import Text, func, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from fhir_marshal.config import settings
from fhir_marshal.database import create_engine, verify_connection
from fhir_marshal.errors import (
    DetectionError,
    EndOfStream,
    LoaderError,
    RecordParseError,
    TransformError,
)
from fhir_marshal.models import LOAD_TXID, RESOURCE_COLUMNS, STATUS_CREATED, resource_table
from fhir_marshal.services.aggregate import ContainerAggregate
from fhir_marshal.services.containers import ResourceContainer
from fhir_marshal.services.transformer import TransformEngine, default_engine
from fhir_marshal.utils.fhir_helpers import get_resource_id, get_resource_type

logger = logging.getLogger(__name__)

FlushCallback = Callable[[str, float], None]

# Errors a batch write may raise; the batch is dropped and loading continues
STORAGE_ERRORS = (SQLAlchemyError, asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

# Rows per MiB of available memory when sizing COPY batches
COPY_ROWS_PER_MB = 500


@dataclass(frozen=True)
class PreparedRow:
    """A transformed resource ready to be written."""

    resource_type: str
    resource_id: str
    resource: dict[str, Any]


@dataclass
class LoadStats:
    """Counters for a load run (or a single container)."""

    containers: int = 0
    failed_containers: int = 0
    records: int = 0
    loaded: Counter = field(default_factory=Counter)
    durations: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    malformed: int = 0
    skipped: int = 0
    failed_rows: int = 0
    skipped_inputs: int = 0

    @property
    def total_loaded(self) -> int:
        return sum(self.loaded.values())

    def merge(self, other: "LoadStats") -> None:
        self.containers += other.containers
        self.failed_containers += other.failed_containers
        self.records += other.records
        self.loaded.update(other.loaded)
        for resource_type, seconds in other.durations.items():
            self.durations[resource_type] += seconds
        self.malformed += other.malformed
        self.skipped += other.skipped
        self.failed_rows += other.failed_rows
        self.skipped_inputs += other.skipped_inputs


def adaptive_copy_batch_size(cap: int) -> int:
    """Size COPY batches from available physical memory, never above ``cap``."""
    try:
        available = os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return cap
    available_mb = available // (1024 * 1024)
    return max(1, min(cap, available_mb * COPY_ROWS_PER_MB))


def _group_by_type(rows: Iterable[PreparedRow]) -> dict[str, list[PreparedRow]]:
    groups: dict[str, list[PreparedRow]] = {}
    for row in rows:
        groups.setdefault(row.resource_type, []).append(row)
    return groups


# =============================================================================
# Strategies
# =============================================================================


class LoadStrategy(ABC):
    """Shared record loop; subclasses only decide how a batch is written."""

    mode: str

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        version: str | None = None,
        transformer: TransformEngine | None = None,
        batch_size: int | None = None,
        on_flush: FlushCallback | None = None,
    ):
        self.engine = engine
        self.version = version or settings.fhir_version
        self.transformer = transformer or default_engine
        self.batch_size = batch_size or self.default_batch_size()
        self.on_flush = on_flush

    @abstractmethod
    def default_batch_size(self) -> int:
        """Batch size when none is given."""

    @abstractmethod
    async def write_rows(
        self, conn: AsyncConnection, resource_type: str, rows: list[PreparedRow]
    ) -> None:
        """Write rows of one resource type."""

    def prepare(self, resource: dict[str, Any]) -> PreparedRow:
        """Validate routing fields and transform one resource.

        Raises:
            LoaderError: If the resource has no type or a non-string id.
            TransformError: If transformation fails.
        """
        resource_type = get_resource_type(resource)
        if not resource_type:
            raise LoaderError("resource has no resourceType; cannot route to a table")

        resource_id = get_resource_id(resource)
        if not resource_id and resource.get("id") not in (None, ""):
            raise LoaderError(f"resource id {resource['id']!r} is not a string")

        transformed = self.transformer.transform(resource, self.version)
        return PreparedRow(resource_type, resource_id, transformed)

    def read_batch(
        self,
        container: ResourceContainer,
        stats: LoadStats,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[list[PreparedRow], bool]:
        """Read and prepare records until a batch fills or the stream ends.

        Runs in a worker thread so sibling containers keep their event loop
        time while this one parses and transforms.

        Returns:
            The prepared rows and whether reading should stop.
        """
        batch: list[PreparedRow] = []
        while len(batch) < self.batch_size:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Load of %s cancelled after %d records", container.source, stats.records)
                return batch, True
            try:
                resource = container.next_record()
            except EndOfStream:
                return batch, True
            except RecordParseError as e:
                stats.malformed += 1
                logger.warning("Skipping malformed record %s:%d: %s", e.source, e.index, e.reason)
                continue

            stats.records += 1
            try:
                batch.append(self.prepare(resource))
            except (LoaderError, TransformError) as e:
                stats.skipped += 1
                logger.warning(
                    "Skipping record %s:%d (%s): %s",
                    container.source,
                    stats.records,
                    type(e).__name__,
                    e,
                )
        return batch, False

    async def load_container(
        self,
        container: ResourceContainer,
        cancel_event: asyncio.Event | None = None,
    ) -> LoadStats:
        """Consume one container sequentially on a dedicated connection.

        Args:
            container: Open container; closed when exhausted.
            cancel_event: Stops reading at the next record once set.

        Returns:
            Stats for this container.
        """
        stats = LoadStats(containers=1)

        async with self.engine.connect() as conn:
            try:
                done = False
                while not done:
                    batch, done = await asyncio.to_thread(self.read_batch, container, stats, cancel_event)
                    if batch:
                        await self.flush(conn, batch, stats)
            finally:
                container.close()

        logger.info(
            "Finished %s: %d loaded, %d malformed, %d skipped, %d failed rows",
            container.source,
            stats.total_loaded,
            stats.malformed,
            stats.skipped,
            stats.failed_rows,
        )
        return stats

    async def flush(self, conn: AsyncConnection, batch: list[PreparedRow], stats: LoadStats) -> None:
        """Write a batch, one statement per resource type, reporting each."""
        for resource_type, rows in _group_by_type(batch).items():
            started = time.perf_counter()
            try:
                async with conn.begin():
                    await self.write_rows(conn, resource_type, rows)
            except STORAGE_ERRORS as e:
                stats.failed_rows += len(rows)
                logger.error(
                    "Error executing %s batch of %d %s rows: %s",
                    self.mode,
                    len(rows),
                    resource_type,
                    e,
                )
                continue

            duration = time.perf_counter() - started
            stats.loaded[resource_type] += len(rows)
            stats.durations[resource_type] += duration
            logger.debug("Flushed %d %s rows in %.3fs", len(rows), resource_type, duration)
            if self.on_flush is not None:
                self.on_flush(resource_type, duration)


class InsertLoader(LoadStrategy):
    """Batched parameterized multi-row INSERT."""

    mode = "insert"

    def default_batch_size(self) -> int:
        return settings.insert_batch_size

    async def write_rows(
        self, conn: AsyncConnection, resource_type: str, rows: list[PreparedRow]
    ) -> None:
        table = resource_table(resource_type)
        values = [
            {
                "id": row.resource_id or func.gen_random_uuid().cast(Text),
                "txid": LOAD_TXID,
                "resource_type": resource_type,
                "status": STATUS_CREATED,
                "resource": row.resource,
            }
            for row in rows
        ]
        await conn.execute(insert(table).values(values))


class CopyLoader(LoadStrategy):
    """Bulk COPY ... FROM STDIN in CSV format."""

    mode = "copy"

    def default_batch_size(self) -> int:
        return adaptive_copy_batch_size(settings.copy_batch_cap)

    @staticmethod
    def to_csv(resource_type: str, rows: list[PreparedRow]) -> bytes:
        """Serialize rows as CSV records: id, txid, resource_type, status, resource."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        for row in rows:
            writer.writerow(
                [
                    row.resource_id or str(uuid.uuid4()),
                    LOAD_TXID,
                    resource_type,
                    STATUS_CREATED,
                    json.dumps(row.resource, separators=(",", ":")),
                ]
            )
        return buffer.getvalue().encode("utf-8")

    async def write_rows(
        self, conn: AsyncConnection, resource_type: str, rows: list[PreparedRow]
    ) -> None:
        table = resource_table(resource_type)
        raw = await conn.get_raw_connection()
        await raw.driver_connection.copy_to_table(
            table.name,
            source=io.BytesIO(self.to_csv(resource_type, rows)),
            columns=list(RESOURCE_COLUMNS),
            format="csv",
        )


LOADERS: dict[str, type[LoadStrategy]] = {
    InsertLoader.mode: InsertLoader,
    CopyLoader.mode: CopyLoader,
}


def get_loader(mode: str, engine: AsyncEngine, **kwargs) -> LoadStrategy:
    """Build the strategy for a mode name ("insert" or "copy").

    Raises:
        LoaderError: If the mode is unknown.
    """
    loader_class = LOADERS.get(mode.lower())
    if loader_class is None:
        raise LoaderError(f"Invalid mode: {mode}. Mode must be either 'insert' or 'copy'")
    return loader_class(engine, **kwargs)


# =============================================================================
# Entry point
# =============================================================================


async def load_files(
    inputs: Iterable[str | Path],
    *,
    engine: AsyncEngine | None = None,
    mode: str | None = None,
    version: str | None = None,
    transformer: TransformEngine | None = None,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    on_flush: FlushCallback | None = None,
    cancel_event: asyncio.Event | None = None,
) -> LoadStats:
    """Load every resource found in the given files and directories.

    Args:
        inputs: File and directory paths.
        engine: Async engine; one is created (and disposed) from settings if omitted.
        mode: "insert" or "copy"; defaults to settings.load_mode.
        version: Rule table version; defaults to settings.fhir_version.
        transformer: Transform engine; defaults to the process-wide one.
        batch_size: Override the strategy's batch size.
        max_concurrency: Containers loaded at the same time.
        on_flush: Called with (resource_type, seconds) after every flushed group.
        cancel_event: Stops every container task at its next record once set.

    Returns:
        Aggregated LoadStats.

    Raises:
        DetectionError: If none of the inputs could be opened.
        StorageConnectionError: If the database is unreachable.
        RuleTableNotFoundError: If the rule table cannot be loaded.
        LoaderError: If the mode is invalid.
    """
    mode = mode or settings.load_mode
    version = version or settings.fhir_version
    transformer = transformer or default_engine
    max_concurrency = max_concurrency or settings.max_concurrent_containers

    transformer.cache.preload(version)

    with ContainerAggregate.open(inputs) as aggregate:
        if not aggregate:
            raise DetectionError("No loadable input files")
        logger.info(
            "Loading %d resources from %d file(s) using %s mode",
            aggregate.total_count,
            len(aggregate),
            mode,
        )

        owns_engine = engine is None
        if engine is None:
            engine = create_engine(pool_size=max_concurrency, max_overflow=0)
        try:
            await verify_connection(engine)
            loader = get_loader(
                mode,
                engine,
                version=version,
                transformer=transformer,
                batch_size=batch_size,
                on_flush=on_flush,
            )
            stats = await _load_concurrently(loader, aggregate, max_concurrency, cancel_event)
        finally:
            if owns_engine:
                await engine.dispose()

    stats.skipped_inputs = len(aggregate.skipped)
    logger.info(
        "Finished loading: %d resources in %d file(s), %d malformed, %d skipped, %d failed rows",
        stats.total_loaded,
        stats.containers,
        stats.malformed,
        stats.skipped,
        stats.failed_rows,
    )
    return stats


async def _load_concurrently(
    loader: LoadStrategy,
    aggregate: ContainerAggregate,
    max_concurrency: int,
    cancel_event: asyncio.Event | None,
) -> LoadStats:
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _run(container: ResourceContainer) -> LoadStats:
        async with semaphore:
            return await loader.load_container(container, cancel_event)

    results = await asyncio.gather(
        *(_run(container) for container in aggregate),
        return_exceptions=True,
    )

    stats = LoadStats()
    for container, result in zip(aggregate, results):
        if isinstance(result, BaseException):
            logger.error("Loading %s failed: %s", container.source, result)
            stats.containers += 1
            stats.failed_containers += 1
        else:
            stats.merge(result)
    return stats
