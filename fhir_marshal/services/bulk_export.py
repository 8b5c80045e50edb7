"""Bulk data export client.

Drives one asynchronous export session end to end:

    Submitted -> Polling -> Ready -> Downloading -> Reassembling -> Done

with Failed reachable from every state. The result is a single merged NDJSON
file under ``<output_dir>/output.ndjson``; segments are staged under
``<output_dir>/staging`` first.

Each downloaded segment is a JSON envelope whose ``data`` field holds one
base64-encoded resource per line. Reassembly decodes every line on its own and
writes them to the merged file in fixed-size batches.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from fhir_marshal.config import settings
from fhir_marshal.errors import (
    ExportCancelledError,
    ExportPollError,
    ExportSubmitError,
)
from fhir_marshal.schemas.bulk_export import ExportManifest, FileListing

logger = logging.getLogger(__name__)

POLL_STATUS_MARKER = "$export-poll-status"
MERGED_FILE_NAME = "output.ndjson"
STAGING_DIR_NAME = "staging"


class ExportState(str, Enum):
    """Lifecycle of a bulk export session."""

    SUBMITTED = "submitted"
    POLLING = "polling"
    READY = "ready"
    DOWNLOADING = "downloading"
    REASSEMBLING = "reassembling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ExportResult:
    """Outcome of one export session."""

    output_path: Path
    listings: list[FileListing] = field(default_factory=list)
    staged: list[Path] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    resources_written: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


def parse_retry_after(value: str | None, default: float) -> float:
    """Parse a Retry-After header given in seconds, falling back to ``default``."""
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


def staging_names(listings: list[FileListing]) -> list[str]:
    """Staging file names for ``listings``, unique within the export.

    Listings that share a type and a final URL segment get the listing index
    appended: ``<type>-<segment>-<n>.ndjson``.
    """
    names: list[str] = []
    seen: set[str] = set()
    for index, listing in enumerate(listings):
        name = listing.staged_name
        suffix = index
        while name in seen:
            name = f"{listing.staged_name.removesuffix('.ndjson')}-{suffix}.ndjson"
            suffix += 1
        seen.add(name)
        names.append(name)
    return names


class BulkExportClient:
    """Client for the FHIR bulk data ($export) protocol."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        output_dir: Path | None = None,
        token: str | None = None,
        accept_header: str | None = None,
        num_downloads: int | None = None,
        default_wait_seconds: float | None = None,
        max_retries: int | None = None,
        batch_size: int | None = None,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            client: Optional pre-configured httpx client (for testing).
                    If not provided, one is created from settings.
            output_dir: Where staging files and the merged output go.
            token: Bearer token sent on every request when set.
            accept_header: Accept header for all requests.
            num_downloads: Maximum concurrent segment downloads.
            default_wait_seconds: Poll wait when the server sends no Retry-After.
            max_retries: Ceiling for poll and download retries.
            batch_size: Lines buffered per write during reassembly.
            cancel_event: Set to stop the session at the next checkpoint.
            sleep: Awaitable sleep, replaceable in tests.
        """
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(
                timeout=settings.bulk_timeout_seconds,
                follow_redirects=True,
            )
            self._owns_client = True

        self.output_dir = Path(output_dir or settings.bulk_output_dir)
        self.token = token if token is not None else settings.bulk_token
        self.accept_header = accept_header or settings.bulk_accept_header
        self.num_downloads = num_downloads or settings.bulk_num_downloads
        self.default_wait_seconds = (
            default_wait_seconds
            if default_wait_seconds is not None
            else settings.bulk_default_wait_seconds
        )
        self.max_retries = max_retries or settings.bulk_max_retries
        self.batch_size = batch_size or settings.bulk_batch_size
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self.state = ExportState.SUBMITTED

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BulkExportClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Session
    # =========================================================================

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self.cancel_event.set()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ExportCancelledError("bulk export cancelled")

    def _headers(self, *, prefer_async: bool = False) -> dict[str, str]:
        headers = {"Accept": self.accept_header}
        if prefer_async:
            headers["Prefer"] = "respond-async"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def run(self, url: str) -> ExportResult:
        """Run a complete export session.

        A URL that already points at a poll-status endpoint skips the
        kick-off request and goes straight to polling.

        Args:
            url: Export kick-off URL or an existing poll-status URL.

        Returns:
            ExportResult describing the merged file and any failed segments.

        Raises:
            ExportSubmitError: If the kick-off request fails.
            ExportPollError: If polling exceeds the retry ceiling or the manifest is bad.
            ExportCancelledError: If cancelled before completion.
        """
        try:
            if POLL_STATUS_MARKER in url:
                poll_url = url
            else:
                poll_url = await self.submit(url)

            manifest = await self.poll(poll_url)
            listings = manifest.output

            self.state = ExportState.DOWNLOADING
            staging_dir = self.output_dir / STAGING_DIR_NAME
            staged, failures = await self.download_all(listings, staging_dir)

            self._check_cancelled()
            self.state = ExportState.REASSEMBLING
            output_path = self.output_dir / MERGED_FILE_NAME
            written, bad_files = await asyncio.to_thread(self.reassemble, staged, output_path)
            failures.update(bad_files)
        except Exception:
            self.state = ExportState.FAILED
            raise

        self.state = ExportState.DONE
        logger.info(
            "Bulk export complete: %d resources from %d/%d files written to %s",
            written,
            len(staged) - len(bad_files),
            len(listings),
            output_path,
        )
        return ExportResult(
            output_path=output_path,
            listings=listings,
            staged=staged,
            failures=failures,
            resources_written=written,
        )

    async def submit(self, url: str) -> str:
        """Issue the kick-off request and return the poll location.

        Raises:
            ExportSubmitError: On transport failure, non-2xx status, or no Content-Location.
        """
        self.state = ExportState.SUBMITTED
        try:
            response = await self._client.get(url, headers=self._headers(prefer_async=True))
        except httpx.HTTPError as e:
            raise ExportSubmitError(f"Bulk export request to {url} failed: {e}") from e

        if not response.is_success:
            raise ExportSubmitError(
                f"Bulk export initiation failed: {response.status_code} for GET {url}"
            )

        location = response.headers.get("Content-Location")
        if not location:
            raise ExportSubmitError("No Content-Location header in response")

        poll_url = str(response.url.join(location))
        logger.info("Bulk export submitted; polling %s", poll_url)
        return poll_url

    async def poll(self, poll_url: str) -> ExportManifest:
        """Poll until the export is ready and return its manifest.

        ``202`` sleeps for Retry-After (or the default wait) multiplied by the
        attempt number. Other statuses and transport errors count as attempts
        without sleeping.

        Raises:
            ExportPollError: If the retry ceiling is reached or the manifest is invalid.
            ExportCancelledError: If cancelled between attempts.
        """
        self.state = ExportState.POLLING
        retries = 0
        while retries < self.max_retries:
            self._check_cancelled()
            try:
                response = await self._client.get(poll_url, headers=self._headers())
            except httpx.HTTPError as e:
                retries += 1
                logger.warning("Poll attempt %d failed: %s", retries, e)
                continue

            if response.status_code == httpx.codes.OK:
                self.state = ExportState.READY
                return self._parse_manifest(response)

            retries += 1
            if response.status_code == httpx.codes.ACCEPTED:
                if retries >= self.max_retries:
                    break
                wait = parse_retry_after(
                    response.headers.get("Retry-After"), self.default_wait_seconds
                ) * retries
                progress = response.headers.get("X-Progress", "in progress")
                logger.info("Export %s; retrying in %.0f seconds", progress, wait)
                await self._sleep(wait)
            else:
                logger.warning(
                    "Poll attempt %d returned %d for GET %s",
                    retries,
                    response.status_code,
                    poll_url,
                )

        raise ExportPollError(f"Export not ready after {retries} attempts at {poll_url}")

    def _parse_manifest(self, response: httpx.Response) -> ExportManifest:
        try:
            manifest = ExportManifest.model_validate_json(response.content)
        except ValidationError as e:
            raise ExportPollError(f"Invalid export manifest: {e}") from e
        logger.info("Export ready with %d file(s)", len(manifest.output))
        return manifest

    # =========================================================================
    # Download
    # =========================================================================

    async def download_all(
        self,
        listings: list[FileListing],
        staging_dir: Path,
    ) -> tuple[list[Path], dict[str, str]]:
        """Download every listing with at most ``num_downloads`` transfers in flight.

        A failed listing does not cancel its siblings.

        Returns:
            (staged paths in listing order, {url: error} for failed listings)

        Raises:
            ExportCancelledError: If cancellation was requested.
        """
        staging_dir.mkdir(parents=True, exist_ok=True)
        semaphore = asyncio.Semaphore(self.num_downloads)

        async def _guarded(listing: FileListing, name: str) -> Path:
            async with semaphore:
                self._check_cancelled()
                return await self.download_file(listing, staging_dir / name)

        results = await asyncio.gather(
            *(_guarded(listing, name) for listing, name in zip(listings, staging_names(listings))),
            return_exceptions=True,
        )

        staged: list[Path] = []
        failures: dict[str, str] = {}
        for listing, result in zip(listings, results):
            if isinstance(result, ExportCancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Download of %s failed: %s", listing.url, result)
                failures[listing.url] = str(result)
            else:
                staged.append(result)
        return staged, failures

    async def download_file(self, listing: FileListing, destination: Path) -> Path:
        """Stream one listing to disk, retrying transport failures.

        Raises:
            httpx.HTTPError: When every attempt fails.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._client.stream(
                    "GET", listing.url, headers=self._headers()
                ) as response:
                    response.raise_for_status()
                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                logger.debug("Downloaded %s to %s", listing.url, destination)
                return destination
            except httpx.HTTPError as e:
                if attempt >= self.max_retries:
                    raise
                logger.warning(
                    "Download attempt %d of %s failed: %s", attempt, listing.url, e
                )
                await self._sleep(attempt)

    # =========================================================================
    # Reassembly
    # =========================================================================

    def reassemble(self, staged: list[Path], output_path: Path) -> tuple[int, dict[str, str]]:
        """Decode staged envelopes into one NDJSON file.

        Lines are separated by a newline with no trailing newline at the end.
        A staged file that is not a valid envelope is skipped and reported.

        Returns:
            (number of resources written, {staged path: error} for skipped files)
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        buffer: list[str] = []
        bad_files: dict[str, str] = {}
        written = 0
        first = True

        with open(output_path, "w", encoding="utf-8") as writer:

            def flush() -> None:
                nonlocal first
                for line in buffer:
                    if not first:
                        writer.write("\n")
                    first = False
                    writer.write(line)
                buffer.clear()

            for path in staged:
                try:
                    lines = _decode_envelope(path)
                except ValueError as e:
                    logger.warning("Skipping staged file %s: %s", path, e)
                    bad_files[str(path)] = str(e)
                    continue

                for index, line in lines:
                    if line is None:
                        logger.warning("Skipping undecodable line %d in %s", index, path)
                        continue
                    buffer.append(line)
                    written += 1
                    if len(buffer) >= self.batch_size:
                        flush()
            flush()

        return written, bad_files


def _decode_envelope(path: Path) -> list[tuple[int, str | None]]:
    """Read a staged envelope and base64-decode each line of its ``data`` field.

    Returns:
        (line index, decoded text) pairs; text is None for undecodable lines.

    Raises:
        ValueError: If the file is not a JSON object with a string ``data`` field.
    """
    try:
        envelope = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"cannot read envelope: {e}") from e

    data = envelope.get("data") if isinstance(envelope, dict) else None
    if not isinstance(data, str):
        raise ValueError("envelope has no string 'data' field")

    decoded: list[tuple[int, str | None]] = []
    for index, segment in enumerate(s for s in data.split("\n") if s.strip()):
        try:
            text = base64.b64decode(segment.strip(), validate=True).decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError):
            decoded.append((index + 1, None))
            continue
        decoded.append((index + 1, text))
    return decoded
