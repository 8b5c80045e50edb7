"""Resource containers: format detection and record iteration for one input file.

A container wraps a single on-disk source (optionally gzip-compressed) and hands
out parsed resources one at a time. Detection reads at most the first two lines
unless the input turns out to be one multi-line JSON document.
"""

import gzip
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, TextIO

from fhir_marshal.errors import DetectionError, EndOfStream, RecordParseError
from fhir_marshal.utils.fhir_helpers import get_resource_type

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class Format(str, Enum):
    """Input formats recognised by detection."""

    NDJSON = "ndjson"
    SINGLE_RESOURCE = "single_resource"
    UNSUPPORTED_BUNDLE = "bundle"
    UNKNOWN = "unknown"


# =============================================================================
# Stream helpers
# =============================================================================


def is_gzip(path: Path) -> bool:
    """Check the gzip magic bytes at the start of a file."""
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def open_text(path: Path) -> TextIO:
    """Open a file for text reading, decompressing gzip and dropping a BOM."""
    if is_gzip(path):
        return gzip.open(path, "rt", encoding="utf-8-sig")
    return open(path, encoding="utf-8-sig")


def _is_json_object(line: str) -> bool:
    try:
        return isinstance(json.loads(line), dict)
    except json.JSONDecodeError:
        return False


def _classify_document(text: str) -> Format:
    """Classify a complete JSON document by its root object."""
    root = json.loads(text)
    if not isinstance(root, dict):
        return Format.UNKNOWN
    resource_type = root.get("resourceType")
    if resource_type == "Bundle":
        return Format.UNSUPPORTED_BUNDLE
    if isinstance(resource_type, str) and resource_type:
        return Format.SINGLE_RESOURCE
    return Format.UNKNOWN


def detect_format(path: Path) -> Format:
    """Detect the format of an input file.

    Rules:
    - empty first line: UNKNOWN
    - exactly one line: parsed as one JSON document and classified by its root
    - first two lines each a complete JSON object: NDJSON
    - otherwise the whole stream is parsed as one document and classified

    Any read or parse failure yields UNKNOWN rather than raising.

    Args:
        path: Input file (plain or gzip-compressed).

    Returns:
        The detected Format.
    """
    try:
        with open_text(path) as stream:
            first = stream.readline()
            if not first.strip():
                return Format.UNKNOWN

            second = stream.readline()
            if not second:
                return _classify_document(first)

            if _is_json_object(first) and _is_json_object(second):
                return Format.NDJSON

            return _classify_document(first + second + stream.read())
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as e:
        # json.JSONDecodeError and gzip.BadGzipFile are covered by the above
        logger.debug("Format detection failed for %s: %s", path, e)
        return Format.UNKNOWN


# =============================================================================
# Containers
# =============================================================================


class ResourceContainer(ABC):
    """One input source producing resources until end-of-stream.

    ``next_record`` returns the next resource, raises ``EndOfStream`` once the
    source is exhausted, and raises ``RecordParseError`` for a malformed record
    that callers may skip before asking for the next one.
    """

    format: Format

    def __init__(self, path: Path):
        self.path = Path(path)
        self.count = 0
        self._stream: TextIO | None = None

    @property
    def source(self) -> str:
        return str(self.path)

    @abstractmethod
    def next_record(self) -> dict[str, Any]:
        """Return the next resource."""

    def close(self) -> None:
        """Release the underlying file handle."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    @property
    def closed(self) -> bool:
        return self._stream is None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        """Iterate parsed resources, logging and skipping malformed ones."""
        while True:
            try:
                yield self.next_record()
            except EndOfStream:
                return
            except RecordParseError as e:
                logger.warning("Skipping record: %s", e)

    def __enter__(self) -> "ResourceContainer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(path={self.path}, count={self.count})>"


class NdJsonContainer(ResourceContainer):
    """Newline-delimited JSON: one resource per non-blank line.

    ``count`` is the number of non-blank lines; blank lines are neither
    counted nor returned.
    """

    format = Format.NDJSON

    def __init__(self, path: Path):
        super().__init__(path)
        self._line = 0
        self.count = self._count_lines()
        self._stream = open_text(self.path)

    def _count_lines(self) -> int:
        try:
            with open_text(self.path) as stream:
                return sum(1 for line in stream if line.strip())
        except (OSError, EOFError, UnicodeDecodeError) as e:
            raise DetectionError(f"Error reading lines from {self.path}: {e}") from e

    def next_record(self) -> dict[str, Any]:
        if self._stream is None:
            raise EndOfStream(self.source)

        while True:
            line = self._stream.readline()
            if not line:
                self.close()
                raise EndOfStream(self.source)
            self._line += 1
            line = line.strip()
            if line:
                break

        try:
            item = json.loads(line)
        except json.JSONDecodeError as e:
            raise RecordParseError(self.source, self._line, str(e)) from e
        if not isinstance(item, dict):
            raise RecordParseError(self.source, self._line, "line is not a JSON object")
        return item

    @property
    def position(self) -> int:
        """Number of lines consumed so far."""
        return self._line


class SingleResourceContainer(ResourceContainer):
    """A file holding exactly one JSON resource (possibly pretty-printed)."""

    format = Format.SINGLE_RESOURCE

    def __init__(self, path: Path):
        super().__init__(path)
        self.count = 1
        self._stream = open_text(self.path)
        self._already_read = False

    def next_record(self) -> dict[str, Any]:
        if self._already_read or self._stream is None:
            raise EndOfStream(self.source)

        self._already_read = True
        try:
            item = json.load(self._stream)
        except json.JSONDecodeError as e:
            raise RecordParseError(self.source, 1, f"Error parsing json: {e}") from e
        finally:
            self.close()

        if not isinstance(item, dict) or not get_resource_type(item):
            raise RecordParseError(self.source, 1, "document is not a FHIR resource")
        return item


_CONTAINER_TYPES: dict[Format, type[ResourceContainer]] = {
    Format.NDJSON: NdJsonContainer,
    Format.SINGLE_RESOURCE: SingleResourceContainer,
}


def open_container(path: Path | str) -> ResourceContainer:
    """Detect an input's format and open the matching container.

    The container always starts reading from the beginning of the file,
    independent of how much detection consumed.

    Args:
        path: Input file.

    Returns:
        An open ResourceContainer.

    Raises:
        DetectionError: If the file is unreadable, of unknown format, or a Bundle.
    """
    path = Path(path)
    if not path.is_file():
        raise DetectionError(f"Cannot open {path}: not a file")

    file_format = detect_format(path)
    if file_format == Format.UNSUPPORTED_BUNDLE:
        raise DetectionError(f"{path} is a FHIR Bundle, which is not supported")

    container_type = _CONTAINER_TYPES.get(file_format)
    if container_type is None:
        raise DetectionError(f"Cannot determine type of {path}")

    try:
        return container_type(path)
    except OSError as e:
        raise DetectionError(f"Cannot open {path}: {e}") from e
