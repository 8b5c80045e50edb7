"""Exception hierarchy for the load pipeline.

Detection, transformation, transport and storage failures each get their own
branch so callers can decide whether to skip an input, a record, or abort.
"""


class FhirMarshalError(Exception):
    """Base class for all fhir-marshal errors."""


# =============================================================================
# Input containers
# =============================================================================


class DetectionError(FhirMarshalError):
    """Input could not be opened or classified."""


class EndOfStream(FhirMarshalError):
    """Container has no more records. Not a failure."""


class RecordParseError(FhirMarshalError, ValueError):
    """A single NDJSON line could not be parsed."""

    def __init__(self, source: str, index: int, reason: str):
        self.source = source
        self.index = index
        self.reason = reason
        super().__init__(f"{source}: error deserializing line {index}: {reason}")


# =============================================================================
# Transformation
# =============================================================================


class TransformError(FhirMarshalError, ValueError):
    """A resource could not be transformed."""


class RuleTableNotFoundError(TransformError):
    """No usable rule table exists for the requested version."""


class MissingResourceTypeError(TransformError):
    """Resource has no string resourceType."""


class UnionArgumentError(TransformError):
    """A union directive carries an unusable tr/arg."""


class MovePathError(TransformError):
    """A tr/move path is malformed or points nowhere."""


# =============================================================================
# Bulk export
# =============================================================================


class BulkExportError(FhirMarshalError):
    """Bulk export session failed."""


class ExportSubmitError(BulkExportError):
    """The kick-off request was rejected or returned no poll location."""


class ExportPollError(BulkExportError):
    """Polling gave up or the manifest was unusable."""


class ExportCancelledError(BulkExportError):
    """The session was cancelled before it finished."""


# =============================================================================
# Loading
# =============================================================================


class LoaderError(FhirMarshalError, ValueError):
    """Invalid loader configuration or an unroutable record."""


class StorageConnectionError(FhirMarshalError, RuntimeError):
    """The database cannot be reached."""
