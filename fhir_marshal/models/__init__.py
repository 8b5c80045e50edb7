"""SQLAlchemy table definitions."""

from fhir_marshal.models.resource import (
    LOAD_TXID,
    RESOURCE_COLUMNS,
    STATUS_CREATED,
    metadata,
    resource_table,
)

__all__ = [
    "LOAD_TXID",
    "RESOURCE_COLUMNS",
    "STATUS_CREATED",
    "metadata",
    "resource_table",
]
