"""Pydantic schemas."""

from fhir_marshal.schemas.bulk_export import ExportManifest, FileListing

__all__ = [
    "ExportManifest",
    "FileListing",
]
