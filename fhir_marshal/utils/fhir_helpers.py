"""Shared FHIR resource parsing utilities.

All functions are pure and handle missing/malformed data gracefully.
"""

from typing import Any


def get_resource_type(resource: dict[str, Any]) -> str:
    """Return the resource's resourceType, or "" when absent or not a string.

    Args:
        resource: Parsed FHIR resource.

    Returns:
        The resourceType string or an empty string.
    """
    value = resource.get("resourceType") if isinstance(resource, dict) else None
    return value if isinstance(value, str) else ""


def get_resource_id(resource: dict[str, Any]) -> str:
    """Return the resource's id, or "" when absent or not a string.

    Args:
        resource: Parsed FHIR resource.

    Returns:
        The id string or an empty string.
    """
    value = resource.get("id") if isinstance(resource, dict) else None
    return value if isinstance(value, str) else ""


def table_name_for(resource_type: str) -> str:
    """Map a resource type to its storage table ("Patient" -> "patient")."""
    return resource_type.lower()


def split_reference(text: str | None) -> tuple[str, str] | None:
    """Split a "Type/id" reference string.

    "Patient/123" yields ("Patient", "123"). Trailing segments such as a
    "_history/2" suffix are ignored. Strings without a "/" or with an empty
    type or id are not references.

    Args:
        text: Candidate reference string.

    Returns:
        (resource_type, id) or None if the string is not well-formed.
    """
    if not isinstance(text, str) or "/" not in text:
        return None
    resource_type, resource_id = text.split("/")[:2]
    if not resource_type or not resource_id:
        return None
    return resource_type, resource_id
