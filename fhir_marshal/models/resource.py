"""SQLAlchemy table definitions for fhirbase resource tables.

Each resource type has its own table named after the lowercase type, with the
same five columns. Tables are created by the schema bootstrap, not here; these
definitions only describe them for inserts and COPY.
"""

from functools import lru_cache

from sqlalchemy import Column, Integer, MetaData, Table, Text
from sqlalchemy.dialects.postgresql import JSONB

from fhir_marshal.utils.fhir_helpers import table_name_for

metadata = MetaData()

RESOURCE_COLUMNS = ("id", "txid", "resource_type", "status", "resource")

# Status written for freshly loaded rows
STATUS_CREATED = "created"

# Transaction id used for bulk loads
LOAD_TXID = 0


@lru_cache(maxsize=None)
def resource_table(resource_type: str) -> Table:
    """Return the Table for a resource type ("Patient" -> table ``patient``).

    Args:
        resource_type: FHIR resource type name.

    Returns:
        SQLAlchemy Core Table bound to the module metadata.
    """
    name = table_name_for(resource_type)
    if name in metadata.tables:
        return metadata.tables[name]
    return Table(
        name,
        metadata,
        Column("id", Text, primary_key=True),
        Column("txid", Integer, nullable=False),
        Column("resource_type", Text),
        Column("status", Text),
        Column("resource", JSONB, nullable=False),
    )
