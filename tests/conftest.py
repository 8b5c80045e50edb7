"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- Sample FHIR resources and on-disk input files
- A small in-memory rule table with every directive kind
- A PostgreSQL test engine (skipped when DATABASE_TEST_URL is unreachable)
"""

import gzip
import json
import os
from pathlib import Path

import pytest
import pytest_asyncio

from fhir_marshal.database import create_engine, verify_connection
from fhir_marshal.errors import StorageConnectionError
from fhir_marshal.models import metadata, resource_table
from fhir_marshal.services.rules import RuleTable, RuleTableCache
from fhir_marshal.services.transformer import TransformEngine

TEST_VERSION = "test-1.0"

# Covers union, reference (single and collection), move, rename and nesting
TEST_RULES = {
    "Reference": {},
    "Identifier": {
        "assigner": {"tr/act": "reference"},
    },
    "Extension": {
        "extension": {"tr/move": ["Extension"]},
        "valueString": {"tr/act": "union", "tr/arg": {"type": "string", "key": "value"}},
        "valueReference": {"tr/act": "union", "tr/arg": {"type": "Reference", "key": "value"}},
    },
    "Patient": {
        "extension": {"tr/move": ["Extension"]},
        "identifier": {"tr/move": ["Identifier"]},
        "deceasedBoolean": {"tr/act": "union", "tr/arg": {"type": "boolean", "key": "deceased"}},
        "deceasedDateTime": {"tr/act": "union", "tr/arg": {"type": "dateTime", "key": "deceased"}},
        "generalPractitioner": {"tr/act": "reference", "isCollection": True},
        "managingOrganization": {"tr/act": "reference"},
        "contact": {
            "organization": {"tr/act": "reference"},
        },
        "birthDate": {"tr/arg": {"key": "birth_date"}},
    },
    "Observation": {
        "subject": {"tr/act": "reference"},
        "valueQuantity": {"tr/act": "union", "tr/arg": {"type": "Quantity", "key": "value"}},
        "valueString": {"tr/act": "union", "tr/arg": {"type": "string", "key": "value"}},
        "component": {
            "valueQuantity": {"tr/act": "union", "tr/arg": {"type": "Quantity", "key": "value"}},
        },
    },
}


# =============================================================================
# FHIR Test Data Fixtures
# =============================================================================


@pytest.fixture
def sample_patient() -> dict:
    """Sample FHIR Patient resource."""
    return {
        "resourceType": "Patient",
        "id": "p1",
        "name": [{"family": "Smith", "given": ["John"]}],
        "gender": "male",
        "birthDate": "1980-01-01",
        "deceasedBoolean": False,
        "managingOrganization": {"reference": "Organization/o1", "display": "Acme Health"},
        "generalPractitioner": [
            {"reference": "Practitioner/pr1"},
            {"reference": "Practitioner/pr2", "display": "Dr. Jones"},
        ],
    }


@pytest.fixture
def sample_observation() -> dict:
    """Sample FHIR Observation resource without an id."""
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]},
        "subject": {"reference": "Patient/p1"},
        "valueQuantity": {"value": 72, "unit": "beats/minute"},
    }


@pytest.fixture
def version() -> str:
    """Version key of the test rule table."""
    return TEST_VERSION


@pytest.fixture
def rule_table() -> RuleTable:
    """Parsed test rule table."""
    return RuleTable.from_dict(TEST_VERSION, TEST_RULES)


@pytest.fixture
def rule_cache(rule_table) -> RuleTableCache:
    """Cache pre-populated with the test table; never touches disk."""
    cache = RuleTableCache(rules_dir=Path("/nonexistent"))
    cache.put(rule_table)
    return cache


@pytest.fixture
def engine(rule_cache) -> TransformEngine:
    """Transform engine bound to the test rule table."""
    return TransformEngine(cache=rule_cache)


# =============================================================================
# Input File Fixtures
# =============================================================================


def write_ndjson(path: Path, resources: list, *, compress: bool = False) -> Path:
    """Write resources one per line; strings are written verbatim."""
    lines = [r if isinstance(r, str) else json.dumps(r) for r in resources]
    data = ("\n".join(lines) + "\n").encode("utf-8")
    if compress:
        with gzip.open(path, "wb") as f:
            f.write(data)
    else:
        path.write_bytes(data)
    return path


@pytest.fixture
def make_ndjson():
    """Factory writing NDJSON (optionally gzip) files."""
    return write_ndjson


@pytest.fixture
def ndjson_file(tmp_path, sample_patient, sample_observation) -> Path:
    """Two-record NDJSON file."""
    return write_ndjson(tmp_path / "data.ndjson", [sample_patient, sample_observation])


@pytest.fixture
def single_resource_file(tmp_path, sample_patient) -> Path:
    """Pretty-printed single resource file."""
    path = tmp_path / "patient.json"
    path.write_text(json.dumps(sample_patient, indent=2))
    return path


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine():
    """Test database engine with patient and observation tables.

    Uses DATABASE_TEST_URL; tests are skipped when it is unset or unreachable.
    Tables are created before the test and dropped after.
    """
    db_url = os.environ.get("DATABASE_TEST_URL")
    if not db_url:
        pytest.skip("DATABASE_TEST_URL not set")

    engine = create_engine(db_url, echo=False)
    try:
        await verify_connection(engine)
    except StorageConnectionError as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL not available: {e}")

    tables = [resource_table("Patient"), resource_table("Observation")]
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all, tables=tables)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all, tables=tables)
    await engine.dispose()
