"""fhir-marshal: load FHIR resources into a fhirbase-style PostgreSQL schema."""

__version__ = "0.1.0"
