"""Load FHIR NDJSON / single-resource files into fhirbase tables.

Inputs come from the command line, or from LOAD_INPUTS (a JSON list) when no
paths are given. Mode and rule version come from LOAD_MODE and FHIR_VERSION.

Usage:
    python -m fhir_marshal.scripts.load_database data/Patient.ndjson data/more/
    LOAD_MODE=copy python -m fhir_marshal.scripts.load_database data/
"""

import asyncio
import sys

from fhir_marshal.config import settings
from fhir_marshal.errors import FhirMarshalError
from fhir_marshal.logging_config import configure_logging
from fhir_marshal.services.loader import LoadStats, load_files


def print_flush(resource_type: str, duration: float) -> None:
    """Report one flushed batch."""
    print(f"  {resource_type}: batch written in {duration:.3f}s")


async def load_database(inputs: list[str], mode: str | None = None) -> LoadStats:
    """
    Load every input into the configured database.

    Args:
        inputs: File and directory paths.
        mode: "insert" or "copy"; defaults to settings.load_mode.

    Returns:
        Aggregated load statistics.
    """
    return await load_files(inputs, mode=mode, on_flush=print_flush)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the load script."""
    configure_logging(settings.debug)

    inputs = list(sys.argv[1:] if argv is None else argv) or settings.load_inputs
    if not inputs:
        print("No inputs given. Pass file or directory paths, or set LOAD_INPUTS.")
        return 2

    print("=" * 50)
    print(f"fhirbase load ({settings.load_mode} mode, FHIR {settings.fhir_version})")
    print("=" * 50)

    try:
        stats = asyncio.run(load_database(inputs))
    except FhirMarshalError as e:
        print(f"\nLoad failed: {e}")
        return 1

    print("\n" + "=" * 50)
    print("Summary")
    print("=" * 50)
    for resource_type, count in sorted(stats.loaded.items()):
        print(f"  {resource_type}: {count} ({stats.durations[resource_type]:.2f}s)")
    print(f"  Files loaded: {stats.containers - stats.failed_containers}")
    print(f"  Inputs skipped: {stats.skipped_inputs}")
    print(f"  Malformed lines: {stats.malformed}")
    print(f"  Records skipped: {stats.skipped}")
    print(f"  Rows in failed batches: {stats.failed_rows}")
    print(f"  Resources loaded: {stats.total_loaded}")
    return 1 if stats.failed_containers or stats.failed_rows else 0


if __name__ == "__main__":
    sys.exit(main())
