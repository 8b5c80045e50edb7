"""Download a FHIR bulk data export into one merged NDJSON file.

The URL is the $export kick-off endpoint, or an existing $export-poll-status
URL to resume polling. It comes from the command line or BULK_EXPORT_URL.

Usage:
    python -m fhir_marshal.scripts.get_bulk_data https://fhir.example.org/Patient/$export
"""

import asyncio
import signal
import sys

from fhir_marshal.config import settings
from fhir_marshal.errors import BulkExportError
from fhir_marshal.logging_config import configure_logging
from fhir_marshal.services.bulk_export import BulkExportClient, ExportResult


async def get_bulk_data(url: str) -> ExportResult:
    """
    Run one export session, cancelling cleanly on SIGINT/SIGTERM.

    Args:
        url: Kick-off or poll-status URL.

    Returns:
        ExportResult for the session.
    """
    async with BulkExportClient() as client:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, client.cancel)
            except (NotImplementedError, RuntimeError):
                # Signal handlers are unavailable off the main thread / on Windows
                pass
        return await client.run(url)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the bulk download script."""
    configure_logging(settings.debug)

    args = sys.argv[1:] if argv is None else argv
    url = args[0] if args else settings.bulk_export_url
    if not url:
        print("No export URL given. Pass one or set BULK_EXPORT_URL.")
        return 2

    print("=" * 50)
    print("FHIR bulk data export")
    print("=" * 50)

    try:
        result = asyncio.run(get_bulk_data(url))
    except BulkExportError as e:
        print(f"\nExport failed: {e}")
        return 1

    print("\n" + "=" * 50)
    print("Summary")
    print("=" * 50)
    print(f"  Files listed: {len(result.listings)}")
    print(f"  Files downloaded: {len(result.staged)}")
    print(f"  Resources written: {result.resources_written}")
    print(f"  Output: {result.output_path}")
    for source, error in result.failures.items():
        print(f"  FAILED {source}: {error}")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
