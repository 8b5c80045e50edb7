"""Pydantic schemas for the bulk data export protocol.

The completed-export manifest lists one entry per downloadable segment;
only ``type`` and ``url`` are needed to fetch and stage them.
"""

from pydantic import BaseModel, ConfigDict, Field


class FileListing(BaseModel):
    """One manifest entry describing a downloadable export segment."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str
    url: str

    @property
    def staged_name(self) -> str:
        """File name used in the staging directory: <type>-<last url segment>.ndjson."""
        segment = self.url.rstrip("/").rsplit("/", 1)[-1]
        return f"{self.type}-{segment}.ndjson"


class ExportManifest(BaseModel):
    """Body of the 200 response once an export is complete."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    transaction_time: str | None = Field(default=None, alias="transactionTime")
    request: str | None = None
    output: list[FileListing] = Field(default_factory=list)
    error: list[FileListing] = Field(default_factory=list)
