"""Container aggregate: every input container for a single load run."""

import logging
from pathlib import Path
from typing import Iterable, Iterator

from fhir_marshal.errors import DetectionError
from fhir_marshal.services.containers import ResourceContainer, open_container

logger = logging.getLogger(__name__)


def expand_inputs(inputs: Iterable[str | Path]) -> list[Path]:
    """Expand directories to the files they directly contain.

    Files are taken as given; directory contents are sorted by name so runs
    are reproducible. Paths that do not exist are kept and fail at open time.

    Args:
        inputs: File and directory paths.

    Returns:
        Flat list of file paths.
    """
    files: list[Path] = []
    for item in inputs:
        path = Path(item).expanduser()
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.is_file()))
        else:
            files.append(path)
    return files


class ContainerAggregate:
    """Owns the containers opened for one load invocation.

    Inputs that fail detection are logged and recorded in ``skipped``;
    the aggregate never raises for an individual bad input.
    """

    def __init__(self, containers: list[ResourceContainer] | None = None):
        self.containers: list[ResourceContainer] = list(containers or [])
        self.skipped: list[tuple[str, str]] = []

    @classmethod
    def open(cls, inputs: Iterable[str | Path]) -> "ContainerAggregate":
        """Open one container per input file.

        Args:
            inputs: File and directory paths.

        Returns:
            Aggregate holding every input that could be opened.
        """
        aggregate = cls()
        for path in expand_inputs(inputs):
            try:
                container = open_container(path)
            except DetectionError as e:
                logger.warning("Skipping input %s: %s", path, e)
                aggregate.skipped.append((str(path), str(e)))
                continue
            logger.info(
                "Opened %s as %s (%d records)", path, container.format.value, container.count
            )
            aggregate.containers.append(container)
        return aggregate

    @property
    def total_count(self) -> int:
        """Summed record count across all containers."""
        return sum(c.count for c in self.containers)

    def close(self) -> None:
        for container in self.containers:
            container.close()

    def __len__(self) -> int:
        return len(self.containers)

    def __iter__(self) -> Iterator[ResourceContainer]:
        return iter(self.containers)

    def __enter__(self) -> "ContainerAggregate":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
