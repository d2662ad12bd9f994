"""Filesystem content store for publication bodies and attachments.

Layout under the root directory::

    publications/<reference>/publication.md
    attachments/<experiment_id>/<reference>/<filename>
"""

import shutil
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from .errors import InvalidParametersError, ResourceCreationError
from .references import is_reference


class FileContentStore:
    """Stores publication content on disk, addressed by reference."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.root.mkdir(exist_ok=True, parents=True, mode=0o700)

    def publication_path(self, reference: str) -> Path:
        if not is_reference(reference):
            raise InvalidParametersError(
                f"Malformed publication reference: {reference!r}"
            )
        return self.root / "publications" / reference / "publication.md"

    def exists(self, reference: str) -> bool:
        return is_reference(reference) and self.publication_path(
            reference
        ).exists()

    def write(self, reference: str, content: str) -> None:
        """Store *content* under a new reference.

        Raises:
            ResourceCreationError: If the reference already holds content.
        """
        path = self.publication_path(reference)
        path.parent.mkdir(exist_ok=True, parents=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError as e:
            raise ResourceCreationError(
                f"Publication content already exists for [{reference}]",
                cause=e,
            ) from e
        except OSError as e:
            raise ResourceCreationError(
                f"Failed to write publication [{reference}]", cause=e
            ) from e
        logger.debug(f"Stored content for [{reference}] at {path}")

    def read(self, reference: str) -> Optional[str]:
        if not self.exists(reference):
            return None
        return self.publication_path(reference).read_text(
            encoding="utf-8"
        )

    def attachments_dir(self, experiment_id: int, reference: str) -> Path:
        if not is_reference(reference):
            raise InvalidParametersError(
                f"Malformed publication reference: {reference!r}"
            )
        return self.root / "attachments" / str(experiment_id) / reference

    def list_attachments(
        self, experiment_id: int, reference: str
    ) -> List[str]:
        directory = self.attachments_dir(experiment_id, reference)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir())

    def discard(self, experiment_id: int, reference: str) -> None:
        """Delete one publication's content and attachments."""
        shutil.rmtree(
            self.publication_path(reference).parent, ignore_errors=True
        )
        shutil.rmtree(
            self.attachments_dir(experiment_id, reference),
            ignore_errors=True,
        )
        logger.debug(f"Discarded stored files of [{reference}]")

    def remove(self, experiment_id: int, references: List[str]) -> None:
        """Delete the content and attachments of an experiment."""
        for reference in references:
            shutil.rmtree(
                self.publication_path(reference).parent, ignore_errors=True
            )
        shutil.rmtree(
            self.root / "attachments" / str(experiment_id),
            ignore_errors=True,
        )
        logger.debug(
            f"Removed content of {len(references)} publications of "
            f"experiment {experiment_id}"
        )
