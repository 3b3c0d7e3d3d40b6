"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - content addressing and archive entries

    Entries live at <archive-root>/<A>/ where A is the decimal cksum of the
    raw image. An entry is assembled in a hidden staging directory and
    published with a single rename, so <archive-root>/<A> only ever appears
    complete.

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from .cksum import Cksum
from .errors import CollisionError, ImagingError, PublishError
from .imager import RawImage

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 4 * 1024 * 1024
IMAGE_SUFFIX    = ".iso"
RECORD_SUFFIX   = ".xml"
CONTENT_DIR     = "content"
STAGING_SUFFIX  = ".partial"


def content_address_of_file(path: Union[str, Path]) -> str:
    c = Cksum()
    with open(path, "rb") as fh:
        while chunk := fh.read(HASH_BLOCK_SIZE):
            c.update(chunk)
    return str(c.digest())


class ArchiveEntry:
    """One archived medium: image, extracted tree and provenance record."""

    def __init__(self, address: str, final_path: Path, staging_path: Path) -> None:
        self.address      = address
        self.final_path   = final_path
        self.staging_path = staging_path
        self.committed    = False

    @property
    def path(self) -> Path:
        return self.final_path if self.committed else self.staging_path

    @property
    def image_path(self) -> Path:
        return self.path / f"{self.address}{IMAGE_SUFFIX}"

    @property
    def content_dir(self) -> Path:
        return self.path / CONTENT_DIR

    @property
    def record_path(self) -> Path:
        return self.path / f"{self.address}{RECORD_SUFFIX}"

    def discard(self) -> None:
        """Remove an unpublished entry. A committed entry is never touched."""
        if not self.committed and self.staging_path.exists():
            shutil.rmtree(self.staging_path, ignore_errors=True)
            logger.info("Discarded staging directory %s", self.staging_path)


class ArchiveStore:

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def entry_path(self, address: str) -> Path:
        return self.root / address

    def exists(self, address: str) -> bool:
        return self.entry_path(address).exists()

    def record_path(self, address: str) -> Path:
        """Provenance record of a published entry."""
        return self.entry_path(address) / f"{address}{RECORD_SUFFIX}"

    def check_available(self, address: str) -> None:
        if self.exists(address):
            raise CollisionError(address, self.entry_path(address))

    def create_entry(self, address: str, image: RawImage) -> ArchiveEntry:
        """
        Stage a new entry holding a copy of ``image`` and an empty content tree.

        Raises CollisionError before anything is written if the address is
        already archived.
        """
        self.check_available(address)

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{address}.", suffix=STAGING_SUFFIX,
                                            dir=self.root))
            os.chmod(staging, 0o755)
        except OSError as exc:
            raise ImagingError(f"Could not create staging directory in {self.root}: {exc}") from exc

        entry = ArchiveEntry(address, self.entry_path(address), staging)
        try:
            entry.content_dir.mkdir()
            partial = entry.image_path.with_name(entry.image_path.name + STAGING_SUFFIX)
            shutil.copyfile(image.path, partial)
            os.replace(partial, entry.image_path)
        except OSError as exc:
            entry.discard()
            raise ImagingError(f"Could not store image in {staging}: {exc}") from exc

        logger.info("Staged entry %s in %s", address, staging)
        return entry

    def commit(self, entry: ArchiveEntry) -> Path:
        """
        Publish a staged entry at <root>/<A>.

        The existence check and the rename are two steps; a concurrent run
        publishing the same address in between is not detected here.
        """
        try:
            self.check_available(entry.address)
        except CollisionError:
            entry.discard()
            raise
        try:
            os.rename(entry.staging_path, entry.final_path)
        except OSError as exc:
            raise PublishError(f"Could not publish {entry.staging_path} as {entry.final_path}: {exc}") from exc
        entry.committed = True
        logger.info("Published entry %s at %s", entry.address, entry.final_path)
        return entry.final_path

    def find_staging(self, address: Optional[str] = None):
        """Leftover staging directories of interrupted runs."""
        pattern = f".{address}.*{STAGING_SUFFIX}" if address else f".*{STAGING_SUFFIX}"
        return sorted(p for p in self.root.glob(pattern) if p.is_dir())
