"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - dual-read integrity verification

    Two independent SHA-256 digests are compared:
      image digest   - over the stored image file
      medium digest  - over a fresh raw re-read of the medium

    The re-read is a second physical read, never a reuse of the imaging
    read. If the medium changes or degrades between the two reads, the
    stored image and the medium digest describe different reads and the
    mismatch is reported.

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from .device import OpticalDevice
from .imager import BlockReader

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 4 * 1024 * 1024  # 4 MB chunks for memory-efficient hashing


@dataclass(frozen=True)
class IntegrityReport:
    image_digest: str
    medium_digest: str
    unreadable_blocks: int = 0
    error: Optional[str] = None

    @property
    def match(self) -> bool:
        return bool(self.image_digest) and self.image_digest == self.medium_digest

    @property
    def status(self) -> str:
        if self.error:
            return "UNVERIFIED"
        return "VERIFIED" if self.match else "MISMATCH"


class IntegrityVerifier:

    def __init__(self, opener: Callable = open) -> None:
        self._opener = opener

    def digest_file(self, path: Path) -> str:
        sha = hashlib.sha256()
        with open(path, "rb") as fh:
            while chunk := fh.read(HASH_BLOCK_SIZE):
                sha.update(chunk)
        return sha.hexdigest()

    def digest_medium(self, device: OpticalDevice, block_count: int) -> Tuple[str, int]:
        """SHA-256 of a fresh read with the imaging read policy (zero-fill on error)."""
        reader = BlockReader(device.path, block_count, device.block_size, opener=self._opener)
        sha = hashlib.sha256()
        for chunk in reader:
            sha.update(chunk)
        return sha.hexdigest(), len(reader.bad_blocks)

    def verify(self, stored_image_path: Path, device: OpticalDevice,
               block_count: int) -> IntegrityReport:
        try:
            image_digest = self.digest_file(stored_image_path)
        except OSError as exc:
            logger.warning("Hashing %s failed: %s", stored_image_path, exc)
            return IntegrityReport("", "", error=f"Hashing {stored_image_path} failed: {exc}")

        try:
            medium_digest, unreadable = self.digest_medium(device, block_count)
        except OSError as exc:
            logger.warning("Fresh read of %s failed: %s", device.path, exc)
            return IntegrityReport(image_digest, "", error=f"Fresh read of {device.path} failed: {exc}")

        report = IntegrityReport(image_digest, medium_digest, unreadable)
        logger.info("Image SHA-256 %s, medium SHA-256 %s: %s",
                    image_digest, medium_digest, report.status)
        return report
