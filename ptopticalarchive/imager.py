"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - raw block imaging

    Reads a fixed number of 2048-byte blocks from the start of the medium,
    the way ``dd bs=2048 conv=noerror,sync`` does: an unreadable block is
    replaced by zeros and the copy carries on.

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from .device import BLOCK_SIZE, OpticalDevice
from .errors import ImagingError, SizeError
from .executor import PrivilegedExecutor

logger = logging.getLogger(__name__)

CHUNK_BLOCKS = 512   # 1 MB per read; falls back to single blocks on error

ProgressCallback = Callable[[int, int], None]


class BlockReader:
    """
    Iterate over ``block_count`` blocks of a device as byte chunks.

    A failed chunk read is retried block by block; blocks that still fail,
    and short reads, are zero-filled so the output is always exactly
    ``block_count * block_size`` bytes. Unreadable block indexes are
    collected in ``bad_blocks``.
    """

    def __init__(self, path: str, block_count: int, block_size: int = BLOCK_SIZE,
                 opener: Callable = open, chunk_blocks: int = CHUNK_BLOCKS) -> None:
        self.path         = path
        self.block_count  = block_count
        self.block_size   = block_size
        self.chunk_blocks = chunk_blocks
        self._opener      = opener
        self.bad_blocks: List[int] = []

    def _read_at(self, fh, index: int, count: int) -> bytes:
        fh.seek(index * self.block_size)
        return fh.read(count * self.block_size)

    def _read_single_blocks(self, fh, first: int, count: int) -> bytes:
        blocks = []
        for index in range(first, first + count):
            try:
                block = self._read_at(fh, index, 1)
            except OSError as exc:
                logger.warning("Read error at block %d of %s: %s", index, self.path, exc)
                self.bad_blocks.append(index)
                block = b""
            blocks.append(block.ljust(self.block_size, b"\0"))
        return b"".join(blocks)

    def __iter__(self) -> Iterator[bytes]:
        with self._opener(self.path, "rb") as fh:
            for first in range(0, self.block_count, self.chunk_blocks):
                count = min(self.chunk_blocks, self.block_count - first)
                try:
                    chunk = self._read_at(fh, first, count)
                except OSError:
                    chunk = self._read_single_blocks(fh, first, count)
                yield chunk.ljust(count * self.block_size, b"\0")


@dataclass(frozen=True)
class RawImage:
    path: Path
    block_count: int
    block_size: int = BLOCK_SIZE
    bad_blocks: Tuple[int, ...] = ()

    @property
    def size_bytes(self) -> int:
        return self.block_count * self.block_size


class RawImager:
    """Copies the medium into a scratch file before any later stage runs."""

    def __init__(self, executor: PrivilegedExecutor, opener: Callable = open,
                 progress: Optional[ProgressCallback] = None) -> None:
        self._executor = executor
        self._opener   = opener
        self._progress = progress

    def determine_block_count(self, device: OpticalDevice) -> int:
        size = self._executor.query_device_size(device.path)
        device.size_bytes = size
        block_count = size // device.block_size
        if block_count <= 0:
            raise SizeError(f"Unable to determine block count for {device.path} "
                            f"(reported size: {size} bytes).")
        logger.info("%s: %d blocks (%d bytes each)", device.path, block_count, device.block_size)
        return block_count

    def image(self, device: OpticalDevice, block_count: int, target: Path) -> RawImage:
        if block_count <= 0:
            raise SizeError(f"Refusing to image {device.path}: block count {block_count}.")

        reader = BlockReader(device.path, block_count, device.block_size, opener=self._opener)
        total  = block_count * device.block_size
        done   = 0
        try:
            with open(target, "wb") as out:
                for chunk in reader:
                    out.write(chunk)
                    done += len(chunk)
                    if self._progress:
                        self._progress(done, total)
                out.flush()
                os.fsync(out.fileno())
        except OSError as exc:
            raise ImagingError(f"Imaging {device.path} to {target} failed: {exc}") from exc

        if reader.bad_blocks:
            logger.warning("%d unreadable block(s) zero-filled", len(reader.bad_blocks))
        logger.info("Imaged %d bytes from %s to %s", done, device.path, target)
        return RawImage(path=target, block_count=block_count, block_size=device.block_size,
                        bad_blocks=tuple(reader.bad_blocks))
