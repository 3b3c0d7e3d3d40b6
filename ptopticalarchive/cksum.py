"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - POSIX ``cksum`` CRC-32

    Polynomial 0x04C11DB7, MSB first, message length appended. zlib
    implements the bit-reflected form of the same polynomial, so input
    bytes are bit-reversed and the register is reversed back at the end.

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import zlib

_MASK = 0xFFFFFFFF

_REVERSED_BYTES = bytes(int(f"{n:08b}"[::-1], 2) for n in range(256))


def _reverse32(value: int) -> int:
    return int(f"{value:032b}"[::-1], 2)


class Cksum:
    """Incremental cksum; ``digest()`` returns the value cksum(1) prints."""

    def __init__(self) -> None:
        self._register = 0   # reflected register, no pre/post inversion
        self.length = 0

    def _feed(self, data: bytes) -> None:
        self._register = zlib.crc32(data.translate(_REVERSED_BYTES), self._register ^ _MASK) ^ _MASK

    def update(self, data: bytes) -> None:
        self._feed(data)
        self.length += len(data)

    def digest(self) -> int:
        saved = self._register
        n = self.length
        self._feed(n.to_bytes((n.bit_length() + 7) // 8, "little"))
        value = (~_reverse32(self._register)) & _MASK
        self._register = saved
        return value


def cksum(data: bytes) -> int:
    c = Cksum()
    c.update(data)
    return c.digest()
