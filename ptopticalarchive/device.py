"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - optical drive detection

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
import stat
from dataclasses import dataclass
from typing import Optional

from .commands import CommandRunner, run_command
from .errors import DeviceNotFoundError

logger = logging.getLogger(__name__)

BLOCK_SIZE    = 2048    # optical sector size
DEVICE_TYPE   = "rom"   # lsblk TYPE of optical drives
UNKNOWN_LABEL = "Unknown"


@dataclass
class OpticalDevice:
    path: str
    mount_point: Optional[str] = None
    size_bytes: Optional[int] = None
    block_size: int = BLOCK_SIZE


class DeviceLocator:
    """Finds the optical drive through lsblk. Read-only, never touches the medium."""

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self._runner = runner

    @staticmethod
    def _is_block_device(path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def find_drive(self) -> str:
        r = self._runner(["lsblk", "-pndo", "NAME,TYPE"])
        if r["success"]:
            for line in r["stdout"].splitlines():
                fields = line.split()
                if len(fields) == 2 and fields[1] == DEVICE_TYPE and self._is_block_device(fields[0]):
                    return fields[0]
        raise DeviceNotFoundError("No optical drive found. Insert a disc or check connection.")

    def locate(self, device_path: Optional[str] = None) -> OpticalDevice:
        """
        Return the optical device to archive.

        With ``device_path`` the enumeration is skipped, but the path must exist.
        """
        if device_path:
            if not os.path.exists(device_path):
                raise DeviceNotFoundError(f"Device not found: {device_path}")
            path = device_path
        else:
            path = self.find_drive()

        device = OpticalDevice(path=path, mount_point=self.mount_point(path))
        logger.info("Located optical device %s (mounted at %s)", path, device.mount_point or "-")
        return device

    def mount_point(self, path: str) -> Optional[str]:
        r = self._runner(["lsblk", "-pno", "MOUNTPOINT", path])
        if not r["success"]:
            return None
        for line in r["stdout"].splitlines():
            if line.strip():
                return line.strip()
        return None

    def volume_label(self, path: str) -> str:
        r = self._runner(["blkid", "-o", "value", "-s", "LABEL", path])
        label = r["stdout"].strip() if r["success"] else ""
        return label or UNKNOWN_LABEL
