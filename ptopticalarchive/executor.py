"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - privileged operations

    Mount, unmount, device size query and ownership changes need elevated
    rights. They are grouped behind PrivilegedExecutor so the archival
    pipeline can run against a fake implementation in tests.

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import getpass
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .commands import TIMEOUT_FAST, TIMEOUT_MOUNT, CommandRunner, check_command, run_command
from .errors import MountError, OwnershipError, SizeError, UnmountError

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = ("lsblk", "blkid", "blockdev", "mount", "umount", "chown")


def invoking_user() -> str:
    """Return the non-privileged user behind a sudo session, else the current login."""
    return os.environ.get("SUDO_USER") or getpass.getuser()


class PrivilegedExecutor:
    """Operations that require elevated rights."""

    def mount(self, source: Path, target: Path, options: Sequence[str] = ("loop", "ro")) -> None:
        raise NotImplementedError

    def unmount(self, target: Path, lazy: bool = False) -> None:
        raise NotImplementedError

    def query_device_size(self, device: str) -> int:
        """Return the size of ``device`` in bytes."""
        raise NotImplementedError

    def chown(self, path: Path, owner: str) -> None:
        raise NotImplementedError

    def missing_commands(self) -> List[str]:
        return []


class SudoExecutor(PrivilegedExecutor):
    """
    Runs util-linux commands, prefixed with sudo unless already root.
    """

    def __init__(self, runner: CommandRunner = run_command,
                 use_sudo: Optional[bool] = None) -> None:
        self._runner = runner
        self.use_sudo = (os.geteuid() != 0) if use_sudo is None else use_sudo

    def _run(self, cmd: List[str], timeout: int = TIMEOUT_FAST) -> Dict[str, Any]:
        if self.use_sudo:
            cmd = ["sudo", *cmd]
        return self._runner(cmd, timeout=timeout)

    @staticmethod
    def _reason(r: Dict[str, Any]) -> str:
        return r["stderr"] or f"exit code {r['returncode']}"

    def mount(self, source: Path, target: Path, options: Sequence[str] = ("loop", "ro")) -> None:
        r = self._run(["mount", "-o", ",".join(options), str(source), str(target)], TIMEOUT_MOUNT)
        if not r["success"]:
            raise MountError(f"Could not mount {source}: {self._reason(r)}")
        logger.info("Mounted %s at %s (%s)", source, target, ",".join(options))

    def unmount(self, target: Path, lazy: bool = False) -> None:
        cmd = ["umount", "-l", str(target)] if lazy else ["umount", str(target)]
        r = self._run(cmd, TIMEOUT_MOUNT)
        if not r["success"]:
            raise UnmountError(f"Could not unmount {target}: {self._reason(r)}")
        logger.info("Unmounted %s%s", target, " (lazy)" if lazy else "")

    def query_device_size(self, device: str) -> int:
        r = self._run(["blockdev", "--getsize64", device])
        if not r["success"] or not r["stdout"].isdigit():
            raise SizeError(f"Unable to determine size of {device}: {self._reason(r)}")
        return int(r["stdout"])

    def chown(self, path: Path, owner: str) -> None:
        # "user:" assigns the user's login group
        r = self._run(["chown", "-R", f"{owner}:", str(path)])
        if not r["success"]:
            raise OwnershipError(f"Could not reassign {path} to {owner}: {self._reason(r)}")

    def missing_commands(self) -> List[str]:
        required = list(REQUIRED_COMMANDS) + (["sudo"] if self.use_sudo else [])
        return [cmd for cmd in required if not check_command(cmd)]
