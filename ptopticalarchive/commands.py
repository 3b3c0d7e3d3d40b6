"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - external command execution

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import shutil
import subprocess
import time
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

TIMEOUT_FAST = 30    # lsblk, blkid, blockdev, chown
TIMEOUT_MOUNT = 120

CommandRunner = Callable[..., Dict[str, Any]]


def run_command(cmd: List[str], timeout: int = TIMEOUT_FAST) -> Dict[str, Any]:
    """
    Execute a command without a shell and return a result dict.

    Never raises for a failing command: callers inspect ``success``,
    ``stdout``, ``stderr`` and ``returncode``.
    """
    base = {"success": False, "stdout": "", "stderr": "", "returncode": -1, "duration": 0.0}
    logger.debug("Executing: %s", " ".join(cmd))

    try:
        t0 = time.time()
        proc = subprocess.run(cmd, capture_output=True, text=True,
                              timeout=timeout, check=False)
        base.update({"success": proc.returncode == 0, "stdout": proc.stdout.strip(),
                     "stderr": proc.stderr.strip(), "returncode": proc.returncode,
                     "duration": time.time() - t0})
    except subprocess.TimeoutExpired:
        base["stderr"] = f"Timeout after {timeout}s"
        logger.error(base["stderr"])
    except OSError as exc:
        base["stderr"] = str(exc)
        logger.error("Could not execute %s: %s", cmd[0], exc)

    if not base["success"]:
        logger.debug("Command failed (%s): %s", base["returncode"], base["stderr"])
    return base


def check_command(cmd: str) -> bool:
    """Check if a command is available on PATH."""
    return shutil.which(cmd) is not None
