"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - temporary working area

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
import shutil
import signal
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from .errors import UnmountError
from .executor import PrivilegedExecutor

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "optical_archive_"
CLEANUP_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _interrupt(signum, frame):
    raise KeyboardInterrupt(f"Received signal {signal.Signals(signum).name}")


class ScratchSpace:
    """
    Scratch directory holding the temporary image and the mount point.

    Used as a context manager: on exit, whatever the reason, the mount
    point is released and the directory removed. SIGTERM and SIGHUP are
    turned into KeyboardInterrupt while inside, so they unwind through the
    same path as Ctrl+C.
    """

    def __init__(self, executor: PrivilegedExecutor, base_dir: Optional[str] = None) -> None:
        self._executor = executor
        self._base_dir = base_dir
        self._saved_handlers: Dict[int, object] = {}
        self.path: Optional[Path] = None

    @property
    def mount_dir(self) -> Path:
        return self.path / "mount"

    @property
    def image_path(self) -> Path:
        return self.path / "temp.iso"

    def __enter__(self) -> "ScratchSpace":
        self.path = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=self._base_dir))
        self.mount_dir.mkdir()
        if threading.current_thread() is threading.main_thread():
            for signum in CLEANUP_SIGNALS:
                self._saved_handlers[signum] = signal.signal(signum, _interrupt)
        logger.info("Working directory ready at %s", self.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, handler in self._saved_handlers.items():
            signal.signal(signum, handler)
        self._saved_handlers.clear()
        self.cleanup()

    def cleanup(self) -> None:
        if self.path is None:
            return
        if os.path.ismount(self.mount_dir):
            try:
                self._executor.unmount(self.mount_dir, lazy=True)
            except UnmountError as exc:
                logger.error("%s", exc)
        shutil.rmtree(self.path, ignore_errors=True)
        logger.info("Removed working directory %s", self.path)
        self.path = None
