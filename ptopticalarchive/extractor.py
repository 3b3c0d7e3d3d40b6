"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - logical file tree extraction

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import MountError, OwnershipError, UnmountError
from .executor import PrivilegedExecutor

logger = logging.getLogger(__name__)

MOUNT_OPTIONS = ("loop", "ro")


@dataclass
class FileTree:
    root: Path
    mounted: bool = False
    files: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.files


class ContentExtractor:
    """
    Loop-mounts the stored image read-only and copies its file tree.

    Every failure here is non-fatal: the image is already stored, so a
    failed mount or copy only leaves the tree empty or partial and adds
    a warning.
    """

    def __init__(self, executor: PrivilegedExecutor, mount_dir: Path) -> None:
        self._executor = executor
        self.mount_dir = Path(mount_dir)

    @contextmanager
    def mounted(self, image_path: Path) -> Iterator[Path]:
        self._executor.mount(image_path, self.mount_dir, MOUNT_OPTIONS)
        try:
            yield self.mount_dir
        finally:
            self._release()

    def _release(self) -> None:
        try:
            self._executor.unmount(self.mount_dir)
        except UnmountError as exc:
            logger.warning("%s - retrying lazily", exc)
            try:
                self._executor.unmount(self.mount_dir, lazy=True)
            except UnmountError as lazy_exc:
                logger.error("Image left mounted: %s", lazy_exc)

    def extract(self, image_path: Path, destination: Path,
                owner: Optional[str] = None) -> FileTree:
        tree = FileTree(root=Path(destination))
        tree.root.mkdir(parents=True, exist_ok=True)

        try:
            with self.mounted(image_path) as source:
                tree.mounted = True
                self._copy(source, tree)
        except MountError as exc:
            logger.warning("%s", exc)
            tree.warnings.append(f"Could not mount image ({exc}); extracted tree is empty.")

        tree.files = sorted(p.relative_to(tree.root) for p in tree.root.rglob("*")
                            if p.is_file() or p.is_symlink())
        if tree.mounted and tree.empty:
            tree.warnings.append("No files to copy; the image may contain non-mountable data.")
        logger.info("Extracted %d file(s) into %s", len(tree.files), tree.root)

        if owner:
            self.reassign_ownership(tree, owner)
        return tree

    def _copy(self, source: Path, tree: FileTree) -> None:
        try:
            shutil.copytree(source, tree.root, symlinks=True, dirs_exist_ok=True)
        except shutil.Error as exc:
            failed = exc.args[0] if exc.args and isinstance(exc.args[0], list) else []
            logger.warning("Copy incomplete: %d item(s) failed", len(failed))
            tree.warnings.append(f"Copy incomplete: {len(failed)} item(s) could not be copied.")
        except OSError as exc:
            logger.warning("Copy failed: %s", exc)
            tree.warnings.append(f"Copy failed: {exc}")

    def reassign_ownership(self, tree: FileTree, owner: str) -> None:
        try:
            self._executor.chown(tree.root, owner)
            logger.info("Ownership of %s reassigned to %s", tree.root, owner)
        except OwnershipError as exc:
            logger.warning("%s", exc)
            tree.warnings.append(str(exc))
