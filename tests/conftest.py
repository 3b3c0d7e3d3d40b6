"""Shared fixtures: simulated optical media and fake privileged operations.

Media are regular files; nothing here needs a drive or root.
"""

import argparse
import io
import os
import shutil
from pathlib import Path

import pytest

from ptopticalarchive.device import BLOCK_SIZE, DeviceLocator
from ptopticalarchive.errors import MountError, OwnershipError, UnmountError
from ptopticalarchive.executor import PrivilegedExecutor
from ptopticalarchive.metadata import StaticMetadataProvider
from ptopticalarchive.ptopticalarchive import PtOpticalArchive

MEDIUM_BLOCKS = 100
# cksum(1) and sha256sum(1) of medium_bytes()
MEDIUM_CKSUM  = "1225339836"
MEDIUM_SHA256 = "37ebe764ec633ea8178a6f6b9888a301d2d717f2e803e1385312ebbac002cb31"

METADATA = {
    "enteredBy":        "J. Novak",
    "description":      "Family photos 2009",
    "transferredBy":    "J. Novak",
    "transferDate":     "2025-06-29",
    "transferLocation": "Brno",
    "exemplarNumber":   "1",
    "exemplarTotal":    "2",
    "seriesTotal":      "3",
    "seriesIndex":      "1",
    "ownership":        "Novak family",
    "mediaType":        "DVD",
    "mediaCapacity":    "4.7GB",
    "retention":        "10 years",
}


def medium_bytes(blocks: int = MEDIUM_BLOCKS) -> bytes:
    """Block i is filled with byte (7*i + 1) mod 256."""
    return b"".join(bytes([(i * 7 + 1) % 256]) * BLOCK_SIZE for i in range(blocks))


class FakeRunner:
    """Stands in for run_command; unknown commands fail."""

    def __init__(self, outputs=None):
        self.outputs = {tuple(k): v for k, v in (outputs or {}).items()}
        self.calls = []

    def __call__(self, cmd, timeout=None):
        self.calls.append(list(cmd))
        base = {"success": False, "stdout": "", "stderr": "not available",
                "returncode": 1, "duration": 0.0}
        if tuple(cmd) in self.outputs:
            base.update({"success": True, "stdout": self.outputs[tuple(cmd)],
                         "stderr": "", "returncode": 0})
        return base


class FakeExecutor(PrivilegedExecutor):
    """
    Records privileged calls. ``mount`` copies ``mount_source`` into the
    mount point, or fails like a non-filesystem image when it is None.
    """

    def __init__(self, device_size=None, mount_source=None, fail_unmount=False,
                 fail_lazy_unmount=False, fail_chown=False, missing=()):
        self.device_size       = device_size
        self.mount_source      = mount_source
        self.fail_unmount      = fail_unmount
        self.fail_lazy_unmount = fail_lazy_unmount
        self.fail_chown        = fail_chown
        self.missing           = list(missing)
        self.mounted = set()
        self.calls = []

    def mount(self, source, target, options=("loop", "ro")):
        self.calls.append(("mount", Path(source), Path(target), tuple(options)))
        if self.mount_source is None:
            raise MountError(f"Could not mount {source}: wrong fs type, bad superblock")
        # file by file, so tests may patch shutil.copytree for the code under test
        tree = Path(self.mount_source)
        for src in sorted(tree.rglob("*")):
            dst = Path(target) / src.relative_to(tree)
            if src.is_dir():
                dst.mkdir(parents=True, exist_ok=True)
            else:
                dst.parent.mkdir(parents=True, exist_ok=True)
                dst.write_bytes(src.read_bytes())
        self.mounted.add(Path(target))

    def unmount(self, target, lazy=False):
        self.calls.append(("unmount", Path(target), lazy))
        if (self.fail_lazy_unmount if lazy else self.fail_unmount):
            raise UnmountError(f"Could not unmount {target}: target is busy")
        target = Path(target)
        if target in self.mounted:
            self.mounted.discard(target)
            for child in target.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()

    def query_device_size(self, device):
        return os.path.getsize(device) if self.device_size is None else self.device_size

    def chown(self, path, owner):
        self.calls.append(("chown", Path(path), owner))
        if self.fail_chown:
            raise OwnershipError(f"Could not reassign {path} to {owner}: Operation not permitted")

    def missing_commands(self):
        return list(self.missing)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class ChangingMedium:
    """Opener whose device content differs from the second open onwards."""

    def __init__(self, device_path, changed: bytes):
        self.device_path = str(device_path)
        self.changed = changed
        self.opens = 0

    def __call__(self, path, mode="rb"):
        if str(path) != self.device_path:
            return open(path, mode)
        self.opens += 1
        if self.opens == 1:
            return open(path, mode)
        return io.BytesIO(self.changed)


class FlakyMedium(io.BytesIO):
    """In-memory medium whose reads fail when they touch a bad block."""

    def __init__(self, data: bytes, bad_blocks):
        super().__init__(data)
        self.bad_blocks = set(bad_blocks)

    def read(self, size=-1):
        start = self.tell()
        end = len(self.getbuffer()) if size is None or size < 0 else start + size
        touched = range(start // BLOCK_SIZE, max(start, end - 1) // BLOCK_SIZE + 1)
        if any(block in self.bad_blocks for block in touched):
            raise OSError(5, "Input/output error")
        return super().read(size)


@pytest.fixture
def medium(tmp_path):
    path = tmp_path / "sr0"
    path.write_bytes(medium_bytes())
    return path


@pytest.fixture
def disc_tree(tmp_path):
    """File tree served by FakeExecutor.mount."""
    root = tmp_path / "disc_tree"
    (root / "DATA").mkdir(parents=True)
    (root / "README.TXT").write_text("family photos\n")
    (root / "DATA" / "IMG_0001.JPG").write_bytes(b"\xff\xd8\xff\xe0" + b"\0" * 60)
    return root


@pytest.fixture
def make_args(tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()

    def factory(**overrides):
        values = {
            "archive_root": str(tmp_path / "archive"),
            "device":       None,
            "metadata":     None,
            "owner":        "archivist",
            "scratch_dir":  str(scratch),
            "log_dir":      str(tmp_path / "logs"),
            "verbose":      False,
            "quiet":        True,
            "json":         False,
        }
        values.update(overrides)
        return argparse.Namespace(**values)

    return factory


@pytest.fixture
def make_archiver(make_args, medium):
    def factory(executor, runner=None, opener=open, provider=None, **overrides):
        overrides.setdefault("device", str(medium))
        return PtOpticalArchive(
            make_args(**overrides),
            executor=executor,
            locator=DeviceLocator(runner=runner or FakeRunner()),
            metadata_provider=provider or StaticMetadataProvider(METADATA),
            opener=opener,
        )

    return factory


def snapshot(root: Path):
    """Relative path -> content (None for directories) for a whole tree."""
    if not root.exists():
        return None
    return {str(p.relative_to(root)): (None if p.is_dir() else p.read_bytes())
            for p in sorted(root.rglob("*"))}
