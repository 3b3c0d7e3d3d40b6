#!/usr/bin/env python3
"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - Optical disc archival tool

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import argparse
import logging
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

# Skript je vždy spúšťaný ako nainštalovaný balíček cez Penterep platformu,
# relatívny import _version.py je preto vždy validný.
from ._version import __version__

from ptlibs import ptjsonlib, ptprinthelper
from ptlibs.ptprinthelper import ptprint

from .device import UNKNOWN_LABEL, DeviceLocator, OpticalDevice
from .errors import ArchivalError, CollisionError, DependencyError, OwnershipError, UnmountError
from .executor import PrivilegedExecutor, SudoExecutor, invoking_user
from .extractor import ContentExtractor, FileTree
from .imager import RawImage, RawImager
from .metadata import (
    InteractiveMetadataProvider, MetadataProvider, StaticMetadataProvider, SuppliedFields,
)
from .provenance import ProvenanceRecord, ProvenanceRecorder
from .scratch import ScratchSpace
from .store import ArchiveEntry, ArchiveStore, content_address_of_file
from .verifier import IntegrityReport, IntegrityVerifier

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

SCRIPTNAME           = "ptopticalarchive"
DEFAULT_ARCHIVE_ROOT = "/var/forensics/optical"
DEFAULT_LOG_DIR      = "/var/log/forensics"
FALLBACK_LOG_DIR     = "/tmp/forensics"
PROGRESS_INTERVAL    = 256 * 1024 * 1024   # report imaging progress every 256 MB
TOTAL_STEPS          = 8

# ---------------------------------------------------------------------------
# RUN STATE
# ---------------------------------------------------------------------------

@dataclass
class ArchivalContext:
    """Run state threaded through the pipeline, filled in step by step."""
    state:        str = "Idle"
    owner:        Optional[str] = None
    device:       Optional[OpticalDevice] = None
    volume_label: str = UNKNOWN_LABEL
    block_count:  int = 0
    image:        Optional[RawImage] = None
    address:      Optional[str] = None
    entry:        Optional[ArchiveEntry] = None
    tree:         Optional[FileTree] = None
    report:       Optional[IntegrityReport] = None
    record:       Optional[ProvenanceRecord] = None
    existing:     Optional[ProvenanceRecord] = None
    warnings:     List[str] = field(default_factory=list)
    error:        Optional[str] = None

# ---------------------------------------------------------------------------
# MAIN CLASS
# ---------------------------------------------------------------------------

class PtOpticalArchive:
    """
    Optical disc archival tool – ptlibs compliant.

    Pipeline:
      1. Locate drive        (lsblk)
      2. Unmount medium      (umount, lazy umount as fallback)
      3. Block count         (blockdev, 2048-byte blocks)
      4. Raw image           (zero-fill on unreadable blocks)
      5. Content address     (cksum) and staged archive entry
      6. File tree           (read-only loop mount + copy)
      7. Integrity           (SHA-256 of stored image vs fresh medium read)
      8. Provenance record   (<A>.xml) and publication of <root>/<A>

    Steps 1-5 are fatal on failure and leave no entry behind.
    Steps 6-7 degrade to warnings; the image is already stored. A failure
    in step 8 keeps the staging directory; only an interrupt removes it.
    """

    def __init__(self, args: argparse.Namespace,
                 executor: Optional[PrivilegedExecutor] = None,
                 locator: Optional[DeviceLocator] = None,
                 metadata_provider: Optional[MetadataProvider] = None,
                 opener: Callable = open) -> None:
        self.ptjsonlib = ptjsonlib.PtJsonLib()
        self.args      = args
        self.executor  = executor or SudoExecutor()
        self.locator   = locator or DeviceLocator()
        self.store     = ArchiveStore(args.archive_root)
        self.imager    = RawImager(self.executor, opener=opener, progress=self._progress)
        self.verifier  = IntegrityVerifier(opener=opener)
        self.provider  = metadata_provider or self._default_provider()
        self.recorder  = ProvenanceRecorder(self.provider)
        self.context   = ArchivalContext(owner=args.owner or invoking_user())

        self._next_progress = PROGRESS_INTERVAL
        self.logger, self.log_dir = self._setup_logger()

        self.ptjsonlib.add_properties({
            "archiveRoot":        str(self.store.root),
            "timestamp":          datetime.now(timezone.utc).isoformat(),
            "scriptVersion":      __version__,
            "device":             None,
            "volumeLabel":        None,
            "blockCount":         None,
            "dedupChecksum":      None,
            "entryPath":          None,
            "filesExtracted":     None,
            "imageDigest":        None,
            "mediumDigest":       None,
            "hashMatch":          None,
            "verificationStatus": "UNKNOWN",
            "warnings":           [],
            "state":              self.context.state,
        })

    # --- setup --------------------------------------------------------------

    def _default_provider(self) -> MetadataProvider:
        if self.args.metadata:
            return StaticMetadataProvider.from_file(self.args.metadata)
        if self.args.json:
            # platform runs cannot answer prompts
            return StaticMetadataProvider()
        return InteractiveMetadataProvider()

    def _setup_logger(self) -> Tuple[logging.Logger, Path]:
        log_dir = Path(self.args.log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            log_dir = Path(FALLBACK_LOG_DIR)
            log_dir.mkdir(parents=True, exist_ok=True)

        # Package logger: every component logs below it
        logger = logging.getLogger("ptopticalarchive")
        logger.setLevel(logging.DEBUG)
        fh = logging.FileHandler(log_dir / f"optical_archive_{datetime.now().strftime('%Y%m%d')}.log")
        fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        self._handlers = [fh]
        if self.args.verbose and not self.args.json:
            self._handlers.append(logging.StreamHandler())
        for handler in self._handlers:
            logger.addHandler(handler)
        return logger, log_dir

    def _close_logger(self) -> None:
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    # --- helpers ------------------------------------------------------------

    def _title(self, step: int, text: str) -> None:
        ptprint(f"\n[{step}/{TOTAL_STEPS}] {text}", "TITLE", condition=not self.args.json)

    def _add_node(self, node_type: str, success: bool, **kwargs) -> None:
        """Append a result node to the JSON output."""
        self.ptjsonlib.add_node(self.ptjsonlib.create_node_object(
            node_type,
            properties={"success": success, **kwargs},
        ))

    def _set_state(self, state: str) -> None:
        self.context.state = state
        self.ptjsonlib.add_properties({"state": state})
        self.logger.debug("State: %s", state)

    def _warn(self, message: str) -> None:
        """Non-fatal condition: printed, logged and folded into the record."""
        self.context.warnings.append(message)
        self.ptjsonlib.add_properties({"warnings": list(self.context.warnings)})
        self.logger.warning(message)
        ptprint(message, "WARNING", condition=not self.args.json)

    def _progress(self, done: int, total: int) -> None:
        if done < self._next_progress and done < total:
            return
        self._next_progress = done + PROGRESS_INTERVAL
        ptprint(f"Progress: {done / 1024 ** 2:.0f} / {total / 1024 ** 2:.0f} MB "
                f"({done * 100 / total:.0f}%)",
                "INFO", condition=not self.args.json and not self.args.quiet)

    # --- steps --------------------------------------------------------------

    def check_dependencies(self) -> None:
        missing = self.executor.missing_commands()
        self._add_node("dependencyCheck", not missing, missingCommands=missing)
        if missing:
            raise DependencyError(f"Missing required commands: {' '.join(missing)}")

    def locate_device(self) -> None:
        """Step 1: Find the optical drive."""
        self._title(1, "Detecting optical drive")
        device = self.locator.locate(self.args.device)
        self.context.device       = device
        self.context.volume_label = self.locator.volume_label(device.path)

        self.ptjsonlib.add_properties({"device": device.path,
                                       "volumeLabel": self.context.volume_label})
        self._add_node("deviceDetection", True, device=device.path,
                       mountPoint=device.mount_point, volumeLabel=self.context.volume_label)
        ptprint(f"Found device: {device.path} (label: {self.context.volume_label})",
                "OK", condition=not self.args.json)
        self._set_state("Located")

    def unmount_device(self) -> None:
        """Step 2: Release the medium if the desktop auto-mounted it."""
        self._title(2, f"Unmounting {self.context.device.path} if needed")
        mount_point = self.context.device.mount_point
        lazy = False
        if mount_point:
            try:
                self.executor.unmount(Path(mount_point))
            except UnmountError as exc:
                self.logger.warning("%s - retrying lazily", exc)
                lazy = True
                self.executor.unmount(Path(mount_point), lazy=True)
            self.context.device.mount_point = None

        self._add_node("deviceUnmount", True, mountPoint=mount_point, lazy=lazy)
        ptprint("Device unmounted" if mount_point else "Device was not mounted",
                "OK", condition=not self.args.json)
        self._set_state("Unmounted")

    def determine_block_count(self) -> None:
        """Step 3: Block count from the reported device size."""
        self._title(3, "Getting block count")
        device = self.context.device
        self.context.block_count = self.imager.determine_block_count(device)

        self.ptjsonlib.add_properties({"blockCount": self.context.block_count})
        self._add_node("blockCount", True, deviceSizeBytes=device.size_bytes,
                       blockSize=device.block_size, blockCount=self.context.block_count)
        ptprint(f"{self.context.block_count} blocks ({device.block_size} bytes each)",
                "OK", condition=not self.args.json)

    def create_image(self, scratch: ScratchSpace) -> None:
        """Step 4: Raw image of the whole medium into scratch storage."""
        self._title(4, "Creating raw image")
        image = self.imager.image(self.context.device, self.context.block_count,
                                  scratch.image_path)
        self.context.image = image

        self._add_node("rawImage", True, imagePath=str(image.path),
                       sizeBytes=image.size_bytes, unreadableBlocks=len(image.bad_blocks))
        if image.bad_blocks:
            self._warn(f"{len(image.bad_blocks)} unreadable block(s) were zero-filled "
                       f"(first at block {image.bad_blocks[0]}).")
        ptprint(f"Raw image created: {image.size_bytes:,} bytes",
                "OK", condition=not self.args.json)
        self._set_state("Imaged")

    def store_image(self) -> None:
        """Step 5: Content address and staged archive entry."""
        self._title(5, "Calculating content address and storing image")
        address = content_address_of_file(self.context.image.path)
        self.context.address = address
        self.ptjsonlib.add_properties({"dedupChecksum": address})
        self._set_state("Addressed")
        ptprint(f"CRC32 (cksum): {address}", "INFO", condition=not self.args.json)

        leftovers = self.store.find_staging(address)
        if leftovers:
            ptprint(f"{len(leftovers)} incomplete staging director(ies) from interrupted runs: "
                    f"{', '.join(p.name for p in leftovers)}", "INFO", condition=not self.args.json)

        try:
            entry = self.store.create_entry(address, self.context.image)
        except CollisionError as exc:
            self._report_existing(address)
            existing = self.context.existing
            self._add_node("archiveEntry", False, dedupChecksum=address,
                           entryPath=str(exc.path), error="collision",
                           existingArchivedAt=existing.archived_at if existing else None)
            self._set_state("CollisionFailed")
            raise

        self.context.entry = entry
        self.ptjsonlib.add_properties({"entryPath": str(entry.final_path)})
        self._add_node("archiveEntry", True, dedupChecksum=address,
                       entryPath=str(entry.final_path), stagingPath=str(entry.staging_path))
        ptprint(f"Image stored as {entry.image_path.name}", "OK", condition=not self.args.json)
        self._set_state("Stored")

    def _report_existing(self, address: str) -> None:
        """Show when the colliding entry was archived, read from its record."""
        path = self.store.record_path(address)
        try:
            existing = ProvenanceRecord.from_xml(path)
        except (OSError, ET.ParseError, ValueError) as exc:
            self.logger.warning("Could not read existing record %s: %s", path, exc)
            return
        self.context.existing = existing
        ptprint(f"Already archived at {existing.archived_at} "
                f"as \"{existing.supplied.display_name or existing.volume_label}\"",
                "INFO", condition=not self.args.json)

    def extract_content(self, scratch: ScratchSpace) -> None:
        """Step 6: Copy the logical file tree of the stored image."""
        self._title(6, "Mounting image and copying contents")
        entry = self.context.entry
        extractor = ContentExtractor(self.executor, scratch.mount_dir)
        tree = extractor.extract(entry.image_path, entry.content_dir, owner=self.context.owner)
        self.context.tree = tree

        for message in tree.warnings:
            self._warn(message)
        self.ptjsonlib.add_properties({"filesExtracted": len(tree.files)})
        self._add_node("contentExtraction", tree.mounted, mounted=tree.mounted,
                       filesExtracted=len(tree.files), warnings=list(tree.warnings))
        ptprint(f"{len(tree.files)} file(s) copied to {entry.content_dir.name}/",
                "OK", condition=not self.args.json)
        self._set_state("Extracted")

    def verify_integrity(self) -> None:
        """Step 7: Stored image digest against a fresh read of the medium."""
        self._title(7, "Verifying SHA-256 checksums")
        report = self.verifier.verify(self.context.entry.image_path, self.context.device,
                                      self.context.block_count)
        self.context.report = report

        ptprint(f"Image file SHA-256:  {report.image_digest}", "INFO", condition=not self.args.json)
        ptprint(f"Live stream SHA-256: {report.medium_digest}", "INFO", condition=not self.args.json)

        self.ptjsonlib.add_properties({
            "imageDigest":        report.image_digest,
            "mediumDigest":       report.medium_digest,
            "hashMatch":          report.match,
            "verificationStatus": report.status,
        })
        self._add_node("hashVerification", report.match, imageDigest=report.image_digest,
                       mediumDigest=report.medium_digest, verificationStatus=report.status,
                       unreadableBlocks=report.unreadable_blocks, error=report.error)

        if report.error:
            self._warn(f"Verification incomplete: {report.error}")
        elif not report.match:
            self._warn("SHA-256 checksum mismatch between stored image and fresh medium read.")
        else:
            ptprint("SHA-256 checksums match", "OK", condition=not self.args.json)
        self._set_state("Verified")

    def record_provenance(self) -> None:
        """Step 8: Provenance record, ownership and publication of the entry."""
        self._title(8, "Generating provenance record")
        ctx   = self.context
        entry = ctx.entry
        defaults = {"display_name": ctx.volume_label, "device_used": ctx.device.path}
        try:
            supplied = self.provider.supply(defaults)
        except (EOFError, ValueError, OSError) as exc:
            self._warn(f"Descriptive metadata not collected ({type(exc).__name__}: {exc}); "
                       f"record holds defaults only.")
            supplied = SuppliedFields().with_defaults(defaults)

        computed: Dict[str, object] = {
            "content_address":     ctx.report.medium_digest,
            "volume_label":        ctx.volume_label,
            "image_path":          entry.image_path,
            "dedup_checksum":      ctx.address,
            "image_digest":        ctx.report.image_digest,
            "verification_status": ctx.report.status,
            "unreadable_blocks":   len(ctx.image.bad_blocks),
            "warnings":            list(ctx.warnings),
        }
        ctx.record = self.recorder.record(entry.record_path, computed, defaults, supplied=supplied)
        self._set_state("Recorded")

        try:
            self.executor.chown(entry.path, ctx.owner)
        except OwnershipError as exc:
            self._warn(str(exc))

        self.store.commit(entry)
        self._add_node("provenanceRecord", True, recordPath=str(entry.record_path),
                       contentAddress=ctx.record.content_address,
                       usedSizeMB=ctx.record.used_size_mb)
        ptprint(f"Metadata saved to {entry.record_path.name}", "OK", condition=not self.args.json)
        self._set_state("Done")

    # --- run & save ---------------------------------------------------------

    @property
    def exit_code(self) -> int:
        return 0 if self.context.state == "Done" else 1

    def _fail(self, exc: ArchivalError) -> None:
        self.context.error = str(exc)
        self.logger.error("%s", exc)
        self.ptjsonlib.add_properties({"error": str(exc)})
        self._add_node("archivalError", False, errorType=type(exc).__name__,
                       error=str(exc), state=self.context.state)
        ptprint(f"Error: {exc}", "ERROR", condition=not self.args.json)

        entry = self.context.entry
        if entry and not entry.committed and entry.staging_path.exists():
            self.logger.warning("Stored image kept in %s", entry.staging_path)
            self.ptjsonlib.add_properties({"stagingPath": str(entry.staging_path)})
            ptprint(f"Stored image kept in {entry.staging_path}",
                    "WARNING", condition=not self.args.json)

    def run(self) -> None:
        """Execute the full archival workflow."""
        ptprint("=" * 70, "TITLE", condition=not self.args.json)
        ptprint(f"OPTICAL DISC ARCHIVAL v{__version__} | Archive: {self.store.root}",
                "TITLE", condition=not self.args.json)
        ptprint("=" * 70, "TITLE", condition=not self.args.json)

        try:
            self.check_dependencies()
            self.locate_device()
            self.unmount_device()
            self.determine_block_count()
            with ScratchSpace(self.executor, self.args.scratch_dir) as scratch:
                self.create_image(scratch)
                self.store_image()
                try:
                    self.extract_content(scratch)
                    self.verify_integrity()
                    self.record_provenance()
                except KeyboardInterrupt:
                    # any other failure keeps the staged image for the operator
                    self.context.entry.discard()
                    raise
        except ArchivalError as exc:
            self._fail(exc)
        finally:
            self._close_logger()

        self._summary()
        self.ptjsonlib.set_status("finished")

    def _summary(self) -> None:
        ctx = self.context
        ptprint("\n" + "=" * 70, "TITLE", condition=not self.args.json)
        if ctx.state == "Done":
            ptprint("ARCHIVAL COMPLETED", "OK", condition=not self.args.json)
            ptprint(f"Entry:    {ctx.entry.final_path}", "INFO", condition=not self.args.json)
            ptprint(f"SHA-256:  {ctx.report.medium_digest or '-'} ({ctx.report.status})",
                    "INFO", condition=not self.args.json)
            ptprint(f"Files:    {len(ctx.tree.files)}", "INFO", condition=not self.args.json)
            if ctx.warnings:
                ptprint(f"Completed with {len(ctx.warnings)} warning(s):",
                        "WARNING", condition=not self.args.json)
                for message in ctx.warnings:
                    ptprint(f"  {message}", "WARNING", condition=not self.args.json)
        else:
            ptprint(f"ARCHIVAL FAILED at state {ctx.state}", "ERROR", condition=not self.args.json)
        ptprint("=" * 70, "TITLE", condition=not self.args.json)

    def save_report(self) -> Optional[str]:
        """Output JSON report to stdout (--json) or to the log directory."""
        if self.args.json:
            ptprint(self.ptjsonlib.get_result_json(), "", self.args.json)
            return None

        name = self.context.address or "failed"
        outfile = self.log_dir / f"archival_{name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        outfile.write_text(self.ptjsonlib.get_result_json(), encoding="utf-8")
        ptprint(f"Report saved: {outfile}", "OK", condition=not self.args.json)
        return str(outfile)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def get_help() -> List[Dict]:
    return [
        {"description": ["Optical disc archival tool – ptlibs compliant",
                         "Raw image, extracted file tree and provenance record per disc,",
                         "stored under the disc's CRC32 (cksum) content address"]},
        {"usage": ["ptopticalarchive [options]"]},
        {"usage_example": ["ptopticalarchive",
                           "ptopticalarchive -d /dev/sr1 -o /srv/optical",
                           "ptopticalarchive --metadata disc.json --json"]},
        {"options": [
            ["-o", "--archive-root", "<dir>",  f"Archive root (default: {DEFAULT_ARCHIVE_ROOT})"],
            ["-d", "--device",       "<dev>",  "Optical device (default: auto-detect)"],
            ["-m", "--metadata",     "<file>", "JSON file with descriptive fields (no prompts)"],
            ["--owner",              "<user>", "Owner of the archived files (default: invoking user)"],
            ["--scratch-dir",        "<dir>",  "Parent of the temporary working directory"],
            ["--log-dir",            "<dir>",  f"Log directory (default: {DEFAULT_LOG_DIR})"],
            ["-v", "--verbose",      "",       "Verbose logging"],
            ["-j", "--json",         "",       "JSON output for Penterep platform"],
            ["-q", "--quiet",        "",       "Suppress progress output"],
            ["-h", "--help",         "",       "Show help"],
            ["--version",            "",       "Show version"],
        ]},
        {"archive_layout": [
            "<archive-root>/<A>/<A>.iso   raw image (2048-byte blocks)",
            "<archive-root>/<A>/content/  extracted file tree",
            "<archive-root>/<A>/<A>.xml   provenance record",
        ]},
        {"notes": [
            "An existing <A> is never overwritten – the run aborts instead",
            "Unreadable blocks are zero-filled, the copy continues",
            "SHA-256 mismatch and extraction problems are warnings, exit status stays 0",
        ]},
    ]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-o", "--archive-root", default=DEFAULT_ARCHIVE_ROOT)
    parser.add_argument("-d", "--device",       default=None)
    parser.add_argument("-m", "--metadata",     default=None)
    parser.add_argument("--owner",              default=None)
    parser.add_argument("--scratch-dir",        default=None)
    parser.add_argument("--log-dir",            default=DEFAULT_LOG_DIR)
    parser.add_argument("-v", "--verbose",      action="store_true")
    parser.add_argument("-q", "--quiet",        action="store_true")
    parser.add_argument("-j", "--json",         action="store_true")
    parser.add_argument("--version", action="version", version=f"{SCRIPTNAME} {__version__}")

    # No argument is required, so help is shown only on request
    if {"-h", "--help"} & set(sys.argv):
        ptprinthelper.help_print(get_help(), SCRIPTNAME, __version__)
        sys.exit(0)

    args = parser.parse_args()
    if args.json:
        args.quiet = True
    ptprinthelper.print_banner(SCRIPTNAME, __version__, args.json)
    return args


def main() -> int:
    try:
        args = parse_args()

        archiver = PtOpticalArchive(args)
        archiver.run()
        archiver.save_report()

        return archiver.exit_code

    except KeyboardInterrupt:
        ptprint("Interrupted by user.", "WARNING", condition=True)
        return 130
    except Exception as exc:
        ptprint(f"ERROR: {exc}", "ERROR", condition=True)
        return 99


if __name__ == "__main__":
    sys.exit(main())
