"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - provenance record

    The record is written once, next to the image, as <A>.xml:

      <opticalDisc contentAddress="..." archivedAtTimestamp="..." burnedTimestamp="">
        <enteredBy>...</enteredBy>
        ...
      </opticalDisc>

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import math
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

from .errors import RecordError
from .metadata import MetadataProvider, SuppliedFields

logger = logging.getLogger(__name__)

ROOT_TAG        = "opticalDisc"
ROOT_ATTRIBUTES = ("contentAddress", "archivedAtTimestamp", "burnedTimestamp")
# Element order of the record body
ELEMENT_ORDER = (
    "enteredBy", "displayName", "volumeLabel", "mediaType", "usedSizeMB", "description",
    "transferredBy", "deviceUsed", "transferDate", "transferLocation", "exemplarNumber",
    "exemplarTotal", "seriesTotal", "seriesIndex", "ownership", "mediaCapacity", "retention",
    "dedupChecksum", "imageDigest", "verificationStatus", "unreadableBlocks",
)
MIB = 1024 * 1024
_SUPPLIED_KEYS = set(SuppliedFields().as_record())


def used_size_mb(path: Union[str, Path]) -> int:
    """Size in MiB rounded up, as ``du -sm`` reports it."""
    return math.ceil(os.path.getsize(path) / MIB)


def iso_timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class ProvenanceRecord:
    content_address: str
    archived_at: str
    volume_label: str
    used_size_mb: int
    supplied: SuppliedFields
    dedup_checksum: str = ""
    image_digest: str = ""
    verification_status: str = ""
    unreadable_blocks: int = 0
    warnings: List[str] = field(default_factory=list)

    def fields(self) -> Dict[str, str]:
        """All record fields keyed by their record names."""
        values = self.supplied.as_record()
        values.update({
            "contentAddress":      self.content_address,
            "archivedAtTimestamp": self.archived_at,
            "volumeLabel":         self.volume_label,
            "usedSizeMB":          str(self.used_size_mb),
            "dedupChecksum":       self.dedup_checksum,
            "imageDigest":         self.image_digest,
            "verificationStatus":  self.verification_status,
            "unreadableBlocks":    str(self.unreadable_blocks),
        })
        return values

    def to_xml(self) -> ET.ElementTree:
        values = self.fields()
        root = ET.Element(ROOT_TAG, {name: values[name] for name in ROOT_ATTRIBUTES})
        for name in ELEMENT_ORDER:
            ET.SubElement(root, name).text = values[name]
        warnings = ET.SubElement(root, "warnings")
        for message in self.warnings:
            ET.SubElement(warnings, "warning").text = message
        ET.indent(root)
        return ET.ElementTree(root)

    @classmethod
    def from_xml(cls, path: Union[str, Path]) -> "ProvenanceRecord":
        root = ET.parse(path).getroot()
        values = {child.tag: child.text or "" for child in root if child.tag != "warnings"}
        values.update(root.attrib)
        supplied = SuppliedFields.from_mapping(
            {k: v for k, v in values.items() if k in _SUPPLIED_KEYS})
        return cls(
            content_address=values.get("contentAddress", ""),
            archived_at=values.get("archivedAtTimestamp", ""),
            volume_label=values.get("volumeLabel", ""),
            used_size_mb=int(values.get("usedSizeMB") or 0),
            supplied=supplied,
            dedup_checksum=values.get("dedupChecksum", ""),
            image_digest=values.get("imageDigest", ""),
            verification_status=values.get("verificationStatus", ""),
            unreadable_blocks=int(values.get("unreadableBlocks") or 0),
            warnings=[w.text or "" for w in root.iterfind("warnings/warning")],
        )


class ProvenanceRecorder:
    """Assembles computed and supplied fields and persists the record once."""

    def __init__(self, provider: MetadataProvider,
                 clock: Callable[[], str] = iso_timestamp) -> None:
        self._provider = provider
        self._clock    = clock

    def record(self, record_path: Path, computed: Mapping[str, object],
               defaults: Mapping[str, str],
               supplied: Optional[SuppliedFields] = None) -> ProvenanceRecord:
        """
        Build and write the record to ``record_path``.

        ``computed`` carries the pipeline values: content_address,
        volume_label, image_path and optionally dedup_checksum, image_digest,
        verification_status, unreadable_blocks and warnings. ``supplied``
        bypasses the provider.
        """
        if supplied is None:
            supplied = self._provider.supply(defaults)
        missing = [key for key in ("content_address", "volume_label", "image_path")
                   if key not in computed]
        if missing:
            raise RecordError(f"Missing computed field(s): {', '.join(missing)}")

        record = ProvenanceRecord(
            content_address=str(computed["content_address"]),
            archived_at=self._clock(),
            volume_label=str(computed["volume_label"]),
            used_size_mb=used_size_mb(computed["image_path"]),
            supplied=supplied,
            dedup_checksum=str(computed.get("dedup_checksum", "")),
            image_digest=str(computed.get("image_digest", "")),
            verification_status=str(computed.get("verification_status", "")),
            unreadable_blocks=int(computed.get("unreadable_blocks", 0)),
            warnings=list(computed.get("warnings", [])),
        )
        self.write(record, record_path)
        return record

    @staticmethod
    def write(record: ProvenanceRecord, record_path: Path) -> None:
        try:
            # "xb": the record is immutable once written
            with open(record_path, "xb") as fh:
                record.to_xml().write(fh, encoding="UTF-8", xml_declaration=True)
        except FileExistsError as exc:
            raise RecordError(f"Record {record_path} already exists") from exc
        except OSError as exc:
            raise RecordError(f"Could not write record {record_path}: {exc}") from exc
        logger.info("Provenance record saved to %s", record_path)
