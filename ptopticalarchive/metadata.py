"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - operator-supplied descriptive metadata

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import json
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union


class MediaType(str, Enum):
    CD      = "CD"
    DVD     = "DVD"
    BLU_RAY = "Blu-ray"
    M_DISC  = "M-DISC"

    @classmethod
    def parse(cls, value: str) -> Optional["MediaType"]:
        key = value.strip().lower().replace("-", "").replace(" ", "")
        aliases = {"cd": cls.CD, "dvd": cls.DVD, "bluray": cls.BLU_RAY, "bd": cls.BLU_RAY,
                   "mdisc": cls.M_DISC}
        return aliases.get(key)


# attribute -> record / metadata file key
RECORD_KEYS = {
    "entered_by":        "enteredBy",
    "display_name":      "displayName",
    "description":       "description",
    "transferred_by":    "transferredBy",
    "device_used":       "deviceUsed",
    "transfer_date":     "transferDate",
    "transfer_location": "transferLocation",
    "exemplar_number":   "exemplarNumber",
    "exemplar_total":    "exemplarTotal",
    "series_total":      "seriesTotal",
    "series_index":      "seriesIndex",
    "ownership":         "ownership",
    "media_type":        "mediaType",
    "media_capacity":    "mediaCapacity",
    "retention":         "retention",
    "burned_timestamp":  "burnedTimestamp",
}


@dataclass
class SuppliedFields:
    entered_by:        str = ""
    display_name:      str = ""
    description:       str = ""
    transferred_by:    str = ""
    device_used:       str = ""
    transfer_date:     str = ""
    transfer_location: str = ""
    exemplar_number:   str = ""
    exemplar_total:    str = ""
    series_total:      str = ""
    series_index:      str = ""
    ownership:         str = ""
    media_type:        str = ""
    media_capacity:    str = ""
    retention:         str = ""
    burned_timestamp:  str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "SuppliedFields":
        """Build from record keys (``enteredBy``) or attribute names (``entered_by``)."""
        by_key = {key: attr for attr, key in RECORD_KEYS.items()}
        values, unknown = {}, []
        for key, value in data.items():
            attr = by_key.get(key, key if key in RECORD_KEYS else None)
            if attr is None:
                unknown.append(key)
                continue
            values[attr] = "" if value is None else str(value)
        if values.get("media_type", "").strip():
            media_type = MediaType.parse(values["media_type"])
            if media_type is None:
                raise ValueError(f"Unknown media type: {values['media_type']}")
            values["media_type"] = media_type.value
        if unknown:
            raise ValueError(f"Unknown metadata field(s): {', '.join(sorted(unknown))}")
        return cls(**values)

    def with_defaults(self, defaults: Mapping[str, str]) -> "SuppliedFields":
        """Fill blank fields from ``defaults`` (volume label, device path)."""
        for attr, value in defaults.items():
            if not getattr(self, attr).strip():
                setattr(self, attr, value)
        return self

    def as_record(self) -> Dict[str, str]:
        return {RECORD_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}


# Prompts in the order the operator answers them; "{default}" shows the default
PROMPTS = (
    ("entered_by",        "Who entered this disc into the registry? "),
    ("display_name",      "What is the displayed name when mounted? [{default}] "),
    ("description",       "Short description of contents: "),
    ("transferred_by",    "Who transferred the disc? "),
    ("device_used",       "Device used: [{default}] "),
    ("transfer_date",     "Date of transfer (YYYY-MM-DD): "),
    ("transfer_location", "Transfer location: "),
    ("exemplar_number",   "Exemplar number: "),
    ("exemplar_total",    "Total number of exemplars: "),
    ("series_total",      "Total in series: "),
    ("series_index",      "Index in series: "),
    ("ownership",         "Disc owner: "),
    ("media_type",        "Media type (CD/DVD/Blu-ray/M-DISC): "),
    ("media_capacity",    "Nominal capacity (e.g. 4.7GB): "),
    ("retention",         "Retention period (e.g. 10 years): "),
)


class MetadataProvider:
    """Supplies the descriptive fields of a provenance record."""

    def supply(self, defaults: Mapping[str, str]) -> SuppliedFields:
        raise NotImplementedError


class StaticMetadataProvider(MetadataProvider):
    """Non-interactive provider backed by a mapping of field values."""

    def __init__(self, values: Optional[Mapping[str, object]] = None) -> None:
        self._fields = SuppliedFields.from_mapping(values or {})

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticMetadataProvider":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of metadata fields")
        return cls(data)

    def supply(self, defaults: Mapping[str, str]) -> SuppliedFields:
        return SuppliedFields(**vars(self._fields)).with_defaults(defaults)


class InteractiveMetadataProvider(MetadataProvider):
    """Prompts the operator for every field on the terminal."""

    def __init__(self, input_func: Callable[[str], str] = input) -> None:
        self._input = input_func

    def _ask(self, attr: str, prompt: str, defaults: Mapping[str, str]) -> str:
        answer = self._input(prompt.format(default=defaults.get(attr, ""))).strip()
        if attr != "media_type":
            return answer
        while (media_type := MediaType.parse(answer)) is None:
            answer = self._input(f"Please enter one of {', '.join(m.value for m in MediaType)}: ").strip()
        return media_type.value

    def supply(self, defaults: Mapping[str, str]) -> SuppliedFields:
        values = {attr: self._ask(attr, prompt, defaults) for attr, prompt in PROMPTS}
        return SuppliedFields(**values).with_defaults(defaults)
