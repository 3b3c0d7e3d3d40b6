"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - exception taxonomy

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""


class ArchivalError(Exception):
    """Base class for errors that abort an archival run."""


class DependencyError(ArchivalError):
    pass


class DeviceNotFoundError(ArchivalError):
    pass


class UnmountError(ArchivalError):
    pass


class SizeError(ArchivalError):
    pass


class ImagingError(ArchivalError):
    pass


class CollisionError(ArchivalError):
    """Raised when an entry for the content address already exists."""

    def __init__(self, address: str, path) -> None:
        super().__init__(f"Destination {path} already exists. Aborting to prevent overwrite.")
        self.address = address
        self.path = path


class RecordError(ArchivalError):
    pass


class PublishError(ArchivalError):
    pass


# Degraded to warnings by the stage that triggers them
class MountError(Exception):
    pass


class OwnershipError(Exception):
    pass
