"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptopticalarchive - Optical disc archival tool

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

from ._version import __version__
