"""Detection of ISO 9660 images."""

from __future__ import annotations

import os

_SECTOR = 2048
_SYSTEM_AREA = 16 * _SECTOR
_IDENTIFIER = b"CD001"
_PRIMARY = 1
_TERMINATOR = 255


def is_iso9660(image_path: str | os.PathLike) -> bool:
    """Return whether the file holds an ISO 9660 volume descriptor set.

    Raises OSError when the file cannot be opened.
    """
    with open(image_path, "rb") as f:
        f.seek(_SYSTEM_AREA)
        found_primary = False
        while True:
            sector = f.read(_SECTOR)
            if len(sector) < _SECTOR:
                return False
            if sector[1:6] != _IDENTIFIER or sector[6] != 1:
                return False
            kind = sector[0]
            if kind == _PRIMARY:
                found_primary = True
            elif kind == _TERMINATOR:
                return found_primary