"""Expansion of local paths that start with a tilde."""

from __future__ import annotations

import os
from pathlib import Path


def expand(orig: str) -> str:
    """Expand ``~``, ``~/`` and ``~/foo`` and return an absolute path.

    Paths like ``~foo/bar`` are not supported and raise ValueError.
    """
    if orig == "":
        raise ValueError("empty path")
    home_dir = str(Path.home())
    s = orig
    if s.startswith("~"):
        if s == "~" or s.startswith("~/"):
            s = s.replace("~", home_dir, 1)
        else:
            raise ValueError(f"unexpandable path {orig!r}")
    return os.path.abspath(s)