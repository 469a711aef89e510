"""Disk image format detection with ``qemu-img``."""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass


@dataclass
class ImageInfo:
    """The part of ``qemu-img info --output=json`` that is used."""

    format: str = ""


def get_info(path: str) -> ImageInfo:
    """Run ``qemu-img info`` on ``path`` and return its parsed output."""
    args = ["qemu-img", "info", "--output=json", path]
    proc = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        raise RuntimeError(
            f"failed to run {args}: stdout={proc.stdout!r}, stderr={proc.stderr!r}: "
            f"exit status {proc.returncode}"
        )
    try:
        data = json.loads(proc.stdout)
    except ValueError as exc:
        raise ValueError(f"cannot parse qemu-img output: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("qemu-img output must be a JSON object")
    fmt = data.get("format") or ""
    if not isinstance(fmt, str):
        raise ValueError("qemu-img reported a non-string format")
    return ImageInfo(format=fmt)


def detect_format(path: str) -> str:
    """Return the image format, from the file extension or from ``qemu-img info``."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".qcow2":
        return "qcow2"
    if ext == ".raw":
        return "raw"
    info = get_info(path)
    if not info.format:
        raise ValueError(f"failed to detect format of {path!r}")
    return info.format