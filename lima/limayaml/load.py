"""Loading of an instance configuration with the user's defaults and overrides mixed in."""

from __future__ import annotations

import logging
import os
from typing import Union

from lima import dirnames
from lima.limayaml.defaults import fill_default
from lima.limayaml.model import LimaYAML, parse_lima_yaml

logger = logging.getLogger(__name__)


def _load_optional(path: str, file_path: str) -> LimaYAML:
    try:
        with open(path, "rb") as f:
            content = f.read()
    except FileNotFoundError:
        return LimaYAML()
    logger.debug("Mixing %r into %r", path, file_path)
    return parse_lima_yaml(content)


def load(data: Union[str, bytes], file_path: str) -> LimaYAML:
    """Parse ``data`` and fill unspecified fields with defaults. Does not validate."""
    y = parse_lima_yaml(data)
    config_dir = dirnames.lima_config_dir()
    d = _load_optional(os.path.join(config_dir, dirnames.DEFAULT_YAML), file_path)
    o = _load_optional(os.path.join(config_dir, dirnames.OVERRIDE_YAML), file_path)
    fill_default(y, d, o, file_path)
    return y