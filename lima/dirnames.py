"""Locations of the Lima home directory and the names of files kept under it."""

from __future__ import annotations

import os
from pathlib import Path

# Directory that appears under the home directory.
DOT_LIMA = ".lima"

# Directories under the Lima home. Instance names starting with an underscore
# are reserved for internal usage.
CONFIG_DIR = "_config"
CACHE_DIR = "_cache"
NETWORKS_DIR = "_networks"

# Files inside the config directory.
USER_IDENTITY = "user"
USER_IDENTITY_PUB = USER_IDENTITY + ".pub"
NETWORKS_CONFIG = "networks.yaml"
DEFAULT_YAML = "default.yaml"
OVERRIDE_YAML = "override.yaml"

# Files that may appear under an instance directory.
LIMA_YAML = "lima.yaml"
CIDATA_ISO = "cidata.iso"
BASE_DISK = "basedisk"
DIFF_DISK = "diffdisk"
QEMU_PID = "qemu.pid"
QMP_SOCK = "qmp.sock"
SERIAL_LOG = "serial.log"
SERIAL_SOCK = "serial.sock"
SSH_SOCK = "ssh.sock"
GUEST_AGENT_SOCK = "ga.sock"
HOST_AGENT_PID = "ha.pid"
HOST_AGENT_SOCK = "ha.sock"
HOST_AGENT_STDOUT_LOG = "ha.stdout.log"
HOST_AGENT_STDERR_LOG = "ha.stderr.log"

# Default location for forwarded sockets given as relative paths.
SOCKET_DIR = "sock"

# The longest socket name; ssh appends 16 random characters to its control socket.
LONGEST_SOCK = SSH_SOCK + ".1234567890123456"


def lima_dir() -> str:
    """Return the path of ``~/.lima`` or ``$LIMA_HOME``, with symlinks resolved if it exists."""
    directory = os.environ.get("LIMA_HOME", "")
    if not directory:
        directory = os.path.join(str(Path.home()), DOT_LIMA)
    try:
        os.stat(directory)
    except FileNotFoundError:
        return directory
    except OSError:
        pass
    try:
        return os.path.realpath(directory, strict=True)
    except OSError as exc:
        raise OSError(f"cannot evaluate symlinks in {directory!r}: {exc}") from exc


def lima_config_dir() -> str:
    """Return the path of the config directory, ``$LIMA_HOME/_config``."""
    return os.path.join(lima_dir(), CONFIG_DIR)


def lima_networks_dir() -> str:
    """Return the path of the networks log directory, ``$LIMA_HOME/_networks``."""
    return os.path.join(lima_dir(), NETWORKS_DIR)