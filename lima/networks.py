"""Configuration of the shared VDE networks (``_config/networks.yaml``) and its daemons."""

from __future__ import annotations

import copy
import ipaddress
import logging
import os
import stat
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

from lima import dirnames, osutil

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

SWITCH = "switch"
VMNET = "vmnet"

MODE_HOST = "host"
MODE_SHARED = "shared"
MODE_BRIDGED = "bridged"

_DEFAULT_CONFIG = """\
paths:
  vdeSwitch: /opt/vde/bin/vde_switch
  vdeVMNet: /opt/vde/bin/vde_vmnet
  varRun: /private/var/run/lima
  sudoers: /etc/sudoers.d/lima

group: everyone

networks:
  shared:
    mode: shared
    gateway: 192.168.105.1
    dhcpEnd: 192.168.105.254
    netmask: 255.255.255.0
  bridged:
    mode: bridged
    interface: en0
  host:
    mode: host
    gateway: 192.168.106.1
    dhcpEnd: 192.168.106.254
    netmask: 255.255.255.0
"""


@dataclass
class Paths:
    """Locations used by the network daemons. None of them may contain whitespace."""

    vde_switch: str = ""
    vde_vmnet: str = ""
    var_run: str = ""
    sudoers: str = ""

    def items(self) -> list[tuple[str, str]]:
        """Return ``(yaml name, value)`` pairs in declaration order."""
        return [
            ("vdeSwitch", self.vde_switch),
            ("vdeVMNet", self.vde_vmnet),
            ("varRun", self.var_run),
            ("sudoers", self.sudoers),
        ]


@dataclass
class Network:
    """One network definition; ``mode`` is ``host``, ``shared`` or ``bridged``."""

    mode: str = ""
    interface: str = ""  # only used by bridged networks
    gateway: Optional[IPAddress] = None  # only used by host and shared networks
    dhcp_end: Optional[IPAddress] = None
    netmask: Optional[IPAddress] = None


def _ip_text(ip: Optional[IPAddress]) -> str:
    return "<nil>" if ip is None else str(ip)


def _go_dir(path: str) -> str:
    return os.path.dirname(path) or "."


@dataclass
class NetworksConfig:
    """The contents of ``networks.yaml``."""

    paths: Paths = field(default_factory=Paths)
    group: str = ""
    networks: dict[str, Network] = field(default_factory=dict)

    # Commands in sudoers cannot use quotes, so arguments are inserted verbatim.

    def check(self, name: str) -> None:
        """Raise LookupError unless a network called ``name`` is defined."""
        if name not in self.networks:
            raise LookupError(f"network {name!r} is not defined")

    def vde_sock(self, name: str) -> str:
        return f"{self.paths.var_run}/{name}.ctl"

    def pid_file(self, name: str, daemon: str) -> str:
        return f"{self.paths.var_run}/{name}_{daemon}.pid"

    def log_file(self, name: str, daemon: str, stream: str) -> str:
        try:
            networks_dir = dirnames.lima_networks_dir()
        except OSError:
            networks_dir = ""
        return f"{networks_dir}/{name}_{daemon}.{stream}.log"

    def user(self, daemon: str) -> osutil.User:
        """Return the user and group a daemon runs as."""
        if daemon == SWITCH:
            user = osutil.lookup_user("daemon")
            group = osutil.lookup_group(self.group)
            user.group = group.name
            user.gid = group.gid
            return user
        if daemon == VMNET:
            return osutil.lookup_user("root")
        raise ValueError(f"daemon {daemon!r} not defined")

    def mkdir_cmd(self) -> str:
        return f"/bin/mkdir -m 775 -p {self.paths.var_run}"

    def start_cmd(self, name: str, daemon: str) -> str:
        """Return the command line that starts ``daemon`` for network ``name``."""
        if daemon == SWITCH:
            return (
                f"{self.paths.vde_switch} --pidfile={self.pid_file(name, SWITCH)} "
                f"--sock={self.vde_sock(name)} --group={self.group} --dirmode=0770 --nostdin"
            )
        if daemon == VMNET:
            nw = self.networks.get(name, Network())
            cmd = (
                f"{self.paths.vde_vmnet} --pidfile={self.pid_file(name, VMNET)} "
                f"--vde-group={self.group} --vmnet-mode={nw.mode}"
            )
            if nw.mode == MODE_BRIDGED:
                cmd += f" --vmnet-interface={nw.interface}"
            elif nw.mode in (MODE_HOST, MODE_SHARED):
                cmd += (
                    f" --vmnet-gateway={_ip_text(nw.gateway)}"
                    f" --vmnet-dhcp-end={_ip_text(nw.dhcp_end)}"
                    f" --vmnet-mask={_ip_text(nw.netmask)}"
                )
            return cmd + " " + self.vde_sock(name)
        return ""

    def stop_cmd(self, name: str, daemon: str) -> str:
        return f"/usr/bin/pkill -F {self.pid_file(name, daemon)}"

    def _password_less_sudo(self) -> None:
        # Flush the cached sudo password first.
        _run(["sudo", "-k"])
        # Both daemon users must work without a password.
        for daemon in (SWITCH, VMNET):
            user = self.user(daemon)
            _run(["sudo", "--user", user.user, "--group", user.group, "--non-interactive", "true"])

    def verify_sudo_access(self, sudoers_file: str) -> None:
        """Check that the daemons can be managed through sudo without a password."""
        if not sudoers_file:
            try:
                self._password_less_sudo()
            except (OSError, RuntimeError, LookupError, ValueError) as exc:
                raise RuntimeError(f"passwordLessSudo error: {exc}") from exc
            logger.debug("sudo doesn't seem to require a password")
            return
        try:
            with open(sudoers_file, encoding="utf-8") as f:
                content = f.read()
        except OSError as exc:
            # A missing sudoers file is fine as long as password-less sudo works.
            if isinstance(exc, FileNotFoundError):
                try:
                    self._password_less_sudo()
                except (OSError, RuntimeError, LookupError, ValueError) as sudo_exc:
                    logger.debug(
                        "%r does not exist; passwordLessSudo error: %s", sudoers_file, sudo_exc
                    )
                else:
                    logger.debug(
                        "%r does not exist, but sudo doesn't seem to require a password",
                        sudoers_file,
                    )
                    return
            raise RuntimeError(f"can't read {sudoers_file!r}: {exc}") from exc
        if content != sudoers():
            raise RuntimeError(f"sudoers file {sudoers_file!r} is out of sync and must be regenerated")

    def validate(self) -> None:
        """Check that every configured path is owned by root and not writable by others."""
        for name, path in self.paths.items():
            # varRun is created securely later, but existing parents must already be secure.
            if name == "varRun":
                path = _find_base_directory(path)
            try:
                _validate_path(path, name == "varRun")
            except FileNotFoundError as exc:
                # The sudoers file need not exist, so that it can be bootstrapped.
                if name == "sudoers":
                    continue
                raise ValueError(f"networks.yaml field `paths.{name}` error: {exc}") from exc
            except (OSError, ValueError, LookupError) as exc:
                raise ValueError(f"networks.yaml field `paths.{name}` error: {exc}") from exc


def _run(args: list[str]) -> None:
    proc = subprocess.run(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    if proc.returncode != 0:
        raise RuntimeError(f"failed to run {args}: exit status {proc.returncode}")


def _find_base_directory(path: str) -> str:
    """Strip non-existing directories from the end of ``path``."""
    while True:
        try:
            os.lstat(path)
        except FileNotFoundError:
            if path == "/":
                return path
            path = _go_dir(path)
            continue
        except OSError:
            return path
        return path


def _validate_path(path: str, allow_daemon_group_writable: bool) -> None:
    if path == "":
        return
    while True:
        if not path.startswith("/"):
            raise ValueError(f"path {path!r} is not an absolute path")
        if " " in path:
            raise ValueError(f"path {path!r} contains whitespace")
        st = os.lstat(path)
        mode = st.st_mode
        is_dir = stat.S_ISDIR(mode)
        kind = "dir" if is_dir else "file"
        if stat.S_ISLNK(mode):
            raise ValueError(f"{kind} {path!r} is a symlink")
        root = osutil.lookup_user("root")
        if st.st_uid != root.uid:
            raise ValueError(
                f"{kind} {path!r} is not owned by {root.user!r} (uid: {root.uid}), "
                f"but by uid {st.st_uid}"
            )
        if allow_daemon_group_writable:
            daemon = osutil.lookup_user("daemon")
            if mode & 0o020 and st.st_gid not in (root.gid, daemon.gid):
                raise ValueError(
                    f"{kind} {path!r} is group-writable and group is neither {root.user!r} "
                    f"(gid: {root.gid}) nor {daemon.user!r} (gid: {daemon.gid}), "
                    f"but is gid: {st.st_gid}"
                )
            if is_dir and not mode & 0o001 and (not mode & 0o010 or st.st_gid != daemon.gid):
                raise ValueError(
                    f"{kind} {path!r} is not executable by the {daemon.user!r} "
                    f"(gid: {daemon.gid}) group"
                )
        elif mode & 0o020 and st.st_gid != root.gid:
            raise ValueError(
                f"{kind} {path!r} is group-writable and group is not {root.user!r} "
                f"(gid: {root.gid}), but is gid: {st.st_gid}"
            )
        if mode & 0o002:
            raise ValueError(f"{kind} {path!r} is world-writable")
        if path == "/":
            return
        path = _go_dir(path)


# ---------------------------------------------------------------------------
# Parsing


def _mapping(value: Any, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"field `{name}` must be a mapping")
    return value


def _str(value: Any, name: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ValueError(f"field `{name}` must be a scalar")
    return str(value)


def _ip(value: Any, name: str) -> Optional[IPAddress]:
    if value is None:
        return None
    try:
        return ipaddress.ip_address(_str(value, name))
    except ValueError as exc:
        raise ValueError(f"field `{name}` is not a valid IP address: {value!r}") from exc


def parse_networks_config(data: Union[str, bytes, dict, None]) -> NetworksConfig:
    """Parse the YAML text (or loaded mapping) of ``networks.yaml``."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = yaml.safe_load(data)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML: {exc}") from exc
    doc = _mapping(data, "<root>")
    paths = _mapping(doc.get("paths"), "paths")
    networks = {}
    for key, value in _mapping(doc.get("networks"), "networks").items():
        name = _str(key, "networks")
        nw = _mapping(value, f"networks.{name}")
        networks[name] = Network(
            mode=_str(nw.get("mode"), f"networks.{name}.mode"),
            interface=_str(nw.get("interface"), f"networks.{name}.interface"),
            gateway=_ip(nw.get("gateway"), f"networks.{name}.gateway"),
            dhcp_end=_ip(nw.get("dhcpEnd"), f"networks.{name}.dhcpEnd"),
            netmask=_ip(nw.get("netmask"), f"networks.{name}.netmask"),
        )
    return NetworksConfig(
        paths=Paths(
            vde_switch=_str(paths.get("vdeSwitch"), "paths.vdeSwitch"),
            vde_vmnet=_str(paths.get("vdeVMNet"), "paths.vdeVMNet"),
            var_run=_str(paths.get("varRun"), "paths.varRun"),
            sudoers=_str(paths.get("sudoers"), "paths.sudoers"),
        ),
        group=_str(doc.get("group"), "group"),
        networks=networks,
    )


def default_config() -> NetworksConfig:
    """Return the built-in network configuration."""
    return parse_networks_config(_DEFAULT_CONFIG)


def config_file() -> str:
    """Return the path of ``$LIMA_HOME/_config/networks.yaml``."""
    return os.path.join(dirnames.lima_config_dir(), dirnames.NETWORKS_CONFIG)


_cache_lock = threading.Lock()
_cache: dict[str, tuple[Optional[NetworksConfig], Optional[Exception]]] = {}


def _read_config(path: str) -> NetworksConfig:
    if not os.path.exists(path):
        config_dir = os.path.dirname(path)
        try:
            os.makedirs(config_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise OSError(f"could not create {config_dir!r} directory: {exc}") from exc
        with open(path, "w", encoding="utf-8") as f:
            f.write(_DEFAULT_CONFIG)
        os.chmod(path, 0o644)
    with open(path, "rb") as f:
        content = f.read()
    try:
        return parse_networks_config(content)
    except ValueError as exc:
        raise ValueError(f"cannot parse {path!r}: {exc}") from exc


def _load_cached() -> NetworksConfig:
    """Load the config file once, writing the default one if it does not exist."""
    path = config_file()
    with _cache_lock:
        if path not in _cache:
            try:
                _cache[path] = (_read_config(path), None)
            except (OSError, ValueError) as exc:
                _cache[path] = (None, exc)
        cfg, error = _cache[path]
    if error is not None:
        raise error
    assert cfg is not None
    return copy.deepcopy(cfg)


def config() -> NetworksConfig:
    """Return the network configuration from ``_config/networks.yaml`` (macOS only)."""
    if sys.platform != "darwin":
        raise RuntimeError("networks.yaml configuration is only supported on macOS right now")
    return _load_cached()


def vde_sock(name: str) -> str:
    """Return the VDE control socket of the configured network ``name``."""
    cfg = _load_cached()
    cfg.check(name)
    return cfg.vde_sock(name)


def sudoers() -> str:
    """Return the sudoers file content that lets the group manage the network daemons."""
    cfg = config()
    lines = [f"%{cfg.group} ALL=(root:wheel) NOPASSWD:NOSETENV: {cfg.mkdir_cmd()}\n"]
    # Stable order, so that an outdated sudoers file can be detected.
    for name in sorted(cfg.networks):
        lines.append("\n")
        lines.append(f'# Manage "{name}" network daemons\n')
        for daemon in (SWITCH, VMNET):
            user = cfg.user(daemon)
            lines.append("\n")
            lines.append(
                f"%{cfg.group} ALL=({user.user}:{user.group}) NOPASSWD:NOSETENV: \\\n"
            )
            lines.append(f"    {cfg.start_cmd(name, daemon)}, \\\n")
            lines.append(f"    {cfg.stop_cmd(name, daemon)}\n")
    return "".join(lines)