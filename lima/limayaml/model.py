"""The data model of an instance configuration file (``lima.yaml``)."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

X8664 = "x86_64"
AARCH64 = "aarch64"

PROVISION_MODE_SYSTEM = "system"
PROVISION_MODE_USER = "user"

PROBE_MODE_READINESS = "readiness"

TCP = "tcp"


# ---------------------------------------------------------------------------
# Scalar conversion helpers


def _mapping(value: Any, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"field `{name}` must be a mapping, got {type(value).__name__}")
    return value


def _sequence(value: Any, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field `{name}` must be a sequence, got {type(value).__name__}")
    return value


def _str(value: Any, name: str, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        raise ValueError(f"field `{name}` must be a scalar")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _opt_str(value: Any, name: str) -> Optional[str]:
    return None if value is None else _str(value, name)


def _int(value: Any, name: str, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field `{name}` must be an integer, got {value!r}")
    return value


def _opt_int(value: Any, name: str) -> Optional[int]:
    return None if value is None else _int(value, name)


def _uint16(value: Any, name: str) -> int:
    number = _int(value, name)
    if not 0 <= number <= 65535:
        raise ValueError(f"field `{name}` must be between 0 and 65535, got {number}")
    return number


def _opt_bool(value: Any, name: str) -> Optional[bool]:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"field `{name}` must be a boolean, got {value!r}")
    return value


def _bool(value: Any, name: str) -> bool:
    return bool(_opt_bool(value, name))


def _ip(value: Any, name: str) -> Optional[IPAddress]:
    if value is None:
        return None
    try:
        return ipaddress.ip_address(_str(value, name))
    except ValueError as exc:
        raise ValueError(f"field `{name}` is not a valid IP address: {value!r}") from exc


def _port_range(value: Any, name: str) -> tuple[int, int]:
    if value is None:
        return (0, 0)
    items = _sequence(value, name)
    if len(items) != 2:
        raise ValueError(f"field `{name}` must have 2 elements, got {len(items)}")
    return (_int(items[0], f"{name}[0]"), _int(items[1], f"{name}[1]"))


def _compact(data: dict, keep: tuple[str, ...] = ()) -> dict:
    """Drop keys whose value is unset or empty, except those in ``keep``."""
    return {
        k: v
        for k, v in data.items()
        if k in keep or not (v is None or (isinstance(v, (str, list, dict)) and len(v) == 0))
    }


def _ip_str(ip: Optional[IPAddress]) -> Optional[str]:
    return None if ip is None else str(ip)


# ---------------------------------------------------------------------------
# Model


@dataclass
class File:
    location: str = ""
    arch: str = ""
    digest: str = ""

    def to_dict(self) -> dict:
        return _compact(
            {"location": self.location, "arch": self.arch, "digest": self.digest},
            keep=("location",),
        )


@dataclass
class SSHFS:
    cache: Optional[bool] = None
    follow_symlinks: Optional[bool] = None

    def to_dict(self) -> dict:
        return _compact({"cache": self.cache, "followSymlinks": self.follow_symlinks})


@dataclass
class Mount:
    location: str = ""
    writable: Optional[bool] = None
    sshfs: SSHFS = field(default_factory=SSHFS)

    def to_dict(self) -> dict:
        return _compact(
            {"location": self.location, "writable": self.writable, "sshfs": self.sshfs.to_dict()},
            keep=("location",),
        )


@dataclass
class SSH:
    local_port: Optional[int] = None
    # Also load ~/.ssh/*.pub in addition to $LIMA_HOME/_config/user.pub.
    load_dot_ssh_pub_keys: Optional[bool] = None
    forward_agent: Optional[bool] = None

    def to_dict(self) -> dict:
        return _compact(
            {
                "localPort": self.local_port,
                "loadDotSSHPubKeys": self.load_dot_ssh_pub_keys,
                "forwardAgent": self.forward_agent,
            }
        )


@dataclass
class Firmware:
    # Disables UEFI if set; ignored for aarch64.
    legacy_bios: Optional[bool] = None

    def to_dict(self) -> dict:
        return _compact({"legacyBIOS": self.legacy_bios})


@dataclass
class Video:
    # A QEMU display string.
    display: Optional[str] = None

    def to_dict(self) -> dict:
        return _compact({"display": self.display})


@dataclass
class Provision:
    mode: str = ""
    script: str = ""

    def to_dict(self) -> dict:
        return {"mode": self.mode, "script": self.script}


@dataclass
class Containerd:
    system: Optional[bool] = None
    user: Optional[bool] = None
    archives: list[File] = field(default_factory=list)

    def to_dict(self) -> dict:
        return _compact(
            {
                "system": self.system,
                "user": self.user,
                "archives": [a.to_dict() for a in self.archives],
            }
        )


@dataclass
class Probe:
    mode: str = ""
    description: str = ""
    script: str = ""
    hint: str = ""

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "description": self.description,
            "script": self.script,
            "hint": self.hint,
        }


@dataclass
class PortForward:
    guest_ip: Optional[IPAddress] = None
    guest_port: int = 0
    guest_port_range: tuple[int, int] = (0, 0)
    guest_socket: str = ""
    host_ip: Optional[IPAddress] = None
    host_port: int = 0
    host_port_range: tuple[int, int] = (0, 0)
    host_socket: str = ""
    proto: str = ""
    ignore: bool = False

    def to_dict(self) -> dict:
        return _compact(
            {
                "guestIP": _ip_str(self.guest_ip),
                "guestPort": self.guest_port or None,
                "guestPortRange": list(self.guest_port_range) if any(self.guest_port_range) else None,
                "guestSocket": self.guest_socket,
                "hostIP": _ip_str(self.host_ip),
                "hostPort": self.host_port or None,
                "hostPortRange": list(self.host_port_range) if any(self.host_port_range) else None,
                "hostSocket": self.host_socket,
                "proto": self.proto,
                "ignore": self.ignore or None,
            }
        )


@dataclass
class Network:
    # `lima` and `vnl` are mutually exclusive; exactly one is required.
    lima: str = ""
    # Virtual Network Locator; on macOS only the VDE2 form is supported.
    vnl: str = ""
    # VDE switch port, not a TCP/UDP port.
    switch_port: int = 0
    mac_address: str = ""
    interface: str = ""

    def to_dict(self) -> dict:
        return _compact(
            {
                "lima": self.lima,
                "vnl": self.vnl,
                "switchPort": self.switch_port or None,
                "macAddress": self.mac_address,
                "interface": self.interface,
            }
        )


@dataclass
class HostResolver:
    enabled: Optional[bool] = None
    ipv6: Optional[bool] = None

    def to_dict(self) -> dict:
        return _compact({"enabled": self.enabled, "ipv6": self.ipv6})


@dataclass
class VDEDeprecated:
    vnl: str = ""
    switch_port: int = 0
    mac_address: str = ""
    name: str = ""

    def to_dict(self) -> dict:
        return _compact(
            {
                "vnl": self.vnl,
                "switchPort": self.switch_port or None,
                "macAddress": self.mac_address,
                "name": self.name,
            }
        )


@dataclass
class NetworkDeprecated:
    vde_deprecated: list[VDEDeprecated] = field(default_factory=list)
    # Set once `network.vde` has been copied to `networks` while filling defaults.
    migrated: bool = field(default=False, compare=False, repr=False)

    def to_dict(self) -> dict:
        return _compact({"vde": [v.to_dict() for v in self.vde_deprecated]})


@dataclass
class LimaYAML:
    arch: Optional[str] = None
    images: list[File] = field(default_factory=list)
    cpu_type: Optional[str] = None
    cpus: Optional[int] = None
    memory: Optional[str] = None
    disk: Optional[str] = None
    mounts: list[Mount] = field(default_factory=list)
    ssh: SSH = field(default_factory=SSH)
    firmware: Firmware = field(default_factory=Firmware)
    video: Video = field(default_factory=Video)
    provision: list[Provision] = field(default_factory=list)
    containerd: Containerd = field(default_factory=Containerd)
    probes: list[Probe] = field(default_factory=list)
    port_forwards: list[PortForward] = field(default_factory=list)
    message: str = ""
    networks: list[Network] = field(default_factory=list)
    network: NetworkDeprecated = field(default_factory=NetworkDeprecated)
    env: dict[str, str] = field(default_factory=dict)
    dns: list[IPAddress] = field(default_factory=list)
    host_resolver: HostResolver = field(default_factory=HostResolver)
    use_host_resolver: Optional[bool] = None
    propagate_proxy_env: Optional[bool] = None

    def to_dict(self) -> dict:
        """Return the configuration as a mapping keyed by the YAML field names."""
        return _compact(
            {
                "arch": self.arch,
                "images": [i.to_dict() for i in self.images],
                "cpuType": self.cpu_type,
                "cpus": self.cpus,
                "memory": self.memory,
                "disk": self.disk,
                "mounts": [m.to_dict() for m in self.mounts],
                "ssh": self.ssh.to_dict(),
                "firmware": self.firmware.to_dict(),
                "video": self.video.to_dict(),
                "provision": [p.to_dict() for p in self.provision],
                "containerd": self.containerd.to_dict(),
                "probes": [p.to_dict() for p in self.probes],
                "portForwards": [p.to_dict() for p in self.port_forwards],
                "message": self.message,
                "networks": [n.to_dict() for n in self.networks],
                "network": self.network.to_dict(),
                "env": dict(self.env),
                "dns": [str(ip) for ip in self.dns],
                "hostResolver": self.host_resolver.to_dict(),
                "useHostResolver": self.use_host_resolver,
                "propagateProxyEnv": self.propagate_proxy_env,
            },
            keep=("images",),
        )


# ---------------------------------------------------------------------------
# Parsing


def _parse_file(data: Any, name: str) -> File:
    d = _mapping(data, name)
    return File(
        location=_str(d.get("location"), f"{name}.location"),
        arch=_str(d.get("arch"), f"{name}.arch"),
        digest=_str(d.get("digest"), f"{name}.digest"),
    )


def _parse_mount(data: Any, name: str) -> Mount:
    d = _mapping(data, name)
    sshfs = _mapping(d.get("sshfs"), f"{name}.sshfs")
    return Mount(
        location=_str(d.get("location"), f"{name}.location"),
        writable=_opt_bool(d.get("writable"), f"{name}.writable"),
        sshfs=SSHFS(
            cache=_opt_bool(sshfs.get("cache"), f"{name}.sshfs.cache"),
            follow_symlinks=_opt_bool(sshfs.get("followSymlinks"), f"{name}.sshfs.followSymlinks"),
        ),
    )


def _parse_port_forward(data: Any, name: str) -> PortForward:
    d = _mapping(data, name)
    return PortForward(
        guest_ip=_ip(d.get("guestIP"), f"{name}.guestIP"),
        guest_port=_int(d.get("guestPort"), f"{name}.guestPort"),
        guest_port_range=_port_range(d.get("guestPortRange"), f"{name}.guestPortRange"),
        guest_socket=_str(d.get("guestSocket"), f"{name}.guestSocket"),
        host_ip=_ip(d.get("hostIP"), f"{name}.hostIP"),
        host_port=_int(d.get("hostPort"), f"{name}.hostPort"),
        host_port_range=_port_range(d.get("hostPortRange"), f"{name}.hostPortRange"),
        host_socket=_str(d.get("hostSocket"), f"{name}.hostSocket"),
        proto=_str(d.get("proto"), f"{name}.proto"),
        ignore=_bool(d.get("ignore"), f"{name}.ignore"),
    )


def _parse_network(data: Any, name: str) -> Network:
    d = _mapping(data, name)
    return Network(
        lima=_str(d.get("lima"), f"{name}.lima"),
        vnl=_str(d.get("vnl"), f"{name}.vnl"),
        switch_port=_uint16(d.get("switchPort"), f"{name}.switchPort"),
        mac_address=_str(d.get("macAddress"), f"{name}.macAddress"),
        interface=_str(d.get("interface"), f"{name}.interface"),
    )


def _parse_vde(data: Any, name: str) -> VDEDeprecated:
    d = _mapping(data, name)
    return VDEDeprecated(
        vnl=_str(d.get("vnl"), f"{name}.vnl"),
        switch_port=_uint16(d.get("switchPort"), f"{name}.switchPort"),
        mac_address=_str(d.get("macAddress"), f"{name}.macAddress"),
        name=_str(d.get("name"), f"{name}.name"),
    )


def _parse_list(value: Any, name: str, parse) -> list:
    return [parse(item, f"{name}[{i}]") for i, item in enumerate(_sequence(value, name))]


def parse_lima_yaml(data: Union[str, bytes, dict, None]) -> LimaYAML:
    """Parse a YAML document (text, bytes or an already loaded mapping) into a LimaYAML."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = yaml.safe_load(data)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML: {exc}") from exc
    d = _mapping(data, "<root>")

    ssh = _mapping(d.get("ssh"), "ssh")
    firmware = _mapping(d.get("firmware"), "firmware")
    video = _mapping(d.get("video"), "video")
    containerd = _mapping(d.get("containerd"), "containerd")
    network = _mapping(d.get("network"), "network")
    host_resolver = _mapping(d.get("hostResolver"), "hostResolver")

    probes = []
    for i, item in enumerate(_sequence(d.get("probes"), "probes")):
        name = f"probes[{i}]"
        p = _mapping(item, name)
        probes.append(
            Probe(
                mode=_str(p.get("mode"), f"{name}.mode"),
                description=_str(p.get("description"), f"{name}.description"),
                script=_str(p.get("script"), f"{name}.script"),
                hint=_str(p.get("hint"), f"{name}.hint"),
            )
        )

    provision = []
    for i, item in enumerate(_sequence(d.get("provision"), "provision")):
        name = f"provision[{i}]"
        p = _mapping(item, name)
        provision.append(
            Provision(
                mode=_str(p.get("mode"), f"{name}.mode"),
                script=_str(p.get("script"), f"{name}.script"),
            )
        )

    env = {
        _str(k, "env"): _str(v, f"env.{k}") for k, v in _mapping(d.get("env"), "env").items()
    }
    dns = [_ip(v, f"dns[{i}]") for i, v in enumerate(_sequence(d.get("dns"), "dns"))]

    return LimaYAML(
        arch=_opt_str(d.get("arch"), "arch"),
        images=_parse_list(d.get("images"), "images", _parse_file),
        cpu_type=_opt_str(d.get("cpuType"), "cpuType"),
        cpus=_opt_int(d.get("cpus"), "cpus"),
        memory=_opt_str(d.get("memory"), "memory"),
        disk=_opt_str(d.get("disk"), "disk"),
        mounts=_parse_list(d.get("mounts"), "mounts", _parse_mount),
        ssh=SSH(
            local_port=_opt_int(ssh.get("localPort"), "ssh.localPort"),
            load_dot_ssh_pub_keys=_opt_bool(ssh.get("loadDotSSHPubKeys"), "ssh.loadDotSSHPubKeys"),
            forward_agent=_opt_bool(ssh.get("forwardAgent"), "ssh.forwardAgent"),
        ),
        firmware=Firmware(legacy_bios=_opt_bool(firmware.get("legacyBIOS"), "firmware.legacyBIOS")),
        video=Video(display=_opt_str(video.get("display"), "video.display")),
        provision=provision,
        containerd=Containerd(
            system=_opt_bool(containerd.get("system"), "containerd.system"),
            user=_opt_bool(containerd.get("user"), "containerd.user"),
            archives=_parse_list(containerd.get("archives"), "containerd.archives", _parse_file),
        ),
        probes=probes,
        port_forwards=_parse_list(d.get("portForwards"), "portForwards", _parse_port_forward),
        message=_str(d.get("message"), "message"),
        networks=_parse_list(d.get("networks"), "networks", _parse_network),
        network=NetworkDeprecated(
            vde_deprecated=_parse_list(network.get("vde"), "network.vde", _parse_vde)
        ),
        env=env,
        dns=[ip for ip in dns if ip is not None],
        host_resolver=HostResolver(
            enabled=_opt_bool(host_resolver.get("enabled"), "hostResolver.enabled"),
            ipv6=_opt_bool(host_resolver.get("ipv6"), "hostResolver.ipv6"),
        ),
        use_host_resolver=_opt_bool(d.get("useHostResolver"), "useHostResolver"),
        propagate_proxy_env=_opt_bool(d.get("propagateProxyEnv"), "propagateProxyEnv"),
    )


# ---------------------------------------------------------------------------
# Sizes

_SIZE_RE = re.compile(r"^(\d+(\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
_BINARY_UNITS = {
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}


def ram_in_bytes(size: str) -> int:
    """Parse a human-readable size such as ``4GiB`` with 1024-based units into bytes."""
    match = _SIZE_RE.match(size)
    if match is None:
        raise ValueError(f"invalid size: {size!r}")
    try:
        value = float(match.group(1))
    except ValueError as exc:
        raise ValueError(f"invalid size: {size!r}") from exc
    prefix = (match.group(3) or "").lower()
    value *= _BINARY_UNITS.get(prefix, 1)
    return int(value)