"""Filling of unset configuration fields from defaults, user settings and overrides."""

from __future__ import annotations

import copy
import hashlib
import ipaddress
import logging
import os
import platform
import pwd
from pathlib import Path
from typing import Optional

from lima import dirnames, osutil, templateutil
from lima.limayaml.model import (
    AARCH64,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    TCP,
    X8664,
    File,
    LimaYAML,
    Network,
    PortForward,
)

logger = logging.getLogger(__name__)

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")
NERDCTL_VERSION = "0.16.1"


def default_containerd_archives() -> list[File]:
    """Return the built-in nerdctl-full archives for each supported architecture."""

    def location(goarch: str) -> str:
        return (
            "https://github.com/containerd/nerdctl/releases/download/v"
            f"{NERDCTL_VERSION}/nerdctl-full-{NERDCTL_VERSION}-linux-{goarch}.tar.gz"
        )

    return [
        File(
            location=location("amd64"),
            arch=X8664,
            digest="sha256:25b6c9a7059e568238f07baacc1ece6af3d698ae8d33cb9f0ec1e5161230ab62",
        ),
        File(
            location=location("arm64"),
            arch=AARCH64,
            digest="sha256:e47fd1a03545ce539005a7f8a29644cb2ab515012c1c82b8be0bbafbb1670699",
        ),
    ]


def mac_address(unique_id: str) -> str:
    """Derive a stable, locally administered MAC address from the machine ID and ``unique_id``."""
    digest = hashlib.sha256((osutil.machine_id() + unique_id).encode("utf-8")).digest()
    # "5" is the magic number; the second nibble is 2 to mark a local address.
    hw = bytes([0x52, 0x55, 0x55]) + digest[:3]
    return ":".join(f"{b:02x}" for b in hw)


def _host_goarch() -> str:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    if machine in ("aarch64", "arm64"):
        return "arm64"
    return machine


def new_arch(arch: str) -> str:
    """Map an ``amd64``/``arm64`` style name to ``x86_64``/``aarch64``."""
    if arch == "amd64":
        return X8664
    if arch == "arm64":
        return AARCH64
    logger.warning("Unknown arch: %s", arch)
    return arch


def resolve_arch(s: Optional[str]) -> str:
    """Return ``s``, or the host architecture when it is unset, empty or ``default``."""
    if s is None or s == "" or s == "default":
        return new_arch(_host_goarch())
    return s


def is_native_arch(arch: str) -> bool:
    """Return whether ``arch`` matches the host architecture."""
    host = _host_goarch()
    return (arch == X8664 and host == "amd64") or (arch == AARCH64 and host == "arm64")


def _pick(y_value, d_value, o_value, default, zero=None):
    value = d_value if y_value is None else y_value
    if o_value is not None:
        value = o_value
    if value is None or (zero is not None and value == zero):
        value = default
    return value


def _combined(o_items: list, y_items: list, d_items: list) -> list:
    return [copy.deepcopy(item) for item in (*o_items, *y_items, *d_items)]


def fill_default(y: LimaYAML, d: LimaYAML, o: LimaYAML, file_path: str) -> None:
    """Fill unset fields of ``y`` from ``d`` (or built-in defaults), then overwrite with ``o``.

    Maps are merged d, y, o. Lists are joined o, y, d, except mounts and networks, which
    are joined d, y, o and merged on matching location or interface. DNS is taken from the
    highest priority that sets it.
    """
    y.arch = resolve_arch(_pick(y.arch, d.arch, o.arch, None))
    arch = y.arch

    y.images = _combined(o.images, y.images, d.images)
    for img in y.images:
        if img.arch == "":
            img.arch = arch

    cpu_type = _pick(y.cpu_type, d.cpu_type, o.cpu_type, None)
    if not cpu_type:
        if is_native_arch(arch):
            cpu_type = "host"
        elif arch == X8664:
            # Intel on ARM: qemu64 emulates x86_64 better.
            cpu_type = "qemu64"
        else:
            # ARM on Intel
            cpu_type = "cortex-a72"
    y.cpu_type = cpu_type

    y.cpus = _pick(y.cpus, d.cpus, o.cpus, 4, zero=0)
    y.memory = _pick(y.memory, d.memory, o.memory, "4GiB", zero="")
    y.disk = _pick(y.disk, d.disk, o.disk, "100GiB", zero="")
    y.video.display = _pick(y.video.display, d.video.display, o.video.display, "none", zero="")
    y.firmware.legacy_bios = _pick(
        y.firmware.legacy_bios, d.firmware.legacy_bios, o.firmware.legacy_bios, False
    )
    # The actual SSH port is chosen later by the host agent.
    y.ssh.local_port = _pick(y.ssh.local_port, d.ssh.local_port, o.ssh.local_port, 0)
    y.ssh.load_dot_ssh_pub_keys = _pick(
        y.ssh.load_dot_ssh_pub_keys, d.ssh.load_dot_ssh_pub_keys, o.ssh.load_dot_ssh_pub_keys, True
    )
    y.ssh.forward_agent = _pick(
        y.ssh.forward_agent, d.ssh.forward_agent, o.ssh.forward_agent, False
    )

    y.provision = _combined(o.provision, y.provision, d.provision)
    for provision in y.provision:
        if provision.mode == "":
            provision.mode = PROVISION_MODE_SYSTEM

    y.containerd.system = _pick(
        y.containerd.system, d.containerd.system, o.containerd.system, False
    )
    y.containerd.user = _pick(y.containerd.user, d.containerd.user, o.containerd.user, True)
    y.containerd.archives = _combined(
        o.containerd.archives, y.containerd.archives, d.containerd.archives
    )
    if not y.containerd.archives:
        y.containerd.archives = default_containerd_archives()
    for archive in y.containerd.archives:
        if archive.arch == "":
            archive.arch = arch

    y.probes = _combined(o.probes, y.probes, d.probes)
    for i, probe in enumerate(y.probes):
        if probe.mode == "":
            probe.mode = PROBE_MODE_READINESS
        if probe.description == "":
            probe.description = f"user probe {i + 1}/{len(y.probes)}"

    y.port_forwards = _combined(o.port_forwards, y.port_forwards, d.port_forwards)
    inst_dir = os.path.dirname(file_path)
    for rule in y.port_forwards:
        fill_port_forward_defaults(rule, inst_dir)

    # The deprecated `useHostResolver` is ignored when `hostResolver.enabled` is set.
    def _enabled(cfg: LimaYAML) -> Optional[bool]:
        if cfg.host_resolver.enabled is None:
            return cfg.use_host_resolver
        return cfg.host_resolver.enabled

    y.host_resolver.enabled = _pick(_enabled(y), _enabled(d), _enabled(o), True)
    y.host_resolver.ipv6 = _pick(
        y.host_resolver.ipv6, d.host_resolver.ipv6, o.host_resolver.ipv6, False
    )
    y.propagate_proxy_env = _pick(
        y.propagate_proxy_env, d.propagate_proxy_env, o.propagate_proxy_env, True
    )

    if y.network.vde_deprecated and not y.networks:
        y.networks = [
            Network(
                interface=vde.name,
                mac_address=vde.mac_address,
                switch_port=vde.switch_port,
                vnl=vde.vnl,
            )
            for vde in y.network.vde_deprecated
        ]
        y.network.migrated = True

    networks: list[Network] = []
    by_interface: dict[str, int] = {}
    for nw in (*d.networks, *y.networks, *o.networks):
        nw = copy.deepcopy(nw)
        if nw.interface in by_interface:
            prev = networks[by_interface[nw.interface]]
            if nw.vnl != "":
                prev.vnl = nw.vnl
                prev.switch_port = nw.switch_port
                prev.lima = ""
            if nw.lima != "":
                if nw.vnl != "":
                    logger.error(
                        "Network %r has both vnl=%r and lima=%r fields; ignoring vnl",
                        nw.interface,
                        nw.vnl,
                        nw.lima,
                    )
                prev.lima = nw.lima
                prev.vnl = ""
                prev.switch_port = 0
            if nw.mac_address != "":
                prev.mac_address = nw.mac_address
        else:
            # Unnamed network definitions are never combined.
            if nw.interface != "":
                by_interface[nw.interface] = len(networks)
            networks.append(nw)
    for i, nw in enumerate(networks):
        if nw.mac_address == "":
            # Every interface in every file gets its own MAC address.
            nw.mac_address = mac_address(f"{file_path}#{i}")
        if nw.interface == "":
            nw.interface = f"lima{i}"
    y.networks = networks

    # Exact location matches only; the highest priority entry wins per field.
    mounts = []
    by_location: dict[str, int] = {}
    for mount in (*d.mounts, *y.mounts, *o.mounts):
        mount = copy.deepcopy(mount)
        if mount.location in by_location:
            prev = mounts[by_location[mount.location]]
            if mount.sshfs.cache is not None:
                prev.sshfs.cache = mount.sshfs.cache
            if mount.sshfs.follow_symlinks is not None:
                prev.sshfs.follow_symlinks = mount.sshfs.follow_symlinks
            if mount.writable is not None:
                prev.writable = mount.writable
        else:
            by_location[mount.location] = len(mounts)
            mounts.append(mount)
    for mount in mounts:
        if mount.sshfs.cache is None:
            mount.sshfs.cache = True
        if mount.sshfs.follow_symlinks is None:
            mount.sshfs.follow_symlinks = False
        if mount.writable is None:
            mount.writable = False
    y.mounts = mounts

    # DNS lists are not combined.
    if not y.dns:
        y.dns = list(d.dns)
    if o.dns:
        y.dns = list(o.dns)

    y.env = {**d.env, **y.env, **o.env}


def _render(template: str, data: dict, what: str) -> str:
    try:
        return templateutil.execute(template, data).decode("utf-8")
    except templateutil.TemplateError as exc:
        logger.warning("Couldn't process %s %r as a template: %s", what, template, exc)
        return template


def fill_port_forward_defaults(rule: PortForward, inst_dir: str) -> None:
    """Fill unset fields of a port forwarding rule and expand its socket templates."""
    if rule.proto == "":
        rule.proto = TCP
    if rule.guest_ip is None:
        rule.guest_ip = IPV4_LOOPBACK1
    if rule.host_ip is None:
        rule.host_ip = IPV4_LOOPBACK1
    if rule.guest_port_range == (0, 0):
        if rule.guest_port == 0:
            rule.guest_port_range = (1, 65535)
        else:
            rule.guest_port_range = (rule.guest_port, rule.guest_port)
    if rule.host_port_range == (0, 0):
        if rule.host_port == 0:
            rule.host_port_range = rule.guest_port_range
        else:
            rule.host_port_range = (rule.host_port, rule.host_port)
    if rule.guest_socket != "":
        user = osutil.lima_user(False)
        data = {
            "Home": f"/home/{user.user}.linux",
            "UID": str(user.uid),
            "User": user.user,
        }
        rule.guest_socket = _render(rule.guest_socket, data, "guestSocket")
    if rule.host_socket != "":
        current = pwd.getpwuid(os.getuid())
        name = os.path.basename(inst_dir)
        data = {
            "Dir": inst_dir,
            "Home": str(Path.home()),
            "Name": name,
            "UID": str(current.pw_uid),
            "User": current.pw_name,
            "Instance": name,  # deprecated, use {{.Name}}
            "LimaHome": dirnames.lima_dir(),  # deprecated, use {{.Dir}}
        }
        rule.host_socket = _render(rule.host_socket, data, "hostSocket")
        if not os.path.isabs(rule.host_socket):
            rule.host_socket = os.path.join(inst_dir, dirnames.SOCKET_DIR, rule.host_socket)