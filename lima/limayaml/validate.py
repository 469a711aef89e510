"""Validation of a filled-in instance configuration."""

from __future__ import annotations

import logging
import os
import re
import stat
import sys

from lima import localpathutil, networks, osutil, qemuconst
from lima.limayaml.model import (
    AARCH64,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    PROVISION_MODE_USER,
    TCP,
    X8664,
    LimaYAML,
    Network,
    ram_in_bytes,
)

logger = logging.getLogger(__name__)

# UNIX_PATH_MAX: 108 on Linux, 104 elsewhere (macOS and the BSDs).
_UNIX_PATH_MAX = 108 if sys.platform.startswith("linux") else 104

_SYSTEM_PATHS = frozenset(
    ["/", "/bin", "/dev", "/etc", "/home", "/opt", "/sbin", "/tmp", "/usr", "/var"]
)
_DIGEST_SIZES = {"sha256": 32, "sha384": 48, "sha512": 64}
_HEX = re.compile(r"[a-f0-9]+")
_PTP_PORT = 65535


class ValidationError(ValueError):
    """Raised when a configuration is invalid."""


def validate_port(field: str, port: int) -> None:
    """Raise ValidationError unless ``port`` is a usable TCP port other than 22."""
    if port < 0:
        raise ValidationError(f"field `{field}` must be > 0")
    if port == 0:
        raise ValidationError(f"field `{field}` must be set")
    if port == 22:
        raise ValidationError(f"field `{field}` must not be 22")
    if port > 65535:
        raise ValidationError(f"field `{field}` must be < 65536")


def _check_digest(i: int, digest: str) -> None:
    sep = digest.find(":")
    algorithm = digest[:sep] if sep >= 0 else ""
    if algorithm not in _DIGEST_SIZES:
        raise ValidationError(
            f"field `images[{i}].digest` refers to an unavailable digest algorithm"
        )
    encoded = digest[sep + 1:]
    if not encoded:
        reason = "invalid checksum digest format"
    elif len(encoded) != _DIGEST_SIZES[algorithm] * 2:
        reason = "invalid checksum digest length"
    elif not _HEX.fullmatch(encoded):
        reason = "invalid checksum digest format"
    else:
        return
    raise ValidationError(f"field `images[{i}].digest` is invalid: {digest}: {reason}")


def _parse_mac(text: str) -> bytes:
    """Parse a MAC address in colon, dash or dotted form (6, 8 or 20 bytes)."""
    error = ValueError(f"address {text}: invalid MAC address")
    if len(text) < 14:
        raise error
    if text[2] in ":-":
        groups = text.split(text[2])
        width = 2
    elif text[4] == ".":
        groups = text.split(".")
        width = 4
    else:
        raise error
    if any(len(g) != width or not re.fullmatch(r"[0-9A-Fa-f]+", g) for g in groups):
        raise error
    raw = bytes.fromhex("".join(groups))
    if len(raw) not in (6, 8, 20):
        raise error
    return raw


def _validate_images(y: LimaYAML) -> None:
    if not y.images:
        raise ValidationError("field `images` must be set")
    for i, f in enumerate(y.images):
        if "://" not in f.location:
            # The file need not be accessible; only the path must be expandable.
            try:
                localpathutil.expand(f.location)
            except (ValueError, OSError) as exc:
                raise ValidationError(
                    f"field `images[{i}].location` refers to an invalid local file path: "
                    f"{f.location!r}: {exc}"
                ) from exc
        if f.arch not in (X8664, AARCH64):
            raise ValidationError(
                f'field `images.arch` must be "{X8664}" or "{AARCH64}", got {f.arch!r}'
            )
        if f.digest:
            _check_digest(i, f.digest)


def _validate_mounts(y: LimaYAML) -> None:
    try:
        user = osutil.lima_user(False)
    except (OSError, KeyError, LookupError, ValueError, RuntimeError) as exc:
        raise ValidationError(f"internal error (not an error of YAML): {exc}") from exc
    # The home directory defined in "cidata.iso:/user-data".
    reserved_home = f"/home/{user.user}.linux"

    for i, m in enumerate(y.mounts):
        if not os.path.isabs(m.location) and not m.location.startswith("~"):
            raise ValidationError(
                f"field `mounts[{i}].location` must be an absolute path, got {m.location!r}"
            )
        try:
            loc = localpathutil.expand(m.location)
        except (ValueError, OSError) as exc:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an unexpandable path: "
                f"{m.location!r}: {exc}"
            ) from exc
        if loc in _SYSTEM_PATHS:
            raise ValidationError(
                f"field `mounts[{i}].location` must not be a system path such as /etc or /usr"
            )
        if loc == reserved_home:
            raise ValidationError(f"field `mounts[{i}].location` is internally reserved")
        try:
            st = os.stat(loc)
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an inaccessible path: "
                f"{m.location!r}: {exc}"
            ) from exc
        if not stat.S_ISDIR(st.st_mode):
            raise ValidationError(
                f"field `mounts[{i}].location` refers to a non-directory path: {m.location!r}"
            )


def _validate_port_forwards(y: LimaYAML) -> None:
    for i, rule in enumerate(y.port_forwards):
        field = f"portForwards[{i}]"
        guest_range = rule.guest_port_range
        host_range = rule.host_port_range
        if rule.guest_port != 0:
            if rule.guest_socket:
                raise ValidationError(
                    f"field `{field}.guestPort` must be 0 when field `{field}.guestSocket` is set"
                )
            if rule.guest_port != guest_range[0]:
                raise ValidationError(
                    f"field `{field}.guestPort` must match field `{field}.guestPortRange[0]`"
                )
            validate_port(f"{field}.guestPort", rule.guest_port)
        if rule.host_port != 0:
            if rule.host_socket:
                raise ValidationError(
                    f"field `{field}.hostPort` must be 0 when field `{field}.hostSocket` is set"
                )
            if rule.host_port != host_range[0]:
                raise ValidationError(
                    f"field `{field}.hostPort` must match field `{field}.hostPortRange[0]`"
                )
            validate_port(f"{field}.hostPort", rule.host_port)
        for j in range(2):
            validate_port(f"{field}.guestPortRange[{j}]", guest_range[j])
            validate_port(f"{field}.hostPortRange[{j}]", host_range[j])
        if guest_range[0] > guest_range[1]:
            raise ValidationError(
                f"field `{field}.guestPortRange[1]` must be greater than or equal to "
                f"field `{field}.guestPortRange[0]`"
            )
        if host_range[0] > host_range[1]:
            raise ValidationError(
                f"field `{field}.hostPortRange[1]` must be greater than or equal to "
                f"field `{field}.hostPortRange[0]`"
            )
        if guest_range[1] - guest_range[0] != host_range[1] - host_range[0]:
            raise ValidationError(
                f"field `{field}.hostPortRange` must specify the same number of ports "
                f"as field `{field}.guestPortRange`"
            )
        if rule.guest_socket:
            if not os.path.isabs(rule.guest_socket):
                raise ValidationError(f"field `{field}.guestSocket` must be an absolute path")
            if not rule.host_socket and host_range[1] - host_range[0] > 0:
                raise ValidationError(
                    f"field `{field}.guestSocket` can only be mapped to a single port or "
                    "socket. not a range"
                )
        if rule.host_socket:
            if not os.path.isabs(rule.host_socket):
                raise ValidationError(
                    f"field `{field}.hostSocket` must be an absolute path, "
                    f"but is {rule.host_socket!r}"
                )
            if not rule.guest_socket and guest_range[1] - guest_range[0] > 0:
                raise ValidationError(
                    f"field `{field}.hostSocket` can only be mapped from a single port or "
                    "socket. not a range"
                )
        if len(rule.host_socket) >= _UNIX_PATH_MAX:
            raise ValidationError(
                f"field `{field}.hostSocket` must be less than UNIX_PATH_MAX={_UNIX_PATH_MAX} "
                f"characters, but is {len(rule.host_socket)}"
            )
        if rule.proto != TCP:
            raise ValidationError(f'field `{field}.proto` must be "{TCP}"')
        # Overlapping ranges are allowed: the first matching rule wins.


def validate(y: LimaYAML, warn: bool = False) -> None:
    """Raise ValidationError if the filled-in configuration ``y`` is invalid."""
    if y.arch not in (X8664, AARCH64):
        raise ValidationError(
            f'field `arch` must be "{X8664}" or "{AARCH64}" , got {y.arch!r}'
        )
    _validate_images(y)

    if not y.cpu_type:
        raise ValidationError("field `cpuType` must be set")
    if not y.cpus:
        raise ValidationError("field `cpus` must be set")
    for value in (y.memory, y.disk):
        try:
            ram_in_bytes(value or "")
        except ValueError as exc:
            raise ValidationError(f"field `memory` has an invalid value: {exc}") from exc

    _validate_mounts(y)

    if y.ssh.local_port:
        validate_port("ssh.localPort", y.ssh.local_port)

    # firmware.legacyBIOS is ignored for aarch64, but that is not an error.

    for i, p in enumerate(y.provision):
        if p.mode not in (PROVISION_MODE_SYSTEM, PROVISION_MODE_USER):
            raise ValidationError(
                f"field `provision[{i}].mode` must be either "
                f'"{PROVISION_MODE_SYSTEM}" or "{PROVISION_MODE_USER}"'
            )
    needs_archives = bool(y.containerd.user) or bool(y.containerd.system)
    if needs_archives and not y.containerd.archives:
        raise ValidationError("field `containerd.archives` must be provided")
    for i, p in enumerate(y.probes):
        if p.mode != PROBE_MODE_READINESS:
            raise ValidationError(
                f'field `probe[{i}].mode` can only be "{PROBE_MODE_READINESS}"'
            )

    _validate_port_forwards(y)

    if y.host_resolver.enabled and y.dns:
        raise ValidationError(
            "field `dns` must be empty when field `HostResolver.Enabled` is true"
        )

    _validate_network(y, warn)


def _validate_vnl(field: str, nw: Network, warn: bool) -> None:
    if "://" not in nw.vnl or nw.vnl.startswith("vde://"):
        vde_switch = nw.vnl[len("vde://"):] if nw.vnl.startswith("vde://") else nw.vnl
        try:
            st = os.stat(vde_switch)
        except OSError as exc:
            # Negligible while the instance is stopped.
            logger.debug("field `%s.vnl` %r failed stat: %s", field, vde_switch, exc)
            return
        if stat.S_ISDIR(st.st_mode):
            # Switch mode: the directory holds a "ctl" socket, port != 65535.
            ctl_socket = os.path.join(vde_switch, "ctl")
            try:
                ctl = os.stat(ctl_socket)
            except OSError:
                ctl = None  # need not exist until the VM starts
            if ctl is not None and not stat.S_ISSOCK(ctl.st_mode):
                raise ValidationError(
                    f"field `{field}.vnl` file {ctl_socket!r} is not a UNIX socket"
                )
            if nw.switch_port == _PTP_PORT:
                raise ValidationError(
                    f"field `{field}.vnl` points to a non-PTP switch, so the port number "
                    "must not be 65535"
                )
        else:
            # PTP mode: the path is a socket and the port is 65535.
            if not stat.S_ISSOCK(st.st_mode):
                raise ValidationError(
                    f"field `{field}.vnl` {vde_switch!r} is not a directory nor a UNIX socket"
                )
            if nw.switch_port != _PTP_PORT:
                raise ValidationError(
                    f"field `{field}.vnl` points to a PTP (switchless) socket {vde_switch!r}, "
                    f"so the port number has to be 65535 (got {nw.switch_port})"
                )
    elif not sys.platform.startswith("linux") and warn:
        logger.warning(
            "field `%s.vnl` is unlikely to work for %s (unless libvdeplug4 has been "
            "ported to %s and is installed)",
            field,
            sys.platform,
            sys.platform,
        )


def _validate_network(y: LimaYAML, warn: bool) -> None:
    if y.network.vde_deprecated:
        if not y.network.migrated:
            raise ValidationError(
                "you cannot use deprecated field `network.VDE` together with replacement "
                "field `networks`"
            )
        if warn:
            logger.warning("field `network.VDE` is deprecated; please use `networks` instead")

    seen: dict[str, int] = {}
    for i, nw in enumerate(y.networks):
        field = f"networks[{i}]"
        if nw.lima:
            if sys.platform != "darwin":
                raise ValidationError(f"field `{field}.lima` is only supported on macOS right now")
            if nw.vnl:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port != 0:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.lima`"
                )
            cfg = networks.config()
            try:
                cfg.check(nw.lima)
            except LookupError as exc:
                raise ValidationError(
                    f"field `{field}.lima` references network {nw.lima!r} which is not "
                    "defined in networks.yaml"
                ) from exc
        else:
            if not nw.vnl:
                raise ValidationError(f"field `{field}.lima` or field `{field}.vnl` must be set")
            _validate_vnl(field, nw, warn)
        if nw.mac_address:
            try:
                hw = _parse_mac(nw.mac_address)
            except ValueError as exc:
                raise ValidationError(f"field `vmnet.mac` invalid: {exc}") from exc
            if len(hw) != 6:
                raise ValidationError(
                    f"field `{field}.macAddress` must be a 48 bit (6 bytes) MAC address; "
                    f"actual length of {nw.mac_address!r} is {len(hw)} bytes"
                )
        size = len(nw.interface.encode("utf-8"))
        if size >= 16:
            raise ValidationError(
                f"field `{field}.interface` must be less than 16 bytes, but is {size} bytes: "
                f"{nw.interface!r}"
            )
        if any(c in nw.interface for c in " \t\n/"):
            raise ValidationError(
                f"field `{field}.interface` must not contain whitespace or slashes"
            )
        if nw.interface == qemuconst.SLIRP_NIC_NAME:
            raise ValidationError(
                f"field `{field}.interface` must not be set to {qemuconst.SLIRP_NIC_NAME!r} "
                "because it is reserved for slirp"
            )
        if nw.interface in seen:
            raise ValidationError(
                f"field `{field}.interface` value {nw.interface!r} has already been used by "
                f"field `networks[{seen[nw.interface]}].interface`"
            )
        seen[nw.interface] = i