"""Host user lookups, machine identity, DNS and proxy settings."""

from __future__ import annotations

import dataclasses
import grp
import logging
import os
import pwd
import re
import socket
import subprocess
import sys
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any

from lima import sysprof

logger = logging.getLogger(__name__)

# The value of UNIX_PATH_MAX on this platform.
UNIX_PATH_MAX = 108 if sys.platform.startswith("linux") else 104

FALLBACK_USER = "lima"
_VALID_NAME = "^[a-z_][a-z0-9_-]*$"


@dataclass
class User:
    user: str
    uid: int
    group: str
    gid: int


@dataclass
class Group:
    name: str
    gid: int


_users: dict[str, User] = {}
_groups: dict[str, Group] = {}


def lookup_user(name: str) -> User:
    """Return the user called ``name`` together with its primary group."""
    if name not in _users:
        try:
            pw = pwd.getpwnam(name)
        except KeyError:
            raise LookupError(f"user: unknown user {name}") from None
        try:
            group_name = grp.getgrgid(pw.pw_gid).gr_name
        except KeyError:
            raise LookupError(f"group: unknown groupid {pw.pw_gid}") from None
        _users[name] = User(user=pw.pw_name, uid=pw.pw_uid, group=group_name, gid=pw.pw_gid)
    return dataclasses.replace(_users[name])


def lookup_group(name: str) -> Group:
    """Return the group called ``name``."""
    if name not in _groups:
        try:
            g = grp.getgrnam(name)
        except KeyError:
            raise LookupError(f"group: unknown group {name}") from None
        _groups[name] = Group(name=g.gr_name, gid=g.gr_gid)
    return dataclasses.replace(_groups[name])


_user_lock = threading.Lock()
_lima_user: tuple[User | None, Exception | None, str] | None = None


def _current_user() -> tuple[User | None, Exception | None, str]:
    uid = os.getuid()
    gid = os.getgid()
    try:
        pw = pwd.getpwuid(uid)
    except KeyError:
        return None, LookupError(f"user: unknown userid {uid}"), ""
    try:
        group_name = grp.getgrgid(pw.pw_gid).gr_name
    except KeyError:
        group_name = str(pw.pw_gid)
    gid = pw.pw_gid
    user = User(user=pw.pw_name, uid=uid, group=group_name, gid=gid)
    warning = ""
    # `useradd` only allows names matching this pattern.
    if not re.fullmatch(_VALID_NAME, user.user):
        warning = (
            f"local user {user.user!r} is not a valid Linux username (must match "
            f"{_VALID_NAME!r}); using {FALLBACK_USER!r} username instead"
        )
        user.user = FALLBACK_USER
    return user, None, warning


def lima_user(warn: bool = False) -> User:
    """Return the current user, with its name mapped to a valid Linux username."""
    global _lima_user
    with _user_lock:
        if _lima_user is None:
            _lima_user = _current_user()
        user, error, warning = _lima_user
    if warn and warning:
        logger.warning(warning)
    if error is not None:
        raise error
    assert user is not None
    return dataclasses.replace(user)


_machine_id_lock = threading.Lock()
_machine_id: str | None = None


def machine_id() -> str:
    """Return a stable identifier of this host, falling back to the hostname."""
    global _machine_id
    with _machine_id_lock:
        if _machine_id is None:
            try:
                value = _read_machine_id()
            except (OSError, ValueError) as exc:
                logger.debug("failed to get machine ID, falling back to use hostname instead: %s", exc)
                value = ""
            _machine_id = value or socket.gethostname()
        return _machine_id


def _read_machine_id() -> str:
    if sys.platform == "darwin":
        proc = subprocess.run(
            ["/usr/sbin/ioreg", "-a", "-d2", "-c", "IOPlatformExpertDevice"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        if proc.returncode != 0:
            raise OSError(f"ioreg failed with exit status {proc.returncode}: {proc.stdout!r}")
        return parse_io_platform_uuid(proc.stdout)

    candidates = ["/etc/machine-id", "/var/lib/dbus/machine-id"]
    for path in candidates:
        try:
            with open(path, encoding="utf-8") as f:
                return f.read().strip()
        except OSError:
            continue
    raise OSError(f"no machine-id found, tried {candidates}")


def parse_io_platform_uuid(data: str | bytes) -> str:
    """Extract the IOPlatformUUID value from ``ioreg -a`` plist output."""
    text = data.lstrip() if isinstance(data, str) else data.lstrip()
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"cannot parse ioreg output: {exc}") from exc
    for parent in root.iter():
        children = list(parent)
        for key, value in zip(children, children[1:]):
            if key.tag == "key" and key.text == "IOPlatformUUID" and value.tag == "string":
                return value.text or ""
    raise ValueError("IOPlatformUUID not found")


def proxy_url(proxy: str, port: Any) -> str:
    """Build a proxy URL from a host and a numeric or string port."""
    if "://" not in proxy:
        proxy = "http://" + proxy
    if isinstance(port, (int, float)) and not isinstance(port, bool):
        if port != 0:
            proxy = f"{proxy}:{port:.0f}"
    elif isinstance(port, str) and port:
        proxy = f"{proxy}:{port}"
    return proxy


def _first_with_ipv4() -> sysprof.NetworkData | None:
    # The networks are already in service order.
    for nw in sysprof.network_data():
        if nw.ipv4_addresses:
            return nw
    return None


def dns_addresses() -> list[str]:
    """Return the DNS servers of the first network service with an IPv4 address."""
    if sys.platform != "darwin":
        return []
    nw = _first_with_ipv4()
    return list(nw.dns_server_addresses) if nw else []


def proxy_settings() -> dict[str, str]:
    """Return proxy environment variables taken from the system network settings."""
    env: dict[str, str] = {}
    if sys.platform != "darwin":
        return env
    nw = _first_with_ipv4()
    proxies = nw.proxies if nw else sysprof.Proxies()
    # Proxies with a username won't work because the password lives in a keychain.
    if proxies.ftp_enable == "yes" and proxies.ftp_user == "":
        env["ftp_proxy"] = proxy_url(proxies.ftp_proxy, proxies.ftp_port)
    if proxies.http_enable == "yes" and proxies.http_user == "":
        env["http_proxy"] = proxy_url(proxies.http_proxy, proxies.http_port)
    if proxies.https_enable == "yes" and proxies.https_user == "":
        env["https_proxy"] = proxy_url(proxies.https_proxy, proxies.https_port)
    return env