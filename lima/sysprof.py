"""Network information reported by the macOS ``system_profiler`` tool."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_PROXY_KEYS = {
    "exception_list": "ExceptionList",
    "ftp_enable": "FTPEnable",
    "ftp_port": "FTPPort",
    "ftp_proxy": "FTPProxy",
    "ftp_user": "FTPUser",
    "http_enable": "HTTPEnable",
    "http_port": "HTTPPort",
    "http_proxy": "HTTPProxy",
    "http_user": "HTTPUser",
    "https_enable": "HTTPSEnable",
    "https_port": "HTTPSPort",
    "https_proxy": "HTTPSProxy",
    "https_user": "HTTPSUser",
}


@dataclass
class Proxies:
    """Proxy settings of one network service. Ports may be numbers or strings."""

    exception_list: List[str] = field(default_factory=list)
    ftp_enable: str = ""
    ftp_port: Any = None
    ftp_proxy: str = ""
    ftp_user: str = ""
    http_enable: str = ""
    http_port: Any = None
    http_proxy: str = ""
    http_user: str = ""
    https_enable: str = ""
    https_port: Any = None
    https_proxy: str = ""
    https_user: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Proxies":
        values = {}
        for attr, key in _PROXY_KEYS.items():
            if key in data and data[key] is not None:
                value = data[key]
                values[attr] = list(value) if attr == "exception_list" else value
        return cls(**values)


@dataclass
class NetworkData:
    """One entry of the ``SPNetworkDataType`` report."""

    interface: str = ""
    dns_server_addresses: List[str] = field(default_factory=list)
    ipv4_addresses: List[str] = field(default_factory=list)
    proxies: Proxies = field(default_factory=Proxies)


def parse_network_data(data) -> List[NetworkData]:
    """Parse the JSON output of ``system_profiler SPNetworkDataType -json``."""
    doc = json.loads(data) if isinstance(data, (str, bytes, bytearray)) else data
    if not isinstance(doc, dict):
        raise ValueError("system_profiler output must be a JSON object")
    result = []
    for entry in doc.get("SPNetworkDataType") or []:
        dns = entry.get("DNS") or {}
        ipv4 = entry.get("IPv4") or {}
        result.append(
            NetworkData(
                interface=entry.get("interface") or "",
                dns_server_addresses=list(dns.get("ServerAddresses") or []),
                ipv4_addresses=list(ipv4.get("Addresses") or []),
                proxies=Proxies.from_dict(entry.get("Proxies") or {}),
            )
        )
    return result


def system_profiler(data_type: str) -> bytes:
    """Run ``system_profiler DATA_TYPE -json`` and return its standard output."""
    args = ["system_profiler", data_type, "-json"]
    proc = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        stderr = proc.stderr or b""
        if stderr.startswith(b"Usage: system_profiler"):
            logger.warning(
                "Can't fetch system_profiler data; maybe OS is older than macOS Catalina 10.15"
            )
            return b"{}"
        raise RuntimeError(
            f"failed to run {args}: stdout={proc.stdout!r}, stderr={stderr!r}: "
            f"exit status {proc.returncode}"
        )
    return proc.stdout


_lock = threading.Lock()
_cache: Dict[str, Any] = {}


def network_data() -> List[NetworkData]:
    """Return the network report, running ``system_profiler`` once per process."""
    with _lock:
        if "done" not in _cache:
            try:
                _cache["result"] = parse_network_data(system_profiler("SPNetworkDataType"))
                _cache["error"] = None
            except Exception as exc:  # cached like the result
                _cache["result"] = None
                _cache["error"] = exc
            _cache["done"] = True
        result: Optional[List[NetworkData]] = _cache["result"]
        error: Optional[Exception] = _cache["error"]
    if error is not None:
        raise error
    return list(result or [])