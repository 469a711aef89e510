import json
import subprocess
from unittest import mock

import pytest

from lima import sysprof

SAMPLE = {
    "SPNetworkDataType": [
        {
            "interface": "en0",
            "DNS": {"ServerAddresses": ["10.0.0.53"]},
            "IPv4": {"Addresses": ["10.0.0.7"]},
            "Proxies": {
                "ExceptionList": ["*.local"],
                "HTTPEnable": "yes",
                "HTTPPort": 3128,
                "HTTPProxy": "proxy.example.com",
            },
        },
        {"interface": "en1"},
    ]
}


def test_parse_network_data_fields():
    entries = sysprof.parse_network_data(json.dumps(SAMPLE))
    assert [e.interface for e in entries] == ["en0", "en1"]
    first = entries[0]
    assert first.dns_server_addresses == ["10.0.0.53"]
    assert first.ipv4_addresses == ["10.0.0.7"]
    assert first.proxies.http_enable == "yes"
    assert first.proxies.http_port == 3128
    assert first.proxies.http_proxy == "proxy.example.com"
    assert first.proxies.exception_list == ["*.local"]


def test_parse_network_data_missing_sections_default_empty():
    entries = sysprof.parse_network_data(SAMPLE)
    second = entries[1]
    assert second.ipv4_addresses == []
    assert second.dns_server_addresses == []
    assert second.proxies == sysprof.Proxies()


def test_parse_empty_document():
    assert sysprof.parse_network_data(b"{}") == []


def test_parse_rejects_non_object():
    with pytest.raises(ValueError):
        sysprof.parse_network_data("[]")


def test_system_profiler_returns_stdout():
    done = subprocess.CompletedProcess([], 0, stdout=b'{"x": 1}', stderr=b"")
    with mock.patch("lima.sysprof.subprocess.run", return_value=done) as run:
        assert sysprof.system_profiler("SPNetworkDataType") == b'{"x": 1}'
    assert run.call_args[0][0] == ["system_profiler", "SPNetworkDataType", "-json"]


def test_system_profiler_old_os_returns_empty_object():
    done = subprocess.CompletedProcess([], 1, stdout=b"", stderr=b"Usage: system_profiler [-x]")
    with mock.patch("lima.sysprof.subprocess.run", return_value=done):
        assert sysprof.system_profiler("SPNetworkDataType") == b"{}"


def test_system_profiler_failure_raises():
    done = subprocess.CompletedProcess([], 2, stdout=b"", stderr=b"boom")
    with mock.patch("lima.sysprof.subprocess.run", return_value=done):
        with pytest.raises(RuntimeError, match="boom"):
            sysprof.system_profiler("SPNetworkDataType")