import ipaddress

import pytest
import yaml

from lima.limayaml import model

DOC = """
arch: x86_64
images:
- location: https://example.com/image.img
  arch: x86_64
  digest: sha256:abc
cpus: 2
memory: 4GiB
mounts:
- location: "~"
  writable: true
  sshfs:
    cache: false
ssh:
  localPort: 60022
provision:
- mode: user
  script: "#!/bin/true"
probes:
- script: "#!/bin/false"
  hint: check
portForwards:
- guestPort: 8080
  hostIP: 0.0.0.0
  guestPortRange: [8080, 8090]
networks:
- lima: shared
  switchPort: 3
env:
  ONE: 1
dns:
- 1.1.1.1
useHostResolver: false
"""


def test_parse_fields():
    y = model.parse_lima_yaml(DOC)
    assert y.arch == model.X8664
    assert y.images == [
        model.File(location="https://example.com/image.img", arch="x86_64", digest="sha256:abc")
    ]
    assert y.cpus == 2
    assert y.memory == "4GiB"
    assert y.disk is None
    assert y.mounts[0].location == "~"
    assert y.mounts[0].writable is True
    assert y.mounts[0].sshfs.cache is False
    assert y.mounts[0].sshfs.follow_symlinks is None
    assert y.ssh.local_port == 60022
    assert y.provision == [model.Provision(mode="user", script="#!/bin/true")]
    assert y.probes == [model.Probe(script="#!/bin/false", hint="check")]
    pf = y.port_forwards[0]
    assert pf.guest_port == 8080
    assert pf.guest_port_range == (8080, 8090)
    assert pf.host_ip == ipaddress.ip_address("0.0.0.0")
    assert pf.guest_ip is None
    assert y.networks == [model.Network(lima="shared", switch_port=3)]
    assert y.env == {"ONE": "1"}
    assert y.dns == [ipaddress.ip_address("1.1.1.1")]
    assert y.use_host_resolver is False
    assert y.host_resolver.enabled is None


def test_round_trip_through_dict_and_yaml():
    y = model.parse_lima_yaml(DOC)
    assert model.parse_lima_yaml(y.to_dict()) == y
    assert model.parse_lima_yaml(yaml.safe_dump(y.to_dict())) == y


def test_empty_document_gives_defaults():
    for doc in ("", b"", None, {}):
        assert model.parse_lima_yaml(doc) == model.LimaYAML()


def test_empty_config_keeps_only_images():
    assert model.LimaYAML().to_dict() == {"images": []}


def test_pointer_false_values_are_kept():
    y = model.LimaYAML(propagate_proxy_env=False, cpus=0)
    d = y.to_dict()
    assert d["propagateProxyEnv"] is False
    assert d["cpus"] == 0


def test_probe_keys_are_lowercase_and_always_present():
    probe = {"mode": "readiness", "description": "d", "script": "s", "hint": "h"}
    y = model.parse_lima_yaml({"probes": [probe]})
    assert y.probes[0].mode == model.PROBE_MODE_READINESS
    assert y.to_dict()["probes"] == [probe]


def test_port_forward_zero_values_omitted():
    pf = model.PortForward(guest_port=22, proto=model.TCP)
    assert pf.to_dict() == {"guestPort": 22, "proto": "tcp"}


def test_network_migrated_not_compared():
    assert model.NetworkDeprecated(migrated=True) == model.NetworkDeprecated()


def test_deprecated_vde_parsed():
    y = model.parse_lima_yaml({"network": {"vde": [{"vnl": "/tmp/vde", "switchPort": 65535}]}})
    assert y.network.vde_deprecated == [model.VDEDeprecated(vnl="/tmp/vde", switch_port=65535)]
    assert model.parse_lima_yaml(y.to_dict()) == y


@pytest.mark.parametrize(
    "doc",
    [
        {"images": "not-a-list"},
        {"cpus": "four"},
        {"cpus": True},
        {"portForwards": [{"guestPortRange": [1]}]},
        {"networks": [{"switchPort": 70000}]},
        {"dns": ["not-an-ip"]},
        {"ssh": {"forwardAgent": "yes"}},
        "a: [",
        "- just\n- a list\n",
    ],
)
def test_invalid_documents_raise(doc):
    with pytest.raises(ValueError):
        model.parse_lima_yaml(doc)


def test_ram_in_bytes_plain_number():
    assert model.ram_in_bytes("100") == 100


def test_ram_in_bytes_units_are_binary():
    assert model.ram_in_bytes("1KiB") == 1024
    assert model.ram_in_bytes("1GiB") == 1024 * model.ram_in_bytes("1MiB")
    assert model.ram_in_bytes("4GiB") == model.ram_in_bytes("4096MiB")


def test_ram_in_bytes_suffix_variants_agree():
    assert model.ram_in_bytes("5 MB") == model.ram_in_bytes("5m")
    assert model.ram_in_bytes("2G") == 2 * model.ram_in_bytes("1g")
    assert model.ram_in_bytes("0.5k") * 2 == model.ram_in_bytes("1k")


@pytest.mark.parametrize("size", ["", "abc", "-1", "1.2.3", "10 XB", "GiB"])
def test_ram_in_bytes_invalid(size):
    with pytest.raises(ValueError):
        model.ram_in_bytes(size)