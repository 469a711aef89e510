import copy
import ipaddress
import os
import platform
import pwd
from pathlib import Path

import pytest

from lima import osutil
from lima.limayaml import defaults
from lima.limayaml.model import (
    AARCH64,
    SSH,
    SSHFS,
    X8664,
    Containerd,
    File,
    Firmware,
    HostResolver,
    LimaYAML,
    Mount,
    Network,
    PortForward,
    Probe,
    Provision,
    VDEDeprecated,
    Video,
)

LOOPBACK = ipaddress.IPv4Address("127.0.0.1")
HOST_ARCH = X8664 if platform.machine().lower() in ("x86_64", "amd64") else AARCH64
OTHER_ARCH = AARCH64 if HOST_ARCH == X8664 else X8664


@pytest.fixture
def paths(tmp_path, monkeypatch):
    lima_home = tmp_path / "lima"
    monkeypatch.setenv("LIMA_HOME", str(lima_home))
    inst_dir = os.path.join(str(lima_home), "instance")
    return inst_dir, os.path.join(inst_dir, "lima.yaml")


def builtin():
    return LimaYAML(
        arch=HOST_ARCH,
        cpu_type="host",
        cpus=4,
        memory="4GiB",
        disk="100GiB",
        containerd=Containerd(system=False, user=True, archives=defaults.default_containerd_archives()),
        ssh=SSH(local_port=0, load_dot_ssh_pub_keys=True, forward_agent=False),
        firmware=Firmware(legacy_bios=False),
        video=Video(display="none"),
        host_resolver=HostResolver(enabled=True, ipv6=False),
        propagate_proxy_env=True,
    )


def default_pf(**kw):
    pf = PortForward(
        guest_ip=LOOPBACK,
        guest_port_range=(1, 65535),
        host_ip=LOOPBACK,
        host_port_range=(1, 65535),
        proto="tcp",
    )
    for k, v in kw.items():
        setattr(pf, k, v)
    return pf


def make_d():
    return LimaYAML(
        arch="unknown",
        cpu_type="host",
        cpus=7,
        memory="5GiB",
        disk="105GiB",
        containerd=Containerd(system=True, user=False, archives=[File(location="/tmp/nerdctl.tgz")]),
        ssh=SSH(local_port=888, load_dot_ssh_pub_keys=False, forward_agent=True),
        firmware=Firmware(legacy_bios=True),
        video=Video(display="cocoa"),
        host_resolver=HostResolver(enabled=False, ipv6=True),
        propagate_proxy_env=False,
        mounts=[Mount(location="/var/log", writable=False)],
        provision=[Provision(script="#!/bin/true", mode="user")],
        probes=[Probe(script="#!/bin/false", mode="readiness", description="User Probe")],
        networks=[
            Network(vnl="/tmp/vde.ctl", switch_port=65535, mac_address="52:55:55:00:00:01", interface="def0")
        ],
        dns=[ipaddress.ip_address("1.1.1.1")],
        port_forwards=[
            PortForward(
                guest_ip=LOOPBACK,
                guest_port=80,
                guest_port_range=(80, 80),
                host_ip=LOOPBACK,
                host_port=80,
                host_port_range=(80, 80),
                proto="tcp",
            )
        ],
        env={"ONE": "one", "TWO": "two"},
    )


def make_o():
    return LimaYAML(
        arch=HOST_ARCH,
        cpu_type="host",
        cpus=12,
        memory="7GiB",
        disk="117GiB",
        containerd=Containerd(
            system=True,
            user=False,
            archives=[File(arch=HOST_ARCH, location="/tmp/nerdctl.tgz", digest="$DIGEST")],
        ),
        ssh=SSH(local_port=4433, load_dot_ssh_pub_keys=True, forward_agent=True),
        firmware=Firmware(legacy_bios=True),
        video=Video(display="cocoa"),
        host_resolver=HostResolver(enabled=False, ipv6=False),
        propagate_proxy_env=False,
        mounts=[
            Mount(location="/var/log", writable=True, sshfs=SSHFS(cache=False, follow_symlinks=True))
        ],
        provision=[Provision(script="#!/bin/true", mode="system")],
        probes=[Probe(script="#!/bin/false", mode="readiness", description="Another Probe")],
        networks=[
            Network(lima="shared", mac_address="52:55:55:00:00:02", interface="def1"),
            Network(lima="bridged", interface="def0"),
        ],
        dns=[ipaddress.ip_address("2.2.2.2")],
        port_forwards=[
            PortForward(
                guest_ip=LOOPBACK,
                guest_port=88,
                guest_port_range=(88, 88),
                host_ip=LOOPBACK,
                host_port=8080,
                host_port_range=(8080, 8080),
                proto="tcp",
            )
        ],
        env={"TWO": "deux", "THREE": "trois"},
    )


def fill_builtin(file_path):
    y = LimaYAML(
        mounts=[Mount(location="/tmp")],
        provision=[Provision(script="#!/bin/true")],
        probes=[Probe(script="#!/bin/false")],
        networks=[Network(lima="shared")],
        dns=[ipaddress.ip_address("1.0.1.0")],
        port_forwards=[
            PortForward(),
            PortForward(guest_port=80),
            PortForward(guest_port=8080, host_port=8888),
            PortForward(
                guest_socket="{{.Home}} | {{.UID}} | {{.User}}",
                host_socket="{{.Home}} | {{.Dir}} | {{.Name}} | {{.UID}} | {{.User}}",
            ),
        ],
        env={"ONE": "Eins"},
    )
    defaults.fill_default(y, LimaYAML(), LimaYAML(), file_path)
    return y


def test_builtin_defaults(paths):
    inst_dir, file_path = paths
    y = fill_builtin(file_path)

    lima_user = osutil.lima_user(False)
    current = pwd.getpwuid(os.getuid())
    expect = builtin()
    expect.mounts = [Mount(location="/tmp", writable=False, sshfs=SSHFS(cache=True, follow_symlinks=False))]
    expect.provision = [Provision(mode="system", script="#!/bin/true")]
    expect.probes = [Probe(mode="readiness", description="user probe 1/1", script="#!/bin/false")]
    expect.networks = [
        Network(lima="shared", mac_address=defaults.mac_address(f"{file_path}#0"), interface="lima0")
    ]
    expect.dns = [ipaddress.ip_address("1.0.1.0")]
    expect.port_forwards = [
        default_pf(),
        default_pf(guest_port=80, guest_port_range=(80, 80), host_port_range=(80, 80)),
        default_pf(
            guest_port=8080, guest_port_range=(8080, 8080), host_port=8888, host_port_range=(8888, 8888)
        ),
        default_pf(
            guest_socket=f"/home/{lima_user.user}.linux | {lima_user.uid} | {lima_user.user}",
            host_socket=f"{Path.home()} | {inst_dir} | instance | {current.pw_uid} | {current.pw_name}",
        ),
    ]
    expect.env = {"ONE": "Eins"}
    assert y == expect


def test_defaults_override_builtin(paths):
    _, file_path = paths
    d = make_d()
    expect = make_d()
    expect.containerd.archives[0].arch = "unknown"
    expect.mounts[0].sshfs = SSHFS(cache=True, follow_symlinks=False)

    y = LimaYAML()
    defaults.fill_default(y, d, LimaYAML(), file_path)
    assert y == expect
    assert d == make_d()


def test_defaults_do_not_override_config(paths):
    _, file_path = paths
    filled = fill_builtin(file_path)
    y = copy.deepcopy(filled)
    y.dns = [ipaddress.ip_address("8.8.8.8")]
    d = make_d()

    expect = copy.deepcopy(y)
    expect.provision = y.provision + d.provision
    expect.probes = y.probes + d.probes
    expect.port_forwards = y.port_forwards + d.port_forwards
    expect.containerd.archives = y.containerd.archives + [File(location="/tmp/nerdctl.tgz", arch=HOST_ARCH)]
    expect.mounts = [
        Mount(location="/var/log", writable=False, sshfs=SSHFS(cache=True, follow_symlinks=False))
    ] + y.mounts
    expect.networks = d.networks + y.networks
    expect.env["TWO"] = "two"
    expect = copy.deepcopy(expect)

    defaults.fill_default(y, d, LimaYAML(), file_path)
    assert y == expect


def test_overrides_override_config(paths):
    _, file_path = paths
    filled = fill_builtin(file_path)
    y = copy.deepcopy(filled)
    d = make_d()
    o = make_o()

    expect = make_o()
    expect.provision = o.provision + y.provision + d.provision
    expect.probes = o.probes + y.probes + d.probes
    expect.port_forwards = o.port_forwards + y.port_forwards + d.port_forwards
    expect.containerd.archives = (
        o.containerd.archives
        + y.containerd.archives
        + [File(location="/tmp/nerdctl.tgz", arch=HOST_ARCH)]
    )
    expect.mounts = [
        Mount(location="/var/log", writable=True, sshfs=SSHFS(cache=False, follow_symlinks=True))
    ] + y.mounts
    expect.networks = [
        Network(lima="bridged", vnl="", switch_port=0, mac_address="52:55:55:00:00:01", interface="def0"),
        y.networks[0],
        o.networks[0],
    ]
    expect.dns = o.dns
    expect.env = {"ONE": "Eins", "TWO": "deux", "THREE": "trois"}
    expect = copy.deepcopy(expect)

    defaults.fill_default(y, d, o, file_path)
    assert y == expect


def test_new_arch():
    assert defaults.new_arch("amd64") == X8664
    assert defaults.new_arch("arm64") == AARCH64
    assert defaults.new_arch("riscv64") == "riscv64"


def test_resolve_arch():
    assert defaults.resolve_arch(None) == HOST_ARCH
    assert defaults.resolve_arch("") == HOST_ARCH
    assert defaults.resolve_arch("default") == HOST_ARCH
    assert defaults.resolve_arch(OTHER_ARCH) == OTHER_ARCH


def test_is_native_arch():
    assert defaults.is_native_arch(HOST_ARCH) is True
    assert defaults.is_native_arch(OTHER_ARCH) is False
    assert defaults.is_native_arch("unknown") is False


def test_cpu_type_for_emulated_arch(paths):
    _, file_path = paths
    y = LimaYAML(arch=OTHER_ARCH)
    defaults.fill_default(y, LimaYAML(), LimaYAML(), file_path)
    assert y.cpu_type == ("qemu64" if OTHER_ARCH == X8664 else "cortex-a72")


def test_relative_host_socket_goes_under_instance_dir(paths):
    inst_dir, _ = paths
    rule = PortForward(host_socket="foo.sock", guest_socket="/run/foo.sock")
    defaults.fill_port_forward_defaults(rule, inst_dir)
    assert rule.host_socket == os.path.join(inst_dir, "sock", "foo.sock")
    assert rule.guest_socket == "/run/foo.sock"
    assert rule.proto == "tcp"


def test_vde_migration(paths):
    _, file_path = paths
    y = LimaYAML()
    y.network.vde_deprecated = [
        VDEDeprecated(vnl="/tmp/vde.ctl", switch_port=65535, mac_address="52:55:55:00:00:03", name="vde0")
    ]
    defaults.fill_default(y, LimaYAML(), LimaYAML(), file_path)
    assert y.networks == [
        Network(vnl="/tmp/vde.ctl", switch_port=65535, mac_address="52:55:55:00:00:03", interface="vde0")
    ]
    assert y.network.migrated is True


def test_lima_preferred_over_vnl(paths):
    _, file_path = paths
    y = LimaYAML(networks=[Network(vnl="/tmp/a.ctl", switch_port=1, interface="x")])
    o = LimaYAML(networks=[Network(vnl="/tmp/b.ctl", lima="shared", interface="x")])
    defaults.fill_default(y, LimaYAML(), o, file_path)
    assert len(y.networks) == 1
    assert y.networks[0].lima == "shared"
    assert y.networks[0].vnl == ""
    assert y.networks[0].switch_port == 0


def test_unnamed_networks_not_combined(paths):
    _, file_path = paths
    y = LimaYAML(networks=[Network(lima="shared"), Network(lima="host")])
    defaults.fill_default(y, LimaYAML(), LimaYAML(), file_path)
    assert [n.interface for n in y.networks] == ["lima0", "lima1"]
    assert y.networks[0].mac_address != y.networks[1].mac_address


def test_deprecated_use_host_resolver(paths):
    _, file_path = paths
    y = LimaYAML(use_host_resolver=False)
    defaults.fill_default(y, LimaYAML(), LimaYAML(), file_path)
    assert y.host_resolver.enabled is False


def test_mac_address_is_stable_and_local():
    first = defaults.mac_address("abc")
    assert first == defaults.mac_address("abc")
    assert first.startswith("52:55:55:")
    assert len(first) == 17
    assert defaults.mac_address("abd") != first


def test_default_containerd_archives():
    archives = defaults.default_containerd_archives()
    assert [a.arch for a in archives] == [X8664, AARCH64]
    assert all(a.digest.startswith("sha256:") for a in archives)
    assert archives[0].location.endswith("nerdctl-full-0.16.1-linux-amd64.tar.gz")