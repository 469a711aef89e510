"""Fixed addresses of the QEMU user-mode (slirp) network."""

SLIRP_NIC_NAME = "eth0"
# Each QEMU process has its own independent slirp network, so the CIDR is fixed.
SLIRP_NETWORK = "192.168.5.0/24"
SLIRP_GATEWAY = "192.168.5.2"
SLIRP_DNS = "192.168.5.3"
SLIRP_IP_ADDRESS = "192.168.5.15"