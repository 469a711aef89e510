"""Configuration model, defaults, validation and VDE network tooling for QEMU-backed Linux VMs."""

__version__ = "0.8.0"