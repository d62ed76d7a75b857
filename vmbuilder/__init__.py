"""vm-builder package."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "hypervisor",
    "images",
    "locks",
    "models",
    "notifier",
    "provisioner",
    "utils",
    "vm",
    "vmx",
    "web",
]
