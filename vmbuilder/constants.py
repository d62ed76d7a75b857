"""Global constants and path defaults for vm-builder."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_PORT = 12345
DEFAULT_BASE_DIR = Path.home() / ".vm-builder"
VMS_DIR_NAME = "vms"
GOLD_DIR_NAME = "gold"
IMAGES_DIR_NAME = "images"

DEFAULT_BACKEND = "vmrun"
BACKEND_ALIASES = {
    "vmrun": "vmrun",
    "cli": "vmrun",
    "fusion": "vmrun",
    "libvirt": "libvirt",
    "native": "libvirt",
}

DEFAULT_VMRUN_PATH = "/Applications/VMware Fusion.app/Contents/Library/vmrun"
DEFAULT_LIBVIRT_URI = "vmwarefusion:///session"

TRUTHY = {"1", "true", "yes", "on"}

# Network types accepted by VMware, except "custom".
NETWORK_HOSTONLY = "hostonly"
NETWORK_NAT = "nat"
NETWORK_BRIDGED = "bridged"
NETWORK_TYPES = {NETWORK_HOSTONLY, NETWORK_NAT, NETWORK_BRIDGED}
DEFAULT_NETWORK_TYPE = NETWORK_NAT
DEFAULT_VIRTUAL_NIC = "e1000"

CLONE_FULL = "full"
CLONE_LINKED = "linked"
CLONE_TYPES = {CLONE_FULL, CLONE_LINKED}

MIN_CPUS = 2
MIN_MEMORY_MB = 512
MEMORY_GRANULARITY_MB = 4

DEFAULT_TOOLS_INIT_TIMEOUT = 30
DEFAULT_COMMAND_TIMEOUT = 300
DEFAULT_DOWNLOAD_TIMEOUT = 60
DEFAULT_UNPACK_TIMEOUT = 1800
DEFAULT_CALLBACK_TIMEOUT = 10
DEFAULT_CALLBACK_RETRIES = 0
DEFAULT_MAX_WORKERS = 4
TOOLS_POLL_INTERVAL = 2.0

SUPPORTED_CHECKSUM_TYPES = {"md5", "sha1", "sha256", "sha512"}

VM_ID_BYTES = 10
VM_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
CHECKSUM_RE = re.compile(r"^[0-9a-f]+$")

VMX_SUFFIX = ".vmx"
VMX_ANNOTATION_KEY = "annotation"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
