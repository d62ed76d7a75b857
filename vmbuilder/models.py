"""Data models for vm-builder."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from vmbuilder.constants import (
    CHECKSUM_RE,
    DEFAULT_NETWORK_TYPE,
    MEMORY_GRANULARITY_MB,
    NETWORK_TYPES,
    SUPPORTED_CHECKSUM_TYPES,
    VMX_SUFFIX,
)
from vmbuilder.exceptions import ValidationError


@dataclass(frozen=True)
class OSImage:
    url: str
    checksum: str
    checksum_type: str
    password: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "OSImage":
        if not isinstance(data, dict):
            raise ValidationError("image must be a JSON object")
        url = data.get("url")
        checksum = data.get("checksum")
        checksum_type = data.get("checksum_type")
        password = data.get("password")
        if not isinstance(url, str) or not url.strip():
            raise ValidationError("image.url is required")
        if not isinstance(checksum, str) or not checksum.strip():
            raise ValidationError("image.checksum is required")
        if not isinstance(checksum_type, str) or checksum_type.lower() not in SUPPORTED_CHECKSUM_TYPES:
            supported = ", ".join(sorted(SUPPORTED_CHECKSUM_TYPES))
            raise ValidationError(f"image.checksum_type must be one of: {supported}")
        checksum = checksum.strip().lower()
        if not CHECKSUM_RE.match(checksum):
            raise ValidationError("image.checksum must be a hex digest")
        if password is not None and not isinstance(password, str):
            raise ValidationError("image.password must be a string")
        return cls(url=url.strip(), checksum=checksum, checksum_type=checksum_type.lower(), password=password or None)


class LifecycleState(str, Enum):
    NEW = "new"
    CREATING = "creating"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"
    DESTROYED = "destroyed"

    @property
    def status(self) -> str:
        """Public status string reported in VM records."""
        if self in (LifecycleState.NEW, LifecycleState.DESTROYED):
            return "unknown"
        return self.value


@dataclass
class VMConfig:
    id: str
    image: Optional[OSImage] = None
    cpus: int = 0
    memory: int = 0
    network_type: str = DEFAULT_NETWORK_TYPE
    launch_gui: bool = False
    tools_init_timeout: Optional[int] = None


@dataclass
class VMInfo:
    """Hardware and metadata subset exchanged with the hypervisor."""

    name: str
    annotation: str = ""
    memory_size: int = 0
    cpus: int = 0
    guest_os: str = ""
    network_type: str = ""


@dataclass
class VM:
    config: VMConfig
    vmx_path: Path
    ip_address: str = ""
    state: LifecycleState = LifecycleState.NEW

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def status(self) -> str:
        return self.state.status

    def to_dict(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "id": cfg.id,
            "image": cfg.image.to_dict() if cfg.image else None,
            "cpus": cfg.cpus,
            "memory": cfg.memory,
            "network_type": cfg.network_type,
            "launch_gui": cfg.launch_gui,
            "ip_address": self.ip_address,
            "status": self.status,
        }


@dataclass
class CreateVMRequest:
    image: OSImage
    cpus: int = 0
    memory: int = 0
    network_type: str = DEFAULT_NETWORK_TYPE
    launch_gui: bool = False
    tools_init_timeout: Optional[int] = None
    bootstrap_script: str = ""
    callback_url: str = ""

    def to_config(self, vm_id: str) -> VMConfig:
        return VMConfig(
            id=vm_id,
            image=self.image,
            cpus=self.cpus,
            memory=self.memory,
            network_type=self.network_type,
            launch_gui=self.launch_gui,
            tools_init_timeout=self.tools_init_timeout,
        )


def _int_field(data: Dict[str, Any], name: str) -> int:
    value = data.get(name, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def parse_create_request(data: Any) -> CreateVMRequest:
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    image = OSImage.from_dict(data.get("image"))

    network_type = data.get("network_type") or DEFAULT_NETWORK_TYPE
    if not isinstance(network_type, str) or network_type.lower() not in NETWORK_TYPES:
        supported = ", ".join(sorted(NETWORK_TYPES))
        raise ValidationError(f"network_type must be one of: {supported}")

    launch_gui = data.get("launch_gui", False)
    if not isinstance(launch_gui, bool):
        raise ValidationError("launch_gui must be a boolean")

    tools_init_timeout = data.get("tools_init_timeout")
    if tools_init_timeout is not None:
        if isinstance(tools_init_timeout, bool) or not isinstance(tools_init_timeout, int) or tools_init_timeout <= 0:
            raise ValidationError("tools_init_timeout must be a positive number of seconds")

    bootstrap_script = data.get("bootstrap_script") or ""
    callback_url = data.get("callback_url") or ""
    if not isinstance(bootstrap_script, str):
        raise ValidationError("bootstrap_script must be a string")
    if not isinstance(callback_url, str):
        raise ValidationError("callback_url must be a string")
    if callback_url and not callback_url.startswith(("http://", "https://")):
        raise ValidationError("callback_url must be an http(s) URL")

    return CreateVMRequest(
        image=image,
        cpus=_int_field(data, "cpus"),
        memory=_int_field(data, "memory"),
        network_type=network_type.lower(),
        launch_gui=launch_gui,
        tools_init_timeout=tools_init_timeout,
        bootstrap_script=bootstrap_script,
        callback_url=callback_url,
    )


def round_memory(memory_mb: int) -> int:
    """Round up to the memory granularity VMware requires (4 MB)."""
    mask = MEMORY_GRANULARITY_MB - 1
    return (memory_mb + mask) & ~mask


def encode_annotation(image: Optional[OSImage]) -> str:
    # Base64 so the JSON quotes do not make VMware consider the VMX file corrupt.
    payload = json.dumps(image.to_dict() if image else {}, sort_keys=True)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_annotation(annotation: str) -> Optional[OSImage]:
    if not annotation:
        return None
    try:
        data = json.loads(base64.b64decode(annotation.encode("ascii"), validate=True))
    except (binascii.Error, ValueError, UnicodeError) as exc:
        raise ValidationError(f"VM annotation is not valid image metadata: {exc}") from exc
    if not data:
        return None
    return OSImage(
        url=data.get("url", ""),
        checksum=data.get("checksum", ""),
        checksum_type=data.get("checksum_type", ""),
        password=data.get("password"),
    )


def vmx_path_for(vms_path: Path, vm_id: str) -> Path:
    return Path(vms_path) / vm_id / f"{vm_id}{VMX_SUFFIX}"
