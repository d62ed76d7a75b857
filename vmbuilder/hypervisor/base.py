"""Capability interface shared by every hypervisor backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from vmbuilder.constants import DEFAULT_VIRTUAL_NIC, VMX_ANNOTATION_KEY
from vmbuilder.exceptions import NotFoundError, ResourceBusyError
from vmbuilder.models import VMInfo
from vmbuilder.vmx import VMXConfig, read_vmx, write_vmx


class Hypervisor(ABC):
    """Control surface for a single VM identified by its VMX path.

    ``exists``, ``info`` and ``set_info`` work directly on the VMX file and are
    shared by all backends; power, clone and guest queries are backend specific.
    """

    name = "abstract"

    def __init__(self, vmx_path: Path, password: Optional[str] = None, timeout: int = 300) -> None:
        self.vmx_path = Path(vmx_path)
        self.password = password
        self.timeout = timeout

    def __enter__(self) -> "Hypervisor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""

    def exists(self) -> bool:
        return self.vmx_path.is_file()

    def _read(self) -> VMXConfig:
        if not self.exists():
            raise NotFoundError(f"VMX file not found: {self.vmx_path}")
        try:
            return read_vmx(self.vmx_path)
        except OSError as exc:
            raise ResourceBusyError(f"Unable to read {self.vmx_path}: {exc}") from exc

    def info(self) -> VMInfo:
        vmx = self._read()
        return VMInfo(
            name=vmx.get("displayname", ""),
            annotation=vmx.get(VMX_ANNOTATION_KEY, ""),
            memory_size=_as_int(vmx.get("memsize")),
            cpus=_as_int(vmx.get("numvcpus")),
            guest_os=vmx.get("guestos", ""),
            network_type=vmx.get("ethernet0.connectiontype", ""),
        )

    def set_info(self, info: VMInfo) -> None:
        vmx = self._read()
        vmx["displayname"] = info.name
        vmx[VMX_ANNOTATION_KEY] = info.annotation
        vmx["numvcpus"] = info.cpus
        vmx["memsize"] = info.memory_size
        vmx["msg.autoanswer"] = "true"
        if info.guest_os:
            vmx["guestos"] = info.guest_os

        vmx.remove_prefix("ethernet")
        vmx["ethernet0.present"] = "true"
        vmx["ethernet0.startconnected"] = "true"
        vmx["ethernet0.virtualdev"] = DEFAULT_VIRTUAL_NIC
        vmx["ethernet0.connectiontype"] = info.network_type
        try:
            write_vmx(self.vmx_path, vmx)
        except OSError as exc:
            raise ResourceBusyError(f"Unable to write {self.vmx_path}: {exc}") from exc
        self._config_changed()

    def _config_changed(self) -> None:
        """Hook run after the VMX file was rewritten."""

    @abstractmethod
    def clone_from(self, source: Path, clone_type: str) -> None:
        """Clone ``source`` VMX into this handle's VMX path."""

    @abstractmethod
    def start(self, headless: bool = True) -> None:
        pass

    @abstractmethod
    def stop(self, hard: bool = False) -> None:
        pass

    @abstractmethod
    def delete(self) -> None:
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def has_tools_installed(self) -> bool:
        pass

    @abstractmethod
    def ip_address(self) -> str:
        pass


def _as_int(raw: Optional[str]) -> int:
    try:
        return int(raw) if raw else 0
    except ValueError:
        return 0
