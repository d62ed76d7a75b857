"""Hypervisor backends and the factory that picks one from settings."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from vmbuilder.config import Settings
from vmbuilder.exceptions import ToolUnavailableError, UnsupportedOperationError
from vmbuilder.hypervisor.base import Hypervisor
from vmbuilder.hypervisor.vmrun import VmrunHypervisor

__all__ = ["Hypervisor", "VmrunHypervisor", "create_hypervisor", "list_running_vms"]


def _native_class():
    try:
        from vmbuilder.hypervisor.native import NativeHypervisor
    except ImportError as exc:
        raise ToolUnavailableError(
            f"libvirt python bindings not available ({exc}); install vm-builder[native]"
        ) from exc
    return NativeHypervisor


def create_hypervisor(settings: Settings, vmx_path: Path, password: Optional[str] = None) -> Hypervisor:
    if settings.backend == "libvirt":
        return _native_class()(
            vmx_path,
            password=password,
            timeout=settings.command_timeout,
            uri=settings.libvirt_uri,
        )
    return VmrunHypervisor(
        vmx_path,
        password=password,
        timeout=settings.command_timeout,
        vmrun_path=settings.vmrun_path,
    )


def list_running_vms(settings: Settings) -> List[str]:
    """Names of the running VMs known to the configured backend."""
    if settings.backend != "libvirt":
        raise UnsupportedOperationError("Listing VMs is only available with the libvirt backend")
    # Connection-level query; the handle is not bound to any VM.
    native = _native_class()
    with native(settings.vms_path, timeout=settings.command_timeout, uri=settings.libvirt_uri) as hv:
        return hv.list_running()
