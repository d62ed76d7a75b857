"""VM lifecycle management for vm-builder."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from vmbuilder.config import Settings
from vmbuilder.constants import (
    CLONE_LINKED,
    DEFAULT_NETWORK_TYPE,
    MIN_CPUS,
    MIN_MEMORY_MB,
    TOOLS_POLL_INTERVAL,
    VM_ID_RE,
    VMX_ANNOTATION_KEY,
)
from vmbuilder.exceptions import (
    CreationCancelled,
    ExternalToolError,
    ManagerError,
    NotFoundError,
    ResourceBusyError,
    ValidationError,
)
from vmbuilder.hypervisor import Hypervisor, create_hypervisor
from vmbuilder.images import ImageCache
from vmbuilder.locks import VM_LOCKS, CancellationToken
from vmbuilder.models import (
    VM,
    LifecycleState,
    OSImage,
    VMConfig,
    VMInfo,
    decode_annotation,
    encode_annotation,
    round_memory,
    vmx_path_for,
)
from vmbuilder.utils import ensure_directory, log
from vmbuilder.vmx import read_vmx

HypervisorFactory = Callable[[Settings, Path, Optional[str]], Hypervisor]

_TRANSITIONS = {
    LifecycleState.NEW: {LifecycleState.CREATING, LifecycleState.RUNNING, LifecycleState.STOPPED, LifecycleState.DESTROYED},
    LifecycleState.CREATING: {LifecycleState.RUNNING, LifecycleState.ERROR, LifecycleState.DESTROYED},
    LifecycleState.RUNNING: {LifecycleState.STOPPED, LifecycleState.ERROR, LifecycleState.DESTROYED},
    LifecycleState.ERROR: {LifecycleState.CREATING, LifecycleState.RUNNING, LifecycleState.STOPPED, LifecycleState.DESTROYED},
    LifecycleState.STOPPED: {LifecycleState.RUNNING, LifecycleState.ERROR, LifecycleState.DESTROYED},
    LifecycleState.DESTROYED: set(),
}


class VMManager:
    """Drives one VM through create, update, refresh and destroy.

    Every public operation holds the per-id lock from ``VM_LOCKS``; ``create``
    calls ``update`` while holding it, which is why the lock is re-entrant.
    """

    def __init__(
        self,
        vm: VM,
        settings: Settings,
        hypervisor: Optional[Hypervisor] = None,
        image_cache: Optional[ImageCache] = None,
        hypervisor_factory: HypervisorFactory = create_hypervisor,
    ) -> None:
        self.vm = vm
        self.settings = settings
        password = vm.config.image.password if vm.config.image else None
        self.hypervisor = hypervisor or hypervisor_factory(settings, vm.vmx_path, password)
        self.image_cache = image_cache or ImageCache(settings)
        self.poll_interval = TOOLS_POLL_INTERVAL

    @property
    def cfg(self) -> VMConfig:
        return self.vm.config

    @property
    def vm_dir(self) -> Path:
        return self.vm.vmx_path.parent

    def close(self) -> None:
        self.hypervisor.close()

    def _set_state(self, new: LifecycleState) -> None:
        current = self.vm.state
        if new == current:
            return
        if new not in _TRANSITIONS[current]:
            raise ManagerError(f"Illegal state transition for VM {self.vm.id}: {current.value} -> {new.value}")
        log("DEBUG", f"VM {self.vm.id}: {current.value} -> {new.value}")
        self.vm.state = new

    def create(self, cancel: Optional[CancellationToken] = None) -> VM:
        cancel = cancel or CancellationToken()
        with VM_LOCKS.hold(self.vm.id):
            self._set_state(LifecycleState.CREATING)
            created_dir = not self.vm_dir.exists()
            try:
                cancel.raise_if_cancelled()
                if self.cfg.image is None:
                    raise ValidationError("VM has no OS image to create from")
                gold_vmx = self.image_cache.ensure_gold_image(self.cfg.image, cancel)
                cancel.raise_if_cancelled()

                if self.hypervisor.exists():
                    log("INFO", f"VM {self.vm.id} already cloned; resuming configuration")
                else:
                    if self.vm_dir.exists():
                        # Stray files from an interrupted clone.
                        shutil.rmtree(self.vm_dir)
                    ensure_directory(self.vm_dir)
                    created_dir = True
                    log("INFO", f"Cloning {gold_vmx.name} into {self.vm.vmx_path}")
                    self.hypervisor.clone_from(gold_vmx, CLONE_LINKED)

                cancel.raise_if_cancelled()
                self.update(cancel)
            except CreationCancelled:
                log("WARN", f"Creation of VM {self.vm.id} cancelled; discarding partial state")
                self._discard(remove_dir=created_dir)
                raise
            except Exception as exc:
                log("ERROR", f"Creation of VM {self.vm.id} failed: {exc}")
                self._set_state(LifecycleState.ERROR)
                raise
        log("SUCCESS", f"VM {self.vm.id} created")
        return self.vm

    def _discard(self, remove_dir: bool) -> None:
        try:
            if self.hypervisor.exists() and self.hypervisor.is_running():
                self.hypervisor.stop(hard=True)
        except ExternalToolError as exc:
            log("WARN", f"Failed to stop VM {self.vm.id} while discarding it: {exc}")
        if remove_dir:
            # Unregister while the VMX it was defined from still exists.
            try:
                if self.hypervisor.exists():
                    self.hypervisor.delete()
            except ExternalToolError as exc:
                log("WARN", f"Failed to delete VM {self.vm.id} while discarding it: {exc}")
            shutil.rmtree(self.vm_dir, ignore_errors=True)
        self._set_state(LifecycleState.DESTROYED)

    def _apply_defaults(self) -> None:
        cfg = self.cfg
        if cfg.cpus <= 0:
            cfg.cpus = MIN_CPUS
        if cfg.memory < MIN_MEMORY_MB:
            cfg.memory = MIN_MEMORY_MB
        cfg.memory = round_memory(cfg.memory)
        if not cfg.network_type:
            cfg.network_type = DEFAULT_NETWORK_TYPE

    def _stop_running(self) -> None:
        try:
            hard = not self.hypervisor.has_tools_installed()
        except ExternalToolError:
            hard = True
        log("INFO", f"Stopping VM {self.vm.id} ({'hard' if hard else 'soft'})")
        self.hypervisor.stop(hard=hard)
        if self.vm.state == LifecycleState.RUNNING:
            self._set_state(LifecycleState.STOPPED)

    def update(self, cancel: Optional[CancellationToken] = None) -> VM:
        """Apply the configuration to the VMX file and power the VM on."""
        cancel = cancel or CancellationToken()
        with VM_LOCKS.hold(self.vm.id):
            self._apply_defaults()
            if self.hypervisor.is_running():
                self._stop_running()

            info = VMInfo(
                name=self.vm.id,
                annotation=encode_annotation(self.cfg.image),
                memory_size=self.cfg.memory,
                cpus=self.cfg.cpus,
                network_type=self.cfg.network_type,
            )
            self.hypervisor.set_info(info)
            cancel.raise_if_cancelled()

            self.hypervisor.start(headless=not self.cfg.launch_gui)
            self._set_state(LifecycleState.RUNNING)

            timeout = self.cfg.tools_init_timeout or self.settings.tools_init_timeout
            if self._wait_for_tools(timeout, cancel):
                self.vm.ip_address = self._ip_address()
            else:
                log("WARN", f"Guest tools in VM {self.vm.id} not ready after {timeout}s; continuing without an IP")
        return self.vm

    def _wait_for_tools(self, timeout: float, cancel: CancellationToken) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            cancel.raise_if_cancelled()
            try:
                if self.hypervisor.has_tools_installed():
                    return True
            except ExternalToolError as exc:
                log("DEBUG", f"Guest tools query for {self.vm.id} failed: {exc}")
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def _ip_address(self) -> str:
        try:
            return self.hypervisor.ip_address()
        except ExternalToolError as exc:
            log("DEBUG", f"No IP address for VM {self.vm.id} yet: {exc}")
            return ""

    def destroy(self) -> None:
        with VM_LOCKS.hold(self.vm.id):
            try:
                try:
                    if self.hypervisor.exists() and self.hypervisor.is_running():
                        self._stop_running()
                except ExternalToolError as exc:
                    log("WARN", f"Failed to stop VM {self.vm.id}: {exc}")
                try:
                    if self.hypervisor.exists():
                        self.hypervisor.delete()
                except ExternalToolError as exc:
                    log("WARN", f"Failed to delete VM {self.vm.id} through the hypervisor: {exc}")
            finally:
                shutil.rmtree(self.vm_dir, ignore_errors=True)
            self._set_state(LifecycleState.DESTROYED)
        log("SUCCESS", f"VM {self.vm.id} destroyed")

    def refresh(self) -> VM:
        with VM_LOCKS.hold(self.vm.id):
            info = self.hypervisor.info()
            cfg = self.cfg
            cfg.cpus = info.cpus
            cfg.memory = info.memory_size
            cfg.network_type = info.network_type or DEFAULT_NETWORK_TYPE
            try:
                cfg.image = decode_annotation(info.annotation)
            except ValidationError as exc:
                log("WARN", f"VM {self.vm.id}: {exc}")
                cfg.image = None

            running = self.hypervisor.is_running()
            self.vm.ip_address = self._ip_address() if running else ""
            self._set_state(LifecycleState.RUNNING if running else LifecycleState.STOPPED)
        return self.vm


def new_vm(settings: Settings, config: VMConfig) -> VM:
    return VM(config=config, vmx_path=vmx_path_for(settings.vms_path, config.id))


def stored_image(vmx_path: Path) -> Optional[OSImage]:
    """Image recorded in a VMX annotation, used to recover the image credential.

    An unreadable VMX raises :class:`ResourceBusyError`; a corrupt annotation
    yields ``None``.
    """
    try:
        vmx = read_vmx(vmx_path)
    except OSError as exc:
        raise ResourceBusyError(f"Unable to read {vmx_path}: {exc}") from exc
    try:
        return decode_annotation(vmx.get(VMX_ANNOTATION_KEY, ""))
    except ValidationError:
        return None


def find_vm(
    settings: Settings,
    vm_id: str,
    hypervisor_factory: HypervisorFactory = create_hypervisor,
) -> VM:
    """Load and refresh the VM stored under ``vm_id``."""
    if not VM_ID_RE.match(vm_id or ""):
        raise NotFoundError()
    vmx_path = vmx_path_for(settings.vms_path, vm_id)
    if not vmx_path.is_file():
        raise NotFoundError()
    vm = new_vm(settings, VMConfig(id=vm_id, image=stored_image(vmx_path)))
    manager = VMManager(vm, settings, hypervisor_factory=hypervisor_factory)
    try:
        return manager.refresh()
    finally:
        manager.close()
