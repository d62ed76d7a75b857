"""Asynchronous VM provisioning with in-flight task tracking."""

from __future__ import annotations

import secrets
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from vmbuilder.config import Settings
from vmbuilder.constants import VM_ID_BYTES, VM_ID_RE
from vmbuilder.exceptions import CreationCancelled, ManagerError, NotFoundError
from vmbuilder.hypervisor import create_hypervisor, list_running_vms
from vmbuilder.images import ImageCache
from vmbuilder.locks import CancellationToken
from vmbuilder.models import VM, CreateVMRequest, LifecycleState, VMConfig, vmx_path_for
from vmbuilder.notifier import Notifier
from vmbuilder.utils import log
from vmbuilder.vm import HypervisorFactory, VMManager, find_vm, new_vm, stored_image


def generate_vm_id() -> str:
    return secrets.token_hex(VM_ID_BYTES)


@dataclass
class _Task:
    future: Future
    token: CancellationToken
    manager: VMManager
    callback_url: str = ""


class Provisioner:
    """Accepts creation requests and runs them on a worker pool.

    The caller gets the partial VM record back right away; the outcome is
    delivered to the request's ``callback_url`` once creation finishes.
    """

    def __init__(
        self,
        settings: Settings,
        notifier: Optional[Notifier] = None,
        hypervisor_factory: HypervisorFactory = create_hypervisor,
    ) -> None:
        self.settings = settings
        self.notifier = notifier or Notifier(settings.callback_timeout, settings.callback_retries)
        self.hypervisor_factory = hypervisor_factory
        self.image_cache = ImageCache(settings)
        self._pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="vm-create")
        self._tasks: Dict[str, _Task] = {}
        self._lock = threading.Lock()

    def submit(self, request: CreateVMRequest) -> VM:
        vm_id = generate_vm_id()
        vm = new_vm(self.settings, request.to_config(vm_id))
        manager = VMManager(
            vm,
            self.settings,
            image_cache=self.image_cache,
            hypervisor_factory=self.hypervisor_factory,
        )
        token = CancellationToken()

        with self._lock:
            future = self._pool.submit(self._run, manager, token, request.callback_url)
            self._tasks[vm_id] = _Task(future, token, manager, request.callback_url)
        log("INFO", f"Accepted creation of VM {vm_id} from {request.image.url}")
        return VM(config=replace(vm.config), vmx_path=vm.vmx_path, state=LifecycleState.CREATING)

    def _run(self, manager: VMManager, token: CancellationToken, callback_url: str) -> Optional[VM]:
        vm_id = manager.vm.id
        try:
            vm = manager.create(token)
            if not vm.ip_address:
                try:
                    manager.refresh()
                except ManagerError as exc:
                    log("WARN", f"Final refresh of VM {vm_id} failed: {exc}")
            payload = manager.vm.to_dict()
            result: Optional[VM] = manager.vm
        except CreationCancelled as exc:
            log("INFO", f"VM {vm_id}: {exc}")
            payload = {"code": "vm-create-error", "message": exc.message}
            result = None
        except Exception as exc:
            log("ERROR", f"VM {vm_id} could not be created: {exc}")
            payload = {"code": "vm-create-error", "message": str(exc)}
            result = None
        finally:
            manager.close()

        try:
            self._deliver(vm_id, callback_url, payload)
        finally:
            with self._lock:
                self._tasks.pop(vm_id, None)
        return result

    def _deliver(self, vm_id: str, callback_url: str, payload: dict) -> None:
        if callback_url:
            self.notifier.notify(callback_url, payload)
        else:
            log("DEBUG", f"No callback for VM {vm_id}; outcome discarded")

    def _abandon(self, vm_id: str, task: _Task) -> None:
        """Report a task that was cancelled before a worker picked it up."""
        task.manager.close()
        with self._lock:
            self._tasks.pop(vm_id, None)
        message = f"Creation cancelled: {task.token.reason}"
        self._deliver(vm_id, task.callback_url, {"code": "vm-create-error", "message": message})

    def in_flight(self, vm_id: str) -> bool:
        with self._lock:
            return vm_id in self._tasks

    def get(self, vm_id: str) -> VM:
        with self._lock:
            task = self._tasks.get(vm_id)
        if task is not None:
            vm = task.manager.vm
            # Still being built; report the accepted configuration.
            return VM(
                config=replace(vm.config),
                vmx_path=vm.vmx_path,
                ip_address=vm.ip_address,
                state=LifecycleState.CREATING,
            )
        return find_vm(self.settings, vm_id, hypervisor_factory=self.hypervisor_factory)

    def cancel(self, vm_id: str, reason: str = "cancelled") -> bool:
        with self._lock:
            task = self._tasks.get(vm_id)
        if task is None:
            return False
        task.token.cancel(reason)
        if task.future.cancel():
            self._abandon(vm_id, task)
        return True

    def destroy(self, vm_id: str) -> None:
        if not VM_ID_RE.match(vm_id or ""):
            raise NotFoundError()
        with self._lock:
            task = self._tasks.get(vm_id)
        if task is not None:
            log("INFO", f"Cancelling in-flight creation of VM {vm_id}")
            task.token.cancel("destroy requested")
            if task.future.cancel():
                self._abandon(vm_id, task)
            else:
                # Wait for the worker to unwind; its outcome is reported by the callback.
                try:
                    task.future.result(timeout=self.settings.command_timeout)
                except Exception as exc:
                    log("DEBUG", f"Creation task for {vm_id} ended with: {exc}")

        vmx_path = vmx_path_for(self.settings.vms_path, vm_id)
        if not vmx_path.parent.exists():
            if task is None:
                raise NotFoundError()
            return
        # A directory without a VMX is leftover from an interrupted clone.
        image = stored_image(vmx_path) if vmx_path.exists() else None
        vm = new_vm(self.settings, VMConfig(id=vm_id, image=image))
        manager = VMManager(vm, self.settings, hypervisor_factory=self.hypervisor_factory)
        try:
            manager.destroy()
        finally:
            manager.close()

    def list_running(self) -> List[str]:
        return list_running_vms(self.settings)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            tasks = list(self._tasks.items())
        for vm_id, task in tasks:
            task.token.cancel("service shutting down")
            if task.future.cancel():
                self._abandon(vm_id, task)
        self._pool.shutdown(wait=wait, cancel_futures=True)
