"""Backend driving VMware through a persistent libvirt connection."""

from __future__ import annotations

import concurrent.futures
import hashlib
import textwrap
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import libvirt  # type: ignore

from vmbuilder.constants import CLONE_FULL, CLONE_TYPES, DEFAULT_LIBVIRT_URI, TOOLS_POLL_INTERVAL
from vmbuilder.exceptions import (
    ExternalToolError,
    NotFoundError,
    OperationFailedError,
    OperationTimeoutError,
    ResourceBusyError,
    ToolUnavailableError,
)
from vmbuilder.hypervisor.base import Hypervisor
from vmbuilder.locks import IMAGE_LOCKS
from vmbuilder.utils import log
from vmbuilder.vmx import VMXConfig, read_vmx, write_vmx


def _codes(*names: str) -> set:
    # Older bindings do not define every constant.
    return {getattr(libvirt, name) for name in names if getattr(libvirt, name, None) is not None}


_UNAVAILABLE_CODES = _codes("VIR_ERR_NO_CONNECT", "VIR_ERR_RPC", "VIR_ERR_AUTH_FAILED", "VIR_ERR_NO_SUPPORT")
_BUSY_CODES = _codes("VIR_ERR_RESOURCE_BUSY")
_TIMEOUT_CODES = _codes("VIR_ERR_OPERATION_TIMEOUT")
_NO_DOMAIN_CODES = _codes("VIR_ERR_NO_DOMAIN")
_VOLUME_EXISTS_CODES = _codes("VIR_ERR_STORAGE_VOL_EXIST")
_NO_POOL_CODES = _codes("VIR_ERR_NO_STORAGE_POOL")
_AGENT_DOWN_CODES = _codes("VIR_ERR_AGENT_UNRESPONSIVE", "VIR_ERR_AGENT_UNSYNCED", "VIR_ERR_OPERATION_INVALID")


def classify_libvirt_error(exc: "libvirt.libvirtError", action: str) -> ExternalToolError:
    code = exc.get_error_code()
    message = f"libvirt {action} failed: {exc.get_error_message() or exc}"
    if code in _UNAVAILABLE_CODES:
        return ToolUnavailableError(message)
    if code in _BUSY_CODES:
        return ResourceBusyError(message)
    if code in _TIMEOUT_CODES:
        return OperationTimeoutError(message)
    return OperationFailedError(message)


def _disk_keys(vmx: VMXConfig) -> List[Tuple[str, str]]:
    return sorted(
        (key, value)
        for key, value in vmx.items()
        if key.endswith(".filename") and value.lower().endswith(".vmdk")
    )


class NativeHypervisor(Hypervisor):
    """libvirt backend; the VM id (VMX stem) doubles as the domain name.

    The bindings are not thread safe, so every call on the connection and on
    objects derived from it runs on one dedicated worker thread.
    """

    name = "libvirt"

    def __init__(
        self,
        vmx_path: Path,
        password: Optional[str] = None,
        timeout: int = 300,
        uri: str = DEFAULT_LIBVIRT_URI,
    ) -> None:
        super().__init__(vmx_path, password=password, timeout=timeout)
        self.uri = uri
        self.domain_name = self.vmx_path.stem
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="libvirt")
        self.conn: Optional["libvirt.virConnect"] = None
        try:
            self.conn = self._call("open", libvirt.open, uri)
        except ExternalToolError as exc:
            self._executor.shutdown(wait=False)
            raise ToolUnavailableError(f"Unable to connect to libvirt at {uri}: {exc}") from exc
        if self.conn is None:
            self._executor.shutdown(wait=False)
            raise ToolUnavailableError(f"Unable to connect to libvirt at {uri}")

    def _call(self, action: str, func: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(func, *args)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as exc:
            raise OperationTimeoutError(f"libvirt {action} timed out after {self.timeout}s") from exc
        except libvirt.libvirtError as exc:
            raise classify_libvirt_error(exc, action) from exc

    def close(self) -> None:
        if self.conn is not None:
            conn, self.conn = self.conn, None
            try:
                self._call("close", conn.close)
            except ExternalToolError as exc:
                log("WARN", f"Failed to close libvirt connection: {exc}")
        self._executor.shutdown(wait=False)

    def _lookup(self) -> Optional["libvirt.virDomain"]:
        def lookup():
            try:
                return self.conn.lookupByName(self.domain_name)
            except libvirt.libvirtError as exc:
                if exc.get_error_code() in _NO_DOMAIN_CODES:
                    return None
                raise

        return self._call("lookup", lookup)

    def _domain(self) -> "libvirt.virDomain":
        dom = self._lookup()
        if dom is None:
            if not self.exists():
                raise NotFoundError(f"VM {self.domain_name} not found")
            dom = self._define()
        return dom

    def _define(self) -> "libvirt.virDomain":
        text = self.vmx_path.read_text(encoding="utf-8", errors="replace")

        def define():
            xml = self.conn.domainXMLFromNative("vmware-vmx", text, 0)
            return self.conn.defineXML(xml)

        dom = self._call("define", define)
        log("DEBUG", f"Domain {self.domain_name} defined from {self.vmx_path.name}")
        return dom

    def _config_changed(self) -> None:
        self._define()

    def _pool_xml(self, name: str, path: Path) -> str:
        return textwrap.dedent(
            f"""
            <pool type='dir'>
              <name>{name}</name>
              <target>
                <path>{path}</path>
              </target>
            </pool>
            """
        ).strip()

    def _transient_pool(self, name: str, path: Path) -> Any:
        try:
            pool = self.conn.storagePoolLookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() not in _NO_POOL_CODES:
                raise
            return self.conn.storagePoolCreateXML(self._pool_xml(name, path), 0)
        log("WARN", f"Reusing leftover storage pool {name}")
        return pool

    def _volume_xml(self, name: str, capacity: int, backing: Optional[str]) -> str:
        backing_xml = ""
        if backing is not None:
            backing_xml = f"<backingStore><path>{backing}</path><format type='vmdk'/></backingStore>"
        return textwrap.dedent(
            f"""
            <volume>
              <name>{name}</name>
              <capacity unit='bytes'>{capacity}</capacity>
              <target><format type='vmdk'/></target>
              {backing_xml}
            </volume>
            """
        ).strip()

    def clone_from(self, source: Path, clone_type: str) -> None:
        if clone_type not in CLONE_TYPES:
            raise ValueError(f"Unknown clone type: {clone_type}")
        source = Path(source)
        source_vmx = read_vmx(source)
        target_dir = self.vmx_path.parent
        target_dir.mkdir(parents=True, exist_ok=True)

        renamed: Dict[str, str] = {}

        # libvirt allows one pool per directory; clones of one gold image share it in turn.
        src_name = "vmb-src-" + hashlib.sha1(str(source.parent.resolve()).encode()).hexdigest()[:16]

        def clone_disks():
            # Transient pools leave the files in place when destroyed.
            src_pool = self._transient_pool(src_name, source.parent)
            try:
                dst_pool = self._transient_pool(f"vmb-{self.domain_name}", target_dir)
                try:
                    for index, (key, filename) in enumerate(_disk_keys(source_vmx)):
                        src_vol = src_pool.storageVolLookupByName(Path(filename).name)
                        _, capacity, _ = src_vol.info()
                        name = f"{self.domain_name}-disk{index}.vmdk"
                        backing = src_vol.path() if clone_type != CLONE_FULL else None
                        xml = self._volume_xml(name, capacity, backing)
                        try:
                            if clone_type == CLONE_FULL:
                                dst_pool.createXMLFrom(xml, src_vol, 0)
                            else:
                                dst_pool.createXML(xml, 0)
                        except libvirt.libvirtError as exc:
                            if exc.get_error_code() not in _VOLUME_EXISTS_CODES:
                                raise
                            log("WARN", f"Volume {name} already exists; reusing it")
                        renamed[key] = name
                finally:
                    dst_pool.destroy()
            finally:
                src_pool.destroy()

        with IMAGE_LOCKS.hold(src_name):
            self._call("clone", clone_disks)

        clone_vmx = VMXConfig(source_vmx)
        for key, name in renamed.items():
            clone_vmx[key] = name
        clone_vmx["displayname"] = self.domain_name
        write_vmx(self.vmx_path, clone_vmx)
        self._define()
        log("INFO", f"Created {clone_type} clone {self.domain_name} from {source}")

    def start(self, headless: bool = True) -> None:
        dom = self._domain()
        if self._call("state", dom.isActive):
            log("INFO", f"Domain {self.domain_name} already running")
            return
        if not headless:
            log("DEBUG", "libvirt backend starts domains without a console window")
        self._call("start", dom.create)

    def stop(self, hard: bool = False) -> None:
        dom = self._domain()
        if not self._call("state", dom.isActive):
            return
        if hard:
            self._call("destroy", dom.destroy)
            return
        self._call("shutdown", dom.shutdown)
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if not self._call("state", dom.isActive):
                return
            time.sleep(TOOLS_POLL_INTERVAL)
        raise OperationTimeoutError(f"Domain {self.domain_name} did not shut down within {self.timeout}s")

    def delete(self) -> None:
        dom = self._lookup()
        if dom is None:
            return
        if self._call("state", dom.isActive):
            self._call("destroy", dom.destroy)
        self._call("undefine", dom.undefine)

    def is_running(self) -> bool:
        dom = self._lookup()
        if dom is None:
            return False
        return bool(self._call("state", dom.isActive))

    def _agent_addresses(self) -> Optional[Dict[str, Any]]:
        dom = self._lookup()
        if dom is None:
            return None

        def query():
            try:
                return dom.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT, 0)
            except libvirt.libvirtError as exc:
                if exc.get_error_code() in _AGENT_DOWN_CODES:
                    return None
                raise

        return self._call("interfaceAddresses", query)

    def has_tools_installed(self) -> bool:
        return self._agent_addresses() is not None

    def ip_address(self) -> str:
        for iface in (self._agent_addresses() or {}).values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") != libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    continue
                ip = addr.get("addr", "")
                if ip and not ip.startswith("127."):
                    return ip
        return ""

    def list_running(self) -> List[str]:
        domains = self._call(
            "list",
            self.conn.listAllDomains,
            libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE,
        )
        return sorted(self._call("name", dom.name) for dom in domains)
