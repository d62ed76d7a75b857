"""Backend driving VMware through the ``vmrun`` command line tool."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from vmbuilder.constants import CLONE_TYPES, DEFAULT_VMRUN_PATH
from vmbuilder.exceptions import (
    OperationFailedError,
    OperationTimeoutError,
    ResourceBusyError,
    ToolUnavailableError,
)
from vmbuilder.hypervisor.base import Hypervisor
from vmbuilder.utils import log

_BUSY_MARKERS = ("lock", "in use", "busy")
_TOOLS_READY_STATES = {"installed", "running"}


class VmrunHypervisor(Hypervisor):
    """One ``vmrun`` process per operation, each bounded by ``timeout`` seconds."""

    name = "vmrun"

    def __init__(
        self,
        vmx_path: Path,
        password: Optional[str] = None,
        timeout: int = 300,
        vmrun_path: str = DEFAULT_VMRUN_PATH,
    ) -> None:
        super().__init__(vmx_path, password=password, timeout=timeout)
        self.vmrun_path = vmrun_path

    def _command(self, args: List[str]) -> List[str]:
        cmd = [self.vmrun_path]
        if self.password:
            cmd += ["-vp", self.password]
        return cmd + args

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = self._command(args)
        # Never log the credential.
        log("DEBUG", f"Running: vmrun {' '.join(args)}")
        try:
            proc = subprocess.run(
                cmd,
                check=False,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailableError(f"vmrun not found at {self.vmrun_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeoutError(f"vmrun {args[0]} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise ToolUnavailableError(f"Could not run vmrun {args[0]}: {exc}") from exc

        if check and proc.returncode != 0:
            raise _classify_failure(args[0], proc)
        return proc

    def clone_from(self, source: Path, clone_type: str) -> None:
        if clone_type not in CLONE_TYPES:
            raise ValueError(f"Unknown clone type: {clone_type}")
        args = ["clone", str(source), str(self.vmx_path), clone_type, f"-cloneName={self.vmx_path.stem}"]
        proc = self._run(args, check=False)
        if proc.returncode == 0:
            return
        if "already exists" in _output(proc).lower():
            log("WARN", f"Clone target {self.vmx_path} already exists; reusing it")
            return
        raise _classify_failure("clone", proc)

    def start(self, headless: bool = True) -> None:
        self._run(["start", str(self.vmx_path), "nogui" if headless else "gui"])

    def stop(self, hard: bool = False) -> None:
        self._run(["stop", str(self.vmx_path), "hard" if hard else "soft"])

    def delete(self) -> None:
        self._run(["deleteVM", str(self.vmx_path)])

    def list_running(self) -> List[str]:
        proc = self._run(["list"])
        # First line is the "Total running VMs: N" header.
        return [line.strip() for line in proc.stdout.splitlines()[1:] if line.strip()]

    def is_running(self) -> bool:
        target = str(self.vmx_path)
        return any(path == target for path in self.list_running())

    def has_tools_installed(self) -> bool:
        proc = self._run(["checkToolsState", str(self.vmx_path)])
        return any(line.strip() in _TOOLS_READY_STATES for line in proc.stdout.splitlines())

    def ip_address(self) -> str:
        proc = self._run(["getGuestIPAddress", str(self.vmx_path)])
        lines = proc.stdout.strip().splitlines()
        return lines[0].strip() if lines else ""


def _output(proc: subprocess.CompletedProcess) -> str:
    stderr = (proc.stderr or "").strip()
    stdout = (proc.stdout or "").strip()
    return stderr or stdout


def _classify_failure(command: str, proc: subprocess.CompletedProcess) -> Exception:
    details = _output(proc)
    message = f"vmrun {command} failed (exit {proc.returncode})"
    if details:
        message = f"{message}: {details}"
    lowered = details.lower()
    if any(marker in lowered for marker in _BUSY_MARKERS):
        return ResourceBusyError(message)
    return OperationFailedError(message)
