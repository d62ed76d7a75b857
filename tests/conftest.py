"""Shared test fixtures: settings, a recording hypervisor and gold image archives."""

from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path
from typing import List, Optional

import pytest

from vmbuilder.config import Settings
from vmbuilder.hypervisor.base import Hypervisor
from vmbuilder.models import OSImage

GOLD_VMX = """\
.encoding = "UTF-8"
displayName = "gold"
guestOS = "darwin14-64"
memsize = "2048"
numvcpus = "1"
scsi0:0.fileName = "gold.vmdk"
ethernet0.present = "TRUE"
ethernet0.connectionType = "bridged"
ethernet1.present = "TRUE"
"""


class FakeHypervisor(Hypervisor):
    """In-memory backend; clone copies the gold VMX so the shared VMX logic runs for real."""

    name = "fake"

    def __init__(self, vmx_path: Path, password: Optional[str] = None, timeout: int = 300) -> None:
        super().__init__(vmx_path, password=password, timeout=timeout)
        self.calls: List[tuple] = []
        self.running = False
        self.tools_ready = True
        self.ip = "192.168.56.10"
        self.closed = False

    def clone_from(self, source: Path, clone_type: str) -> None:
        self.calls.append(("clone_from", Path(source), clone_type))
        self.vmx_path.parent.mkdir(parents=True, exist_ok=True)
        self.vmx_path.write_text(Path(source).read_text())

    def start(self, headless: bool = True) -> None:
        self.calls.append(("start", headless))
        self.running = True

    def stop(self, hard: bool = False) -> None:
        self.calls.append(("stop", hard))
        self.running = False

    def delete(self) -> None:
        self.calls.append(("delete",))

    def is_running(self) -> bool:
        return self.running

    def has_tools_installed(self) -> bool:
        return self.running and self.tools_ready

    def ip_address(self) -> str:
        return self.ip if self.running else ""

    def close(self) -> None:
        self.closed = True

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeFactory:
    """Hypervisor factory handing out one shared FakeHypervisor per VMX path."""

    def __init__(self) -> None:
        self.instances: dict = {}

    def __call__(self, settings: Settings, vmx_path: Path, password: Optional[str] = None) -> FakeHypervisor:
        hv = self.instances.get(vmx_path)
        if hv is None:
            hv = FakeHypervisor(vmx_path, password=password, timeout=settings.command_timeout)
            self.instances[vmx_path] = hv
        else:
            hv.closed = False
        return hv


@pytest.fixture
def settings(tmp_path) -> Settings:
    cfg = Settings.from_base(
        tmp_path / "data",
        tools_init_timeout=1,
        command_timeout=5,
        download_timeout=5,
        download_retries=1,
        max_workers=2,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def fake_factory() -> FakeFactory:
    return FakeFactory()


def build_tar_archive(path: Path, files: dict, mode: str = "w:gz") -> Path:
    with tarfile.open(path, mode) as tf:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def gold_archive(tmp_path) -> Path:
    return build_tar_archive(
        tmp_path / "gold.tar.gz",
        {"gold/gold.vmx": GOLD_VMX, "gold/gold.vmdk": b"\0" * 512},
    )


@pytest.fixture
def gold_image(gold_archive) -> OSImage:
    return OSImage(
        url=gold_archive.as_uri(),
        checksum=sha256_of(gold_archive),
        checksum_type="sha256",
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable load_settings() reads, cleared for a clean slate.
_SETTINGS_ENV_VARS = [
    "CONFIG_FILE",
    "PORT",
    "DATA_DIR",
    "BACKEND",
    "VMWARE_VMRUN_PATH",
    "LIBVIRT_URI",
    "TOOLS_INIT_TIMEOUT",
    "COMMAND_TIMEOUT",
    "DOWNLOAD_TIMEOUT",
    "DOWNLOAD_RETRIES",
    "UNPACK_TIMEOUT",
    "CALLBACK_TIMEOUT",
    "CALLBACK_RETRIES",
    "MAX_WORKERS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
