"""Configuration loading and environment variable parsing for vm-builder."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmbuilder.constants import (
    BACKEND_ALIASES,
    DEFAULT_BACKEND,
    DEFAULT_BASE_DIR,
    DEFAULT_CALLBACK_RETRIES,
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PORT,
    DEFAULT_TOOLS_INIT_TIMEOUT,
    DEFAULT_UNPACK_TIMEOUT,
    DEFAULT_VMRUN_PATH,
    GOLD_DIR_NAME,
    IMAGES_DIR_NAME,
    VMS_DIR_NAME,
)
from vmbuilder.exceptions import ManagerError
from vmbuilder.utils import ensure_directory, get_env, parse_int


@dataclass
class Settings:
    base_path: Path
    vms_path: Path
    gold_path: Path
    images_path: Path
    port: int = DEFAULT_PORT
    backend: str = DEFAULT_BACKEND
    vmrun_path: str = DEFAULT_VMRUN_PATH
    libvirt_uri: str = DEFAULT_LIBVIRT_URI
    tools_init_timeout: int = DEFAULT_TOOLS_INIT_TIMEOUT
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    download_timeout: int = DEFAULT_DOWNLOAD_TIMEOUT
    download_retries: int = 3
    unpack_timeout: int = DEFAULT_UNPACK_TIMEOUT
    callback_timeout: int = DEFAULT_CALLBACK_TIMEOUT
    callback_retries: int = DEFAULT_CALLBACK_RETRIES
    max_workers: int = DEFAULT_MAX_WORKERS

    @classmethod
    def from_base(cls, base_path: Path, **overrides: Any) -> "Settings":
        base = Path(base_path).expanduser()
        return cls(
            base_path=base,
            vms_path=base / VMS_DIR_NAME,
            gold_path=base / GOLD_DIR_NAME,
            images_path=base / IMAGES_DIR_NAME,
            **overrides,
        )

    def ensure_directories(self) -> None:
        for path in (self.vms_path, self.gold_path, self.images_path):
            ensure_directory(path)


# Setting name -> (environment variable, minimum value, maximum value)
_INT_SETTINGS = {
    "port": ("PORT", 1, 65535),
    "tools_init_timeout": ("TOOLS_INIT_TIMEOUT", 1, None),
    "command_timeout": ("COMMAND_TIMEOUT", 1, None),
    "download_timeout": ("DOWNLOAD_TIMEOUT", 1, None),
    "download_retries": ("DOWNLOAD_RETRIES", 1, 10),
    "unpack_timeout": ("UNPACK_TIMEOUT", 1, None),
    "callback_timeout": ("CALLBACK_TIMEOUT", 1, None),
    "callback_retries": ("CALLBACK_RETRIES", 0, 10),
    "max_workers": ("MAX_WORKERS", 1, 64),
}

_STR_SETTINGS = {
    "backend": "BACKEND",
    "vmrun_path": "VMWARE_VMRUN_PATH",
    "libvirt_uri": "LIBVIRT_URI",
}


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ManagerError(f"Configuration file missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a mapping of settings")
    return data


def normalize_backend(raw: str) -> str:
    backend = BACKEND_ALIASES.get(raw.strip().lower())
    if backend is None:
        supported = ", ".join(sorted(set(BACKEND_ALIASES.values())))
        raise ManagerError(f"Unsupported BACKEND '{raw}'. Supported: {supported}")
    return backend


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Build settings from an optional YAML file, then environment overrides."""
    if config_path is None:
        env_path = get_env("CONFIG_FILE")
        config_path = Path(env_path) if env_path else None
    file_values = load_config_file(config_path) if config_path is not None else {}

    unknown = set(file_values) - set(_INT_SETTINGS) - set(_STR_SETTINGS) - {"data_dir"}
    if unknown:
        raise ManagerError(f"Unknown settings in {config_path}: {', '.join(sorted(unknown))}")

    data_dir = get_env("DATA_DIR") or file_values.get("data_dir") or DEFAULT_BASE_DIR
    values: Dict[str, Any] = {}

    for name, (env_name, min_val, max_val) in _INT_SETTINGS.items():
        raw = get_env(env_name)
        if raw is None:
            raw = file_values.get(name)
        if raw is not None:
            values[name] = parse_int(env_name, raw, min_val=min_val, max_val=max_val)

    for name, env_name in _STR_SETTINGS.items():
        raw = get_env(env_name)
        if raw is None:
            raw = file_values.get(name)
        if raw is not None:
            raw = str(raw).strip()
            if raw:
                values[name] = raw

    if "backend" in values:
        values["backend"] = normalize_backend(values["backend"])

    return Settings.from_base(Path(str(data_dir)), **values)
