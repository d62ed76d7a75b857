"""Reader and writer for the VMware per-VM ``.vmx`` configuration format."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Iterator, MutableMapping, Optional, Tuple, Union

from vmbuilder.utils import atomic_write_text


class VMXConfig(MutableMapping):
    """Case-insensitive ``key = "value"`` mapping.

    Keys are stored lower-cased; rendering sorts them so the same settings
    always produce the same file.
    """

    def __init__(self, data: Optional[Union[Dict[str, str], Iterable[Tuple[str, str]]]] = None) -> None:
        self._data: Dict[str, str] = {}
        if data:
            self.update(data)

    def __getitem__(self, key: str) -> str:
        return self._data[key.lower()]

    def __setitem__(self, key: str, value: object) -> None:
        self._data[key.lower()] = str(value)

    def __delitem__(self, key: str) -> None:
        del self._data[key.lower()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"VMXConfig({self._data!r})"

    def remove_prefix(self, prefix: str) -> None:
        prefix = prefix.lower()
        for key in [k for k in self._data if k.startswith(prefix)]:
            del self._data[key]

    @classmethod
    def parse(cls, text: str) -> "VMXConfig":
        vmx = cls()
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            key, sep, value = stripped.partition("=")
            key = key.strip()
            if not sep or not key:
                continue
            vmx[key] = value.strip().strip('"')
        return vmx

    def render(self) -> str:
        return "".join(f'{key} = "{self._data[key]}"\n' for key in sorted(self._data))


def read_vmx(path: Path) -> VMXConfig:
    return VMXConfig.parse(Path(path).read_text(encoding="utf-8", errors="replace"))


def write_vmx(path: Path, vmx: VMXConfig) -> None:
    atomic_write_text(Path(path), vmx.render())
