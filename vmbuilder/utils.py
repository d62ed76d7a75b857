"""Utility functions for vm-builder."""

from __future__ import annotations

import hashlib
import os
import tempfile
import time
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmbuilder.constants import _LOG_VERBOSE
from vmbuilder.exceptions import ImageError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        Path(tmp_name).replace(path)
    finally:
        try:
            Path(tmp_name).unlink(missing_ok=True)
        except OSError:
            pass


def file_checksum(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(
    url: str,
    destination: Path,
    timeout: float = 60.0,
    cancel=None,
    label: str = "Downloading",
) -> None:
    """Stream ``url`` into ``destination`` through a temp file in the same directory."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vm-builder/1.0"})
    try:
        response = urlopen(req, timeout=timeout)
    except HTTPError as exc:
        raise ImageError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ImageError(f"Failed to download {url}: {exc.reason}")
    except OSError as exc:
        raise ImageError(f"Failed to download {url}: {exc}")

    downloaded = 0
    next_report = 64 * 1024 * 1024
    start_time = time.time()

    destination.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                try:
                    chunk = response.read(chunk_size)
                except OSError as exc:
                    raise ImageError(f"Failed to download {url}: {exc}") from exc
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                if downloaded >= next_report:
                    log("DEBUG", f"{downloaded / (1024 * 1024):.0f} MiB downloaded from {url}")
                    next_report += 64 * 1024 * 1024
            tmp.flush()
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            final_mb = downloaded / (1024 * 1024)
            log("SUCCESS", f"Downloaded {final_mb:.1f} MiB in {elapsed:.1f}s")
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            close = getattr(response, "close", None)
            if close is not None:
                close()


def download_file_with_retry(
    url: str,
    destination: Path,
    retries: int = 3,
    timeout: float = 60.0,
    cancel=None,
    label: str = "Downloading",
) -> None:
    attempt = 0
    while True:
        attempt += 1
        try:
            download_file(url, destination, timeout=timeout, cancel=cancel, label=label)
            return
        except ImageError as exc:
            if attempt >= retries:
                raise
            delay = min(2 ** attempt, 30)
            log("WARN", f"Download attempt {attempt}/{retries} failed ({exc}); retrying in {delay}s")
            time.sleep(delay)
