"""Gold image cache: download, verify, unpack and publish OS images by checksum."""

from __future__ import annotations

import shutil
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Optional

from vmbuilder.config import Settings
from vmbuilder.constants import VMX_SUFFIX
from vmbuilder.exceptions import ImageError
from vmbuilder.locks import IMAGE_LOCKS, CancellationToken
from vmbuilder.models import OSImage
from vmbuilder.utils import download_file_with_retry, ensure_directory, file_checksum, log


def _is_within(root: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def find_vmx(root: Path) -> Optional[Path]:
    candidates = sorted(p for p in root.rglob(f"*{VMX_SUFFIX}") if p.is_file())
    if not candidates:
        return None
    if len(candidates) > 1:
        names = ", ".join(str(p.relative_to(root)) for p in candidates)
        log("WARN", f"Several VMX files found under {root} ({names}); using {candidates[0].name}")
    return candidates[0]


class ImageCache:
    """Content-addressed store of unpacked gold VMs.

    Layout::

        <images>/<checksum>         downloaded archive (staging)
        <gold>/<checksum>/...       unpacked gold VM, read-only once published

    Population of one checksum is serialized by ``IMAGE_LOCKS``; the unpacked
    tree is only renamed into place after it is complete, so readers never see
    a half-populated directory.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.gold_path = settings.gold_path
        self.images_path = settings.images_path

    def gold_dir(self, image: OSImage) -> Path:
        return self.gold_path / image.checksum

    def archive_path(self, image: OSImage) -> Path:
        return self.images_path / image.checksum

    def ensure_gold_image(self, image: OSImage, cancel: Optional[CancellationToken] = None) -> Path:
        """Return the gold VMX for ``image``, populating the cache if needed."""
        gold_dir = self.gold_dir(image)
        with IMAGE_LOCKS.hold(image.checksum):
            if gold_dir.is_dir() and any(gold_dir.iterdir()):
                vmx = find_vmx(gold_dir)
                if vmx is None:
                    raise ImageError(f"No {VMX_SUFFIX} file found in gold image {gold_dir}")
                log("DEBUG", f"Gold image cache hit for {image.checksum}")
                return vmx

            ensure_directory(self.gold_path)
            ensure_directory(self.images_path)
            archive = self._stage_archive(image, cancel)
            if cancel is not None:
                cancel.raise_if_cancelled()
            self._publish(image, archive, gold_dir, cancel)

            vmx = find_vmx(gold_dir)
            if vmx is None:
                shutil.rmtree(gold_dir, ignore_errors=True)
                raise ImageError(f"No {VMX_SUFFIX} file found in image {image.url}")
            log("SUCCESS", f"Gold image ready: {vmx}")
            return vmx

    def _verify(self, image: OSImage, archive: Path) -> bool:
        actual = file_checksum(archive, image.checksum_type)
        if actual != image.checksum:
            log("WARN", f"Checksum mismatch for {archive}: expected {image.checksum}, got {actual}")
            return False
        return True

    def _stage_archive(self, image: OSImage, cancel: Optional[CancellationToken]) -> Path:
        archive = self.archive_path(image)
        if archive.is_file():
            if self._verify(image, archive):
                log("INFO", f"Reusing staged image archive {archive}")
                return archive
            archive.unlink()

        download_file_with_retry(
            image.url,
            archive,
            retries=self.settings.download_retries,
            timeout=self.settings.download_timeout,
            cancel=cancel,
            label="Downloading OS image",
        )
        if not self._verify(image, archive):
            archive.unlink(missing_ok=True)
            raise ImageError(
                f"Checksum verification failed for {image.url} ({image.checksum_type})"
            )
        return archive

    def _publish(
        self,
        image: OSImage,
        archive: Path,
        gold_dir: Path,
        cancel: Optional[CancellationToken],
    ) -> None:
        tmp_dir = Path(tempfile.mkdtemp(prefix=f".{image.checksum}.tmp-", dir=str(self.gold_path)))
        try:
            log("INFO", f"Unpacking {archive.name} into gold cache")
            unpack_archive(archive, tmp_dir, deadline=time.monotonic() + self.settings.unpack_timeout, cancel=cancel)
            if gold_dir.exists():
                # Leftover empty directory from an earlier run.
                shutil.rmtree(gold_dir)
            tmp_dir.rename(gold_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise


def _check_progress(deadline: Optional[float], cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()
    if deadline is not None and time.monotonic() > deadline:
        raise ImageError("Unpacking the OS image exceeded the configured timeout")


def unpack_archive(
    archive: Path,
    destination: Path,
    deadline: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> None:
    """Extract a zip or (optionally compressed) tar archive into ``destination``.

    The staged file is named after its checksum, so the format is detected from
    the content rather than the extension.
    """
    try:
        if zipfile.is_zipfile(archive):
            _unpack_zip(archive, destination, deadline, cancel)
        elif tarfile.is_tarfile(archive):
            _unpack_tar(archive, destination, deadline, cancel)
        else:
            raise ImageError(f"Unsupported image archive format: {archive}")
    except (zipfile.BadZipFile, tarfile.TarError, EOFError) as exc:
        raise ImageError(f"Corrupt image archive {archive}: {exc}") from exc
    except OSError as exc:
        raise ImageError(f"Failed to unpack {archive}: {exc}") from exc


def _unpack_zip(archive: Path, destination: Path, deadline, cancel) -> None:
    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            _check_progress(deadline, cancel)
            if not _is_within(destination, destination / member.filename):
                raise ImageError(f"Archive member escapes destination: {member.filename}")
            zf.extract(member, destination)


def _unpack_tar(archive: Path, destination: Path, deadline, cancel) -> None:
    with tarfile.open(archive, mode="r:*") as tf:
        for member in tf:
            _check_progress(deadline, cancel)
            if not _is_within(destination, destination / member.name):
                raise ImageError(f"Archive member escapes destination: {member.name}")
            tf.extract(member, destination, filter="data")
