"""report_storage.py

Local-disk storage for field reports and ZIP packaging of finished ones.

Layout:
    <storage_root>/<category>/<YYYYmmdd-HHMMSS>_<user_id>/
        name.txt  photo.jpg  location.txt  notes.txt  metadata.txt
    <archive_root>/<category>_<YYYYmmdd-HHMMSS>_<user_id>.zip
"""

from __future__ import annotations
import os
import re
import shutil
import zipfile
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Union, BinaryIO

from core.errors import UpstreamUnavailable
from core.models import DownloadReference

logger = logging.getLogger("report_storage")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_component(value: str) -> str:
    cleaned = _UNSAFE.sub("_", value).strip("._")
    return cleaned or "unknown"


class LocalStorageTarget:
    """One report's directory. Created once, never moved."""

    def __init__(self, path: Path, category: str):
        self.path = Path(path)
        self.category = category

    @property
    def name(self) -> str:
        return self.path.name

    def write(self, filename: str, data: Union[bytes, str, BinaryIO]) -> Path:
        """Write (or overwrite) a file inside the target."""
        safe_name = _safe_component(os.path.basename(filename))
        dest = self.path / safe_name
        try:
            if isinstance(data, str):
                dest.write_text(data, encoding="utf-8")
            elif isinstance(data, (bytes, bytearray)):
                dest.write_bytes(bytes(data))
            else:
                with dest.open("wb") as fh:
                    shutil.copyfileobj(data, fh)
        except OSError as e:
            raise UpstreamUnavailable("report-storage", f"write {safe_name}: {e}")
        return dest

    def files(self) -> List[str]:
        if not self.path.is_dir():
            return []
        return sorted(p.name for p in self.path.iterdir() if p.is_file())

    def __repr__(self) -> str:
        return f"LocalStorageTarget({str(self.path)!r})"


class LocalStorageProvisioner:
    max_collisions = 100

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def provision(self, category: str, user_id: str, timestamp: datetime) -> LocalStorageTarget:
        """Create a fresh, empty directory; a name taken in the same second gets a -N suffix."""
        base = f"{timestamp.strftime('%Y%m%d-%H%M%S')}_{_safe_component(user_id)}"
        parent = self.root / _safe_component(category)
        try:
            parent.mkdir(parents=True, exist_ok=True)
            for n in range(self.max_collisions):
                path = parent / (base if n == 0 else f"{base}-{n}")
                try:
                    path.mkdir()
                    break
                except FileExistsError:
                    continue
            else:
                raise FileExistsError(f"{self.max_collisions} report folders named {base}")
        except OSError as e:
            raise UpstreamUnavailable("report-storage", f"provision {parent / base}: {e}")
        logger.info("Provisioned report storage %s", path)
        return LocalStorageTarget(path, category)


class ZipArchiver:
    """Packages a storage target into a single downloadable ZIP."""

    def __init__(self, archive_root: Union[str, Path], public_base_url: str = ""):
        self.archive_root = Path(archive_root)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def archive_path(self, filename: str) -> Path:
        return self.archive_root / filename

    def package_directory(self, target: LocalStorageTarget) -> DownloadReference:
        filename = f"{_safe_component(target.category)}_{target.name}.zip"
        dest = self.archive_path(filename)
        try:
            self.archive_root.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for file in sorted(target.path.rglob("*")):
                    if file.is_file():
                        zf.write(file, arcname=str(file.relative_to(target.path)))
        except (OSError, zipfile.BadZipFile) as e:
            raise UpstreamUnavailable("archiver", f"package {target.path}: {e}")

        url = f"{self.public_base_url}/downloads/{filename}" if self.public_base_url else ""
        logger.info("Packaged %s -> %s", target.path, dest)
        return DownloadReference(filename=filename, path=str(dest), url=url)
