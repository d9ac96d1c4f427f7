"""
Physical file storage.

Stored paths are relative to the storage root so the data drive can move.
Layout:

    incoming/                              uploads waiting for allocation
    unprocessed/duplicates/YYYY-MM-DD/     byte-identical re-uploads, kept for audit
    processed/{invoices|creditnotes|statements}/YYYY/MM/DD/
"""
import logging
import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path, PurePosixPath

from portal.utils.filesystem import ensure_storage_dirs, sanitize_filename

logger = logging.getLogger(__name__)

INCOMING_DIR = "incoming"
DUPLICATES_DIR = "unprocessed/duplicates"
PROCESSED_DIR = "processed"
LEGACY_PREFIXES = ("uploads/", "storage/")


def incoming_path(file_hash: str, filename: str) -> str:
    return f"{INCOMING_DIR}/{file_hash[:8]}_{sanitize_filename(filename)}"


def duplicate_path(file_hash: str, filename: str, when: datetime) -> str:
    return f"{DUPLICATES_DIR}/{when:%Y-%m-%d}/{file_hash[:8]}_{sanitize_filename(filename)}"


def processed_path(folder: str, filename: str, when: datetime) -> str:
    return f"{PROCESSED_DIR}/{folder}/{when:%Y/%m/%d}/{sanitize_filename(filename)}"


def candidate_paths(stored_path: str, bases: list[Path]) -> list[Path]:
    """Ordered places a stored path may live, most specific first.

    Older rows hold absolute paths, root-relative paths with a leading slash, or
    paths carrying a legacy ``uploads/`` prefix.
    """
    if not stored_path:
        return []
    candidates: list[Path] = []
    raw = Path(stored_path)
    if raw.is_absolute():
        candidates.append(raw)

    relative = stored_path.lstrip("/")
    for base in bases:
        candidates.append(base / relative)
    for prefix in LEGACY_PREFIXES:
        if relative.startswith(prefix):
            for base in bases:
                candidates.append(base / relative[len(prefix):])

    seen = set()
    unique = []
    for path in candidates:
        if path not in seen:
            seen.add(path)
            unique.append(path)
    return unique


def resolve_stored_path(
    stored_path: str,
    bases: list[Path],
    exists: Callable[[Path], bool] = Path.exists,
) -> Path | None:
    for candidate in candidate_paths(stored_path, bases):
        if exists(candidate):
            return candidate
    return None


class LocalStorage:
    def __init__(self, root: Path, extra_bases: list[Path] | None = None):
        self.root = root
        self.bases = [root, *(extra_bases or [])]

    def ensure_dirs(self) -> Path:
        return ensure_storage_dirs(self.root)

    def full_path(self, stored_path: str) -> Path:
        return self.root / stored_path

    def resolve(self, stored_path: str) -> Path | None:
        return resolve_stored_path(stored_path, self.bases)

    def exists(self, stored_path: str) -> bool:
        return self.resolve(stored_path) is not None

    def read(self, stored_path: str) -> bytes:
        path = self.resolve(stored_path)
        if path is None:
            raise FileNotFoundError(stored_path)
        return path.read_bytes()

    def write(self, stored_path: str, content: bytes) -> str:
        stored_path = self._unique(stored_path)
        path = self.full_path(stored_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return stored_path

    def move(self, src: str, dst: str) -> str:
        """Move a stored file, returning the (possibly de-collided) destination path."""
        source = self.resolve(src)
        if source is None:
            raise FileNotFoundError(src)
        dst = self._unique(dst)
        target = self.full_path(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        return dst

    def delete(self, stored_path: str) -> bool:
        path = self.resolve(stored_path)
        if path is None:
            return False
        path.unlink()
        logger.info("Deleted stored file %s", path)
        return True

    def _unique(self, stored_path: str) -> str:
        if not self.full_path(stored_path).exists():
            return stored_path
        pure = PurePosixPath(stored_path)
        counter = 1
        while True:
            candidate = str(pure.with_name(f"{pure.stem}_{counter}{pure.suffix}"))
            if not self.full_path(candidate).exists():
                return candidate
            counter += 1
