from pathlib import Path


def ensure_storage_dirs(storage_path: Path) -> Path:
    storage_path.mkdir(parents=True, exist_ok=True)
    for sub in ("incoming", "unprocessed/duplicates", "processed"):
        (storage_path / sub).mkdir(parents=True, exist_ok=True)
    return storage_path


def sanitize_filename(name: str) -> str:
    keep = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789._-")
    cleaned = "".join(c if c in keep else "_" for c in Path(name or "").name)
    return cleaned or "upload"
