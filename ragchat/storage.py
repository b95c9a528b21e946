# ragchat/storage.py
from __future__ import annotations
from pathlib import Path
from typing import List, Protocol
import re
import uuid


_PREFIX_RE = re.compile(r"^[0-9a-f]{32}_")


class BlobStorage(Protocol):
    def save(self, name: str, data: bytes) -> Path: ...
    def read(self, path: Path) -> bytes: ...
    def delete(self, path: Path) -> None: ...
    def list(self) -> List[str]: ...


def safe_name(name: str) -> str:
    """Nur den Dateinamen behalten, keine Pfadanteile."""
    base = Path((name or "").replace("\\", "/")).name.strip()
    if base in {"", ".", ".."}:
        raise ValueError("invalid file name")
    return base


class LocalBlobStorage:
    """
    Ablage im lokalen Dateisystem. Gespeichert wird als <uuid>_<name>,
    damit gleichnamige Uploads sich nicht überschreiben.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, name: str, data: bytes) -> Path:
        target = self.root / f"{uuid.uuid4().hex}_{safe_name(name)}"
        target.write_bytes(data)
        return target

    def read(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def delete(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def list(self) -> List[str]:
        files = sorted(
            (p for p in self.root.iterdir() if p.is_file()),
            key=lambda p: p.stat().st_mtime,
        )
        return [original_name(p) for p in files]


def original_name(path: Path) -> str:
    return _PREFIX_RE.sub("", Path(path).name)
