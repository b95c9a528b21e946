# ragchat/ingest.py
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import uuid

from .db import SUPPORTED_SUFFIXES, KnowledgeBase, read_text
from .errors import IngestError
from .retrieval import RetrievalService
from .storage import BlobStorage, safe_name

log = logging.getLogger(__name__)


@dataclass
class IngestPipeline:
    """
    Upload -> Ablage -> Text -> Chunks -> Embeddings -> Vektorstore.

    Schlägt ein Schritt nach dem Speichern fehl, wird die Datei wieder
    entfernt; bereits indexierte Dokumente bleiben unberührt.
    Ohne KnowledgeBase (EMBEDDING_BACKEND=none) wird nur abgelegt.
    """
    storage: BlobStorage
    kb: Optional[KnowledgeBase] = None
    retrieval: Optional[RetrievalService] = None

    # --------- Public API ----------
    def ingest_upload(self, name: str, data: bytes) -> Dict[str, Any]:
        try:
            name = safe_name(name)
        except ValueError as e:
            raise IngestError(str(e)) from e
        suffix = Path(name).suffix.lower()
        if suffix not in SUPPORTED_SUFFIXES:
            raise IngestError(f"Unsupported file type: {suffix or '(none)'}")

        try:
            path = self.storage.save(name, data)
        except OSError as e:
            raise IngestError(f"could not store {name}: {e}") from e

        try:
            chunks = self._index(path, name)
        except Exception as e:
            self.storage.delete(path)
            log.error(f"Ingest failed for {name}: {e}")
            if isinstance(e, IngestError):
                raise
            raise IngestError(f"could not index {name}: {e}") from e

        log.info(f"Uploaded {name}: {chunks} chunks")
        return {"file_name": name, "path": str(path), "chunks": chunks}

    def list_files(self) -> List[Dict[str, str]]:
        return [{"name": n} for n in self.storage.list()]

    # --------- Helpers ----------
    def _index(self, path: Path, name: str) -> int:
        if self.kb is None or self.retrieval is None:
            return 0
        text = read_text(path)
        chunks = self.retrieval.chunk(text)
        if not chunks:
            return 0
        ids = [uuid.uuid4().hex for _ in chunks]
        metas = [{"title": name, "file_name": name, "chunk": i} for i in range(len(chunks))]
        self.kb.add_chunks(chunks, metas, ids)
        return len(chunks)
