# ragchat/db.py
"""
Kollaborateure für das Retrieval:
- Embedding-Services (lokaler Sentence-Transformer oder OpenAI /embeddings)
- Vektorstores (Chroma persistent oder In-Memory mit numpy)
- KnowledgeBase: Embedding + Store hinter einer Fassade; read_text für Uploads
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence
import logging
import threading
import time

import fitz  # PyMuPDF
import httpx
import numpy as np
from pypdf import PdfReader

from .errors import EmbeddingError, RetrievalError
from .models import ContextFragment

log = logging.getLogger(__name__)


class EmbeddingService(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


class VectorStore(Protocol):
    def add(
        self,
        ids: Sequence[str],
        texts: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None: ...

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[ContextFragment]: ...


# -------- Embeddings ----------
class LocalEmbeddingFn:
    """Sentence-Transformer, lokal geladen (Modellname oder Snapshot-Ordner)."""

    def __init__(self, model_path: str) -> None:
        from sentence_transformers import SentenceTransformer

        t0 = time.perf_counter()
        self.model = SentenceTransformer(model_path)

        # Viele ST-Modelle haben effektiv ~512 Token; konservativ klemmen.
        maxs = []
        if isinstance(getattr(self.model, "max_seq_length", None), int):
            maxs.append(self.model.max_seq_length)
        mlen = getattr(getattr(self.model, "tokenizer", None), "model_max_length", None)
        if isinstance(mlen, int) and 0 < mlen < 10_000:
            maxs.append(mlen)
        self.model.max_seq_length = min(min((v for v in maxs if v > 0), default=512), 512)

        self.model.eval()
        self._loaded_sec = time.perf_counter() - t0
        log.info(f"Embedding model loaded in {self._loaded_sec:.1f}s: {model_path}")

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        try:
            vecs = self.model.encode(list(texts), normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingError(f"local embedding failed: {e}") from e
        return vecs.tolist()


class HttpEmbeddingService:
    """OpenAI-kompatibler /embeddings Endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.model = model
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {api_key or ''}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            r = self.client.post("/embeddings", json={"model": self.model, "input": list(texts)})
            r.raise_for_status()
            data = r.json().get("data") or []
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e
        if len(data) != len(texts):
            raise EmbeddingError(f"expected {len(texts)} embeddings, got {len(data)}")
        # Reihenfolge über "index" absichern
        data = sorted(data, key=lambda d: d.get("index", 0))
        return [d["embedding"] for d in data]

    def close(self) -> None:
        self.client.close()


# -------- Vektorstores ----------
def _sanitize_meta(m: Dict[str, Any]) -> Dict[str, Any]:
    """
    Chroma erlaubt in metadata nur Skalarwerte (str, int, float, bool).
    Listen/Tuples/Sets -> kommagetrennte Strings, Rest -> str(value), None fällt weg.
    """
    out: Dict[str, Any] = {}
    for k, v in (m or {}).items():
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            out[k] = v
        elif isinstance(v, (list, tuple, set)):
            out[k] = ", ".join(str(x) for x in v if str(x).strip())
        else:
            out[k] = str(v)
    return out


@dataclass
class ChromaVectorStore:
    """Persistente Chroma-Collection (Cosine). Embeddings werden mitgeliefert."""
    path: str
    collection_name: str = "ragchat"

    def __post_init__(self) -> None:
        import chromadb
        from chromadb.config import Settings as ChromaSettings

        self.client = chromadb.PersistentClient(
            path=self.path,
            settings=ChromaSettings(allow_reset=False, anonymized_telemetry=False),
        )
        self.collection = self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def add(self, ids, texts, embeddings, metadatas) -> None:
        self.collection.add(
            ids=list(ids),
            documents=list(texts),
            embeddings=[list(e) for e in embeddings],
            metadatas=[_sanitize_meta(m) for m in metadatas],
        )

    def query(self, vector, top_k, where=None) -> List[ContextFragment]:
        count = self.collection.count()
        if count == 0:
            return []
        raw = self.collection.query(
            query_embeddings=[list(vector)],
            n_results=min(top_k, count),
            where=where or None,
        )
        out: List[ContextFragment] = []
        for doc_id, doc, meta, dist in zip(raw.get("ids", [[]])[0],
                                           raw.get("documents", [[]])[0],
                                           raw.get("metadatas", [[]])[0],
                                           raw.get("distances", [[]])[0]):
            meta = dict(meta or {})
            out.append(ContextFragment(
                source_id=str(meta.get("file_name") or doc_id),
                text=doc or "",
                relevance_score=1.0 - float(dist),
                meta=meta,
            ))
        return out


@dataclass
class InMemoryVectorStore:
    """
    Flüchtiger Store für Tests und kleine Setups.
    Cosine-Ähnlichkeit über numpy; Zugriff über einen Lock geschützt,
    da Suche im Threadpool und Ingest im Event-Loop laufen.
    """
    _ids: List[str] = field(default_factory=list)
    _texts: List[str] = field(default_factory=list)
    _metas: List[Dict[str, Any]] = field(default_factory=list)
    _vectors: List[np.ndarray] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, ids, texts, embeddings, metadatas) -> None:
        with self._lock:
            for i, t, e, m in zip(ids, texts, embeddings, metadatas):
                v = np.asarray(e, dtype=np.float32)
                norm = np.linalg.norm(v)
                self._ids.append(i)
                self._texts.append(t)
                self._metas.append(dict(m or {}))
                self._vectors.append(v / norm if norm else v)

    def query(self, vector, top_k, where=None) -> List[ContextFragment]:
        with self._lock:
            if not self._ids:
                return []
            candidates = [
                i for i, m in enumerate(self._metas)
                if not where or all(m.get(k) == v for k, v in where.items())
            ]
            if not candidates:
                return []
            q = np.asarray(vector, dtype=np.float32)
            qn = np.linalg.norm(q)
            if qn:
                q = q / qn
            matrix = np.stack([self._vectors[i] for i in candidates])
            scores = matrix @ q
            order = np.argsort(-scores, kind="stable")[:top_k]
            return [
                ContextFragment(
                    source_id=str(self._metas[candidates[j]].get("file_name") or self._ids[candidates[j]]),
                    text=self._texts[candidates[j]],
                    relevance_score=float(scores[j]),
                    meta=dict(self._metas[candidates[j]]),
                )
                for j in order
            ]


# -------- Fassade ----------
@dataclass
class KnowledgeBase:
    """
    Kapselt Embedding-Service und Vektorstore.
    Speichert keine Ranking-Logik, nur Persist/Query.
    """
    embedder: EmbeddingService
    store: VectorStore

    # -------- Persist/Query ----------
    def add_chunks(self, documents: List[str], metadatas: List[Dict[str, Any]], ids: List[str]) -> None:
        vectors = self.embedder.embed(documents)
        self.store.add(ids, documents, vectors, metadatas)

    def query(self, query: str, n: int = 8, where: Optional[Dict[str, Any]] = None) -> List[ContextFragment]:
        vectors = self.embedder.embed([query])
        if not vectors:
            raise EmbeddingError("embedding service returned no vector for the query")
        try:
            return self.store.query(vectors[0], n, where)
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"vector search failed: {e}") from e


SUPPORTED_SUFFIXES = {".txt", ".md", ".pdf"}


def read_text(path: Path) -> str:
    """
    Liest Text aus verschiedenen Formaten. Unterstützt aktuell: .txt, .md, .pdf
    """
    suffix = path.suffix.lower()
    if suffix in {".txt", ".md"}:
        return path.read_text(encoding="utf-8", errors="ignore")
    if suffix == ".pdf":
        # erst PyMuPDF, Fallback pypdf
        try:
            with fitz.open(path) as doc:
                text = "\n".join(page.get_text("text") for page in doc)
            if text.strip():
                return text
        except (RuntimeError, ValueError) as e:
            log.warning(f"PyMuPDF could not read {path.name}: {e}")
        reader = PdfReader(str(path))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    raise ValueError(f"Unsupported file type: {suffix}")
