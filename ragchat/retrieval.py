# ragchat/retrieval.py
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

from .db import KnowledgeBase
from .errors import RetrievalError
from .models import ContextFragment


def chunk_text(text: str, size: int, overlap: int) -> List[str]:
    """
    Einfaches wortbasiertes Sliding-Window-Chunking.
    Schreibweise bleibt erhalten, nur Whitespace wird normalisiert.
    """
    words = text.split()
    if not words:
        return []
    out: List[str] = []
    step = max(1, size - overlap)
    for i in range(0, len(words), step):
        win = words[i:i + size]
        if not win:
            break
        out.append(" ".join(win))
        if i + size >= len(words):
            break
    return out


@dataclass
class RetrievalService:
    """
    Retrieval-Layer:
    - String-Chunking (für den Ingest)
    - Query gegen die KnowledgeBase
    - Relevanz-Schwelle (ein Wert für alle Backends)
    - Duplikatreduktion nach Quelle+Text
    Die Reihenfolge des Stores (beste zuerst) bleibt erhalten.
    """
    kb: KnowledgeBase
    top_k: int = 4
    relevance_threshold: float = 0.3
    chunk_size: int = 300
    chunk_overlap: int = 40

    # ---------- Public API ----------
    def chunk(self, text: str) -> List[str]:
        return chunk_text(text, self.chunk_size, self.chunk_overlap)

    def search(self, query: str, top_k: Optional[int] = None) -> List[ContextFragment]:
        """Wirft RetrievalError; der Aufrufer entscheidet über den Fallback."""
        top_k = top_k or self.top_k
        try:
            hits = self.kb.query(query, n=top_k * 2)
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"retrieval failed: {e}") from e

        out: List[ContextFragment] = []
        seen = set()
        for hit in hits:
            # Fragmente ohne Score gelten als relevant
            if hit.relevance_score is not None and hit.relevance_score < self.relevance_threshold:
                continue
            key = (hit.source_id, hit.text)
            if key in seen:
                continue
            seen.add(key)
            out.append(hit)
            if len(out) >= top_k:
                break
        return out
