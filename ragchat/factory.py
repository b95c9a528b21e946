# ragchat/factory.py
"""
Verdrahtung der Kollaborateure aus den Settings. Welche Adapter aktiv sind,
wird einmal beim Start entschieden.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional
import logging

import httpx

from .config import AssemblerConfig, Settings
from .core import ApplicationCore
from .db import (
    ChromaVectorStore,
    EmbeddingService,
    HttpEmbeddingService,
    InMemoryVectorStore,
    KnowledgeBase,
    LocalEmbeddingFn,
    VectorStore,
)
from .history import SessionStore
from .ingest import IngestPipeline
from .llm import ADAPTERS, BackoffPolicy, GenerationDispatcher, LLMAdapter
from .prompting import PromptBuilder
from .retrieval import RetrievalService
from .storage import LocalBlobStorage

log = logging.getLogger(__name__)


@dataclass
class Services:
    core: ApplicationCore
    ingest: IngestPipeline
    settings: Settings


def create_embedding_service(s: Settings) -> Optional[EmbeddingService]:
    if s.EMBEDDING_BACKEND == "none":
        return None
    if s.EMBEDDING_BACKEND == "openai":
        return HttpEmbeddingService(
            s.OPENAI_BASE_URL, s.OPENAI_API_KEY, s.OPENAI_EMBEDDING_MODEL, timeout=s.REQUEST_TIMEOUT_SECONDS
        )
    return LocalEmbeddingFn(s.EMBEDDING_MODEL)


def create_vector_store(s: Settings) -> VectorStore:
    if s.VECTOR_BACKEND == "memory":
        return InMemoryVectorStore()
    return ChromaVectorStore(s.CHROMA_PATH, s.CHROMA_COLLECTION)


def _provider_endpoint(name: str, s: Settings) -> tuple:
    if name == "anthropic":
        return s.ANTHROPIC_BASE_URL, s.ANTHROPIC_API_KEY
    if name == "ollama":
        return s.OLLAMA_BASE_URL, None
    return s.OPENAI_BASE_URL, s.OPENAI_API_KEY


def create_adapter(name: str, s: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> LLMAdapter:
    base_url, api_key = _provider_endpoint(name, s)
    return ADAPTERS[name](
        base_url,
        api_key,
        timeout=s.REQUEST_TIMEOUT_SECONDS,
        retry_attempts=s.RETRY_ATTEMPTS,
        backoff=BackoffPolicy(base_seconds=s.RETRY_BACKOFF_SECONDS),
        max_tokens=s.MAX_TOKENS,
        temperature=s.TEMPERATURE,
        transport=transport,
    )


def create_dispatcher(s: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> GenerationDispatcher:
    adapters: Dict[str, LLMAdapter] = {name: create_adapter(name, s, transport) for name in s.ENABLED_PROVIDERS}
    return GenerationDispatcher(
        adapters,
        models={name: list(s.PROVIDER_MODELS[name]) for name in s.ENABLED_PROVIDERS},
        default_provider=s.DEFAULT_PROVIDER,
        allow_model_fallback=s.ALLOW_MODEL_FALLBACK,
    )


def create_services(
    s: Settings,
    *,
    dispatcher: Optional[GenerationDispatcher] = None,
    embedder: Optional[EmbeddingService] = None,
    store: Optional[VectorStore] = None,
) -> Services:
    """Baut alle Services; Tests können einzelne Kollaborateure ersetzen."""
    embedder = embedder if embedder is not None else create_embedding_service(s)
    kb: Optional[KnowledgeBase] = None
    retrieval: Optional[RetrievalService] = None
    if embedder is not None:
        kb = KnowledgeBase(embedder, store if store is not None else create_vector_store(s))
        retrieval = RetrievalService(
            kb,
            top_k=s.TOP_K,
            relevance_threshold=s.RELEVANCE_THRESHOLD,
            chunk_size=s.CHUNK_SIZE,
            chunk_overlap=s.CHUNK_OVERLAP,
        )
    else:
        log.info("EMBEDDING_BACKEND=none: answering without retrieval")

    config = AssemblerConfig.from_settings(s)
    core = ApplicationCore(
        retrieval,
        PromptBuilder(config),
        dispatcher or create_dispatcher(s),
        SessionStore(config.max_history_turns, s.MAX_SESSIONS),
        timeout=s.REQUEST_TIMEOUT_SECONDS,
        ping_interval=s.PING_INTERVAL_SECONDS,
    )
    ingest = IngestPipeline(LocalBlobStorage(s.UPLOAD_DIR), kb, retrieval)
    return Services(core=core, ingest=ingest, settings=s)
