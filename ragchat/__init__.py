# ragchat/__init__.py
"""
Chat-Backend mit Retrieval-Augmented Generation.
Struktur:
- config.py      : Konfiguration via Pydantic Settings, AssemblerConfig
- errors.py      : Fehler-Taxonomie (Validation, Retrieval, Generation, ...)
- models.py      : ConversationTurn, ContextFragment, PromptRequest
- history.py     : ConversationHistory (begrenzt, paarweise Verdrängung), SessionStore
- prompting.py   : truncate_context, PromptBuilder (Kontext- vs. Fallback-Prompt)
- db.py          : Embedding-Services, Vektorstores, KnowledgeBase, Datei-Reader
- storage.py     : BlobStorage für Uploads
- retrieval.py   : RetrievalService (Chunking, Query, Relevanz-Schwelle)
- ingest.py      : IngestPipeline (Upload -> Chunks -> Persist)
- llm.py         : Provider-Adapter und GenerationDispatcher
- core.py        : ApplicationCore (Orchestrierung Query->Prompt->Antwort->Verlauf)
- factory.py     : Verdrahtung aus den Settings
- api.py         : FastAPI Endpoints (/chat, /chat/stream, /upload, /files, /history, /health)
"""
