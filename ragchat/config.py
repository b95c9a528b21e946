# ragchat/config.py
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


KNOWN_PROVIDERS = ("openai", "openai-completions", "ollama", "anthropic")


class Settings(BaseSettings):
    """
    Globale App-Einstellungen.

    Alle Werte kommen aus der Umgebung bzw. .env.
    API-Keys sind optional; ein Provider ohne Key antwortet mit GenerationError.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # LLM-Provider
    DEFAULT_PROVIDER: str = "openai"
    ENABLED_PROVIDERS: List[str] = ["openai", "openai-completions", "ollama", "anthropic"]
    # erstes Modell je Provider ist das Default-Modell
    PROVIDER_MODELS: Dict[str, List[str]] = {
        "openai": ["gpt-4o-mini", "gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"],
        "openai-completions": ["gpt-3.5-turbo-instruct", "davinci-002"],
        "ollama": ["llama3.1", "mistral", "qwen2.5"],
        "anthropic": ["claude-3-5-haiku-latest", "claude-3-5-sonnet-latest"],
    }
    # unbekanntes Modell -> Default-Modell statt 400 (nur wenn explizit erlaubt)
    ALLOW_MODEL_FALLBACK: bool = False

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com"
    OLLAMA_BASE_URL: str = "http://127.0.0.1:11434/v1"
    OLLAMA_WARMUP: bool = False

    MAX_TOKENS: int = 600
    TEMPERATURE: float = 0.7
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BACKOFF_SECONDS: float = Field(default=0.5, ge=0)

    # Embeddings: local (Sentence-Transformer), openai (HTTP) oder none (kein Retrieval)
    EMBEDDING_BACKEND: str = "local"
    EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"

    # Vektorstore: chroma (persistent) oder memory
    VECTOR_BACKEND: str = "chroma"
    CHROMA_PATH: str = "data/chroma"
    CHROMA_COLLECTION: str = "ragchat"

    # Dateiablagen
    UPLOAD_DIR: str = "uploads"
    STATIC_DIR: str = "public"

    # Retrieval/Chunking
    CHUNK_SIZE: int = Field(default=300, gt=0)
    CHUNK_OVERLAP: int = Field(default=40, ge=0)
    TOP_K: int = Field(default=4, gt=0)
    RELEVANCE_THRESHOLD: float = 0.3

    # Prompt/History
    MAX_CONTEXT_CHARS: int = Field(default=2000, ge=0)
    MAX_HISTORY_TURNS: int = Field(default=6, ge=2)
    MAX_SESSIONS: int = Field(default=1000, gt=0)
    BASE_INSTRUCTIONS: str = (
        "Du bist ein hilfsbereiter Assistent für Kundenfragen. "
        "Antworte knapp, sachlich und in der Sprache der Nutzerfrage."
    )
    CONTEXTUAL_INSTRUCTIONS_TEMPLATE: str = (
        "Abgerufene Informationen:\n"
        "{context}\n\n"
        "Stütze deine Antwort bevorzugt auf diese Informationen. "
        "Reichen sie nicht aus, stelle eine kurze Rückfrage."
    )
    FALLBACK_INSTRUCTIONS: str = (
        "Zu dieser Frage liegen keine Dokumente vor. "
        "Antworte aus deinem allgemeinen Wissen und kennzeichne Unsicherheiten."
    )

    # Server
    PING_INTERVAL_SECONDS: float = 10.0
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    LOG_LEVEL: str = "INFO"

    @field_validator("EMBEDDING_BACKEND", mode="after")
    def _check_embedding_backend(cls, v: str) -> str:
        if v not in {"local", "openai", "none"}:
            raise ValueError("EMBEDDING_BACKEND must be one of: local, openai, none")
        return v

    @field_validator("VECTOR_BACKEND", mode="after")
    def _check_vector_backend(cls, v: str) -> str:
        if v not in {"chroma", "memory"}:
            raise ValueError("VECTOR_BACKEND must be one of: chroma, memory")
        return v

    @field_validator("CONTEXTUAL_INSTRUCTIONS_TEMPLATE", mode="after")
    def _check_template(cls, v: str) -> str:
        if "{context}" not in v:
            raise ValueError("CONTEXTUAL_INSTRUCTIONS_TEMPLATE must contain a {context} placeholder")
        # andere Klammern müssen als {{ }} escaped sein
        try:
            v.format(context="")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"CONTEXTUAL_INSTRUCTIONS_TEMPLATE has unescaped braces besides {{context}}: {e!r}"
            ) from e
        return v

    @field_validator("CHROMA_PATH", "UPLOAD_DIR", mode="after")
    def _ensure_dirs(cls, v: str) -> str:
        Path(v).mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def _check_providers(self) -> "Settings":
        unknown = [p for p in self.ENABLED_PROVIDERS if p not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown providers in ENABLED_PROVIDERS: {unknown}")
        if self.DEFAULT_PROVIDER not in self.ENABLED_PROVIDERS:
            raise ValueError("DEFAULT_PROVIDER must be listed in ENABLED_PROVIDERS")
        for p in self.ENABLED_PROVIDERS:
            if not self.PROVIDER_MODELS.get(p):
                raise ValueError(f"PROVIDER_MODELS has no models for provider {p!r}")
        if self.CHUNK_OVERLAP >= self.CHUNK_SIZE:
            raise ValueError("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")
        return self


@dataclass(frozen=True)
class AssemblerConfig:
    """Read-only Teilmenge der Settings, die der Prompt-Aufbau braucht."""
    max_context_chars: int = 2000
    max_history_turns: int = 6
    base_instructions: str = ""
    fallback_instructions: str = ""
    contextual_instructions_template: str = "{context}"
    context_separator: str = "\n\n---\n\n"

    @classmethod
    def from_settings(cls, s: Settings) -> "AssemblerConfig":
        return cls(
            max_context_chars=s.MAX_CONTEXT_CHARS,
            max_history_turns=s.MAX_HISTORY_TURNS,
            base_instructions=s.BASE_INSTRUCTIONS,
            fallback_instructions=s.FALLBACK_INSTRUCTIONS,
            contextual_instructions_template=s.CONTEXTUAL_INSTRUCTIONS_TEMPLATE,
        )


settings = Settings()
