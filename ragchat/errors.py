# ragchat/errors.py
"""
Fehler-Taxonomie des Chat-Backends.

Die API bildet diese Klassen auf HTTP-Statuscodes ab (siehe api.py).
"""
from __future__ import annotations


class ChatbotError(Exception):
    """Basisklasse aller fachlichen Fehler."""

    status_code: int = 500
    public_message: str = "Error processing the message"


class ValidationError(ChatbotError):
    """Pflichtfeld fehlt oder ist leer."""

    status_code = 400

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return str(self) or "Invalid request"


class UnsupportedProvider(ChatbotError):
    """Unbekannter Provider oder unbekanntes Modell."""

    status_code = 400

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return str(self)


class RetrievalError(ChatbotError):
    """Embedding- oder Vektorsuche fehlgeschlagen. Wird lokal abgefangen."""


class EmbeddingError(RetrievalError):
    pass


class GenerationError(ChatbotError):
    """Completion-Aufruf fehlgeschlagen (Netzwerk, Status, Timeout)."""


class IngestError(ChatbotError):
    """Upload konnte nicht gespeichert oder gelesen werden."""

    public_message = "Error uploading the file"
