# ragchat/models.py
"""
Datentypen der Pipeline: Turns, Kontext-Fragmente, fertiger Prompt.
Alle Werte sind unveränderlich (frozen dataclasses).
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str

    @property
    def label(self) -> str:
        return _LABELS[self.role]

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ContextFragment:
    """Ein Treffer aus der Vektorsuche. Lebt nur für einen Request."""
    source_id: str
    text: str
    relevance_score: Optional[float] = None
    meta: Dict[str, object] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class PromptRequest:
    """
    Fertiger Prompt für einen Generation-Provider.

    Zwei Ausgabeformen:
      - as_messages(): strukturierte Rollenliste (Chat-APIs)
      - as_prompt():   ein String mit Transkript (Completion-APIs)
    """
    system_message: str
    history: Tuple[ConversationTurn, ...]
    user_message: str

    def as_messages(self) -> List[Dict[str, str]]:
        messages = [{"role": Role.SYSTEM.value, "content": self.system_message}]
        messages.extend(turn.to_message() for turn in self.history)
        messages.append({"role": Role.USER.value, "content": self.user_message})
        return messages

    def transcript(self) -> str:
        return "\n".join(f"{turn.label}: {turn.content}" for turn in self.history)

    def as_prompt(self) -> str:
        parts = [self.system_message]
        transcript = self.transcript()
        if transcript:
            parts.append(transcript)
        parts.append(f"{_LABELS[Role.USER]}: {self.user_message}\n{_LABELS[Role.ASSISTANT]}:")
        return "\n\n".join(parts)
