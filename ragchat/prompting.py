# ragchat/prompting.py
from __future__ import annotations
from typing import Iterable, Sequence

from .config import AssemblerConfig
from .models import ContextFragment, ConversationTurn, PromptRequest


SYSTEM_TEMPLATE = """\
{base_instructions}

{context_instructions}
"""


def preprocess_input(text: str) -> str:
    return " ".join(text.strip().split())


def truncate_context(
    fragments: Iterable[ContextFragment],
    max_chars: int,
    separator: str = "\n\n---\n\n",
) -> str:
    """
    Fügt die Fragment-Texte in der gelieferten Reihenfolge zusammen und
    schneidet hart bei max_chars ab (nicht token- oder satzbewusst).
    Leere Eingabe -> "" (= kein Kontext, Fallback-Prompt).
    """
    texts = [f.text.strip() for f in fragments if f.text and f.text.strip()]
    if not texts or max_chars <= 0:
        return ""
    return separator.join(texts)[:max_chars]


class PromptBuilder:
    """
    Baut den PromptRequest aus Kontext, begrenztem Verlauf und Nutzerfrage.
    Reine Transformation, keine Seiteneffekte.
    """

    def __init__(self, config: AssemblerConfig) -> None:
        self.config = config

    def truncate(self, fragments: Sequence[ContextFragment]) -> str:
        return truncate_context(fragments, self.config.max_context_chars, self.config.context_separator)

    def system_message(self, context: str) -> str:
        if context:
            ctx = self.config.contextual_instructions_template.format(context=context)
        else:
            ctx = self.config.fallback_instructions
        return SYSTEM_TEMPLATE.format(
            base_instructions=self.config.base_instructions.strip(),
            context_instructions=ctx.strip(),
        ).strip()

    def build(
        self,
        context: str,
        history: Sequence[ConversationTurn],
        user_message: str,
    ) -> PromptRequest:
        return PromptRequest(
            system_message=self.system_message(context),
            history=tuple(history)[-self.config.max_history_turns:],
            user_message=preprocess_input(user_message),
        )
