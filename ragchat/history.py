# ragchat/history.py
from __future__ import annotations
import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple

from .models import ConversationTurn, Role

log = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class ConversationHistory:
    """
    Begrenzter Gesprächsverlauf (max_turns Einträge, älteste zuerst).

    Verdrängt wird paarweise (ältester User-Turn + ältester Assistant-Turn),
    und zwar VOR dem Anhängen in record_user(): nach jedem Aufruf gilt
    len(history) <= max_turns, ohne kurzzeitiges Überschreiten.
    """

    def __init__(self, max_turns: int = 6) -> None:
        if max_turns < 2:
            raise ValueError("max_turns must be at least 2 (one exchange)")
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def record_user(self, message: str) -> None:
        # Platz für das komplette Paar (User + Assistant) schaffen
        while self._turns and len(self._turns) + 2 > self.max_turns:
            self._evict_oldest_pair()
        self._turns.append(ConversationTurn(Role.USER, message))

    def record_assistant(self, reply: str) -> None:
        while self._turns and len(self._turns) + 1 > self.max_turns:
            self._evict_oldest_pair()
        self._turns.append(ConversationTurn(Role.ASSISTANT, reply))

    def record_exchange(self, message: str, reply: str) -> None:
        self.record_user(message)
        self.record_assistant(reply)

    def view(self, last_n: Optional[int] = None) -> Tuple[ConversationTurn, ...]:
        """Snapshot der letzten last_n Turns (None = alle), älteste zuerst."""
        if last_n is None:
            return tuple(self._turns)
        if last_n <= 0:
            return ()
        return tuple(self._turns[-last_n:])

    def clear(self) -> None:
        self._turns.clear()

    def _evict_oldest_pair(self) -> None:
        for role in (Role.USER, Role.ASSISTANT):
            idx = next((i for i, t in enumerate(self._turns) if t.role == role), None)
            if idx is not None:
                del self._turns[idx]
        # nur System-Turns übrig -> ältesten entfernen, sonst Endlosschleife
        if self._turns and all(t.role == Role.SYSTEM for t in self._turns):
            del self._turns[0]


@dataclass
class _Session:
    history: ConversationHistory
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # laufende + auf den Lock wartende Exchanges
    users: int = 0


class SessionStore:
    """
    Verläufe je Session-ID. Ein Lock pro Session serialisiert die Exchanges
    derselben Session; verschiedene Sessions laufen unabhängig.
    Bei mehr als max_sessions wird die am längsten unbenutzte Session verworfen.

    Eine Session mit laufendem oder wartendem Exchange wird nie entfernt,
    sonst bekäme der nächste Request einen neuen Lock und liefe parallel.
    """

    def __init__(self, max_turns: int = 6, max_sessions: int = 1000) -> None:
        self.max_turns = max_turns
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, _Session]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _session(self, session_id: Optional[str]) -> _Session:
        sid = session_id or DEFAULT_SESSION
        sess = self._sessions.get(sid)
        if sess is None:
            sess = _Session(ConversationHistory(self.max_turns))
            self._sessions[sid] = sess
            self._evict_idle(keep=sid)
        else:
            self._sessions.move_to_end(sid)
        return sess

    def history(self, session_id: Optional[str]) -> ConversationHistory:
        return self._session(session_id).history

    @asynccontextmanager
    async def exchange(self, session_id: Optional[str]) -> AsyncIterator[ConversationHistory]:
        """Exklusiver Zugriff auf den Verlauf einer Session für einen Exchange."""
        sess = self._session(session_id)
        # vor dem ersten await zählen, damit _evict_idle/drop die Session sehen
        sess.users += 1
        try:
            async with sess.lock:
                yield sess.history
        finally:
            sess.users -= 1

    def drop(self, session_id: Optional[str]) -> bool:
        sid = session_id or DEFAULT_SESSION
        sess = self._sessions.get(sid)
        if sess is None:
            return False
        if sess.users:
            # Lock bleibt bestehen, nur der Verlauf wird geleert
            sess.history.clear()
        else:
            del self._sessions[sid]
        return True

    def _evict_idle(self, keep: str) -> None:
        while len(self._sessions) > self.max_sessions:
            # älteste Session ohne laufenden oder wartenden Exchange
            victim = next(
                (sid for sid, s in self._sessions.items() if sid != keep and not s.users),
                None,
            )
            if victim is None:
                break
            del self._sessions[victim]
            log.info(f"Session evicted: {victim}")
