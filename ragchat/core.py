# ragchat/core.py
from __future__ import annotations
from contextlib import aclosing
from typing import AsyncGenerator, Dict, List, Optional
import asyncio
import json
import logging
import time

from sse_starlette.sse import ServerSentEvent

from .errors import GenerationError, RetrievalError, ValidationError
from .history import SessionStore
from .llm import NO_REPLY, GenerationDispatcher
from .models import ContextFragment, PromptRequest
from .prompting import PromptBuilder
from .retrieval import RetrievalService

log = logging.getLogger(__name__)
metrics_log = logging.getLogger("metrics")


class ApplicationCore:
    """
    Orchestrierung: User-Message -> Retrieval -> Kontext kürzen -> Prompt
    -> Provider -> Verlauf aktualisieren.

    Der Verlauf wird erst nach erfolgreicher Antwort ergänzt (User + Assistant
    zusammen); ein fehlgeschlagener Exchange hinterlässt keine Spuren.
    """

    def __init__(
        self,
        retrieval: Optional[RetrievalService],
        prompting: PromptBuilder,
        dispatcher: GenerationDispatcher,
        sessions: SessionStore,
        timeout: float = 30.0,
        ping_interval: float = 10.0,
    ) -> None:
        self.retrieval = retrieval
        self.prompting = prompting
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.timeout = timeout
        self._ping_interval = ping_interval

    # ---------- Public API ----------
    async def chat(
        self,
        message: Optional[str],
        provider: Optional[str] = None,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        text = self._validate(message)
        # unbekannter Provider/Modell -> Fehler vor jedem Netzwerkzugriff
        self.dispatcher.resolve(provider, model)

        t0 = time.perf_counter()
        async with self.sessions.exchange(session_id) as history:
            t_r0 = time.perf_counter()
            fragments = await self._retrieve(text)
            t_r1 = time.perf_counter()
            context = self.prompting.truncate(fragments)
            request = self.prompting.build(context, history.view(), text)
            t_llm = time.perf_counter()
            try:
                reply = await asyncio.wait_for(
                    self.dispatcher.complete(request, provider, model),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as e:
                self._log_metrics(t0, t_r0, t_r1, t_llm, None, len(context), len(history), ok=False)
                raise GenerationError(f"generation timed out after {self.timeout}s") from e
            except GenerationError:
                self._log_metrics(t0, t_r0, t_r1, t_llm, None, len(context), len(history), ok=False)
                raise
            history.record_exchange(request.user_message, reply)
            self._log_metrics(t0, t_r0, t_r1, t_llm, time.perf_counter(), len(context), len(history), ok=True)
        return reply

    async def stream(
        self,
        message: Optional[str],
        provider: Optional[str] = None,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """
        Validiert sofort (wirft ValidationError/UnsupportedProvider) und gibt
        dann einen SSE-Generator zurück:
          - event=message: {"delta": "..."}
          - event=ping: "ping" (wenn ping_interval lang kein Delta kam)
          - event=error: {"message": "..."}
          - event=done: {"ok": true/false}
        """
        text = self._validate(message)
        self.dispatcher.resolve(provider, model)
        return self._stream_events(text, provider, model, session_id)

    def clear_history(self, session_id: Optional[str] = None) -> bool:
        return self.sessions.drop(session_id)

    # ---------- Helpers ----------
    @staticmethod
    def _validate(message: Optional[str]) -> str:
        if message is None or not str(message).strip():
            raise ValidationError("Message is required")
        return str(message).strip()

    async def _retrieve(self, text: str) -> List[ContextFragment]:
        """Retrieval-Fehler führen zum Fallback-Prompt, nicht zum Abbruch."""
        if self.retrieval is None:
            return []
        try:
            return await asyncio.to_thread(self.retrieval.search, text)
        except RetrievalError as e:
            log.warning(f"Retrieval failed, answering without context: {e}")
            return []

    async def _stream_events(
        self,
        text: str,
        provider: Optional[str],
        model: Optional[str],
        session_id: Optional[str],
    ) -> AsyncGenerator[ServerSentEvent, None]:
        t0 = time.perf_counter()
        async with self.sessions.exchange(session_id) as history:
            t_r0 = time.perf_counter()
            fragments = await self._retrieve(text)
            t_r1 = time.perf_counter()
            context = self.prompting.truncate(fragments)
            request = self.prompting.build(context, history.view(), text)

            t_llm = time.perf_counter()
            parts: List[str] = []
            try:
                async with aclosing(self._timed_stream(request, provider, model)) as deltas:
                    async for delta in deltas:
                        if delta is None:
                            yield ServerSentEvent(event="ping", data="ping")
                            continue
                        parts.append(delta)
                        yield ServerSentEvent(event="message", data=json.dumps({"delta": delta}, ensure_ascii=False))
            except GenerationError as e:
                log.error(f"Generation failed: {e}")
                self._log_metrics(t0, t_r0, t_r1, t_llm, None, len(context), len(history), ok=False)
                yield ServerSentEvent(event="error", data=json.dumps({"message": GenerationError.public_message}))
                yield ServerSentEvent(event="done", data=json.dumps({"ok": False}))
                return

            reply = "".join(parts).strip()
            if not reply:
                reply = NO_REPLY
                yield ServerSentEvent(event="message", data=json.dumps({"delta": reply}))
            history.record_exchange(request.user_message, reply)
            self._log_metrics(t0, t_r0, t_r1, t_llm, time.perf_counter(), len(context), len(history), ok=True)
        yield ServerSentEvent(event="done", data=json.dumps({"ok": True}))

    async def _timed_stream(
        self,
        request: PromptRequest,
        provider: Optional[str],
        model: Optional[str],
    ) -> AsyncGenerator[Optional[str], None]:
        """
        Deltas des Providers, die Deadline gilt für den ganzen Stream
        (auch vor dem ersten Token). None = seit ping_interval kein Delta.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        source = self.dispatcher.stream(request, provider, model)
        pending: Optional[asyncio.Future] = None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationError(f"generation timed out after {self.timeout}s")
                if pending is None:
                    pending = asyncio.ensure_future(source.__anext__())
                last_wait = remaining <= self._ping_interval
                done, _ = await asyncio.wait({pending}, timeout=min(remaining, self._ping_interval))
                if not done:
                    if last_wait:
                        raise GenerationError(f"generation timed out after {self.timeout}s")
                    yield None
                    continue
                step, pending = pending, None
                try:
                    delta = step.result()
                except StopAsyncIteration:
                    return
                yield delta
        finally:
            if pending is not None:
                pending.cancel()
                await asyncio.wait({pending})
            await source.aclose()

    @staticmethod
    def _ms(a: Optional[float], b: Optional[float]) -> Optional[float]:
        if a is None or b is None:
            return None
        return round((b - a) * 1000.0, 2)

    def _log_metrics(
        self,
        t0: float,
        t_r0: Optional[float],
        t_r1: Optional[float],
        t_llm: Optional[float],
        t_done: Optional[float],
        context_chars: int,
        history_turns: int,
        ok: bool,
    ) -> Dict:
        metrics = {
            "durations_ms": {
                "retrieval": self._ms(t_r0, t_r1),
                "prompt": self._ms(t_r1, t_llm),
                "generation": self._ms(t_llm, t_done),
                "total": self._ms(t0, t_done or time.perf_counter()),
            },
            "sizes": {"context_chars": context_chars, "history_turns": history_turns},
            "ok": ok,
        }
        metrics_log.info(json.dumps(metrics, ensure_ascii=False))
        return metrics
