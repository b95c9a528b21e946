# ragchat/llm.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
import asyncio
import json
import logging

import httpx

from .errors import GenerationError, UnsupportedProvider
from .models import PromptRequest, Role

log = logging.getLogger(__name__)

NO_REPLY = "No reply generated."
RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 0.5
    factor: float = 2.0
    max_seconds: float = 5.0

    def delay_for_attempt(self, attempt: int) -> float:
        delay = self.base_seconds * (self.factor ** max(0, attempt - 1))
        return min(delay, self.max_seconds)


class LLMAdapter:
    """
    Basis für einen Completion-Provider: hält den httpx.AsyncClient,
    macht POST mit Retry/Backoff und normalisiert die Antwort auf einen String.
    Unterklassen liefern Pfad, Payload und Extraktion.
    """
    name = "base"
    path = "/"
    requires_key = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        backoff: BackoffPolicy = BackoffPolicy(),
        max_tokens: int = 600,
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.backoff = backoff
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    # ---------- Lifecycle ----------
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key or ''}",
            "Content-Type": "application/json",
        }

    async def startup(self) -> None:
        if self.client is None:
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                http2=self._transport is None,
                limits=limits,
                headers=self._headers(),
                transport=self._transport,
            )

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def warmup(self, model: str) -> None:
        return None

    # ---------- Provider-spezifisch ----------
    def build_payload(self, request: PromptRequest, model: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_reply(self, data: Any) -> Optional[str]:
        raise NotImplementedError

    # ---------- Public API ----------
    async def complete(
        self,
        request: PromptRequest,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        self._check_key()
        payload = self.build_payload(
            request,
            model,
            max_tokens or self.max_tokens,
            self.temperature if temperature is None else temperature,
        )
        data = await self._post(self.path, payload)
        try:
            text = self.extract_reply(data)
        except (KeyError, IndexError, TypeError, AttributeError):
            text = None
        if not text or not text.strip():
            log.warning(f"{self.name}: response envelope without reply text")
            return NO_REPLY
        return text.strip()

    async def stream(
        self,
        request: PromptRequest,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncGenerator[str, None]:
        """Provider ohne Streaming liefern die komplette Antwort als ein Delta."""
        yield await self.complete(request, model, max_tokens, temperature)

    # ---------- Helpers ----------
    def _check_key(self) -> None:
        if self.requires_key and not self.api_key:
            raise GenerationError(f"{self.name}: API key not configured")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        await self.startup()
        assert self.client is not None
        for attempt in range(1, self.retry_attempts + 1):
            last_try = attempt == self.retry_attempts
            try:
                r = await self.client.post(path, json=payload)
            except httpx.TransportError as e:
                if last_try:
                    raise GenerationError(f"{self.name} request failed: {e!r}") from e
                log.warning(f"{self.name}: transport error (attempt {attempt}): {e!r}")
            else:
                if r.status_code in RETRYABLE_STATUS and not last_try:
                    log.warning(f"{self.name}: HTTP {r.status_code} (attempt {attempt}), retrying")
                else:
                    if r.is_error:
                        raise GenerationError(f"{self.name} returned HTTP {r.status_code}: {r.text[:200]}")
                    try:
                        return r.json()
                    except ValueError as e:
                        raise GenerationError(f"{self.name} returned invalid JSON") from e
            await asyncio.sleep(self.backoff.delay_for_attempt(attempt))
        raise GenerationError(f"{self.name}: retries exhausted")


class OpenAIChatAdapter(LLMAdapter):
    """/chat/completions mit strukturierter Rollenliste, unterstützt Streaming."""
    name = "openai"
    path = "/chat/completions"

    def build_payload(self, request, model, max_tokens, temperature):
        return {
            "model": model,
            "messages": request.as_messages(),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

    def extract_reply(self, data):
        return data["choices"][0]["message"]["content"]

    async def stream(self, request, model, max_tokens=None, temperature=None):
        self._check_key()
        await self.startup()
        assert self.client is not None
        payload = self.build_payload(
            request,
            model,
            max_tokens or self.max_tokens,
            self.temperature if temperature is None else temperature,
        )
        payload["stream"] = True
        try:
            async with self.client.stream("POST", self.path, json=payload) as r:
                if r.is_error:
                    await r.aread()
                    raise GenerationError(f"{self.name} returned HTTP {r.status_code}")
                async for line in r.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    chunk = line.removeprefix("data:").strip()
                    if chunk == "[DONE]":
                        break
                    delta = self.extract_delta_text(chunk)
                    if delta:
                        yield delta
        except httpx.TransportError as e:
            raise GenerationError(f"{self.name} stream failed: {e!r}") from e

    @staticmethod
    def extract_delta_text(chunk: str) -> Optional[str]:
        """
        Erwartet 'chunk' als JSON-Zeile aus dem OpenAI-Stream (data: {...}).
        Extrahiert choices[0].delta.content, wenn vorhanden.
        """
        try:
            obj = json.loads(chunk)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None
        choices = obj.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta") or {}
        text = delta.get("content")
        # manche Anbieter streamen direkt "content"
        if text is None:
            text = obj.get("content")
        return text


class OpenAICompletionsAdapter(LLMAdapter):
    """Legacy /completions: ein String-Prompt mit Transkript, Antwort in choices[0].text."""
    name = "openai-completions"
    path = "/completions"

    def build_payload(self, request, model, max_tokens, temperature):
        return {
            "model": model,
            "prompt": request.as_prompt(),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stop": ["\nUser:"],
        }

    def extract_reply(self, data):
        return data["choices"][0]["text"]


class OllamaAdapter(OpenAIChatAdapter):
    """Ollama über die OpenAI-kompatible /v1 API; Warmup über die native API."""
    name = "ollama"
    requires_key = False

    def _native_url(self, path: str) -> str:
        """
        Baut eine native Ollama-URL (ohne /v1) aus base_url.
          http://127.0.0.1:11434/v1  -> http://127.0.0.1:11434/api/chat
        """
        base = self.base_url
        if base.endswith("/v1"):
            base = base[:-3]
        if not path.startswith("/"):
            path = "/" + path
        return base + path

    def build_payload(self, request, model, max_tokens, temperature):
        payload = super().build_payload(request, model, max_tokens, temperature)
        payload["keep_alive"] = "30m"
        return payload

    async def warmup(self, model: str) -> None:
        """Lädt das Modell vor und setzt keep_alive=30m."""
        await self.startup()
        assert self.client is not None
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": "ping"}],
            "stream": False,
            "keep_alive": "30m",
        }
        r = await self.client.post(self._native_url("/api/chat"), json=payload)
        r.raise_for_status()


class AnthropicAdapter(LLMAdapter):
    """/v1/messages: System-Prompt separat, Antwort als Liste von Content-Blöcken."""
    name = "anthropic"
    path = "/v1/messages"
    api_version = "2023-06-01"

    def _headers(self):
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def build_payload(self, request, model, max_tokens, temperature):
        messages = [t.to_message() for t in request.history if t.role != Role.SYSTEM]
        messages.append({"role": Role.USER.value, "content": request.user_message})
        return {
            "model": model,
            "system": request.system_message,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

    def extract_reply(self, data):
        blocks = data.get("content") or []
        texts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
        return "".join(texts)


ADAPTERS = {
    cls.name: cls
    for cls in (OpenAIChatAdapter, OpenAICompletionsAdapter, OllamaAdapter, AnthropicAdapter)
}


class GenerationDispatcher:
    """
    Leitet einen PromptRequest an den gewählten Provider weiter.
    Provider und Modelle sind allow-listed; Unbekanntes wird vor jedem
    Netzwerkzugriff mit UnsupportedProvider abgelehnt.
    """

    def __init__(
        self,
        adapters: Dict[str, LLMAdapter],
        models: Dict[str, List[str]],
        default_provider: str,
        allow_model_fallback: bool = False,
    ) -> None:
        if default_provider not in adapters:
            raise ValueError(f"default provider {default_provider!r} has no adapter")
        self.adapters = adapters
        self.models = models
        self.default_provider = default_provider
        self.allow_model_fallback = allow_model_fallback

    @property
    def providers(self) -> List[str]:
        return list(self.adapters)

    def resolve(self, provider: Optional[str] = None, model: Optional[str] = None) -> Tuple[LLMAdapter, str]:
        name = (provider or self.default_provider).strip().lower()
        adapter = self.adapters.get(name)
        if adapter is None:
            raise UnsupportedProvider(f"Unsupported provider: {provider}")
        allowed = self.models.get(name) or []
        if not allowed:
            raise UnsupportedProvider(f"No models configured for provider: {name}")
        if not model:
            return adapter, allowed[0]
        if model in allowed:
            return adapter, model
        if self.allow_model_fallback:
            log.warning(f"Model {model!r} not allowed for {name}, falling back to {allowed[0]!r}")
            return adapter, allowed[0]
        raise UnsupportedProvider(f"Unsupported model {model!r} for provider {name!r}")

    async def complete(self, request: PromptRequest, provider: Optional[str] = None, model: Optional[str] = None) -> str:
        adapter, model_name = self.resolve(provider, model)
        return await adapter.complete(request, model_name)

    async def stream(
        self,
        request: PromptRequest,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        adapter, model_name = self.resolve(provider, model)
        async for delta in adapter.stream(request, model_name):
            yield delta

    async def startup(self) -> None:
        for adapter in self.adapters.values():
            await adapter.startup()

    async def shutdown(self) -> None:
        for adapter in self.adapters.values():
            await adapter.shutdown()
