import json
import os
import re
import tempfile
import zlib
from typing import List, Optional, Sequence

# vor dem ersten Import von ragchat.config setzen (Settings wird beim Import gebaut)
_TMP = tempfile.mkdtemp(prefix="ragchat-tests-")
os.environ.setdefault("UPLOAD_DIR", os.path.join(_TMP, "uploads"))
os.environ.setdefault("CHROMA_PATH", os.path.join(_TMP, "chroma"))
os.environ.setdefault("STATIC_DIR", os.path.join(_TMP, "public"))
os.environ.setdefault("EMBEDDING_BACKEND", "none")
os.environ.setdefault("VECTOR_BACKEND", "memory")

import httpx
import pytest
from fastapi.testclient import TestClient

from ragchat.api import create_app
from ragchat.config import Settings
from ragchat.db import InMemoryVectorStore
from ragchat.errors import EmbeddingError
from ragchat.factory import create_dispatcher, create_services

_WORD_RE = re.compile(r"\w+")


class HashingEmbedder:
    """Deterministische Bag-of-Words-Vektoren, gut genug für Substring-Treffer."""

    def __init__(self, dims: int = 128, fail: bool = False) -> None:
        self.dims = dims
        self.fail = fail
        self.calls = 0

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail:
            raise EmbeddingError("embedding backend unavailable")
        out = []
        for text in texts:
            vec = [0.0] * self.dims
            for word in _WORD_RE.findall(text.lower()):
                vec[zlib.crc32(word.encode("utf-8")) % self.dims] += 1.0
            out.append(vec)
        return out


class FakeProvider:
    """httpx.MockTransport-Handler, der OpenAI-, Completions- und Anthropic-Envelopes imitiert."""

    def __init__(self, reply: str = "Resposta de teste") -> None:
        self.reply = reply
        self.requests: List[httpx.Request] = []
        self.statuses: List[int] = []  # pro Request abgearbeitet, danach 200
        self.body: Optional[dict] = None
        self.stream_deltas: List[str] = ["Olá", ", ", "mundo"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.statuses:
            status = self.statuses.pop(0)
            if status != 200:
                return httpx.Response(status, json={"error": {"message": "secret upstream detail"}})
        payload = json.loads(request.content or b"{}")
        if self.body is not None:
            return httpx.Response(200, json=self.body)
        path = request.url.path
        if payload.get("stream"):
            lines = [
                "data: " + json.dumps({"choices": [{"delta": {"content": d}}]})
                for d in self.stream_deltas
            ]
            lines.append("data: [DONE]")
            return httpx.Response(
                200,
                text="\n\n".join(lines) + "\n\n",
                headers={"content-type": "text/event-stream"},
            )
        if path.endswith("/chat/completions"):
            return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": self.reply}}]})
        if path.endswith("/completions"):
            return httpx.Response(200, json={"choices": [{"text": " " + self.reply + "\n"}]})
        if path.endswith("/v1/messages"):
            return httpx.Response(200, json={"content": [{"type": "text", "text": self.reply}]})
        return httpx.Response(404, json={"error": "unknown path"})

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def system_message(self, index: int = -1) -> str:
        return self.payload(index)["messages"][0]["content"]


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = dict(
            OPENAI_API_KEY="test-key",
            ANTHROPIC_API_KEY="test-key",
            RETRY_BACKOFF_SECONDS=0,
            UPLOAD_DIR=str(tmp_path / "uploads"),
            CHROMA_PATH=str(tmp_path / "chroma"),
            STATIC_DIR=str(tmp_path / "public"),
            EMBEDDING_BACKEND="none",
            VECTOR_BACKEND="memory",
            RELEVANCE_THRESHOLD=0.1,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def services(settings, provider, embedder):
    return create_services(
        settings,
        dispatcher=create_dispatcher(settings, transport=httpx.MockTransport(provider)),
        embedder=embedder,
        store=InMemoryVectorStore(),
    )


@pytest.fixture
def core(services):
    return services.core


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c
