import httpx
from fastapi.testclient import TestClient

from ragchat.api import create_app
from ragchat.db import InMemoryVectorStore
from ragchat.factory import create_dispatcher, create_services

from conftest import FakeProvider, HashingEmbedder

DOC = ("A potência recomendada para o inversor é de 5 kW. " * 40).encode("utf-8")


def _context_of(system: str) -> str:
    start = system.index("Abgerufene Informationen:\n") + len("Abgerufene Informationen:\n")
    end = system.index("\n\nStütze deine Antwort")
    return system[start:end]


def test_chat_without_documents_uses_fallback(client, provider, settings) -> None:
    r = client.post("/chat", json={"message": "Qual a potência recomendada?"})
    assert r.status_code == 200
    assert r.json() == {"reply": "Resposta de teste"}
    system = provider.system_message()
    assert settings.FALLBACK_INSTRUCTIONS in system
    assert "Abgerufene Informationen" not in system


def test_missing_message_returns_400(client, provider) -> None:
    for body in ({}, {"message": ""}, {"message": "   "}):
        r = client.post("/chat", json=body)
        assert r.status_code == 400
        assert r.json() == {"error": "Message is required"}
    assert provider.requests == []


def test_wrong_type_or_broken_json_returns_400(client, provider) -> None:
    r = client.post("/chat", json={"message": 5})
    assert r.status_code == 400
    assert r.json() == {"error": "Message is required"}
    r = client.post("/chat", content=b"{kaputt", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request"}
    assert provider.requests == []


def test_unsupported_provider_or_model_returns_400(client, provider) -> None:
    r = client.post("/chat", json={"message": "oi", "provider": "gemini"})
    assert r.status_code == 400
    assert "gemini" in r.json()["error"]
    r = client.post("/chat", json={"message": "oi", "provider": "openai", "model": "o1-preview"})
    assert r.status_code == 400
    assert provider.requests == []


def test_provider_failure_returns_generic_500(client, provider) -> None:
    provider.statuses = [500, 500, 500]
    r = client.post("/chat", json={"message": "oi"})
    assert r.status_code == 500
    assert r.json() == {"error": "Error processing the message"}
    assert "secret" not in r.text
    assert len(provider.requests) == 3


def test_chat_with_explicit_provider(client, provider) -> None:
    r = client.post("/chat", json={"message": "oi", "provider": "anthropic"})
    assert r.status_code == 200
    assert provider.requests[-1].url.path == "/v1/messages"


def test_upload_then_chat_uses_bounded_context(client, provider, settings) -> None:
    r = client.post("/upload", files={"file": ("manual.txt", DOC, "text/plain")})
    assert r.status_code == 200
    assert r.json() == {"message": "File uploaded successfully", "fileName": "manual.txt"}

    r = client.post("/chat", json={"message": "Qual a potência recomendada?"})
    assert r.status_code == 200
    system = provider.system_message()
    assert settings.FALLBACK_INSTRUCTIONS not in system
    context = _context_of(system)
    assert "5 kW" in context
    assert len(context) <= settings.MAX_CONTEXT_CHARS


def test_files_lists_uploads(client) -> None:
    assert client.get("/files").json() == []
    client.post("/upload", files={"file": ("manual.txt", DOC, "text/plain")})
    assert client.get("/files").json() == [{"name": "manual.txt"}]


def test_upload_without_file_returns_400(client) -> None:
    r = client.post("/upload")
    assert r.status_code == 400
    assert r.json() == {"error": "No files were uploaded."}


def test_unsupported_upload_is_rejected_and_not_stored(client) -> None:
    r = client.post("/upload", files={"file": ("setup.exe", b"MZ\x90\x00", "application/octet-stream")})
    assert r.status_code == 500
    assert r.json() == {"error": "Error uploading the file"}
    assert client.get("/files").json() == []


def test_history_follows_session_header_across_alias(client, provider) -> None:
    headers = {"X-Session-Id": "kunde-1"}
    client.post("/chat", json={"message": "erste Frage"}, headers=headers)
    client.post("/chatbot", json={"message": "zweite Frage"}, headers=headers)
    contents = [m["content"] for m in provider.payload()["messages"][1:]]
    assert contents == ["erste Frage", "Resposta de teste", "zweite Frage"]

    client.post("/chat", json={"message": "andere Session", "session_id": "kunde-2"})
    assert len(provider.payload()["messages"]) == 2


def test_delete_history(client, provider) -> None:
    headers = {"X-Session-Id": "s"}
    client.post("/chat", json={"message": "erste Frage"}, headers=headers)
    r = client.delete("/history", headers=headers)
    assert r.json() == {"cleared": True}
    client.post("/chat", json={"message": "neu"}, headers=headers)
    assert len(provider.payload()["messages"]) == 2


def test_health_lists_providers(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert set(r.json()["providers"]) == {"openai", "openai-completions", "ollama", "anthropic"}


def test_index_missing_returns_404(client) -> None:
    assert client.get("/").status_code == 404


def test_index_is_served_from_static_dir(make_settings, tmp_path) -> None:
    static = tmp_path / "site"
    static.mkdir()
    (static / "index.html").write_text("<h1>Chat</h1>", encoding="utf-8")
    s = make_settings(STATIC_DIR=str(static))
    services = create_services(
        s,
        dispatcher=create_dispatcher(s, transport=httpx.MockTransport(FakeProvider())),
        embedder=HashingEmbedder(),
        store=InMemoryVectorStore(),
    )
    with TestClient(create_app(services)) as c:
        r = c.get("/")
        assert r.status_code == 200
        assert "<h1>Chat</h1>" in r.text
