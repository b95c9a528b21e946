import asyncio
import json

import pytest

from ragchat.errors import GenerationError, UnsupportedProvider, ValidationError
from ragchat.llm import NO_REPLY

DOC = ("A potência recomendada para o inversor é de 5 kW. " * 40).encode("utf-8")


async def test_four_exchanges_keep_last_three(core) -> None:
    for i in range(1, 5):
        await core.chat(f"frage {i}", session_id="s1")
    turns = core.sessions.history("s1").view()
    assert len(turns) == 6
    assert turns[0].content == "frage 2"
    assert turns[-1].content == "Resposta de teste"


async def test_prompt_uses_prior_exchanges_only(core, provider) -> None:
    await core.chat("erste Frage", session_id="s")
    await core.chat("zweite Frage", session_id="s")
    messages = provider.payload()["messages"]
    assert [m["content"] for m in messages[1:]] == ["erste Frage", "Resposta de teste", "zweite Frage"]


async def test_indexed_document_becomes_context(services, provider) -> None:
    services.ingest.ingest_upload("manual.txt", DOC)
    await services.core.chat("Qual a potência recomendada?")
    system = provider.system_message()
    assert "Abgerufene Informationen" in system
    assert "5 kW" in system


async def test_retrieval_failure_falls_back_to_general_prompt(core, provider, embedder, settings) -> None:
    embedder.fail = True
    reply = await core.chat("Qual a potência recomendada?")
    assert reply == "Resposta de teste"
    assert settings.FALLBACK_INSTRUCTIONS in provider.system_message()


async def test_blank_message_is_rejected(core, provider) -> None:
    with pytest.raises(ValidationError):
        await core.chat("   ")
    with pytest.raises(ValidationError):
        await core.chat(None)
    assert provider.requests == []


async def test_unknown_provider_leaves_history_untouched(core, provider) -> None:
    with pytest.raises(UnsupportedProvider):
        await core.chat("hallo", provider="gemini", session_id="s")
    assert provider.requests == []
    assert len(core.sessions.history("s")) == 0


async def test_generation_error_does_not_record_history(core, provider) -> None:
    provider.statuses = [500, 500, 500]
    with pytest.raises(GenerationError):
        await core.chat("hallo", session_id="s")
    assert len(core.sessions.history("s")) == 0


async def test_deadline_turns_into_generation_error(core, monkeypatch) -> None:
    async def slow_complete(request, provider=None, model=None):
        await asyncio.sleep(1)
        return "zu spät"

    monkeypatch.setattr(core.dispatcher, "complete", slow_complete)
    core.timeout = 0.05
    with pytest.raises(GenerationError):
        await core.chat("hallo", session_id="s")
    assert len(core.sessions.history("s")) == 0


async def test_sessions_do_not_share_history(core) -> None:
    await core.chat("nur für a", session_id="a")
    assert len(core.sessions.history("a")) == 2
    assert len(core.sessions.history("b")) == 0


async def test_clear_history(core) -> None:
    await core.chat("hallo", session_id="s")
    assert core.clear_history("s") is True
    assert len(core.sessions.history("s")) == 0


async def _collect(events):
    return [(e.event, e.data) async for e in events]


async def test_stream_emits_deltas_then_done(core) -> None:
    events = await _collect(await core.stream("hallo", session_id="s"))
    deltas = [json.loads(d)["delta"] for kind, d in events if kind == "message"]
    assert "".join(deltas) == "Olá, mundo"
    assert events[-1] == ("done", json.dumps({"ok": True}))
    turns = core.sessions.history("s").view()
    assert [t.content for t in turns] == ["hallo", "Olá, mundo"]


async def test_stream_without_content_sends_sentinel(core, provider) -> None:
    provider.stream_deltas = []
    events = await _collect(await core.stream("hallo"))
    assert ("message", json.dumps({"delta": NO_REPLY})) in events


async def test_stream_error_hides_upstream_detail(core, provider) -> None:
    provider.statuses = [500]
    events = await _collect(await core.stream("hallo", session_id="s"))
    kinds = [kind for kind, _ in events]
    assert kinds == ["error", "done"]
    assert "secret" not in events[0][1]
    assert json.loads(events[1][1]) == {"ok": False}
    assert len(core.sessions.history("s")) == 0


async def test_stream_validates_before_first_event(core) -> None:
    with pytest.raises(ValidationError):
        await core.stream("")
    with pytest.raises(UnsupportedProvider):
        await core.stream("hallo", provider="gemini")


async def test_metrics_are_logged_as_json(core, caplog) -> None:
    with caplog.at_level("INFO", logger="metrics"):
        await core.chat("hallo")
    record = next(r for r in caplog.records if r.name == "metrics")
    metrics = json.loads(record.getMessage())
    assert metrics["ok"] is True
    assert metrics["sizes"]["history_turns"] == 2


async def test_stream_deadline_covers_stall_before_first_token(core, monkeypatch) -> None:
    async def stalled_stream(request, provider=None, model=None):
        await asyncio.sleep(2)
        yield "zu spät"

    monkeypatch.setattr(core.dispatcher, "stream", stalled_stream)
    core.timeout = 0.1
    loop = asyncio.get_running_loop()
    started = loop.time()
    events = await _collect(await core.stream("hallo", session_id="s"))
    assert loop.time() - started < 1.0
    assert [kind for kind, _ in events] == ["error", "done"]
    assert json.loads(events[-1][1]) == {"ok": False}
    assert len(core.sessions.history("s")) == 0


async def test_stream_pings_while_provider_is_silent(core, monkeypatch) -> None:
    async def slow_stream(request, provider=None, model=None):
        await asyncio.sleep(0.15)
        yield "endlich"

    monkeypatch.setattr(core.dispatcher, "stream", slow_stream)
    core._ping_interval = 0.04
    events = await _collect(await core.stream("hallo"))
    kinds = [kind for kind, _ in events]
    assert "ping" in kinds
    assert kinds[-2:] == ["message", "done"]
    assert json.loads(events[-1][1]) == {"ok": True}


async def test_clear_history_during_exchange_keeps_serialization(core, monkeypatch) -> None:
    active = 0
    overlaps = []

    async def slow_complete(request, provider=None, model=None):
        nonlocal active
        active += 1
        overlaps.append(active > 1)
        await asyncio.sleep(0.05)
        active -= 1
        return "ok"

    monkeypatch.setattr(core.dispatcher, "complete", slow_complete)
    first = asyncio.create_task(core.chat("eins", session_id="s"))
    await asyncio.sleep(0.02)
    assert core.clear_history("s") is True
    second = asyncio.create_task(core.chat("zwei", session_id="s"))
    await asyncio.gather(first, second)
    assert overlaps == [False, False]
    assert [t.content for t in core.sessions.history("s").view()] == ["eins", "ok", "zwei", "ok"]
