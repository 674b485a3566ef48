"""Tests for the /api endpoints, driven through FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from reader_companion.app import create_app
from reader_companion.reveal import BubbleRevealer

KEY = "book:b1::persona:p1::character:c1"
REPLY = "[bubble] one\n[bubble] two\n[bubble] three"
API = {"provider": "openai", "endpoint": "http://llm.test/v1", "api_key": "sk-test", "model": "m1"}


@pytest.fixture
def client(storage, llm):
    app = create_app(storage.base_path, llm_factory=lambda config: llm, scheduler_interval=3600)
    app.state.companion.revealer = BubbleRevealer(first_delay=0, interval=0)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def conversation(client):
    client.patch("/api/settings", json={"chat_api": API})
    persona = client.post("/api/personas", json={"name": "Ann"}).json()
    character = client.post("/api/characters", json={"name": "Mira"}).json()
    client.put("/api/books/b1", json={"title": "Night Book", "text": "Alpha beta gamma. Delta."})
    return f"book:b1::persona:{persona['id']}::character:{character['id']}"


def _wait_for_messages(client, key: str, count: int) -> list[dict]:
    messages: list[dict] = []
    for _ in range(200):
        messages = client.get(f"/api/conversations/{key}/messages").json()
        if len(messages) >= count:
            break
        time.sleep(0.01)
    return messages


# ── Health & settings ────────────────────────────────────


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_settings_partial_merge(client):
    res = client.patch("/api/settings", json={"auto_chat_summary": {"threshold": 50}})
    assert res.status_code == 200
    assert res.json()["auto_chat_summary"] == {"enabled": False, "threshold": 50}
    assert client.get("/api/settings").json()["auto_chat_summary"]["threshold"] == 50


# ── Profiles & books ─────────────────────────────────────


def test_persona_create_list_delete(client):
    res = client.post("/api/personas", json={"name": "Ann", "nickname": "Annie"})
    assert res.status_code == 201
    pid = res.json()["id"]
    assert [p["id"] for p in client.get("/api/personas").json()] == [pid]
    assert client.delete(f"/api/personas/{pid}").status_code == 200
    assert client.delete(f"/api/personas/{pid}").status_code == 404


def test_character_delete_missing(client):
    assert client.delete("/api/characters/nope").status_code == 404


def test_character_binding_and_world_book(client):
    character = client.post(
        "/api/characters", json={"name": "Mira", "bound_world_book_categories": ["harbor"]},
    ).json()
    assert character["bound_world_book_categories"] == ["harbor"]
    res = client.patch(f"/api/characters/{character['id']}", json={"bound_world_book_categories": []})
    assert res.json()["bound_world_book_categories"] == []
    assert res.json()["name"] == "Mira"
    assert client.patch("/api/characters/nope", json={"name": "X"}).status_code == 404

    entry = client.post("/api/world-book", json={"title": "1 Fog", "category": "harbor"})
    assert entry.status_code == 201
    entry_id = entry.json()["id"]
    updated = client.patch(
        f"/api/world-book/{entry_id}",
        json={"title": "1 Fog", "category": "harbor", "insert_position": "after"},
    ).json()
    assert updated["insert_position"] == "after"
    assert [e["id"] for e in client.get("/api/world-book").json()] == [entry_id]
    assert client.delete(f"/api/world-book/{entry_id}").json() == []
    assert client.delete(f"/api/world-book/{entry_id}").status_code == 404


def test_book_highlights(client):
    assert client.put("/api/books/b9/highlights", json={"highlights": []}).status_code == 404
    client.put("/api/books/b1", json={"title": "One", "text": "abcdef"})
    res = client.put("/api/books/b1/highlights", json={"highlights": [{"start": 1, "end": 3}]})
    assert res.json()["highlights"] == [{"start": 1, "end": 3}]
    res = client.put("/api/books/b1", json={"title": "Two", "text": "abcdef"})
    assert res.json()["highlights"] == [{"start": 1, "end": 3}]


def test_book_put_keeps_progress(client):
    client.put("/api/books/b1", json={"title": "One", "text": "abcdef"})
    client.post(f"/api/conversations/{KEY}/progress", json={"offset": 4})
    res = client.put("/api/books/b1", json={"title": "Two", "text": "abcdefgh"})
    assert res.json()["read_offset"] == 4
    assert client.get("/api/books/b1").json()["title"] == "Two"
    assert client.get("/api/books/missing").status_code == 404


# ── Chat ─────────────────────────────────────────────────


def test_send_message_and_reply(client, conversation, llm):
    llm.replies = [REPLY]
    res = client.post(f"/api/conversations/{conversation}/messages", json={"content": "Hi there"})
    assert res.status_code == 200
    body = res.json()
    assert body["message"]["content"] == "Hi there"
    assert body["result"]["status"] == "ok"
    messages = _wait_for_messages(client, conversation, 4)
    assert [m["content"] for m in messages[1:]] == ["one", "two", "three"]


def test_send_message_without_reply(client, conversation, llm):
    res = client.post(
        f"/api/conversations/{conversation}/messages", json={"content": "Hi", "reply": False},
    )
    assert res.json()["result"] is None
    assert llm.calls == []


def test_reply_without_pending_is_conflict(client, conversation):
    res = client.post(f"/api/conversations/{conversation}/reply")
    assert res.status_code == 409


def test_reply_with_invalid_api_config(client, conversation):
    client.patch("/api/settings", json={"chat_api": {"api_key": ""}})
    client.post(f"/api/conversations/{conversation}/messages", json={"content": "Hi", "reply": False})
    res = client.post(f"/api/conversations/{conversation}/reply")
    assert res.status_code == 400
    assert "API key" in res.json()["detail"]


def test_reply_model_failure_is_bad_gateway(client, conversation, llm):
    llm.replies = [RuntimeError("backend down")]
    res = client.post(f"/api/conversations/{conversation}/messages", json={"content": "Hi"})
    assert res.status_code == 502


def test_nudge_skip_is_silent(client, conversation):
    client.patch("/api/settings", json={"chat_api": {"api_key": ""}})
    res = client.post(f"/api/conversations/{conversation}/nudge")
    assert res.status_code == 200
    assert res.json()["reason"] == "invalid-api-config"
    assert res.json()["silent"] is True


def test_message_for_missing_persona(client):
    res = client.post(f"/api/conversations/{KEY}/messages", json={"content": "Hi"})
    assert res.status_code == 409


def test_status_and_abort_when_idle(client, conversation):
    assert client.get(f"/api/conversations/{conversation}/status").json()["is_active"] is False
    assert client.post(f"/api/conversations/{conversation}/abort").json() == {"aborted": False}


# ── Summaries ────────────────────────────────────────────


def test_manual_summary_through_queue(client, conversation, llm):
    llm.replies = ["[Opening] Three letters."]
    client.post(f"/api/conversations/{conversation}/focus")
    res = client.post(f"/api/conversations/{conversation}/summaries/book", json={"start": 1, "end": 17.4})
    assert res.status_code == 202
    assert (res.json()["start"], res.json()["end"]) == (1, 17)

    assert client.get("/api/queue").json()["state"]["pending_count"] == 1
    outcome = client.post("/api/queue/tick").json()
    assert outcome["status"] == "ok"

    listing = client.get(f"/api/conversations/{conversation}/summaries/book").json()
    assert listing["aggregate"] == "[Opening] Three letters."
    assert len(listing["cards"]) == 1


def test_card_merge_edit_delete(client, conversation, llm):
    llm.replies = ["first", "second"]
    client.post(f"/api/conversations/{conversation}/focus")
    base = f"/api/conversations/{conversation}/summaries/chat"
    client.post(base, json={"start": 1, "end": 2})
    client.post("/api/queue/tick")
    client.post(base, json={"start": 3, "end": 4})
    client.post("/api/queue/tick")
    ids = [c["id"] for c in client.get(base).json()["cards"]]
    assert len(ids) == 2

    assert client.post(f"{base}/merge", json={"card_ids": ids[:1]}).status_code == 400
    merged = client.post(f"{base}/merge", json={"card_ids": ids}).json()
    assert merged["aggregate"] == "first\n\nsecond"

    card_id = merged["cards"][0]["id"]
    edited = client.patch(f"{base}/{card_id}", json={"content": "rewritten"}).json()
    assert edited["aggregate"] == "rewritten"
    deleted = client.delete(f"{base}/{card_id}").json()
    assert deleted["cards"] == []


def test_invalidate_refuses_summaries(client, conversation):
    client.post(f"/api/conversations/{conversation}/invalidate")
    res = client.post(f"/api/conversations/{conversation}/summaries/chat", json={"start": 1, "end": 2})
    assert res.status_code == 409
    assert client.post(f"/api/conversations/{conversation}/revalidate").status_code == 200
    res = client.post(f"/api/conversations/{conversation}/summaries/chat", json={"start": 1, "end": 2})
    assert res.status_code == 202


def test_revalidate_missing_profiles(client):
    assert client.post(f"/api/conversations/{KEY}/revalidate").status_code == 409


def test_unknown_summary_kind(client, conversation):
    assert client.get(f"/api/conversations/{conversation}/summaries/lore").status_code == 422
