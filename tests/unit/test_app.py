"""HTTP host: sessions, streamed answers, reindex, settings, health."""
import asyncio
import json

import pytest

from notechat.main import create_app
from notechat.rag.store_faiss import VectorIndex
from notechat.settings import SettingsStore


def parse_sse(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.fixture
def notes_dir(tmp_path):
    notes = tmp_path / "vault"
    notes.mkdir()
    (notes / "cats.md").write_text("My cat sleeps all day in the garden.", encoding="utf-8")
    (notes / "coffee.md").write_text("Brew coffee slowly.", encoding="utf-8")
    return notes


@pytest.fixture
def settings_store(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    store.update(model_name="gpt-4")
    return store


@pytest.fixture
def app(provider, rag_config, settings_store, notes_dir):
    return create_app(
        settings_store=settings_store,
        rag_config=rag_config,
        llm=provider,
        vector_index=VectorIndex(),
        notes_dir=notes_dir,
    )


async def open_session(client) -> str:
    response = await client.post("/api/sessions")
    assert response.status_code == 201
    return (await response.get_json())["session_id"]


@pytest.mark.asyncio
async def test_answer_is_streamed_as_render_events(app):
    client = app.test_client()
    assert (await client.post("/api/reindex")).status_code == 200
    session_id = await open_session(client)

    response = await client.post(f"/api/sessions/{session_id}/messages", json={"message": "Where is my cat?"})
    events = parse_sse(await response.get_data(as_text=True))

    assert response.headers["Content-Type"].startswith("text/event-stream")
    assert [name for name, _ in events] == ["render"] * 5 + ["complete"]
    assert events[0][1]["messages"][-1]["content"] == "Hel"
    final = events[-1][1]["message"]
    assert final["content"] == "Hello world"
    assert final["status"] == "complete"
    assert final["sources"][0]["name"] == "cats"
    assert final["sources"][0]["link"].startswith("obsidian://open?")

    history = await (await client.get(f"/api/sessions/{session_id}/messages")).get_json()
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]


def own_answer_contents(events, question):
    """Contents of the assistant message answering ``question`` in each render."""
    contents = []
    for name, data in events:
        if name != "render":
            continue
        messages = data["messages"]
        index = next(i for i, m in enumerate(messages) if m["role"] == "user" and m["content"] == question)
        contents.append((messages[index + 1]["content"], messages[index + 1]["status"]))
    return contents


@pytest.mark.asyncio
async def test_queued_message_streams_its_own_answer(app, provider):
    client = app.test_client()
    await client.post("/api/reindex")
    session_id = await open_session(client)
    url = f"/api/sessions/{session_id}/messages"
    provider.gate = asyncio.Event()

    first = asyncio.ensure_future(client.post(url, json={"message": "first about cats"}))
    second = asyncio.ensure_future(client.post(url, json={"message": "second about coffee"}))
    for _ in range(200):
        history = await (await client.get(url)).get_json()
        if len(history["messages"]) == 4:
            break
        await asyncio.sleep(0.01)
    assert len(history["messages"]) == 4
    provider.gate.set()

    expected = [
        ("Hel", "pending"),
        ("Hello", "pending"),
        ("Hello wor", "pending"),
        ("Hello world", "pending"),
        ("Hello world", "complete"),
    ]
    for task, question in ((first, "first about cats"), (second, "second about coffee")):
        events = parse_sse(await (await task).get_data(as_text=True))
        assert events[-1][0] == "complete"
        assert own_answer_contents(events, question) == expected


@pytest.mark.asyncio
async def test_question_before_reindex_reports_error(app):
    client = app.test_client()
    session_id = await open_session(client)

    response = await client.post(f"/api/sessions/{session_id}/messages", json={"message": "cat?"})
    events = parse_sse(await response.get_data(as_text=True))

    assert events[-1][0] == "error"
    assert events[-1][1]["code"] == "INDEX_NOT_BUILT"
    assert events[0][1]["messages"][-1]["status"] == "failed"


@pytest.mark.asyncio
async def test_interrupted_answer_reports_partial(app, provider):
    client = app.test_client()
    await client.post("/api/reindex")
    provider.fail_after = 2
    session_id = await open_session(client)

    response = await client.post(f"/api/sessions/{session_id}/messages", json={"message": "cat?"})
    events = parse_sse(await response.get_data(as_text=True))

    assert events[-1][1]["code"] == "STREAM_INTERRUPTED"
    last_render = events[-2][1]["messages"][-1]
    assert last_render["content"] == "Hello"
    assert last_render["status"] == "interrupted"


@pytest.mark.asyncio
async def test_invalid_message_is_rejected(app):
    client = app.test_client()
    session_id = await open_session(client)

    response = await client.post(f"/api/sessions/{session_id}/messages", json={"message": ""})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_and_closed_sessions(app):
    client = app.test_client()
    session_id = await open_session(client)

    assert (await client.delete(f"/api/sessions/{session_id}")).status_code == 204
    assert (await client.delete(f"/api/sessions/{session_id}")).status_code == 404
    response = await client.post(f"/api/sessions/{session_id}/messages", json={"message": "hi"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_reindex_reports_counts(app):
    client = app.test_client()

    response = await client.post("/api/reindex")
    stats = await response.get_json()

    assert stats["processed"] == 2
    assert stats["failed"] == 0


@pytest.mark.asyncio
async def test_reindex_missing_vault(provider, rag_config, settings_store, tmp_path):
    app = create_app(
        settings_store=settings_store,
        rag_config=rag_config,
        llm=provider,
        vector_index=VectorIndex(),
        notes_dir=tmp_path / "missing",
    )

    response = await app.test_client().post("/api/reindex")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_settings_roundtrip(app, settings_store):
    client = app.test_client()

    response = await client.put("/api/settings", json={"api_key": "sk-ui", "model_name": "gpt-4o"})
    body = await response.get_json()

    assert body == {"model_name": "gpt-4o", "api_key_set": True}
    assert settings_store.settings.api_key == "sk-ui"
    assert "sk-ui" not in json.dumps(await (await client.get("/api/settings")).get_json())


@pytest.mark.asyncio
async def test_health_checks(app, settings_store):
    client = app.test_client()

    assert (await client.get("/health/live")).status_code == 200
    assert (await client.get("/health/ready")).status_code == 200

    settings_store.update(model_name="missing-model")
    response = await client.get("/health/ready")
    assert response.status_code == 503
    assert (await response.get_json())["model"] is False
