import json

import pytest
from fastapi.testclient import TestClient

from chatflow.api.deps import AppDeps, get_deps
from chatflow.config import Settings
from chatflow.graph import END_NODE_ID, START_NODE_ID, ActionRegistry, Graph, InMemoryGraphStore
from chatflow.main import app
from chatflow.transport import RecordingReplySender


def hello_snapshot():
    graph = Graph(graph_id="hello")
    graph.add_node("A", type="completion.model")
    graph.add_edge(START_NODE_ID, "A").add_edge("A", END_NODE_ID)
    return graph.compile().to_snapshot()


@pytest.fixture
def deps():
    from tests.conftest import ScriptedLLM

    return AppDeps(
        settings=Settings(),
        store=InMemoryGraphStore([hello_snapshot()]),
        llm=ScriptedLLM(replies=["hello"]),
        tool_actions=ActionRegistry(),
        sender=RecordingReplySender(),
    )


@pytest.fixture
def client(deps):
    app.dependency_overrides[get_deps] = lambda: deps
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers.get("X-Trace-Id")


def test_run_graph_returns_answer(client, deps):
    resp = client.post(
        "/v1/graphs/hello/run",
        json={"prompt": {"role": "user", "content": "hi"}, "thread_id": "chat-1"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["output"] == "hello"
    assert body["termination"] == "end"
    assert body["iterations"] == 2
    assert body["thread_id"] == "chat-1"
    assert body["replied"] is False
    assert deps.sender.sent == []


def test_run_graph_sends_reply(client, deps):
    resp = client.post(
        "/v1/graphs/hello/run",
        json={"messages": [{"role": "user", "content": "hi"}], "thread_id": "chat-1", "reply": True},
    )

    assert resp.status_code == 200
    assert resp.json()["replied"] is True
    assert deps.sender.sent == [("chat-1", "hello")]


def test_reply_requires_thread_id(client):
    resp = client.post("/v1/graphs/hello/run", json={"prompt": {"role": "user", "content": "hi"}, "reply": True})
    assert resp.status_code == 400
    assert resp.json()["error"] == "missing_thread_id"


def test_unknown_graph_is_404(client):
    resp = client.post("/v1/graphs/nope/run", json={})
    assert resp.status_code == 404
    assert resp.json()["error"] == "snapshot_not_found"


def test_invalid_payload_is_422(client):
    resp = client.post("/v1/graphs/hello/run", json={"max_iterations": 0})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


def test_stream_graph_emits_sse_events(client):
    resp = client.post("/v1/graphs/hello/stream", json={"prompt": {"role": "user", "content": "hi"}})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = [f for f in resp.text.split("\n\n") if f]
    assert len(frames) == 10
    assert all(f.startswith("event: state.graph.updated\n") for f in frames)
    last = json.loads(frames[-1].split("data: ", 1)[1])
    assert last["active"] is False
    assert last["termination"] == "end"
    assert last["messages"][-1] == {"role": "assistant", "content": "hello"}


def test_run_keeps_only_recent_history(client, deps):
    deps.settings = Settings(history_window=2)
    history = [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
    ]

    resp = client.post("/v1/graphs/hello/run", json={"messages": history})

    assert resp.status_code == 200
    sent = [m.content for m in deps.llm.calls[0]["messages"]]
    assert sent == ["You are a helpful assistant.", "a1", "q2"]
