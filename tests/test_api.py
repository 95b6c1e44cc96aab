import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeLLM
from subway_backend.app import build_app, build_llm
from subway_toolkit.llms.anthropic import AnthropicLLM


@pytest.fixture
def client() -> TestClient:
    app = asyncio.run(build_app(FakeLLM(), project_name="API test"))
    return TestClient(app)


def parse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_get_path_and_layout(client):
    path = client.get("/path").json()
    layout = client.get("/layout").json()

    assert [node["type"] for node in path] == ["root", "assistant-message"]
    assert len(layout) == 1
    assert layout[0]["branch"]["name"] == "Main Line"
    assert layout[0]["status"] == "computed"
    assert layout[0]["color"] == "#3b82f6"


def test_send_message_streams_events(client):
    response = client.post("/messages", json={"content": "Hi there"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_events(response.text)
    assert events[0][0] == "pending"
    assert events[-1][0] == "reconciled"
    assert events[-1][1]["content"] == "Hello, world"

    path = client.get("/path").json()
    assert [node["text"] for node in path[-2:]] == ["Hi there", "Hello, world"]


def test_empty_message_is_rejected(client):
    assert client.post("/messages", json={"content": "  "}).status_code == 400


def test_create_branch_and_resolve_its_path(client):
    welcome_id = client.get("/path").json()[1]["id"]

    response = client.post("/branches", json={"branch_point_node_id": welcome_id, "direction": "left"})

    assert response.status_code == 200
    branch = response.json()
    assert branch["depth"] == 1
    assert branch["direction_hint"] == "left"
    client.post("/messages", json={"content": "On the branch", "branch_id": branch["id"]})
    path = client.get("/path", params={"branch_id": branch["id"]}).json()
    assert [node["id"] for node in path][:2] == [n["id"] for n in client.get("/path").json()]
    assert path[2]["parent_id"] == welcome_id
    layout = {entry["branch"]["id"]: entry for entry in client.get("/layout").json()}
    assert layout[branch["id"]]["layout"]["direction"] == "left"


def test_error_statuses(client):
    root_id = client.get("/path").json()[0]["id"]

    assert client.post("/branches", json={"branch_point_node_id": "missing"}).status_code == 404
    assert client.get("/path", params={"branch_id": "missing"}).status_code == 404
    assert client.delete(f"/nodes/{root_id}").status_code == 409


def test_recalculate_layout(client):
    response = client.post("/layout", params={"force": True})

    assert response.status_code == 200
    assert len(response.json()) == 1


def test_build_llm(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")

    assert isinstance(build_llm("anthropic", "claude-test"), AnthropicLLM)
    with pytest.raises(ValueError):
        build_llm("nope")
