"""
HTTP adapter: status mapping, payload shapes and SSE framing.
"""

import json

import pytest
from fastapi.testclient import TestClient

from companion.api.http_api import create_app


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as client:
        yield client


def create(client, owner="owner-1", **extra):
    body = {"ownerId": owner, "name": "Nova", "personality": {"extraversion": 0.9, "agreeableness": 0.8}}
    body.update(extra)
    return client.post("/v1/companions", json=body)


def sse_events(text):
    frames = [f for f in text.split("\n\n") if f.strip()]
    assert all(f.startswith("data: ") for f in frames)
    return [json.loads(f[len("data: "):]) for f in frames]


def test_create_and_fetch_companion(client):
    response = create(client, interests=["music"])

    assert response.status_code == 201
    body = response.json()
    assert body["communicationStyle"] == "enthusiastic, warm and supportive"
    assert body["interests"] == ["music"]
    assert body["interactionCount"] == 0

    fetched = client.get(f"/v1/companions/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["description"] == body["description"]


def test_invalid_traits_map_to_400(client):
    response = create(client, personality={"extraversion": 2})

    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_schema_violations_map_to_400(client):
    response = client.post("/v1/companions", json={"name": "Nova"})

    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_unknown_companion_maps_to_404(client):
    response = client.get("/v1/companions/missing")

    assert response.status_code == 404
    assert response.json() == {"code": "NotFound", "message": "Companion missing not found"}


def test_chat_returns_text_emotion_and_metadata(client, provider):
    companion_id = create(client).json()["id"]

    response = client.post(
        "/v1/chat",
        json={
            "companionId": companion_id,
            "message": "What's your favorite color?",
            "conversationHistory": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello!"}],
            "context": {"weather": "sunny"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == provider.reply
    assert body["emotion"]["sentiment"] == "positive"
    assert len(body["suggestions"]) == 3
    assert set(body["metadata"]) >= {"tokensUsed", "processingTimeMs"}
    assert len(provider.turn_prompts[-1].messages) == 3


def test_provider_failure_maps_to_502(client, provider):
    companion_id = create(client).json()["id"]
    provider.fail_generate = True

    response = client.post("/v1/chat", json={"companionId": companion_id, "message": "hello"})

    assert response.status_code == 502
    assert response.json()["code"] == "GenerationFailure"


def test_empty_message_maps_to_400(client):
    companion_id = create(client).json()["id"]

    response = client.post("/v1/chat", json={"companionId": companion_id, "message": "  "})

    assert response.status_code == 400


def test_stream_frames_end_with_complete(client, provider):
    companion_id = create(client).json()["id"]

    response = client.post("/v1/chat/stream", json={"companionId": companion_id, "message": "hello"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert [e["content"] for e in events if e["type"] == "chunk"] == provider.chunks
    assert events[-1]["type"] == "complete"
    assert events[-1]["metadata"]["tokensUsed"] == len(provider.chunks)


def test_stream_errors_are_delivered_in_band(client, provider):
    companion_id = create(client).json()["id"]
    provider.fail_after_chunks = 1

    response = client.post("/v1/chat/stream", json={"companionId": companion_id, "message": "hello"})

    events = sse_events(response.text)
    assert [e["type"] for e in events] == ["chunk", "error"]
    assert events[-1]["code"] == "GenerationFailure"


def test_deactivated_companion_cannot_chat(client):
    companion_id = create(client).json()["id"]

    assert client.post(f"/v1/companions/{companion_id}/deactivate").json()["active"] is False
    response = client.post("/v1/chat", json={"companionId": companion_id, "message": "hello"})

    assert response.status_code == 404


def test_cancel_without_turn_in_flight(client):
    companion_id = create(client).json()["id"]

    response = client.post(f"/v1/companions/{companion_id}/cancel")

    assert response.status_code == 200
    assert response.json() == {"cancelled": False}


def test_malformed_history_timestamp_maps_to_400(client):
    companion_id = create(client).json()["id"]

    response = client.post(
        "/v1/chat",
        json={
            "companionId": companion_id,
            "message": "hello",
            "conversationHistory": [{"role": "user", "content": "hi", "timestamp": "yesterday"}],
        },
    )

    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_create_accepts_traits_field(client):
    response = client.post(
        "/v1/companions",
        json={"ownerId": "owner-2", "name": "Nova", "traits": {"extraversion": 0.9, "agreeableness": 0.8}},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["communicationStyle"] == "enthusiastic, warm and supportive"
    assert body["traits"]["extraversion"] == 0.9


def test_chat_accepts_history_field(client, provider):
    companion_id = create(client).json()["id"]

    response = client.post(
        "/v1/chat",
        json={
            "companionId": companion_id,
            "message": "and now?",
            "history": [{"role": "user", "content": "hi"}, {"role": "companion", "content": "hello!"}],
        },
    )

    assert response.status_code == 200
    messages = provider.turn_prompts[-1].messages
    assert [m["content"] for m in messages] == ["hi", "hello!", "and now?"]


@pytest.mark.parametrize(
    "path_body",
    [
        ("/v1/companions", {"ownerId": "owner-3", "name": "Nova", "trait": {"extraversion": 0.9}}),
        ("/v1/chat", {"companionId": "c", "message": "hi", "histories": []}),
    ],
)
def test_unknown_request_keys_map_to_400(client, path_body):
    path, body = path_body

    response = client.post(path, json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"
