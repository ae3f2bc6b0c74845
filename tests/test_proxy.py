"""Tests for runner_trace.proxy and the records endpoints."""

import json

import httpx
import pytest
from starlette.testclient import TestClient

from runner_trace.models import BackendConfiguration
from runner_trace.proxy import create_app
from runner_trace.recorder import DEFAULT_BACKEND, Recorder
from runner_trace.runnermap import BackendMode, RunnerKey

TARGET = "http://runner.test"

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "model": "ai/smollm2",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}],
}

STREAM = (
    'data: {"id":"chatcmpl-2","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":"Hello"},"finish_reason":null}]}\n\n'
    'data: {"id":"chatcmpl-2","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" world"},"finish_reason":null}]}\n\n'
    'data: {"id":"chatcmpl-2","object":"chat.completion.chunk","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}\n\n'
    "data: [DONE]\n\n"
)


class FakeRunner:
    """Upstream runner served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail = False
        self.status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        if request.url.path == "/v1/embeddings":
            return httpx.Response(200, json={"object": "list", "data": [{"embedding": [0.1]}]})
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "model not found"}})
        if body.get("stream"):
            return httpx.Response(
                200, content=STREAM.encode(), headers={"content-type": "text/event-stream"}
            )
        return httpx.Response(200, json=COMPLETION)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def client(runner, recorder):
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(runner))
    app = create_app(TARGET, recorder, client=upstream)
    with TestClient(app) as test_client:
        yield test_client


def _chat(client: TestClient, stream: bool = False, model: str = "ai/smollm2", path="/engines/v1/chat/completions"):
    payload = {"model": model, "messages": [{"role": "user", "content": "Hi"}], "stream": stream}
    return client.post(path, json=payload, headers={"user-agent": "pytest-agent"})


class TestRecordsEndpoint:
    def test_missing_model_param(self, client):
        resp = client.get("/records")
        assert resp.status_code == 400
        assert resp.text == "A 'model' query parameter is required"

    def test_empty_model_param(self, client):
        resp = client.get("/records", params={"model": ""})
        assert resp.status_code == 400

    def test_unknown_model(self, client):
        resp = client.get("/records", params={"model": "ai/unknown"})
        assert resp.status_code == 404
        assert resp.text == "No records found for model 'ai/unknown'"

    def test_known_model(self, client, recorder):
        recorder.set_config(
            RunnerKey(DEFAULT_BACKEND, "ai/smollm2", BackendMode.COMPLETION),
            BackendConfiguration(context_size=2048),
        )
        _chat(client)
        _chat(client)

        resp = client.get("/records", params={"model": "ai/smollm2"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/json")
        data = resp.json()
        assert data["model"] == "ai/smollm2"
        assert data["count"] == len(data["records"]) == 2
        assert data["config"] == {"context-size": 2048}

        record = data["records"][0]
        assert set(record) == {
            "id", "model", "method", "url", "request", "response",
            "timestamp", "status_code", "user_agent",
        }
        assert record["user_agent"] == "pytest-agent"
        assert record["status_code"] == 200

    def test_user_agent_omitted_when_empty(self, client):
        client.post(
            "/v1/chat/completions",
            json={"model": "ai/smollm2", "messages": []},
            headers={"user-agent": ""},
        )
        record = client.get("/records", params={"model": "ai/smollm2"}).json()["records"][0]
        assert "user_agent" not in record

    def test_unserializable_config(self, client, recorder):
        recorder.set_config(RunnerKey(DEFAULT_BACKEND, "ai/odd", BackendMode.COMPLETION), object())
        resp = client.get("/records", params={"model": "ai/odd"})
        assert resp.status_code == 500
        assert resp.text.startswith("Failed to encode records for model 'ai/odd'")

    def test_runners_listing(self, client):
        _chat(client, model="AI/SmolLM2")
        resp = client.get("/records/runners")
        assert resp.status_code == 200
        assert resp.json() == {"runners": [
            {"backend": DEFAULT_BACKEND, "model": "AI/SmolLM2", "mode": "completion", "count": 1},
        ]}


class TestProxyNonStreaming:
    def test_forwards_and_records(self, client, runner, recorder):
        resp = _chat(client)
        assert resp.status_code == 200
        assert resp.json() == COMPLETION

        assert len(runner.requests) == 1
        assert str(runner.requests[0].url) == f"{TARGET}/v1/chat/completions"

        record = recorder.get_model_data("ai/smollm2").records[0]
        assert record.method == "POST"
        assert record.url == "/engines/v1/chat/completions"
        assert json.loads(record.request)["model"] == "ai/smollm2"
        assert json.loads(record.response) == COMPLETION
        assert record.status_code == 200

    def test_path_without_engines_prefix(self, client, runner):
        resp = _chat(client, path="/v1/chat/completions")
        assert resp.status_code == 200
        assert runner.requests[0].url.path == "/v1/chat/completions"

    def test_embeddings_recorded_under_embedding_mode(self, client, recorder):
        resp = client.post("/engines/v1/embeddings", json={"model": "ai/e5", "input": "hi"})
        assert resp.status_code == 200
        assert recorder.get_model_data("ai/e5") is None
        runners = recorder.list_runners()
        assert runners[0]["mode"] == "embedding"

    def test_missing_model_field(self, client, runner):
        resp = client.post("/engines/v1/chat/completions", json={"messages": []})
        assert resp.status_code == 400
        assert runner.requests == []

    def test_invalid_json(self, client):
        resp = client.post("/engines/v1/chat/completions", content=b"not json")
        assert resp.status_code == 400

    def test_upstream_unreachable(self, client, runner, recorder):
        runner.fail = True
        resp = _chat(client)
        assert resp.status_code == 502
        assert resp.json()["error"]["type"] == "proxy_error"

        record = recorder.get_model_data("ai/smollm2").records[0]
        assert record.status_code == 502
        assert "connection refused" in record.response


class TestProxyStreaming:
    def test_relays_stream_and_records_reconstruction(self, client, recorder):
        resp = _chat(client, stream=True)
        assert resp.status_code == 200
        assert resp.text == STREAM

        record = recorder.get_model_data("ai/smollm2").records[0]
        response = json.loads(record.response)
        assert response["id"] == "chatcmpl-2"
        assert response["object"] == "chat.completion"
        choice = response["choices"][0]
        assert choice["message"] == {"role": "assistant", "content": "Hello world"}
        assert "delta" not in choice
        assert choice["finish_reason"] == "stop"

    def test_stream_upstream_unreachable(self, client, runner, recorder):
        runner.fail = True
        resp = _chat(client, stream=True)
        assert resp.status_code == 502
        assert resp.headers["content-type"].startswith("application/json")
        assert resp.json()["error"]["type"] == "proxy_error"

        record = recorder.get_model_data("ai/smollm2").records[0]
        assert record.status_code == 502
        assert json.loads(record.response) == resp.json()

    def test_stream_upstream_error_status_passed_through(self, client, runner, recorder):
        runner.status = 404
        resp = _chat(client, stream=True)
        record = recorder.get_model_data("ai/smollm2").records[0]

        assert resp.status_code == 404
        assert record.status_code == resp.status_code
        assert resp.headers["content-type"].startswith("application/json")
        assert resp.json() == {"error": {"message": "model not found"}}
        assert json.loads(record.response) == resp.json()

    def test_stream_content_type_from_upstream(self, client):
        resp = _chat(client, stream=True)
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"


class TestConfigure:
    def test_sets_config(self, client, recorder):
        resp = client.post(
            "/engines/_configure",
            json={"model": "ai/smollm2", "context-size": 8192, "runtime-flags": ["--threads", "2"]},
        )
        assert resp.status_code == 202
        data = recorder.get_model_data("ai/smollm2")
        assert data.config == BackendConfiguration(context_size=8192, runtime_flags=["--threads", "2"])
        assert data.records == []

    def test_config_in_records_response(self, client):
        client.post("/engines/_configure", json={"model": "ai/smollm2", "context-size": 512})
        data = client.get("/records", params={"model": "ai/smollm2"}).json()
        assert data["count"] == 0
        assert data["config"] == {"context-size": 512}

    @pytest.mark.parametrize("payload", [
        {},
        {"model": ""},
        {"model": "m", "context-size": "big"},
        {"model": "m", "runtime-flags": "--threads"},
        [1, 2],
    ])
    def test_rejects_invalid(self, client, recorder, payload):
        resp = client.post("/engines/_configure", json=payload)
        assert resp.status_code == 400
        assert recorder.list_runners() == []

    def test_rejects_invalid_json(self, client):
        resp = client.post("/engines/_configure", content=b"{")
        assert resp.status_code == 400


def test_health(client):
    resp = client.get("/health")
    assert resp.json() == {"status": "ok"}
