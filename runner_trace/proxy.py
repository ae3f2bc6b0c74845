"""Inference gateway that forwards requests to a runner and records them."""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route

from .capture import ChunkSink, ResponseCapturingWriter
from .models import BackendConfiguration, RequestMeta
from .recorder import Recorder
from .runnermap import BackendMode, RunnerKey

logger = logging.getLogger(__name__)

# Default model runner endpoint
DEFAULT_TARGET_URL = "http://127.0.0.1:12434"

INFERENCE_PATHS = {
    "/v1/chat/completions": BackendMode.COMPLETION,
    "/v1/completions": BackendMode.COMPLETION,
    "/v1/embeddings": BackendMode.EMBEDDING,
}

_HOP_BY_HOP = frozenset({
    "host", "connection", "keep-alive", "transfer-encoding", "content-length",
})


class InferenceGateway:
    """Proxy that forwards inference calls upstream and records each exchange."""

    def __init__(
        self,
        target_url: str,
        recorder: Recorder,
        client: httpx.AsyncClient | None = None,
    ):
        self.target_url = target_url.rstrip("/")
        self.recorder = recorder
        self.backend = recorder.backend
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(300.0))

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def configure(self, request: Request) -> Response:
        """Store the backend configuration of a model's completion runner."""
        try:
            data = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return PlainTextResponse("Invalid JSON body", status_code=400)

        model = data.get("model") if isinstance(data, dict) else None
        if not isinstance(model, str) or not model:
            return PlainTextResponse("A 'model' field is required", status_code=400)

        context_size = data.get("context-size")
        if context_size is not None and (not isinstance(context_size, int) or isinstance(context_size, bool)):
            return PlainTextResponse("'context-size' must be an integer", status_code=400)
        runtime_flags = data.get("runtime-flags") or []
        if not isinstance(runtime_flags, list) or not all(isinstance(f, str) for f in runtime_flags):
            return PlainTextResponse("'runtime-flags' must be a list of strings", status_code=400)

        config = BackendConfiguration(context_size=context_size, runtime_flags=runtime_flags)
        self.recorder.set_config(RunnerKey(self.backend, model, BackendMode.COMPLETION), config)
        return Response(status_code=202)

    async def proxy_request(self, request: Request) -> Response:
        """Forward an inference request to the runner."""
        path = request.url.path
        if path.startswith("/engines/"):
            path = path[len("/engines"):]
        mode = INFERENCE_PATHS[path]

        body = await request.body()
        try:
            request_data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            request_data = None

        model = request_data.get("model") if isinstance(request_data, dict) else None
        if not isinstance(model, str) or not model:
            return PlainTextResponse("A 'model' field is required in the request body", status_code=400)

        runner = RunnerKey(self.backend, model, mode)
        record_id = self.recorder.record_request(runner, RequestMeta.from_request(request), body)
        logger.info(f"Recording {mode.value} request {record_id}")

        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in _HOP_BY_HOP
        }
        upstream_url = f"{self.target_url}{path}"

        if request_data.get("stream", False):
            return await self._handle_streaming_request(upstream_url, headers, body, runner, record_id)
        return await self._handle_normal_request(upstream_url, headers, body, runner, record_id)

    def _proxy_error(self, writer: ResponseCapturingWriter, error: httpx.RequestError) -> None:
        writer.write_header(502)
        writer.write(json.dumps({"error": {"message": str(error), "type": "proxy_error"}}).encode("utf-8"))

    async def _handle_normal_request(
        self,
        url: str,
        headers: dict,
        body: bytes,
        runner: RunnerKey,
        record_id: str,
    ) -> Response:
        """Handle non-streaming request."""
        sink = ChunkSink()
        writer = self.recorder.new_capturing_writer(sink)
        media_type = "application/json"

        try:
            response = await self.client.post(url, headers=headers, content=body)
            writer.write_header(response.status_code)
            writer.write(response.content)
            media_type = response.headers.get("content-type", media_type)
        except httpx.RequestError as e:
            logger.warning(f"Upstream request for {runner.model} failed: {e}")
            self._proxy_error(writer, e)

        self.recorder.record_response(record_id, runner, writer)
        return Response(
            content=b"".join(sink.drain()),
            status_code=sink.status_code,
            media_type=media_type,
        )

    async def _handle_streaming_request(
        self,
        url: str,
        headers: dict,
        body: bytes,
        runner: RunnerKey,
        record_id: str,
    ) -> Response:
        """Handle streaming request."""
        sink = ChunkSink()
        writer = self.recorder.new_capturing_writer(sink)

        upstream_request = self.client.build_request("POST", url, headers=headers, content=body)
        try:
            response = await self.client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            logger.warning(f"Upstream stream for {runner.model} failed: {e}")
            self._proxy_error(writer, e)
            self.recorder.record_response(record_id, runner, writer)
            return Response(
                content=b"".join(sink.drain()),
                status_code=sink.status_code,
                media_type="application/json",
            )

        writer.write_header(response.status_code)

        async def generate() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    writer.write(chunk)
                    writer.flush()
                    for piece in sink.drain():
                        yield piece
            except httpx.RequestError as e:
                logger.warning(f"Upstream stream for {runner.model} broke off: {e}")
            finally:
                await response.aclose()
                self.recorder.record_response(record_id, runner, writer)

        return StreamingResponse(
            generate(),
            status_code=sink.status_code,
            media_type=response.headers.get("content-type", "text/event-stream"),
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )


def create_app(
    target_url: str,
    recorder: Recorder,
    client: httpx.AsyncClient | None = None,
) -> Starlette:
    """Create the Starlette application."""
    gateway = InferenceGateway(target_url, recorder, client)

    async def health(request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        await gateway.close()

    inference_routes = []
    for path in INFERENCE_PATHS:
        inference_routes.append(Route(path, gateway.proxy_request, methods=["POST"]))
        inference_routes.append(Route(f"/engines{path}", gateway.proxy_request, methods=["POST"]))

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/records", recorder.records_handler, methods=["GET"]),
            Route("/records/runners", recorder.runners_handler, methods=["GET"]),
            Route("/engines/_configure", gateway.configure, methods=["POST"]),
            *inference_routes,
        ],
        lifespan=lifespan,
    )

    return app
