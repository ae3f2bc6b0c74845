"""Bounded per-runner history of request/response pairs."""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from .capture import ResponseCapturingWriter, ResponseSink
from .models import (
    MAX_RECORDS,
    ModelData,
    RequestMeta,
    RequestResponsePair,
    config_to_dict,
)
from .runnermap import BackendMode, RunnerKey, RunnerMap, default_normalize
from .sse import is_streaming_body, reconstruct_stream

# Backend whose completion runner is addressed by model name alone
DEFAULT_BACKEND = "llama.cpp"


class ReadWriteLock:
    """Lock that admits many readers or a single writer.

    Readers are preferred: a steady stream of readers can starve a waiting
    writer. Hold times here are a dict lookup and a short list copy.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class Recorder:
    """Records what was sent to and received from each inference runner.

    Every runner keeps its configuration and its last ``MAX_RECORDS``
    request/response pairs. All state sits behind a single read/write lock.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        normalize: Callable[[str], str] = default_normalize,
        backend: str = DEFAULT_BACKEND,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.backend = backend
        self._records: RunnerMap[ModelData] = RunnerMap(normalize)
        self._lock = ReadWriteLock()

    def _model_data(self, runner: RunnerKey) -> ModelData:
        """Return the entry for *runner*, creating it if needed. Caller holds the write lock."""
        model_data = self._records.get(runner)
        if model_data is None:
            model_data = ModelData()
            self._records.set(runner, model_data)
        return model_data

    def _query_key(self, model: str) -> RunnerKey:
        return RunnerKey(self.backend, model, BackendMode.COMPLETION)

    def set_config(self, runner: RunnerKey, config: Any) -> None:
        if config is None:
            self.log.warning(f"set_config called with no config for model {runner.model}")
            return

        with self._lock.write():
            self._model_data(runner).config = config

    def record_request(self, runner: RunnerKey, meta: RequestMeta, body: bytes) -> str:
        """Store a new pending record and return its id."""
        record_id = f"{runner.model}_{time.time_ns()}"
        record = RequestResponsePair(
            id=record_id,
            model=runner.model,
            method=meta.method,
            url=meta.path,
            request=body.decode("utf-8", errors="replace"),
            user_agent=meta.user_agent,
        )

        with self._lock.write():
            model_data = self._model_data(runner)
            model_data.records.append(record)
            if len(model_data.records) > MAX_RECORDS:
                del model_data.records[0]

        return record_id

    def new_capturing_writer(self, sink: ResponseSink) -> ResponseCapturingWriter:
        return ResponseCapturingWriter(sink)

    def record_response(self, record_id: str, runner: RunnerKey, writer: ResponseCapturingWriter) -> None:
        """Attach the response held by *writer* to the record *record_id*.

        Responses that no longer have a matching record are logged and dropped.
        """
        body = writer.text
        status_code = writer.status_code

        if is_streaming_body(body):
            response = reconstruct_stream(body)
        else:
            response = body

        with self._lock.write():
            model_data = self._records.get(runner)
            if model_data is not None:
                for record in model_data.records:
                    if record.id == record_id:
                        record.response = response
                        record.status_code = status_code
                        return

        if model_data is None:
            self.log.error(f"Model {runner.model} not found in records - {status_code}\n{response}")
            return
        self.log.error(
            f"Matching request (id={record_id}) not found for model {runner.model} - {status_code}\n{response}"
        )

    def get_model_data(self, model: str) -> ModelData | None:
        """Return a copy of the completion runner data for *model*, if any."""
        with self._lock.read():
            model_data = self._records.get(self._query_key(model))
            if model_data is None:
                return None
            return model_data.snapshot()

    def remove_model(self, model: str) -> None:
        runner = self._query_key(model)
        with self._lock.write():
            if runner in self._records:
                self._records.delete(runner)
                removed = True
            else:
                removed = False

        if removed:
            self.log.info(f"Removed records for model: {model}")
        else:
            self.log.warning(f"No records found for model: {model}")

    def list_runners(self) -> list[dict[str, Any]]:
        """Summarize every runner with recorded state."""
        with self._lock.read():
            return [
                {
                    "backend": key.backend,
                    "model": self._records.get_initial_model(key) or key.model,
                    "mode": key.mode.value,
                    "count": len(model_data.records),
                }
                for key, model_data in self._records.items().items()
            ]

    async def records_handler(self, request: Request) -> Response:
        """GET endpoint returning the recorded history of one model."""
        model = request.query_params.get("model", "")
        if not model:
            return PlainTextResponse("A 'model' query parameter is required", status_code=400)

        model_data = self.get_model_data(model)
        if model_data is None:
            return PlainTextResponse(f"No records found for model '{model}'", status_code=404)

        try:
            content = json.dumps({
                "model": model,
                "records": [record.to_dict() for record in model_data.records],
                "count": len(model_data.records),
                "config": config_to_dict(model_data.config),
            })
        except (TypeError, ValueError) as e:
            return PlainTextResponse(
                f"Failed to encode records for model '{model}': {e}", status_code=500
            )

        return Response(content, media_type="application/json")

    async def runners_handler(self, request: Request) -> Response:
        """GET endpoint listing every recorded runner."""
        return JSONResponse({"runners": self.list_runners()})
