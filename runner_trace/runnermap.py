"""Keyed storage for per-runner state."""

import enum
from collections.abc import Callable
from typing import Generic, NamedTuple, TypeVar

T = TypeVar("T")

DEFAULT_TAG = "latest"


class BackendMode(str, enum.Enum):
    """Operation mode of an inference runner."""

    COMPLETION = "completion"
    EMBEDDING = "embedding"
    RERANKING = "reranking"


class RunnerKey(NamedTuple):
    """Identity of a runner: backend, model and mode."""

    backend: str
    model: str
    mode: BackendMode


def default_normalize(model: str) -> str:
    """Fold spellings of a model reference onto one name.

    ``AI/SmolLM2`` and ``ai/smollm2:latest`` both become ``ai/smollm2:latest``.
    """
    model = model.strip().lower()
    if not model or "@" in model or model.startswith("sha256:"):
        return model
    last_segment = model.rsplit("/", 1)[-1]
    if ":" not in last_segment:
        model = f"{model}:{DEFAULT_TAG}"
    return model


class RunnerMap(Generic[T]):
    """Mapping from RunnerKey to T with model-name normalization.

    Every operation normalizes the model component of the key first. The
    last raw model string passed to ``set`` is kept per normalized key so it
    can be shown back to the user.

    Not thread-safe: callers hold their own lock.
    """

    def __init__(self, normalize: Callable[[str], str] = default_normalize):
        self._normalize = normalize
        self._values: dict[RunnerKey, T] = {}
        self._initial_model: dict[RunnerKey, str] = {}

    def _normalize_key(self, key: RunnerKey) -> RunnerKey:
        return key._replace(model=self._normalize(key.model))

    def set(self, key: RunnerKey, value: T) -> None:
        norm_key = self._normalize_key(key)
        self._initial_model[norm_key] = key.model
        self._values[norm_key] = value

    def get(self, key: RunnerKey) -> T | None:
        return self._values.get(self._normalize_key(key))

    def get_initial_model(self, key: RunnerKey) -> str:
        """Return the raw model name last stored under *key*, or ``""``."""
        return self._initial_model.get(self._normalize_key(key), "")

    def delete(self, key: RunnerKey) -> None:
        norm_key = self._normalize_key(key)
        self._values.pop(norm_key, None)
        self._initial_model.pop(norm_key, None)

    def items(self) -> dict[RunnerKey, T]:
        """Return a copy of the stored entries, keyed by normalized key."""
        return dict(self._values)

    def __contains__(self, key: RunnerKey) -> bool:
        return self._normalize_key(key) in self._values

    def __len__(self) -> int:
        return len(self._values)
