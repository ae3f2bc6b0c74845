"""Data models for recorded runner traffic."""

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from starlette.requests import Request

MAX_RECORDS = 10


@dataclass
class BackendConfiguration:
    """Runtime configuration a runner was started with."""

    context_size: int | None = None
    runtime_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.context_size is not None:
            data["context-size"] = self.context_size
        if self.runtime_flags:
            data["runtime-flags"] = list(self.runtime_flags)
        return data


@dataclass
class RequestMeta:
    """Metadata of an inbound inference request."""

    method: str
    path: str
    user_agent: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        return cls(
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("user-agent", ""),
        )


@dataclass
class RequestResponsePair:
    """A single request sent to a runner and the response it produced."""

    id: str
    model: str
    method: str
    url: str
    request: str
    response: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status_code: int = 0
    user_agent: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert the record to a dictionary for JSON serialization."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        if not self.user_agent:
            del data["user_agent"]
        return data


@dataclass
class ModelData:
    """Configuration and recent traffic of one runner."""

    config: Any = field(default_factory=BackendConfiguration)
    records: list[RequestResponsePair] = field(default_factory=list)

    def snapshot(self) -> "ModelData":
        """Return a copy that shares no mutable state with this one."""
        return ModelData(
            config=copy.deepcopy(self.config),
            records=[copy.copy(record) for record in self.records],
        )


def config_to_dict(config: Any) -> Any:
    """Convert a backend configuration to a JSON-serializable value."""
    if hasattr(config, "to_dict"):
        return config.to_dict()
    return config
