from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from tomato_router_client_exceptions import ConfigurationError


@dataclass(frozen=True)
class Target:
    """Connection descriptor of one router (immutable, validated on construction)."""
    host: str
    username: str
    password: str = field(repr=False)
    port: int = 80
    scheme: str = "http"
    collectors: tuple[str, ...] = ()
    auth_timeout: float = 10.0
    command_timeout: float = 15.0
    http_id: Optional[str] = field(default=None, repr=False)
    """Pre-configured session token, used when none can be extracted from the login page."""
    verify_tls: bool = True
    batch_commands: bool = False
    transport_retries: int = 0

    def __post_init__(self):
        if self.scheme not in ("http", "https"):
            raise ConfigurationError(f"Unsupported scheme: {self.scheme!r}")
        if not self.host:
            raise ConfigurationError("Router host is empty")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Port out of range: {self.port}")
        if not self.username:
            raise ConfigurationError("Router username is empty")
        if self.auth_timeout <= 0 or self.command_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.transport_retries < 0:
            raise ConfigurationError("transport_retries must not be negative")
        # normalise list input so the dataclass stays hashable
        object.__setattr__(self, "collectors", tuple(self.collectors))

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def key(self) -> str:
        return f"{self.base_url}@{self.username}"


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    VALID = "valid"
    EXPIRED = "expired"


@dataclass
class Session:
    token: Optional[str] = field(default=None, repr=False)
    state: SessionState = SessionState.UNAUTHENTICATED
    issued_at: Optional[float] = None

    @property
    def is_valid(self) -> bool:
        return self.state == SessionState.VALID

    def validate(self, token: str):
        self.token = token
        self.state = SessionState.VALID
        self.issued_at = time.monotonic()

    def expire(self):
        self.state = SessionState.EXPIRED


@dataclass(frozen=True)
class CommandSpec:
    name: str
    command: str
    parser: Callable[["RawOutput"], list["MetricSample"]] = field(repr=False, compare=False)
    description: str = ""
    allow_empty: bool = False
    """Empty output is a legitimate answer (e.g. no wireless interfaces)."""


@dataclass(frozen=True)
class RawOutput:
    spec: CommandSpec
    text: str
    executed_at: float = field(default_factory=time.time)


class MetricKind(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricSample:
    name: str
    kind: MetricKind
    value: float
    labels: tuple[tuple[str, str], ...] = ()
    documentation: str = field(default="", compare=False)

    def __post_init__(self):
        labels = tuple((str(k), str(v)) for k, v in self.labels)
        keys = [k for k, _ in labels]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Duplicate label keys in {self.name}: {keys}")
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "value", float(self.value))

    @property
    def series_key(self) -> tuple[str, tuple[tuple[str, str], ...]]:
        return self.name, self.labels

    @property
    def labels_dict(self) -> dict[str, str]:
        return dict(self.labels)


class ErrorKind(Enum):
    AUTH_REJECTED = "auth_rejected"
    MALFORMED_AUTH_RESPONSE = "malformed_auth_response"
    UNAUTHORIZED = "unauthorized"
    TRANSPORT = "transport"
    EMPTY_OUTPUT = "empty_output"
    PARSE = "parse"
    CANCELLED = "cancelled"
    INTERNAL = "internal"

    @classmethod
    def of(cls, exc: BaseException) -> "ErrorKind":
        kind = getattr(exc, "error_kind", "internal")
        try:
            return cls(kind)
        except ValueError:
            return cls.INTERNAL


@dataclass(frozen=True)
class CollectorOutcome:
    collector: str
    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    duration: float = 0.0
    samples: int = 0


@dataclass
class ScrapeResult:
    target: str
    up: bool = False
    samples: list[MetricSample] = field(default_factory=list)
    outcomes: list[CollectorOutcome] = field(default_factory=list)
    duration: float = 0.0

    @property
    def failed(self) -> list[CollectorOutcome]:
        return [o for o in self.outcomes if not o.success]

    def outcome(self, collector: str) -> Optional[CollectorOutcome]:
        for o in self.outcomes:
            if o.collector == collector:
                return o
        return None
