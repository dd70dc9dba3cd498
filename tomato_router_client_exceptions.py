from __future__ import annotations

from typing import Optional

SNIPPET_LIMIT = 200


def snippet(text: Optional[str], limit: int = SNIPPET_LIMIT) -> str:
    """Bounded, single-line excerpt of router output for error messages."""
    if not text:
        return ""
    flat = " ".join(text.split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


class TomatoRouterException(Exception):
    error_kind = "internal"


class ConfigurationError(TomatoRouterException):
    pass


class ScrapeCancelled(TomatoRouterException):
    error_kind = "cancelled"


class AuthError(TomatoRouterException):
    """Login failed; fatal for the whole scrape cycle."""
    error_kind = "auth"


class AuthRejected(AuthError):
    error_kind = "auth_rejected"

    def __init__(self, status_code: int):
        super().__init__(f"Router rejected credentials (HTTP {status_code})")
        self.status_code = status_code


class MalformedAuthResponse(AuthError):
    error_kind = "malformed_auth_response"

    def __init__(self, message: str, body: str = ""):
        self.snippet = snippet(body)
        super().__init__(f"{message}: {self.snippet!r}" if self.snippet else message)


class AuthTransportError(AuthError):
    error_kind = "transport"


class ExecError(TomatoRouterException):
    error_kind = "exec"

    def __init__(self, command: str, message: str):
        super().__init__(f"[{command}] {message}")
        self.command = command


class ExecUnauthorized(ExecError):
    error_kind = "unauthorized"


class ExecTransportError(ExecError):
    error_kind = "transport"


class ExecEmptyOutput(ExecError):
    error_kind = "empty_output"


class ParseError(TomatoRouterException):
    error_kind = "parse"

    def __init__(self, collector: str, message: str, text: str = ""):
        self.collector = collector
        self.snippet = snippet(text)
        super().__init__(f"[{collector}] {message}: {self.snippet!r}")
