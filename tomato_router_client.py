from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import requests

from tomato_router_client_exceptions import *
from tomato_router_models import *

logger = logging.getLogger(__name__)

TOMATO_CLIENT_DEFAULT_HEADERS = {
    "User-Agent": "tomato-router-exporter/1.0"
}

SHELL_ENDPOINT = "shell.cgi"
SHELL_WORKING_DIR = "/www"
BATCH_MARKER = "===TOMATO:{name}==="
BATCH_MARKER_RE = re.compile(r"^===TOMATO:(\S+?)===\s*$")
BATCH_END = "__end__"

TokenExtractor = Callable[[str], Optional[str]]
OutputStripper = Callable[[str], str]


class RegexTokenExtractor:
    """
    Finds the UI session token (``http_id``) in the login page with text patterns.

    Tomato embeds it in the nvram dump of every page (``'http_id': 'TID...'``)
    and in console links (``_http_id=TID...``).
    """

    DEFAULT_PATTERNS = (
        r"_http_id=(TID[0-9a-fA-F]+)",
        r"""['"]?http_id['"]?\s*[:=]\s*['"](TID[0-9a-fA-F]+)['"]""",
        r"""['"]?_?http_id['"]?\s*[:=]\s*['"]([\w-]{4,})['"]""",
    )

    def __init__(self, patterns: Iterable[str] = DEFAULT_PATTERNS):
        self.patterns = [re.compile(p) for p in patterns]

    def __call__(self, body: str) -> Optional[str]:
        for pattern in self.patterns:
            match = pattern.search(body)
            if match:
                return match.group(1)
        return None


class WrapperOutputStripper:
    """
    Isolates command stdout from console chrome.

    With ``nojs=1`` the firmware answers with the bare output; older builds wrap
    it in ``<pre>`` or in a ``cmdresult = '...';`` assignment. A body without
    any known wrapper is returned untouched.
    """

    _PRE = re.compile(r"<pre[^>]*>(.*?)</pre>", re.IGNORECASE | re.DOTALL)
    _CMDRESULT = re.compile(r"""cmdresult\s*=\s*'((?:[^'\\]|\\.)*)'\s*;?""", re.DOTALL)
    _JS_ESCAPE = re.compile(r"\\(x[0-9a-fA-F]{2}|u[0-9a-fA-F]{4}|.)", re.DOTALL)
    _JS_SIMPLE = {"n": "\n", "r": "\r", "t": "\t", "0": "\0"}

    @classmethod
    def _js_unescape(cls, s: str) -> str:
        def repl(m: re.Match) -> str:
            esc = m.group(1)
            if esc[0] in "xu" and len(esc) > 1:
                return chr(int(esc[1:], 16))
            return cls._JS_SIMPLE.get(esc, esc)

        return cls._JS_ESCAPE.sub(repl, s)

    def __call__(self, body: str) -> str:
        match = self._CMDRESULT.search(body)
        if match:
            return self._js_unescape(match.group(1))
        match = self._PRE.search(body)
        if match:
            return html.unescape(match.group(1))
        return body


class RouterTransport:
    """Authenticated HTTP exchange with the router's admin UI. One instance per scrape cycle."""

    def __init__(self, target: Target, session: Optional[requests.Session] = None):
        self.target = target
        self.http = session if session is not None else requests.Session()
        self.http.auth = (target.username, target.password)
        self.http.verify = target.verify_tls
        self.http.headers.update(TOMATO_CLIENT_DEFAULT_HEADERS)

    def url(self, path: str) -> str:
        return f"{self.target.base_url}/{path.lstrip('/')}"

    def get(self, path: str, timeout: float) -> requests.Response:
        return self.http.get(self.url(path), timeout=timeout)

    def post(self, path: str, data: dict, timeout: float) -> requests.Response:
        return self.http.post(self.url(path), data=data, timeout=timeout)

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class SessionManager:
    """
    Owns the authentication state of one target for one scrape cycle.

    UNAUTHENTICATED -> VALID -> EXPIRED -> VALID. A failed login is terminal:
    the error is kept and raised again without contacting the router.
    """

    def __init__(self, transport: RouterTransport,
                 token_extractor: Optional[TokenExtractor] = None):
        self.transport = transport
        self.token_extractor = token_extractor or RegexTokenExtractor()
        self.session = Session()
        self.login_attempts = 0
        self._failure: Optional[AuthError] = None

    @property
    def target(self) -> Target:
        return self.transport.target

    def ensure_session(self) -> Session:
        if self._failure is not None:
            raise self._failure
        if self.session.is_valid:
            return self.session
        try:
            token = self._login()
        except AuthError as e:
            self._failure = e
            raise
        self.session.validate(token)
        return self.session

    def expire(self, session: Session):
        if session is self.session and session.is_valid:
            logger.info(f"[{self.target.host}] Session rejected by router, marking expired")
            session.expire()

    def _login(self) -> str:
        self.login_attempts += 1
        host = self.target.host
        logger.debug(f"[{host}] Authenticating (attempt {self.login_attempts})")
        try:
            response = self.transport.get("/", timeout=self.target.auth_timeout)
        except requests.RequestException as e:
            raise AuthTransportError(f"Login request to {host} failed: {e.__class__.__name__}") from e

        if not 200 <= response.status_code < 300:
            raise AuthRejected(response.status_code)

        token = self.token_extractor(response.text)
        if token is None and self.target.http_id:
            logger.debug(f"[{host}] No http_id in login page, using configured one")
            token = self.target.http_id
        if token is None:
            raise MalformedAuthResponse("No session token found in login response", response.text)
        return token


@dataclass
class CommandExecutor:
    """Runs shell commands through the console endpoint and returns their stdout."""
    transport: RouterTransport
    output_stripper: OutputStripper = field(default_factory=WrapperOutputStripper)

    _UNAUTHORIZED_STATUS = (401, 403)
    _UNAUTHORIZED_LEAD = re.compile(r"^\s*(?:invalid\s+(?:session\s+)?id|unauthorized|bad\s+id)\b", re.IGNORECASE)
    _INVALID_ID = re.compile(r"\binvalid\s+(?:session\s+)?id\b", re.IGNORECASE)
    _TAG = re.compile(r"<[^>]*>")
    _SHORT_BODY = 512

    def _request(self, session: Session, name: str, command: str) -> str:
        if not session.is_valid:
            raise ExecUnauthorized(name, f"session is {session.state.value}")
        payload = {
            "action": "execute",
            "nojs": "1",
            "working_dir": SHELL_WORKING_DIR,
            "command": command,
            "_http_id": session.token,
        }
        try:
            response = self.transport.post(SHELL_ENDPOINT, data=payload,
                                           timeout=self.transport.target.command_timeout)
        except requests.Timeout as e:
            raise ExecTransportError(name, "timed out") from e
        except requests.RequestException as e:
            raise ExecTransportError(name, f"request failed: {e.__class__.__name__}") from e
        return self.__handle_response(name, response)

    def _rejects_session(self, status: int, body: str) -> bool:
        """A leading rejection message, or "invalid id" anywhere in an error page or a short answer."""
        if status >= 300 and status != 400:
            return False
        text = self._TAG.sub(" ", body)
        if self._UNAUTHORIZED_LEAD.match(text):
            return True
        return (status == 400 or len(body) <= self._SHORT_BODY) and bool(self._INVALID_ID.search(text))

    def __handle_response(self, name: str, response: requests.Response) -> str:
        status = response.status_code
        if status in self._UNAUTHORIZED_STATUS:
            raise ExecUnauthorized(name, f"HTTP {status}")
        text = response.text
        if self._rejects_session(status, text):
            raise ExecUnauthorized(name, "session token rejected")
        if not 200 <= status < 300:
            raise ExecTransportError(name, f"HTTP {status}")
        return self.output_stripper(text)

    def run(self, session: Session, spec: CommandSpec) -> RawOutput:
        logger.debug(f"Running [{spec.name}]: {spec.command}")
        text = self._request(session, spec.name, spec.command)
        if not text.strip() and not spec.allow_empty:
            raise ExecEmptyOutput(spec.name, "command produced no output")
        return RawOutput(spec=spec, text=text)

    @staticmethod
    def batch_script(specs: Iterable[CommandSpec]) -> str:
        parts = []
        for spec in specs:
            parts.append(f"echo '{BATCH_MARKER.format(name=spec.name)}'")
            parts.append(spec.command)
        parts.append(f"echo '{BATCH_MARKER.format(name=BATCH_END)}'")
        return "\n".join(parts)

    @staticmethod
    def split_batch(text: str) -> dict[str, str]:
        sections: dict[str, str] = {}
        current, lines = None, []
        for line in text.splitlines():
            match = BATCH_MARKER_RE.match(line)
            if match:
                if current is not None:
                    sections[current] = "\n".join(lines)
                current, lines = match.group(1), []
            elif current is not None:
                lines.append(line)
        # output after the last marker is only trusted when the end marker closed it
        return sections

    def run_batch(self, session: Session, specs: list[CommandSpec]) -> dict[str, RawOutput]:
        """
        Runs several commands in one request, delimited by marker lines.

        Only sections closed by a following marker are returned; a missing or
        empty (and not allow_empty) section is left out for the caller to rerun alone.
        """
        text = self._request(session, "batch", self.batch_script(specs))
        sections = self.split_batch(text)
        outputs = {}
        for spec in specs:
            section = sections.get(spec.name)
            if section is None:
                continue
            if not section.strip() and not spec.allow_empty:
                continue
            outputs[spec.name] = RawOutput(spec=spec, text=section)
        return outputs


@dataclass
class RouterClient:
    """Per-cycle bundle of transport, session manager and command executor."""
    target: Target
    transport: RouterTransport
    sessions: SessionManager
    executor: CommandExecutor

    def close(self):
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class RouterClientFactory:

    def __init__(self, token_extractor: Optional[TokenExtractor] = None,
                 output_stripper: Optional[OutputStripper] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session):
        self.token_extractor = token_extractor
        self.output_stripper = output_stripper
        self.session_factory = session_factory

    def connect(self, target: Target) -> RouterClient:
        transport = RouterTransport(target, self.session_factory())
        executor = CommandExecutor(transport)
        if self.output_stripper is not None:
            executor.output_stripper = self.output_stripper
        return RouterClient(
            target=target,
            transport=transport,
            sessions=SessionManager(transport, self.token_extractor),
            executor=executor,
        )
