"""Tests for authentication, command execution and batching against a fake router UI."""

import pytest
import requests

from conftest import HTTP_ID, LOGIN_PAGE, FakeResponse, FakeRouter
from tomato_router_client import (SHELL_ENDPOINT, CommandExecutor, RegexTokenExtractor, RouterClientFactory,
                                  RouterTransport, SessionManager, WrapperOutputStripper)
from tomato_router_client_exceptions import (AuthError, AuthRejected, AuthTransportError, ExecEmptyOutput,
                                             ExecTransportError, ExecUnauthorized, MalformedAuthResponse,
                                             ScrapeCancelled)
from tomato_router_models import ErrorKind, Session, SessionState, Target
from tomato_router_parsers import COLLECTORS


class TestRegexTokenExtractor:

    def test_nvram_dump(self):
        assert RegexTokenExtractor()(LOGIN_PAGE) == HTTP_ID

    def test_console_link(self):
        body = '<a href="shell.cgi?action=execute&_http_id=TIDdeadbeef">Run</a>'

        assert RegexTokenExtractor()(body) == "TIDdeadbeef"

    def test_no_token(self):
        assert RegexTokenExtractor()("<html><body>Welcome</body></html>") is None


class TestWrapperOutputStripper:

    def test_bare_output_is_untouched(self):
        assert WrapperOutputStripper()("MemTotal: 1 kB\n") == "MemTotal: 1 kB\n"

    def test_cmdresult_assignment(self):
        body = "\ncmdresult = 'line one\\nit\\'s line two\\n';\n"

        assert WrapperOutputStripper()(body) == "line one\nit's line two\n"

    def test_pre_block(self):
        body = "<html><pre>a &lt;b&gt;\nc</pre></html>"

        assert WrapperOutputStripper()(body) == "a <b>\nc"


class TestSessionManager:

    def test_login_once_per_cycle(self, transport, router):
        sessions = SessionManager(transport)

        first = sessions.ensure_session()
        second = sessions.ensure_session()

        assert first is second
        assert first.state == SessionState.VALID
        assert first.token == HTTP_ID
        assert router.logins == 1
        assert router.requests[0]["url"] == "http://192.168.1.1:80/"
        assert router.requests[0]["timeout"] == 10.0

    def test_expired_session_logs_in_again(self, transport, router):
        sessions = SessionManager(transport)
        session = sessions.ensure_session()

        sessions.expire(session)
        assert session.state == SessionState.EXPIRED

        assert sessions.ensure_session().is_valid
        assert router.logins == 2

    def test_rejected_credentials_are_terminal(self, target):
        router = FakeRouter(login=FakeResponse(401, "Unauthorized"))
        sessions = SessionManager(RouterTransport(target, router.http_session()))

        with pytest.raises(AuthRejected) as exc:
            sessions.ensure_session()
        assert exc.value.status_code == 401

        with pytest.raises(AuthRejected):
            sessions.ensure_session()
        assert router.logins == 1
        assert sessions.session.state == SessionState.UNAUTHENTICATED

    def test_login_page_without_token(self, target):
        router = FakeRouter(login=FakeResponse(200, "<html>" + "x" * 500 + "</html>"))
        sessions = SessionManager(RouterTransport(target, router.http_session()))

        with pytest.raises(MalformedAuthResponse) as exc:
            sessions.ensure_session()
        assert len(exc.value.snippet) <= 203

    def test_configured_token_is_the_fallback(self):
        target = Target(host="10.0.0.1", username="root", password="pw", http_id="TIDfeed")
        router = FakeRouter(login=FakeResponse(200, "<html>no token here</html>"))
        sessions = SessionManager(RouterTransport(target, router.http_session()))

        assert sessions.ensure_session().token == "TIDfeed"

    def test_network_failure(self, target):
        router = FakeRouter(login=FakeResponse(200, LOGIN_PAGE))
        http = router.http_session()
        http.get.side_effect = requests.ConnectionError("refused")
        sessions = SessionManager(RouterTransport(target, http))

        with pytest.raises(AuthTransportError):
            sessions.ensure_session()


def valid_session(token=HTTP_ID) -> Session:
    session = Session()
    session.validate(token)
    return session


class TestCommandExecutor:

    def test_request_shape(self, transport, router):
        raw = CommandExecutor(transport).run(valid_session(), COLLECTORS["loadavg"])

        assert raw.text == "0.12 0.34 0.56 1/45 1234\n"
        assert raw.spec is COLLECTORS["loadavg"]
        request = router.requests[-1]
        assert request["url"] == f"http://192.168.1.1:80/{SHELL_ENDPOINT}"
        assert request["timeout"] == 15.0
        assert request["data"] == {
            "action": "execute",
            "nojs": "1",
            "working_dir": "/www",
            "command": "cat /proc/loadavg",
            "_http_id": HTTP_ID,
        }

    def test_invalid_session_is_not_sent(self, transport, router):
        with pytest.raises(ExecUnauthorized):
            CommandExecutor(transport).run(Session(), COLLECTORS["cpu"])

        assert router.requests == []

    @pytest.mark.parametrize("answer, error", [
        (FakeResponse(401, ""), ExecUnauthorized),
        (FakeResponse(403, "Forbidden"), ExecUnauthorized),
        (FakeResponse(200, "Invalid Session ID"), ExecUnauthorized),
        (FakeResponse(400, "<html><body>Bad ID</body></html>"), ExecUnauthorized),
        (FakeResponse(400, "<html><head><title>Error</title></head>"
                           "<body><h2>400 Bad Request</h2> Invalid ID</body></html>"), ExecUnauthorized),
        (FakeResponse(500, "Internal Server Error"), ExecTransportError),
        (requests.Timeout("slow"), ExecTransportError),
        (requests.ConnectionError("reset"), ExecTransportError),
    ])
    def test_error_mapping(self, target, answer, error):
        router = FakeRouter(outputs={"cpu": answer})
        executor = CommandExecutor(RouterTransport(target, router.http_session()))

        with pytest.raises(error) as exc:
            executor.run(valid_session(), COLLECTORS["cpu"])
        assert exc.value.command == "cpu"

    def test_long_output_mentioning_invalid_id_is_kept(self, target):
        log = "\n".join(f"Jan  1 00:00:{i:02d} httpd: login from 10.0.0.{i}" for i in range(30))
        log += "\nJan  1 00:01:00 httpd: invalid id from 10.0.0.99\n"
        router = FakeRouter(outputs={"cpu": log})
        executor = CommandExecutor(RouterTransport(target, router.http_session()))

        assert executor.run(valid_session(), COLLECTORS["cpu"]).text == log

    def test_empty_output(self, target):
        router = FakeRouter(outputs={"meminfo": " \n\n", "wlclients": ""})
        executor = CommandExecutor(RouterTransport(target, router.http_session()))

        with pytest.raises(ExecEmptyOutput):
            executor.run(valid_session(), COLLECTORS["meminfo"])
        assert executor.run(valid_session(), COLLECTORS["wlclients"]).text == ""


class TestBatching:

    def test_script_has_markers(self):
        script = CommandExecutor.batch_script([COLLECTORS["loadavg"], COLLECTORS["time"]])

        assert script.splitlines() == [
            "echo '===TOMATO:loadavg==='",
            "cat /proc/loadavg",
            "echo '===TOMATO:time==='",
            "date +%s && cat /proc/uptime",
            "echo '===TOMATO:__end__==='",
        ]

    def test_unterminated_section_is_dropped(self):
        text = "noise\n===TOMATO:loadavg===\n0.1 0.2 0.3\n===TOMATO:time===\n1596584154\n"

        assert CommandExecutor.split_batch(text) == {"loadavg": "0.1 0.2 0.3"}

    def test_run_batch(self, target):
        output = ("===TOMATO:loadavg===\n0.1 0.2 0.3 1/2 3\n"
                  "===TOMATO:meminfo===\n"
                  "===TOMATO:wlclients===\n"
                  "===TOMATO:__end__===\n")
        router = FakeRouter(outputs={"batch": output})
        executor = CommandExecutor(RouterTransport(target, router.http_session()))
        specs = [COLLECTORS["loadavg"], COLLECTORS["meminfo"], COLLECTORS["wlclients"], COLLECTORS["time"]]

        outputs = executor.run_batch(valid_session(), specs)

        assert sorted(outputs) == ["loadavg", "wlclients"]
        assert outputs["loadavg"].text == "0.1 0.2 0.3 1/2 3"
        assert len(router.commands) == 1


def test_factory_builds_a_fresh_client_per_cycle(target, router):
    factory = RouterClientFactory(session_factory=router.http_session)

    with factory.connect(target) as first, factory.connect(target) as second:
        assert first.transport.http is not second.transport.http
        assert first.transport.http.auth == ("admin", "secret")
        assert first.executor.transport is first.transport
    first.transport.http.close.assert_called_once()


@pytest.mark.parametrize("error, kind", [
    (AuthRejected(401), ErrorKind.AUTH_REJECTED),
    (AuthTransportError("refused"), ErrorKind.TRANSPORT),
    (ExecEmptyOutput("cpu", "no output"), ErrorKind.EMPTY_OUTPUT),
    (ScrapeCancelled("stop"), ErrorKind.CANCELLED),
    (AuthError("generic"), ErrorKind.INTERNAL),
    (KeyError("boom"), ErrorKind.INTERNAL),
])
def test_error_kind_of(error, kind):
    assert ErrorKind.of(error) == kind
