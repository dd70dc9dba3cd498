"""Shared pytest configuration and fixtures."""

from unittest.mock import MagicMock

import pytest

from tomato_router_client import RouterClientFactory, RouterTransport
from tomato_router_models import RawOutput, Target
from tomato_router_parsers import COLLECTORS

HTTP_ID = "TID0123456789abcdef"

LOGIN_PAGE = f"""<!DOCTYPE html>
<html><head><title>[Tomato] Status: Overview</title>
<script type="text/javascript">
//<% nvram("router_name,wan_domain,http_id"); %>
nvram = {{
	'router_name': 'karabor',
	'wan_domain': 'home',
	'http_id': '{HTTP_ID}'}};
</script></head>
<body><a href="tools-shell.asp">Tools</a></body></html>
"""

PROC_STAT = """cpu  162283 0 230563 168024492 2376 293698 4732481 0
cpu0 162283 0 230563 168024492 2376 293698 4732481 0
intr 846816216 0 0 0 203721765 315990752 153649036 8769 173445893 1 0 0 0
ctxt 15743031
btime 1596584154
processes 391097
procs_running 2
procs_blocked 0
"""

PROC_MEMINFO = """MemTotal:       255700 kB
MemFree:        221240 kB
Buffers:          5312 kB
Cached:          15428 kB
SwapTotal:           0 kB
SwapFree:            0 kB
"""

PROC_LOADAVG = "0.12 0.34 0.56 1/45 1234\n"

TIME_OUTPUT = "1596584154\n1391983.12 1300000.00\n"

UNAME_OUTPUT = "Linux\nkarabor\n2.6.22.19\n#31 Thu Jul 16 01:30:27 CEST 2020\nmips\n(none)\n"

PROC_NET_DEV = """Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo:   45210     602    0    0    0     0          0         0    45210     602    0    0    0     0       0          0
  eth0:2876663457 4123456    1    2    0     0          0       120 1781272596 3211234    0    0    0     0       0          0
"""

FILESYSTEM_OUTPUT = """rootfs / rootfs rw 0 0
/dev/root / squashfs ro 0 0
tmpfs /tmp tmpfs rw 0 0
/dev/sda1 /mnt/usb ext3 rw,noatime 0 0
--
Filesystem           1K-blocks      Used Available Use% Mounted on
/dev/root                 6144      6144         0 100% /
/dev/sda1              7743440   2116352   5233720  29% /mnt/usb
"""

PROC_NET_WIRELESS = """Inter-| sta-|   Quality        |   Discarded packets               | Missed | WE
 face | tus | link level noise |  nwid  crypt   frag  retry   misc | beacon | 22
  eth1: 0000   70.  -40.  -92.       0      3      0     12      1        7
"""

COMMAND_OUTPUTS = {
    "cpu": PROC_STAT,
    "meminfo": PROC_MEMINFO,
    "loadavg": PROC_LOADAVG,
    "time": TIME_OUTPUT,
    "uname": UNAME_OUTPUT,
    "netdev": PROC_NET_DEV,
    "filesystem": FILESYSTEM_OUTPUT,
    "wireless": PROC_NET_WIRELESS,
    "wlclients": "eth1 3\neth2 0\n",
}


class FakeResponse:

    def __init__(self, status_code: int = 200, text: str = ""):
        self.status_code = status_code
        self.text = text


class FakeRouter:
    """
    Stands in for the router's web UI behind a mocked requests.Session.

    `outputs` maps collector names to a body, a FakeResponse, an exception
    instance to raise, or a callable returning one of those.
    """

    def __init__(self, login: FakeResponse = None, outputs: dict = None):
        self.login = login or FakeResponse(200, LOGIN_PAGE)
        self.outputs = dict(COMMAND_OUTPUTS if outputs is None else outputs)
        self.logins = 0
        self.commands: list[str] = []
        self.requests: list[dict] = []

    def _by_command(self, command: str):
        for name, spec in COLLECTORS.items():
            if spec.command == command:
                return self.outputs.get(name, FakeResponse(200, ""))
        return self.outputs.get("batch", FakeResponse(200, ""))

    def get(self, url, timeout=None):
        self.logins += 1
        self.requests.append({"method": "GET", "url": url, "timeout": timeout})
        return self.login

    def post(self, url, data=None, timeout=None):
        self.requests.append({"method": "POST", "url": url, "data": data, "timeout": timeout})
        self.commands.append(data["command"])
        answer = self._by_command(data["command"])
        if callable(answer):
            answer = answer()
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, str):
            answer = FakeResponse(200, answer)
        return answer

    def http_session(self) -> MagicMock:
        http = MagicMock()
        http.get.side_effect = self.get
        http.post.side_effect = self.post
        return http


@pytest.fixture
def target():
    return Target(host="192.168.1.1", username="admin", password="secret",
                  collectors=("cpu", "meminfo", "loadavg", "time", "uname", "netdev", "filesystem", "wireless"))


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def client_factory(router):
    return RouterClientFactory(session_factory=router.http_session)


@pytest.fixture
def transport(target, router):
    return RouterTransport(target, router.http_session())


def raw_output(collector: str, text: str) -> RawOutput:
    return RawOutput(spec=COLLECTORS[collector], text=text)
