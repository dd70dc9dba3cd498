"""
Output parsers: raw shell output of one command -> node-exporter compatible samples.

Every parser is a pure function of a :class:`RawOutput`. Optional columns that a
firmware build does not print are skipped; output that cannot be tokenised at
all raises :class:`ParseError` for that collector only.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from tomato_router_client_exceptions import ConfigurationError, ParseError
from tomato_router_models import CommandSpec, MetricKind, MetricSample, RawOutput
from tomato_router_utils import (content_lines, jiffies_to_seconds, kb_to_bytes, safe_float, safe_int,
                                 sanitize_metric_name, unescape_octal)

logger = logging.getLogger(__name__)

Labels = Iterable[tuple[str, str]]


def gauge(name: str, value, labels: Labels = (), doc: str = "") -> MetricSample:
    return MetricSample(name=name, kind=MetricKind.GAUGE, value=value, labels=tuple(labels), documentation=doc)


def counter(name: str, value, labels: Labels = (), doc: str = "") -> MetricSample:
    return MetricSample(name=name, kind=MetricKind.COUNTER, value=value, labels=tuple(labels), documentation=doc)


def _fail(raw: RawOutput, message: str) -> ParseError:
    return ParseError(raw.spec.name, message, raw.text)


# --- cpu: /proc/stat ---

CPU_MODES = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")
_CPU_LINE = re.compile(r"^cpu(\d+)\s+(.*)$")

_STAT_COUNTERS = {
    "ctxt": ("node_context_switches_total", "Total number of context switches."),
    "intr": ("node_intr_total", "Total number of interrupts serviced."),
    "processes": ("node_forks_total", "Total number of forks."),
}
_STAT_GAUGES = {
    "procs_running": ("node_procs_running", "Number of processes in runnable state."),
    "procs_blocked": ("node_procs_blocked", "Number of processes blocked waiting for I/O to complete."),
}


def parse_cpu(raw: RawOutput) -> list[MetricSample]:
    samples = []
    extras = []
    seen_cpu = False
    for line in content_lines(raw.text):
        line = line.strip()
        match = _CPU_LINE.match(line)
        if match:
            jiffies = match.group(2).split()
            if len(jiffies) < 4 or any(safe_int(j) is None for j in jiffies):
                raise _fail(raw, f"unexpected cpu{match.group(1)} line")
            seen_cpu = True
            for mode, value in zip(CPU_MODES, jiffies):
                samples.append(counter("node_cpu_seconds_total", jiffies_to_seconds(value),
                                       (("cpu", match.group(1)), ("mode", mode)),
                                       "Seconds the CPUs spent in each mode."))
            continue

        fields = line.split()
        if len(fields) < 2:
            continue
        value = safe_int(fields[1])
        if value is None:
            continue
        if fields[0] in _STAT_COUNTERS:
            name, doc = _STAT_COUNTERS[fields[0]]
            extras.append(counter(name, value, doc=doc))
        elif fields[0] in _STAT_GAUGES:
            name, doc = _STAT_GAUGES[fields[0]]
            extras.append(gauge(name, value, doc=doc))

    if not seen_cpu:
        raise _fail(raw, "no per-cpu lines")
    return samples + extras


# --- meminfo: /proc/meminfo ---

_MEMINFO_LINE = re.compile(r"^([^:\s]+):\s+(\d+)(?:\s+(kB))?$")


def parse_meminfo(raw: RawOutput) -> list[MetricSample]:
    samples = []
    for line in content_lines(raw.text):
        match = _MEMINFO_LINE.match(line.strip())
        if not match:
            continue
        key, value, unit = match.groups()
        key = sanitize_metric_name(re.sub(r"\((.*)\)", r"_\1", key))
        if unit:
            samples.append(gauge(f"node_memory_{key}_bytes", kb_to_bytes(value),
                                 doc=f"Memory information field {key}_bytes."))
        else:
            samples.append(gauge(f"node_memory_{key}", int(value),
                                 doc=f"Memory information field {key}."))
    if not samples:
        raise _fail(raw, "no meminfo fields")
    return samples


# --- loadavg: /proc/loadavg ---

def parse_loadavg(raw: RawOutput) -> list[MetricSample]:
    fields = raw.text.split()
    loads = [safe_float(f) for f in fields[:3]]
    if len(loads) < 3 or None in loads:
        raise _fail(raw, "expected three load averages")

    samples = [
        gauge("node_load1", loads[0], doc="1m load average."),
        gauge("node_load5", loads[1], doc="5m load average."),
        gauge("node_load15", loads[2], doc="15m load average."),
    ]
    if len(fields) > 3 and "/" in fields[3]:
        total = safe_int(fields[3].split("/", 1)[1])
        if total is not None:
            samples.append(gauge("node_processes_threads", total, doc="Allocated threads in system."))
    return samples


# --- time: date +%s && cat /proc/uptime ---

def parse_time(raw: RawOutput) -> list[MetricSample]:
    lines = content_lines(raw.text)
    now = safe_int(lines[0].strip()) if lines else None
    uptime = safe_float(lines[1].split()[0]) if len(lines) > 1 else None
    if now is None:
        raise _fail(raw, "no epoch timestamp")

    samples = [gauge("node_time_seconds", now, doc="System time in seconds since epoch (1970).")]
    if uptime is not None:
        samples.append(gauge("node_boot_time_seconds", int(now - uptime), doc="Node boot time, in unixtime."))
    return samples


# --- uname: one field per line ---

UNAME_FIELDS = ("sysname", "nodename", "release", "version", "machine", "domainname")


def parse_uname(raw: RawOutput) -> list[MetricSample]:
    lines = [line.strip() for line in raw.text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    if len(lines) < 5 or not lines[0]:
        raise _fail(raw, "expected sysname, nodename, release, version and machine lines")

    values = dict(zip(UNAME_FIELDS, lines))
    if not values.get("domainname"):
        values["domainname"] = "(none)"
    labels = [(f, values[f]) for f in sorted(UNAME_FIELDS)]
    return [gauge("node_uname_info", 1, labels,
                  "Labeled system information as provided by the uname system call.")]


# --- netdev: /proc/net/dev ---

NETDEV_RECEIVE_FIELDS = ("bytes", "packets", "errs", "drop", "fifo", "frame", "compressed", "multicast")
NETDEV_TRANSMIT_FIELDS = ("bytes", "packets", "errs", "drop", "fifo", "colls", "carrier", "compressed")


def _netdev_columns(header: str) -> Optional[list[str]]:
    parts = header.split("|")
    if len(parts) < 3 or "bytes" not in parts[1]:
        return None
    return ([f"receive_{f}" for f in parts[1].split()] +
            [f"transmit_{f}" for f in parts[2].split()])


def parse_netdev(raw: RawOutput) -> list[MetricSample]:
    columns = None
    devices: list[tuple[str, list[str]]] = []
    for line in content_lines(raw.text):
        if "|" in line:
            columns = _netdev_columns(line) or columns
            continue
        if ":" not in line:
            continue
        name, _, stats = line.partition(":")
        devices.append((name.strip(), stats.split()))

    if columns is None:
        if not devices:
            raise _fail(raw, "no interface table")
        columns = ([f"receive_{f}" for f in NETDEV_RECEIVE_FIELDS] +
                   [f"transmit_{f}" for f in NETDEV_TRANSMIT_FIELDS])

    samples = []
    for device, values in devices:
        for column, value in zip(columns, values):
            number = safe_int(value)
            if number is None:
                raise _fail(raw, f"non-numeric {column} for {device}")
            samples.append(counter(f"node_network_{column}_total", number, (("device", device),),
                                   f"Network device statistic {column}."))
    return samples


# --- filesystem: cat /proc/mounts; echo '--'; df -k ---

def _parse_mounts(lines: list[str]) -> dict[str, tuple[str, str]]:
    mounts = {}
    for line in lines:
        fields = line.split()
        if len(fields) >= 3:
            mounts[unescape_octal(fields[1])] = (fields[0], fields[2])
    return mounts


def _df_rows(lines: list[str]):
    pending: list[str] = []
    for line in lines:
        fields = pending + line.split()
        # busybox wraps long device names onto their own line
        if len(fields) < 6:
            pending = fields
            continue
        pending = []
        yield fields


def parse_filesystem(raw: RawOutput) -> list[MetricSample]:
    lines = content_lines(raw.text)
    if "--" in (line.strip() for line in lines):
        split_at = [line.strip() for line in lines].index("--")
        mounts, df_lines = _parse_mounts(lines[:split_at]), lines[split_at + 1:]
    else:
        mounts, df_lines = {}, lines

    header = next((i for i, line in enumerate(df_lines) if line.startswith("Filesystem")), None)
    if header is None:
        raise _fail(raw, "no df header")

    sizes, frees, avails = [], [], []
    for fields in _df_rows(df_lines[header + 1:]):
        blocks, used, avail = (safe_int(f) for f in fields[1:4])
        if None in (blocks, used, avail):
            logger.debug(f"[{raw.spec.name}] skipping df row {fields}")
            continue
        mountpoint = " ".join(fields[5:])
        _, fstype = mounts.get(mountpoint, (None, "unknown"))
        labels = (("device", fields[0]), ("fstype", fstype), ("mountpoint", mountpoint))
        sizes.append(gauge("node_filesystem_size_bytes", kb_to_bytes(blocks), labels,
                           "Filesystem size in bytes."))
        frees.append(gauge("node_filesystem_free_bytes", kb_to_bytes(blocks - used), labels,
                           "Filesystem free space in bytes."))
        avails.append(gauge("node_filesystem_avail_bytes", kb_to_bytes(avail), labels,
                            "Filesystem space available to non-root users in bytes."))
    return sizes + frees + avails


# --- wireless: /proc/net/wireless ---

WIRELESS_DISCARD_REASONS = ("nwid", "crypt", "frag", "retry", "misc")


def _wireless_value(s: str):
    return safe_float(s.rstrip(".*+"))


def parse_wireless(raw: RawOutput) -> list[MetricSample]:
    lines = content_lines(raw.text)
    if not lines or (not any("|" in line for line in lines) and not any(":" in line for line in lines)):
        raise _fail(raw, "no wireless table")

    samples = []
    for line in lines:
        if "|" in line or ":" not in line:
            continue
        name, _, stats = line.partition(":")
        device = name.strip()
        values = [_wireless_value(v) for v in stats.split()[1:]]
        labels = (("device", device),)
        for metric, doc, index in (
                ("tomato_wireless_link_quality", "Wireless link quality.", 0),
                ("tomato_wireless_signal_level_dbm", "Wireless signal level in dBm.", 1),
                ("tomato_wireless_noise_level_dbm", "Wireless noise level in dBm.", 2)):
            if len(values) > index and values[index] is not None:
                samples.append(gauge(metric, values[index], labels, doc))
        for index, reason in enumerate(WIRELESS_DISCARD_REASONS, start=3):
            if len(values) > index and values[index] is not None:
                samples.append(counter("tomato_wireless_discarded_packets_total", values[index],
                                       labels + (("reason", reason),), "Wireless packets discarded."))
        if len(values) > 8 and values[8] is not None:
            samples.append(counter("tomato_wireless_missed_beacons_total", values[8], labels,
                                   "Wireless beacons missed."))
    return samples


# --- wlclients: "<ifname> <stations>" per radio ---

def parse_wlclients(raw: RawOutput) -> list[MetricSample]:
    samples = []
    for line in content_lines(raw.text):
        fields = line.split()
        if len(fields) != 2 or safe_int(fields[1]) is None:
            raise _fail(raw, "expected '<interface> <count>' lines")
        samples.append(gauge("tomato_wireless_associated_stations", int(fields[1]), (("device", fields[0]),),
                             "Stations associated with the wireless interface."))
    return samples


COLLECTORS: dict[str, CommandSpec] = {spec.name: spec for spec in (
    CommandSpec("cpu", "cat /proc/stat", parse_cpu, "CPU time and kernel activity"),
    CommandSpec("meminfo", "cat /proc/meminfo", parse_meminfo, "Memory statistics"),
    CommandSpec("loadavg", "cat /proc/loadavg", parse_loadavg, "Load averages"),
    CommandSpec("time", "date +%s && cat /proc/uptime", parse_time, "System and boot time"),
    CommandSpec("uname",
                "uname -s; uname -n; uname -r; uname -v; uname -m; cat /proc/sys/kernel/domainname",
                parse_uname, "Kernel and host identification"),
    CommandSpec("netdev", "cat /proc/net/dev", parse_netdev, "Network interface counters"),
    CommandSpec("filesystem", "cat /proc/mounts; echo '--'; df -k", parse_filesystem, "Mounted filesystem usage"),
    CommandSpec("wireless", "cat /proc/net/wireless", parse_wireless, "Wireless link statistics"),
    CommandSpec("wlclients",
                "for i in $(nvram get wl_ifnames); do echo \"$i $(wl -i $i assoclist | wc -l)\"; done",
                parse_wlclients, "Associated wireless stations", allow_empty=True),
)}

DEFAULT_COLLECTORS = tuple(name for name in COLLECTORS if name != "wlclients")


def select_collectors(names: Iterable[str] = ()) -> list[CommandSpec]:
    """Enabled CommandSpecs in catalog order; no names means the default set."""
    names = set(names) or set(DEFAULT_COLLECTORS)
    unknown = names - COLLECTORS.keys()
    if unknown:
        raise ConfigurationError(f"Unknown collectors: {', '.join(sorted(unknown))}")
    return [spec for name, spec in COLLECTORS.items() if name in names]
