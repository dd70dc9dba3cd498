import re

USER_HZ = 100

_METRIC_NAME_INVALID = re.compile(r"[^a-zA-Z0-9_]")


def safe_int(value):
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def safe_float(value):
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def kb_to_bytes(kb) -> int:
    return int(kb) * 1024


def jiffies_to_seconds(jiffies) -> float:
    return int(jiffies) / USER_HZ


def content_lines(text: str) -> list[str]:
    """Non-blank lines with trailing whitespace and carriage returns removed."""
    return [line.rstrip() for line in text.splitlines() if line.strip()]


def sanitize_metric_name(name: str) -> str:
    return _METRIC_NAME_INVALID.sub("_", name)


def unescape_octal(s: str) -> str:
    r"""/proc/mounts escapes blanks in paths as \040 and friends."""
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), s)
