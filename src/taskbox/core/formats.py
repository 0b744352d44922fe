"""Output templates and parsers for docker/podman CLI text.

The runtime is driven with `--format` templates whose fields are joined by a
literal "|" and parsed positionally, so every template here must stay in
sync with its parser.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from taskbox.core.models import ContainerRecord, ContainerStats, ContainerStatus

INSPECT_FORMAT = (
    "{{.Id}}|{{.Name}}|{{.Config.Image}}|{{.State.Status}}|{{.Created}}"
    "|{{.State.StartedAt}}|{{.State.FinishedAt}}|{{.State.ExitCode}}"
)
PS_FORMAT = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.CreatedAt}}"
STATS_FORMAT = "{{.CPUPerc}}|{{.MemUsage}}|{{.MemPerc}}|{{.NetIO}}|{{.BlockIO}}|{{.PIDs}}"

_STATUS_ALIASES = {
    "created": ContainerStatus.CREATED,
    "running": ContainerStatus.RUNNING,
    "up": ContainerStatus.RUNNING,
    "paused": ContainerStatus.PAUSED,
    "restarting": ContainerStatus.RESTARTING,
    "removing": ContainerStatus.REMOVING,
    "exited": ContainerStatus.EXITED,
    "stopped": ContainerStatus.EXITED,
    "dead": ContainerStatus.DEAD,
}

_BYTE_UNITS = {
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024**2,
    "mib": 1024**2,
    "gi": 1024**3,
    "gib": 1024**3,
    "ti": 1024**4,
    "tib": 1024**4,
}
_BYTE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([A-Za-z]*)$")

_TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?\s*(Z|[+-]\d{2}:?\d{2})?"
)


def parse_container_status(text: str) -> ContainerStatus:
    """Normalize runtime status strings; anything unknown counts as exited."""
    status = text.strip().lower()
    if status in _STATUS_ALIASES:
        return _STATUS_ALIASES[status]
    if "up" in status or "running" in status:
        return ContainerStatus.RUNNING
    return ContainerStatus.EXITED


def parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    """Parse docker/podman timestamps, including nanosecond precision.

    Returns None for empty values, template placeholders and the zero time
    the runtime reports for events that have not happened yet.
    """
    if not text:
        return None
    match = _TIMESTAMP_PATTERN.match(text.strip())
    if not match:
        return None

    day, clock, fraction, offset = match.groups()
    micros = (fraction or "0")[:6].ljust(6, "0")
    if offset in (None, "Z"):
        offset = "+00:00"
    elif ":" not in offset:
        offset = f"{offset[:3]}:{offset[3:]}"

    try:
        parsed = datetime.fromisoformat(f"{day}T{clock}.{micros}{offset}")
    except ValueError:
        return None
    if parsed.year <= 1:
        return None
    return parsed


def parse_byte_size(text: str) -> int:
    """Parse sizes like '512MiB', '1.2kB' or '800B'.

    Binary suffixes (KiB, MiB, ...) use powers of 1024, decimal ones
    (kB, MB, ...) powers of 1000. Unparseable values yield 0.
    """
    match = _BYTE_PATTERN.match(text.strip())
    if not match:
        return 0
    unit = _BYTE_UNITS.get(match.group(2).lower() or "b")
    if unit is None:
        return 0
    return int(float(match.group(1)) * unit)


def _parse_percent(text: str) -> float:
    try:
        return float(text.strip().rstrip("%"))
    except ValueError:
        return 0.0


def _parse_pair(text: str) -> tuple[int, int]:
    left, _, right = text.partition("/")
    return parse_byte_size(left), parse_byte_size(right)


def parse_stats_line(line: str) -> Optional[ContainerStats]:
    """Parse one row produced with STATS_FORMAT."""
    parts = line.strip().split("|")
    if len(parts) < 6:
        return None

    memory_usage, memory_limit = _parse_pair(parts[1])
    rx, tx = _parse_pair(parts[3])
    block_read, block_write = _parse_pair(parts[4])
    try:
        pids = int(parts[5].strip())
    except ValueError:
        pids = 0

    return ContainerStats(
        cpu_percent=_parse_percent(parts[0]),
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        memory_percent=_parse_percent(parts[2]),
        network_rx_bytes=rx,
        network_tx_bytes=tx,
        block_read_bytes=block_read,
        block_write_bytes=block_write,
        pids=pids,
    )


def parse_inspect_output(output: str, container_id: str) -> Optional[ContainerRecord]:
    """Parse output produced with INSPECT_FORMAT."""
    parts = output.strip().split("|")
    if len(parts) < 4:
        return None

    def part(index: int) -> str:
        value = parts[index].strip() if index < len(parts) else ""
        return "" if value == "<no value>" else value

    exit_code: Optional[int]
    try:
        exit_code = int(part(7))
    except ValueError:
        exit_code = None

    return ContainerRecord(
        id=part(0) or container_id,
        name=part(1).lstrip("/") or container_id,
        image=part(2) or "unknown",
        status=parse_container_status(part(3) or "unknown"),
        created_at=parse_timestamp(part(4)) or datetime.now(timezone.utc),
        started_at=parse_timestamp(part(5)),
        finished_at=parse_timestamp(part(6)),
        exit_code=exit_code,
    )


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def format_log_time(value: Union[str, datetime, timedelta]) -> str:
    """Render since/until bounds the way the CLI expects them."""
    if isinstance(value, timedelta):
        return f"{int(value.total_seconds())}s"
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    return value


