"""Metric point model and InfluxDB line-protocol encoding."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Timestamp divisors from nanoseconds, keyed by InfluxDB precision name.
PRECISIONS = {
    "n": 1,
    "ns": 1,
    "u": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _escape_key(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _format_field_value(value) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def to_epoch(ts: datetime, precision: str = "s") -> int:
    """Integer timestamp of *ts* in the given precision. Naive times are UTC."""
    if precision not in PRECISIONS:
        raise ValueError(f"unsupported precision: {precision!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - _EPOCH
    nanos = (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000
    return nanos // PRECISIONS[precision]


@dataclass
class Point:
    measurement: str
    tags: dict[str, str] = field(default_factory=dict)
    fields: dict[str, object] = field(default_factory=dict)
    time: datetime | None = None

    def to_line(self, precision: str = "s") -> str:
        """Encode as one line of InfluxDB line protocol.

        Tags with empty values are dropped since InfluxDB rejects them.
        """
        if not self.fields:
            raise ValueError(f"point {self.measurement!r} has no fields")

        key = _escape_measurement(self.measurement)
        for name in sorted(self.tags):
            value = self.tags[name]
            if value == "" or value is None:
                continue
            key += f",{_escape_key(name)}={_escape_key(str(value))}"

        fields = ",".join(
            f"{_escape_key(name)}={_format_field_value(value)}"
            for name, value in self.fields.items()
        )
        line = f"{key} {fields}"
        if self.time is not None:
            line += f" {to_epoch(self.time, precision)}"
        return line


def encode_points(points: list[Point], precision: str = "s") -> bytes:
    """Newline-joined line protocol body for a write request."""
    return "\n".join(p.to_line(precision) for p in points).encode("utf-8")
