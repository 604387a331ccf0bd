"""Translation of OpenTSDB / tcollector line output into gauge metrics.

Each non-blank line reads::

    <metric> <timestamp> <value> [<tagk>=<tagv>[,<tagk>=<tagv>...] ...]

The timestamp is validated and then dropped; exported samples carry no time.
"""

from __future__ import annotations

import math
import re
import string
from dataclasses import dataclass, field

from .errors import ParseError

_PROM_FIRST_CHARS = frozenset(string.ascii_letters + "_")
_PROM_CHARS = _PROM_FIRST_CHARS | frozenset(string.digits)
_TIMESTAMP_PATTERN = re.compile(r"^[+-]?[0-9]+$")
_SPECIAL_FLOATS = {
    "nan": math.nan,
    "inf": math.inf,
    "+inf": math.inf,
    "-inf": -math.inf,
    "infinity": math.inf,
    "+infinity": math.inf,
    "-infinity": -math.inf,
}


@dataclass(frozen=True, slots=True)
class TranslatedMetric:
    """One gauge sample produced from one OpenTSDB line.

    Example:
        ```python
        metric = TranslatedMetric(name="a_a", labels={"l1": "v1"}, value=9.0)
        ```
    """

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0


def make_valid_prom_name(name: str) -> str:
    """Replace every character Prometheus rejects in a name with `_`.

    Letters and `_` are kept anywhere; digits are kept except in first position.

    Example:
        ```python
        make_valid_prom_name("1sys.cpu-user")  # "_sys_cpu_user"
        ```
    """
    return "".join(
        ch if ch in _PROM_FIRST_CHARS or (idx > 0 and ch in _PROM_CHARS) else "_"
        for idx, ch in enumerate(name)
    )


def valid_tsdb_string(value: str) -> bool:
    """Return True when `value` is a legal OpenTSDB metric or tag token.

    Example:
        ```python
        valid_tsdb_string("sys.cpu/user-0")  # True
        ```
    """
    if not value:
        return False
    return all(ch.isalnum() or ch in "-_./" for ch in value)


def _parse_value(token: str) -> float:
    """Parse a sample value, accepting NaN and Inf spellings.

    Example:
        ```python
        _parse_value("+Inf")  # inf
        ```
    """
    special = _SPECIAL_FLOATS.get(token.lower())
    if special is not None:
        return special
    if "_" in token:
        raise ValueError(token)
    return float(token)


def parse_tags(token: str) -> dict[str, str]:
    """Parse one tag token holding `k=v` pairs separated by commas.

    Example:
        ```python
        parse_tags("host=a,dc=b")  # {"host": "a", "dc": "b"}
        ```
    """
    tags: dict[str, str] = {}
    for pair in token.split(","):
        parts = pair.split("=")
        if len(parts) != 2:
            raise ValueError(f"invalid tag: {pair}")
        key, value = (part.strip() for part in parts)
        if not key or not value:
            raise ValueError(f"invalid tag: {pair}")
        if key in tags:
            raise ValueError(f"duplicate tag: {token}")
        tags[key] = value
    return tags


def parse_tcollector_line(line: str, lineno: int = 0) -> tuple[str, int, float, dict[str, str]]:
    """Split one tcollector line into metric, timestamp, value and tags.

    Example:
        ```python
        name, ts, value, tags = parse_tcollector_line("a.b 1001 99 l2=v2 l3=v3")
        ```
    """
    fields = line.split()
    if len(fields) < 3:
        raise ParseError(f"bad line: {line}", line=lineno)
    metric, raw_ts, raw_value, *raw_tags = fields
    if not _TIMESTAMP_PATTERN.match(raw_ts):
        raise ParseError(f"bad timestamp: {raw_ts}", line=lineno)
    try:
        value = _parse_value(raw_value)
    except ValueError:
        raise ParseError(f"bad value: {raw_value}", line=lineno) from None
    if not valid_tsdb_string(metric):
        raise ParseError(f"bad metric: {metric}", line=lineno)

    tags: dict[str, str] = {}
    for raw_tag in raw_tags:
        try:
            tags.update(parse_tags(raw_tag))
        except ValueError as exc:
            raise ParseError(f"bad tag, metric {metric}: {raw_tag}: {exc}", line=lineno) from exc
    return metric, int(raw_ts), value, tags


def translate_opentsdb(text: str) -> list[TranslatedMetric]:
    """Translate OpenTSDB text into gauge metrics, all lines or none.

    Example:
        ```python
        metrics = translate_opentsdb("a.a 1000 9 l1=v1\\na.b 1001 99 l2=v2 l3=v3")
        assert [m.name for m in metrics] == ["a_a", "a_b"]
        ```
    """
    metrics: list[TranslatedMetric] = []
    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        metric, _timestamp, value, tags = parse_tcollector_line(line, lineno)
        metrics.append(
            TranslatedMetric(
                name=make_valid_prom_name(metric),
                labels={make_valid_prom_name(key): tag_value for key, tag_value in tags.items()},
                value=value,
            )
        )
    return metrics
