from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterable, Iterator, Sequence

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from prometheus_client.parser import text_string_to_metric_families
from prometheus_client.registry import Collector

from .errors import ParseError, ServeError
from .translate import TranslatedMetric, translate_opentsdb

logger = logging.getLogger(__name__)

TRANSLATED_HELP = "help"

_COUNTER_TYPE_LINE = re.compile(r"^#[ \t]+TYPE[ \t]+(\S+)[ \t]+counter[ \t]*$", re.MULTILINE)
_EMPTY_HELP_LINE = re.compile(rb"^# HELP \S+ \n", re.MULTILINE)


def _reject_duplicate_series(series: Iterable[tuple[str, dict[str, str]]]) -> None:
    """Raise `ParseError` when two samples share a name and label set.

    Example:
        ```python
        _reject_duplicate_series([("up", {}), ("up", {"a": "1"})])
        ```
    """
    seen: set[tuple[str, tuple[tuple[str, str], ...]]] = set()
    for name, labels in series:
        key = (name, tuple(sorted(labels.items())))
        if key in seen:
            rendered = ",".join(f'{k}="{v}"' for k, v in key[1])
            raise ParseError(f"duplicate series {name}{{{rendered}}}")
        seen.add(key)


class TranslatedCollector(Collector):
    """Expose translated OpenTSDB samples as gauge families.

    Families are rebuilt on every `collect()`; nothing is cached between scrapes.
    Distinct OpenTSDB names can sanitize to the same series, which is rejected
    up front.

    Example:
        ```python
        registry = CollectorRegistry()
        registry.register(TranslatedCollector(translate_opentsdb("a.a 1000 9")))
        ```
    """

    def __init__(self, metrics: Sequence[TranslatedMetric]) -> None:
        """Keep the translated samples for later collection.

        Example:
            ```python
            collector = TranslatedCollector([TranslatedMetric("up", {}, 1.0)])
            ```
        """
        self._metrics = tuple(metrics)
        _reject_duplicate_series((metric.name, metric.labels) for metric in self._metrics)

    def collect(self) -> Iterator[Metric]:
        """Yield one gauge family per distinct name, in first-seen order.

        Example:
            ```python
            names = [family.name for family in collector.collect()]
            ```
        """
        families: dict[str, Metric] = {}
        for metric in self._metrics:
            family = families.get(metric.name)
            if family is None:
                family = families[metric.name] = Metric(metric.name, TRANSLATED_HELP, "gauge")
            family.add_sample(metric.name, dict(sorted(metric.labels.items())), metric.value)
        yield from families.values()


class ParsedFamiliesCollector(Collector):
    """Re-expose families parsed from Prometheus text with sorted labels.

    The parser stores a counter declared without the `_total` suffix under
    `<name>_total`. Such families are passed on as untyped under the names
    the script printed.

    Example:
        ```python
        collector = ParsedFamiliesCollector(parse_exposition("up 1\\n"))
        ```
    """

    def __init__(self, families: Iterable[Metric], plain_counters: Iterable[str] = ()) -> None:
        """Keep the parsed families for later collection.

        Example:
            ```python
            collector = ParsedFamiliesCollector(parse_exposition(text), plain_counter_names(text))
            ```
        """
        self._families = tuple(families)
        self._plain_counters = frozenset(plain_counters)
        _reject_duplicate_series(
            (sample.name, sample.labels) for family in self._families for sample in family.samples
        )

    def collect(self) -> Iterator[Metric]:
        """Yield copies of the families with each sample's labels sorted by key.

        Example:
            ```python
            for family in collector.collect():
                print(family.samples)
            ```
        """
        for family in self._families:
            ordered = copy.copy(family)
            samples = [
                sample._replace(labels=dict(sorted(sample.labels.items())))
                for sample in family.samples
            ]
            if family.type == "counter" and family.name in self._plain_counters:
                ordered.type = "untyped"
                renamed = family.name + "_total"
                samples = [
                    sample._replace(name=family.name) if sample.name == renamed else sample
                    for sample in samples
                ]
            ordered.samples = samples
            yield ordered


def plain_counter_names(text: str) -> set[str]:
    """Return counters whose `# TYPE` line does not carry the `_total` suffix.

    Example:
        ```python
        plain_counter_names("# TYPE foo counter\\nfoo 1\\n")  # {"foo"}
        ```
    """
    return {name for name in _COUNTER_TYPE_LINE.findall(text) if not name.endswith("_total")}


def parse_exposition(text: str) -> list[Metric]:
    """Parse Prometheus text exposition fully, failing on the first bad line.

    Example:
        ```python
        families = parse_exposition("# TYPE up gauge\\nup 1\\n")
        ```
    """
    try:
        return list(text_string_to_metric_families(text))
    except (ValueError, IndexError, KeyError) as exc:
        raise ParseError(f"error parsing Prometheus text format: {exc}") from exc


def build_registry(text: str, *, opentsdb: bool) -> CollectorRegistry:
    """Interpret script output and register it on a fresh registry.

    Example:
        ```python
        registry = build_registry("a.a 1000 9 l1=v1", opentsdb=True)
        body = render(registry)
        ```
    """
    collector: Collector
    if opentsdb:
        collector = TranslatedCollector(translate_opentsdb(text))
    else:
        collector = ParsedFamiliesCollector(parse_exposition(text), plain_counter_names(text))
    registry = CollectorRegistry()
    registry.register(collector)
    return registry


def render(registry: CollectorRegistry) -> bytes:
    """Serialize a registry in the Prometheus text exposition format.

    Families without help text get no `# HELP` line.

    Example:
        ```python
        body = render(ExporterMetrics().registry)
        ```
    """
    try:
        body = generate_latest(registry)
    except Exception as exc:
        logger.debug("exposition failed", exc_info=True)
        raise ServeError(f"unable to render metrics: {exc}") from exc
    return _EMPTY_HELP_LINE.sub(b"", body)
