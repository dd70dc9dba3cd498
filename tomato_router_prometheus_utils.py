from __future__ import annotations

import logging
from itertools import groupby
from typing import Iterable, Iterator, Union

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector

from tomato_router_models import CollectorOutcome, MetricKind, MetricSample

logger = logging.getLogger(__name__)

LIVENESS_METRIC = "tomato_up"

MetricFamily = Union[CounterMetricFamily, GaugeMetricFamily]


class MetricRegistry:
    """
    Accumulates the samples of one scrape and renders them as a text exposition document.

    Samples of one metric name are emitted contiguously, names in first-seen order.
    A repeated (name, labels) series keeps the latest value.
    """

    def __init__(self):
        self._series: dict[tuple, MetricSample] = {}
        self._kinds: dict[str, MetricKind] = {}

    def __len__(self):
        return len(self._series)

    def add(self, sample: MetricSample):
        kind = self._kinds.setdefault(sample.name, sample.kind)
        if kind != sample.kind:
            raise ValueError(f"{sample.name} registered as {kind.value}, got {sample.kind.value}")
        key = sample.series_key
        if key in self._series:
            logger.warning(f"Duplicate series {sample.name}{dict(sample.labels)}, keeping latest value")
        self._series[key] = sample

    def extend(self, samples: Iterable[MetricSample]):
        for sample in samples:
            self.add(sample)

    def samples(self) -> list[MetricSample]:
        grouped: dict[str, list[MetricSample]] = {}
        for sample in self._series.values():
            grouped.setdefault(sample.name, []).append(sample)
        return [s for group in grouped.values() for s in group]

    def families(self) -> Iterator[MetricFamily]:
        for _, group in groupby(self.samples(), key=lambda s: s.name):
            group = list(group)
            family = _new_family(group[0])
            for sample in group:
                sample_name = family.name + "_total" if sample.kind == MetricKind.COUNTER else family.name
                family.add_sample(sample_name, sample.labels_dict, sample.value)
            yield family

    def render(self) -> bytes:
        registry = CollectorRegistry(auto_describe=False)
        registry.register(_FamiliesCollector(self))
        return generate_latest(registry)


class _FamiliesCollector(Collector):

    def __init__(self, metrics: MetricRegistry):
        self.metrics = metrics

    def collect(self):
        return self.metrics.families()


def _new_family(sample: MetricSample) -> MetricFamily:
    doc = sample.documentation or sample.name
    if sample.kind == MetricKind.COUNTER:
        return CounterMetricFamily(sample.name, doc)
    return GaugeMetricFamily(sample.name, doc)


def liveness_sample(up: bool) -> MetricSample:
    return MetricSample(
        name=LIVENESS_METRIC,
        kind=MetricKind.GAUGE,
        value=1 if up else 0,
        documentation="Whether the router was reached and authenticated during this scrape (0/1).",
    )


def outcome_samples(outcome: CollectorOutcome) -> list[MetricSample]:
    labels = (("collector", outcome.collector),)
    return [
        MetricSample(
            name="tomato_scrape_collector_success",
            kind=MetricKind.GAUGE,
            value=1 if outcome.success else 0,
            labels=labels,
            documentation="Whether a collector succeeded (0/1).",
        ),
        MetricSample(
            name="tomato_scrape_collector_duration_seconds",
            kind=MetricKind.GAUGE,
            value=outcome.duration,
            labels=labels,
            documentation="Duration of a collector scrape.",
        ),
    ]
