"""Prometheus text metrics for the relay.

Counters and histograms live in-process behind a lock and are rendered on ``/metrics``
without a prometheus_client dependency.
"""

import threading
from collections import defaultdict

from fastapi import APIRouter, Response

_lock = threading.Lock()

LabelKey = tuple[tuple[str, str], ...]

_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_sums: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_counts: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))

LATENCY_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
_histogram_buckets: dict[str, dict[LabelKey, list[int]]] = defaultdict(
    lambda: defaultdict(lambda: [0] * len(LATENCY_BUCKETS)),
)


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    with _lock:
        _counters[name][_key(labels)] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    key = _key(labels)
    with _lock:
        _histogram_sums[name][key] += value
        _histogram_counts[name][key] += 1
        buckets = _histogram_buckets[name][key]
        for i, bound in enumerate(LATENCY_BUCKETS):
            if value <= bound:
                # rendering accumulates, so only the tightest bucket is counted here
                buckets[i] += 1
                break


def counter_value(name: str, labels: dict[str, str]) -> float:
    with _lock:
        return _counters.get(name, {}).get(_key(labels), 0.0)


def _format_labels(label_pairs: LabelKey) -> str:
    if not label_pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in label_pairs) + "}"


def _render_histogram(name: str, label_pairs: LabelKey) -> list[str]:
    lines: list[str] = []
    cumulative = 0
    for bound, count in zip(LATENCY_BUCKETS, _histogram_buckets[name][label_pairs]):
        cumulative += count
        bucket_labels = _key({**dict(label_pairs), "le": str(bound)})
        lines.append(f"{name}_bucket{_format_labels(bucket_labels)} {cumulative}")
    total = _histogram_counts[name][label_pairs]
    inf_labels = _key({**dict(label_pairs), "le": "+Inf"})
    lines.append(f"{name}_bucket{_format_labels(inf_labels)} {total}")
    lines.append(f"{name}_sum{_format_labels(label_pairs)} {_histogram_sums[name][label_pairs]}")
    lines.append(f"{name}_count{_format_labels(label_pairs)} {total}")
    return lines


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, label_map in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for label_pairs, value in sorted(label_map.items()):
                lines.append(f"{name}{_format_labels(label_pairs)} {value}")
        for name in sorted(_histogram_sums.keys()):
            lines.append(f"# TYPE {name} histogram")
            for label_pairs in sorted(_histogram_sums[name].keys()):
                lines.extend(_render_histogram(name, label_pairs))
    lines.append("")
    return "\n".join(lines)


def record_relay(provider: str, status_code: int, latency_s: float) -> None:
    inc_counter("relay_requests_total", {"provider": provider, "status": str(status_code)})
    observe_histogram("relay_generation_duration_seconds", {"provider": provider}, latency_s)


def record_enrichment(outcome: str) -> None:
    inc_counter("relay_enrichment_total", {"outcome": outcome})


def record_persistence(outcome: str) -> None:
    inc_counter("relay_exchanges_persisted_total", {"outcome": outcome})


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; charset=utf-8")
