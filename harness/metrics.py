import time
import threading
from collections import defaultdict, deque
from typing import Dict, Tuple

from .aggregator import percentile

LabelKey = Tuple[Tuple[str, str], ...]


def _key(labels: Dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def _series(name: str, key: LabelKey) -> str:
    if not key:
        return f"harness_{name}"
    inner = ",".join(f'{k}="{v}"' for k, v in key)
    return f"harness_{name}{{{inner}}}"


class Metrics:
    """The harness's own counters, exported as Prometheus text at /metrics.

    Counters and gauges take optional labels, e.g.
    ``inc("requests_total", target="node")``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[str, Dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
        self.gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self.latency_ms = deque(maxlen=5000)

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        with self._lock:
            self.counters[name][_key(labels)] += value

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self.gauges[name][_key(labels)] = float(value)

    def observe_latency_ms(self, value: float) -> None:
        with self._lock:
            self.latency_ms.append(float(value))

    def counter(self, name: str, **labels: str) -> int:
        """Value of one series, or the sum over all label sets when no labels are given."""
        with self._lock:
            series = self.counters.get(name, {})
            if labels:
                return series.get(_key(labels), 0)
            return sum(series.values())

    def snapshot(self) -> str:
        with self._lock:
            lat = sorted(self.latency_ms)
            lines = []
            for name in sorted(self.counters):
                lines.append(f"# TYPE harness_{name} counter")
                for key, v in sorted(self.counters[name].items()):
                    lines.append(f"{_series(name, key)} {v}")
            for name in sorted(self.gauges):
                lines.append(f"# TYPE harness_{name} gauge")
                for key, v in sorted(self.gauges[name].items()):
                    lines.append(f"{_series(name, key)} {v}")

            lines.append("# TYPE harness_target_latency_ms gauge")
            for q in (0.50, 0.95, 0.99):
                lines.append(f'harness_target_latency_ms{{quantile="{q}"}} {percentile(lat, q)}')
            lines.append("# TYPE harness_metrics_generated_at gauge")
            lines.append(f"harness_metrics_generated_at {time.time()}")
            return "\n".join(lines) + "\n"
