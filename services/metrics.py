"""
Telemetry store.

Keeps a bounded window of recent request records plus per-model running
aggregates, and notifies subscribers after every record. Memory stays
bounded under any request volume:

- ring buffer of the last MAX_RECENT_REQUESTS records (oldest dropped first)
- LRU list of at most MAX_MODELS model names; only those models get stats

Aggregates are updated incrementally as records enter and leave the ring,
so reading stats never re-scans the buffer.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Literal, Optional

logger = logging.getLogger("agent-router.metrics")

MAX_RECENT_REQUESTS = 1000
MAX_MODELS = 20
STATE_RECENT_REQUESTS = 50

UNKNOWN_MODEL = "unknown"


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestMetric:
    """One routed request. Never mutated after it is recorded."""
    model: str
    original_model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    tokens_per_second: float
    status: Literal["success", "error"]
    error_message: Optional[str] = None
    agent_type: Optional[str] = None
    routing_reason: Optional[str] = None
    id: str = field(default_factory=new_request_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ModelStats:
    model: str
    request_count: int = 0
    mean_latency_ms: float = 0.0
    avg_tokens_per_second: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    def add(self, metric: RequestMetric) -> None:
        self.request_count += 1
        n = self.request_count
        self.mean_latency_ms += (metric.latency_ms - self.mean_latency_ms) / n
        self.avg_tokens_per_second += (metric.tokens_per_second - self.avg_tokens_per_second) / n
        self.total_input_tokens += metric.input_tokens
        self.total_output_tokens += metric.output_tokens

    def remove(self, metric: RequestMetric) -> None:
        """Inverse of add(), used when a record falls out of the window."""
        n = self.request_count
        if n <= 1:
            self.request_count = 0
            self.mean_latency_ms = 0.0
            self.avg_tokens_per_second = 0.0
            self.total_input_tokens = 0
            self.total_output_tokens = 0
            return
        self.mean_latency_ms = (self.mean_latency_ms * n - metric.latency_ms) / (n - 1)
        self.avg_tokens_per_second = (self.avg_tokens_per_second * n - metric.tokens_per_second) / (n - 1)
        self.total_input_tokens -= metric.input_tokens
        self.total_output_tokens -= metric.output_tokens
        self.request_count = n - 1


@dataclass(frozen=True)
class TelemetryState:
    """Snapshot handed to dashboards; a copy, safe to keep."""
    requests: List[RequestMetric]
    stats: Dict[str, ModelStats]
    server_start_time: datetime
    total_requests: int
    error_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": [_metric_to_dict(m) for m in self.requests],
            "stats": {name: asdict(s) for name, s in self.stats.items()},
            "server_start_time": self.server_start_time.isoformat(),
            "total_requests": self.total_requests,
            "error_count": self.error_count,
        }


def _metric_to_dict(metric: RequestMetric) -> Dict[str, Any]:
    data = asdict(metric)
    data["timestamp"] = metric.timestamp.isoformat()
    return data


Subscriber = Callable[[RequestMetric, TelemetryState], None]


class TelemetryStore:
    def __init__(self, max_requests: int = MAX_RECENT_REQUESTS, max_models: int = MAX_MODELS):
        self.max_requests = max_requests
        self.max_models = max_models
        self._requests: Deque[RequestMetric] = deque()
        # Most recently used model first.
        self._model_order: "OrderedDict[str, None]" = OrderedDict()
        # Aggregates for every model that still has records in the ring,
        # whether or not it is in the LRU list.
        self._aggregates: Dict[str, ModelStats] = {}
        self._total_requests = 0
        self._error_count = 0
        self._subscribers: List[Subscriber] = []
        self._lock = threading.RLock()
        self.server_start_time = datetime.now(timezone.utc)
        self._started = time.monotonic()

    # ---------- Recording ----------
    def record_request(self, metric: RequestMetric) -> None:
        with self._lock:
            self._append(metric)
            self._total_requests += 1
            if metric.status == "error":
                self._error_count += 1
            self._touch_model(metric.model)
            subscribers = list(self._subscribers)
            state = self.get_state() if subscribers else None

        for callback in subscribers:
            try:
                callback(metric, state)
            except Exception:
                logger.exception("Telemetry subscriber failed")

    def _append(self, metric: RequestMetric) -> None:
        self._requests.append(metric)
        self._aggregate(metric)
        while len(self._requests) > self.max_requests:
            self._discard(self._requests.popleft())

    def _aggregate(self, metric: RequestMetric) -> None:
        if metric.model == UNKNOWN_MODEL:
            return
        stats = self._aggregates.get(metric.model)
        if stats is None:
            stats = self._aggregates[metric.model] = ModelStats(model=metric.model)
        stats.add(metric)

    def _discard(self, metric: RequestMetric) -> None:
        stats = self._aggregates.get(metric.model)
        if stats is None:
            return
        stats.remove(metric)
        if stats.request_count == 0:
            del self._aggregates[metric.model]

    def _touch_model(self, model: str) -> None:
        self._model_order[model] = None
        self._model_order.move_to_end(model, last=False)
        while len(self._model_order) > self.max_models:
            self._model_order.popitem(last=True)

    # ---------- Reading ----------
    def get_stats(self) -> Dict[str, ModelStats]:
        """Per-model aggregates for models in the LRU list, excluding "unknown"."""
        with self._lock:
            return {
                model: ModelStats(**asdict(self._aggregates[model]))
                for model in self._model_order
                if model != UNKNOWN_MODEL and model in self._aggregates
            }

    def get_recent_requests(self, limit: int = STATE_RECENT_REQUESTS) -> List[RequestMetric]:
        """Most recent first."""
        with self._lock:
            if limit <= 0:
                return []
            return list(self._requests)[-limit:][::-1]

    def get_state(self) -> TelemetryState:
        with self._lock:
            return TelemetryState(
                requests=self.get_recent_requests(STATE_RECENT_REQUESTS),
                stats=self.get_stats(),
                server_start_time=self.server_start_time,
                total_requests=self._total_requests,
                error_count=self._error_count,
            )

    @property
    def models(self) -> List[str]:
        """LRU order, most recent first."""
        with self._lock:
            return list(self._model_order)

    def __len__(self) -> int:
        return len(self._requests)

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def error_count(self) -> int:
        return self._error_count

    def get_uptime_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    # ---------- Observers ----------
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(metric, state)``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
