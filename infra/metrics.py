"""Prometheus-backed metrics hooks for intents, submissions and lifecycle machines."""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose orchestrator stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several recorders (one per
    session or per test) never collide on metric registration.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._intents = Counter(
            "escrow_intents_total",
            "Intents built, by intent and outcome",
            labelnames=("intent", "outcome"),
            registry=self.registry,
        )
        self._submissions = Counter(
            "escrow_submissions_total",
            "Transaction submissions by label and final status",
            labelnames=("label", "status"),
            registry=self.registry,
        )
        self._retries = Counter(
            "escrow_rate_limit_retries_total",
            "Rate-limited calls that were retried",
            labelnames=("label",),
            registry=self.registry,
        )
        self._transitions = Counter(
            "escrow_lifecycle_transitions_total",
            "Lifecycle transitions by machine and target state",
            labelnames=("machine", "state"),
            registry=self.registry,
        )
        self._quotes = Counter(
            "escrow_trade_quotes_total",
            "Trade quotes by outcome (issued, accepted, discarded)",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._repairs = Counter(
            "escrow_reconciler_repairs_total",
            "Self-healing actions taken by the reconciler",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._active_escrows = Gauge(
            "escrow_active_escrows",
            "Escrows not yet in a terminal state",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
            self._started = True
            logger.info("Prometheus metrics exporter listening on port %s", self._port)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_intent(self, intent: str, outcome: str) -> None:
        self._intents.labels(intent=intent, outcome=outcome).inc()

    def record_submission(self, label: str, status: str) -> None:
        # Labels are bounded: drop per-pool suffixes such as "swap <pool_id>"
        self._submissions.labels(label=label.split(" ", 1)[0], status=status).inc()

    def record_retry(self, label: str) -> None:
        self._retries.labels(label=label).inc()

    def record_transition(self, machine: str, state: str) -> None:
        self._transitions.labels(machine=machine, state=state).inc()

    def record_quote(self, outcome: str) -> None:
        self._quotes.labels(outcome=outcome).inc()

    def record_repair(self, kind: str) -> None:
        self._repairs.labels(kind=kind).inc()

    def record_active_escrows(self, count: int) -> None:
        self._active_escrows.set(max(0, count))

    def sample(self, name: str, **labels) -> float:
        """Current value of a sample (0.0 when never recorded)."""
        value = self.registry.get_sample_value(name, labels or None)
        return value if value is not None else 0.0
