"""Background health monitor for the content pipeline.

The monitor probes registered components on a daemon thread, aggregates
pipeline metrics from ``pipeline_completed`` events, and publishes ``alert``
events when a threshold is breached. It only reads pipeline data.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil

from .config import Settings, get_settings
from .events import Event, EventChannel

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 1000
COMPONENT_HISTORY_LIMIT = 100

Probe = Callable[[], Optional[Dict[str, Any]]]


@dataclass
class ComponentHealth:
    status: str
    response_time_ms: float
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class HealthCheck:
    components: Dict[str, ComponentHealth]
    overall_score: float
    overall_status: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Alert:
    id: str
    timestamp: datetime
    type: str
    severity: str
    metric: str
    value: float
    threshold: float
    message: str


@dataclass
class PipelineMetrics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    throughput_per_minute: float = 0.0
    average_quality_score: float = 0.0
    quality_distribution: Dict[str, int] = field(
        default_factory=lambda: {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
    )
    error_rate: float = 0.0
    average_response_time_ms: float = 0.0
    memory_utilization: float = 0.0
    component_counters: Dict[str, Dict[str, int]] = field(default_factory=dict)


@dataclass
class MonitorCycle:
    health: HealthCheck
    metrics: PipelineMetrics
    alerts: List[Alert]


# --- Helpers --------------------------------------------------------------

def overall_status_for(score: float) -> str:
    if score >= 0.9:
        return "healthy"
    if score >= 0.6:
        return "warning"
    return "unhealthy"


def quality_bucket(score: float) -> str:
    if score >= 0.9:
        return "excellent"
    if score >= 0.7:
        return "good"
    if score >= 0.5:
        return "fair"
    return "poor"


def read_memory_utilization() -> float:
    """System memory in use, as a fraction of total."""
    return psutil.virtual_memory().percent / 100


# --- Monitor --------------------------------------------------------------

class PipelineMonitor:
    """Periodic component probes, event-driven metrics, and threshold alerts."""

    def __init__(
        self,
        events: EventChannel,
        *,
        probes: Dict[str, Probe] | None = None,
        settings: Settings | None = None,
        memory_probe: Callable[[], float] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.settings = settings or get_settings()
        self.events = events
        self._probes: Dict[str, Probe] = dict(probes or {})
        self._memory_probe = memory_probe or read_memory_utilization
        self._clock = clock or time.perf_counter
        self._started_at = time.monotonic()

        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._durations: Deque[float] = deque(maxlen=SAMPLE_LIMIT)
        self._quality_scores: Deque[float] = deque(maxlen=SAMPLE_LIMIT)
        self._distribution = {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
        self._total = 0
        self._successful = 0
        self._first_event_at: float | None = None

        self._component_history: Dict[str, Deque[ComponentHealth]] = {}
        self._alerts: Deque[Alert] = deque(maxlen=self.settings.alert_history_limit)
        self.last_health: HealthCheck | None = None
        self.last_status: str | None = None

        self._unsubscribe = events.subscribe(self._on_pipeline_completed, "pipeline_completed")

    # --- Lifecycle ----------------------------------------------------------

    @property
    def status(self) -> str:
        thread = self._thread
        return "monitoring" if thread is not None and thread.is_alive() else "stopped"

    def register_component(self, name: str, probe: Probe) -> None:
        with self._lock:
            self._probes[name] = probe

    def start(self) -> None:
        """Start the background loop; a second call while running is a no-op."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._loop, name="pipeline-monitor", daemon=True
            )
            self._thread.start()
        logger.info(
            "Pipeline monitor started (interval %.1fs)", self.settings.monitor_interval_seconds
        )

    def stop(self) -> None:
        """Stop the loop and wait for it; safe to call when already stopped."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._stop.set()
        thread.join()
        logger.info("Pipeline monitor stopped")

    def close(self) -> None:
        self.stop()
        self._unsubscribe()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Monitor cycle failed")
            if self._stop.wait(self.settings.monitor_interval_seconds):
                break

    # --- Cycle --------------------------------------------------------------

    def run_cycle(self) -> MonitorCycle:
        """Probe components, collect metrics, and raise alerts once."""
        with self._cycle_lock:
            health = self.check_health()
            metrics = self.collect_metrics()
            alerts = self.evaluate_thresholds(health, metrics)
            self.events.publish(
                "health_check",
                {
                    "overall_status": health.overall_status,
                    "overall_score": health.overall_score,
                    "components": {
                        name: component.status for name, component in health.components.items()
                    },
                    "alerts": len(alerts),
                },
            )
        logger.debug(
            "Health check: %s (%.0f%%)", health.overall_status, health.overall_score * 100
        )
        return MonitorCycle(health=health, metrics=metrics, alerts=alerts)

    def check_health(self) -> HealthCheck:
        with self._lock:
            probes = dict(self._probes)

        components: Dict[str, ComponentHealth] = {}
        for name, probe in probes.items():
            start = self._clock()
            try:
                details = probe() or {}
                status = str(details.get("status", "healthy"))
            except Exception as exc:
                logger.warning("Component %s unhealthy: %s", name, exc)
                details = {"error": str(exc)}
                status = "unhealthy"
            elapsed_ms = (self._clock() - start) * 1000
            components[name] = ComponentHealth(
                status=status, response_time_ms=elapsed_ms, details=dict(details)
            )

        healthy = sum(1 for component in components.values() if component.status == "healthy")
        score = healthy / len(components) if components else 1.0
        health = HealthCheck(
            components=components,
            overall_score=score,
            overall_status=overall_status_for(score),
        )

        with self._lock:
            for name, component in components.items():
                history = self._component_history.setdefault(
                    name, deque(maxlen=COMPONENT_HISTORY_LIMIT)
                )
                history.append(component)
            self.last_health = health
            self.last_status = health.overall_status
        return health

    def _on_pipeline_completed(self, event: Event) -> None:
        payload = event.payload
        with self._lock:
            if self._first_event_at is None:
                self._first_event_at = time.monotonic()
            self._total += 1
            if payload.get("success"):
                self._successful += 1
            duration = payload.get("duration_ms")
            if isinstance(duration, (int, float)):
                self._durations.append(float(duration))
            quality = payload.get("quality_score")
            if isinstance(quality, (int, float)):
                self._quality_scores.append(float(quality))
                self._distribution[quality_bucket(float(quality))] += 1

    def collect_metrics(self) -> PipelineMetrics:
        memory = self._memory_probe()
        with self._lock:
            total = self._total
            failed = total - self._successful
            window_minutes = 0.0
            if self._first_event_at is not None:
                window_minutes = max((time.monotonic() - self._first_event_at) / 60, 1 / 60)
            counters = {
                name: {
                    "checks": len(history),
                    "healthy": sum(1 for c in history if c.status == "healthy"),
                    "failures": sum(1 for c in history if c.status == "unhealthy"),
                }
                for name, history in self._component_history.items()
            }
            return PipelineMetrics(
                total_executions=total,
                successful_executions=self._successful,
                failed_executions=failed,
                throughput_per_minute=total / window_minutes if window_minutes else 0.0,
                average_quality_score=(
                    sum(self._quality_scores) / len(self._quality_scores)
                    if self._quality_scores
                    else 0.0
                ),
                quality_distribution=dict(self._distribution),
                error_rate=failed / total if total else 0.0,
                average_response_time_ms=(
                    sum(self._durations) / len(self._durations) if self._durations else 0.0
                ),
                memory_utilization=memory,
                component_counters=counters,
            )

    # --- Alerts -------------------------------------------------------------

    def _raise_alert(
        self,
        alert_type: str,
        severity: str,
        metric: str,
        value: float,
        threshold: float,
        message: str,
    ) -> Alert:
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            timestamp=datetime.now(timezone.utc),
            type=alert_type,
            severity=severity,
            metric=metric,
            value=value,
            threshold=threshold,
            message=message,
        )
        with self._lock:
            self._alerts.append(alert)
        logger.warning("Alert: %s", message)
        self.events.publish("alert", dataclasses.asdict(alert))
        return alert

    def evaluate_thresholds(self, health: HealthCheck, metrics: PipelineMetrics) -> List[Alert]:
        settings = self.settings
        alerts: List[Alert] = []

        if metrics.memory_utilization > settings.alert_memory_utilization:
            alerts.append(
                self._raise_alert(
                    "threshold",
                    "warning",
                    "memory_utilization",
                    metrics.memory_utilization,
                    settings.alert_memory_utilization,
                    f"Memory utilization {metrics.memory_utilization:.0%} exceeds "
                    f"{settings.alert_memory_utilization:.0%}.",
                )
            )

        for name, component in health.components.items():
            if component.status == "unhealthy":
                reason = component.details.get("error") or component.details.get("message")
                alerts.append(
                    self._raise_alert(
                        "component_unhealthy",
                        "critical",
                        f"component:{name}",
                        0.0,
                        1.0,
                        f"Component {name} is unhealthy"
                        + (f": {reason}." if reason else "."),
                    )
                )
            if component.response_time_ms > settings.alert_response_time_ms:
                alerts.append(
                    self._raise_alert(
                        "threshold",
                        "warning",
                        f"response_time:{name}",
                        component.response_time_ms,
                        settings.alert_response_time_ms,
                        f"Component {name} responded in {component.response_time_ms:.0f} ms.",
                    )
                )

        if health.overall_score < settings.alert_health_score:
            alerts.append(
                self._raise_alert(
                    "threshold",
                    "critical" if health.overall_status == "unhealthy" else "warning",
                    "health_score",
                    health.overall_score,
                    settings.alert_health_score,
                    f"Overall health score {health.overall_score:.2f} is below "
                    f"{settings.alert_health_score:.2f}.",
                )
            )

        if metrics.error_rate > settings.alert_error_rate:
            alerts.append(
                self._raise_alert(
                    "error_spike",
                    "critical",
                    "error_rate",
                    metrics.error_rate,
                    settings.alert_error_rate,
                    f"Error rate {metrics.error_rate:.2%} exceeds {settings.alert_error_rate:.2%}.",
                )
            )
        return alerts

    # --- Read-only views ------------------------------------------------------

    def get_alerts(self, limit: int = 10) -> List[Alert]:
        """Most recent alerts first."""
        with self._lock:
            alerts = list(self._alerts)
        return list(reversed(alerts))[:limit]

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            health = self.last_health
        return {
            "status": self.status,
            "last_status": self.last_status,
            "components": (
                {name: dataclasses.asdict(c) for name, c in health.components.items()}
                if health
                else {}
            ),
            "alerts": [dataclasses.asdict(alert) for alert in self.get_alerts(10)],
            "last_check": health.timestamp.isoformat() if health else None,
            "uptime_seconds": time.monotonic() - self._started_at,
        }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dataclasses.asdict(self.collect_metrics())
        metrics["monitoring_active"] = self.status == "monitoring"
        return metrics

    def component_metrics(self, name: str) -> Dict[str, Any] | None:
        with self._lock:
            history = list(self._component_history.get(name, ()))
        if not history:
            return None
        return {
            "name": name,
            "status": history[-1].status,
            "checks": len(history),
            "average_response_time_ms": sum(c.response_time_ms for c in history) / len(history),
            "uptime": sum(1 for c in history if c.status == "healthy") / len(history),
        }
