"""
Shared metrics configuration for the OpsFlow task engine.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so that several engines (one per test,
    or one per tenant shard) can live in the same process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        self._setup_task_engine_metrics()

    def _setup_task_engine_metrics(self):
        """Set up rule engine, queue and routing metrics."""
        self._metrics["tasks_enqueued_total"] = Counter(
            "tasks_enqueued_total",
            "Total tasks enqueued",
            ["source_module"],
            registry=self.registry
        )

        self._metrics["duplicate_tasks_suppressed_total"] = Counter(
            "duplicate_tasks_suppressed_total",
            "Task creations suppressed by the de-duplication guard",
            ["rule_id"],
            registry=self.registry
        )

        self._metrics["duplicate_open_tasks_total"] = Counter(
            "duplicate_open_tasks_total",
            "Re-queued tasks that share their rule and entity with another open task",
            ["rule_id"],
            registry=self.registry
        )

        self._metrics["tasks_escalated_total"] = Counter(
            "tasks_escalated_total",
            "Overdue tasks escalated to a more urgent band",
            ["from_priority", "to_priority"],
            registry=self.registry
        )

        self._metrics["unassigned_tasks_routed_total"] = Counter(
            "unassigned_tasks_routed_total",
            "Unassigned task sweep outcomes",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["task_transitions_total"] = Counter(
            "task_transitions_total",
            "Task status transitions",
            ["from_status", "to_status"],
            registry=self.registry
        )

        self._metrics["retries_exhausted_total"] = Counter(
            "retries_exhausted_total",
            "Tasks that ended in failed after consuming every retry",
            registry=self.registry
        )

        self._metrics["rules_skipped_total"] = Counter(
            "rules_skipped_total",
            "Malformed rules skipped during evaluation",
            ["rule_id"],
            registry=self.registry
        )

        self._metrics["identity_resolutions_total"] = Counter(
            "identity_resolutions_total",
            "Identity resolutions by resolution method",
            ["method"],
            registry=self.registry
        )

        self._metrics["rule_evaluation_duration_seconds"] = Histogram(
            "rule_evaluation_duration_seconds",
            "Time spent matching the catalog against one entity",
            registry=self.registry
        )

        self._metrics["catalog_version"] = Gauge(
            "catalog_version",
            "Version of the active detection rule catalog",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.observe(value)

    def sample(self, metric_name: str, **labels) -> float:
        """Current value of a counter or gauge sample, 0.0 when never set."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return 0.0
        suffix = "_total" if isinstance(metric, Counter) else ""
        name = metric._name + suffix
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
