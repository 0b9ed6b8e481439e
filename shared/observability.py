"""
Observability surface for the Task Manager state layer.
Integrates structured logging and metrics behind a single event API.
"""

from typing import Optional, Dict, Any

from .logging import configure_logging, get_logger
from .metrics import MetricsCollector, get_metrics_collector


# Event outcomes that indicate something went wrong and deserve a warning
_WARNING_OUTCOMES = {
    "rejected",
    "fail_open",
    "circuit_open",
    "store_failed",
    "invalid_payload",
    "retry_exhausted",
}


class ObservabilityManager:
    """Centralized observability manager for the state layer.

    Every rejected rate-limit check, circuit-open short-circuit and
    cache-store failure goes through :meth:`emit_event`, which writes one
    structured log line and bumps ``state_layer_events_total``.
    """

    def __init__(self, service_name: str, log_level: Optional[str] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name

        if log_level:
            configure_logging(service_name, log_level)

        self.metrics = metrics or get_metrics_collector(service_name)
        self.logger = get_logger(f"{service_name}.events")

    def emit_event(self, category: str, tenant_id: Optional[str], operation_class: str,
                   outcome: str, **fields: Any) -> Dict[str, Any]:
        """Emit a structured state layer event.

        Args:
            category: Emitting component (``cache``, ``token_cache``,
                ``rate_limit``, ``circuit_breaker``, ...).
            tenant_id: Tenant the event concerns, if any.
            operation_class: Operation class or cache category.
            outcome: Short machine-readable outcome (``rejected``,
                ``fail_open``, ``circuit_open``, ``store_failed``, ...).

        Returns:
            The event payload, mainly for tests.
        """
        event = {
            "category": category,
            "tenant_id": tenant_id,
            "operation_class": operation_class,
            "outcome": outcome,
            **fields,
        }

        log = self.logger.warning if outcome in _WARNING_OUTCOMES else self.logger.info
        log("State layer event", **event)

        self.metrics.increment_counter(
            "state_layer_events_total",
            category=category,
            operation_class=operation_class,
            outcome=outcome
        )
        return event

    def record_cache_access(self, category: str, hit: bool):
        """Count a cache hit or miss for a category."""
        metric = "cache_hits_total" if hit else "cache_misses_total"
        self.metrics.increment_counter(metric, category=category)

    def record_rate_limit_decision(self, operation_class: str, outcome: str):
        """Count a rate limit decision."""
        self.metrics.increment_counter(
            "rate_limit_decisions_total",
            operation_class=operation_class,
            outcome=outcome
        )

    def record_circuit_state(self, operation_class: str, state: str):
        """Publish a circuit breaker state transition."""
        self.metrics.record_circuit_state(operation_class, state)
