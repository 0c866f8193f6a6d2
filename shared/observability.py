"""
Observability helpers for the wallet billing layer.
Ties structured logging, Prometheus metrics and span events together.
"""

from typing import Optional

from opentelemetry import trace

from .logging import configure_logging, get_logger, set_request_id, set_wallet_context
from .metrics import MetricsCollector, get_metrics_collector


def add_span_attributes(**attributes):
    """Attach non-empty attributes to the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))


def add_span_event(name: str, **attributes):
    """Record an event on the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(name, {k: str(v) for k, v in attributes.items() if v is not None})


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, log_level: str = "info",
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.log_level = log_level

        configure_logging(service_name, log_level)
        self.metrics = metrics or get_metrics_collector(service_name)
        self.logger = get_logger(f"{service_name}.observability")

        self.logger.info("Observability initialized",
                         service=service_name,
                         log_level=log_level)

    def trace_request(self, request_id: Optional[str] = None,
                      wallet_address: Optional[str] = None,
                      chain_id: Optional[str] = None,
                      identity_id: Optional[str] = None):
        """Set up request context for logging and tracing."""
        if request_id:
            set_request_id(request_id)
        set_wallet_context(wallet_address, chain_id, identity_id)

        add_span_attributes(
            request_id=request_id,
            wallet_address=wallet_address,
            chain_id=chain_id,
            identity_id=identity_id
        )

    def log_error(self, error_type: str, error_message: str, **kwargs):
        """Log error with full context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )
        self.metrics.record_error(error_type)
        add_span_event("error", error_type=error_type, error_message=error_message)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type, **kwargs)


def get_observability_manager(service_name: str, **kwargs) -> ObservabilityManager:
    """Get an observability manager for a service."""
    return ObservabilityManager(service_name, **kwargs)
