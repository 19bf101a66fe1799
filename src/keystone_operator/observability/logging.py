"""
Structured logging utilities for the Keystone operator.

This module provides correlation ID tracking, structured log formatting
and audit records for identity and finalizer operations.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variable for tracking correlation IDs across async operations
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Paths that should be filtered from access logs (health probes)
HEALTH_PROBE_PATHS = frozenset({"/healthz", "/ready", "/metrics"})

STRUCTURED_FIELDS = (
    "resource_type",
    "resource_name",
    "namespace",
    "operation",
    "duration",
    "error_type",
    "audit",
    "stage",
    "condition",
    "requeue_after",
    "dependent",
    "finalizer",
    "identity_entity",
    "http_status",
    "fernet_action",
)


class HealthProbeFilter(logging.Filter):
    """
    Logging filter that suppresses health probe and metrics endpoint logs.

    Kubernetes probes and Prometheus scrapes hit these paths every few
    seconds and would otherwise drown reconciliation logs.
    """

    def __init__(self, suppress_health_logs: bool = True):
        super().__init__()
        self.suppress_health_logs = suppress_health_logs

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.suppress_health_logs:
            return True

        message = record.getMessage()
        return all(path not in message for path in HEALTH_PROBE_PATHS)


class CorrelationIDFilter(logging.Filter):
    """Logging filter that adds correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        current_correlation_id = correlation_id.get()
        if not current_correlation_id:
            current_correlation_id = generate_correlation_id()
            correlation_id.set(current_correlation_id)

        record.correlation_id = current_correlation_id
        return True


class StructuredFormatter(logging.Formatter):
    """
    Structured JSON formatter for logs with correlation ID support.

    Extra fields passed through ``extra=`` land on the record as attributes;
    only the names in ``STRUCTURED_FIELDS`` are copied into the output.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    """
    Generate a new correlation ID.

    Returns:
        Unique correlation ID string
    """
    return str(uuid.uuid4())[:8]


def set_correlation_id(corr_id: str) -> str:
    """
    Set the correlation ID for the current context.

    Args:
        corr_id: Correlation ID to set

    Returns:
        The correlation ID that was set
    """
    correlation_id.set(corr_id)
    return corr_id


def setup_structured_logging(
    log_level: str = "INFO",
    enable_json_formatting: bool = True,
    correlation_id_enabled: bool = True,
    log_health_probes: bool = False,
    webhook_log_level: str = "WARNING",
) -> None:
    """
    Set up structured logging for the operator.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json_formatting: Whether to use JSON formatting
        correlation_id_enabled: Whether to enable correlation ID tracking
        log_health_probes: Whether to log health probe requests
        webhook_log_level: Log level for the admission webhook loggers
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()

    if enable_json_formatting:
        formatter: logging.Formatter = StructuredFormatter()
    elif correlation_id_enabled:
        formatter = logging.Formatter(
            "%(asctime)s - %(correlation_id)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)

    if correlation_id_enabled:
        handler.addFilter(CorrelationIDFilter())

    if not log_health_probes:
        handler.addFilter(HealthProbeFilter(suppress_health_logs=True))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Third-party libraries are noisy at INFO
    for noisy in ("kopf", "httpx", "kubernetes", "aiohttp.access", "aiohttp.server"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    webhook_level = getattr(logging, webhook_log_level.upper(), logging.WARNING)
    logging.getLogger("keystone_operator.webhooks").setLevel(webhook_level)


class OperatorLogger:
    """
    Logger wrapper for reconcilers.

    Provides helpers for the events every reconciliation emits, each tagged
    with the resource identity so JSON output can be filtered per object.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_reconciliation_start(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        correlation_id: str | None = None,
    ) -> str:
        """
        Log the start of a reconciliation operation.

        Args:
            resource_type: Type of resource being reconciled
            resource_name: Name of the resource
            namespace: Namespace of the resource
            correlation_id: Optional correlation ID (will generate if not provided)

        Returns:
            The correlation ID used for this operation
        """
        if correlation_id is None:
            correlation_id = generate_correlation_id()

        set_correlation_id(correlation_id)

        self.logger.info(
            f"Starting reconciliation for {resource_type} {resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_start",
            },
        )

        return correlation_id

    def log_reconciliation_success(
        self, resource_type: str, resource_name: str, namespace: str, duration: float
    ) -> None:
        self.logger.info(
            f"Reconciliation completed for {resource_type} {resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_success",
                "duration": duration,
            },
        )

    def log_reconciliation_requeue(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        requeue_after: float,
        reason: str,
    ) -> None:
        """
        Log a bounded requeue caused by a dependency that is not ready.

        Args:
            resource_type: Type of resource
            resource_name: Name of the resource
            namespace: Namespace of the resource
            requeue_after: Delay in seconds before the next attempt
            reason: Human readable reason for the requeue
        """
        self.logger.info(
            f"Requeueing {resource_type} {resource_name} in {requeue_after}s: {reason}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_requeue",
                "requeue_after": requeue_after,
            },
        )

    def log_reconciliation_error(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        error: Exception,
        duration: float,
    ) -> None:
        self.logger.error(
            f"Reconciliation failed for {resource_type} {resource_name}: {error}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_error",
                "error_type": type(error).__name__,
                "duration": duration,
            },
            exc_info=True,
        )

    def log_finalizer_change(
        self, action: str, finalizer: str, dependent: str, namespace: str
    ) -> None:
        """
        Record an audit entry for a finalizer added to or removed from a dependent.

        Args:
            action: ``ensure`` or ``release``
            finalizer: The finalizer token
            dependent: ``kind/name`` of the dependent resource
            namespace: Namespace of the dependent resource
        """
        self.logger.info(
            f"Finalizer {finalizer} {action}d on {dependent}",
            extra={
                "operation": f"finalizer_{action}",
                "finalizer": finalizer,
                "dependent": dependent,
                "namespace": namespace,
                "audit": {
                    "event": "finalizer_change",
                    "action": action,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            },
        )

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with extra data."""
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with extra data."""
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with extra data."""
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        """Log error message with extra data."""
        self.logger.error(message, exc_info=exc_info, extra=kwargs)
