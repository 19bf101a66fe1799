"""
Prometheus metrics for the Keystone operator.

This module provides metrics collection for reconciliation, identity API
traffic and fernet key rotation, plus the HTTP server that exposes them.
"""

import logging
import time
from contextlib import asynccontextmanager

# aiohttp comes in with kopf; the metrics server reuses it
from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .health import HealthChecker

logger = logging.getLogger(__name__)

_metrics_registry: CollectorRegistry | None = None

RECONCILIATION_TOTAL = Counter(
    "keystone_operator_reconciliation_total",
    "Total number of reconciliation attempts",
    ["resource_type", "namespace", "name", "result"],
    registry=None,
)

RECONCILIATION_DURATION = Histogram(
    "keystone_operator_reconciliation_duration_seconds",
    "Time spent on reconciliation operations",
    ["resource_type", "namespace", "operation"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=None,
)

RECONCILIATION_ERRORS = Counter(
    "keystone_operator_reconciliation_errors_total",
    "Total number of reconciliation errors",
    ["resource_type", "namespace", "error_type", "retryable"],
    registry=None,
)

RECONCILIATION_REQUEUES = Counter(
    "keystone_operator_reconciliation_requeues_total",
    "Total number of bounded requeues caused by dependencies that are not ready",
    ["resource_type", "namespace", "condition"],
    registry=None,
)

ACTIVE_RESOURCES = Gauge(
    "keystone_operator_active_resources",
    "Number of managed resources by readiness",
    ["resource_type", "namespace", "ready"],
    registry=None,
)

IDENTITY_API_REQUESTS = Counter(
    "keystone_operator_identity_api_requests_total",
    "Total number of requests issued against the Keystone identity API",
    ["method", "entity", "status"],
    registry=None,
)

FERNET_KEY_RING_CHANGES = Counter(
    "keystone_operator_fernet_key_ring_changes_total",
    "Total number of fernet key ring changes",
    ["namespace", "name", "action"],
    registry=None,
)

FERNET_LAST_ROTATION_TIMESTAMP = Gauge(
    "keystone_operator_fernet_last_rotation_timestamp",
    "Unix timestamp of the last fernet key rotation",
    ["namespace", "name"],
    registry=None,
)

FINALIZER_OPERATIONS = Counter(
    "keystone_operator_finalizer_operations_total",
    "Total number of finalizer changes on dependent resources",
    ["kind", "action"],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry
    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()
        for metric in [
            RECONCILIATION_TOTAL,
            RECONCILIATION_DURATION,
            RECONCILIATION_ERRORS,
            RECONCILIATION_REQUEUES,
            ACTIVE_RESOURCES,
            IDENTITY_API_REQUESTS,
            FERNET_KEY_RING_CHANGES,
            FERNET_LAST_ROTATION_TIMESTAMP,
            FINALIZER_OPERATIONS,
        ]:
            _metrics_registry.register(metric)
    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the Keystone operator."""

    def __init__(self):
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_reconciliation(
        self,
        resource_type: str,
        namespace: str,
        name: str,
        operation: str = "reconcile",
    ):
        """
        Context manager to track reconciliation operations.

        Args:
            resource_type: Type of resource being reconciled
            namespace: Namespace of the resource
            name: Name of the resource
            operation: Type of operation being performed
        """
        start_time = time.time()
        result = "unknown"

        try:
            yield
            result = "success"
        except Exception as e:
            result = "error"
            retryable = "true" if getattr(e, "retryable", False) else "false"
            RECONCILIATION_ERRORS.labels(
                resource_type=resource_type,
                namespace=namespace,
                error_type=type(e).__name__,
                retryable=retryable,
            ).inc()
            raise
        finally:
            RECONCILIATION_TOTAL.labels(
                resource_type=resource_type,
                namespace=namespace,
                name=name,
                result=result,
            ).inc()
            RECONCILIATION_DURATION.labels(
                resource_type=resource_type, namespace=namespace, operation=operation
            ).observe(time.time() - start_time)

    def record_requeue(self, resource_type: str, namespace: str, condition: str):
        RECONCILIATION_REQUEUES.labels(
            resource_type=resource_type, namespace=namespace, condition=condition
        ).inc()

    def update_resource_status(
        self, resource_type: str, namespace: str, ready: str, count: int = 1
    ):
        """
        Update the count of resources with a given Ready status.

        Args:
            resource_type: Type of resource
            namespace: Namespace of the resource
            ready: Value of the aggregate Ready condition
            count: Number of resources (default: 1)
        """
        ACTIVE_RESOURCES.labels(
            resource_type=resource_type, namespace=namespace, ready=ready
        ).set(count)

    def record_identity_request(self, method: str, entity: str, status: int | str):
        IDENTITY_API_REQUESTS.labels(
            method=method, entity=entity, status=str(status)
        ).inc()

    def record_fernet_change(self, namespace: str, name: str, action: str):
        """
        Record a fernet key ring change.

        Args:
            namespace: Namespace of the KeystoneAPI
            name: Name of the KeystoneAPI
            action: ``created``, ``resized`` or ``rotated``
        """
        FERNET_KEY_RING_CHANGES.labels(
            namespace=namespace, name=name, action=action
        ).inc()
        if action in ("created", "rotated"):
            FERNET_LAST_ROTATION_TIMESTAMP.labels(namespace=namespace, name=name).set(
                time.time()
            )

    def record_finalizer_change(self, kind: str, action: str):
        FINALIZER_OPERATIONS.labels(kind=kind, action=action).inc()


class MetricsServer:
    """HTTP server for exposing Prometheus metrics and health endpoints."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
        """
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None

        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        try:
            metrics_data = generate_latest(get_metrics_registry())
            return Response(
                body=metrics_data, headers={"Content-Type": CONTENT_TYPE_LATEST}
            )
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _health_handler(self, request: Request) -> Response:
        health_checker = HealthChecker()
        results = await health_checker.check_all()
        body = health_checker.to_dict(results)
        return json_response(body, status=200 if body["status"] == "healthy" else 503)

    async def _ready_handler(self, request: Request) -> Response:
        """Ready once the Kubernetes API answers; CRDs are reported by /health."""
        result = await HealthChecker().check_kubernetes_api()
        ready = result.status == "healthy"
        return json_response(
            {
                "status": "ready" if ready else "not_ready",
                "timestamp": time.time(),
                "checks": {"kubernetes_api": result.status},
            },
            status=200 if ready else 503,
        )

    async def _healthz_handler(self, request: Request) -> Response:
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        try:
            self.runner = AppRunner(self.app)
            await self.runner.setup()

            self.site = TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"Metrics server started on {self.host}:{self.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the metrics server."""
        try:
            if self.site:
                await self.site.stop()
                self.site = None

            if self.runner:
                await self.runner.cleanup()
                self.runner = None

            logger.info("Metrics server stopped")
        except Exception as e:
            logger.error(f"Error stopping metrics server: {e}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()


# Global metrics collector instance
metrics_collector = MetricsCollector()
