#!/usr/bin/env python3
"""
Keystone Operator - Main entry point for the Kopf-based Keystone operator.

Usage:
    python -m keystone_operator.operator
    # Or with kopf directly:
    kopf run -m keystone_operator.operator --all-namespaces

Environment Variables:
    KEYSTONE_OPERATOR_NAMESPACES: Comma-separated list of namespaces to watch
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    ENABLE_WEBHOOKS: Serve the admission webhooks
    RELATED_IMAGE_KEYSTONE_API_IMAGE_URL_DEFAULT: Default keystone-api image
"""

import logging
import random
import sys

import kopf
from kubernetes import config

# Import all handler modules to register them with kopf
from keystone_operator.handlers import keystone_api, keystone_service  # noqa: F401
from keystone_operator.models.keystone import KeystoneAPIDefaulter, KeystoneAPIDefaults
from keystone_operator.observability.health import HealthChecker
from keystone_operator.observability.logging import setup_structured_logging
from keystone_operator.observability.metrics import MetricsServer
from keystone_operator.settings import settings as operator_settings

# Kopf refuses to start when admission handlers are registered but no
# admission server is configured, so the webhook module is imported only
# when webhooks are enabled.
if operator_settings.enable_webhooks:
    from keystone_operator.webhooks import keystone as keystone_webhook  # noqa: F401

WEBHOOK_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs"

# Global reference to metrics server for cleanup
_global_metrics_server: MetricsServer | None = None


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
        webhook_log_level=operator_settings.webhook_log_level,
    )


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logging.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logging.info("Loaded kubeconfig configuration")
        except config.ConfigException:
            logging.error("Failed to load Kubernetes configuration")
            raise


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Configures peering and concurrency, loads the Kubernetes configuration,
    builds the KeystoneAPI defaulter shared by the webhook and the reconciler,
    and starts the metrics server.
    """
    logging.info("Starting Keystone Operator...")
    settings.watching.reconnect_backoff = 1.0

    # Each pod gets a unique priority to enable leader election
    settings.peering.name = operator_settings.operator_name
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )

    settings.execution.max_workers = operator_settings.max_workers

    watched_namespaces = operator_settings.watched_namespaces
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    load_kubernetes_config()

    defaults = KeystoneAPIDefaults(
        container_image_url=operator_settings.keystone_api_image
    )
    memo.keystone_api_defaults = defaults
    memo.keystone_api_defaulter = KeystoneAPIDefaulter(defaults)
    logging.info(f"KeystoneAPI default image: {defaults.container_image_url}")

    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        logging.info(
            "Metrics and health endpoints available on "
            f"{operator_settings.metrics_host}:{operator_settings.metrics_port}"
        )

        global _global_metrics_server
        _global_metrics_server = metrics_server

    except Exception as e:
        logging.error(f"Failed to start metrics server: {e}")
        # Don't fail operator startup if metrics server fails
        logging.warning("Continuing without metrics server")


@kopf.on.cleanup()
async def cleanup_handler(**_) -> None:
    """Stop the metrics server on shutdown."""
    logging.info("Shutting down Keystone Operator...")

    global _global_metrics_server
    if _global_metrics_server:
        try:
            await _global_metrics_server.stop()
            logging.info("Metrics server stopped")
        except Exception as e:
            logging.error(f"Error stopping metrics server: {e}")
        _global_metrics_server = None


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """
    Health check probe for Kubernetes liveness checks.

    Returns:
        Dictionary indicating operator health status
    """
    try:
        health_checker = HealthChecker()
        results = await health_checker.check_all()
        summary = health_checker.to_dict(results)
        return {
            "status": summary["status"],
            "operator": operator_settings.operator_name,
            "timestamp": str(summary["timestamp"]),
        }
    except Exception as e:
        logging.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "operator": operator_settings.operator_name,
            "error": str(e),
        }


@kopf.on.probe(id="ready")
async def readiness_check(**_) -> dict[str, str]:
    """Ready once the Kubernetes API answers and the CRDs are installed."""
    try:
        results = await HealthChecker().check_all()
        ready = all(r.status == "healthy" for r in results.values())
        return {
            "status": "ready" if ready else "not_ready",
            "operator": operator_settings.operator_name,
        }
    except Exception as e:
        logging.error(f"Readiness check failed: {e}")
        return {
            "status": "not_ready",
            "operator": operator_settings.operator_name,
            "error": str(e),
        }


def build_kopf_settings() -> kopf.OperatorSettings:
    """
    Build the kopf settings passed to ``kopf.run``.

    Admission webhooks must be configured before the operator starts so kopf
    can discover the admission handlers. Webhook configurations themselves are
    managed by the deployment manifests, not by kopf.
    """
    settings_obj = kopf.OperatorSettings()
    settings_obj.admission.managed = None
    if operator_settings.enable_webhooks:
        settings_obj.admission.server = kopf.WebhookServer(
            port=operator_settings.webhook_port,
            host="0.0.0.0",
            certfile=f"{WEBHOOK_CERT_DIR}/tls.crt",
            pkeyfile=f"{WEBHOOK_CERT_DIR}/tls.key",
        )
        logging.info(
            f"Admission webhooks ENABLED on port {operator_settings.webhook_port} "
            f"using certificates from {WEBHOOK_CERT_DIR}"
        )
    else:
        settings_obj.admission.server = None
        logging.info("Admission webhooks DISABLED")
    return settings_obj


def main() -> None:
    """
    Main entry point for the operator.

    Configures logging, the namespace scope and the admission server, then
    runs kopf until interrupted.
    """
    configure_logging()

    watched_namespaces = operator_settings.watched_namespaces
    settings_obj = build_kopf_settings()

    try:
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
                settings=settings_obj,
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
                settings=settings_obj,
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Operator failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
