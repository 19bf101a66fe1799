"""
Health checks backing the operator's /health and /ready endpoints.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from keystone_operator.constants import (
    KEYSTONE_API_PLURAL,
    KEYSTONE_GROUP,
    KEYSTONE_SERVICE_PLURAL,
)

logger = logging.getLogger(__name__)

REQUIRED_CRDS = (
    f"{KEYSTONE_API_PLURAL}.{KEYSTONE_GROUP}",
    f"{KEYSTONE_SERVICE_PLURAL}.{KEYSTONE_GROUP}",
)


@dataclass
class HealthCheckResult:
    """Result of a health check operation."""

    name: str
    status: str  # "healthy", "unhealthy"
    message: str
    details: dict[str, Any] | None = None
    duration: float = 0.0


class HealthChecker:
    """Checks the cluster-side prerequisites the operator depends on."""

    def __init__(self, k8s_client: client.ApiClient | None = None):
        self.k8s_client = k8s_client

    def _api_client(self) -> client.ApiClient:
        if not self.k8s_client:
            from keystone_operator.utils.kubernetes import get_kubernetes_client

            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    async def check_all(self) -> dict[str, HealthCheckResult]:
        results = {}
        for check in (self.check_kubernetes_api, self.check_crds_installed):
            result = await check()
            results[result.name] = result
        return results

    async def check_kubernetes_api(self) -> HealthCheckResult:
        """Check Kubernetes API connectivity."""
        start_time = time.time()
        try:
            core_api = client.CoreV1Api(self._api_client())
            core_api.list_namespace(limit=1, timeout_seconds=5)
        except ApiException as e:
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Kubernetes API error: {e.reason}",
                details={"status_code": e.status},
                duration=time.time() - start_time,
            )
        except Exception as e:
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Failed to connect to Kubernetes API: {e}",
                duration=time.time() - start_time,
            )

        return HealthCheckResult(
            name="kubernetes_api",
            status="healthy",
            message="Kubernetes API is accessible",
            duration=time.time() - start_time,
        )

    async def check_crds_installed(self) -> HealthCheckResult:
        """Check that the KeystoneAPI and KeystoneService CRDs are installed."""
        start_time = time.time()
        missing: list[str] = []
        try:
            api_extensions = client.ApiextensionsV1Api(self._api_client())
            for crd_name in REQUIRED_CRDS:
                try:
                    api_extensions.read_custom_resource_definition(name=crd_name)
                except ApiException as e:
                    if e.status != 404:
                        raise
                    missing.append(crd_name)
        except Exception as e:
            return HealthCheckResult(
                name="crds_installed",
                status="unhealthy",
                message=f"Failed to check CRDs: {e}",
                duration=time.time() - start_time,
            )

        if missing:
            return HealthCheckResult(
                name="crds_installed",
                status="unhealthy",
                message=f"Missing required CRDs: {', '.join(missing)}",
                details={"missing": missing},
                duration=time.time() - start_time,
            )
        return HealthCheckResult(
            name="crds_installed",
            status="healthy",
            message="All required CRDs are installed",
            duration=time.time() - start_time,
        )

    @staticmethod
    def to_dict(results: dict[str, HealthCheckResult]) -> dict[str, Any]:
        healthy = all(r.status == "healthy" for r in results.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": {
                name: {"status": r.status, "message": r.message}
                for name, r in results.items()
            },
        }
