"""
Base reconciler class providing common patterns for resource reconciliation.

This module defines the BaseReconciler class that implements the scoped
reconciliation used by every Keystone resource: conditions are seeded from
the stored status, the resource-specific stages run, and a finalize step
folds the sub-conditions into Ready and writes the status on every exit
path, including errors.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..conditions import ConditionSet
from ..constants import (
    REASON_ERROR,
    REQUEUE_INIT_DELAY,
    SEVERITY_WARNING,
)
from ..errors import IdentityServiceError, KubernetesAPIError, OperatorError
from ..observability.logging import OperatorLogger
from ..observability.metrics import metrics_collector
from ..utils.identity_client import IdentityClientError
from ..utils.kubernetes import is_being_deleted


class StatusProtocol(Protocol):
    """Protocol for kopf Status objects that allow item assignment."""

    def __setitem__(self, key: str, value: Any) -> None: ...
    def __getitem__(self, key: str) -> Any: ...
    def get(self, key: str, default: Any = None) -> Any: ...


@dataclass
class ReconcileResult:
    """
    Outcome of one reconciliation pass.

    ``requeue_after`` is set when a prerequisite is missing or not ready yet;
    the handler turns it into a delayed retry.
    """

    requeue_after: float | None = None
    message: str = ""

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


@dataclass
class ReconcileContext:
    """Everything a stage needs to know about the object being reconciled."""

    name: str
    namespace: str
    body: dict[str, Any]
    conditions: ConditionSet
    status: StatusProtocol
    memo: Any = None

    @property
    def spec(self) -> dict[str, Any]:
        return self.body.get("spec") or {}

    @property
    def observed(self) -> dict[str, Any]:
        """Status as stored before this pass."""
        return self.body.get("status") or {}

    @property
    def metadata(self) -> dict[str, Any]:
        return self.body.get("metadata") or {}

    @property
    def finalizers(self) -> list[str]:
        return list(self.metadata.get("finalizers") or [])


class BaseReconciler(ABC):
    """
    Base class for all resource reconcilers.

    Provides common patterns for:
    - Condition seeding and the Ready aggregate
    - Error translation into kopf retry semantics
    - Kubernetes client management
    """

    resource_type = "resource"
    tracked_conditions: tuple[str, ...] = ()

    def __init__(self, k8s_client: client.ApiClient | None = None):
        """
        Initialize base reconciler.

        Args:
            k8s_client: Kubernetes API client, will be created if not provided
        """
        self.k8s_client = k8s_client
        self.logger = OperatorLogger(self.__class__.__name__)

    @property
    def kubernetes_client(self) -> client.ApiClient:
        """Get or create Kubernetes API client."""
        if self.k8s_client is None:
            from ..utils.kubernetes import get_kubernetes_client

            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    @property
    def core_api(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.kubernetes_client)

    @property
    def apps_api(self) -> client.AppsV1Api:
        return client.AppsV1Api(self.kubernetes_client)

    @property
    def batch_api(self) -> client.BatchV1Api:
        return client.BatchV1Api(self.kubernetes_client)

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self.kubernetes_client)

    async def reconcile(
        self,
        body: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        memo: Any = None,
        **kwargs,
    ) -> ReconcileResult:
        """
        Main reconciliation entry point.

        Routes to ``do_delete`` when the object carries a deletionTimestamp and
        to ``do_reconcile`` otherwise. An object without any recorded
        conditions only gets them seeded as Unknown and is requeued.

        Args:
            body: Full resource body as delivered by kopf
            name: Resource name
            namespace: Resource namespace
            status: Writable status (kopf ``patch.status``)
            memo: Per-object kopf memo
            **kwargs: Additional handler arguments

        Returns:
            The pass outcome, possibly asking for a requeue

        Raises:
            kopf.TemporaryError: For retryable operator errors
            kopf.PermanentError: For non-retryable operator errors
        """
        start_time = time.time()
        metadata = body.get("metadata") or {}
        generation = metadata.get("generation", 0)
        deleting = is_being_deleted(body)

        conditions = ConditionSet(
            self.tracked_conditions,
            (body.get("status") or {}).get("conditions"),
            generation=generation,
        )
        ctx = ReconcileContext(
            name=name,
            namespace=namespace,
            body=body,
            conditions=conditions,
            status=status,
            memo=memo,
        )

        self.logger.log_reconciliation_start(
            resource_type=self.resource_type, resource_name=name, namespace=namespace
        )

        async with metrics_collector.track_reconciliation(
            resource_type=self.resource_type,
            namespace=namespace,
            name=name,
            operation="delete" if deleting else "reconcile",
        ):
            try:
                if deleting:
                    result = await self.do_delete(ctx)
                elif conditions.is_empty:
                    conditions.init()
                    result = ReconcileResult(REQUEUE_INIT_DELAY, "conditions initialized")
                else:
                    conditions.reset()
                    result = await self.do_reconcile(ctx)

                if result.requeue:
                    metrics_collector.record_requeue(
                        self.resource_type, namespace, result.message or "requeue"
                    )
                    self.logger.log_reconciliation_requeue(
                        resource_type=self.resource_type,
                        resource_name=name,
                        namespace=namespace,
                        requeue_after=result.requeue_after,
                        reason=result.message,
                    )
                else:
                    self.logger.log_reconciliation_success(
                        resource_type=self.resource_type,
                        resource_name=name,
                        namespace=namespace,
                        duration=time.time() - start_time,
                    )
                return result

            except OperatorError as e:
                self._log_error(name, namespace, e, start_time)
                raise e.as_kopf_error() from e

            except ApiException as e:
                http_status = getattr(e, "status", None)
                error = KubernetesAPIError(
                    message=f"Kubernetes API call failed with status {http_status}",
                    reason=getattr(e, "reason", None),
                    retryable=http_status is None
                    or http_status >= 500
                    or http_status in (404, 409),
                )
                self._log_error(name, namespace, error, start_time)
                raise error.as_kopf_error() from e

            except IdentityClientError as e:
                error = IdentityServiceError(str(e), status_code=e.status_code)
                self._log_error(name, namespace, error, start_time)
                raise error.as_kopf_error() from e

            except Exception as e:
                self._log_error(name, namespace, e, start_time)
                raise

            finally:
                self.write_status(ctx, generation)

    def write_status(self, ctx: ReconcileContext, generation: int) -> None:
        """Finalize step: fold conditions into Ready and write them out."""
        ready = ctx.conditions.recompute_ready()
        ctx.status["conditions"] = ctx.conditions.to_list()
        ctx.status["observedGeneration"] = generation
        metrics_collector.update_resource_status(
            resource_type=self.resource_type,
            namespace=ctx.namespace,
            ready=ready["status"],
        )

    def _log_error(
        self, name: str, namespace: str, error: Exception, start_time: float
    ) -> None:
        self.logger.log_reconciliation_error(
            resource_type=self.resource_type,
            resource_name=name,
            namespace=namespace,
            error=error,
            duration=time.time() - start_time,
        )

    @contextmanager
    def stage(self, ctx: ReconcileContext, condition_type: str) -> Iterator[None]:
        """
        Mark ``condition_type`` False when the enclosed stage raises.

        The error itself propagates unchanged.
        """
        try:
            yield
        except Exception as e:
            ctx.conditions.set_false(
                condition_type,
                REASON_ERROR,
                SEVERITY_WARNING,
                f"{condition_type} error occurred {e}",
            )
            raise

    @abstractmethod
    async def do_reconcile(self, ctx: ReconcileContext) -> ReconcileResult:
        """
        Perform the actual reconciliation logic.

        This method must be implemented by subclasses to provide
        resource-specific reconciliation logic.

        Args:
            ctx: The object being reconciled

        Returns:
            The pass outcome
        """
        raise NotImplementedError("Subclasses must implement do_reconcile method")

    @abstractmethod
    async def do_delete(self, ctx: ReconcileContext) -> ReconcileResult:
        """
        Release everything the object holds so its finalizer can be removed.

        Returns:
            A result without ``requeue_after`` once the object's own finalizer
            may be dropped
        """
        raise NotImplementedError("Subclasses must implement do_delete method")
