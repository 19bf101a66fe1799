"""
Cross-resource finalizer coordination.

A consumer records a finalizer token on every dependent custom resource it
uses (a database, a database account, a topology, a KeystoneAPI) so the
dependent cannot disappear underneath it. The token is removed when the
consumer is deleted or stops referencing that dependent.

Finalizers are a set: adding a token twice or removing an absent token is a
no-op, so concurrent consumers of the same dependent never interfere with
each other beyond an optimistic-concurrency conflict, which is retried.
"""

from kubernetes import client
from kubernetes.client.rest import ApiException

from keystone_operator.constants import FINALIZER_PREFIX
from keystone_operator.observability.logging import OperatorLogger
from keystone_operator.observability.metrics import metrics_collector

from .kubernetes import ResourceRef, get_custom_object


def finalizer_token(owner_kind: str, owner_name: str) -> str:
    """Token a named owner places on its dependents, e.g. ``openstack.org/keystoneapi-keystone``."""
    return f"{FINALIZER_PREFIX}/{owner_kind.lower()}-{owner_name}"


class FinalizerCoordinator:
    """Adds and removes finalizer tokens on dependent custom resources."""

    def __init__(self, api: client.CustomObjectsApi):
        self.api = api
        self.logger = OperatorLogger(self.__class__.__name__)

    def ensure(self, token: str, ref: ResourceRef) -> bool:
        """
        Add ``token`` to the dependent's finalizers if absent.

        Args:
            token: Finalizer token of the consumer
            ref: Dependent resource

        Returns:
            True if the finalizer list was changed

        Raises:
            ApiException: If the dependent does not exist (404), or on a
                write conflict (409)
        """
        obj = self.api.get_namespaced_custom_object(**ref.api_kwargs())
        finalizers = list(obj.get("metadata", {}).get("finalizers") or [])
        if token in finalizers:
            return False

        finalizers.append(token)
        self._write(ref, obj, finalizers)
        self.logger.log_finalizer_change("ensure", token, ref.display, ref.namespace)
        metrics_collector.record_finalizer_change(ref.plural, "ensure")
        return True

    def release(self, token: str, ref: ResourceRef) -> bool:
        """
        Remove ``token`` from the dependent's finalizers if present.

        A dependent that no longer exists counts as released.

        Returns:
            True if the finalizer list was changed
        """
        obj = get_custom_object(self.api, ref)
        if obj is None:
            return False

        finalizers = list(obj.get("metadata", {}).get("finalizers") or [])
        if token not in finalizers:
            return False

        finalizers = [f for f in finalizers if f != token]
        try:
            self._write(ref, obj, finalizers)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        self.logger.log_finalizer_change("release", token, ref.display, ref.namespace)
        metrics_collector.record_finalizer_change(ref.plural, "release")
        return True

    def reassign(
        self, token: str, old: ResourceRef | None, new: ResourceRef | None
    ) -> None:
        """
        Move ``token`` from ``old`` to ``new``.

        The new dependent is claimed first so there is no window in which the
        consumer holds neither.
        """
        if new is not None:
            self.ensure(token, new)
        if old is not None and old != new:
            self.release(token, old)

    def _write(self, ref: ResourceRef, obj: dict, finalizers: list[str]) -> None:
        metadata = {"finalizers": finalizers}
        resource_version = obj.get("metadata", {}).get("resourceVersion")
        if resource_version:
            metadata["resourceVersion"] = resource_version
        self.api.patch_namespaced_custom_object(
            **ref.api_kwargs(), body={"metadata": metadata}
        )
