"""
Kubernetes utilities for the Keystone operator.

This module provides helper functions for interacting with the Kubernetes API:

- Kubernetes client management and configuration
- Addressing and reading custom resources owned by other operators
- Create-or-update helpers for the workloads the operator manages
- Readiness checks for deployments, jobs and custom resources
"""

import logging
from dataclasses import dataclass, replace
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from keystone_operator.constants import CONDITION_READY, CONDITION_TRUE

logger = logging.getLogger(__name__)


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    Tries the in-cluster service account first and falls back to the local
    kubeconfig for development.

    Returns:
        Configured Kubernetes API client
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


@dataclass(frozen=True)
class ResourceRef:
    """Coordinates of a namespaced custom resource."""

    group: str
    version: str
    plural: str
    namespace: str
    name: str

    @property
    def display(self) -> str:
        return f"{self.plural}/{self.name}"

    def renamed(self, name: str, namespace: str | None = None) -> "ResourceRef":
        return replace(self, name=name, namespace=namespace or self.namespace)

    def api_kwargs(self) -> dict[str, str]:
        return {
            "group": self.group,
            "version": self.version,
            "namespace": self.namespace,
            "plural": self.plural,
            "name": self.name,
        }


def get_custom_object(
    api: client.CustomObjectsApi, ref: ResourceRef
) -> dict[str, Any] | None:
    """
    Read a namespaced custom object.

    Args:
        api: CustomObjectsApi instance
        ref: Object coordinates

    Returns:
        The object, or None if it does not exist
    """
    try:
        return api.get_namespaced_custom_object(**ref.api_kwargs())
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def list_custom_objects(
    api: client.CustomObjectsApi,
    group: str,
    version: str,
    plural: str,
    namespace: str,
    label_selector: str | None = None,
) -> list[dict[str, Any]]:
    kwargs: dict[str, Any] = {}
    if label_selector:
        kwargs["label_selector"] = label_selector
    result = api.list_namespaced_custom_object(
        group=group, version=version, namespace=namespace, plural=plural, **kwargs
    )
    return list(result.get("items", []))


def apply_custom_object(
    api: client.CustomObjectsApi,
    ref: ResourceRef,
    kind: str,
    spec: dict[str, Any],
    labels: dict[str, str] | None = None,
    owner_references: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """
    Create a custom object, or merge-patch its spec and labels if it exists.

    Returns:
        The object as stored by the API server
    """
    existing = get_custom_object(api, ref)
    if existing is None:
        metadata: dict[str, Any] = {"name": ref.name, "namespace": ref.namespace}
        if labels:
            metadata["labels"] = labels
        if owner_references:
            metadata["ownerReferences"] = owner_references
        body = {
            "apiVersion": f"{ref.group}/{ref.version}",
            "kind": kind,
            "metadata": metadata,
            "spec": spec,
        }
        logger.info(f"Creating {kind} {ref.namespace}/{ref.name}")
        return api.create_namespaced_custom_object(
            group=ref.group,
            version=ref.version,
            namespace=ref.namespace,
            plural=ref.plural,
            body=body,
        )

    current_labels = existing.get("metadata", {}).get("labels") or {}
    if existing.get("spec") == {**existing.get("spec", {}), **spec} and all(
        current_labels.get(k) == v for k, v in (labels or {}).items()
    ):
        return existing

    patch: dict[str, Any] = {"spec": spec}
    if labels:
        patch["metadata"] = {"labels": labels}
    return api.patch_namespaced_custom_object(**ref.api_kwargs(), body=patch)


def is_resource_ready(obj: dict[str, Any] | None) -> bool:
    """True when a custom object reports a Ready=True condition."""
    if not obj:
        return False
    for condition in obj.get("status", {}).get("conditions") or []:
        if condition.get("type") == CONDITION_READY:
            return condition.get("status") == CONDITION_TRUE
    return False


def is_being_deleted(obj: dict[str, Any] | None) -> bool:
    return bool(obj and obj.get("metadata", {}).get("deletionTimestamp"))


def owner_reference(
    name: str, uid: str, kind: str, api_version: str
) -> dict[str, Any]:
    """Controller owner reference in the dict form used for custom objects."""
    return {
        "apiVersion": api_version,
        "kind": kind,
        "name": name,
        "uid": uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def set_owner_reference(
    resource: Any,
    owner_name: str,
    owner_uid: str,
    owner_kind: str,
    api_version: str,
) -> None:
    """
    Set owner reference for garbage collection.

    Args:
        resource: Kubernetes model object with ``metadata``
        owner_name: Name of the owner resource
        owner_uid: UID of the owner resource
        owner_kind: Kind of the owner resource
        api_version: API version of the owner resource
    """
    if resource.metadata.owner_references is None:
        resource.metadata.owner_references = []

    if any(ref.uid == owner_uid for ref in resource.metadata.owner_references):
        return

    resource.metadata.owner_references.append(
        client.V1OwnerReference(
            api_version=api_version,
            kind=owner_kind,
            name=owner_name,
            uid=owner_uid,
            controller=True,
            block_owner_deletion=True,
        )
    )


def apply_secret(core_api: client.CoreV1Api, secret: client.V1Secret) -> client.V1Secret:
    """
    Create the secret, or replace it wholesale if it exists.

    A secret that already carries a resourceVersion is replaced against that
    version, so a write computed from an outdated read fails with 409.
    """
    name = secret.metadata.name
    namespace = secret.metadata.namespace
    if secret.metadata.resource_version:
        return core_api.replace_namespaced_secret(
            name=name, namespace=namespace, body=secret
        )

    try:
        current = core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        logger.info(f"Creating secret {namespace}/{name}")
        return core_api.create_namespaced_secret(namespace=namespace, body=secret)

    secret.metadata.resource_version = current.metadata.resource_version
    return core_api.replace_namespaced_secret(
        name=name, namespace=namespace, body=secret
    )


def apply_config_map(
    core_api: client.CoreV1Api, config_map: client.V1ConfigMap
) -> client.V1ConfigMap:
    name = config_map.metadata.name
    namespace = config_map.metadata.namespace
    try:
        core_api.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        logger.info(f"Creating config map {namespace}/{name}")
        return core_api.create_namespaced_config_map(
            namespace=namespace, body=config_map
        )
    return core_api.replace_namespaced_config_map(
        name=name, namespace=namespace, body=config_map
    )


def apply_service(
    core_api: client.CoreV1Api, service: client.V1Service
) -> client.V1Service:
    """Create the service, or patch it so cluster-assigned fields survive."""
    name = service.metadata.name
    namespace = service.metadata.namespace
    try:
        core_api.read_namespaced_service(name=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        logger.info(f"Creating service {namespace}/{name}")
        return core_api.create_namespaced_service(namespace=namespace, body=service)
    return core_api.patch_namespaced_service(
        name=name, namespace=namespace, body=service
    )


def apply_deployment(
    apps_api: client.AppsV1Api, deployment: client.V1Deployment
) -> client.V1Deployment:
    name = deployment.metadata.name
    namespace = deployment.metadata.namespace
    try:
        apps_api.read_namespaced_deployment(name=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        logger.info(f"Creating deployment {namespace}/{name}")
        return apps_api.create_namespaced_deployment(
            namespace=namespace, body=deployment
        )
    return apps_api.replace_namespaced_deployment(
        name=name, namespace=namespace, body=deployment
    )


def apply_cron_job(
    batch_api: client.BatchV1Api, cron_job: client.V1CronJob
) -> client.V1CronJob:
    name = cron_job.metadata.name
    namespace = cron_job.metadata.namespace
    try:
        batch_api.read_namespaced_cron_job(name=name, namespace=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        logger.info(f"Creating cron job {namespace}/{name}")
        return batch_api.create_namespaced_cron_job(namespace=namespace, body=cron_job)
    return batch_api.replace_namespaced_cron_job(
        name=name, namespace=namespace, body=cron_job
    )


def deployment_is_ready(deployment: client.V1Deployment, replicas: int) -> bool:
    """
    Check whether a deployment has fully rolled out.

    The controller must have observed the latest generation and every desired
    replica must be both updated and ready. A deployment past its progress
    deadline is still just "not ready"; the caller keeps waiting.
    """
    status = deployment.status
    if status is None:
        return False
    if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
        return False
    return (status.ready_replicas or 0) >= replicas and (
        status.updated_replicas or 0
    ) >= replicas


JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_RUNNING = "running"


def job_state(job: client.V1Job) -> str:
    """Collapse a Job status into succeeded, failed or running."""
    status = job.status
    if status is None:
        return JOB_RUNNING
    for condition in status.conditions or []:
        if condition.status != "True":
            continue
        if condition.type == "Complete":
            return JOB_SUCCEEDED
        if condition.type == "Failed":
            return JOB_FAILED
    if status.succeeded:
        return JOB_SUCCEEDED
    return JOB_RUNNING
