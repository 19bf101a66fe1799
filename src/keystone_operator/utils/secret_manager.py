"""
Secret access for the Keystone operator.

Reads input secrets (admin and service passwords, TLS material) and writes
the secrets the operator generates (rendered configuration, fernet keys,
client configuration).
"""

import base64
import logging
from collections.abc import Iterable
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..errors import KubernetesAPIError, SecretDataError
from .kubernetes import apply_secret

logger = logging.getLogger(__name__)


def encode_data(data: dict[str, str]) -> dict[str, str]:
    """Base64-encode string values for ``V1Secret.data``."""
    return {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}


def decode_data(data: dict[str, str] | None) -> dict[str, str]:
    """Decode ``V1Secret.data`` into strings."""
    return {k: base64.b64decode(v).decode() for k, v in (data or {}).items()}


class SecretManager:
    """Reads and writes namespaced secrets."""

    def __init__(self, k8s_client: client.ApiClient | None = None):
        """
        Initialize secret manager.

        Args:
            k8s_client: Optional Kubernetes API client
        """
        self.k8s_client = k8s_client
        self._v1: client.CoreV1Api | None = None

    @property
    def v1(self) -> client.CoreV1Api:
        """Get CoreV1Api client."""
        if self._v1 is None:
            if self.k8s_client:
                self._v1 = client.CoreV1Api(self.k8s_client)
            else:
                self._v1 = client.CoreV1Api()
        return self._v1

    async def get_secret(self, name: str, namespace: str) -> client.V1Secret | None:
        """
        Retrieve a secret.

        Args:
            name: Secret name
            namespace: Secret namespace

        Returns:
            Secret object if found, None if not found

        Raises:
            KubernetesAPIError: If read fails for reasons other than 404
        """
        try:
            return self.v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesAPIError(
                f"Failed to read secret {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e

    async def get_secret_data(
        self, name: str, namespace: str, keys: Iterable[str] | None = None
    ) -> dict[str, str] | None:
        """
        Decoded data of a secret.

        Args:
            name: Secret name
            namespace: Secret namespace
            keys: Only decode these fields; the others may hold binary values
                such as keystores

        Returns:
            The decoded fields, or None when the secret does not exist

        Raises:
            SecretDataError: If a decoded field is not UTF-8 text
        """
        secret = await self.get_secret(name, namespace)
        if secret is None:
            return None

        wanted = set(keys) if keys is not None else None
        decoded = {}
        for key, value in (secret.data or {}).items():
            if wanted is not None and key not in wanted:
                continue
            try:
                decoded[key] = base64.b64decode(value).decode()
            except UnicodeDecodeError as e:
                raise SecretDataError(namespace, name, key) from e
        return decoded

    async def get_secret_field(self, name: str, namespace: str, key: str) -> str | None:
        """
        Resolve one field of a secret.

        Returns:
            The decoded value, or None when the secret or the key is missing.
            Callers treat None as "not ready yet" and requeue.
        """
        data = await self.get_secret_data(name, namespace, keys=[key])
        if data is None:
            logger.debug(f"Secret {namespace}/{name} not found")
            return None
        return data.get(key)

    async def store_secret(
        self,
        name: str,
        namespace: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
        owner_references: list[client.V1OwnerReference] | None = None,
        resource_version: str | None = None,
    ) -> client.V1Secret:
        """
        Create or replace a secret holding ``data`` in one write.

        Passing the ``resource_version`` the data was computed from makes the
        write fail with a Conflict if the secret changed since.

        Raises:
            KubernetesAPIError: If the write fails
        """
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels,
                annotations=annotations,
                owner_references=owner_references,
                resource_version=resource_version,
            ),
            type="Opaque",
            data=encode_data(data),
        )
        try:
            return apply_secret(self.v1, body)
        except ApiException as e:
            raise KubernetesAPIError(
                f"Failed to write secret {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e

    @staticmethod
    def annotations_of(secret: client.V1Secret | None) -> dict[str, Any]:
        if secret is None or secret.metadata is None:
            return {}
        return dict(secret.metadata.annotations or {})
