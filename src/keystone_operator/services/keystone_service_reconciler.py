"""
KeystoneService reconciler - Registers a service and its user in Keystone.

The identity backend is the source of truth for what exists: every pass looks
entities up by name before creating them, so a service or user created by an
earlier, interrupted pass (or by hand) is adopted instead of duplicated.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import pydantic
from kubernetes import client

from ..constants import (
    CA_BUNDLE_KEY,
    CONDITION_ADMIN_CLIENT_READY,
    CONDITION_KEYSTONE_API_READY,
    CONDITION_OS_SERVICE_READY,
    CONDITION_OS_USER_READY,
    DEFAULT_DOMAIN,
    DEFAULT_SERVICE_PROJECT,
    DEFAULT_SERVICE_ROLES,
    KEYSTONE_API_PLURAL,
    KEYSTONE_GROUP,
    KEYSTONE_SERVICE_CONDITIONS,
    KEYSTONE_SERVICE_KIND,
    KEYSTONE_VERSION,
    MESSAGE_NOT_FOUND,
    MESSAGE_WAITING,
    REASON_ERROR,
    REASON_NOT_FOUND,
    REASON_REQUESTED,
    REQUEUE_DEPENDENCY_DELAY,
    REQUEUE_SECRET_DELAY,
    SEVERITY_INFO,
    SEVERITY_WARNING,
)
from ..errors import ConfigurationError, ValidationError
from ..models.keystone import KeystoneServiceSpec
from ..utils.finalizers import FinalizerCoordinator, finalizer_token
from ..utils.identity_client import (
    IdentityClient,
    IdentityNotFoundError,
    get_admin_identity_client,
)
from ..utils.kubernetes import (
    ResourceRef,
    is_being_deleted,
    is_resource_ready,
    list_custom_objects,
)
from ..utils.secret_manager import SecretManager
from .base_reconciler import BaseReconciler, ReconcileContext, ReconcileResult

AdminClientFactory = Callable[
    [dict[str, Any], str, float, str | None], Awaitable[IdentityClient | None]
]


class KeystoneServiceReconciler(BaseReconciler):
    """
    Reconciler for KeystoneService resources.

    Ensures the service entity, the ``service`` project, the service user and
    its ``admin`` and ``service`` role assignments exist, and places a
    finalizer on the KeystoneAPI so the identity service outlives every
    registration made through it.
    """

    resource_type = "keystoneservice"
    tracked_conditions = KEYSTONE_SERVICE_CONDITIONS

    def __init__(
        self,
        k8s_client: client.ApiClient | None = None,
        admin_client_factory: AdminClientFactory = get_admin_identity_client,
        request_timeout: float = 30.0,
    ):
        super().__init__(k8s_client)
        self.admin_client_factory = admin_client_factory
        self.request_timeout = request_timeout

    @property
    def secrets(self) -> SecretManager:
        return SecretManager(self.kubernetes_client)

    @property
    def finalizers(self) -> FinalizerCoordinator:
        return FinalizerCoordinator(self.custom_api)

    def find_keystone_api(self, namespace: str) -> dict[str, Any] | None:
        """
        Locate the KeystoneAPI serving this namespace.

        Returns:
            The KeystoneAPI, or None when the namespace has none

        Raises:
            ConfigurationError: If the namespace holds more than one
        """
        items = list_custom_objects(
            self.custom_api,
            KEYSTONE_GROUP,
            KEYSTONE_VERSION,
            KEYSTONE_API_PLURAL,
            namespace,
        )
        if not items:
            return None
        if len(items) > 1:
            raise ConfigurationError(
                f"Found {len(items)} KeystoneAPI resources in namespace {namespace}, "
                "expected exactly one",
                retryable=True,
            )
        return items[0]

    @staticmethod
    def api_ref(keystone_api: dict[str, Any]) -> ResourceRef:
        metadata = keystone_api.get("metadata") or {}
        return ResourceRef(
            KEYSTONE_GROUP,
            KEYSTONE_VERSION,
            KEYSTONE_API_PLURAL,
            metadata.get("namespace", ""),
            metadata.get("name", ""),
        )

    @staticmethod
    def api_token(owner_name: str) -> str:
        """Finalizer the KeystoneService ``owner_name`` places on its KeystoneAPI."""
        return finalizer_token(KEYSTONE_SERVICE_KIND, owner_name)

    async def admin_client(
        self, ctx: ReconcileContext, keystone_api: dict[str, Any]
    ) -> IdentityClient | None:
        """
        Build an admin identity client for ``keystone_api``.

        Returns:
            The client, or None when the admin password, the CA bundle or the
            internal endpoint is not available yet
        """
        api_spec = keystone_api.get("spec") or {}
        secret_name = api_spec.get("secret")
        key = (api_spec.get("passwordSelectors") or {}).get("admin", "AdminPassword")
        if not secret_name:
            return None

        password = await self.secrets.get_secret_field(secret_name, ctx.namespace, key)
        if password is None:
            return None

        ca_bundle = None
        ca_secret = (api_spec.get("tls") or {}).get("caBundleSecretName")
        if ca_secret:
            ca_bundle = await self.secrets.get_secret_field(
                ca_secret, ctx.namespace, CA_BUNDLE_KEY
            )
            if ca_bundle is None:
                return None
        return await self.admin_client_factory(
            keystone_api, password, self.request_timeout, ca_bundle
        )

    def _api_not_ready(self, ctx: ReconcileContext) -> ReconcileResult:
        message = MESSAGE_WAITING.format("KeystoneAPI")
        ctx.conditions.set_false(
            CONDITION_KEYSTONE_API_READY, REASON_REQUESTED, SEVERITY_INFO, message
        )
        return ReconcileResult(REQUEUE_DEPENDENCY_DELAY, message)

    def _admin_client_not_ready(self, ctx: ReconcileContext) -> ReconcileResult:
        message = MESSAGE_WAITING.format("Admin service client")
        ctx.conditions.set_false(
            CONDITION_ADMIN_CLIENT_READY, REASON_REQUESTED, SEVERITY_INFO, message
        )
        return ReconcileResult(REQUEUE_DEPENDENCY_DELAY, message)

    async def do_reconcile(self, ctx: ReconcileContext) -> ReconcileResult:
        try:
            spec = KeystoneServiceSpec.model_validate(ctx.spec)
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

        with self.stage(ctx, CONDITION_KEYSTONE_API_READY):
            keystone_api = self.find_keystone_api(ctx.namespace)
            if keystone_api is None:
                message = MESSAGE_NOT_FOUND.format("KeystoneAPI")
                ctx.conditions.set_false(
                    CONDITION_KEYSTONE_API_READY, REASON_ERROR, SEVERITY_WARNING, message
                )
                return ReconcileResult(REQUEUE_DEPENDENCY_DELAY, message)

            # No new finalizers may be added to an object being deleted
            if is_being_deleted(keystone_api) or not is_resource_ready(keystone_api):
                return self._api_not_ready(ctx)
            ctx.conditions.set_true(CONDITION_KEYSTONE_API_READY, "KeystoneAPI ready")

        with self.stage(ctx, CONDITION_ADMIN_CLIENT_READY):
            identity = await self.admin_client(ctx, keystone_api)
            if identity is None:
                return self._admin_client_not_ready(ctx)
            ctx.conditions.set_true(
                CONDITION_ADMIN_CLIENT_READY, "Admin service client ready"
            )

        with self.stage(ctx, CONDITION_KEYSTONE_API_READY):
            self.finalizers.ensure(
                self.api_token(ctx.name), self.api_ref(keystone_api)
            )

        with self.stage(ctx, CONDITION_OS_SERVICE_READY):
            await self.reconcile_service(ctx, spec, identity)

        with self.stage(ctx, CONDITION_OS_USER_READY):
            result = await self.reconcile_user(ctx, spec, identity)
        return result or ReconcileResult()

    async def reconcile_service(
        self,
        ctx: ReconcileContext,
        spec: KeystoneServiceSpec,
        identity: IdentityClient,
    ) -> str:
        """
        Create or adopt the service entity.

        A service found by (type, name) is adopted; it is updated only when its
        enabled flag or description differs from the spec.

        Returns:
            The service ID, also written to ``status.serviceID``
        """
        try:
            existing = await identity.get_service(spec.service_type, spec.service_name)
        except IdentityNotFoundError:
            existing = None

        if existing is None:
            service_id = await identity.create_service(
                spec.service_type,
                spec.service_name,
                spec.service_description,
                spec.enabled,
            )
        else:
            service_id = existing["id"]
            if (
                existing.get("enabled") != spec.enabled
                or existing.get("description", "") != spec.service_description
            ):
                await identity.update_service(
                    service_id,
                    spec.service_type,
                    spec.service_name,
                    spec.service_description,
                    spec.enabled,
                )
            else:
                self.logger.debug(
                    f"Service {spec.service_type}/{spec.service_name} up to date",
                    identity_entity="service",
                )

        ctx.status["serviceID"] = service_id
        ctx.conditions.set_true(CONDITION_OS_SERVICE_READY, "Service created")
        return service_id

    async def reconcile_user(
        self,
        ctx: ReconcileContext,
        spec: KeystoneServiceSpec,
        identity: IdentityClient,
    ) -> ReconcileResult | None:
        """
        Ensure the service user, its project and its role assignments.

        Returns:
            A requeue when the password secret does not exist yet, else None
        """
        password = await self.secrets.get_secret_field(
            spec.secret, ctx.namespace, spec.password_selector
        )
        if password is None:
            message = MESSAGE_NOT_FOUND.format(f"Secret {spec.secret}")
            ctx.conditions.set_false(
                CONDITION_OS_USER_READY, REASON_NOT_FOUND, SEVERITY_INFO, message
            )
            return ReconcileResult(REQUEUE_SECRET_DELAY, message)

        project_id = await identity.create_project(
            DEFAULT_SERVICE_PROJECT, "service project", DEFAULT_DOMAIN
        )
        user_id = await identity.create_user(
            spec.service_user, password, project_id, DEFAULT_DOMAIN
        )
        for role in DEFAULT_SERVICE_ROLES:
            await identity.create_role(role)
            await identity.assign_user_role(role, user_id, project_id)

        ctx.conditions.set_true(CONDITION_OS_USER_READY, "User created")
        return None

    async def do_delete(self, ctx: ReconcileContext) -> ReconcileResult:
        """
        Remove the registration from Keystone, then release the KeystoneAPI.

        External cleanup is skipped when nothing was registered or when the
        KeystoneAPI is itself being deleted; only finalizers are removed then.
        """
        service_id = ctx.observed.get("serviceID")
        token = self.api_token(ctx.name)

        keystone_api = self.find_keystone_api(ctx.namespace)
        if keystone_api is None:
            if not service_id:
                return ReconcileResult()
            message = MESSAGE_NOT_FOUND.format("KeystoneAPI")
            ctx.conditions.set_false(
                CONDITION_KEYSTONE_API_READY, REASON_ERROR, SEVERITY_WARNING, message
            )
            return ReconcileResult(REQUEUE_DEPENDENCY_DELAY, message)

        api_ref = self.api_ref(keystone_api)
        if is_being_deleted(keystone_api) or not service_id:
            self.logger.info(
                f"Skipping identity cleanup for {ctx.name}, releasing finalizers only"
            )
            self.finalizers.release(token, api_ref)
            return ReconcileResult()

        if not is_resource_ready(keystone_api):
            return self._api_not_ready(ctx)

        identity = await self.admin_client(ctx, keystone_api)
        if identity is None:
            return self._admin_client_not_ready(ctx)

        user = ctx.spec.get("serviceUser")
        if user:
            await identity.delete_user(user, DEFAULT_DOMAIN)
        await identity.delete_service(service_id)
        ctx.status["serviceID"] = None

        self.finalizers.release(token, api_ref)
        return ReconcileResult()
