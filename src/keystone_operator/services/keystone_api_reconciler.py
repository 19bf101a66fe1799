"""
KeystoneAPI reconciler - Drives a Keystone deployment through its stages.

Each pass walks the stages in dependency order. A stage whose prerequisite is
missing or not ready records its sub-condition and stops the pass with a
bounded requeue; a satisfied stage marks its sub-condition True and the next
stage runs in the same pass.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pydantic
from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    CA_BUNDLE_KEY,
    CLIENT_CONFIG_MAP,
    CLIENT_CONFIG_SECRET,
    CONDITION_BOOTSTRAP_READY,
    CONDITION_CREATE_SERVICE_READY,
    CONDITION_CRON_JOB_READY,
    CONDITION_DB_READY,
    CONDITION_DB_SYNC_READY,
    CONDITION_DEPLOYMENT_READY,
    CONDITION_INPUT_READY,
    CONDITION_MEMCACHED_READY,
    CONDITION_NETWORK_ATTACHMENTS_READY,
    CONDITION_SERVICE_CONFIG_READY,
    CONDITION_TLS_INPUT_READY,
    CONDITION_TOPOLOGY_READY,
    CONDITION_TRANSPORT_URL_READY,
    DATABASE_NAME_LABEL_KEY,
    DEFAULT_DATABASE_ACCOUNT,
    DEFAULT_DATABASE_NAME,
    ENDPOINT_INTERNAL,
    ENDPOINT_PUBLIC,
    ENDPOINT_TYPES,
    HASH_ANNOTATION,
    KEYSTONE_API_CONDITIONS,
    KEYSTONE_API_FINALIZER,
    KEYSTONE_API_KIND,
    KEYSTONE_GROUP,
    KEYSTONE_PUBLIC_PORT,
    KEYSTONE_VERSION,
    MARIADB_ACCOUNT_PLURAL,
    MARIADB_DATABASE_PLURAL,
    MARIADB_GROUP,
    MARIADB_VERSION,
    MEMCACHED_GROUP,
    MEMCACHED_PLURAL,
    MEMCACHED_VERSION,
    MESSAGE_DEPLOYMENT_RUNNING,
    MESSAGE_JOB_FAILED,
    MESSAGE_JOB_RUNNING,
    MESSAGE_NOT_FOUND,
    MESSAGE_TLS_CA_MISSING,
    MESSAGE_TLS_SECRET_MISSING,
    MESSAGE_WAITING,
    NAD_GROUP,
    NAD_PLURAL,
    NAD_VERSION,
    RABBITMQ_GROUP,
    RABBITMQ_VERSION,
    REASON_ERROR,
    REASON_NOT_FOUND,
    REASON_REQUESTED,
    REQUEUE_DEPENDENCY_DELAY,
    REQUEUE_SECRET_DELAY,
    ROTATED_AT_ANNOTATION,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    TLS_SECRET_KEYS,
    TOPOLOGY_GROUP,
    TOPOLOGY_PLURAL,
    TOPOLOGY_VERSION,
    TRANSPORT_URL_PLURAL,
)
from ..errors import DatabaseAccountError, ValidationError
from ..models.keystone import (
    KeystoneAPIDefaulter,
    KeystoneAPIDefaults,
    KeystoneAPISpec,
)
from ..observability.metrics import metrics_collector
from ..utils.fernet import (
    FernetRotationManager,
    credential_keys,
    format_timestamp,
    keys_from_secret,
    keys_to_secret,
    parse_timestamp,
)
from ..utils.finalizers import FinalizerCoordinator, finalizer_token
from ..utils.kubernetes import (
    JOB_FAILED,
    JOB_SUCCEEDED,
    ResourceRef,
    apply_config_map,
    apply_cron_job,
    apply_custom_object,
    apply_deployment,
    apply_service,
    deployment_is_ready,
    get_custom_object,
    is_resource_ready,
    job_state,
    list_custom_objects,
    owner_reference,
    set_owner_reference,
)
from ..utils.rendering import content_hash, render
from ..utils.secret_manager import SecretManager, decode_data
from ..utils.workloads import (
    build_bootstrap_job,
    build_cron_job,
    build_db_sync_job,
    build_deployment,
    build_endpoint_service,
    config_secret_name,
    endpoint_service_name,
    endpoint_url,
    service_labels,
)
from .base_reconciler import BaseReconciler, ReconcileContext, ReconcileResult

DATABASE_PASSWORD_KEY = "DatabasePassword"
TRANSPORT_URL_KEY = "transport_url"
HTTPD_CUSTOM_PREFIX = "httpd_custom_"


def database_ref(namespace: str) -> ResourceRef:
    return ResourceRef(
        MARIADB_GROUP,
        MARIADB_VERSION,
        MARIADB_DATABASE_PLURAL,
        namespace,
        DEFAULT_DATABASE_NAME,
    )


def account_ref(namespace: str, name: str) -> ResourceRef:
    return ResourceRef(
        MARIADB_GROUP, MARIADB_VERSION, MARIADB_ACCOUNT_PLURAL, namespace, name
    )


def topology_ref(namespace: str, ref: dict[str, Any] | None) -> ResourceRef | None:
    """Address of a referenced topology; a reference without namespace is local."""
    if not ref or not ref.get("name"):
        return None
    return ResourceRef(
        TOPOLOGY_GROUP,
        TOPOLOGY_VERSION,
        TOPOLOGY_PLURAL,
        ref.get("namespace") or namespace,
        ref["name"],
    )


@dataclass
class KeystoneInputs:
    """Values gathered by earlier stages and consumed by later ones."""

    spec: KeystoneAPISpec
    hashes: dict[str, str]
    admin_password: str = ""
    database_hostname: str = ""
    database_user: str = ""
    database_password: str = ""
    transport_url: str = ""
    memcached_servers: list[str] = field(default_factory=list)
    memcached_tls: bool = False
    config_data: dict[str, str] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    topology: dict[str, Any] | None = None


Stage = Callable[[ReconcileContext, KeystoneInputs], Awaitable[ReconcileResult | None]]


class KeystoneAPIReconciler(BaseReconciler):
    """
    Reconciler for KeystoneAPI resources.

    Stages, in order: input secret, database, transport URL, memcached, TLS
    inputs, configuration and fernet keys, db-sync job, endpoint services,
    bootstrap job, network attachments, topology, deployment, trust-flush
    cron job, and finally client configuration plus database account cleanup.
    """

    resource_type = "keystoneapi"
    tracked_conditions = KEYSTONE_API_CONDITIONS

    def __init__(
        self,
        k8s_client: client.ApiClient | None = None,
        defaults: KeystoneAPIDefaults | None = None,
        clock: Callable[[], datetime] | None = None,
        rotation_manager_factory: Callable[
            [int], FernetRotationManager
        ] = FernetRotationManager,
    ):
        """
        Initialize the KeystoneAPI reconciler.

        Args:
            k8s_client: Kubernetes API client
            defaults: Computed defaults applied to the spec before validation
            clock: Returns the current time, used for key rotation
            rotation_manager_factory: Builds the rotation manager for a ring size
        """
        super().__init__(k8s_client)
        self.defaulter = KeystoneAPIDefaulter(defaults) if defaults else None
        self.clock = clock or (lambda: datetime.now(UTC))
        self.rotation_manager_factory = rotation_manager_factory

    @property
    def secrets(self) -> SecretManager:
        return SecretManager(self.kubernetes_client)

    @property
    def finalizers(self) -> FinalizerCoordinator:
        return FinalizerCoordinator(self.custom_api)

    def parse_spec(self, raw: dict[str, Any]) -> KeystoneAPISpec:
        """
        Apply defaults and validate the spec.

        Raises:
            ValidationError: If the spec does not satisfy the model
        """
        if self.defaulter is not None:
            raw = self.defaulter.default(raw)
        try:
            return KeystoneAPISpec.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

    def _owner(self, ctx: ReconcileContext) -> dict[str, Any]:
        return owner_reference(
            ctx.name,
            ctx.metadata.get("uid", ""),
            KEYSTONE_API_KIND,
            f"{KEYSTONE_GROUP}/{KEYSTONE_VERSION}",
        )

    def _owner_references(self, ctx: ReconcileContext) -> list[client.V1OwnerReference]:
        return [
            client.V1OwnerReference(
                api_version=f"{KEYSTONE_GROUP}/{KEYSTONE_VERSION}",
                kind=KEYSTONE_API_KIND,
                name=ctx.name,
                uid=ctx.metadata.get("uid", ""),
                controller=True,
                block_owner_deletion=True,
            )
        ]

    def _own(self, ctx: ReconcileContext, resource: Any) -> Any:
        set_owner_reference(
            resource,
            ctx.name,
            ctx.metadata.get("uid", ""),
            KEYSTONE_API_KIND,
            f"{KEYSTONE_GROUP}/{KEYSTONE_VERSION}",
        )
        return resource

    def _missing(
        self,
        ctx: ReconcileContext,
        condition_type: str,
        what: str,
        delay: float = REQUEUE_DEPENDENCY_DELAY,
    ) -> ReconcileResult:
        message = MESSAGE_NOT_FOUND.format(what)
        ctx.conditions.set_false(condition_type, REASON_NOT_FOUND, SEVERITY_INFO, message)
        return ReconcileResult(delay, message)

    def _waiting(
        self,
        ctx: ReconcileContext,
        condition_type: str,
        message: str,
        delay: float = REQUEUE_DEPENDENCY_DELAY,
    ) -> ReconcileResult:
        ctx.conditions.set_false(condition_type, REASON_REQUESTED, SEVERITY_INFO, message)
        return ReconcileResult(delay, message)

    def _set_hash(
        self, ctx: ReconcileContext, inputs: KeystoneInputs, key: str, value: str
    ) -> None:
        inputs.hashes[key] = value
        ctx.status["hash"] = dict(inputs.hashes)

    async def do_reconcile(self, ctx: ReconcileContext) -> ReconcileResult:
        with self.stage(ctx, CONDITION_INPUT_READY):
            spec = self.parse_spec(ctx.spec)

        inputs = KeystoneInputs(spec=spec, hashes=dict(ctx.observed.get("hash") or {}))
        stages: list[tuple[str, Stage]] = [
            (CONDITION_INPUT_READY, self.reconcile_input),
            (CONDITION_DB_READY, self.reconcile_database),
            (CONDITION_TRANSPORT_URL_READY, self.reconcile_transport_url),
            (CONDITION_MEMCACHED_READY, self.reconcile_memcached),
            (CONDITION_TLS_INPUT_READY, self.reconcile_tls),
            (CONDITION_SERVICE_CONFIG_READY, self.reconcile_config),
            (CONDITION_DB_SYNC_READY, self.reconcile_db_sync),
            (CONDITION_CREATE_SERVICE_READY, self.reconcile_services),
            (CONDITION_BOOTSTRAP_READY, self.reconcile_bootstrap),
            (CONDITION_NETWORK_ATTACHMENTS_READY, self.reconcile_network_attachments),
            (CONDITION_TOPOLOGY_READY, self.reconcile_topology),
            (CONDITION_DEPLOYMENT_READY, self.reconcile_deployment),
            (CONDITION_CRON_JOB_READY, self.reconcile_cron_job),
        ]
        for condition_type, run in stages:
            with self.stage(ctx, condition_type):
                result = await run(ctx, inputs)
            if result is not None:
                return result

        await self.reconcile_client_config(ctx, inputs)
        self.release_stale_accounts(ctx, spec)
        return ReconcileResult()

    # Stage 1: input

    async def reconcile_input(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec
        key = spec.password_selectors.admin
        data = await self.secrets.get_secret_data(spec.secret, ctx.namespace, keys=[key])
        if data is None:
            return self._missing(
                ctx, CONDITION_INPUT_READY, f"Secret {spec.secret}", REQUEUE_SECRET_DELAY
            )

        if not data.get(key):
            return self._missing(
                ctx,
                CONDITION_INPUT_READY,
                f"Field {key} in secret {spec.secret}",
                REQUEUE_SECRET_DELAY,
            )

        inputs.admin_password = data[key]
        ctx.conditions.set_true(CONDITION_INPUT_READY, "Input data complete")
        return None

    # Stage 2: database

    async def reconcile_database(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec
        db_ref = database_ref(ctx.namespace)
        database = apply_custom_object(
            self.custom_api,
            db_ref,
            "MariaDBDatabase",
            spec={
                "name": DEFAULT_DATABASE_NAME,
                "defaultCharacterSet": "utf8",
                "defaultCollation": "utf8_general_ci",
            },
            labels={"dbName": spec.database_instance},
            owner_references=[self._owner(ctx)],
        )
        self.finalizers.ensure(KEYSTONE_API_FINALIZER, db_ref)

        acc_ref = account_ref(ctx.namespace, spec.database_account)
        account = get_custom_object(self.custom_api, acc_ref)
        if account is None:
            return self._missing(
                ctx, CONDITION_DB_READY, f"MariaDBAccount {spec.database_account}"
            )
        bound_to = (account["metadata"].get("labels") or {}).get(DATABASE_NAME_LABEL_KEY)
        if bound_to and bound_to != DEFAULT_DATABASE_NAME:
            raise DatabaseAccountError(spec.database_account, bound_to)
        self.finalizers.ensure(KEYSTONE_API_FINALIZER, acc_ref)

        if not is_resource_ready(database) or not is_resource_ready(account):
            return self._waiting(ctx, CONDITION_DB_READY, MESSAGE_WAITING.format("DB"))

        account_spec = account.get("spec") or {}
        account_secret = account_spec.get("secret") or spec.database_account
        password = await self.secrets.get_secret_field(
            account_secret, ctx.namespace, DATABASE_PASSWORD_KEY
        )
        if password is None:
            return self._missing(
                ctx,
                CONDITION_DB_READY,
                f"Secret {account_secret}",
                REQUEUE_SECRET_DELAY,
            )

        hostname = (database.get("status") or {}).get("hostname") or (
            f"{spec.database_instance}.{ctx.namespace}.svc"
        )
        inputs.database_hostname = hostname
        inputs.database_user = account_spec.get("userName") or spec.database_account
        inputs.database_password = password
        ctx.status["databaseHostname"] = hostname
        ctx.conditions.set_true(CONDITION_DB_READY, "DB create completed")
        return None

    # Stage 3: message bus

    async def reconcile_transport_url(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        ref = ResourceRef(
            RABBITMQ_GROUP,
            RABBITMQ_VERSION,
            TRANSPORT_URL_PLURAL,
            ctx.namespace,
            f"{ctx.name}-keystone-transport",
        )
        transport = apply_custom_object(
            self.custom_api,
            ref,
            "TransportURL",
            spec={"rabbitmqClusterName": inputs.spec.rabbit_mq_cluster_name},
            owner_references=[self._owner(ctx)],
        )
        secret_name = (transport.get("status") or {}).get("secretName")
        if not is_resource_ready(transport) or not secret_name:
            return self._waiting(
                ctx, CONDITION_TRANSPORT_URL_READY, MESSAGE_WAITING.format("TransportURL")
            )

        url = await self.secrets.get_secret_field(
            secret_name, ctx.namespace, TRANSPORT_URL_KEY
        )
        if url is None:
            return self._missing(
                ctx,
                CONDITION_TRANSPORT_URL_READY,
                f"Secret {secret_name}",
                REQUEUE_SECRET_DELAY,
            )

        inputs.transport_url = url
        ctx.status["transportURLSecret"] = secret_name
        ctx.conditions.set_true(
            CONDITION_TRANSPORT_URL_READY, "RabbitMqTransportURL successfully created"
        )
        return None

    # Stage 4: cache

    async def reconcile_memcached(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        name = inputs.spec.memcached_instance
        memcached = get_custom_object(
            self.custom_api,
            ResourceRef(
                MEMCACHED_GROUP, MEMCACHED_VERSION, MEMCACHED_PLURAL, ctx.namespace, name
            ),
        )
        if memcached is None:
            return self._missing(ctx, CONDITION_MEMCACHED_READY, f"Memcached {name}")
        if not is_resource_ready(memcached):
            return self._waiting(
                ctx, CONDITION_MEMCACHED_READY, MESSAGE_WAITING.format("Memcached")
            )

        status = memcached.get("status") or {}
        inputs.memcached_servers = list(status.get("serverList") or [])
        inputs.memcached_tls = bool(status.get("tlsSupport"))
        ctx.conditions.set_true(CONDITION_MEMCACHED_READY, "Memcached ready")
        return None

    # Stage 5: TLS inputs

    async def reconcile_tls(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        tls = inputs.spec.tls
        parts: dict[str, str] = {}

        if tls.ca_bundle_secret_name:
            data = await self.secrets.get_secret_data(
                tls.ca_bundle_secret_name, ctx.namespace, keys=[CA_BUNDLE_KEY]
            )
            if data is None or CA_BUNDLE_KEY not in data:
                return self._waiting(
                    ctx,
                    CONDITION_TLS_INPUT_READY,
                    MESSAGE_TLS_CA_MISSING.format(
                        f"secret {tls.ca_bundle_secret_name} key {CA_BUNDLE_KEY}"
                    ),
                    REQUEUE_SECRET_DELAY,
                )
            parts["ca"] = content_hash(data[CA_BUNDLE_KEY])

        for endpoint in ENDPOINT_TYPES:
            secret_name = tls.endpoint_secret(endpoint)
            if not secret_name:
                continue
            data = await self.secrets.get_secret_data(
                secret_name, ctx.namespace, keys=TLS_SECRET_KEYS
            )
            if data is None:
                return self._waiting(
                    ctx,
                    CONDITION_TLS_INPUT_READY,
                    MESSAGE_TLS_SECRET_MISSING.format(secret_name, ctx.namespace),
                    REQUEUE_SECRET_DELAY,
                )
            parts[endpoint] = content_hash(data)

        self._set_hash(ctx, inputs, "tls", content_hash(parts))
        ctx.conditions.set_true(CONDITION_TLS_INPUT_READY, "Input data complete")
        return None

    # Stage 6: configuration and fernet keys

    async def reconcile_fernet_keys(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> dict[str, str]:
        """
        Move the fernet ring forward and persist it in one secret write.

        Returns:
            The secret data as stored
        """
        secret = await self.secrets.get_secret(ctx.name, ctx.namespace)
        data = decode_data(secret.data) if secret is not None else {}
        annotations = SecretManager.annotations_of(secret)
        rotated_at = parse_timestamp(annotations.get(ROTATED_AT_ANNOTATION))

        manager = self.rotation_manager_factory(inputs.spec.fernet_max_active_keys)
        update = manager.plan(keys_from_secret(data), rotated_at, self.clock())
        new_data = {
            **keys_to_secret(update.keys),
            **credential_keys(data),
        }

        if update.changed or new_data != data or secret is None:
            annotations[ROTATED_AT_ANNOTATION] = format_timestamp(update.rotated_at)
            await self.secrets.store_secret(
                ctx.name,
                ctx.namespace,
                new_data,
                labels=service_labels(ctx.name),
                annotations=annotations,
                owner_references=self._owner_references(ctx),
                resource_version=(
                    secret.metadata.resource_version if secret is not None else None
                ),
            )
            if update.changed:
                metrics_collector.record_fernet_change(
                    ctx.namespace, ctx.name, update.action
                )
                self.logger.info(
                    f"Fernet key ring {update.action} for {ctx.name}",
                    fernet_action=update.action,
                )
        return new_data

    async def reconcile_config(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec

        custom_httpd: dict[str, str] = {}
        custom_secret = spec.httpd_customization.custom_config_secret
        if custom_secret:
            data = await self.secrets.get_secret_data(custom_secret, ctx.namespace)
            if data is None:
                return self._missing(
                    ctx,
                    CONDITION_SERVICE_CONFIG_READY,
                    f"Secret {custom_secret}",
                    REQUEUE_SECRET_DELAY,
                )
            custom_httpd = {f"{HTTPD_CUSTOM_PREFIX}{k}": v for k, v in data.items()}

        fernet_data = await self.reconcile_fernet_keys(ctx, inputs)

        config_data = self.render_config(ctx, inputs)
        config_data.update(custom_httpd)
        config_data.update(spec.default_config_overwrite)

        await self.secrets.store_secret(
            config_secret_name(ctx.name),
            ctx.namespace,
            config_data,
            labels=service_labels(ctx.name),
            owner_references=self._owner_references(ctx),
        )
        inputs.config_data = config_data

        self._set_hash(ctx, inputs, "serviceConfig", content_hash(config_data))
        # Jobs do not consume the fernet ring, so rotation only rolls the pods
        self._set_hash(
            ctx,
            inputs,
            "jobInput",
            content_hash(config_data, inputs.hashes.get("tls", "")),
        )
        self._set_hash(
            ctx,
            inputs,
            "input",
            content_hash(config_data, fernet_data, inputs.hashes.get("tls", "")),
        )
        ctx.conditions.set_true(
            CONDITION_SERVICE_CONFIG_READY, "Service config create completed"
        )
        return None

    def render_config(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> dict[str, str]:
        """Render every configuration file of the API pods."""
        spec = inputs.spec
        vhosts = {
            endpoint: {
                "server_name": f"{endpoint_service_name(endpoint)}.{ctx.namespace}.svc",
                "tls": bool(spec.tls.endpoint_secret(endpoint)),
            }
            for endpoint in ENDPOINT_TYPES
        }
        files = {
            "keystone.conf": render(
                "keystone.conf.j2",
                memcached_servers=",".join(inputs.memcached_servers),
                memcached_tls=inputs.memcached_tls,
                database_user=inputs.database_user,
                database_password=inputs.database_password,
                database_hostname=inputs.database_hostname,
                database_name=DEFAULT_DATABASE_NAME,
                transport_url=inputs.transport_url,
                fernet_max_active_keys=spec.fernet_max_active_keys,
                enable_secure_rbac=spec.enable_secure_rbac,
            ),
            "my.cnf": render(
                "my.cnf.j2", database_tls=bool(spec.tls.ca_bundle_secret_name)
            ),
            "httpd.conf": render(
                "httpd.conf.j2",
                port=KEYSTONE_PUBLIC_PORT,
                tls_enabled=spec.tls.enabled,
                vhosts=vhosts,
                process_number=spec.httpd_customization.process_number,
                federation_enabled=bool(spec.federated_realm_config),
                federation_mount_path=spec.federation_mount_path,
            ),
            "custom.conf": spec.custom_service_config,
        }
        if spec.tls.enabled:
            files["ssl.conf"] = render("ssl.conf.j2")
        return files

    # Stage 7 and 9: jobs

    async def run_job(
        self,
        ctx: ReconcileContext,
        inputs: KeystoneInputs,
        condition_type: str,
        hash_key: str,
        job: client.V1Job,
    ) -> ReconcileResult | None:
        """
        Drive a one-shot job to completion for the current input hash.

        A job whose hash annotation differs from the desired hash is deleted and
        recreated on a later pass. Once a job succeeded its hash is recorded in
        ``status.hash`` so a garbage-collected job is not rerun.
        """
        name = job.metadata.name
        desired_hash = job.metadata.annotations[HASH_ANNOTATION]

        try:
            current = self.batch_api.read_namespaced_job(name=name, namespace=ctx.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            current = None

        if current is not None:
            current_hash = (current.metadata.annotations or {}).get(HASH_ANNOTATION)
            if current_hash != desired_hash:
                self.logger.info(f"Job {name} inputs changed, recreating")
                self.batch_api.delete_namespaced_job(
                    name=name, namespace=ctx.namespace, propagation_policy="Background"
                )
                return self._waiting(
                    ctx, condition_type, MESSAGE_JOB_RUNNING.format(name)
                )
        elif inputs.hashes.get(hash_key) == desired_hash:
            ctx.conditions.set_true(condition_type, f"Job {name} completed")
            return None
        else:
            self._own(ctx, job)
            self.batch_api.create_namespaced_job(namespace=ctx.namespace, body=job)
            return self._waiting(ctx, condition_type, MESSAGE_JOB_RUNNING.format(name))

        state = job_state(current)
        if state == JOB_SUCCEEDED:
            self._set_hash(ctx, inputs, hash_key, desired_hash)
            ctx.conditions.set_true(condition_type, f"Job {name} completed")
            return None
        if state == JOB_FAILED:
            message = MESSAGE_JOB_FAILED.format(name)
            ctx.conditions.set_false(condition_type, REASON_ERROR, SEVERITY_ERROR, message)
            return ReconcileResult(message=message)
        return self._waiting(ctx, condition_type, MESSAGE_JOB_RUNNING.format(name))

    async def reconcile_db_sync(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        job = build_db_sync_job(
            ctx.name, ctx.namespace, inputs.spec, inputs.hashes["jobInput"]
        )
        return await self.run_job(ctx, inputs, CONDITION_DB_SYNC_READY, "dbsync", job)

    async def reconcile_bootstrap(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec
        bootstrap_hash = content_hash(
            inputs.hashes["jobInput"],
            inputs.endpoints,
            spec.admin_user,
            spec.admin_project,
            spec.region,
            inputs.admin_password,
        )
        job = build_bootstrap_job(
            ctx.name, ctx.namespace, spec, inputs.endpoints, bootstrap_hash
        )
        return await self.run_job(
            ctx, inputs, CONDITION_BOOTSTRAP_READY, "bootstrap", job
        )

    # Stage 8: endpoint services

    async def reconcile_services(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec
        endpoints = {}
        for endpoint in ENDPOINT_TYPES:
            override = spec.override.service.get(endpoint)
            service = build_endpoint_service(endpoint, ctx.name, ctx.namespace, override)
            apply_service(self.core_api, self._own(ctx, service))
            endpoints[endpoint] = endpoint_url(
                endpoint,
                ctx.namespace,
                bool(spec.tls.endpoint_secret(endpoint)),
                override,
            )

        inputs.endpoints = endpoints
        ctx.status["apiEndpoints"] = endpoints
        ctx.conditions.set_true(CONDITION_CREATE_SERVICE_READY, "Create service completed")
        return None

    # Stage 10: network attachments

    async def reconcile_network_attachments(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        for nad in inputs.spec.network_attachments:
            ref = ResourceRef(NAD_GROUP, NAD_VERSION, NAD_PLURAL, ctx.namespace, nad)
            if get_custom_object(self.custom_api, ref) is None:
                return self._missing(
                    ctx,
                    CONDITION_NETWORK_ATTACHMENTS_READY,
                    f"NetworkAttachment {nad}",
                )
        ctx.conditions.set_true(
            CONDITION_NETWORK_ATTACHMENTS_READY, "NetworkAttachments completed"
        )
        return None

    # Stage 11: topology

    async def reconcile_topology(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        """
        Resolve ``topologyRef`` and move the finalizer along with it.

        The new topology is claimed before the previously applied one is
        released. Without a reference, the last applied topology is released.
        """
        token = finalizer_token(KEYSTONE_API_KIND, ctx.name)
        desired = topology_ref(
            ctx.namespace,
            inputs.spec.topology_ref.model_dump() if inputs.spec.topology_ref else None,
        )
        previous = topology_ref(ctx.namespace, ctx.observed.get("lastAppliedTopology"))

        topology = None
        if desired is not None:
            topology = get_custom_object(self.custom_api, desired)
            if topology is None:
                return self._missing(
                    ctx, CONDITION_TOPOLOGY_READY, f"Topology {desired.name}"
                )

        self.finalizers.reassign(token, previous, desired)

        if desired is None:
            ctx.status["lastAppliedTopology"] = None
            ctx.conditions.set_true(CONDITION_TOPOLOGY_READY, "Topology not requested")
            return None

        inputs.topology = topology.get("spec") or {}
        ctx.status["lastAppliedTopology"] = {
            "name": desired.name,
            "namespace": desired.namespace,
        }
        ctx.conditions.set_true(CONDITION_TOPOLOGY_READY, "Topology config create completed")
        return None

    # Stage 12: deployment

    async def reconcile_deployment(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        spec = inputs.spec
        deployment = build_deployment(
            ctx.name,
            ctx.namespace,
            spec,
            config_hash=inputs.hashes["input"],
            topology=inputs.topology,
        )
        applied = apply_deployment(self.apps_api, self._own(ctx, deployment))

        ready_count = (applied.status.ready_replicas or 0) if applied.status else 0
        ctx.status["readyCount"] = ready_count
        if not deployment_is_ready(applied, spec.replicas):
            return self._waiting(ctx, CONDITION_DEPLOYMENT_READY, MESSAGE_DEPLOYMENT_RUNNING)

        ctx.conditions.set_true(CONDITION_DEPLOYMENT_READY, "Deployment completed")
        return None

    # Stage 13: trust flush

    async def reconcile_cron_job(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> ReconcileResult | None:
        cron_job = build_cron_job(ctx.name, ctx.namespace, inputs.spec)
        apply_cron_job(self.batch_api, self._own(ctx, cron_job))
        ctx.conditions.set_true(CONDITION_CRON_JOB_READY, "CronJob completed")
        return None

    # Stage 14: client configuration and cleanup

    async def reconcile_client_config(
        self, ctx: ReconcileContext, inputs: KeystoneInputs
    ) -> None:
        """Publish ``clouds.yaml`` and ``secure.yaml`` for openstack clients."""
        spec = inputs.spec
        clouds = render(
            "clouds.yaml.j2",
            auth_url=inputs.endpoints.get(ENDPOINT_PUBLIC)
            or inputs.endpoints.get(ENDPOINT_INTERNAL, ""),
            project_name=spec.admin_project,
            username=spec.admin_user,
            region=spec.region,
        )
        config_map = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=CLIENT_CONFIG_MAP,
                namespace=ctx.namespace,
                labels=service_labels(ctx.name),
            ),
            data={"clouds.yaml": clouds},
        )
        apply_config_map(self.core_api, self._own(ctx, config_map))

        await self.secrets.store_secret(
            CLIENT_CONFIG_SECRET,
            ctx.namespace,
            {"secure.yaml": render("secure.yaml.j2", password=inputs.admin_password)},
            labels=service_labels(ctx.name),
            owner_references=self._owner_references(ctx),
        )

    def release_stale_accounts(
        self, ctx: ReconcileContext, spec: KeystoneAPISpec
    ) -> None:
        """Release the finalizer from database accounts no longer in use."""
        accounts = list_custom_objects(
            self.custom_api,
            MARIADB_GROUP,
            MARIADB_VERSION,
            MARIADB_ACCOUNT_PLURAL,
            ctx.namespace,
            label_selector=f"{DATABASE_NAME_LABEL_KEY}={DEFAULT_DATABASE_NAME}",
        )
        for account in accounts:
            metadata = account.get("metadata") or {}
            name = metadata.get("name")
            if not name or name == spec.database_account:
                continue
            if KEYSTONE_API_FINALIZER in (metadata.get("finalizers") or []):
                self.finalizers.release(
                    KEYSTONE_API_FINALIZER, account_ref(ctx.namespace, name)
                )

    # Deletion

    async def do_delete(self, ctx: ReconcileContext) -> ReconcileResult:
        """
        Release the finalizers this KeystoneAPI holds on its dependents.

        The spec is read without validation so a resource that no longer
        validates can still be deleted. Dependents that are gone or already
        being deleted are released the same way.
        """
        spec = ctx.spec
        coordinator = self.finalizers

        coordinator.release(KEYSTONE_API_FINALIZER, database_ref(ctx.namespace))
        coordinator.release(
            KEYSTONE_API_FINALIZER,
            account_ref(
                ctx.namespace, spec.get("databaseAccount") or DEFAULT_DATABASE_ACCOUNT
            ),
        )

        token = finalizer_token(KEYSTONE_API_KIND, ctx.name)
        released = set()
        for ref in (
            topology_ref(ctx.namespace, ctx.observed.get("lastAppliedTopology")),
            topology_ref(ctx.namespace, spec.get("topologyRef")),
        ):
            if ref is not None and ref not in released:
                coordinator.release(token, ref)
                released.add(ref)
        ctx.status["lastAppliedTopology"] = None

        self.logger.info(f"Released dependents of KeystoneAPI {ctx.name}")
        return ReconcileResult()

