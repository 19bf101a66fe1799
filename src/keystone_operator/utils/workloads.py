"""
Manifest builders for the workloads backing a KeystoneAPI.

Each builder returns a kubernetes client model ready to be passed to the
matching ``apply_*`` helper in ``utils.kubernetes``. Values coming from other
custom resources (topology constraints, extra mounts) are passed through as
camelCase dicts, which the client serializes unchanged.
"""

import json
from typing import Any

from kubernetes import client

from keystone_operator.constants import (
    CA_BUNDLE_KEY,
    CA_BUNDLE_MOUNT_PATH,
    CREDENTIAL_KEY_COUNT,
    CREDENTIAL_KEY_PREFIX,
    CREDENTIAL_KEYS_MOUNT_PATH,
    ENDPOINT_TYPES,
    FERNET_KEY_PREFIX,
    FERNET_KEYS_MOUNT_PATH,
    HASH_ANNOTATION,
    KEYSTONE_CONFIG_DIR,
    KEYSTONE_PUBLIC_PORT,
    OWNER_LABEL_KEY,
    SERVICE_LABEL_KEY,
    SERVICE_NAME,
)
from keystone_operator.models.keystone import KeystoneAPISpec, ServiceOverride

SERVICE_ACCOUNT_PREFIX = "keystone-"
NETWORKS_ANNOTATION = "k8s.v1.cni.cncf.io/networks"


def service_labels(instance_name: str) -> dict[str, str]:
    return {SERVICE_LABEL_KEY: SERVICE_NAME, OWNER_LABEL_KEY: instance_name}


def config_secret_name(instance_name: str) -> str:
    return f"{instance_name}-config-data"


def endpoint_service_name(endpoint: str) -> str:
    return f"{SERVICE_NAME}-{endpoint}"


def endpoint_url(
    endpoint: str,
    namespace: str,
    tls_enabled: bool,
    override: ServiceOverride | None = None,
) -> str:
    """
    URL published for an endpoint.

    An ``endpointURL`` override wins; otherwise the in-cluster service
    address is used, over https when the endpoint has a certificate.
    """
    if override and override.endpoint_url:
        return override.endpoint_url
    scheme = "https" if tls_enabled else "http"
    return f"{scheme}://{endpoint_service_name(endpoint)}.{namespace}.svc:{KEYSTONE_PUBLIC_PORT}"


def build_endpoint_service(
    endpoint: str,
    instance_name: str,
    namespace: str,
    override: ServiceOverride | None = None,
) -> client.V1Service:
    """Service for one endpoint type, with any override merged in."""
    selector = service_labels(instance_name)
    labels = {**selector, "endpoint": endpoint}
    annotations: dict[str, str] = {}
    service_type = "ClusterIP"

    if override is not None:
        if override.metadata is not None:
            labels.update(override.metadata.labels)
            annotations.update(override.metadata.annotations)
        if override.spec is not None and override.spec.type:
            service_type = override.spec.type

    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=endpoint_service_name(endpoint),
            namespace=namespace,
            labels=labels,
            annotations=annotations or None,
        ),
        spec=client.V1ServiceSpec(
            type=service_type,
            selector=selector,
            ports=[
                client.V1ServicePort(
                    name=f"keystone-{endpoint}",
                    port=KEYSTONE_PUBLIC_PORT,
                    target_port=KEYSTONE_PUBLIC_PORT,
                    protocol="TCP",
                )
            ],
        ),
    )


def _secret_volume(
    name: str, secret_name: str, items: list[client.V1KeyToPath] | None = None
) -> client.V1Volume:
    return client.V1Volume(
        name=name,
        secret=client.V1SecretVolumeSource(
            secret_name=secret_name, items=items, default_mode=0o440
        ),
    )


def keystone_volumes(
    instance_name: str, spec: KeystoneAPISpec
) -> tuple[list[Any], list[Any]]:
    """
    Volumes and mounts shared by the API pods and the jobs.

    Returns:
        ``(volumes, volume_mounts)``
    """
    volumes: list[Any] = [
        _secret_volume("config-data", config_secret_name(instance_name)),
        _secret_volume(
            "fernet-keys",
            instance_name,
            [
                client.V1KeyToPath(key=f"{FERNET_KEY_PREFIX}{i}", path=str(i))
                for i in range(spec.fernet_max_active_keys)
            ],
        ),
        _secret_volume(
            "credential-keys",
            instance_name,
            [
                client.V1KeyToPath(key=f"{CREDENTIAL_KEY_PREFIX}{i}", path=str(i))
                for i in range(CREDENTIAL_KEY_COUNT)
            ],
        ),
    ]
    mounts: list[Any] = [
        client.V1VolumeMount(
            name="config-data",
            mount_path=f"{KEYSTONE_CONFIG_DIR}/keystone.conf",
            sub_path="keystone.conf",
            read_only=True,
        ),
        client.V1VolumeMount(
            name="config-data", mount_path="/etc/my.cnf", sub_path="my.cnf", read_only=True
        ),
        client.V1VolumeMount(
            name="fernet-keys", mount_path=FERNET_KEYS_MOUNT_PATH, read_only=True
        ),
        client.V1VolumeMount(
            name="credential-keys", mount_path=CREDENTIAL_KEYS_MOUNT_PATH, read_only=True
        ),
    ]

    if spec.tls.ca_bundle_secret_name:
        volumes.append(_secret_volume("combined-ca-bundle", spec.tls.ca_bundle_secret_name))
        mounts.append(
            client.V1VolumeMount(
                name="combined-ca-bundle",
                mount_path=CA_BUNDLE_MOUNT_PATH,
                sub_path=CA_BUNDLE_KEY,
                read_only=True,
            )
        )

    for extra in spec.extra_mounts:
        volumes.extend(extra.volumes)
        mounts.extend(extra.mounts)

    return volumes, mounts


def _api_only_volumes(instance_name: str, spec: KeystoneAPISpec) -> tuple[list, list]:
    volumes: list[Any] = []
    mounts: list[Any] = [
        client.V1VolumeMount(
            name="config-data",
            mount_path="/etc/httpd/conf/httpd.conf",
            sub_path="httpd.conf",
            read_only=True,
        ),
    ]
    if spec.tls.enabled:
        mounts.append(
            client.V1VolumeMount(
                name="config-data",
                mount_path="/etc/httpd/conf.d/ssl.conf",
                sub_path="ssl.conf",
                read_only=True,
            )
        )
    for endpoint in ENDPOINT_TYPES:
        secret_name = spec.tls.endpoint_secret(endpoint)
        if not secret_name:
            continue
        volume_name = f"{endpoint}-tls-certs"
        volumes.append(_secret_volume(volume_name, secret_name))
        mounts.extend(
            [
                client.V1VolumeMount(
                    name=volume_name,
                    mount_path=f"/etc/pki/tls/certs/{endpoint}.crt",
                    sub_path="tls.crt",
                    read_only=True,
                ),
                client.V1VolumeMount(
                    name=volume_name,
                    mount_path=f"/etc/pki/tls/private/{endpoint}.key",
                    sub_path="tls.key",
                    read_only=True,
                ),
            ]
        )
    if spec.federated_realm_config:
        volumes.append(_secret_volume("federation-realm-data", spec.federated_realm_config))
        mounts.append(
            client.V1VolumeMount(
                name="federation-realm-data",
                mount_path=f"{spec.federation_mount_path}/federation",
                read_only=True,
            )
        )
    return volumes, mounts


def network_annotations(namespace: str, spec: KeystoneAPISpec) -> dict[str, str] | None:
    """Multus annotation attaching the pods to ``networkAttachments``."""
    if not spec.network_attachments:
        return None
    networks = [
        {"name": nad, "namespace": namespace} for nad in spec.network_attachments
    ]
    return {NETWORKS_ANNOTATION: json.dumps(networks)}


def default_affinity(instance_name: str) -> client.V1Affinity:
    """Prefer spreading API pods across nodes."""
    return client.V1Affinity(
        pod_anti_affinity=client.V1PodAntiAffinity(
            preferred_during_scheduling_ignored_during_execution=[
                client.V1WeightedPodAffinityTerm(
                    weight=100,
                    pod_affinity_term=client.V1PodAffinityTerm(
                        label_selector=client.V1LabelSelector(
                            match_labels=service_labels(instance_name)
                        ),
                        topology_key="kubernetes.io/hostname",
                    ),
                )
            ]
        )
    )


def build_deployment(
    instance_name: str,
    namespace: str,
    spec: KeystoneAPISpec,
    config_hash: str,
    topology: dict[str, Any] | None = None,
) -> client.V1Deployment:
    """
    Deployment running keystone-api under httpd.

    Args:
        instance_name: Name of the KeystoneAPI
        namespace: Target namespace
        spec: Validated KeystoneAPI spec
        config_hash: Hash of every input; a change rolls the pods
        topology: Spec of the referenced Topology, if any
    """
    labels = service_labels(instance_name)
    volumes, mounts = keystone_volumes(instance_name, spec)
    api_volumes, api_mounts = _api_only_volumes(instance_name, spec)
    volumes += api_volumes
    mounts += api_mounts

    scheme = "HTTPS" if spec.tls.enabled else "HTTP"
    probe = client.V1HTTPGetAction(path="/v3", port=KEYSTONE_PUBLIC_PORT, scheme=scheme)

    container = client.V1Container(
        name="keystone-api",
        image=spec.container_image,
        command=["/usr/sbin/httpd"],
        args=["-DFOREGROUND"],
        env=[
            client.V1EnvVar(name="CONFIG_HASH", value=config_hash),
            client.V1EnvVar(name="KOLLA_CONFIG_STRATEGY", value="COPY_ALWAYS"),
        ],
        ports=[client.V1ContainerPort(container_port=KEYSTONE_PUBLIC_PORT, name="keystone")],
        volume_mounts=mounts,
        resources=spec.resources,
        readiness_probe=client.V1Probe(
            http_get=probe, initial_delay_seconds=5, period_seconds=10, timeout_seconds=30
        ),
        liveness_probe=client.V1Probe(
            http_get=probe, initial_delay_seconds=5, period_seconds=30, timeout_seconds=30
        ),
    )

    topology = topology or {}
    spread_constraints = topology.get("topologySpreadConstraints") or None
    affinity: Any = topology.get("affinity")
    if not topology:
        affinity = default_affinity(instance_name)

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=instance_name, namespace=namespace, labels=labels),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    labels=labels, annotations=network_annotations(namespace, spec)
                ),
                spec=client.V1PodSpec(
                    service_account_name=f"{SERVICE_ACCOUNT_PREFIX}{instance_name}",
                    containers=[container],
                    volumes=volumes,
                    node_selector=spec.node_selector,
                    affinity=affinity,
                    topology_spread_constraints=spread_constraints,
                ),
            ),
        ),
    )


def build_job(
    job_name: str,
    instance_name: str,
    namespace: str,
    spec: KeystoneAPISpec,
    command: list[str],
    input_hash: str,
    env: list[client.V1EnvVar] | None = None,
) -> client.V1Job:
    """One-shot job sharing the API's configuration volumes."""
    labels = service_labels(instance_name)
    volumes, mounts = keystone_volumes(instance_name, spec)

    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=namespace,
            labels=labels,
            annotations={HASH_ANNOTATION: input_hash},
        ),
        spec=client.V1JobSpec(
            backoff_limit=6,
            ttl_seconds_after_finished=None if spec.preserve_jobs else 600,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    restart_policy="OnFailure",
                    service_account_name=f"{SERVICE_ACCOUNT_PREFIX}{instance_name}",
                    node_selector=spec.node_selector,
                    containers=[
                        client.V1Container(
                            name=job_name,
                            image=spec.container_image,
                            command=command,
                            env=env,
                            volume_mounts=mounts,
                        )
                    ],
                    volumes=volumes,
                ),
            ),
        ),
    )


def build_db_sync_job(
    instance_name: str, namespace: str, spec: KeystoneAPISpec, input_hash: str
) -> client.V1Job:
    return build_job(
        f"{instance_name}-db-sync",
        instance_name,
        namespace,
        spec,
        ["/bin/bash", "-c", "keystone-manage db_sync"],
        input_hash,
    )


def build_bootstrap_job(
    instance_name: str,
    namespace: str,
    spec: KeystoneAPISpec,
    endpoints: dict[str, str],
    input_hash: str,
) -> client.V1Job:
    """Job running ``keystone-manage bootstrap`` against the published endpoints."""
    env = [
        client.V1EnvVar(name="OS_BOOTSTRAP_USERNAME", value=spec.admin_user),
        client.V1EnvVar(name="OS_BOOTSTRAP_PROJECT_NAME", value=spec.admin_project),
        client.V1EnvVar(name="OS_BOOTSTRAP_SERVICE_NAME", value=SERVICE_NAME),
        client.V1EnvVar(name="OS_BOOTSTRAP_REGION_ID", value=spec.region),
        client.V1EnvVar(
            name="OS_BOOTSTRAP_ADMIN_URL", value=endpoints.get("internal", "")
        ),
        client.V1EnvVar(
            name="OS_BOOTSTRAP_INTERNAL_URL", value=endpoints.get("internal", "")
        ),
        client.V1EnvVar(
            name="OS_BOOTSTRAP_PUBLIC_URL", value=endpoints.get("public", "")
        ),
        client.V1EnvVar(
            name="OS_BOOTSTRAP_PASSWORD",
            value_from=client.V1EnvVarSource(
                secret_key_ref=client.V1SecretKeySelector(
                    name=spec.secret, key=spec.password_selectors.admin
                )
            ),
        ),
    ]
    return build_job(
        f"{instance_name}-bootstrap",
        instance_name,
        namespace,
        spec,
        ["/bin/bash", "-c", "keystone-manage bootstrap"],
        input_hash,
        env=env,
    )


def build_cron_job(
    instance_name: str, namespace: str, spec: KeystoneAPISpec
) -> client.V1CronJob:
    """Periodic ``keystone-manage trust_flush``."""
    labels = service_labels(instance_name)
    volumes, mounts = keystone_volumes(instance_name, spec)
    command = "keystone-manage trust_flush"
    if spec.trust_flush_args:
        command = f"{command} {spec.trust_flush_args}"

    return client.V1CronJob(
        metadata=client.V1ObjectMeta(
            name=f"{instance_name}-cron", namespace=namespace, labels=labels
        ),
        spec=client.V1CronJobSpec(
            schedule=spec.trust_flush_schedule,
            suspend=spec.trust_flush_suspend,
            concurrency_policy="Forbid",
            successful_jobs_history_limit=3,
            failed_jobs_history_limit=1,
            job_template=client.V1JobTemplateSpec(
                spec=client.V1JobSpec(
                    parallelism=1,
                    completions=1,
                    backoff_limit=6,
                    template=client.V1PodTemplateSpec(
                        metadata=client.V1ObjectMeta(labels=labels),
                        spec=client.V1PodSpec(
                            restart_policy="Never",
                            service_account_name=f"{SERVICE_ACCOUNT_PREFIX}{instance_name}",
                            node_selector=spec.node_selector,
                            containers=[
                                client.V1Container(
                                    name=f"{instance_name}-cron",
                                    image=spec.container_image,
                                    command=["/bin/bash", "-c", command],
                                    volume_mounts=mounts,
                                )
                            ],
                            volumes=volumes,
                        ),
                    ),
                )
            ),
        ),
    )
