"""
Pydantic models for KeystoneAPI and KeystoneService resources.

These models mirror the CRD schemas. Override structures are closed
(``extra="forbid"``) so an unknown key is rejected when the resource is
validated instead of being silently ignored deep inside reconciliation.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keystone_operator.constants import (
    DEFAULT_ADMIN_PROJECT,
    DEFAULT_ADMIN_USER,
    DEFAULT_DATABASE_ACCOUNT,
    DEFAULT_FEDERATION_MOUNT_PATH,
    DEFAULT_FERNET_MAX_ACTIVE_KEYS,
    DEFAULT_REGION,
    DEFAULT_REPLICAS,
    DEFAULT_TRUST_FLUSH_SCHEDULE,
    ENDPOINT_TYPES,
    FERNET_MIN_ACTIVE_KEYS,
)


def validate_routed_overrides(overrides: dict[str, Any] | None) -> list[str]:
    """
    Check that every routed service override key names a known endpoint type.

    Args:
        overrides: Mapping of endpoint type to override, as found in
            ``spec.override.service``

    Returns:
        Human readable error messages, empty when all keys are valid
    """
    errors = []
    for key in overrides or {}:
        if key not in ENDPOINT_TYPES:
            errors.append(
                f"spec.override.service[{key}]: invalid endpoint type {key!r}, "
                f"must be one of {', '.join(ENDPOINT_TYPES)}"
            )
    return errors


class ServiceOverrideMetadata(BaseModel):
    """Metadata merged into a generated Service."""

    model_config = ConfigDict(extra="forbid")

    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)


class ServiceOverrideSpec(BaseModel):
    """Service spec fields that may be overridden."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["ClusterIP", "LoadBalancer", "NodePort"] | None = None


class ServiceOverride(BaseModel):
    """Override for one routed endpoint Service."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    endpoint_url: str | None = Field(
        None,
        alias="endpointURL",
        description="Externally reachable URL published instead of the service address",
    )
    metadata: ServiceOverrideMetadata | None = None
    spec: ServiceOverrideSpec | None = None


class APIOverrideSpec(BaseModel):
    """Overrides for the resources generated for the API."""

    model_config = ConfigDict(extra="forbid")

    service: dict[str, ServiceOverride] = Field(default_factory=dict)

    @field_validator("service")
    @classmethod
    def validate_endpoint_types(cls, v):
        errors = validate_routed_overrides(v)
        if errors:
            raise ValueError("; ".join(errors))
        return v


class PasswordSelector(BaseModel):
    """Keys inside the input secret that hold passwords."""

    model_config = {"populate_by_name": True}

    admin: str = Field("AdminPassword", description="Key holding the admin password")


class TLSSecretReference(BaseModel):
    model_config = {"populate_by_name": True}

    secret_name: str | None = Field(None, alias="secretName")


class APIEndpointTLS(BaseModel):
    """Certificate secrets per endpoint type."""

    public: TLSSecretReference | None = None
    internal: TLSSecretReference | None = None


class APITLSConfig(BaseModel):
    """TLS configuration for the API endpoints."""

    model_config = {"populate_by_name": True}

    api: APIEndpointTLS = Field(default_factory=APIEndpointTLS)
    ca_bundle_secret_name: str | None = Field(None, alias="caBundleSecretName")

    def endpoint_secret(self, endpoint: str) -> str | None:
        ref = getattr(self.api, endpoint, None)
        return ref.secret_name if ref else None

    @property
    def enabled(self) -> bool:
        """True when any endpoint serves TLS."""
        return any(self.endpoint_secret(e) for e in ENDPOINT_TYPES)


class TopologyReference(BaseModel):
    """Reference to a Topology resource."""

    model_config = {"populate_by_name": True}

    name: str
    namespace: str | None = None


class ExtraMount(BaseModel):
    """Additional volumes mounted into the keystone-api container."""

    model_config = {"populate_by_name": True}

    name: str | None = None
    volumes: list[dict[str, Any]] = Field(default_factory=list)
    mounts: list[dict[str, Any]] = Field(default_factory=list)


class HttpdCustomization(BaseModel):
    model_config = {"populate_by_name": True}

    custom_config_secret: str | None = Field(
        None,
        alias="customConfigSecret",
        description="Secret whose keys are rendered as httpd_custom_<key> into the config secret",
    )
    process_number: int = Field(3, alias="processNumber", ge=1)


class KeystoneAPISpec(BaseModel):
    """
    Specification of a KeystoneAPI resource.

    ``containerImage`` may be empty in the stored object; the defaulting
    webhook (or the reconciler when webhooks are disabled) fills it in.
    """

    model_config = {"populate_by_name": True}

    container_image: str = Field("", alias="containerImage")
    replicas: int = Field(DEFAULT_REPLICAS, ge=0, le=32)
    database_instance: str = Field(..., alias="databaseInstance", min_length=1)
    database_account: str = Field(DEFAULT_DATABASE_ACCOUNT, alias="databaseAccount")
    secret: str = Field(..., min_length=1, description="Secret holding the admin password")
    password_selectors: PasswordSelector = Field(
        default_factory=PasswordSelector, alias="passwordSelectors"
    )
    admin_user: str = Field(DEFAULT_ADMIN_USER, alias="adminUser")
    admin_project: str = Field(DEFAULT_ADMIN_PROJECT, alias="adminProject")
    region: str = Field(DEFAULT_REGION)
    rabbit_mq_cluster_name: str = Field("rabbitmq", alias="rabbitMqClusterName")
    memcached_instance: str = Field("memcached", alias="memcachedInstance")
    enable_secure_rbac: bool = Field(True, alias="enableSecureRBAC")
    tls: APITLSConfig = Field(default_factory=APITLSConfig)
    topology_ref: TopologyReference | None = Field(None, alias="topologyRef")
    fernet_max_active_keys: int = Field(
        DEFAULT_FERNET_MAX_ACTIVE_KEYS,
        alias="fernetMaxActiveKeys",
        ge=FERNET_MIN_ACTIVE_KEYS,
    )
    node_selector: dict[str, str] | None = Field(None, alias="nodeSelector")
    override: APIOverrideSpec = Field(default_factory=APIOverrideSpec)
    extra_mounts: list[ExtraMount] = Field(default_factory=list, alias="extraMounts")
    httpd_customization: HttpdCustomization = Field(
        default_factory=HttpdCustomization, alias="httpdCustomization"
    )
    custom_service_config: str = Field("", alias="customServiceConfig")
    default_config_overwrite: dict[str, str] = Field(
        default_factory=dict, alias="defaultConfigOverwrite"
    )
    federated_realm_config: str | None = Field(
        None,
        alias="federatedRealmConfig",
        description="Secret holding multi-realm federation configuration",
    )
    federation_mount_path: str = Field(
        DEFAULT_FEDERATION_MOUNT_PATH, alias="federationMountPath"
    )
    network_attachments: list[str] = Field(
        default_factory=list, alias="networkAttachments"
    )
    resources: dict[str, Any] | None = None
    trust_flush_schedule: str = Field(
        DEFAULT_TRUST_FLUSH_SCHEDULE, alias="trustFlushSchedule"
    )
    trust_flush_args: str = Field("", alias="trustFlushArgs")
    trust_flush_suspend: bool = Field(False, alias="trustFlushSuspend")
    preserve_jobs: bool = Field(False, alias="preserveJobs")

    @field_validator("node_selector")
    @classmethod
    def empty_node_selector_is_none(cls, v):
        return v or None


class KeystoneServiceSpec(BaseModel):
    """Specification of a KeystoneService resource."""

    model_config = {"populate_by_name": True}

    service_type: str = Field(..., alias="serviceType", min_length=1)
    service_name: str = Field(..., alias="serviceName", min_length=1)
    service_description: str = Field("", alias="serviceDescription")
    enabled: bool = True
    service_user: str = Field(..., alias="serviceUser", min_length=1)
    secret: str = Field(..., min_length=1)
    password_selector: str = Field("ServicePassword", alias="passwordSelector")


class KeystoneAPIDefaults(BaseModel):
    """Values applied by the defaulting webhook to empty spec fields."""

    container_image_url: str


class KeystoneAPIDefaulter:
    """
    Fills computed defaults into a KeystoneAPI spec.

    Built once at operator startup from ``Settings`` and handed to both the
    mutating webhook and the reconciler, so defaults never live in a
    module-level variable.
    """

    def __init__(self, defaults: KeystoneAPIDefaults):
        self.defaults = defaults

    def default(self, spec: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``spec`` with empty defaultable fields filled in."""
        result = dict(spec)
        if not result.get("containerImage"):
            result["containerImage"] = self.defaults.container_image_url
        return result

    def patch(self, spec: dict[str, Any]) -> dict[str, Any]:
        """Spec fields the defaulter would change, as a merge patch."""
        defaulted = self.default(spec)
        return {k: v for k, v in defaulted.items() if spec.get(k) != v}
