"""
Constants used throughout the Keystone operator.

This module defines all constant values used by the operator including:
- Custom resource coordinates for owned and consumed resources
- Finalizer names for cleanup coordination
- Condition types, reasons and severities
- Default configuration values and requeue delays
"""

# Custom resources owned by this operator
KEYSTONE_GROUP = "keystone.openstack.org"
KEYSTONE_VERSION = "v1beta1"
KEYSTONE_API_PLURAL = "keystoneapis"
KEYSTONE_SERVICE_PLURAL = "keystoneservices"
KEYSTONE_API_KIND = "KeystoneAPI"
KEYSTONE_SERVICE_KIND = "KeystoneService"

# Custom resources consumed as dependencies
MARIADB_GROUP = "mariadb.openstack.org"
MARIADB_VERSION = "v1beta1"
MARIADB_DATABASE_PLURAL = "mariadbdatabases"
MARIADB_ACCOUNT_PLURAL = "mariadbaccounts"
RABBITMQ_GROUP = "rabbitmq.openstack.org"
RABBITMQ_VERSION = "v1beta1"
TRANSPORT_URL_PLURAL = "transporturls"
MEMCACHED_GROUP = "memcached.openstack.org"
MEMCACHED_VERSION = "v1beta1"
MEMCACHED_PLURAL = "memcacheds"
TOPOLOGY_GROUP = "topology.openstack.org"
TOPOLOGY_VERSION = "v1beta1"
TOPOLOGY_PLURAL = "topologies"
NAD_GROUP = "k8s.cni.cncf.io"
NAD_VERSION = "v1"
NAD_PLURAL = "network-attachment-definitions"

# Finalizer constants for cleanup coordination
FINALIZER_PREFIX = "openstack.org"
KEYSTONE_API_FINALIZER = "openstack.org/keystoneapi"
KEYSTONE_SERVICE_FINALIZER = "openstack.org/keystoneservice"

# Label and annotation constants
SERVICE_LABEL_KEY = "service"
SERVICE_NAME = "keystone"
OWNER_LABEL_KEY = "keystone.openstack.org/owner"
DATABASE_NAME_LABEL_KEY = "mariaDBDatabaseName"
ROTATED_AT_ANNOTATION = "keystone.openstack.org/rotatedat"
HASH_ANNOTATION = "keystone.openstack.org/hash"

# Condition type constants, KeystoneAPI
CONDITION_READY = "Ready"
CONDITION_INPUT_READY = "InputReady"
CONDITION_DB_READY = "DBReady"
CONDITION_TRANSPORT_URL_READY = "RabbitMqTransportURLReady"
CONDITION_MEMCACHED_READY = "MemcachedReady"
CONDITION_SERVICE_CONFIG_READY = "ServiceConfigReady"
CONDITION_DB_SYNC_READY = "DBSyncReady"
CONDITION_CREATE_SERVICE_READY = "CreateServiceReady"
CONDITION_BOOTSTRAP_READY = "BootstrapReady"
CONDITION_NETWORK_ATTACHMENTS_READY = "NetworkAttachmentsReady"
CONDITION_DEPLOYMENT_READY = "DeploymentReady"
CONDITION_CRON_JOB_READY = "CronJobReady"
CONDITION_TLS_INPUT_READY = "TLSInputReady"
CONDITION_TOPOLOGY_READY = "TopologyReady"

# Condition type constants, KeystoneService
CONDITION_KEYSTONE_API_READY = "KeystoneAPIReady"
CONDITION_ADMIN_CLIENT_READY = "AdminServiceClientReady"
CONDITION_OS_SERVICE_READY = "KeystoneServiceOSServiceReady"
CONDITION_OS_USER_READY = "KeystoneServiceOSUserReady"

KEYSTONE_API_CONDITIONS = (
    CONDITION_INPUT_READY,
    CONDITION_DB_READY,
    CONDITION_TRANSPORT_URL_READY,
    CONDITION_MEMCACHED_READY,
    CONDITION_TLS_INPUT_READY,
    CONDITION_SERVICE_CONFIG_READY,
    CONDITION_DB_SYNC_READY,
    CONDITION_CREATE_SERVICE_READY,
    CONDITION_BOOTSTRAP_READY,
    CONDITION_NETWORK_ATTACHMENTS_READY,
    CONDITION_TOPOLOGY_READY,
    CONDITION_DEPLOYMENT_READY,
    CONDITION_CRON_JOB_READY,
)

KEYSTONE_SERVICE_CONDITIONS = (
    CONDITION_KEYSTONE_API_READY,
    CONDITION_ADMIN_CLIENT_READY,
    CONDITION_OS_SERVICE_READY,
    CONDITION_OS_USER_READY,
)

# Condition status constants
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Condition reasons
REASON_INIT = "Init"
REASON_READY = "Ready"
REASON_REQUESTED = "Requested"
REASON_ERROR = "Error"
REASON_NOT_FOUND = "NotFound"

# Condition severities, most severe first
SEVERITY_ERROR = "Error"
SEVERITY_WARNING = "Warning"
SEVERITY_INFO = "Info"
SEVERITY_ORDER = (SEVERITY_ERROR, SEVERITY_WARNING, SEVERITY_INFO)

# Condition messages
MESSAGE_INIT = "Setup started"
MESSAGE_READY = "Setup complete"
MESSAGE_WAITING = "{} waiting for dependency"
MESSAGE_NOT_FOUND = "{} not found"
MESSAGE_DEPLOYMENT_RUNNING = "Deployment in progress"
MESSAGE_JOB_RUNNING = "Job {} running"
MESSAGE_JOB_FAILED = "Job {} failed"
MESSAGE_TLS_CA_MISSING = "TLSInput is missing: {}"
MESSAGE_TLS_SECRET_MISSING = 'TLSInput is missing: secrets "{} in namespace {}" not found'

# Default configuration values
DEFAULT_KEYSTONE_API_IMAGE = (
    "quay.io/podified-antelope-centos9/openstack-keystone:current-podified"
)
DEFAULT_DATABASE_NAME = "keystone"
DEFAULT_DATABASE_ACCOUNT = "keystone"
DEFAULT_REPLICAS = 1
DEFAULT_REGION = "regionOne"
DEFAULT_ADMIN_USER = "admin"
DEFAULT_ADMIN_PROJECT = "admin"
DEFAULT_DOMAIN = "default"
DEFAULT_SERVICE_PROJECT = "service"
DEFAULT_SERVICE_ROLES = ("admin", "service")
DEFAULT_TRUST_FLUSH_SCHEDULE = "1 * * * *"
DEFAULT_FEDERATION_MOUNT_PATH = "/etc/httpd/conf"
KEYSTONE_PUBLIC_PORT = 5000
KEYSTONE_CONFIG_DIR = "/etc/keystone"
FERNET_KEYS_MOUNT_PATH = "/etc/keystone/fernet-keys"
CREDENTIAL_KEYS_MOUNT_PATH = "/etc/keystone/credential-keys"
CA_BUNDLE_KEY = "tls-ca-bundle.pem"
# Fields of a kubernetes.io/tls secret the operator reads
TLS_SECRET_KEYS = ("tls.crt", "tls.key", "ca.crt")
CA_BUNDLE_MOUNT_PATH = "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem"

# Endpoint types accepted for routed service overrides
ENDPOINT_PUBLIC = "public"
ENDPOINT_INTERNAL = "internal"
ENDPOINT_TYPES = (ENDPOINT_PUBLIC, ENDPOINT_INTERNAL)

# Fernet key ring
FERNET_MIN_ACTIVE_KEYS = 3
DEFAULT_FERNET_MAX_ACTIVE_KEYS = 5
FERNET_ROTATION_PERIOD_HOURS = 24
FERNET_KEY_PREFIX = "FernetKeys"
CREDENTIAL_KEY_PREFIX = "CredentialKeys"
CREDENTIAL_KEY_COUNT = 2

# Client configuration artifacts
CLIENT_CONFIG_MAP = "openstack-config"
CLIENT_CONFIG_SECRET = "openstack-config-secret"

# Requeue delays (in seconds)
REQUEUE_DEPENDENCY_DELAY = 5
REQUEUE_SECRET_DELAY = 10
REQUEUE_INIT_DELAY = 1
CONFLICT_RETRY_DELAY = 2
