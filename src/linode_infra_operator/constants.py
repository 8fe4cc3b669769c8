"""Constants for the Linode Infra Operator."""

# API Group
API_GROUP = "infra.cloud37.dev"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_VPC = "LinodeVPC"
KIND_FIREWALL = "LinodeFirewall"
KIND_NODEBALANCER = "LinodeNodeBalancer"
KIND_BUCKET = "LinodeObjectStorageBucket"
KIND_OBJECT_STORAGE_KEY = "LinodeObjectStorageKey"
KIND_PLACEMENT_GROUP = "LinodePlacementGroup"
KIND_INSTANCE = "LinodeInstance"
KIND_ADDRESS_SET = "AddressSet"

# Plurals used by the custom objects API
PLURALS = {
    KIND_VPC: "linodevpcs",
    KIND_FIREWALL: "linodefirewalls",
    KIND_NODEBALANCER: "linodenodebalancers",
    KIND_BUCKET: "linodeobjectstoragebuckets",
    KIND_OBJECT_STORAGE_KEY: "linodeobjectstoragekeys",
    KIND_PLACEMENT_GROUP: "linodeplacementgroups",
    KIND_INSTANCE: "linodeinstances",
    KIND_ADDRESS_SET: "addresssets",
}

# Labels
LABEL_MANAGED_BY = f"{API_GROUP}/managed-by"
LABEL_CLUSTER_NAME = f"{API_GROUP}/cluster-name"

# Finalizers
FINALIZER = f"{API_GROUP}/finalizer"

# Field Manager
FIELD_MANAGER = "linode-infra-operator"
CONTROLLER_NAME = "linode-infra-operator"

# Provider limits
MAX_FIREWALL_RULE_LABEL_LENGTH = 32
MAX_IPS_PER_FIREWALL_RULE = 255
MAX_RULES_PER_FIREWALL = 25
DEFAULT_POST_REQUEST_LIMIT = 10

# Requeue delays (seconds)
DEFAULT_REQUEUE_DELAY = 5
DEFAULT_MACHINE_RETRY_DELAY = 10
TOO_MANY_REQUESTS_DELAY = 60
WAIT_FOR_RUNNING_DELAY = 15
RATE_LIMIT_SKEW_SECONDS = 1
MAX_COMMIT_CONFLICT_RETRIES = 3

# VLAN addressing
VLAN_IP_RANGE = "10.0.0.0/8"

# Provider response headers used by the quota tracker
HEADER_RATELIMIT_REMAINING = "X-Ratelimit-Remaining"
HEADER_RATELIMIT_RESET = "X-Ratelimit-Reset"
HEADER_FILTER = "X-Filter"

# Credential secret keys
CREDENTIAL_TOKEN_KEY = "apiToken"
S3_SECRET_ACCESS_KEY = "access"
S3_SECRET_SECRET_KEY = "secret"
S3_SECRET_ENDPOINT_KEY = "endpoint"

# Condition Types
COND_READY = "Ready"
COND_PREFLIGHT_CREATED = "PreflightCreated"
COND_PREFLIGHT_ROTATED = "PreflightKeyRotated"
COND_PREFLIGHT_SECRET_RESTORED = "PreflightSecretRestored"
COND_PREFLIGHT_RATE_LIMITED = "PreflightRateLimited"
COND_PREFLIGHT_WAITING_FOR_DETACH = "PreflightWaitingForDetach"

# Condition severities
SEVERITY_INFO = "Info"
SEVERITY_WARNING = "Warning"
SEVERITY_ERROR = "Error"

# Failure reasons written to status.failureReason
FAILURE_REASON_VALIDATION = "InvalidConfiguration"
FAILURE_REASON_CAPACITY = "CapacityExceeded"
FAILURE_REASON_TRANSIENT = "TransientError"
FAILURE_REASON_INVARIANT = "DuplicateExternalResources"
FAILURE_REASON_CONFLICT = "ExternalConflict"
FAILURE_REASON_CREATE = "CreateError"
FAILURE_REASON_UPDATE = "UpdateError"
FAILURE_REASON_DELETE = "DeleteError"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_CREATED = "Created"
EVENT_REASON_ADOPTED = "Adopted"
EVENT_REASON_UPDATED = "Updated"
EVENT_REASON_DELETED = "Deleted"
EVENT_REASON_RECREATING = "Recreating"
EVENT_REASON_KEY_ASSIGNED = "KeyAssigned"
EVENT_REASON_KEY_ROTATED = "KeyRotated"
EVENT_REASON_KEY_REVOKE_FAILED = "KeyRevokeFailed"
EVENT_REASON_KEY_REVOKED = "KeyRevoked"
EVENT_REASON_SECRET_RESTORED = "KeySecretRestored"
