"""Names, labels and well-known values shared across the operator."""

API_GROUP = "policies.admiral.io"
API_VERSION = "v1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

KIND_POLICY_SERVER = "PolicyServer"
KIND_ADMISSION_POLICY = "AdmissionPolicy"
KIND_CLUSTER_ADMISSION_POLICY = "ClusterAdmissionPolicy"
KIND_ADMISSION_POLICY_GROUP = "AdmissionPolicyGroup"
KIND_CLUSTER_ADMISSION_POLICY_GROUP = "ClusterAdmissionPolicyGroup"

POLICY_KINDS = [
    KIND_ADMISSION_POLICY,
    KIND_CLUSTER_ADMISSION_POLICY,
    KIND_ADMISSION_POLICY_GROUP,
    KIND_CLUSTER_ADMISSION_POLICY_GROUP,
]

FINALIZER = "admiral.io/finalizer"

# Kubernetes recommended labels
COMPONENT_LABEL_KEY = "app.kubernetes.io/component"
INSTANCE_LABEL_KEY = "app.kubernetes.io/instance"
PART_OF_LABEL_KEY = "app.kubernetes.io/part-of"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"

COMPONENT_POLICY_SERVER = "policy-server"
COMPONENT_CERTIFICATE = "certificate"
PART_OF_VALUE = "admiral"
MANAGED_BY_VALUE = "admiral-controller"

POLICY_SERVER_LABEL_KEY = "admiral.io/policy-server"
APP_LABEL_KEY = "app"
POLICY_NAME_ANNOTATION = "admiral.io/policy-name"
POLICY_NAMESPACE_ANNOTATION = "admiral.io/policy-namespace"
POLICY_KIND_LABEL_KEY = "admiral.io/policy-kind"
CONFIG_HASH_ANNOTATION = "admiral.io/config-hash"
# Outside the kopf storage prefix "admiral.io/" so a change triggers on.update.
POLICIES_REVISION_ANNOTATION = "policies.admiral.io/policies-revision"
OTEL_SIDECAR_ANNOTATION = "sidecar.opentelemetry.io/inject"

POLICY_SERVER_PREFIX = "policy-server-"

# Policy server container layout
POLICY_SERVER_CONTAINER_NAME = "policy-server"
POLICY_SERVER_PORT = 8443
POLICY_SERVER_READINESS_PORT = 8081
POLICY_SERVER_METRICS_PORT = 8080
POLICY_SERVER_READINESS_PATH = "/readiness"
POLICIES_FILENAME = "policies.yml"
SOURCES_FILENAME = "sources.yml"
POLICIES_VOLUME_NAME = "policies"
POLICIES_MOUNT_PATH = "/config"
CERTS_VOLUME_NAME = "certs"
CERTS_MOUNT_PATH = "/pki"
DOCKER_CONFIG_VOLUME_NAME = "imagepullsecret"
DOCKER_CONFIG_MOUNT_PATH = "/home/admiral/.docker"
VERIFICATION_CONFIG_VOLUME_NAME = "verification"
VERIFICATION_CONFIG_MOUNT_PATH = "/verification"
VERIFICATION_CONFIG_KEY = "verification-config"
CLIENT_CA_VOLUME_NAME = "client-ca"
CLIENT_CA_MOUNT_PATH = "/pki/client-ca"

# Certificates
CA_ROOT_SECRET_NAME = "admiral-ca"
CA_ROOT_CERT_KEY = "ca.crt"
CA_ROOT_PRIVATE_KEY_KEY = "ca.key"
WEBHOOK_SERVER_CERT_SECRET_NAME = "admiral-webhook-server-cert"
SERVER_CERT_KEY = "tls.crt"
SERVER_PRIVATE_KEY_KEY = "tls.key"
CLIENT_CA_CERT_KEY = "client-ca.crt"
CERTIFICATE_LABEL_KEY = "admiral.io/certificate"

# Webhooks
WEBHOOK_NAME_SUFFIX = "admiral.io"
WEBHOOK_PATH_PREFIX = "/validate"
NAMESPACE_NAME_LABEL_KEY = "kubernetes.io/metadata.name"
DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_POLICY_SERVER = "default"

DNS1035_LABEL_MAX_LENGTH = 63
