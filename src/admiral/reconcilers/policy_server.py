"""PolicyServer reconciler: certificates, ConfigMap, Deployment, Service and PDB."""

import hashlib
import logging

import yaml
from pydantic import ValidationError

from admiral import constants
from admiral.errors import (
    CertificateGenerationError,
    InvalidSpecError,
    MissingDependencyError,
    TransientReconcileError,
)
from admiral.kube import create_or_patch, delete_ignore_not_found
from admiral.models.policies import policy_from_body
from admiral.models.policy_server import PolicyServer
from admiral.models.status import (
    POLICY_SERVER_CONDITION_ORDER,
    ConditionReason,
    PolicyServerConditionType,
)
from admiral.reconcilers.conditions import order_conditions, set_condition
from admiral.reconcilers.conditions import status_changed
from admiral.reconcilers.pdb import reconcile_pod_disruption_budget
from admiral.validation import validate_policy

logger = logging.getLogger(__name__)

DEFAULT_CONTAINER_SECURITY_CONTEXT = {
    "allowPrivilegeEscalation": False,
    "capabilities": {"drop": ["ALL"]},
    "privileged": False,
    "readOnlyRootFilesystem": True,
    "runAsNonRoot": True,
}

DEFAULT_POD_SECURITY_CONTEXT = {
    "runAsNonRoot": True,
    "seccompProfile": {"type": "RuntimeDefault"},
}


class StepSkipped(Exception):
    """A step could not run because an earlier one failed."""


class PolicyServerReconciler:
    """Converges the objects owned by a PolicyServer."""

    def __init__(self, kube, config, certificates):
        self.kube = kube
        self.config = config
        self.certificates = certificates
        self.namespace = config.deployments_namespace

    # Desired state

    def bound_policies(self, server_name):
        """Valid, non-deleted policies of every kind that target ``server_name``."""
        policies = []
        for kind in constants.POLICY_KINDS:
            for body in self.kube.list(kind):
                try:
                    policy = policy_from_body(body, kind)
                except ValidationError as e:
                    name = body.get("metadata", {}).get("name")
                    logger.warning(f"Skipping malformed {kind} {name}: {e}")
                    continue
                if policy.policy_server != server_name or policy.deleting:
                    continue
                if validate_policy(policy):
                    continue
                policies.append(policy)
        return sorted(policies, key=lambda p: p.unique_name)

    @staticmethod
    def _context_aware(resources):
        return [r.model_dump() for r in resources]

    def policies_config(self, policies):
        """Content of policies.yml, keyed by unique name."""
        entries = {}
        for policy in policies:
            entry = {
                "namespacedName": {"namespace": policy.namespace, "name": policy.name},
                "policyMode": policy.get_policy_mode(),
            }
            if policy.is_group:
                entry["expression"] = policy.expression
                entry["message"] = policy.message
                entry["policies"] = {
                    member_name: {
                        "module": member.module,
                        "settings": member.settings,
                        "contextAwareResources": self._context_aware(
                            member.contextAwareResources
                        ),
                    }
                    for member_name, member in policy.members.items()
                }
            else:
                entry["module"] = policy.module
                entry["settings"] = policy.settings
                entry["allowedToMutate"] = policy.is_mutating()
                entry["contextAwareResources"] = self._context_aware(
                    policy.context_aware_resources
                )
            entries[policy.unique_name] = entry
        return yaml.safe_dump(entries, sort_keys=True, default_flow_style=False)

    @staticmethod
    def sources_config(server):
        sources = {
            "insecure_sources": sorted(set(server.spec.insecureSources)),
            "source_authorities": {
                host: [{"type": "Data", "data": pem} for pem in pems]
                for host, pems in sorted(server.spec.sourceAuthorities.items())
            },
        }
        return yaml.safe_dump(sources, sort_keys=True, default_flow_style=False)

    def desired_config_map(self, server):
        policies_yml = self.policies_config(self.bound_policies(server.name))
        sources_yml = self.sources_config(server)
        digest = hashlib.sha256()
        digest.update(policies_yml.encode())
        digest.update(sources_yml.encode())
        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._metadata(server),
            "data": {
                constants.POLICIES_FILENAME: policies_yml,
                constants.SOURCES_FILENAME: sources_yml,
            },
        }
        return config_map, digest.hexdigest()

    def _metadata(self, server):
        return {
            "name": server.name_with_prefix,
            "namespace": self.namespace,
            "labels": server.common_labels(),
            "ownerReferences": [server.owner_reference()],
        }

    def _env(self, server):
        env = [
            {"name": "ADMIRAL_CERT_FILE",
             "value": f"{constants.CERTS_MOUNT_PATH}/{constants.SERVER_CERT_KEY}"},
            {"name": "ADMIRAL_KEY_FILE",
             "value": f"{constants.CERTS_MOUNT_PATH}/{constants.SERVER_PRIVATE_KEY_KEY}"},
            {"name": "ADMIRAL_PORT", "value": str(constants.POLICY_SERVER_PORT)},
            {"name": "ADMIRAL_READINESS_PROBE_PORT",
             "value": str(constants.POLICY_SERVER_READINESS_PORT)},
            {"name": "ADMIRAL_POLICIES",
             "value": f"{constants.POLICIES_MOUNT_PATH}/{constants.POLICIES_FILENAME}"},
            {"name": "ADMIRAL_SOURCES_PATH",
             "value": f"{constants.POLICIES_MOUNT_PATH}/{constants.SOURCES_FILENAME}"},
            {"name": "ADMIRAL_POLICIES_DOWNLOAD_DIR", "value": "/tmp"},
        ]
        if server.spec.imagePullSecret:
            env.append({
                "name": "ADMIRAL_DOCKER_CONFIG_JSON_PATH",
                "value": f"{constants.DOCKER_CONFIG_MOUNT_PATH}/config.json",
            })
        if server.spec.verificationConfig:
            env.append({
                "name": "ADMIRAL_VERIFICATION_CONFIG_PATH",
                "value": f"{constants.VERIFICATION_CONFIG_MOUNT_PATH}/"
                         f"{constants.VERIFICATION_CONFIG_KEY}",
            })
        if self.config.mutual_tls_enabled:
            env.append({
                "name": "ADMIRAL_CLIENT_CA_FILE",
                "value": f"{constants.CLIENT_CA_MOUNT_PATH}/{constants.CLIENT_CA_CERT_KEY}",
            })
        if self.config.enable_metrics:
            env.append({"name": "ADMIRAL_ENABLE_METRICS", "value": "1"})
        if self.config.enable_tracing:
            env.append({"name": "ADMIRAL_LOG_FMT", "value": "otlp"})
        return env + list(server.spec.env)

    def _volumes(self, server):
        volumes = [
            {
                "name": constants.POLICIES_VOLUME_NAME,
                "configMap": {
                    "name": server.name_with_prefix,
                    "items": [
                        {"key": constants.POLICIES_FILENAME,
                         "path": constants.POLICIES_FILENAME},
                        {"key": constants.SOURCES_FILENAME,
                         "path": constants.SOURCES_FILENAME},
                    ],
                },
            },
            {
                "name": constants.CERTS_VOLUME_NAME,
                "secret": {"secretName": server.name_with_prefix},
            },
        ]
        mounts = [
            {"name": constants.POLICIES_VOLUME_NAME,
             "mountPath": constants.POLICIES_MOUNT_PATH, "readOnly": True},
            {"name": constants.CERTS_VOLUME_NAME,
             "mountPath": constants.CERTS_MOUNT_PATH, "readOnly": True},
        ]

        if server.spec.imagePullSecret:
            volumes.append({
                "name": constants.DOCKER_CONFIG_VOLUME_NAME,
                "secret": {
                    "secretName": server.spec.imagePullSecret,
                    "items": [{"key": ".dockerconfigjson", "path": "config.json"}],
                },
            })
            mounts.append({"name": constants.DOCKER_CONFIG_VOLUME_NAME,
                           "mountPath": constants.DOCKER_CONFIG_MOUNT_PATH,
                           "readOnly": True})

        if server.spec.verificationConfig:
            volumes.append({
                "name": constants.VERIFICATION_CONFIG_VOLUME_NAME,
                "configMap": {
                    "name": server.spec.verificationConfig,
                    "items": [{"key": constants.VERIFICATION_CONFIG_KEY,
                               "path": constants.VERIFICATION_CONFIG_KEY}],
                },
            })
            mounts.append({"name": constants.VERIFICATION_CONFIG_VOLUME_NAME,
                           "mountPath": constants.VERIFICATION_CONFIG_MOUNT_PATH,
                           "readOnly": True})

        if self.config.mutual_tls_enabled:
            volumes.append({
                "name": constants.CLIENT_CA_VOLUME_NAME,
                "configMap": {
                    "name": self.config.client_ca_configmap_name,
                    "items": [{"key": constants.CLIENT_CA_CERT_KEY,
                               "path": constants.CLIENT_CA_CERT_KEY}],
                },
            })
            mounts.append({"name": constants.CLIENT_CA_VOLUME_NAME,
                           "mountPath": constants.CLIENT_CA_MOUNT_PATH,
                           "readOnly": True})
        return volumes, mounts

    def desired_deployment(self, server, config_hash):
        spec = server.spec
        volumes, mounts = self._volumes(server)

        ports = [{"name": "policy-server", "containerPort": constants.POLICY_SERVER_PORT,
                  "protocol": "TCP"}]
        if self.config.enable_metrics:
            ports.append({"name": "metrics",
                          "containerPort": constants.POLICY_SERVER_METRICS_PORT,
                          "protocol": "TCP"})

        annotations = dict(spec.annotations)
        annotations[constants.CONFIG_HASH_ANNOTATION] = config_hash
        if self.config.enable_otel_sidecar and (
            self.config.enable_metrics or self.config.enable_tracing
        ):
            annotations[constants.OTEL_SIDECAR_ANNOTATION] = "true"

        container = {
            "name": constants.POLICY_SERVER_CONTAINER_NAME,
            "image": spec.image,
            "ports": ports,
            "env": self._env(server),
            "readinessProbe": {
                "httpGet": {
                    "path": constants.POLICY_SERVER_READINESS_PATH,
                    "port": constants.POLICY_SERVER_READINESS_PORT,
                    "scheme": "HTTP",
                }
            },
            "resources": {"limits": dict(spec.limits), "requests": dict(spec.requests)},
            "securityContext": (
                spec.securityContexts.container or DEFAULT_CONTAINER_SECURITY_CONTEXT
            ),
            "volumeMounts": mounts,
        }

        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": self._metadata(server),
            "spec": {
                "replicas": spec.replicas,
                "selector": {"matchLabels": {constants.APP_LABEL_KEY: server.app_label}},
                "template": {
                    "metadata": {
                        "labels": server.pod_labels(),
                        "annotations": annotations,
                    },
                    "spec": {
                        "containers": [container],
                        "volumes": volumes,
                        "securityContext": (
                            spec.securityContexts.pod or DEFAULT_POD_SECURITY_CONTEXT
                        ),
                        "serviceAccountName": spec.serviceAccountName or "default",
                        "affinity": spec.affinity or None,
                        "tolerations": spec.tolerations or None,
                        "priorityClassName": spec.priorityClassName,
                    },
                },
            },
        }

    def desired_service(self, server):
        ports = [{"name": "policy-server", "port": constants.POLICY_SERVER_PORT,
                  "targetPort": constants.POLICY_SERVER_PORT, "protocol": "TCP"}]
        if self.config.enable_metrics:
            ports.append({"name": "metrics", "port": constants.POLICY_SERVER_METRICS_PORT,
                          "targetPort": constants.POLICY_SERVER_METRICS_PORT,
                          "protocol": "TCP"})
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(server),
            "spec": {
                "selector": {constants.APP_LABEL_KEY: server.app_label},
                "ports": ports,
            },
        }

    # Reconcile pass

    def _run_step(self, state, condition_type, step):
        """Run one step and record its outcome as a condition."""
        try:
            result = step()
        except StepSkipped as e:
            self._fail(state, condition_type, ConditionReason.MISSING_DEPENDENCY, str(e))
            return None
        except (InvalidSpecError, MissingDependencyError, CertificateGenerationError) as e:
            logger.warning(f"{condition_type.value} failed: {e}")
            self._fail(state, condition_type, e.reason, str(e))
            return None
        except TransientReconcileError as e:
            logger.warning(f"{condition_type.value} failed, will retry: {e}")
            self._fail(state, condition_type, e.reason, str(e))
            state["transient"] = state["transient"] or e
            return None

        state["conditions"] = set_condition(
            state["conditions"],
            condition_type,
            "True",
            ConditionReason.RECONCILIATION_SUCCEEDED,
            observed_generation=state["generation"],
        )
        state["succeeded"].add(condition_type)
        return result

    @staticmethod
    def _fail(state, condition_type, reason, message):
        state["conditions"] = set_condition(
            state["conditions"],
            condition_type,
            "False",
            reason,
            message,
            observed_generation=state["generation"],
        )

    def reconcile(self, body):
        """One reconcile pass. Returns the status written to the PolicyServer.

        Raises:
            TransientReconcileError: after the status is written, so kopf retries
        """
        server = PolicyServer.from_body(body)
        current_status = body.get("status") or {}
        state = {
            "conditions": list(current_status.get("conditions") or []),
            "generation": server.metadata.generation,
            "transient": None,
            "succeeded": set(),
        }
        types = PolicyServerConditionType
        outputs = {}

        def ca_step():
            outputs["ca"] = self.certificates.reconcile_ca()

        def cert_step():
            if types.CA_ROOT_SECRET_RECONCILED not in state["succeeded"]:
                raise StepSkipped("CA root secret is not available")
            self.certificates.reconcile_policy_server_cert(server, outputs["ca"])

        def config_map_step():
            config_map, outputs["config_hash"] = self.desired_config_map(server)
            create_or_patch(self.kube, config_map)

        def deployment_step():
            for required in (types.CERT_SECRET_RECONCILED, types.CONFIG_MAP_RECONCILED):
                if required not in state["succeeded"]:
                    raise StepSkipped(f"{required.value} is not True")
            self.certificates.client_ca_bundle()
            create_or_patch(
                self.kube, self.desired_deployment(server, outputs["config_hash"])
            )

        def service_step():
            create_or_patch(self.kube, self.desired_service(server))

        def pdb_step():
            reconcile_pod_disruption_budget(self.kube, server, self.namespace)

        self._run_step(state, types.CA_ROOT_SECRET_RECONCILED, ca_step)
        self._run_step(state, types.CERT_SECRET_RECONCILED, cert_step)
        self._run_step(state, types.CONFIG_MAP_RECONCILED, config_map_step)
        self._run_step(state, types.DEPLOYMENT_RECONCILED, deployment_step)
        self._run_step(state, types.SERVICE_RECONCILED, service_step)
        self._run_step(state, types.POD_DISRUPTION_BUDGET_RECONCILED, pdb_step)

        status = {
            "conditions": order_conditions(
                state["conditions"], POLICY_SERVER_CONDITION_ORDER
            )
        }
        if status_changed(current_status, status):
            self.kube.patch_status(constants.KIND_POLICY_SERVER, server.name, status)

        if state["transient"] is not None:
            raise state["transient"]
        return status

    def request_refresh(self, name, revision):
        """Ask kopf to reconcile the named PolicyServer after a bound policy changed.

        The revision annotation changes the server's essence, so its own
        serialized update handler runs the pass. Returns False when the
        server is missing, being deleted, or already carries ``revision``.
        """
        body = self.kube.get(constants.KIND_POLICY_SERVER, name)
        if body is None:
            return False
        metadata = body.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        if metadata.get("deletionTimestamp"):
            return False
        if annotations.get(constants.POLICIES_REVISION_ANNOTATION) == revision:
            return False
        patched = self.kube.patch(
            constants.KIND_POLICY_SERVER,
            name,
            {"metadata": {"annotations": {constants.POLICIES_REVISION_ANNOTATION: revision}}},
        )
        return patched is not None

    # Deletion

    def finalize(self, body):
        """Delete owned objects. Returns the number of pods still running.

        The finalizer may only be released once this returns 0.
        """
        server = PolicyServer.from_body(body)
        name = server.name_with_prefix
        for kind in ("Deployment", "Service", "ConfigMap", "PodDisruptionBudget", "Secret"):
            delete_ignore_not_found(self.kube, kind, name, self.namespace)

        selector = f"{constants.POLICY_SERVER_LABEL_KEY}={server.name}"
        for kind in ("ValidatingWebhookConfiguration", "MutatingWebhookConfiguration"):
            for webhook in self.kube.list(kind, label_selector=selector):
                delete_ignore_not_found(self.kube, kind, webhook["metadata"]["name"])

        pods = self.kube.list("Pod", self.namespace, label_selector=selector)
        if pods:
            logger.info(
                f"PolicyServer {server.name}: waiting for {len(pods)} pods to terminate"
            )
        return len(pods)


