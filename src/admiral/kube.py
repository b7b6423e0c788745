"""Dict based access to the Kubernetes API.

Every object crosses this boundary as a plain manifest dict. API errors are
translated to the reconcile error taxonomy here, so reconcilers never handle
``ApiException`` directly.
"""

import copy
import logging

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from admiral.errors import MissingDependencyError, classify_api_error

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

# kind -> (api, method suffix, namespaced)
NATIVE_KINDS = {
    "ConfigMap": ("core", "config_map", True),
    "Secret": ("core", "secret", True),
    "Service": ("core", "service", True),
    "Pod": ("core", "pod", True),
    "Deployment": ("apps", "deployment", True),
    "PodDisruptionBudget": ("policy", "pod_disruption_budget", True),
    "ValidatingWebhookConfiguration": (
        "admission",
        "validating_webhook_configuration",
        False,
    ),
    "MutatingWebhookConfiguration": (
        "admission",
        "mutating_webhook_configuration",
        False,
    ),
}

CREATED = "created"
PATCHED = "patched"
UNCHANGED = "unchanged"


class KubeClient:
    """get/list/create/patch/replace/delete keyed by kind."""

    def __init__(self, crd_registry, api_client=None):
        self.crd_registry = crd_registry
        self.api_client = api_client or client.ApiClient()
        self._apis = {
            "core": client.CoreV1Api(self.api_client),
            "apps": client.AppsV1Api(self.api_client),
            "policy": client.PolicyV1Api(self.api_client),
            "admission": client.AdmissionregistrationV1Api(self.api_client),
        }
        self.custom = client.CustomObjectsApi(self.api_client)

    def _to_dict(self, obj):
        if obj is None or isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _native(self, kind, verb):
        api_name, suffix, namespaced = NATIVE_KINDS[kind]
        scope = "namespaced_" if namespaced else ""
        return getattr(self._apis[api_name], f"{verb}_{scope}{suffix}"), namespaced

    def _custom(self, kind):
        model_info = self.crd_registry.get_model_by_kind(kind)
        if model_info is None:
            raise ValueError(f"Unknown kind: {kind}")
        return model_info

    def _call(self, action, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            error = classify_api_error(e, action)
            if error is None:
                return None
            raise error from e

    def get(self, kind, name, namespace=None):
        """Return the object, or None when it does not exist."""
        action = f"read {kind} {name}"
        if kind in NATIVE_KINDS:
            fn, namespaced = self._native(kind, "read")
            args = (name, namespace) if namespaced else (name,)
            return self._to_dict(self._call(action, fn, *args))

        info = self._custom(kind)
        if info["scope"] == "Namespaced":
            return self._call(
                action,
                self.custom.get_namespaced_custom_object,
                info["group"], info["version"], namespace, info["plural"], name,
            )
        return self._call(
            action,
            self.custom.get_cluster_custom_object,
            info["group"], info["version"], info["plural"], name,
        )

    def list(self, kind, namespace=None, label_selector=None):
        """List objects of a kind; custom kinds span all namespaces by default."""
        action = f"list {kind}"
        kwargs = {"label_selector": label_selector} if label_selector else {}
        if kind in NATIVE_KINDS:
            fn, namespaced = self._native(kind, "list")
            args = (namespace,) if namespaced else ()
            result = self._to_dict(self._call(action, fn, *args, **kwargs))
        else:
            info = self._custom(kind)
            if info["scope"] == "Namespaced" and namespace:
                result = self._call(
                    action,
                    self.custom.list_namespaced_custom_object,
                    info["group"], info["version"], namespace, info["plural"],
                    **kwargs,
                )
            else:
                result = self._call(
                    action,
                    self.custom.list_cluster_custom_object,
                    info["group"], info["version"], info["plural"],
                    **kwargs,
                )
        return (result or {}).get("items") or []

    def create(self, kind, body, namespace=None):
        action = f"create {kind} {body['metadata']['name']}"
        fn, namespaced = self._native(kind, "create")
        args = (namespace, body) if namespaced else (body,)
        try:
            return self._to_dict(fn(*args))
        except ApiException as e:
            if e.status == 404:
                raise MissingDependencyError(
                    f"failed to {action}: namespace {namespace} not found"
                ) from e
            raise classify_api_error(e, action) from e

    def patch(self, kind, name, body, namespace=None):
        """JSON merge patch. Returns None when the object is already gone."""
        action = f"patch {kind} {name}"
        if kind in NATIVE_KINDS:
            fn, namespaced = self._native(kind, "patch")
            args = (name, namespace, body) if namespaced else (name, body)
            return self._to_dict(self._call(action, fn, *args, _content_type=MERGE_PATCH))

        info = self._custom(kind)
        if info["scope"] == "Namespaced":
            return self._call(
                action,
                self.custom.patch_namespaced_custom_object,
                info["group"], info["version"], namespace, info["plural"], name, body,
                _content_type=MERGE_PATCH,
            )
        return self._call(
            action,
            self.custom.patch_cluster_custom_object,
            info["group"], info["version"], info["plural"], name, body,
            _content_type=MERGE_PATCH,
        )

    def replace(self, kind, name, body, namespace=None):
        """Full replace guarded by the resourceVersion carried in ``body``."""
        fn, namespaced = self._native(kind, "replace")
        args = (name, namespace, body) if namespaced else (name, body)
        return self._to_dict(self._call(f"replace {kind} {name}", fn, *args))

    def delete(self, kind, name, namespace=None):
        """Delete an object. Returns False when it was already absent."""
        fn, namespaced = self._native(kind, "delete")
        args = (name, namespace) if namespaced else (name,)
        try:
            fn(*args)
        except ApiException as e:
            error = classify_api_error(e, f"delete {kind} {name}")
            if error is None:
                return False
            raise error from e
        return True

    def patch_status(self, kind, name, status, namespace=None):
        """Merge patch the status sub-resource of a custom resource."""
        info = self._custom(kind)
        action = f"patch {kind} {name} status"
        body = {"status": status}
        if info["scope"] == "Namespaced":
            return self._call(
                action,
                self.custom.patch_namespaced_custom_object_status,
                info["group"], info["version"], namespace, info["plural"], name, body,
                _content_type=MERGE_PATCH,
            )
        return self._call(
            action,
            self.custom.patch_cluster_custom_object_status,
            info["group"], info["version"], info["plural"], name, body,
            _content_type=MERGE_PATCH,
        )


def prune_none(obj):
    """Drop keys whose value is None, recursively."""
    if isinstance(obj, dict):
        return {k: prune_none(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, list):
        return [prune_none(v) for v in obj]
    return obj


def is_subset(desired, observed):
    """True when every field of ``desired`` already holds in ``observed``.

    ``None`` in desired means the field must be absent. Fields that only
    exist in observed (server defaults, other actors) are ignored.
    """
    if desired is None:
        return observed is None
    if isinstance(desired, dict):
        if observed is None:
            return not desired
        if not isinstance(observed, dict):
            return False
        return all(is_subset(value, observed.get(key)) for key, value in desired.items())
    if isinstance(desired, list):
        if observed is None:
            return not desired
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(is_subset(d, o) for d, o in zip(desired, observed))
    return desired == observed


def merge_owner_references(current, desired):
    """Owner references of ``current`` with the ones of ``desired`` set by uid."""
    desired_uids = {ref.get("uid") for ref in desired}
    merged = [ref for ref in current or [] if ref.get("uid") not in desired_uids]
    return merged + list(desired)


def create_or_patch(kube, desired):
    """Converge one object to ``desired``, touching only the fields it names.

    Returns CREATED, PATCHED or UNCHANGED.
    """
    kind = desired["kind"]
    metadata = desired["metadata"]
    name = metadata["name"]
    namespace = metadata.get("namespace")

    current = kube.get(kind, name, namespace)
    if current is None:
        kube.create(kind, prune_none(desired), namespace)
        logger.info(f"Created {kind} {name}")
        return CREATED

    patch = {
        k: copy.deepcopy(v) for k, v in desired.items() if k not in ("apiVersion", "kind")
    }
    if "ownerReferences" in metadata:
        patch["metadata"]["ownerReferences"] = merge_owner_references(
            current.get("metadata", {}).get("ownerReferences"),
            metadata["ownerReferences"],
        )

    if is_subset(patch, current):
        logger.debug(f"{kind} {name} is up to date")
        return UNCHANGED

    if kube.patch(kind, name, patch, namespace) is None:
        # Deleted between read and patch; the next pass recreates it.
        logger.info(f"{kind} {name} disappeared while patching")
        return UNCHANGED
    logger.info(f"Patched {kind} {name}")
    return PATCHED


def delete_ignore_not_found(kube, kind, name, namespace=None):
    if kube.delete(kind, name, namespace):
        logger.info(f"Deleted {kind} {name}")
        return True
    return False
