"""Admission-time validation and defaulting, served by kopf's webhook server."""

import logging

import kopf
from pydantic import ValidationError

from admiral import constants
from admiral.handlers import plural_of
from admiral.models.policies import policy_from_body
from admiral.models.policy_server import PolicyServer
from admiral.validation import validate_policy, validate_policy_server

logger = logging.getLogger(__name__)

WRITE_OPERATIONS = ["CREATE", "UPDATE"]


def default_finalizers(meta):
    """Finalizers a PolicyServer should carry, or None when nothing changes."""
    if meta.get("deletionTimestamp"):
        return None
    finalizers = list(meta.get("finalizers") or [])
    if constants.FINALIZER in finalizers:
        return None
    return finalizers + [constants.FINALIZER]


def register_policy_server_admission(registry, crd_registry, kube, config):
    group, version = constants.API_GROUP, constants.API_VERSION
    plural = plural_of(crd_registry, constants.KIND_POLICY_SERVER)

    @kopf.on.validate(group, version, plural, id="validate-policyserver",
                      operations=WRITE_OPERATIONS, registry=registry)
    def validate_policy_server_admission(body, **kwargs):
        try:
            server = PolicyServer.from_body(body)
        except ValidationError as e:
            raise kopf.AdmissionError(str(e), code=422)
        errors = validate_policy_server(server, kube, config.deployments_namespace)
        if errors:
            logger.info(f"Rejected PolicyServer {server.name}: {errors}")
            raise kopf.AdmissionError("; ".join(errors), code=422)

    @kopf.on.mutate(group, version, plural, id="default-policyserver",
                    operations=WRITE_OPERATIONS, registry=registry)
    def default_policy_server(meta, patch, **kwargs):
        finalizers = default_finalizers(meta)
        if finalizers is not None:
            patch.metadata["finalizers"] = finalizers


def register_policy_admission(registry, crd_registry):
    group, version = constants.API_GROUP, constants.API_VERSION

    def register_kind(kind):
        @kopf.on.validate(group, version, plural_of(crd_registry, kind),
                          id=f"validate-{kind.lower()}",
                          operations=WRITE_OPERATIONS, registry=registry)
        def validate_policy_admission(body, **kwargs):
            try:
                policy = policy_from_body(body, kind)
            except ValidationError as e:
                raise kopf.AdmissionError(str(e), code=422)
            errors = validate_policy(policy)
            if errors:
                raise kopf.AdmissionError("; ".join(errors), code=422)

    for kind in constants.POLICY_KINDS:
        register_kind(kind)
