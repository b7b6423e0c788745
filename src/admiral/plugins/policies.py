"""Policies plugin: webhook configurations and status of the four policy kinds."""

import logging

from admiral.handlers.admission_handler import register_policy_admission
from admiral.handlers.policy_handler import register_policy_handlers
from admiral.models.policies import (
    AdmissionPolicyGroupSpec,
    AdmissionPolicySpec,
    ClusterAdmissionPolicyGroupSpec,
    ClusterAdmissionPolicySpec,
)
from admiral.reconcilers.policy import PolicyReconciler

from .base import PluginBase

logger = logging.getLogger(__name__)


class PoliciesPlugin(PluginBase):
    name = "policies"
    description = "Routes admission requests to the policy servers"

    @property
    def models(self):
        return [
            AdmissionPolicySpec,
            ClusterAdmissionPolicySpec,
            AdmissionPolicyGroupSpec,
            ClusterAdmissionPolicyGroupSpec,
        ]

    def setup(self):
        config = self.context.config
        if config.match_conditions_supported is None:
            logger.warning("Match conditions support unknown, leaving them out")
        self.reconciler = PolicyReconciler(
            self.context.kube, config, record_metrics=config.enable_metrics
        )

    def register_handlers(self, registry):
        context = self.context
        register_policy_handlers(
            registry, context.crd_registry, self.reconciler, context.config
        )
        if context.config.admission_webhooks_enabled:
            logger.info("Registering policy admission hooks")
            register_policy_admission(registry, context.crd_registry)
