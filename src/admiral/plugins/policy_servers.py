"""PolicyServer plugin: the workloads that evaluate policies."""

import logging

from admiral.handlers.admission_handler import register_policy_server_admission
from admiral.handlers.policy_server_handler import register_policy_server_handlers
from admiral.models.policy_server import PolicyServerSpec
from admiral.reconcilers.policy_server import PolicyServerReconciler

from .base import PluginBase

logger = logging.getLogger(__name__)


class PolicyServersPlugin(PluginBase):
    name = "policy-servers"
    description = "Manages policy server Deployments, Services, ConfigMaps and budgets"

    @property
    def models(self):
        return [PolicyServerSpec]

    def setup(self):
        context = self.context
        self.reconciler = PolicyServerReconciler(
            context.kube, context.config, context.shared_certificates()
        )

    def register_handlers(self, registry):
        context = self.context
        register_policy_server_handlers(
            registry, context.crd_registry, self.reconciler, context.config
        )
        if context.config.admission_webhooks_enabled:
            logger.info("Registering PolicyServer admission hooks")
            register_policy_server_admission(
                registry, context.crd_registry, context.kube, context.config
            )
