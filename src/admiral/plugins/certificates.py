"""Certificates plugin: the operator CA and the TLS secrets it signs."""

from admiral.handlers.cert_handler import register_certificate_handlers

from .base import PluginBase


class CertificatesPlugin(PluginBase):
    name = "certificates"
    description = "Issues and rotates the CA root, webhook and policy server certificates"

    def setup(self):
        self.reconciler = self.context.shared_certificates()

    def register_handlers(self, registry):
        register_certificate_handlers(registry, self.reconciler, self.context.config)
