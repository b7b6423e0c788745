"""Plugin contract for the admiral operator.

A plugin owns one area of the operator: the reconcilers it builds in
``setup`` and the kopf handlers it registers for them.
"""

from abc import ABC, abstractmethod
import logging

from admiral.reconcilers.certs import CertificateReconciler

logger = logging.getLogger(__name__)


class OperatorContext:
    """Process-wide collaborators shared by the plugins.

    Built once at startup; plugins read from it but never replace its members.
    """

    def __init__(self, config, crd_registry, kube, certificates=None):
        self.config = config
        self.crd_registry = crd_registry
        self.kube = kube
        self.certificates = certificates

    def shared_certificates(self):
        """The single certificate reconciler, created on first use."""
        if self.certificates is None:
            self.certificates = CertificateReconciler(self.kube, self.config)
        return self.certificates


class PluginBase(ABC):
    """Base class for admiral plugins."""

    name = None
    version = "1.0.0"
    description = ""

    def __init__(self, context):
        if not self.name:
            raise TypeError(f"{type(self).__name__} must set a plugin name")
        self.context = context
        self.reconciler = None
        self._initialised = False

    @property
    def models(self):
        """Spec models of the custom resources this plugin reconciles."""
        return []

    @property
    def initialised(self):
        return self._initialised

    def setup(self):
        """Build the plugin's reconcilers."""

    def teardown(self):
        """Release what ``setup`` acquired."""

    @abstractmethod
    def register_handlers(self, registry):
        """Register kopf handlers for this plugin into ``registry``."""

    def initialise(self):
        """Check the plugin's models and run ``setup`` once.

        Returns:
            bool: True if the plugin is ready to register handlers
        """
        if self._initialised:
            return True

        try:
            for model in self.models:
                kind = getattr(model, "_crd_kind", None)
                if kind is None or self.context.crd_registry.get_model_by_kind(kind) is None:
                    raise ValueError(f"{model.__name__} is not a registered CRD model")
            self.setup()
        except Exception as e:
            logger.error(f"Failed to initialise plugin {self.name}: {e}")
            return False

        self._initialised = True
        logger.info(f"Plugin {self.name} v{self.version} initialised")
        return True

    def shutdown(self):
        if not self._initialised:
            return
        try:
            self.teardown()
        except Exception as e:
            logger.error(f"Error shutting down plugin {self.name}: {e}")
        self._initialised = False
        logger.info(f"Plugin {self.name} shut down")

    def get_health_status(self):
        return {
            "name": self.name,
            "version": self.version,
            "kinds": [model._crd_kind for model in self.models],
            "status": "healthy" if self._initialised else "not_initialised",
        }
