"""CRD registry: the custom resource kinds the operator serves.

The registry is an explicit value. It is built once at startup, frozen, and
handed to every component that needs to resolve a kind.
"""

import importlib
import logging
import pkgutil

logger = logging.getLogger(__name__)

CRD_INFO_ATTR = "__crd_info__"


def crd(group, version, kind, plural=None, scope="Namespaced", short_names=None,
        status_model=None, printer_columns=None):
    """Mark a spec model as the schema of a custom resource kind.

    Args:
        group: API group (e.g., 'policies.admiral.io')
        version: API version (e.g., 'v1')
        kind: Kind name (e.g., 'PolicyServer')
        plural: Plural name (defaults to kind.lower() + 's')
        scope: 'Namespaced' or 'Cluster'
        short_names: kubectl short names
        status_model: pydantic model describing the status sub-resource
        printer_columns: additionalPrinterColumns for kubectl get
    """
    if scope not in ("Namespaced", "Cluster"):
        raise ValueError(f"Invalid scope for {kind}: {scope}")

    def decorator(model_class):
        setattr(model_class, CRD_INFO_ATTR, {
            "model": model_class,
            "group": group,
            "version": version,
            "kind": kind,
            "plural": plural or f"{kind.lower()}s",
            "singular": kind.lower(),
            "scope": scope,
            "short_names": list(short_names or []),
            "status_model": status_model,
            "printer_columns": list(printer_columns or []),
        })
        # plugins check their models against the registry by kind
        model_class._crd_kind = kind
        return model_class

    return decorator


class RegistryFrozenError(RuntimeError):
    """Raised when registering into a registry after startup."""


class CRDRegistry:
    """Registered kinds, keyed by ``group/version/kind``."""

    def __init__(self):
        self._models = {}
        self._frozen = False

    @classmethod
    def from_packages(cls, package_paths):
        """Discover models in the given packages and return a frozen registry."""
        registry = cls()
        for package_path in package_paths:
            registry.discover_models(package_path)
        registry.freeze()
        return registry

    def register(self, model_class):
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register {model_class.__name__}: registry is frozen"
            )
        info = model_class.__dict__.get(CRD_INFO_ATTR)
        if info is None:
            raise ValueError(f"{model_class.__name__} is not decorated with @crd")

        key = f"{info['group']}/{info['version']}/{info['kind']}"
        existing = self._models.get(key)
        if existing is not None and existing["model"] is not model_class:
            raise ValueError(
                f"{key} is already provided by {existing['model'].__name__}"
            )
        self._models[key] = dict(info)
        logger.debug(f"Registered CRD: {key}")
        return model_class

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self):
        return self._frozen

    def discover_models(self, package_path):
        """Register every @crd model defined in a package or its submodules."""
        package = importlib.import_module(package_path)
        modules = [package]
        for module_info in pkgutil.iter_modules(getattr(package, "__path__", [])):
            modules.append(importlib.import_module(f"{package_path}.{module_info.name}"))

        for module in modules:
            for attr in vars(module).values():
                if (
                    isinstance(attr, type)
                    and attr.__module__ == module.__name__
                    and CRD_INFO_ATTR in attr.__dict__
                ):
                    self.register(attr)

    def get_all_models(self):
        return dict(self._models)

    def get_model_by_kind(self, kind):
        """Look up a model by kind alone; kinds are unique within the operator."""
        for model_info in self._models.values():
            if model_info["kind"] == kind:
                return model_info
        return None
