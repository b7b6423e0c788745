"""Loading and lifecycle of the operator plugins."""

import importlib
import logging

from .base import PluginBase

logger = logging.getLogger(__name__)

# Load order matters: the certificate startup handler must run before the
# reconcilers that consume the certificates.
BUILTIN_PLUGINS = [
    "admiral.plugins.certificates",
    "admiral.plugins.policy_servers",
    "admiral.plugins.policies",
]


def plugin_classes(module):
    """PluginBase subclasses defined in ``module``, in definition order."""
    return [
        attr
        for attr in vars(module).values()
        if isinstance(attr, type)
        and issubclass(attr, PluginBase)
        and attr.__module__ == module.__name__
    ]


class PluginRegistry:
    """The plugins loaded into one operator process, keyed by name."""

    def __init__(self, context):
        self.context = context
        self._plugins = {}

    def discover_plugins(self, plugin_modules=None):
        """Import plugin modules and instantiate their plugins.

        Returns:
            int: Number of plugins added
        """
        added = 0
        for module_name in plugin_modules or BUILTIN_PLUGINS:
            module = importlib.import_module(module_name)
            for plugin_class in plugin_classes(module):
                plugin = plugin_class(self.context)
                if plugin.name in self._plugins:
                    logger.warning(f"Plugin {plugin.name} already loaded, skipping")
                    continue
                self._plugins[plugin.name] = plugin
                added += 1

        logger.info(f"Discovered {added} plugins")
        return added

    def initialise_all_plugins(self):
        """Initialise plugins in load order.

        Returns:
            Dict[str, bool]: plugin name to initialisation result
        """
        results = {name: plugin.initialise() for name, plugin in self._plugins.items()}
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            logger.error(f"Plugins failed to initialise: {failed}")
        return results

    def register_all_handlers(self, registry):
        for name, plugin in self._plugins.items():
            if not plugin.initialised:
                logger.warning(f"Not registering handlers of uninitialised plugin {name}")
                continue
            plugin.register_handlers(registry)
            logger.debug(f"Registered handlers for plugin {name}")

    def shutdown_all_plugins(self):
        for plugin in reversed(list(self._plugins.values())):
            plugin.shutdown()

    def get_plugin(self, name):
        return self._plugins.get(name)

    def get_all_plugins(self):
        return dict(self._plugins)

    def list_plugin_names(self):
        return list(self._plugins)

    def get_plugins_health_status(self):
        return {name: plugin.get_health_status() for name, plugin in self._plugins.items()}
