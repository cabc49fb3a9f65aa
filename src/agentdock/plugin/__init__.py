"""Plugin system for agentdock.

Plugins contribute container runtimes and health checkers. Built on pluggy.

Usage:
    from agentdock.plugin import get_plugin_manager

    pm = get_plugin_manager(settings)
    runtimes = pm.hook.agentdock_container_runtime()
"""

from __future__ import annotations

import importlib

import pluggy

from agentdock.config import Settings
from agentdock.logger import logger
from agentdock.plugin.hookspecs import AgentDockSpec

__all__ = [
    "get_plugin_manager",
]

# Static registry of built-in plugins.
# Each entry: (module_path, class_name, config_key)
# config_key is checked against [plugins] in agentdock.toml.
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("agentdock.runtime.plugins.docker_runtime", "DockerRuntimePlugin", "docker-runtime"),
    ("agentdock.runtime.plugins.podman_runtime", "PodmanRuntimePlugin", "podman-runtime"),
]


def get_plugin_manager(settings: Settings) -> pluggy.PluginManager:
    """Create the plugin manager with built-ins and entry-point plugins registered."""
    pm = pluggy.PluginManager("agentdock")
    pm.add_hookspecs(AgentDockSpec)

    for module_path, class_name, config_key in _BUILTIN_PLUGIN_SPECS:
        if settings.plugins.get(config_key) is False:
            logger.info("Plugin disabled via config", plugin=config_key)
            continue
        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{config_key}")
            logger.debug("Registered built-in plugin", name=config_key)
        except Exception:
            logger.exception("Failed to load built-in plugin", plugin=config_key)

    # Third-party plugins register via the "agentdock" entry-point group
    discovered = pm.load_setuptools_entrypoints("agentdock")
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    # Entry points occasionally hand back classes instead of instances
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            plugin_name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Unregistered invalid class-based plugin object", plugin=plugin_name)

    logger.info("Plugin manager ready", plugins=[pm.get_name(p) for p in pm.get_plugins()])
    return pm
