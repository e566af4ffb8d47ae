"""httpcraft plugins - plugin loading, variable sources and request/response hooks.

A plugin is a Python file exposing ``setup(context)``. During setup it
registers what it provides on the PluginContext:

    def setup(context):
        token = context.config["token"]
        context.register_variable_source("token", lambda: token)
        context.register_pre_request_hook(add_auth_header)

Hooks run in registration order. A hook may return a replacement request
(or response), or mutate the one it was given and return None.
"""

import asyncio
import importlib.util
import inspect
import sys
from pathlib import Path
from typing import Any, Callable

from httpcraft.errors import PluginError


def settle(value: Any) -> Any:
    """Drive an awaitable plugin result to completion."""
    if not inspect.isawaitable(value):
        return value

    async def _wait():
        return await value

    return asyncio.run(_wait())


class PluginContext:
    """What a plugin sees during setup, and what it registered."""

    def __init__(self, name: str, config: dict | None = None):
        self.name = name
        self.config = dict(config or {})
        self.pre_request_hooks: list[Callable] = []
        self.post_response_hooks: list[Callable] = []
        self.variable_sources: dict[str, Callable] = {}
        self.parameterized_sources: dict[str, Callable] = {}
        self.secret_resolvers: list[Callable] = []

    def register_pre_request_hook(self, hook: Callable) -> None:
        self.pre_request_hooks.append(hook)

    def register_post_response_hook(self, hook: Callable) -> None:
        self.post_response_hooks.append(hook)

    def register_variable_source(self, name: str, source: Callable) -> None:
        self.variable_sources[name] = source

    def register_parameterized_variable_source(self, name: str, source: Callable) -> None:
        self.parameterized_sources[name] = source

    def register_secret_resolver(self, resolver: Callable) -> None:
        self.secret_resolvers.append(resolver)


def load_setup(path: str | Path, config_dir: str | Path | None = None) -> Callable:
    """Import a plugin file and return its setup function."""
    p = Path(path)
    if not p.is_absolute() and config_dir:
        p = Path(config_dir) / p
    if not p.exists():
        raise PluginError(f"Plugin file not found: {p}")

    module_name = f"httpcraft_plugin_{p.stem}"
    spec = importlib.util.spec_from_file_location(module_name, p)
    if spec is None or spec.loader is None:
        raise PluginError(f"Unable to load plugin module at '{p}'")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise PluginError(f"Failed to import plugin '{p}': {e}") from e

    setup = getattr(module, "setup", None)
    if not callable(setup):
        raise PluginError(f"Plugin '{p}' does not define a setup(context) function")
    return setup


class PluginManager:
    """Holds set-up plugins in configuration order."""

    def __init__(self):
        self._plugins: list[PluginContext] = []
        self._definitions: dict[str, dict] = {}

    @property
    def names(self) -> list[str]:
        return [p.name for p in self._plugins]

    def register_plugin(
        self,
        name: str,
        setup: Callable,
        config: dict | None = None,
    ) -> PluginContext:
        """Run a plugin's setup and keep what it registered."""
        self._definitions[name] = {"setup": setup, "config": dict(config or {})}
        context = PluginContext(name, config)
        try:
            settle(setup(context))
        except Exception as e:
            raise PluginError(f"Plugin '{name}' setup failed: {e}", name) from e
        self._plugins.append(context)
        return context

    def load_plugins(
        self,
        plugin_configs: list[dict],
        config_dir: str | Path | None = None,
        resolve_config: Callable | None = None,
    ) -> None:
        """Load every plugin listed in the config's ``plugins`` section."""
        for entry in plugin_configs or []:
            name = entry.get("name")
            if not name:
                raise PluginError("Plugin entry is missing a 'name'")
            if not entry.get("path"):
                raise PluginError(f"Plugin '{name}' has no 'path'", name)
            setup = load_setup(entry["path"], config_dir)
            config = entry.get("config") or {}
            if resolve_config:
                config = resolve_config(config)
            self.register_plugin(name, setup, config)

    def for_api(
        self,
        api_plugin_configs: list[dict] | None,
        resolve_config: Callable | None = None,
    ) -> "PluginManager":
        """Return a manager whose plugins use this API's config overrides.

        API-level ``config`` keys override the global plugin's keys. An API
        may only reference plugins defined globally.
        """
        if not api_plugin_configs:
            return self

        overrides: dict[str, dict] = {}
        for entry in api_plugin_configs:
            name = entry.get("name")
            if name not in self._definitions:
                raise PluginError(
                    f"API references undefined plugin '{name}'. "
                    "Plugin must be defined in the global plugins section.",
                    name,
                )
            overrides[name] = entry.get("config") or {}

        manager = PluginManager()
        for plugin in self._plugins:
            definition = self._definitions[plugin.name]
            if plugin.name not in overrides:
                manager._definitions[plugin.name] = definition
                manager._plugins.append(plugin)
                continue
            config = {**definition["config"], **overrides[plugin.name]}
            if resolve_config:
                config = resolve_config(config)
            manager.register_plugin(plugin.name, definition["setup"], config)
        return manager

    # -- registered capabilities --

    def variable_sources(self) -> dict[str, dict[str, Callable]]:
        return {p.name: dict(p.variable_sources) for p in self._plugins}

    def parameterized_sources(self) -> dict[str, dict[str, Callable]]:
        return {p.name: dict(p.parameterized_sources) for p in self._plugins}

    def secret_resolvers(self) -> list[Callable]:
        return [r for p in self._plugins for r in p.secret_resolvers]

    # -- hooks --

    def run_pre_request_hooks(self, request: dict) -> dict:
        for plugin in self._plugins:
            for hook in plugin.pre_request_hooks:
                try:
                    result = settle(hook(request))
                except Exception as e:
                    raise PluginError(
                        f"Plugin '{plugin.name}' pre-request hook failed: {e}",
                        plugin.name,
                    ) from e
                if result is not None:
                    request = result
        return request

    def run_post_response_hooks(self, request: dict, response):
        for plugin in self._plugins:
            for hook in plugin.post_response_hooks:
                try:
                    result = settle(hook(request, response))
                except Exception as e:
                    raise PluginError(
                        f"Plugin '{plugin.name}' post-response hook failed: {e}",
                        plugin.name,
                    ) from e
                if result is not None:
                    response = result
        return response
