"""
Destination dispatch engine.

Fans a delivered event out to the device-mode destinations returned by the
collection endpoint. Destinations are isolated from each other and from the
delivery path: every failure is logged here and never propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional

from pydantic import ValidationError

from tracklet.destinations.filters import apply_filters
from tracklet.destinations.loader import ScriptLoader, ScriptRegistry, script_registry
from tracklet.destinations.patch import expand_events
from tracklet.destinations.plugins import InternalDestinationPlugin, internal_destination_plugins
from tracklet.errors import DestinationError
from tracklet.models.destination import AnalyticsPluginOptions, DestinationDescriptor, InternalPluginOptions
from tracklet.runtime import RuntimeFacade

logger = logging.getLogger(__name__)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DestinationDispatcher:
    def __init__(
        self,
        runtime: RuntimeFacade,
        script_loader: ScriptLoader,
        registry: Optional[ScriptRegistry] = None,
        internal_plugins: Optional[dict[str, InternalDestinationPlugin]] = None,
    ):
        self._runtime = runtime
        self._loader = script_loader
        self._registry = registry if registry is not None else script_registry
        self._internal = internal_plugins if internal_plugins is not None else internal_destination_plugins

    async def dispatch(
        self,
        descriptors: list[Any],
        method: str,
        event: dict[str, Any],
        instance: Any = None,
        debug: bool = False,
    ) -> None:
        """Deliver event to every applicable destination concurrently."""
        deliveries = []
        for raw in descriptors:
            descriptor = self._parse(raw)
            if descriptor is None:
                continue
            config = descriptor.merged_config()
            try:
                applies = apply_filters(event, config)
            except DestinationError as e:
                logger.warning("Failed to apply filters of destination '%s': %s", descriptor.id, e)
                continue
            if not applies:
                if debug:
                    logger.debug("Destination '%s' filtered out %s event", descriptor.id, method)
                continue
            events = expand_events(descriptor, event)
            deliveries.append(self._deliver(descriptor, config, method, events, instance, debug))
        if deliveries:
            await asyncio.gather(*deliveries)

    @staticmethod
    def _parse(raw: Any) -> Optional[DestinationDescriptor]:
        try:
            return DestinationDescriptor.model_validate(raw)
        except ValidationError as e:
            destination_id = raw.get("id") if isinstance(raw, dict) else None
            logger.warning("Skipping malformed destination descriptor '%s': %s", destination_id, e)
            return None

    async def _deliver(
        self,
        descriptor: DestinationDescriptor,
        config: dict[str, Any],
        method: str,
        events: list[dict[str, Any]],
        instance: Any,
        debug: bool,
    ) -> None:
        options = descriptor.device_options
        if isinstance(options, InternalPluginOptions):
            await self._run_internal(descriptor, options, config, events, debug)
        elif isinstance(options, AnalyticsPluginOptions):
            await self._run_external(descriptor, options, config, method, events, instance, debug)

    async def _run_internal(
        self,
        descriptor: DestinationDescriptor,
        options: InternalPluginOptions,
        config: dict[str, Any],
        events: list[dict[str, Any]],
        debug: bool,
    ) -> None:
        plugin = self._internal.get(options.name)
        if plugin is None:
            logger.warning("Unknown internal plugin '%s' for destination '%s'", options.name, descriptor.id)
            return
        for event in events:
            try:
                await plugin.handle({**config, "debug": debug}, event, self._runtime)
            except Exception as e:
                logger.warning("Error processing event with internal plugin '%s': %s", options.name, e,
                               exc_info=debug)

    async def _run_external(
        self,
        descriptor: DestinationDescriptor,
        options: AnalyticsPluginOptions,
        config: dict[str, Any],
        method: str,
        events: list[dict[str, Any]],
        instance: Any,
        debug: bool,
    ) -> None:
        label = f"{options.module_var_name}@{options.package_cdn}"
        try:
            module = await self._registry.load(options.package_cdn, self._loader)
        except DestinationError as e:
            logger.warning("Can't load plugin '%s' for destination '%s': %s", label, descriptor.id, e)
            return

        factory = getattr(module, options.module_var_name, None)
        if factory is None:
            logger.warning("Broken plugin '%s' for destination '%s' - it doesn't export '%s'",
                           options.package_cdn, descriptor.id, options.module_var_name)
            return

        try:
            plugin = (factory if callable(factory) else factory.init)(config)
        except Exception as e:
            logger.warning("Error creating plugin '%s' for destination '%s': %s", label, descriptor.id, e,
                           exc_info=debug)
            return

        plugin_config = getattr(plugin, "config", config)
        try:
            if debug:
                logger.debug("Plugin '%s' for destination '%s' initialized with config: %s",
                             label, descriptor.id, plugin_config)
            await _maybe_await(plugin.initialize(config=plugin_config, instance=instance))
        except Exception as e:
            logger.warning("Error initializing plugin '%s' for destination '%s': %s", label, descriptor.id, e,
                           exc_info=debug)
            return

        handler = getattr(plugin, method, None)
        if handler is None:
            return
        for event in events:
            try:
                await _maybe_await(handler(payload=event, config=plugin_config, instance=instance))
            except Exception as e:
                logger.warning("Error processing %s() with plugin '%s' for destination '%s': %s",
                               method, label, descriptor.id, e, exc_info=debug)
