"""
Destination plugins shipped with the SDK, addressed by name from
internal-plugin descriptors.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from tracklet.runtime import RuntimeFacade

logger = logging.getLogger(__name__)


class InternalDestinationPlugin(ABC):
    name: str

    @abstractmethod
    async def handle(self, config: dict[str, Any], event: dict[str, Any], runtime: RuntimeFacade) -> None: ...


class GtmPlugin(InternalDestinationPlugin):
    """Pushes events into the page data layer read by Google Tag Manager."""

    name = "gtm"

    @staticmethod
    def to_data_layer(event: dict[str, Any]) -> dict[str, Any]:
        event_type = event.get("type")
        if event_type == "page":
            page = (event.get("context") or {}).get("page") or {}
            entry = {"event": "page_view", "page_location": page.get("url"),
                     "page_path": page.get("path"), "page_title": page.get("title")}
        elif event_type == "track":
            entry = {"event": event.get("event"), **(event.get("properties") or {})}
        elif event_type == "identify":
            entry = {"event": "identify", **(event.get("traits") or {})}
        else:
            entry = {"event": event_type, "group_id": event.get("groupId"), **(event.get("traits") or {})}
        if event.get("userId"):
            entry["user_id"] = event["userId"]
        return {k: v for k, v in entry.items() if v is not None}

    async def handle(self, config: dict[str, Any], event: dict[str, Any], runtime: RuntimeFacade) -> None:
        layer = runtime.data_layer()
        if layer is None:
            logger.warning("gtm destination needs a page runtime with a data layer, event dropped")
            return
        entry = self.to_data_layer(event)
        if config.get("debug"):
            logger.debug("Pushing to dataLayer: %s", entry)
        layer.append(entry)


class TagPlugin(InternalDestinationPlugin):
    """Queues the configured HTML snippet for the host page to render."""

    name = "tag"

    async def handle(self, config: dict[str, Any], event: dict[str, Any], runtime: RuntimeFacade) -> None:
        code = config.get("code")
        tags = runtime.tags()
        if not code or tags is None:
            return
        tags.append(code)


internal_destination_plugins: dict[str, InternalDestinationPlugin] = {
    plugin.name: plugin for plugin in (GtmPlugin(), TagPlugin())
}


def register_internal_plugin(plugin: InternalDestinationPlugin) -> None:
    internal_destination_plugins[plugin.name] = plugin
