"""
Bus plugin that turns bus payloads into envelopes and delivers them.
"""

from __future__ import annotations

import logging
from typing import Any, Coroutine, Optional

from pydantic import ValidationError

from tracklet.config import TrackerOptions, merge_options
from tracklet.context import build_envelope
from tracklet.models.envelope import EventEnvelope
from tracklet.runtime import RuntimeFacade
from tracklet.storage import GROUP_ID, GROUP_TRAITS, PersistentStorage
from tracklet.transport.http import Transport

logger = logging.getLogger(__name__)


class CollectorPlugin:
    name = "tracklet"

    def __init__(
        self,
        options: TrackerOptions,
        storage: PersistentStorage,
        runtime: RuntimeFacade,
        transport: Transport,
    ):
        self.config = options
        self.storage = storage
        self.runtime = runtime
        self.transport = transport

    @property
    def s2s(self) -> bool:
        if self.config.s2s is not None:
            return self.config.s2s
        return not self.runtime.in_browser

    async def initialize(self, config: TrackerOptions, instance: Any) -> None:
        if config.debug:
            logger.debug(
                "Collector initialized: host=%s s2s=%s echo=%s",
                config.host, self.s2s, config.echo_events,
            )

    async def page(self, payload: dict[str, Any], config: TrackerOptions, instance: Any) -> Optional[dict[str, Any]]:
        if config.privacy.drop_events:
            return None
        return await self._send("page", payload, instance)

    async def track(self, payload: dict[str, Any], config: TrackerOptions, instance: Any) -> Optional[dict[str, Any]]:
        if config.privacy.drop_events:
            return None
        return await self._send("track", payload, instance)

    async def identify(self, payload: dict[str, Any], config: TrackerOptions, instance: Any) -> Optional[dict[str, Any]]:
        if config.privacy.drop_events:
            return None
        return await self._send("identify", payload, instance)

    def configure(self, new_options: dict[str, Any]) -> TrackerOptions:
        self.config = merge_options(self.config, new_options)
        return self.config

    def group(
        self,
        group_id: Optional[Any] = None,
        traits: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
        instance: Any = None,
    ) -> Coroutine[Any, Any, Optional[dict[str, Any]]]:
        """Persist group state now and return the delivery coroutine."""
        if isinstance(group_id, (int, float)) and not isinstance(group_id, bool):
            group_id = str(group_id)
        if isinstance(group_id, dict) and traits is None:
            group_id, traits = None, group_id
        if group_id:
            self.storage.set_item(GROUP_ID, group_id)
        if traits:
            self.storage.set_item(GROUP_TRAITS, traits)
        payload = instance.build_payload("group", options, groupId=group_id, traits=traits or {})
        return self._send("group", payload, instance)

    async def _send(self, method: str, payload: dict[str, Any], instance: Any) -> Optional[dict[str, Any]]:
        if self.config.privacy.drop_events:
            return None
        envelope = build_envelope(payload, self.config, self.storage, self.runtime, self.s2s)
        if self.config.debug:
            try:
                EventEnvelope.model_validate(envelope)
            except ValidationError as e:
                logger.warning("Malformed %s envelope %s: %s", method, envelope.get("messageId"), e)
        return await self.transport.send(method, envelope, self.config, s2s=self.s2s, instance=instance)
