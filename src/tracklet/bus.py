"""
Pluggable analytics core.

Calls are turned into payloads and run through every plugin's matching hook
(initialize, page, track, identify, reset) on the event loop. User state is
persisted lazily: identify writes the user id and traits only after its hooks
ran, and set_anonymous_id writes on the next loop iteration. Callers that need
identity visible immediately must write it themselves (see AsyncTracklet).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Iterable, Optional

from tracklet.storage import ANONYMOUS_ID, IDENTITY_KEYS, USER_ID, USER_TRAITS, PersistentStorage

logger = logging.getLogger(__name__)


@dataclass
class UserState:
    anonymous_id: Optional[str] = None
    user_id: Optional[str] = None
    traits: dict[str, Any] = field(default_factory=dict)


class Analytics:
    def __init__(self, storage: PersistentStorage, plugins: Iterable[Any] = (), debug: bool = False):
        self.storage = storage
        self.plugins: dict[str, Any] = {plugin.name: plugin for plugin in plugins}
        self._debug = debug
        self._user = UserState()
        self._generation = 0
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[Any]] = set()

    def user(self) -> UserState:
        stored = self.storage.get_item(ANONYMOUS_ID)
        if stored:
            self._user.anonymous_id = str(stored)
        elif not self._user.anonymous_id:
            self._user.anonymous_id = str(uuid.uuid4())
            self.storage.set_item(ANONYMOUS_ID, self._user.anonymous_id)
        user_id = self.storage.get_item(USER_ID)
        self._user.user_id = str(user_id) if user_id is not None else None
        traits = self.storage.get_item(USER_TRAITS)
        self._user.traits = traits if isinstance(traits, dict) else {}
        return self._user

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise RuntimeError("Tracking calls need a running event loop; use Tracklet from blocking code")
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self) -> None:
        """Wait for every scheduled call, including ones scheduled meanwhile."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def build_payload(self, event_type: str, options: Optional[dict[str, Any]], **fields: Any) -> dict[str, Any]:
        user = self.user()
        options = options or {}
        payload: dict[str, Any] = {"type": event_type}
        payload.update({k: v for k, v in fields.items() if v is not None})
        payload.setdefault("userId", options.get("userId") or user.user_id)
        payload["anonymousId"] = options.get("anonymousId") or user.anonymous_id
        payload["options"] = options
        payload["meta"] = {"rid": uuid.uuid4().hex, "ts": int(time.time() * 1000)}
        if payload["userId"] is None:
            del payload["userId"]
        return payload

    async def _ready(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            for plugin in self.plugins.values():
                hook = getattr(plugin, "initialize", None)
                if hook is None:
                    continue
                try:
                    await _maybe_await(hook(config=plugin.config, instance=self))
                except Exception as e:
                    logger.warning("Plugin '%s' failed to initialize: %s", plugin.name, e)
            self._initialized = True

    async def _run_hooks(self, hook: str, payload: dict[str, Any], after: Optional[Callable[[], None]] = None) -> Any:
        await self._ready()
        result = None
        for plugin in list(self.plugins.values()):
            handler = getattr(plugin, hook, None)
            if handler is None:
                continue
            try:
                value = await _maybe_await(handler(payload=payload, config=plugin.config, instance=self))
            except Exception as e:
                logger.warning("Plugin '%s' failed in %s(): %s", plugin.name, hook, e, exc_info=self._debug)
                continue
            if result is None:
                result = value
        if after is not None:
            after()
        return result

    def page(self, properties: Optional[dict[str, Any]] = None, options: Optional[dict[str, Any]] = None) -> asyncio.Task[Any]:
        return self.spawn(self._run_hooks("page", self.build_payload("page", options, properties=properties or {})))

    def track(
        self,
        event: str,
        properties: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> asyncio.Task[Any]:
        payload = self.build_payload("track", options, event=event, properties=properties or {})
        return self.spawn(self._run_hooks("track", payload))

    def identify(
        self,
        user_id: Optional[str] = None,
        traits: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> asyncio.Task[Any]:
        payload = self.build_payload("identify", options, userId=user_id, traits=traits or {})
        generation = self._generation

        def persist() -> None:
            # a reset() since the call made this identity stale
            if generation != self._generation:
                return
            if user_id:
                self.storage.set_item(USER_ID, user_id)
            if traits:
                self.storage.set_item(USER_TRAITS, traits)

        return self.spawn(self._run_hooks("identify", payload, after=persist))

    def reset(self) -> asyncio.Task[Any]:
        self._generation += 1
        self._user = UserState()
        for key in IDENTITY_KEYS:
            self.storage.remove_item(key)
        return self.spawn(self._run_hooks("reset", {}))

    def set_anonymous_id(self, anonymous_id: str) -> None:
        generation = self._generation

        def persist() -> None:
            if generation == self._generation:
                self.storage.set_item(ANONYMOUS_ID, anonymous_id)

        asyncio.get_running_loop().call_soon(persist)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
