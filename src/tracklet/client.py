"""
Tracklet / AsyncTracklet — the objects handed to the embedding application.
"""

import asyncio
import inspect
import uuid
from typing import Any, Optional, Union

import httpx

from tracklet.bus import Analytics, UserState
from tracklet.config import PrivacyOptions, TrackerOptions, build_options
from tracklet.destinations.dispatch import DestinationDispatcher
from tracklet.destinations.loader import ModuleScriptLoader, ScriptLoader
from tracklet.plugin import CollectorPlugin
from tracklet.runtime import EmptyRuntime, RuntimeFacade
from tracklet.storage import ANONYMOUS_ID, USER_ID, USER_TRAITS, CachingStorage, PersistentStorage
from tracklet.transport.http import Transport, default_http_client


def _coerce_id(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class AsyncTracklet:
    """Async tracking client (primary).

    Tracking calls do their identity bookkeeping synchronously and return an
    asyncio.Task that resolves to the delivered envelope (None when delivery
    failed or events are dropped). Await it, or fire and forget and call
    flush() before shutting down.
    """

    def __init__(
        self,
        write_key: Optional[str] = None,
        host: Optional[str] = None,
        *,
        debug: bool = False,
        echo_events: bool = False,
        cookie_domain: Optional[str] = None,
        fetch_timeout_ms: Optional[int] = None,
        s2s: Optional[bool] = None,
        privacy: Optional[Union[PrivacyOptions, dict[str, Any]]] = None,
        runtime: Optional[RuntimeFacade] = None,
        storage: Optional[PersistentStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        script_loader: Optional[ScriptLoader] = None,
        plugins: Optional[list[Any]] = None,
    ):
        options = build_options(
            write_key=write_key,
            host=host,
            debug=debug,
            echo_events=echo_events,
            cookie_domain=cookie_domain,
            fetch_timeout_ms=fetch_timeout_ms,
            s2s=s2s,
            privacy=privacy,
        )
        self.runtime = runtime or EmptyRuntime()
        self.storage = CachingStorage(
            storage or self.runtime.store(options.cookie_domain, options.debug), debug=options.debug
        )
        self._http = http_client or default_http_client()
        self._owns_http = http_client is None
        dispatcher = DestinationDispatcher(self.runtime, script_loader or ModuleScriptLoader(self._http))
        self.transport = Transport(dispatcher, self._http)
        self.collector = CollectorPlugin(options, self.storage, self.runtime, self.transport)
        self._bus = Analytics(self.storage, [self.collector, *(plugins or [])], debug=options.debug)

    @property
    def options(self) -> TrackerOptions:
        return self.collector.config

    @property
    def plugins(self) -> dict[str, Any]:
        return self._bus.plugins

    def user(self) -> UserState:
        return self._bus.user()

    def page(
        self,
        name: Optional[Union[str, dict[str, Any]]] = None,
        properties: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> "asyncio.Task[Any]":
        if isinstance(name, dict) and properties is None:
            name, properties = None, name
        properties = dict(properties or {})
        if name:
            properties.setdefault("name", name)
        return self._bus.page(properties, options)

    def track(
        self,
        event: str,
        properties: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> "asyncio.Task[Any]":
        return self._bus.track(event, properties, options)

    def identify(
        self,
        id_or_traits: Optional[Union[str, int, dict[str, Any]]] = None,
        traits: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> "asyncio.Task[Any]":
        if isinstance(id_or_traits, dict):
            user_id, traits = None, id_or_traits
        else:
            user_id = _coerce_id(id_or_traits)
        # visible to the next call before the bus persists anything
        if user_id:
            self.storage.set_item(USER_ID, user_id)
        if traits:
            self.storage.set_item(USER_TRAITS, traits)
        return self._bus.identify(user_id, traits, options)

    def group(
        self,
        group_id: Optional[Union[str, int, dict[str, Any]]] = None,
        traits: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> "Optional[asyncio.Task[Any]]":
        """Call group() on every plugin that has one; the first plugin's task is returned."""
        result = None
        for plugin in self._bus.plugins.values():
            handler = getattr(plugin, "group", None)
            if handler is None:
                continue
            outcome = handler(group_id, traits, options, self._bus)
            if inspect.iscoroutine(outcome):
                outcome = self._bus.spawn(outcome)
            if result is None:
                result = outcome
        return result

    def set_anonymous_id(self, anonymous_id: str) -> None:
        self.storage.set_item(ANONYMOUS_ID, anonymous_id)
        self._bus.user().anonymous_id = anonymous_id
        self._bus.set_anonymous_id(anonymous_id)

    def reset(self) -> "asyncio.Task[Any]":
        self.storage.reset()
        task = self._bus.reset()
        self.storage.set_item(ANONYMOUS_ID, str(uuid.uuid4()))
        return task

    def configure(self, **options: Any) -> TrackerOptions:
        """Update options in place; keys passed as None go back to their defaults."""
        return self.collector.configure(options)

    async def flush(self) -> None:
        await self._bus.flush()

    async def close(self) -> None:
        await self.flush()
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "AsyncTracklet":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


class Tracklet:
    """Sync wrapper around AsyncTracklet. Runs the event loop internally and waits for each delivery."""

    def __init__(self, *args: Any, **kwargs: Any):
        self._async = AsyncTracklet(*args, **kwargs)
        self._loop = asyncio.new_event_loop()

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    def _call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        async def _go() -> Any:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                return await result
            return result
        return self._run(_go())

    @property
    def options(self) -> TrackerOptions:
        return self._async.options

    @property
    def storage(self) -> CachingStorage:
        return self._async.storage

    def user(self) -> UserState:
        return self._async.user()

    def page(self, name: Any = None, properties: Optional[dict[str, Any]] = None,
             options: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        return self._call(self._async.page, name, properties, options)

    def track(self, event: str, properties: Optional[dict[str, Any]] = None,
              options: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        return self._call(self._async.track, event, properties, options)

    def identify(self, id_or_traits: Any = None, traits: Optional[dict[str, Any]] = None,
                 options: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        return self._call(self._async.identify, id_or_traits, traits, options)

    def group(self, group_id: Any = None, traits: Optional[dict[str, Any]] = None,
              options: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        return self._call(self._async.group, group_id, traits, options)

    def set_anonymous_id(self, anonymous_id: str) -> None:
        self._call(self._async.set_anonymous_id, anonymous_id)

    def reset(self) -> None:
        self._call(self._async.reset)

    def configure(self, **options: Any) -> TrackerOptions:
        return self._async.configure(**options)

    def close(self) -> None:
        try:
            self._run(self._async.close())
        finally:
            self._loop.close()

    def __enter__(self) -> "Tracklet":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
