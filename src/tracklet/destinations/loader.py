"""
Loading of external destination plugins.

A plugin "script" is a Python module: either an importable module name or an
https URL whose source is fetched and executed into a fresh module. Every
source is loaded at most once per process; ScriptRegistry tracks each one
through fresh -> loading -> loaded | failed.
"""

from __future__ import annotations

import asyncio
import hashlib
import importlib
import logging
import types
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

import httpx

from tracklet.config import DEFAULT_TIMEOUT_S
from tracklet.errors import DestinationError

logger = logging.getLogger(__name__)


class ScriptState(str, Enum):
    FRESH = "fresh"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class ScriptLoader(ABC):
    @abstractmethod
    async def load(self, src: str) -> Any:
        """Return the module object for src."""


class ModuleScriptLoader(ScriptLoader):
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = DEFAULT_TIMEOUT_S):
        self._http = http_client
        self._timeout = timeout

    async def load(self, src: str) -> Any:
        if src.startswith("https://"):
            return self._execute(src, await self._fetch(src))
        if "://" in src:
            raise DestinationError(f"Refusing to execute plugin source from {src}: only https URLs are allowed")
        return importlib.import_module(src)

    async def _fetch(self, src: str) -> str:
        client = self._http or httpx.AsyncClient()
        try:
            resp = await client.get(src, timeout=self._timeout)
        finally:
            if client is not self._http:
                await client.aclose()
        if resp.status_code >= 400:
            raise DestinationError(f"HTTP {resp.status_code} fetching {src}")
        return resp.text

    @staticmethod
    def _execute(src: str, source: str) -> types.ModuleType:
        name = "tracklet_plugin_" + hashlib.sha1(src.encode()).hexdigest()[:12]
        module = types.ModuleType(name)
        module.__file__ = src
        exec(compile(source, src, "exec"), module.__dict__)
        return module


class ScriptRegistry:
    """Process-wide load state of plugin scripts, keyed by source."""

    def __init__(self) -> None:
        self._states: dict[str, ScriptState] = {}
        self._modules: dict[str, Any] = {}
        self._errors: dict[str, str] = {}
        self._pending: dict[str, asyncio.Future[Any]] = {}

    def state(self, src: str) -> ScriptState:
        return self._states.get(src, ScriptState.FRESH)

    async def load(self, src: str, loader: ScriptLoader) -> Any:
        state = self.state(src)
        if state is ScriptState.LOADED:
            return self._modules[src]
        if state is ScriptState.FAILED:
            raise DestinationError(f"Script {src} failed to load: {self._errors[src]}")
        if state is ScriptState.LOADING:
            pending = self._pending[src]
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
            # the loading call was cancelled midway; take the load over
            return await self.load(src, loader)

        # claim the source before the first suspension so concurrent events wait on it
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._states[src] = ScriptState.LOADING
        self._pending[src] = future
        try:
            module = await loader.load(src)
        except asyncio.CancelledError:
            self._states.pop(src, None)
            future.cancel()
            raise
        except Exception as e:
            self._states[src] = ScriptState.FAILED
            self._errors[src] = str(e) or type(e).__name__
            error = DestinationError(f"Script {src} failed to load: {self._errors[src]}")
            future.set_exception(error)
            future.exception()
            raise error from e
        finally:
            self._pending.pop(src, None)
        self._modules[src] = module
        self._states[src] = ScriptState.LOADED
        future.set_result(module)
        logger.debug("Loaded plugin script %s", src)
        return module

    def reset(self) -> None:
        self._states.clear()
        self._modules.clear()
        self._errors.clear()
        self._pending.clear()


script_registry = ScriptRegistry()
