"""
Persistent storage adapters and the write-through identity cache.

Logical keys are fixed; the cookie adapter maps the identity keys to
physically distinct cookie names so that values survive navigations.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from http.cookies import CookieError, Morsel, SimpleCookie
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import quote, unquote

from tracklet.errors import StorageError

logger = logging.getLogger(__name__)

ANONYMOUS_ID = "__anon_id"
USER_ID = "__user_id"
USER_TRAITS = "__user_traits"
GROUP_ID = "__group_id"
GROUP_TRAITS = "__group_traits"
IDENTITY_KEYS = (ANONYMOUS_ID, USER_ID, USER_TRAITS, GROUP_ID, GROUP_TRAITS)

DEFAULT_COOKIE_NAMES = {
    ANONYMOUS_ID: "__eventn_id",
    USER_TRAITS: "__eventn_id_usr",
    USER_ID: "__eventn_uid",
}

COOKIE_TTL_S = 60 * 60 * 24 * 365 * 5
EXPIRED = "Thu, 01 Jan 1970 00:00:01 GMT"

# Public suffixes that span two labels; the registrable domain is one label longer.
MULTI_LABEL_SUFFIXES = {
    "co.uk", "org.uk", "ac.uk", "gov.uk", "me.uk",
    "com.au", "net.au", "org.au",
    "co.jp", "co.nz", "co.za", "co.in", "co.kr",
    "com.br", "com.cn", "com.mx", "com.tr", "com.sg",
}

_REMOVED = object()

# Fields checked, in order, when a user id has to be recovered from stored traits.
LEGACY_USER_ID_FIELDS = ("internal_id", "user_id", "id", "userId")


def parse_value(raw: Optional[str]) -> Any:
    """Decode a stored string: URL-encoded JSON, JSON scalars, or plain text."""
    if raw is None:
        return None
    value: Any = raw
    if raw.startswith("%7B%22") or raw.startswith("%5B"):
        value = unquote(raw)
    try:
        value = json.loads(value)
    except ValueError:
        pass
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "" or value is None:
        return None
    return value


def encode_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return quote(json.dumps(value, separators=(",", ":")), safe="")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def top_level_domain(hostname: Optional[str]) -> Optional[str]:
    """Registrable domain of hostname (app.example.co.uk -> example.co.uk)."""
    if not hostname:
        return None
    host = hostname.lower().rstrip(".")
    if host == "localhost":
        return host
    try:
        ipaddress.ip_address(host.strip("[]"))
        return host
    except ValueError:
        pass
    labels = host.split(".")
    if len(labels) <= 2:
        return host
    suffix_len = 2 if ".".join(labels[-2:]) in MULTI_LABEL_SUFFIXES else 1
    return ".".join(labels[-(suffix_len + 1):])


class PersistentStorage(ABC):
    @abstractmethod
    def set_item(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def get_item(self, key: str) -> Any: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...

    @abstractmethod
    def reset(self) -> None: ...


class MemoryStorage(PersistentStorage):
    """Process-local storage used by headless runtimes."""

    def __init__(self, debug: bool = False):
        self._items: dict[str, Any] = {}
        self._debug = debug

    def set_item(self, key: str, value: Any) -> None:
        if self._debug:
            logger.debug("Set storage item %s=%s", key, json.dumps(value, default=str))
        if value is None:
            self._items.pop(key, None)
        else:
            self._items[key] = value

    def get_item(self, key: str) -> Any:
        value = self._items.get(key)
        if self._debug:
            logger.debug("Get storage item %s=%s", key, json.dumps(value, default=str))
        return value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def reset(self) -> None:
        self._items.clear()


class CookieJar:
    """Cookies of one page view: what the client sent, plus pending Set-Cookie writes."""

    def __init__(self, cookies: Optional[Mapping[str, str]] = None):
        self._values: dict[str, str] = dict(cookies or {})
        self._outgoing: dict[str, Morsel] = {}
        self._frozen = False

    @classmethod
    def from_header(cls, header: Optional[str]) -> "CookieJar":
        parsed = SimpleCookie()
        if header:
            try:
                parsed.load(header)
            except CookieError:
                logger.debug("Ignoring malformed Cookie header")
        return cls({name: morsel.value for name, morsel in parsed.items()})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def all(self) -> dict[str, str]:
        return dict(self._values)

    def freeze(self) -> None:
        """Refuse further writes, e.g. once response headers have been sent."""
        self._frozen = True

    def set(self, name: str, value: str, *, domain: Optional[str], secure: bool) -> None:
        self._write(name, value, domain=domain, secure=secure, expires=COOKIE_TTL_S)
        self._values[name] = value

    def delete(self, name: str, *, domain: Optional[str], secure: bool) -> None:
        self._write(name, "", domain=domain, secure=secure, expires=EXPIRED)
        self._values.pop(name, None)

    def _write(self, name: str, value: str, *, domain: Optional[str], secure: bool, expires: Any) -> None:
        if self._frozen:
            raise StorageError(f"Cookie {name} can't be written: headers already sent")
        morsel = Morsel()
        try:
            morsel.set(name, value, value)
        except CookieError as e:
            raise StorageError(f"Invalid cookie {name}: {e}")
        if domain:
            morsel["domain"] = domain
        morsel["path"] = "/"
        morsel["expires"] = expires
        morsel["samesite"] = "None" if secure else "Lax"
        if secure:
            morsel["secure"] = True
        self._outgoing[name] = morsel

    def set_cookie_headers(self) -> list[str]:
        """Set-Cookie header values the host must attach to its response."""
        return [morsel.OutputString() for morsel in self._outgoing.values()]


class CookieStorage(PersistentStorage):
    def __init__(
        self,
        jar: CookieJar,
        cookie_domain: Optional[str],
        secure: bool,
        cookie_names: Optional[Mapping[str, str]] = None,
    ):
        self._jar = jar
        self._domain = cookie_domain
        self._secure = secure
        self._names = dict(cookie_names or DEFAULT_COOKIE_NAMES)

    def _cookie(self, key: str) -> str:
        return self._names.get(key, key)

    def set_item(self, key: str, value: Any) -> None:
        if value is None:
            self.remove_item(key)
            return
        self._jar.set(self._cookie(key), encode_value(value), domain=self._domain, secure=self._secure)

    def get_item(self, key: str) -> Any:
        raw = self._jar.get(self._cookie(key))
        if raw is None and key == USER_ID:
            # older cookie schema kept the user id inside the traits cookie
            traits = parse_value(self._jar.get(self._cookie(USER_TRAITS)))
            if isinstance(traits, dict):
                for field in LEGACY_USER_ID_FIELDS:
                    if traits.get(field):
                        return traits[field]
            return None
        return parse_value(raw)

    def remove_item(self, key: str) -> None:
        self._jar.delete(self._cookie(key), domain=self._domain, secure=self._secure)

    def reset(self) -> None:
        for key in IDENTITY_KEYS:
            self._jar.delete(self._cookie(key), domain=self._domain, secure=self._secure)


class FileStorage(PersistentStorage):
    """JSON file storage; keeps a headless device identity across processes."""

    def __init__(self, path: Path):
        self._path = path
        try:
            self._items: dict[str, Any] = json.loads(path.read_text())
        except (FileNotFoundError, json.JSONDecodeError):
            self._items = {}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._items, indent=2))

    def set_item(self, key: str, value: Any) -> None:
        if value is None:
            self._items.pop(key, None)
        else:
            self._items[key] = value
        self._save()

    def get_item(self, key: str) -> Any:
        return self._items.get(key)

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._save()

    def reset(self) -> None:
        self._items = {}
        self._save()


class CachingStorage(PersistentStorage):
    """Synchronous write-through cache in front of a persistent storage.

    Writes land in the cache before the underlying write, reads consult the
    cache first. A failing underlying write switches the cache to memory-only
    mode for the rest of the session.
    """

    def __init__(self, storage: PersistentStorage, debug: bool = False):
        self._storage = storage
        self._cache: dict[str, Any] = {}
        self._debug = debug
        self._memory_only = False
        # set once a memory-only reset makes the underlying values stale
        self._shadowed = False

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    def _guarded(self, op: str, fn: Any, *args: Any) -> None:
        if self._memory_only:
            return
        try:
            fn(*args)
        except (StorageError, OSError) as e:
            logger.warning("Storage %s failed, keeping identity in memory only: %s", op, e)
            self._memory_only = True

    def set_item(self, key: str, value: Any) -> None:
        if self._debug:
            logger.debug("Caching storage set_item: %s=%s", key, value)
        if value is None:
            self.remove_item(key)
            return
        self._cache[key] = value
        self._guarded("write", self._storage.set_item, key, value)

    def get_item(self, key: str) -> Any:
        cached = self._cache.get(key)
        if cached is _REMOVED:
            value = None
        elif cached is not None:
            value = cached
        elif self._shadowed:
            value = None
        else:
            value = self._storage.get_item(key)
        if self._debug:
            logger.debug("Caching storage get_item: %s=%s (cached: %s)", key, value, cached is not None)
        return value

    def remove_item(self, key: str) -> None:
        if self._debug:
            logger.debug("Caching storage remove_item: %s", key)
        self._cache.pop(key, None)
        self._guarded("remove", self._storage.remove_item, key)
        if self._memory_only:
            self._cache[key] = _REMOVED

    def reset(self) -> None:
        self._cache.clear()
        self._guarded("reset", self._storage.reset)
        if self._memory_only:
            self._shadowed = True
