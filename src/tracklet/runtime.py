"""
Runtime facades: where the pipeline reads environment facts from.

EmptyRuntime is the headless runtime: every fact is missing and identity
lives in memory. PageRuntime carries the facts of one page view supplied by
the host (typically built from the incoming HTTP request) and persists
identity in that page's cookies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from tracklet.storage import CookieJar, CookieStorage, MemoryStorage, PersistentStorage, top_level_domain


class RuntimeFacade(ABC):
    in_browser: bool = False

    @abstractmethod
    def page_url(self) -> Optional[str]: ...

    @abstractmethod
    def referrer(self) -> Optional[str]: ...

    @abstractmethod
    def page_title(self) -> Optional[str]: ...

    @abstractmethod
    def user_agent(self) -> Optional[str]: ...

    @abstractmethod
    def language(self) -> Optional[str]: ...

    @abstractmethod
    def screen(self) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def document_encoding(self) -> Optional[str]: ...

    @abstractmethod
    def timezone_offset(self) -> Optional[int]: ...

    @abstractmethod
    def get_cookie(self, name: str) -> Optional[str]: ...

    @abstractmethod
    def get_cookies(self) -> dict[str, str]: ...

    @abstractmethod
    def store(self, cookie_domain: Optional[str] = None, debug: bool = False) -> PersistentStorage: ...

    def data_layer(self) -> Optional[list[Any]]:
        """Page-global event queue read by tag managers, if the runtime has one."""
        return None

    def tags(self) -> Optional[list[str]]:
        """HTML snippets queued for the host to render, if the runtime has a page."""
        return None


class EmptyRuntime(RuntimeFacade):
    in_browser = False

    def page_url(self) -> Optional[str]:
        return None

    def referrer(self) -> Optional[str]:
        return None

    def page_title(self) -> Optional[str]:
        return None

    def user_agent(self) -> Optional[str]:
        return None

    def language(self) -> Optional[str]:
        return None

    def screen(self) -> Optional[dict[str, Any]]:
        return None

    def document_encoding(self) -> Optional[str]:
        return None

    def timezone_offset(self) -> Optional[int]:
        return None

    def get_cookie(self, name: str) -> Optional[str]:
        return None

    def get_cookies(self) -> dict[str, str]:
        return {}

    def store(self, cookie_domain: Optional[str] = None, debug: bool = False) -> PersistentStorage:
        return MemoryStorage(debug=debug)


class PageRuntime(RuntimeFacade):
    in_browser = True

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        referrer: Optional[str] = None,
        title: Optional[str] = None,
        user_agent: Optional[str] = None,
        language: Optional[str] = None,
        screen: Optional[dict[str, Any]] = None,
        encoding: Optional[str] = None,
        timezone_offset: Optional[int] = None,
        cookies: Optional[CookieJar] = None,
    ):
        self._url = url
        self._referrer = referrer
        self._title = title
        self._user_agent = user_agent
        self._language = language
        self._screen = screen
        self._encoding = encoding
        self._timezone_offset = timezone_offset
        self.cookies = cookies or CookieJar()
        self._data_layer: list[Any] = []
        self._tags: list[str] = []

    @classmethod
    def from_headers(cls, url: str, headers: Mapping[str, str], **kwargs: Any) -> "PageRuntime":
        """Build the runtime of a page view from the request that rendered it."""
        lowered = {k.lower(): v for k, v in headers.items()}
        accept_language = lowered.get("accept-language")
        return cls(
            url,
            referrer=lowered.get("referer"),
            user_agent=lowered.get("user-agent"),
            language=accept_language.split(",")[0].split(";")[0].strip() if accept_language else None,
            cookies=CookieJar.from_header(lowered.get("cookie")),
            **kwargs,
        )

    def page_url(self) -> Optional[str]:
        return self._url

    def referrer(self) -> Optional[str]:
        return self._referrer

    def page_title(self) -> Optional[str]:
        return self._title

    def user_agent(self) -> Optional[str]:
        return self._user_agent

    def language(self) -> Optional[str]:
        return self._language

    def screen(self) -> Optional[dict[str, Any]]:
        return self._screen

    def document_encoding(self) -> Optional[str]:
        return self._encoding

    def timezone_offset(self) -> Optional[int]:
        return self._timezone_offset

    def get_cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)

    def get_cookies(self) -> dict[str, str]:
        return self.cookies.all()

    def store(self, cookie_domain: Optional[str] = None, debug: bool = False) -> PersistentStorage:
        parsed = urlparse(self._url or "")
        domain = cookie_domain or top_level_domain(parsed.hostname)
        return CookieStorage(self.cookies, domain, secure=parsed.scheme == "https")

    def data_layer(self) -> Optional[list[Any]]:
        return self._data_layer

    def tags(self) -> Optional[list[str]]:
        return self._tags
