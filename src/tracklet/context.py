"""
Event context builder.

Turns a raw bus payload into the canonical envelope: page facts from the
runtime, UTM campaign, restored traits, client ids, timestamps and a
best-effort message id. Missing runtime facts degrade to absent fields;
building never raises for optional context.
"""

from __future__ import annotations

import random
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import ParseResult, parse_qsl, urlparse

from tracklet.config import TrackerOptions, mask_write_key
from tracklet.models.envelope import Campaign, Consent, EventContext, LibraryInfo, PageContext, ScreenInfo
from tracklet.runtime import RuntimeFacade
from tracklet.storage import GROUP_ID, GROUP_TRAITS, USER_TRAITS, PersistentStorage, parse_value
from tracklet.version import LIBRARY_NAME, VERSION

T = TypeVar("T")

IDENTITY_EVENTS = {"identify", "group"}
MAX_SAFE_INTEGER = 2**53 - 1
_MASK32 = 0xFFFFFFFF

HASH_RE = re.compile(r"#.*$")
_URL_PATH_RE = re.compile(r"(https?://)?([^/\s]+/)(.*)")


def safe_call(fn: Callable[[], T], default: Optional[T] = None) -> Optional[T]:
    try:
        return fn()
    except Exception:
        return default


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_query(qs: Optional[str]) -> dict[str, str]:
    if not qs:
        return {}
    return dict(parse_qsl(qs.lstrip("?"), keep_blank_values=True))


def _utm_key(key: str) -> str:
    name = key[len("utm_"):]
    return "name" if name == "campaign" else name


def parse_utms(query: dict[str, str]) -> dict[str, str]:
    return {_utm_key(key): value for key, value in query.items() if key.startswith("utm_")}


def url_path(url: str) -> str:
    """Path of url the way analytics.js computes it (no query, no hash)."""
    match = _URL_PATH_RE.search(url)
    path = HASH_RE.sub("", match.group(3).split("?")[0]) if match and match.group(3) else ""
    return "/" + path


def fix_path(path: str) -> str:
    # url_path() turns the path of a bare origin (https://test.com) into //test.com
    if path.startswith("//") and path.rfind("/") == 1:
        return "/"
    return path


def deep_merge(target: Any, source: Any) -> Any:
    """Merge source into target; source wins on leaf conflicts."""
    if not isinstance(source, dict) or not isinstance(target, dict):
        return source
    for key, value in source.items():
        target[key] = deep_merge(target.get(key), value)
    return target


def _stored_dict(storage: PersistentStorage, key: str) -> dict[str, Any]:
    value = storage.get_item(key)
    if isinstance(value, str):
        value = safe_call(lambda: parse_value(value), {})
    return value if isinstance(value, dict) else {}


def restore_traits(storage: PersistentStorage) -> dict[str, Any]:
    # user traits override group traits
    return {**_stored_dict(storage, GROUP_TRAITS), **_stored_dict(storage, USER_TRAITS)}


def _imul(a: int, b: int) -> int:
    return ((a & _MASK32) * (b & _MASK32)) & _MASK32


def _hash(value: str, seed: int = 0) -> int:
    h1 = (0xDEADBEEF ^ seed) & _MASK32
    h2 = (0x41C6CE57 ^ seed) & _MASK32
    for ch in value:
        code = ord(ch)
        h1 = _imul(h1 ^ code, 2654435761)
        h2 = _imul(h2 ^ code, 1597334677)
    h1 = _imul(h1 ^ (h1 >> 16), 2246822507) ^ _imul(h2 ^ (h2 >> 13), 3266489909)
    h2 = _imul(h2 ^ (h2 >> 16), 2246822507) ^ _imul(h1 ^ (h1 >> 13), 3266489909)
    return 4294967296 * (2097151 & h2) + h1


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if not value:
            return out


def random_id(hash_string: Optional[str] = None) -> str:
    """Best-effort unique id seeded by hash_string and the clock. Not collision-free."""
    now_ms = int(time.time() * 1000)
    parts = []
    for _ in range(2):
        seed = time.perf_counter_ns() % 2147483647
        value = int(random.random() * now_ms * _hash(hash_string or "", seed)) % MAX_SAFE_INTEGER
        parts.append(_base36(value))
    return "".join(parts)


def _parse_url(url: Optional[str]) -> Optional[ParseResult]:
    if not url:
        return None
    parsed = safe_call(lambda: urlparse(url))
    if parsed is None or not parsed.scheme or not parsed.netloc:
        return None
    return parsed


def ga4_ids(cookies: dict[str, str]) -> Optional[dict[str, Any]]:
    ga = cookies.get("_ga")
    client_id = ".".join(ga.split(".")[-2:]) if ga else None
    session_ids = {}
    for name, value in cookies.items():
        if name.startswith("_ga_") and isinstance(value, str):
            parts = value.split(".")
            if len(parts) >= 3:
                session_ids[name[len("_ga_"):]] = parts[2]
    if not client_id and not session_ids:
        return None
    ids: dict[str, Any] = {"clientId": client_id}
    if session_ids:
        ids["sessionIds"] = session_ids
    return {k: v for k, v in ids.items() if v is not None}


def client_ids(runtime: RuntimeFacade) -> dict[str, Any]:
    ids: dict[str, Any] = {
        "fbc": safe_call(lambda: runtime.get_cookie("_fbc")),
        "fbp": safe_call(lambda: runtime.get_cookie("_fbp")),
        "ga4": ga4_ids(safe_call(runtime.get_cookies, {}) or {}),
    }
    return {k: v for k, v in ids.items() if v is not None}


def _screen(runtime: RuntimeFacade) -> Optional[ScreenInfo]:
    screen = safe_call(runtime.screen)
    return safe_call(lambda: ScreenInfo.model_validate(screen)) if screen else None


def build_envelope(
    payload: dict[str, Any],
    options: TrackerOptions,
    storage: PersistentStorage,
    runtime: RuntimeFacade,
    s2s: bool,
) -> dict[str, Any]:
    """Build the enriched envelope for a page/track/identify/group payload."""
    event_type = payload.get("type")
    url = safe_call(runtime.page_url)
    properties = dict(payload.get("properties") or {})
    custom_context = properties.pop("context", None)
    if not isinstance(custom_context, dict):
        custom_context = {}
    # headless callers may pass the page url themselves
    parsed = _parse_url(url or properties.get("url"))
    query = parse_query(parsed.query) if parsed else {}

    if event_type == "page" and url:
        properties["url"] = HASH_RE.sub("", url)
        properties["path"] = fix_path(url_path(url))

    referrer = safe_call(runtime.referrer)
    privacy = options.privacy
    context = EventContext(
        library=LibraryInfo(name=LIBRARY_NAME, version=VERSION, env="server" if s2s else "browser"),
        consent=Consent(category_preferences=privacy.consent_categories) if privacy.consent_categories else None,
        user_agent=safe_call(runtime.user_agent),
        locale=safe_call(runtime.language),
        screen=_screen(runtime),
        traits=(restore_traits(storage) or None) if event_type not in IDENTITY_EVENTS else None,
        page=PageContext(
            path=properties.get("path") or (parsed.path or "/" if parsed else None),
            referrer=referrer,
            referring_domain=safe_call(lambda: urlparse(referrer).hostname) if referrer else None,
            host=parsed.netloc.rpartition("@")[2] if parsed else None,
            search=properties.get("search") or (f"?{parsed.query}" if parsed and parsed.query else None),
            title=properties.get("title") or safe_call(runtime.page_title),
            url=properties.get("url") or url,
            encoding=properties.get("encoding") or safe_call(runtime.document_encoding),
        ),
        client_ids=None if privacy.disable_third_party_ids else client_ids(runtime),
        campaign=Campaign.model_validate(parse_utms(query)),
    )

    envelope = {k: v for k, v in payload.items() if k not in ("meta", "options")}
    if "properties" in payload or properties:
        envelope["properties"] = properties
    now = iso_now()
    envelope.update(
        timestamp=now,
        sentAt=now,
        messageId=random_id(properties.get("path") or (parsed.path if parsed else None)),
        writeKey=mask_write_key(options.write_key),
        groupId=storage.get_item(GROUP_ID),
        context=deep_merge(context.model_dump(by_alias=True, exclude_none=True), custom_context),
    )
    return {k: v for k, v in envelope.items() if v is not None}
