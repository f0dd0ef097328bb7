"""
Host and event filters of a device-mode destination.
"""

from typing import Any, Optional

from tracklet.errors import DestinationError


def _entries(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split("\n")
    if not isinstance(value, (list, tuple)):
        raise DestinationError(f"Filter must be a string or a list, got {type(value).__name__}")
    return [str(entry).strip() for entry in value if str(entry).strip()]


def _hostname(host: str) -> str:
    if host.startswith("["):
        return host.partition("]")[0] + "]"
    return host.partition(":")[0]


def satisfy_domain_filter(domain_filter: str, host: Optional[str]) -> bool:
    """'*' matches anything, '*.example.com' matches subdomains only, otherwise exact."""
    pattern = domain_filter.strip().lower()
    if pattern == "*":
        return True
    if not host:
        return False
    host = host.lower()
    if ":" not in pattern:
        host = _hostname(host)
    if pattern.startswith("*."):
        return host.endswith(pattern[1:])
    return host == pattern


def satisfy_filter(event_filter: str, value: Optional[str]) -> bool:
    pattern = event_filter.strip().lower()
    return pattern == "*" or (value is not None and pattern == str(value).strip().lower())


def apply_filters(event: dict[str, Any], config: dict[str, Any]) -> bool:
    """True if the destination configured with config should receive event."""
    hosts = _entries(config.get("hosts") or "*")
    events = _entries(config.get("events") or "*")
    host = ((event.get("context") or {}).get("page") or {}).get("host")
    if not any(satisfy_domain_filter(f, host) for f in hosts):
        return False
    return any(satisfy_filter(f, event.get("type")) or satisfy_filter(f, event.get("event")) for f in events)
