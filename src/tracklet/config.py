"""
Tracker options, validation and the merge rules used by configure().
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError

from tracklet.errors import ConfigurationError

DEFAULT_TIMEOUT_S = 30.0

IpPolicy = Literal["keep", "stripLastOctet", "remove"]


class PrivacyOptions(BaseModel):
    drop_events: bool = False
    disable_third_party_ids: bool = False
    ip_policy: IpPolicy = "keep"
    consent_categories: Optional[dict[str, Any]] = None


class TrackerOptions(BaseModel):
    write_key: Optional[str] = None
    host: Optional[str] = None
    debug: bool = False
    echo_events: bool = False
    cookie_domain: Optional[str] = None
    fetch_timeout_ms: Optional[int] = None
    s2s: Optional[bool] = None
    privacy: PrivacyOptions = PrivacyOptions()

    @property
    def timeout_s(self) -> float:
        if self.fetch_timeout_ms:
            return self.fetch_timeout_ms / 1000.0
        return DEFAULT_TIMEOUT_S


def _looks_like_cuid(value: str) -> bool:
    return len(value) == 25 and value[0] == "c"


def validate_write_key(write_key: Optional[str]) -> Optional[str]:
    if write_key:
        _, _, secret = write_key.partition(":")
        if not secret and not _looks_like_cuid(write_key):
            raise ConfigurationError(
                f"Legacy write key detected - {mask_write_key(write_key)}! "
                "This format doesn't work anymore, it should be 'key:secret'"
            )
    return write_key


def mask_write_key(write_key: Optional[str]) -> Optional[str]:
    if write_key:
        key_id, _, secret = write_key.partition(":")
        return f"{key_id}:***" if secret else "***"
    return write_key


def validate_options(options: TrackerOptions) -> TrackerOptions:
    """Fail fast on settings that make delivery impossible."""
    if not options.host and not options.echo_events:
        raise ConfigurationError("Please specify host, or set echo_events to True")
    validate_write_key(options.write_key)
    return options


def build_options(**kwargs: Any) -> TrackerOptions:
    try:
        options = TrackerOptions.model_validate({k: v for k, v in kwargs.items() if v is not None})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid tracker options: {e}")
    return validate_options(options)


def merge_options(current: TrackerOptions, new: dict[str, Any]) -> TrackerOptions:
    """Merge configure() overrides into current options.

    Keys explicitly set to None go back to their defaults, absent keys keep
    their current value, and privacy settings merge over the current ones.
    """
    merged = current.model_dump()
    defaults = TrackerOptions().model_dump()
    for key, value in new.items():
        if key not in defaults:
            raise ConfigurationError(f"Unknown option: {key}")
        if key == "privacy":
            if isinstance(value, PrivacyOptions):
                value = value.model_dump(exclude_unset=True)
            merged["privacy"] = {**merged["privacy"], **value} if isinstance(value, dict) else defaults["privacy"]
        elif value is None:
            merged[key] = defaults[key]
        else:
            merged[key] = value
    try:
        options = TrackerOptions.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid tracker options: {e}")
    return validate_options(options)
