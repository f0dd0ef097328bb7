"""
Per-destination replacement events (the newEvents list of a descriptor).

Entries are "same" (the original event), a full event, or {"__diff": delta}
where delta is a jsondiffpatch object delta against the original event.
"""

import copy
import logging
from typing import Any

from tracklet.errors import DestinationError
from tracklet.models.destination import DestinationDescriptor

logger = logging.getLogger(__name__)

_DELETED = object()


def _is_diff(entry: Any) -> bool:
    return isinstance(entry, dict) and list(entry.keys()) == ["__diff"]


def apply_delta(value: Any, delta: Any) -> Any:
    if isinstance(delta, list):
        if len(delta) == 1:
            return copy.deepcopy(delta[0])
        if len(delta) == 2:
            return copy.deepcopy(delta[1])
        if len(delta) == 3 and delta[1] == 0 and delta[2] == 0:
            return _DELETED
        raise DestinationError(f"Unsupported delta: {delta!r}")
    if isinstance(delta, dict):
        if delta.get("_t") == "a":
            raise DestinationError("Array deltas are not supported")
        if not isinstance(value, dict):
            raise DestinationError(f"Can't apply object delta to {type(value).__name__}")
        patched = dict(value)
        for key, sub_delta in delta.items():
            result = apply_delta(patched.get(key), sub_delta)
            if result is _DELETED:
                patched.pop(key, None)
            else:
                patched[key] = result
        return patched
    raise DestinationError(f"Unsupported delta: {delta!r}")


def expand_events(descriptor: DestinationDescriptor, event: dict[str, Any]) -> list[dict[str, Any]]:
    """Events destination should receive instead of event."""
    if descriptor.new_events is None:
        return [event]
    try:
        events = []
        for entry in descriptor.new_events:
            if entry == "same":
                events.append(event)
            elif _is_diff(entry):
                events.append(apply_delta(copy.deepcopy(event), entry["__diff"]))
            elif isinstance(entry, dict):
                events.append(entry)
            else:
                raise DestinationError(f"Unexpected event: {entry!r}")
        return events
    except DestinationError as e:
        logger.error("Error applying '%s' changes to event: %s", descriptor.id, e)
        return [event]
