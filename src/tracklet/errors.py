"""
Tracklet error types.

Only ConfigurationError ever reaches the embedding application; the others are
raised inside the pipeline and absorbed at the component boundary.
"""

from typing import Any, Optional


class TrackletError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class ConfigurationError(TrackletError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("configuration_error", message, details)


class TransportError(TrackletError):
    def __init__(self, message: str, code: str = "transport_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class DestinationError(TrackletError):
    def __init__(self, message: str, destination_id: Optional[str] = None):
        super().__init__("destination_error", message, {"destination_id": destination_id} if destination_id else None)
        self.destination_id = destination_id


class StorageError(TrackletError):
    def __init__(self, message: str):
        super().__init__("storage_error", message)
