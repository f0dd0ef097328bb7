"""
tracklet — event tracking SDK for Python.

Collects page views, custom events and user identity, enriches them with
context and delivers them to a collection endpoint. Device-mode destinations
returned by the endpoint are loaded and invoked on the client.
"""

from tracklet.client import Tracklet, AsyncTracklet
from tracklet.config import TrackerOptions, PrivacyOptions
from tracklet.runtime import RuntimeFacade, EmptyRuntime, PageRuntime
from tracklet.storage import PersistentStorage, MemoryStorage, CookieJar, CookieStorage, FileStorage, CachingStorage
from tracklet.errors import TrackletError, ConfigurationError, TransportError, DestinationError, StorageError
from tracklet.version import VERSION

__version__ = VERSION
__all__ = [
    "Tracklet",
    "AsyncTracklet",
    "TrackerOptions",
    "PrivacyOptions",
    "RuntimeFacade",
    "EmptyRuntime",
    "PageRuntime",
    "PersistentStorage",
    "MemoryStorage",
    "CookieJar",
    "CookieStorage",
    "FileStorage",
    "CachingStorage",
    "TrackletError",
    "ConfigurationError",
    "TransportError",
    "DestinationError",
    "StorageError",
]
