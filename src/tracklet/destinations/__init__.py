from tracklet.destinations.dispatch import DestinationDispatcher
from tracklet.destinations.filters import apply_filters, satisfy_domain_filter, satisfy_filter
from tracklet.destinations.loader import ModuleScriptLoader, ScriptLoader, ScriptRegistry, ScriptState, script_registry
from tracklet.destinations.plugins import InternalDestinationPlugin, register_internal_plugin

__all__ = [
    "DestinationDispatcher",
    "apply_filters",
    "satisfy_domain_filter",
    "satisfy_filter",
    "ModuleScriptLoader",
    "ScriptLoader",
    "ScriptRegistry",
    "ScriptState",
    "script_registry",
    "InternalDestinationPlugin",
    "register_internal_plugin",
]
