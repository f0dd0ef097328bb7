"""Destination filters, newEvents patches, script loading and dispatch isolation."""

import asyncio
import types

import pytest

from tracklet.destinations import (
    DestinationDispatcher,
    ModuleScriptLoader,
    ScriptLoader,
    ScriptRegistry,
    ScriptState,
    apply_filters,
    satisfy_domain_filter,
)
from tracklet.destinations.patch import apply_delta, expand_events
from tracklet.errors import DestinationError
from tracklet.models.destination import AnalyticsPluginOptions, DestinationDescriptor, InternalPluginOptions
from tracklet.runtime import EmptyRuntime, PageRuntime

PLUGIN_SRC = "https://cdn.example.com/plugin.py"


def event(event_type="track", name="signup", host="app.example.com"):
    env = {"type": event_type, "anonymousId": "anon-1", "context": {"page": {"host": host}}}
    if event_type == "track":
        env["event"] = name
        env["properties"] = {"plan": "pro"}
    return env


def external(dest_id="d1", src=PLUGIN_SRC, **options):
    return {
        "id": dest_id,
        "destinationType": "custom",
        "credentials": {"apiKey": "k"},
        "options": options,
        "deviceOptions": {"type": "analytics-plugin", "packageCdn": src, "moduleVarName": "factory"},
    }


class Recorder:
    """Plugin factory recording what each constructed plugin receives."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def __call__(self, config):
        recorder = self

        class Plugin:
            def __init__(self):
                self.config = config
                if recorder.fail_on == "construct":
                    raise RuntimeError("bad config")

            async def initialize(self, config, instance):
                if recorder.fail_on == "initialize":
                    raise RuntimeError("init failed")
                recorder.calls.append(("initialize", config))

            def track(self, payload, config, instance):
                if recorder.fail_on == "track":
                    raise RuntimeError("track failed")
                recorder.calls.append(("track", payload))

            def page(self, payload, config, instance):
                recorder.calls.append(("page", payload))

        return Plugin()


class FakeLoader(ScriptLoader):
    def __init__(self, modules=None, delay=0.0):
        self.modules = modules or {}
        self.loads = []
        self.delay = delay

    async def load(self, src):
        self.loads.append(src)
        await asyncio.sleep(self.delay)
        if src not in self.modules:
            raise ImportError(f"no module at {src}")
        return self.modules[src]


def dispatcher(loader, runtime=None):
    return DestinationDispatcher(runtime or EmptyRuntime(), loader, registry=ScriptRegistry())


class TestFilters:
    def test_domain_filter(self):
        assert satisfy_domain_filter("*", None)
        assert satisfy_domain_filter("*.example.com", "app.example.com")
        assert not satisfy_domain_filter("*.example.com", "example.com")
        assert satisfy_domain_filter("example.com", "example.com:8080")
        assert not satisfy_domain_filter("example.com:8080", "example.com:9090")
        assert not satisfy_domain_filter("example.com", None)

    def test_event_filter_lists(self):
        assert apply_filters(event(), {"events": "page\n Signup \n"})
        assert apply_filters(event(), {"events": ["track"]})
        assert not apply_filters(event("page"), {"events": "track"})
        assert apply_filters(event("page"), {})

    def test_host_and_event_both_required(self):
        config = {"hosts": "*.example.com", "events": "track"}
        assert apply_filters(event(), config)
        assert not apply_filters(event(host="example.com"), config)

    def test_bad_filter_type(self):
        with pytest.raises(DestinationError):
            apply_filters(event(), {"events": 42})


class TestNewEvents:
    def test_apply_delta(self):
        original = {"event": "signup", "properties": {"plan": "pro", "seats": 3}, "userId": "u1"}
        delta = {"event": ["signup", "sign_up"], "properties": {"seats": [3, 0, 0], "tier": ["gold"]}}
        assert apply_delta(original, delta) == {
            "event": "sign_up", "properties": {"plan": "pro", "tier": "gold"}, "userId": "u1",
        }

    def test_array_delta_rejected(self):
        with pytest.raises(DestinationError):
            apply_delta({"items": [1]}, {"items": {"_t": "a", "0": [2]}})

    def test_expand_events(self):
        original = event()
        descriptor = DestinationDescriptor.model_validate(external() | {
            "newEvents": ["same", {"__diff": {"event": ["signup", "converted"]}}, {"type": "track", "event": "extra"}],
        })
        same, patched, extra = expand_events(descriptor, original)
        assert same is original
        assert patched["event"] == "converted"
        assert original["event"] == "signup"
        assert extra == {"type": "track", "event": "extra"}

    def test_bad_patch_falls_back_to_original(self, caplog):
        original = event()
        descriptor = DestinationDescriptor.model_validate(external() | {"newEvents": [{"__diff": {"event": [1, 2, 3, 4]}}]})
        assert expand_events(descriptor, original) == [original]
        assert "Error applying 'd1' changes" in caplog.text


class TestDescriptor:
    def test_device_options_variants(self):
        internal = DestinationDescriptor.model_validate(
            {"id": "g", "deviceOptions": {"type": "internal-plugin", "name": "gtm"}})
        assert isinstance(internal.device_options, InternalPluginOptions)
        ext = DestinationDescriptor.model_validate(external())
        assert isinstance(ext.device_options, AnalyticsPluginOptions)
        assert ext.device_options.module_var_name == "factory"

    def test_merged_config_options_win(self):
        descriptor = DestinationDescriptor.model_validate(
            {**external(), "credentials": {"apiKey": "k", "region": "eu"}, "options": {"region": "us"}})
        assert descriptor.merged_config() == {"apiKey": "k", "region": "us"}


class TestScriptRegistry:
    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_fetch(self):
        module = types.SimpleNamespace(factory=Recorder())
        loader = FakeLoader({PLUGIN_SRC: module}, delay=0.01)
        registry = ScriptRegistry()
        results = await asyncio.gather(*(registry.load(PLUGIN_SRC, loader) for _ in range(3)))
        assert all(r is module for r in results)
        assert loader.loads == [PLUGIN_SRC]
        assert registry.state(PLUGIN_SRC) is ScriptState.LOADED

    @pytest.mark.asyncio
    async def test_failure_is_terminal(self):
        loader = FakeLoader()
        registry = ScriptRegistry()
        assert registry.state(PLUGIN_SRC) is ScriptState.FRESH
        with pytest.raises(DestinationError):
            await registry.load(PLUGIN_SRC, loader)
        assert registry.state(PLUGIN_SRC) is ScriptState.FAILED
        with pytest.raises(DestinationError):
            await registry.load(PLUGIN_SRC, loader)
        assert loader.loads == [PLUGIN_SRC]

    @pytest.mark.asyncio
    async def test_cancelled_load_is_taken_over_by_waiter(self):
        module = types.SimpleNamespace(factory=Recorder())
        loader = FakeLoader({PLUGIN_SRC: module}, delay=0.05)
        registry = ScriptRegistry()
        first = asyncio.create_task(registry.load(PLUGIN_SRC, loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(registry.load(PLUGIN_SRC, loader))
        await asyncio.sleep(0)
        first.cancel()
        assert await second is module
        assert first.cancelled()
        assert loader.loads == [PLUGIN_SRC, PLUGIN_SRC]
        assert registry.state(PLUGIN_SRC) is ScriptState.LOADED


class TestModuleScriptLoader:
    @pytest.mark.asyncio
    async def test_loads_url_source(self, collector, http_client):
        collector.scripts[PLUGIN_SRC] = "def factory(config):\n    return {'config': config}\n"
        module = await ModuleScriptLoader(http_client).load(PLUGIN_SRC)
        assert module.factory({"a": 1}) == {"config": {"a": 1}}
        assert collector.fetches == [PLUGIN_SRC]

    @pytest.mark.asyncio
    async def test_missing_url_source(self, http_client):
        with pytest.raises(DestinationError, match="404"):
            await ModuleScriptLoader(http_client).load("https://cdn.example.com/missing.py")

    @pytest.mark.asyncio
    async def test_plain_http_source_refused(self, collector, http_client):
        src = "http://cdn.example.com/plugin.py"
        collector.scripts[src] = "def factory(config):\n    return None\n"
        with pytest.raises(DestinationError, match="only https"):
            await ModuleScriptLoader(http_client).load(src)
        assert collector.fetches == []

    @pytest.mark.asyncio
    async def test_imports_module_name(self):
        module = await ModuleScriptLoader().load("json")
        assert hasattr(module, "dumps")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_external_plugin_lifecycle(self):
        recorder = Recorder()
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace(factory=recorder)})
        await dispatcher(loader).dispatch([external(events="track")], "track", event())
        assert [c[0] for c in recorder.calls] == ["initialize", "track"]
        assert recorder.calls[0][1] == {"apiKey": "k", "events": "track"}
        assert recorder.calls[1][1]["event"] == "signup"

    @pytest.mark.asyncio
    async def test_event_filter_skips_handler(self):
        recorder = Recorder()
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace(factory=recorder)})
        engine = dispatcher(loader)
        await engine.dispatch([external(events="track")], "page", event("page"))
        assert recorder.calls == []
        assert loader.loads == []
        await engine.dispatch([external(events="track")], "track", event())
        assert [c[0] for c in recorder.calls].count("track") == 1

    @pytest.mark.asyncio
    async def test_script_loaded_once_across_events(self):
        recorder = Recorder()
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace(factory=recorder)})
        engine = dispatcher(loader)
        await engine.dispatch([external("d1"), external("d2")], "track", event())
        await engine.dispatch([external("d1")], "track", event(name="upgrade"))
        assert loader.loads == [PLUGIN_SRC]
        assert [c[0] for c in recorder.calls].count("track") == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["construct", "initialize", "track"])
    async def test_failing_destination_is_isolated(self, stage, caplog):
        broken = Recorder(fail_on=stage)
        healthy = Recorder()
        other_src = "https://cdn.example.com/other.py"
        loader = FakeLoader({
            PLUGIN_SRC: types.SimpleNamespace(factory=broken),
            other_src: types.SimpleNamespace(factory=healthy),
        })
        await dispatcher(loader).dispatch([external("bad"), external("good", src=other_src)], "track", event())
        assert ("track", event()) in healthy.calls
        assert "destination 'bad'" in caplog.text

    @pytest.mark.asyncio
    async def test_load_failure_logged(self, caplog):
        await dispatcher(FakeLoader()).dispatch([external()], "track", event())
        assert "Can't load plugin 'factory@https://cdn.example.com/plugin.py'" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_export(self, caplog):
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace()})
        await dispatcher(loader).dispatch([external()], "track", event())
        assert "doesn't export 'factory'" in caplog.text

    @pytest.mark.asyncio
    async def test_factory_object_with_init(self):
        recorder = Recorder()
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace(factory=types.SimpleNamespace(init=recorder))})
        await dispatcher(loader).dispatch([external()], "track", event())
        assert [c[0] for c in recorder.calls] == ["initialize", "track"]

    @pytest.mark.asyncio
    async def test_malformed_descriptor_skipped(self, caplog):
        recorder = Recorder()
        loader = FakeLoader({PLUGIN_SRC: types.SimpleNamespace(factory=recorder)})
        await dispatcher(loader).dispatch([{"id": "broken"}, external()], "track", event())
        assert "Skipping malformed destination descriptor 'broken'" in caplog.text
        assert [c[0] for c in recorder.calls] == ["initialize", "track"]


class TestInternalPlugins:
    @pytest.mark.asyncio
    async def test_gtm_pushes_to_data_layer(self):
        runtime = PageRuntime("https://app.example.com/")
        gtm = {"id": "gtm", "deviceOptions": {"type": "internal-plugin", "name": "gtm"}}
        envelope = {**event(), "userId": "u1"}
        await dispatcher(FakeLoader(), runtime).dispatch([gtm], "track", envelope)
        assert runtime.data_layer() == [{"event": "signup", "plan": "pro", "user_id": "u1"}]

    @pytest.mark.asyncio
    async def test_tag_queues_snippet(self):
        runtime = PageRuntime("https://app.example.com/")
        tag = {"id": "t", "options": {"code": "<script>hi()</script>"},
               "deviceOptions": {"type": "internal-plugin", "name": "tag"}}
        await dispatcher(FakeLoader(), runtime).dispatch([tag], "page", event("page"))
        assert runtime.tags() == ["<script>hi()</script>"]

    @pytest.mark.asyncio
    async def test_gtm_without_page_runtime(self, caplog):
        gtm = {"id": "gtm", "deviceOptions": {"type": "internal-plugin", "name": "gtm"}}
        await dispatcher(FakeLoader()).dispatch([gtm], "track", event())
        assert "data layer" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_internal_plugin(self, caplog):
        missing = {"id": "x", "deviceOptions": {"type": "internal-plugin", "name": "nope"}}
        await dispatcher(FakeLoader()).dispatch([missing], "track", event())
        assert "Unknown internal plugin 'nope'" in caplog.text
