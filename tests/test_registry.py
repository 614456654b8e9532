"""
Unit tests for the plugin registry.

Tests manifest discovery, module loading, registration with persisted
settings, init isolation, and backend collection.
"""

import asyncio

from conftest import write_plugin

from taleweaver.core.rules import RuleLogicDispatcher
from taleweaver.core.state import GameState, PluginWrapper
from taleweaver.core.store import GameStateStore
from taleweaver.plugins.context import create_capabilities
from taleweaver.plugins.manifest import discover_manifests
from taleweaver.plugins.registry import PluginRegistry

RULES_PLUGIN = """
from taleweaver.core.rules import RuleLogic


class Rules(RuleLogic):
    pass


class RulesPlugin:
    def __init__(self):
        self.rules = Rules()
        self.init_calls = 0

    def init(self, settings, context, capabilities):
        self.init_calls += 1

    def get_rule_logic_provider(self):
        return self.rules


def create_plugin():
    return RulesPlugin()
"""

COUNTING_PLUGIN = """
class Counting:
    async def init(self, settings, context, capabilities):
        settings["boots"] = settings.get("boots", 0) + 1
        context.add_character_ui("Boots", str(settings["boots"]))


def create_plugin():
    return Counting()
"""

BROKEN_INIT_PLUGIN = """
class Broken:
    def init(self, settings, context, capabilities):
        raise RuntimeError("cannot start")


def create_plugin():
    return Broken()
"""

BACKEND_PLUGIN = """
from taleweaver.core.client import OpenAIBackend


class Provider:
    def __init__(self):
        self.backend = OpenAIBackend()

    def init(self, settings, context, capabilities):
        pass

    def get_backends(self):
        return {"custom": self.backend}


def create_plugin():
    return Provider()
"""


def make_registry(store, plugin_dir, ui=None):
    capabilities = create_capabilities(store, ui=ui)
    return PluginRegistry(store, capabilities, plugin_dir)


class TestDiscovery:
    """Tests for manifest discovery."""

    def test_discovers_sorted_manifests(self, plugin_dir):
        write_plugin(plugin_dir, "zeta", RULES_PLUGIN)
        write_plugin(plugin_dir, "alpha", RULES_PLUGIN)

        names = [manifest.name for manifest in discover_manifests(plugin_dir)]

        assert names == ["alpha", "zeta"]

    def test_skips_invalid_manifests(self, plugin_dir):
        write_plugin(plugin_dir, "good", RULES_PLUGIN)
        bad = plugin_dir / "bad"
        bad.mkdir()
        (bad / "manifest.json").write_text("{not json", encoding="utf-8")
        (plugin_dir / "no-manifest").mkdir()

        names = [manifest.name for manifest in discover_manifests(plugin_dir)]

        assert names == ["good"]

    def test_missing_directory(self, tmp_path):
        assert discover_manifests(tmp_path / "nowhere") == []


class TestLoadAll:
    """Tests for loading plugins into the store."""

    def test_loads_and_registers(self, store, plugin_dir):
        """New plugins are appended enabled, unselected, with manifest settings."""
        write_plugin(plugin_dir, "rules", RULES_PLUGIN, settings={"difficulty": "hard"})

        report = asyncio.run(make_registry(store, plugin_dir).load_all())

        wrapper = store.get_snapshot().find_plugin("rules")
        assert report.loaded == ["rules"]
        assert wrapper.enabled
        assert not wrapper.selected_plugin
        assert wrapper.settings == {"difficulty": "hard"}
        assert wrapper.functional
        assert wrapper.instance.init_calls == 1

    def test_selected_plugin_becomes_active_provider(self, plugin_dir):
        """
        Of two provider plugins, the one selected in the saved state is
        the one the dispatcher picks.
        """
        write_plugin(plugin_dir, "p1", RULES_PLUGIN)
        write_plugin(plugin_dir, "p2", RULES_PLUGIN)
        store = GameStateStore(GameState(plugins=[
            PluginWrapper(name="p1", selected_plugin=False),
            PluginWrapper(name="p2", selected_plugin=True),
        ]))

        asyncio.run(make_registry(store, plugin_dir).load_all())
        active = RuleLogicDispatcher(store).get_active()

        state = store.get_snapshot()
        assert active.name == "p2"
        assert active.provider is state.find_plugin("p2").instance.rules

    def test_persisted_settings_win(self, plugin_dir):
        """Settings saved from a previous session replace the manifest defaults."""
        write_plugin(plugin_dir, "counting", COUNTING_PLUGIN, settings={"boots": 0, "color": "red"})
        store = GameStateStore(GameState(plugins=[
            PluginWrapper(name="counting", settings={"boots": 4}),
        ]))

        asyncio.run(make_registry(store, plugin_dir).load_all())

        assert store.get_snapshot().find_plugin("counting").settings == {"boots": 5}

    def test_init_writes_to_settings_are_committed(self, store, plugin_dir):
        write_plugin(plugin_dir, "counting", COUNTING_PLUGIN)
        registry = make_registry(store, plugin_dir)

        asyncio.run(registry.load_all())

        assert store.get_snapshot().find_plugin("counting").settings == {"boots": 1}
        assert [f.label for f in registry.ui_registry.fragments("character")] == ["Boots"]

    def test_init_runs_once_per_process(self, store, plugin_dir):
        """Reloading does not initialize a plugin a second time."""
        write_plugin(plugin_dir, "counting", COUNTING_PLUGIN)
        registry = make_registry(store, plugin_dir)

        async def scenario():
            await registry.load_all()
            return await registry.load_all()

        report = asyncio.run(scenario())

        assert report.loaded == ["counting"]
        assert store.get_snapshot().find_plugin("counting").settings == {"boots": 1}

    def test_init_failure_is_isolated(self, store, ui, plugin_dir):
        """A plugin whose init raises is recorded but does not stop the others."""
        write_plugin(plugin_dir, "a-broken", BROKEN_INIT_PLUGIN, settings={"keep": True})
        write_plugin(plugin_dir, "b-rules", RULES_PLUGIN)

        report = asyncio.run(make_registry(store, plugin_dir, ui).load_all())

        state = store.get_snapshot()
        broken = state.find_plugin("a-broken")
        assert report.loaded == ["b-rules"]
        assert "cannot start" in report.failed["a-broken"]
        assert not broken.functional
        assert broken.settings == {"keep": True}
        assert state.find_plugin("b-rules").functional
        assert ui.errors and "a-broken" in ui.errors[0][1]

    def test_import_failure_is_isolated(self, store, plugin_dir):
        write_plugin(plugin_dir, "syntax", "def create_plugin(:\n")
        write_plugin(plugin_dir, "rules", RULES_PLUGIN)

        report = asyncio.run(make_registry(store, plugin_dir).load_all())

        assert "SyntaxError" in report.failed["syntax"]
        assert report.loaded == ["rules"]
        assert store.get_snapshot().find_plugin("syntax").instance is None

    def test_missing_factory(self, store, plugin_dir):
        write_plugin(plugin_dir, "nofactory", "VALUE = 1\n")

        report = asyncio.run(make_registry(store, plugin_dir).load_all())

        assert "create_plugin" in report.failed["nofactory"]

    def test_disabled_plugin_not_loaded(self, plugin_dir):
        write_plugin(plugin_dir, "rules", RULES_PLUGIN)
        store = GameStateStore(GameState(plugins=[PluginWrapper(name="rules", enabled=False)]))

        report = asyncio.run(make_registry(store, plugin_dir).load_all())

        assert report.skipped == ["rules"]
        assert store.get_snapshot().find_plugin("rules").instance is None

    def test_backends_collected(self, store, plugin_dir):
        write_plugin(plugin_dir, "provider", BACKEND_PLUGIN)

        asyncio.run(make_registry(store, plugin_dir).load_all())

        state = store.get_snapshot()
        assert state.backends["custom"] is state.find_plugin("provider").instance.backend
        assert "backends" not in state.persisted()


class TestBundledPlugins:
    """Smoke tests for the plugins shipped in the repository."""

    def test_bundled_plugins_load(self, store, capabilities):
        from pathlib import Path

        plugin_dir = Path(__file__).resolve().parent.parent / "plugins"
        registry = PluginRegistry(store, capabilities, plugin_dir)

        report = asyncio.run(registry.load_all())

        assert sorted(report.loaded) == ["dnd5e-rules", "location-counter", "openrouter"]
        state = store.get_snapshot()
        dnd = state.find_plugin("dnd5e-rules").settings
        assert all(3 <= dnd[ability] <= 18 for ability in ("strength", "dexterity", "wisdom"))
        assert dnd["hit_points"] == dnd["max_hit_points"]
        assert "openrouter" in state.backends


MODELS_PLUGIN = """
class Typed:
    def init(self, settings, context, capabilities):
        models = capabilities.library.models

        class Config(models.BaseModel):
            level: int = 1

        settings.update(Config.model_validate(settings).model_dump())


def create_plugin():
    return Typed()
"""


class TestLibraryAccess:
    """Tests for the shared libraries handed to plugins."""

    def test_plugin_uses_host_models(self, store, plugin_dir):
        write_plugin(plugin_dir, "typed", MODELS_PLUGIN, settings={"level": "3"})

        asyncio.run(make_registry(store, plugin_dir).load_all())

        assert store.get_snapshot().find_plugin("typed").settings == {"level": 3}
