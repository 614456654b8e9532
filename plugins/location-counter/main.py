"""Counts how many times the protagonist has changed location."""

from taleweaver.plugins.base import Plugin

PLUGIN_NAME = "location-counter"


class LocationCounter(Plugin):
    name = PLUGIN_NAME

    async def init(self, settings, context, capabilities):
        await super().init(settings, context, capabilities)
        settings.setdefault("count", 0)
        context.add_character_ui("Travels", self.render)

    def on_location_change(self, location, draft):
        settings = draft.find_plugin(PLUGIN_NAME).settings
        settings["count"] = settings.get("count", 0) + 1
        settings["last_location"] = location.name

    def render(self, state):
        settings = state.find_plugin(PLUGIN_NAME).settings
        last = settings.get("last_location") or "nowhere yet"
        return f"Locations visited: {settings.get('count', 0)} (last: {last})"


def create_plugin():
    return LocationCounter()
