import logging

from plugin_runtime import BasePlugin

logger = logging.getLogger(__name__)


class GreeterPlugin(BasePlugin):
    names = ["world", "plugins"]

    def on_load(self):
        self._state.setdefault("greeted", [])

    def on_activate(self):
        for name in self.names:
            self._state["greeted"].append(name)
            logger.info(f"Greetings, {name}")

    def on_deactivate(self):
        logger.info(f"Greeted {len(self._state['greeted'])} names so far")
