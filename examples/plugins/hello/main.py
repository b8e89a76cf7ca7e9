import logging

from plugin_runtime import BasePlugin

logger = logging.getLogger(__name__)


class HelloPlugin(BasePlugin):
    greeting = "Hello"

    async def on_activate(self):
        count = self._state.get("activations", 0) + 1
        self._state["activations"] = count
        logger.info(f"{self.greeting} from {self.id} (activation {count})")

    async def on_deactivate(self):
        logger.info(f"{self.id} going quiet")
