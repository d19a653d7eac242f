# services/config_state.py
import asyncio
from typing import Dict, List

from paygate.core.logging import get_logger
from paygate.models.schemas.trigger import Trigger, triggers_by_event

logger = get_logger(__name__)


class ConfigState:
    """
    Trigger cache fed by config sync, plus the "config loaded at least once" signal
    the presentation pipeline waits on.
    """

    def __init__(self):
        self._triggers: Dict[str, Trigger] = {}
        self._ready = asyncio.Event()

    @property
    def triggers(self) -> Dict[str, Trigger]:
        # The dict itself is never mutated in place, so handing it out is safe
        return self._triggers

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def replace_triggers(self, triggers: List[Trigger]) -> None:
        self._triggers = triggers_by_event(triggers)
        self._ready.set()
        logger.info("Triggers replaced", trigger_count=len(self._triggers))

    async def wait_until_ready(self) -> None:
        await self._ready.wait()

    def clear(self) -> None:
        """Empties the trigger cache. Readiness stays set: config has still loaded once."""
        self._triggers = {}
