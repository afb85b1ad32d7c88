import logging
from typing import Callable, List, Optional

from models import PainterSettings

logger = logging.getLogger(__name__)

Listener = Callable[[PainterSettings, PainterSettings], None]


class SettingsStore:
    """Holds the current painter settings; every accepted change bumps the version"""

    def __init__(self, initial: Optional[PainterSettings] = None):
        self._current = initial or PainterSettings()
        self._listeners: List[Listener] = []

    @property
    def current(self) -> PainterSettings:
        return self._current

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def replace(self, new_settings: PainterSettings):
        """Swap in a loaded snapshot without notifying"""
        self._current = new_settings

    def update(self, changes: dict) -> PainterSettings:
        """Validate and apply a partial update; raises pydantic.ValidationError on bad input"""
        changes = {k: v for k, v in changes.items() if v is not None and k != "version"}
        old = self._current
        merged = old.model_dump()
        merged.update(changes)
        merged["version"] = old.version + 1
        new = PainterSettings(**merged)

        self._current = new
        logger.info(f"Settings updated to version {new.version}: {', '.join(sorted(changes)) or 'no fields'}")

        for listener in self._listeners:
            listener(old, new)
        return new
