"""
Change notifications

Display layers and the scheduling loop observe jobs and module state through
signals instead of the core holding references to widgets.
"""

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Signal:
    """Minimal synchronous signal: connected slots are called in order on emit"""

    def __init__(self, name: str = ""):
        self.name = name
        self._slots: List[Callable[..., Any]] = []

    def connect(self, slot: Callable[..., Any]):
        if slot not in self._slots:
            self._slots.append(slot)

    def disconnect(self, slot: Callable[..., Any]):
        if slot in self._slots:
            self._slots.remove(slot)

    def emit(self, *args):
        for slot in list(self._slots):
            slot(*args)

    def __len__(self) -> int:
        return len(self._slots)
