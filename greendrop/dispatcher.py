# greendrop/dispatcher.py
"""Signal dispatcher for published events.

Same shape as Home Assistant's helper: ``connect`` returns the unsubscribe
callable, ``send`` fans out synchronously in registration order. A target
that raises is logged and does not stop the others.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

_LOGGER = logging.getLogger(__name__)

Target = Callable[..., Any]


class Dispatcher:
    def __init__(self) -> None:
        self._targets: dict[str, list[Target]] = defaultdict(list)

    def connect(self, signal: str, target: Target) -> Callable[[], None]:
        self._targets[signal].append(target)

        def _unsub() -> None:
            try:
                self._targets[signal].remove(target)
            except ValueError:
                pass

        return _unsub

    def send(self, signal: str, *args: Any) -> None:
        for target in tuple(self._targets.get(signal, ())):
            try:
                target(*args)
            except Exception:
                _LOGGER.debug("dispatcher: target for %s raised", signal, exc_info=True)
