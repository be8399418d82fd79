from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

PhaseListener = Callable[[str, Optional[str]], None]
Emit = Callable[..., None]


def null_emit(phase: str, detail: Optional[str] = None) -> None:
    return None


class PhaseBus:
    """
    Fire-and-forget diagnostic fan-out.

    A listener that raises is logged and skipped; the remaining listeners and the
    caller are unaffected. Phases never drive control flow.
    """

    def __init__(self) -> None:
        self._listeners: List[PhaseListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return unsubscribe

    def emit(self, phase: str, detail: Optional[str] = None) -> None:
        logger.debug("phase %s %s", phase, detail or "")
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(phase, detail)
            except Exception:  # noqa: BLE001 - observers must not break the pipeline
                logger.debug("phase listener failed for %s", phase, exc_info=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
