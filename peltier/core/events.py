"""
Controller Notifications
=========================
Observer list for the controller's subscription feed. Events are
delivered synchronously on the scan thread, in the order they are
produced. A failing observer is logged and skipped; it never stops
the scan or the remaining observers.
"""

import logging
import threading
from typing import Protocol

from peltier.core.models import TemperatureReading

logger = logging.getLogger(__name__)


class ControllerObserver(Protocol):
    """Protocol for subscribers to the controller feed."""

    def on_temperature_update(self, reading: TemperatureReading) -> None: ...
    def on_connection_status_changed(self, connected: bool, using_synthetic: bool) -> None: ...
    def on_actuator_state_changed(self, actuator_id: int, is_on: bool) -> None: ...
    def on_control_decision(self, diagnostics: dict) -> None: ...


class EventBus:
    """Ordered, synchronous fan-out to registered observers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._observers = []

    def subscribe(self, observer):
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def unsubscribe(self, observer):
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def __len__(self) -> int:
        return len(self._observers)

    def publish(self, event: str, *args):
        """Call `event` on every observer that implements it."""
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            handler = getattr(observer, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception(
                    "Observer %r failed handling %s", observer, event
                )
