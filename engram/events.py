"""
Host event bus for the memory subsystem.

The host application pushes one raw event per observable action
(tool use, phase change, user or assistant message) onto the bus; the
``MemoryManager`` subscribes and distills what it is configured to
keep.  Memory-side notifications (saved, updated, config changed) flow
back out on the same bus.

Channels and payloads
---------------------
==================  ===============  ==================================
channel             direction        payload
==================  ===============  ==================================
``memory_event``    host -> memory   ``{"event": RawEvent | dict}``
``memory_saved``    memory -> host   ``{"id", "type", "title"}``
``memory_updated``  memory -> host   ``{"stats": {...}}``
``config_changed``  config -> any    ``{"key", "value"}``
==================  ===============  ==================================

Built on ``QObject`` signals so it lives inside the host's Qt event
loop.  Delivery within one thread is synchronous (direct connection),
so a ``memory_event`` published on the GUI thread is distilled and
stored before ``publish`` returns; only embedding runs in the
background.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from PyQt6.QtCore import QObject, pyqtSignal

logger = logging.getLogger(__name__)

MEMORY_EVENT = "memory_event"
MEMORY_SAVED = "memory_saved"
MEMORY_UPDATED = "memory_updated"
CONFIG_CHANGED = "config_changed"

Subscriber = Callable[[dict[str, Any]], None]


class _Channel(QObject):
    """
    Signal holder for one channel name.

    Payloads cross as plain dicts so a host can publish raw events
    without importing any engram types.
    """
    fired = pyqtSignal(dict)


class EventBus(QObject):
    """
    Channel registry shared by the host, the config store and the
    memory manager.

    Usage
    -----
    bus = EventBus()
    bus.subscribe(MEMORY_SAVED, lambda d: status_bar.show(d["title"]))
    bus.publish_raw_event({"type": "tool_use", "data": {"tool": "Edit"}})

    Unknown channel names are allowed; they are created on first use
    so hosts can layer their own notifications on the same bus.
    """

    def __init__(self, parent: QObject | None = None):
        super().__init__(parent)
        self._channels: dict[str, _Channel] = {}

    def _channel(self, name: str) -> _Channel:
        chan = self._channels.get(name)
        if chan is None:
            chan = self._channels[name] = _Channel(self)
        return chan

    def subscribe(self, name: str, callback: Subscriber) -> None:
        self._channel(name).fired.connect(callback)

    def unsubscribe(self, name: str, callback: Subscriber) -> None:
        """Disconnect *callback*; a callback that was never connected is ignored."""
        chan = self._channels.get(name)
        if chan is None:
            return
        try:
            chan.fired.disconnect(callback)
        except TypeError:
            logger.debug("Unsubscribe on %r: callback was not connected", name)

    def publish(self, name: str, data: Mapping[str, Any] | None = None) -> None:
        self._channel(name).fired.emit(dict(data) if data is not None else {})

    def publish_raw_event(self, event: Any) -> None:
        """Hand one host event (``RawEvent`` or its dict form) to the memory manager."""
        self.publish(MEMORY_EVENT, {"event": event})

    def channels(self) -> list[str]:
        """Names of every channel that has been subscribed to or published on."""
        return sorted(self._channels)
