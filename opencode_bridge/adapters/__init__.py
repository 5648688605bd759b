"""Adapters package - typed events and the subscriber registry.

UI and workflow layers consume backend activity through these types
rather than through raw stream payloads.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EventChannel",
    "Subscription",
    "BridgeEvent",
    "event_to_dict",
]

from opencode_bridge.adapters.event_bus import EventBus, EventChannel, Subscription
from opencode_bridge.adapters.events import BridgeEvent, event_to_dict
