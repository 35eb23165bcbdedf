"""Adapters package - agent wire protocol on one side, AG-UI events on the other.

This package contains the NDJSON frame codec, the broadcast bus that
fans inbound agent messages out to runs, and the translator that turns
agent messages into UI events.
"""
from __future__ import annotations

__all__ = [
    "AgentMessage",
    "BusEvent",
    "BroadcastBus",
    "TranslatorState",
    "translate",
    "encode_sse",
]

from agui_bridge.adapters.event_bus import BroadcastBus
from agui_bridge.adapters.events import encode_sse
from agui_bridge.adapters.protocol import AgentMessage, BusEvent
from agui_bridge.adapters.translator import TranslatorState, translate
