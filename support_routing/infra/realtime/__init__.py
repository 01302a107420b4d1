"""Websocket channel hub and the notifier that publishes routing events on it."""

from support_routing.infra.realtime.hub import InMemoryRealtimeHub
from support_routing.infra.realtime.notifier import RealtimeNotifier

__all__ = ["InMemoryRealtimeHub", "RealtimeNotifier"]
