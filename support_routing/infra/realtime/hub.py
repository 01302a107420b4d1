import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from support_routing.infra.realtime.events import RealtimeEvent

logger = logging.getLogger(__name__)


class InMemoryRealtimeHub:
    """In-process channel hub for websocket fanout.

    Agent sessions subscribe to their queue, department and company channels;
    the messaging adapter subscribes to conversation channels to pick up
    customer-facing text. Nothing is buffered: a publish with no subscribers
    is dropped.
    """

    def __init__(self) -> None:
        self._channel_subscribers: dict[str, set[WebSocket]] = defaultdict(set)
        self._socket_channels: dict[WebSocket, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()

    def subscriber_count(self, channel: str) -> int:
        return len(self._channel_subscribers.get(channel, ()))

    def channels_of(self, websocket: WebSocket) -> frozenset[str]:
        return frozenset(self._socket_channels.get(websocket, ()))

    async def subscribe(self, websocket: WebSocket, channels: Iterable[str]) -> None:
        async with self._lock:
            for channel in channels:
                self._channel_subscribers[channel].add(websocket)
                self._socket_channels[websocket].add(channel)

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._forget_locked(websocket, channel)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            for channel in list(self._socket_channels.get(websocket, ())):
                self._forget_locked(websocket, channel)

    async def publish(
        self,
        channels: Sequence[str],
        event: RealtimeEvent,
        payload: Mapping[str, Any],
    ) -> int:
        """Send one envelope per channel; returns how many sockets received it."""
        targets = [channel for channel in dict.fromkeys(channels) if channel]
        if not targets:
            return 0

        async with self._lock:
            snapshot = {
                channel: tuple(self._channel_subscribers.get(channel, ()))
                for channel in targets
            }

        delivered = 0
        stale: list[tuple[WebSocket, str]] = []
        sent_at = datetime.now(UTC).isoformat()
        for channel, recipients in snapshot.items():
            envelope = {
                "event": event.value,
                "channel": channel,
                "payload": dict(payload),
                "sent_at": sent_at,
            }
            for websocket in recipients:
                try:
                    await websocket.send_json(envelope)
                except (RuntimeError, WebSocketDisconnect):
                    stale.append((websocket, channel))
                else:
                    delivered += 1

        if stale:
            logger.debug("Dropping %d stale websocket subscriptions", len(stale))
            async with self._lock:
                for websocket, channel in stale:
                    self._forget_locked(websocket, channel)
        return delivered

    def _forget_locked(self, websocket: WebSocket, channel: str) -> None:
        subscribers = self._channel_subscribers.get(channel)
        if subscribers is not None:
            subscribers.discard(websocket)
            if not subscribers:
                self._channel_subscribers.pop(channel, None)

        channels = self._socket_channels.get(websocket)
        if channels is not None:
            channels.discard(channel)
            if not channels:
                self._socket_channels.pop(websocket, None)
