import json
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

from support_routing.domain.enums import AgentOnlineStatus
from support_routing.infra.realtime.channels import (
    agent_queue_channel,
    company_channel,
    conversation_channel,
    department_channel,
)
from support_routing.services.errors import AgentNotFoundError, ConversationNotFoundError

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_uuid(raw: str | None) -> UUID | None:
    if raw is None:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def _system_event(name: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "event": f"system.{name}",
        "payload": payload or {},
        "sent_at": datetime.now(UTC).isoformat(),
    }


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    state = websocket.app.state
    hub = getattr(state, "realtime_hub", None)
    presence = getattr(state, "presence_service", None)
    dispatch = getattr(state, "dispatch_engine", None)
    if hub is None or presence is None or dispatch is None:
        await websocket.close(code=1011, reason="Realtime services not initialized")
        return

    role = websocket.query_params.get("role", "").strip().lower()
    tracked_agent_id: UUID | None = None
    initial_channels: list[str] = []

    if role == "customer":
        conversation_id = _parse_uuid(websocket.query_params.get("conversation_id"))
        if conversation_id is None:
            await websocket.close(
                code=1008, reason="Customer websocket requires conversation_id"
            )
            return
        try:
            await dispatch.get_conversation(conversation_id)
        except ConversationNotFoundError:
            await websocket.close(code=1008, reason="Conversation not found")
            return
        initial_channels.append(conversation_channel(conversation_id))
    elif role == "agent":
        agent_id = _parse_uuid(websocket.query_params.get("agent_id"))
        if agent_id is None:
            await websocket.close(code=1008, reason="Agent websocket requires agent_id")
            return
        try:
            agent = await presence.get_agent(agent_id)
        except AgentNotFoundError:
            await websocket.close(code=1008, reason="Agent not found")
            return
        if not agent.is_active:
            await websocket.close(code=1008, reason="Agent is deactivated")
            return

        initial_channels.extend(
            [agent_queue_channel(agent.id), company_channel(agent.company_id)]
        )
        if agent.department_id is not None:
            initial_channels.append(department_channel(agent.department_id))
        tracked_agent_id = agent.id
    else:
        await websocket.close(
            code=1008, reason="Unsupported role. Use role=customer or role=agent"
        )
        return

    await hub.connect(websocket)
    await hub.subscribe(websocket, initial_channels)
    await websocket.send_json(
        _system_event("connected", {"role": role, "channels": initial_channels})
    )

    if tracked_agent_id is not None:
        agent = await presence.get_agent(tracked_agent_id)
        if agent.online_status == AgentOnlineStatus.OFFLINE:
            await presence.set_status(tracked_agent_id, AgentOnlineStatus.ONLINE)

    try:
        while True:
            raw_message = await websocket.receive_text()
            if raw_message.strip().lower() == "ping":
                await websocket.send_json(_system_event("pong"))
                continue

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError:
                await websocket.send_json(
                    _system_event("error", {"detail": "Expected JSON payload"})
                )
                continue

            action = message.get("action") if isinstance(message, dict) else None
            if action == "ping":
                await websocket.send_json(_system_event("pong"))
                continue

            if tracked_agent_id is None:
                await websocket.send_json(
                    _system_event("error", {"detail": "Unsupported action for current role"})
                )
                continue

            if action == "heartbeat":
                await presence.heartbeat(tracked_agent_id)
                await websocket.send_json(_system_event("heartbeat"))
                continue

            if action in ("subscribe_conversation", "unsubscribe_conversation"):
                conversation_id = _parse_uuid(message.get("conversation_id"))
                if conversation_id is None:
                    await websocket.send_json(
                        _system_event("error", {"detail": "Invalid conversation_id"})
                    )
                    continue

                channel = conversation_channel(conversation_id)
                if action == "subscribe_conversation":
                    await hub.subscribe(websocket, [channel])
                    await websocket.send_json(_system_event("subscribed", {"channel": channel}))
                else:
                    await hub.unsubscribe(websocket, channel)
                    await websocket.send_json(
                        _system_event("unsubscribed", {"channel": channel})
                    )
                continue

            await websocket.send_json(_system_event("error", {"detail": "Unsupported action"}))
    except WebSocketDisconnect:
        return
    finally:
        await hub.disconnect(websocket)
        if tracked_agent_id is not None:
            # Other tabs of the same agent keep it online.
            if hub.subscriber_count(agent_queue_channel(tracked_agent_id)) == 0:
                try:
                    await presence.set_status(tracked_agent_id, AgentOnlineStatus.OFFLINE)
                except AgentNotFoundError:
                    logger.debug("Agent %s disappeared before disconnect", tracked_agent_id)
