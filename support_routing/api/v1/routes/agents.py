from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from support_routing.core.clock import utcnow
from support_routing.schemas.agent import (
    AgentResponse,
    AgentStatusResponse,
    SetAgentStatusRequest,
)
from support_routing.schemas.common import ApiMessage
from support_routing.services.agent_service import AgentPresenceService
from support_routing.services.errors import AgentNotFoundError

router = APIRouter()


def get_presence_service(request: Request) -> AgentPresenceService:
    return request.app.state.presence_service


def _raise_not_found(exc: AgentNotFoundError) -> None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(
    agent_id: UUID,
    service: AgentPresenceService = Depends(get_presence_service),
) -> AgentResponse:
    try:
        agent = await service.get_agent(agent_id)
    except AgentNotFoundError as exc:
        _raise_not_found(exc)
    return AgentResponse.model_validate(agent)


@router.post("/{agent_id}/status", response_model=AgentStatusResponse)
async def set_agent_status(
    agent_id: UUID,
    payload: SetAgentStatusRequest,
    service: AgentPresenceService = Depends(get_presence_service),
) -> AgentStatusResponse:
    try:
        change = await service.set_status(agent_id, payload.status)
    except AgentNotFoundError as exc:
        _raise_not_found(exc)

    response = AgentStatusResponse(
        agent_id=change.agent_id, previous=change.previous, current=change.current
    )
    if change.redistribution is not None:
        response.released = change.redistribution.released
        response.reassigned = change.redistribution.reassigned
        response.queued = change.redistribution.queued
    return response


@router.post("/{agent_id}/heartbeat", response_model=ApiMessage)
async def agent_heartbeat(
    agent_id: UUID,
    service: AgentPresenceService = Depends(get_presence_service),
) -> ApiMessage:
    try:
        await service.heartbeat(agent_id)
    except AgentNotFoundError as exc:
        _raise_not_found(exc)
    return ApiMessage(detail="heartbeat recorded", timestamp=utcnow())
