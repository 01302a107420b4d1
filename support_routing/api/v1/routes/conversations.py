from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from support_routing.domain.exceptions import InvalidFlowTransition
from support_routing.schemas.conversation import (
    AssignConversationRequest,
    ConversationResponse,
    ResolveConversationRequest,
    RouteConversationRequest,
    RouteConversationResponse,
    TransferConversationRequest,
)
from support_routing.services.dispatch_service import DispatchEngine, RouteOutcome
from support_routing.services.errors import (
    AgentNotInDepartmentError,
    ConversationArchivedError,
)

router = APIRouter()


def get_dispatch_engine(request: Request) -> DispatchEngine:
    return request.app.state.dispatch_engine


def _raise_for_service_error(exc: Exception) -> None:
    if isinstance(exc, LookupError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, AgentNotInDepartmentError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, (InvalidFlowTransition, ConversationArchivedError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> ConversationResponse:
    try:
        conversation = await engine.get_conversation(conversation_id)
    except LookupError as exc:
        _raise_for_service_error(exc)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/route", response_model=RouteConversationResponse)
async def route_conversation(
    conversation_id: UUID,
    payload: RouteConversationRequest,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> RouteConversationResponse:
    try:
        conversation = await engine.get_conversation(conversation_id)
        result = await engine.route_to_department(
            conversation_id,
            payload.department_slug.strip().lower(),
            conversation.company_id,
        )
    except (LookupError, InvalidFlowTransition) as exc:
        _raise_for_service_error(exc)

    if result.outcome == RouteOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Department '{payload.department_slug}' not found",
        )
    return RouteConversationResponse(
        conversation_id=conversation_id,
        outcome=result.outcome,
        department_id=result.department_id,
        assigned_agent_id=result.agent.agent_id if result.agent else None,
        assigned_agent_name=result.agent.agent_name if result.agent else None,
        escalation=result.escalation,
    )


@router.post("/{conversation_id}/resolve", response_model=ConversationResponse)
async def resolve_conversation(
    conversation_id: UUID,
    payload: ResolveConversationRequest | None = None,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> ConversationResponse:
    send_closing_message = payload.send_closing_message if payload else False
    try:
        await engine.resolve_conversation(conversation_id, send_closing_message)
        conversation = await engine.get_conversation(conversation_id)
    except LookupError as exc:
        _raise_for_service_error(exc)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/assign", response_model=ConversationResponse)
async def assign_conversation(
    conversation_id: UUID,
    payload: AssignConversationRequest,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> ConversationResponse:
    try:
        agent = await engine.assign_conversation(conversation_id, payload.agent_id)
        conversation = await engine.get_conversation(conversation_id)
    except (LookupError, AgentNotInDepartmentError, ConversationArchivedError) as exc:
        _raise_for_service_error(exc)

    if agent is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Conversation changed concurrently; retry the assignment",
        )
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/unassign", response_model=ConversationResponse)
async def unassign_conversation(
    conversation_id: UUID,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> ConversationResponse:
    try:
        await engine.unassign_conversation(conversation_id)
        conversation = await engine.get_conversation(conversation_id)
    except LookupError as exc:
        _raise_for_service_error(exc)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/transfer", response_model=RouteConversationResponse)
async def transfer_conversation(
    conversation_id: UUID,
    payload: TransferConversationRequest,
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> RouteConversationResponse:
    try:
        result = await engine.transfer_conversation(
            conversation_id, payload.department_id, payload.agent_id
        )
    except (LookupError, AgentNotInDepartmentError, ConversationArchivedError) as exc:
        _raise_for_service_error(exc)

    if result.outcome == RouteOutcome.SUPERSEDED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Conversation changed concurrently; retry the transfer",
        )
    return RouteConversationResponse(
        conversation_id=conversation_id,
        outcome=result.outcome,
        department_id=result.department_id,
        assigned_agent_id=result.agent.agent_id if result.agent else None,
        assigned_agent_name=result.agent.agent_name if result.agent else None,
        escalation=result.escalation,
    )
