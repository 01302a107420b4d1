from fastapi import APIRouter, Depends, HTTPException, Request, status

from support_routing.schemas.inbound import InboundMessageRequest, InboundMessageResponse
from support_routing.services.errors import CompanyNotFoundError
from support_routing.services.flow_service import InboundFlowService

router = APIRouter()


def get_flow_service(request: Request) -> InboundFlowService:
    return request.app.state.flow_service


@router.post("/messages", response_model=InboundMessageResponse)
async def receive_message(
    payload: InboundMessageRequest,
    service: InboundFlowService = Depends(get_flow_service),
) -> InboundMessageResponse:
    try:
        result = await service.handle_inbound_message(
            company_id=payload.company_id,
            customer_phone=payload.customer_phone,
            content=payload.content,
            customer_name=payload.customer_name,
            chat_id=payload.chat_id,
        )
    except CompanyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    route = result.route
    return InboundMessageResponse(
        conversation_id=result.conversation_id,
        outcome=result.outcome,
        department_id=route.department_id if route else None,
        assigned_agent_id=route.agent.agent_id if route and route.agent else None,
    )
